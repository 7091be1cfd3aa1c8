"""
Core building blocks for parksim.

Contains:
- event_bus: priority-ordered publish/subscribe with pre/post operation hooks
- scheduler: cancellable one-shot timers (asyncio or virtual clock)
- sessions: paid, timed sessions with resource queues and refunds
- ids: session and ticket id generation
- errors: error taxonomy and operation outcomes
"""

from parksim.core.errors import (
    AuthorizationError,
    CollaboratorError,
    ErrorKind,
    Outcome,
    ParkingError,
    ResourceExhaustedError,
    ValidationError,
)
from parksim.core.event_bus import EventBus, EventLogger, HookPhase, Priority
from parksim.core.ids import IdGenerator
from parksim.core.scheduler import AsyncioScheduler, ManualScheduler, Scheduler, TimerHandle
from parksim.core.sessions import (
    QueueEntry,
    ResourcePool,
    Session,
    SessionManager,
    SessionState,
    SessionStore,
    compute_delay,
)

__all__ = [
    # Event bus
    "EventBus",
    "EventLogger",
    "HookPhase",
    "Priority",
    # Scheduling
    "AsyncioScheduler",
    "ManualScheduler",
    "Scheduler",
    "TimerHandle",
    # Sessions
    "QueueEntry",
    "ResourcePool",
    "Session",
    "SessionManager",
    "SessionState",
    "SessionStore",
    "compute_delay",
    "IdGenerator",
    # Errors
    "AuthorizationError",
    "CollaboratorError",
    "ErrorKind",
    "Outcome",
    "ParkingError",
    "ResourceExhaustedError",
    "ValidationError",
]
