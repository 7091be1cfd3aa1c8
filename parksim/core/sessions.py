"""
Session/Queue Manager for deferred, paid units of work.

A session is a timed service request ("park this vehicle", "deliver that
one"). The manager:
- allocates a unique id and computes the completion delay
- optionally queues the session for a bounded resource (VIP first)
- arms a cancellable one-shot completion timer
- commits, refunds or cancels, and always removes the record afterwards

Lifecycle:
    CREATED -> (QUEUED) -> COMPLETING -> COMMITTED | REFUNDED -> removed
    CREATED | QUEUED -> CANCELLED -> removed

Every transition is published on the event bus as "<namespace>:<transition>"
(requested, completed, cancelled, refunded).

Usage:
    manager = SessionManager("valet", bus, scheduler, economy, SessionConfig())
    manager.register_resource("pillbox", capacity=6, max_queue=10)
    session = manager.create_session(
        "park", owner="CIT1", subject="ABC123", cost=150, account="cash",
        base_duration=30, tip_multiplier=0.5, resource_id="pillbox",
    )
    manager.schedule_completion(session.id)
"""

from __future__ import annotations

import bisect
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from parksim.collaborators.base import EconomyPort, NotificationPort
from parksim.core.errors import (
    CollaboratorError,
    ErrorKind,
    Outcome,
    ParkingError,
    ResourceExhaustedError,
    ValidationError,
)
from parksim.core.event_bus import EventBus
from parksim.core.ids import IdGenerator
from parksim.core.scheduler import Scheduler, TimerHandle
from parksim.infrastructure.config import SessionConfig
from parksim.infrastructure.logging import get_logger

logger = get_logger(__name__)


class SessionState(Enum):
    """Session lifecycle states."""

    CREATED = "created"
    QUEUED = "queued"
    COMPLETING = "completing"
    COMMITTED = "committed"
    REFUNDED = "refunded"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionState.COMMITTED, SessionState.REFUNDED, SessionState.CANCELLED)


@dataclass
class Session:
    """A pending paid request."""

    id: str
    kind: str
    owner: str
    subject: str
    created_at: float
    completes_at: float
    delay: float
    cost: int = 0
    account: Optional[str] = None
    priority_class: int = 10
    resource_id: Optional[str] = None
    payload: Dict[str, Any] = field(default_factory=dict)
    state: SessionState = SessionState.CREATED

    def remaining(self, now: float) -> float:
        return max(0.0, self.completes_at - now)

    def to_event(self) -> Dict[str, Any]:
        return {
            "session_id": self.id,
            "kind": self.kind,
            "owner": self.owner,
            "subject": self.subject,
            "cost": self.cost,
            "resource_id": self.resource_id,
            "completes_at": self.completes_at,
        }


@dataclass(order=True)
class QueueEntry:
    """Queue position for a session; lower rank is served first."""

    rank: int
    sequence: int
    session_id: str = field(compare=False)
    enqueued_at: float = field(compare=False, default=0.0)


@dataclass
class ResourcePool:
    """A fixed set of numbered slots (e.g. the spots behind a valet stand)."""

    id: str
    capacity: int
    max_queue: Optional[int] = None
    slots: Dict[int, str] = field(default_factory=dict)  # slot index -> subject

    @property
    def free_count(self) -> int:
        return self.capacity - len(self.slots)

    @property
    def is_full(self) -> bool:
        return self.free_count <= 0

    def allocate(self, subject: str) -> Optional[int]:
        """Occupy the lowest free slot. Returns its 1-based index or None."""
        for index in range(1, self.capacity + 1):
            if index not in self.slots:
                self.slots[index] = subject
                return index
        return None

    def release(self, subject: str) -> Optional[int]:
        index = self.slot_of(subject)
        if index is not None:
            del self.slots[index]
        return index

    def slot_of(self, subject: str) -> Optional[int]:
        for index, occupant in self.slots.items():
            if occupant == subject:
                return index
        return None


class SessionStore:
    """
    Owned state of one SessionManager: sessions, queues, resources, timers.

    Construct one per manager (or share one explicitly) so tests get
    isolated instances.
    """

    def __init__(self) -> None:
        self.sessions: Dict[str, Session] = {}
        self.queues: Dict[str, List[QueueEntry]] = {}
        self.resources: Dict[str, ResourcePool] = {}
        self.timers: Dict[str, TimerHandle] = {}
        self.completions: Dict[str, Callable[[str], Any]] = {}
        self._sequence = 0

    def add(self, session: Session) -> None:
        if session.id in self.sessions:
            raise ValidationError(f"Duplicate session id: {session.id}")
        self.sessions[session.id] = session

    def get(self, session_id: str) -> Optional[Session]:
        return self.sessions.get(session_id)

    def remove(self, session_id: str) -> Optional[Session]:
        session = self.sessions.pop(session_id, None)
        self.completions.pop(session_id, None)
        handle = self.timers.pop(session_id, None)
        if handle is not None:
            handle.cancel()
        if session is not None and session.resource_id:
            self.dequeue(session.resource_id, session_id)
        return session

    def enqueue(self, resource_id: str, session_id: str, rank: int, now: float) -> QueueEntry:
        self._sequence += 1
        entry = QueueEntry(rank=rank, sequence=self._sequence, session_id=session_id, enqueued_at=now)
        bisect.insort(self.queues.setdefault(resource_id, []), entry)
        logger.debug("Queue entry added", resource_id=resource_id, session_id=session_id, rank=rank)
        return entry

    def dequeue(self, resource_id: str, session_id: str) -> bool:
        queue = self.queues.get(resource_id)
        if not queue:
            return False
        for i, entry in enumerate(queue):
            if entry.session_id == session_id:
                del queue[i]
                logger.debug("Queue entry removed", resource_id=resource_id, session_id=session_id)
                return True
        return False

    def queue_position(self, resource_id: str, session_id: str) -> int:
        for i, entry in enumerate(self.queues.get(resource_id, ()), start=1):
            if entry.session_id == session_id:
                return i
        return 0

    def queue_length(self, resource_id: str) -> int:
        return len(self.queues.get(resource_id, ()))

    def find(
        self,
        owner: Optional[str] = None,
        subject: Optional[str] = None,
        kind: Optional[str] = None,
    ) -> List[Session]:
        return [
            s for s in self.sessions.values()
            if (owner is None or s.owner == owner)
            and (subject is None or s.subject == subject)
            and (kind is None or s.kind == kind)
        ]

    def clear(self) -> None:
        for handle in self.timers.values():
            handle.cancel()
        self.sessions.clear()
        self.queues.clear()
        self.timers.clear()
        self.completions.clear()
        for pool in self.resources.values():
            pool.slots.clear()


def compute_delay(
    base_duration: float,
    tip_multiplier: float = 1.0,
    priority_bonus: float = 0.0,
    privileged: bool = False,
    minimum: float = 5.0,
) -> float:
    """
    Completion delay in seconds.

    delay = base * tip_multiplier, reduced by `priority_bonus` (a fraction)
    for privileged callers, truncated to whole seconds, never below `minimum`.
    """
    delay = base_duration * tip_multiplier
    if privileged and priority_bonus > 0:
        delay *= (1 - priority_bonus)
    return max(minimum, float(math.floor(delay)))


CommitFn = Callable[[Session, Optional[int]], Optional[Dict[str, Any]]]


class SessionManager:
    """
    Creates, schedules, completes and cancels sessions for one service.

    `namespace` prefixes every published event ("valet:completed").
    """

    def __init__(
        self,
        namespace: str,
        bus: EventBus,
        scheduler: Scheduler,
        economy: EconomyPort,
        config: Optional[SessionConfig] = None,
        store: Optional[SessionStore] = None,
        ids: Optional[IdGenerator] = None,
        notifier: Optional[NotificationPort] = None,
    ):
        self.namespace = namespace
        self.bus = bus
        self.scheduler = scheduler
        self.economy = economy
        self.config = config or SessionConfig()
        self.store = store if store is not None else SessionStore()
        self.ids = ids or IdGenerator(clock=scheduler.now)
        self.notifier = notifier
        self._sweep_handle: Optional[TimerHandle] = None

        self._stats = {
            "created": 0,
            "committed": 0,
            "refunded": 0,
            "cancelled": 0,
            "swept": 0,
        }

    # ------------------------------------------------------------------
    # Resources
    # ------------------------------------------------------------------

    def register_resource(self, resource_id: str, capacity: int, max_queue: Optional[int] = None) -> ResourcePool:
        pool = ResourcePool(id=resource_id, capacity=capacity, max_queue=max_queue)
        self.store.resources[resource_id] = pool
        return pool

    def get_resource(self, resource_id: str) -> Optional[ResourcePool]:
        return self.store.resources.get(resource_id)

    def can_enqueue(self, resource_id: str) -> bool:
        """Whether a new session may still queue for `resource_id`."""
        pool = self.store.resources.get(resource_id)
        if pool is None:
            return False
        if pool.max_queue is None:
            return True
        return self.store.queue_length(resource_id) < pool.max_queue

    def release_slot(self, resource_id: str, subject: str) -> Optional[int]:
        pool = self.store.resources.get(resource_id)
        if pool is None:
            return None
        return pool.release(subject)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def compute_delay(
        self,
        base_duration: float,
        tip_multiplier: float = 1.0,
        priority_bonus: float = 0.0,
        privileged: bool = False,
    ) -> float:
        return compute_delay(
            base_duration,
            tip_multiplier=tip_multiplier,
            priority_bonus=priority_bonus,
            privileged=privileged,
            minimum=self.config.min_delay_seconds,
        )

    def create_session(
        self,
        kind: str,
        owner: str,
        subject: str,
        priority_class: int = 10,
        payload: Optional[Dict[str, Any]] = None,
        *,
        cost: int = 0,
        account: Optional[str] = None,
        base_duration: Optional[float] = None,
        tip_multiplier: float = 1.0,
        priority_bonus: float = 0.0,
        privileged: bool = False,
        delay: Optional[float] = None,
        resource_id: Optional[str] = None,
    ) -> Session:
        """
        Register a new session.

        Either `delay` or `base_duration` must be given. Sessions with a
        `resource_id` join that resource's queue ordered by priority class.

        Raises:
            ValidationError: unknown resource or no duration
            ResourceExhaustedError: the resource queue is full
        """
        if resource_id is not None:
            if resource_id not in self.store.resources:
                raise ValidationError(f"Unknown resource: {resource_id}")
            if not self.can_enqueue(resource_id):
                raise ResourceExhaustedError(f"Queue for {resource_id} is full")

        if delay is None:
            if base_duration is None:
                raise ValidationError("A session needs a delay or a base duration")
            delay = self.compute_delay(base_duration, tip_multiplier, priority_bonus, privileged)

        now = self.scheduler.now()
        session = Session(
            id=self.ids.session_id(kind, owner, subject),
            kind=kind,
            owner=owner,
            subject=subject,
            created_at=now,
            completes_at=now + delay,
            delay=delay,
            cost=cost,
            account=account,
            priority_class=priority_class,
            resource_id=resource_id,
            payload=dict(payload or {}),
        )
        self.store.add(session)

        if resource_id is not None:
            self.store.enqueue(resource_id, session.id, priority_class, now)
            session.state = SessionState.QUEUED

        self._stats["created"] += 1
        logger.info(
            "Session created",
            namespace=self.namespace,
            session_id=session.id,
            kind=kind,
            subject=subject,
            delay=delay,
            cost=cost,
        )
        self.bus.publish(f"{self.namespace}:requested", session.to_event())
        return session

    def schedule_completion(
        self,
        session_id: str,
        delay: Optional[float] = None,
        on_complete: Optional[Callable[[str], Any]] = None,
    ) -> TimerHandle:
        """
        Arm the one-shot completion timer.

        `on_complete(session_id)` defaults to complete_session. Re-scheduling
        replaces the previous timer.
        """
        session = self.store.get(session_id)
        if session is None:
            raise ValidationError(f"Unknown session: {session_id}")

        if delay is None:
            delay = session.remaining(self.scheduler.now())
        else:
            session.completes_at = self.scheduler.now() + delay

        callback = on_complete or self.complete_session
        previous = self.store.timers.pop(session_id, None)
        if previous is not None:
            previous.cancel()

        handle = self.scheduler.call_later(delay, self._fire, session_id)
        self.store.timers[session_id] = handle
        self.store.completions[session_id] = callback
        return handle

    def _fire(self, session_id: str) -> None:
        self.store.timers.pop(session_id, None)
        callback = self.store.completions.get(session_id)
        if callback is None or self.store.get(session_id) is None:
            return
        callback(session_id)

    def complete_session(self, session_id: str, commit: Optional[CommitFn] = None) -> Outcome:
        """
        Commit a session's effect, or refund it in full if that is impossible.

        A missing session (already completed or cancelled) is a no-op.
        """
        session = self.store.get(session_id)
        if session is None:
            logger.debug("Completion ignored, session gone", session_id=session_id)
            return Outcome.fail("Session not found", ErrorKind.VALIDATION, session_id=session_id)

        handle = self.store.timers.pop(session_id, None)
        if handle is not None:
            handle.cancel()
        session.state = SessionState.COMPLETING

        pool = self.store.resources.get(session.resource_id) if session.resource_id else None
        slot: Optional[int] = None
        if pool is not None:
            slot = pool.allocate(session.subject)
            if slot is None:
                self._refund_failed(session, "No free slot available", ErrorKind.RESOURCE_EXHAUSTED)
                return Outcome.fail(
                    "No free slot available - refunded",
                    ErrorKind.RESOURCE_EXHAUSTED,
                    session_id=session_id,
                    refund=session.cost,
                )

        try:
            extra = commit(session, slot) if commit else None
        except ParkingError as e:
            if pool is not None and slot is not None:
                pool.release(session.subject)
            self._refund_failed(session, str(e), e.kind)
            return Outcome.fail(f"{e} - refunded", e.kind, session_id=session_id, refund=session.cost)
        except Exception as e:
            if pool is not None and slot is not None:
                pool.release(session.subject)
            logger.error("Session commit crashed", session_id=session_id, error=str(e))
            self._refund_failed(session, str(e), ErrorKind.COLLABORATOR)
            return Outcome.fail(
                "Service failed - refunded", ErrorKind.COLLABORATOR, session_id=session_id, refund=session.cost
            )

        session.state = SessionState.COMMITTED
        self.store.remove(session_id)
        self._stats["committed"] += 1

        event = session.to_event()
        event["slot"] = slot
        if extra:
            event.update(extra)

        logger.info("Session completed", namespace=self.namespace, session_id=session_id, slot=slot)
        self.bus.publish(f"{self.namespace}:completed", event)
        return Outcome.ok("Session completed", **event)

    def cancel_session(self, session_id: str, requester: str, admin: bool = False) -> Outcome:
        """
        Cancel before completion with a partial refund.

        Only the owner (or an admin) may cancel, and not within the grace
        window before completion.
        """
        session = self.store.get(session_id)
        if session is None:
            return Outcome.fail("Session not found", ErrorKind.VALIDATION)

        if session.owner != requester and not admin:
            return Outcome.fail("Not your session", ErrorKind.AUTHORIZATION)

        remaining = session.completes_at - self.scheduler.now()
        if remaining < self.config.cancel_grace_seconds:
            return Outcome.fail("Too late to cancel - service is almost complete", ErrorKind.VALIDATION)

        refund = math.floor(session.cost * self.config.cancel_refund_ratio)
        if refund > 0:
            try:
                self._issue_refund(session, refund, f"{self.namespace} {session.kind} cancelled - partial refund")
            except CollaboratorError as e:
                logger.error("Cancellation refund failed", session_id=session_id, error=str(e))
                return Outcome.from_error(e)

        session.state = SessionState.CANCELLED
        self.store.remove(session_id)
        self._stats["cancelled"] += 1

        event = session.to_event()
        event["refund"] = refund
        event["cancelled_by"] = requester
        logger.info("Session cancelled", namespace=self.namespace, session_id=session_id, refund=refund)
        self.bus.publish(f"{self.namespace}:cancelled", event)
        return Outcome.ok("Cancelled", session_id=session_id, refund=refund)

    def abort_session(self, session_id: str, reason: str, refund_ratio: float = 0.0) -> bool:
        """
        Drop a session outside the normal rules (vetoed, superseded).

        Refunds `refund_ratio` of the cost. Returns False if it was gone.
        """
        session = self.store.get(session_id)
        if session is None:
            return False

        refund = math.floor(session.cost * refund_ratio)
        if refund > 0:
            self._refund_failed(session, reason, ErrorKind.VALIDATION, amount=refund)
            return True

        session.state = SessionState.CANCELLED
        self.store.remove(session_id)
        self._stats["cancelled"] += 1

        event = session.to_event()
        event["refund"] = 0
        event["reason"] = reason
        logger.info("Session aborted", namespace=self.namespace, session_id=session_id, reason=reason)
        self.bus.publish(f"{self.namespace}:cancelled", event)
        return True

    # ------------------------------------------------------------------
    # Refunds
    # ------------------------------------------------------------------

    def _issue_refund(self, session: Session, amount: int, memo: str) -> None:
        if not self.economy.refund(session.owner, self.config.refund_account, amount, memo):
            raise CollaboratorError(f"Refund of {amount} to {session.owner} was rejected")

    def _refund_failed(
        self,
        session: Session,
        reason: str,
        kind: ErrorKind,
        amount: Optional[int] = None,
    ) -> None:
        """Refund, remove and publish `<ns>:refunded`."""
        amount = session.cost if amount is None else amount
        refunded = True
        if amount > 0:
            try:
                self._issue_refund(session, amount, f"{self.namespace} {session.kind} refund - {reason}")
            except CollaboratorError as e:
                refunded = False
                logger.error("Refund failed", session_id=session.id, amount=amount, error=str(e))

        session.state = SessionState.REFUNDED
        self.store.remove(session.id)
        self._stats["refunded"] += 1

        if self.notifier is not None and amount > 0:
            self.notifier.notify(session.owner, f"{reason} - you have been refunded", "error")

        event = session.to_event()
        event.update({"refund": amount, "reason": reason, "error_kind": kind.value, "refund_ok": refunded})
        logger.warning(
            "Session refunded",
            namespace=self.namespace,
            session_id=session.id,
            refund=amount,
            reason=reason,
        )
        self.bus.publish(f"{self.namespace}:refunded", event)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_session(self, session_id: str) -> Optional[Session]:
        return self.store.get(session_id)

    def get_queue_position(self, resource_id: str, session_id: str) -> int:
        """1-based position in the resource queue, 0 if not queued."""
        return self.store.queue_position(resource_id, session_id)

    def find_by_subject(self, subject: str, kind: Optional[str] = None) -> Optional[Session]:
        matches = self.store.find(subject=subject, kind=kind)
        return matches[0] if matches else None

    def sessions_for_owner(self, owner: str, kind: Optional[str] = None) -> List[Session]:
        return self.store.find(owner=owner, kind=kind)

    @property
    def active_count(self) -> int:
        return len(self.store.sessions)

    @property
    def stats(self) -> Dict[str, int]:
        return {**self._stats, "active": self.active_count}

    # ------------------------------------------------------------------
    # Expiry sweep
    # ------------------------------------------------------------------

    def sweep_expired(self) -> int:
        """
        Complete sessions whose timer never fired.

        A session counts as stuck once it is `stale_after_seconds` past its
        completion time.
        """
        now = self.scheduler.now()
        stale = [
            s.id for s in list(self.store.sessions.values())
            if now - s.completes_at > self.config.stale_after_seconds
        ]

        for session_id in stale:
            logger.warning("Sweeping stuck session", namespace=self.namespace, session_id=session_id)
            handle = self.store.timers.pop(session_id, None)
            if handle is not None:
                handle.cancel()
            callback = self.store.completions.get(session_id) or self.complete_session
            callback(session_id)
            self._stats["swept"] += 1

        return len(stale)

    def start_sweeper(self, interval: Optional[float] = None) -> None:
        """Run sweep_expired every `interval` seconds until stop_sweeper()."""
        interval = interval or self.config.sweep_interval_seconds

        def _tick() -> None:
            try:
                self.sweep_expired()
            finally:
                self._sweep_handle = self.scheduler.call_later(interval, _tick)

        self.stop_sweeper()
        self._sweep_handle = self.scheduler.call_later(interval, _tick)

    def stop_sweeper(self) -> None:
        if self._sweep_handle is not None:
            self._sweep_handle.cancel()
            self._sweep_handle = None
