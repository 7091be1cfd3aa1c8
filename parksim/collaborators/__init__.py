"""
External collaborators: persistence, economy and notifications.

Contains:
- base: abstract ports and the Player identity
- memory: in-memory implementations
"""

from parksim.collaborators.base import (
    EconomyPort,
    NotificationPort,
    PersistencePort,
    Player,
    pay_from,
)
from parksim.collaborators.memory import (
    AuditRecord,
    InMemoryEconomy,
    InMemoryPersistence,
    RecordingNotifier,
)

__all__ = [
    "EconomyPort",
    "NotificationPort",
    "PersistencePort",
    "Player",
    "pay_from",
    "AuditRecord",
    "InMemoryEconomy",
    "InMemoryPersistence",
    "RecordingNotifier",
]
