"""In-memory collaborators for local runs, simulations and tests."""

from __future__ import annotations

import copy
import time
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Optional

from parksim.collaborators.base import EconomyPort, NotificationPort, PersistencePort
from parksim.infrastructure.logging import get_logger

logger = get_logger(__name__)


@dataclass
class AuditRecord:
    action: str
    actor: Optional[str]
    subject: str
    details: dict[str, Any]
    timestamp: float = field(default_factory=time.time)


class InMemoryPersistence(PersistencePort):
    """Dict-backed vehicle store with an audit trail."""

    def __init__(self) -> None:
        self._states: dict[str, dict[str, Any]] = {}
        self._owners: dict[str, str] = {}
        self.audit_log: list[AuditRecord] = []

    def get_entity_state(self, key: str) -> Optional[dict[str, Any]]:
        state = self._states.get(key)
        return copy.deepcopy(state) if state is not None else None

    def set_entity_state(self, key: str, state: dict[str, Any]) -> None:
        self._states[key] = copy.deepcopy(state)

    def record_ownership(self, key: str, owner_id: str) -> None:
        self._owners[key] = owner_id

    def get_owner(self, key: str) -> Optional[str]:
        return self._owners.get(key)

    def audit(self, action: str, actor: Optional[str], subject: str, details: dict[str, Any]) -> None:
        self.audit_log.append(AuditRecord(action, actor, subject, dict(details)))
        logger.debug("Audit", action=action, actor=actor, subject=subject)

    def register_vehicle(self, plate: str, owner_id: str, **state: Any) -> None:
        """Convenience: record ownership and an initial state in one call."""
        self.record_ownership(plate, owner_id)
        self.set_entity_state(plate, {"state": "out", **state})


class InMemoryEconomy(EconomyPort):
    """Balances per (owner, account) with a ledger of every movement."""

    def __init__(self) -> None:
        self._balances: dict[str, dict[str, int]] = defaultdict(lambda: defaultdict(int))
        self.ledger: list[tuple[str, str, int, str]] = []

    def deposit(self, owner_id: str, account: str, amount: int) -> None:
        self._balances[owner_id][account] += amount

    def get_balance(self, owner_id: str, account: str) -> int:
        return self._balances[owner_id][account]

    def charge(self, owner_id: str, account: str, amount: int, memo: str) -> bool:
        if amount < 0 or self._balances[owner_id][account] < amount:
            return False
        self._balances[owner_id][account] -= amount
        self.ledger.append((owner_id, account, -amount, memo))
        return True

    def refund(self, owner_id: str, account: str, amount: int, memo: str) -> bool:
        if amount < 0:
            return False
        self._balances[owner_id][account] += amount
        self.ledger.append((owner_id, account, amount, memo))
        return True

    def total(self, owner_id: str) -> int:
        return sum(self._balances[owner_id].values())


class RecordingNotifier(NotificationPort):
    """Keeps every notification and logs it."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, str, str]] = []

    def notify(self, owner_id: str, message: str, severity: str = "info") -> None:
        self.sent.append((owner_id, message, severity))
        logger.info("Notify", owner=owner_id, message=message, severity=severity)

    def messages_for(self, owner_id: str) -> list[str]:
        return [m for o, m, _ in self.sent if o == owner_id]
