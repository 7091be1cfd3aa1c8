"""Interfaces for the external systems parksim depends on."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Iterable, Optional

from parksim.infrastructure.logging import get_logger

logger = get_logger(__name__)


@dataclass
class Player:
    """Identity and standing of whoever is making a request."""

    citizen_id: str
    name: str = ""
    job: str = "unemployed"
    grade: int = 0
    on_duty: bool = False
    vip_tier: Optional[str] = None
    is_admin: bool = False

    @property
    def is_vip(self) -> bool:
        return self.vip_tier is not None

    @property
    def display_name(self) -> str:
        return self.name or self.citizen_id


class PersistencePort(ABC):
    """
    Durable vehicle state.

    Implementations may raise CollaboratorError; callers treat that as an
    abort-and-refund path.
    """

    @abstractmethod
    def get_entity_state(self, key: str) -> Optional[dict[str, Any]]:
        """State stored for `key`, or None."""

    @abstractmethod
    def set_entity_state(self, key: str, state: dict[str, Any]) -> None:
        """Replace the state stored for `key`."""

    @abstractmethod
    def record_ownership(self, key: str, owner_id: str) -> None:
        """Record `owner_id` as the owner of `key`."""

    @abstractmethod
    def get_owner(self, key: str) -> Optional[str]:
        """Owner recorded for `key`, or None."""

    def owns(self, owner_id: str, key: str) -> bool:
        return self.get_owner(key) == owner_id

    def audit(self, action: str, actor: Optional[str], subject: str, details: dict[str, Any]) -> None:
        """Append an audit record. Default: log only."""
        logger.info("Audit", action=action, actor=actor, subject=subject, details=details)


class EconomyPort(ABC):
    """Player money, split into named accounts (cash, bank)."""

    @abstractmethod
    def get_balance(self, owner_id: str, account: str) -> int:
        ...

    @abstractmethod
    def charge(self, owner_id: str, account: str, amount: int, memo: str) -> bool:
        ...

    @abstractmethod
    def refund(self, owner_id: str, account: str, amount: int, memo: str) -> bool:
        ...


class NotificationPort(ABC):
    """Fire-and-forget player notifications."""

    @abstractmethod
    def notify(self, owner_id: str, message: str, severity: str = "info") -> None:
        ...


def pay_from(
    economy: EconomyPort,
    owner_id: str,
    amount: int,
    memo: str,
    accounts: Iterable[str] = ("cash", "bank"),
) -> Optional[str]:
    """
    Charge the first account whose balance covers `amount`.

    Returns:
        The account charged, or None if no account could pay.
    """
    if amount <= 0:
        return next(iter(accounts), None)

    for account in accounts:
        if economy.get_balance(owner_id, account) >= amount:
            if economy.charge(owner_id, account, amount, memo):
                return account
    return None
