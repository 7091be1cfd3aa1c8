"""
Insurance capability provider.

One provider is selected at startup: NullInsurance when no insurance system
is present, InMemoryInsurance for local runs, or a server-specific subclass
of InsuranceProvider.
"""

from __future__ import annotations

import math
from abc import ABC, abstractmethod
from typing import Optional

from parksim.infrastructure.logging import get_logger

logger = get_logger(__name__)


class InsuranceProvider(ABC):
    """What parksim needs from an insurance system."""

    name: str = "insurance"

    @property
    def available(self) -> bool:
        return True

    @abstractmethod
    def is_insured(self, plate: str) -> bool:
        ...

    @abstractmethod
    def tier(self, plate: str) -> Optional[str]:
        ...

    @abstractmethod
    def process_claim(self, plate: str, claim_type: str, amount: int) -> tuple[bool, str]:
        ...


class NullInsurance(InsuranceProvider):
    """No insurance system installed."""

    name = "none"

    @property
    def available(self) -> bool:
        return False

    def is_insured(self, plate: str) -> bool:
        return False

    def tier(self, plate: str) -> Optional[str]:
        return None

    def process_claim(self, plate: str, claim_type: str, amount: int) -> tuple[bool, str]:
        return False, "No insurance system available"


class InMemoryInsurance(InsuranceProvider):
    """Policies kept in a dict, with a per-plate claim allowance."""

    name = "memory"

    def __init__(self) -> None:
        self._policies: dict[str, str] = {}
        self._claims_left: dict[str, int] = {}
        self.claims: list[tuple[str, str, int]] = []

    def insure(self, plate: str, tier: str = "basic", claims: int = 3) -> None:
        self._policies[plate] = tier
        self._claims_left[plate] = claims

    def is_insured(self, plate: str) -> bool:
        return plate in self._policies

    def tier(self, plate: str) -> Optional[str]:
        return self._policies.get(plate)

    def remaining_claims(self, plate: str) -> Optional[int]:
        return self._claims_left.get(plate)

    def process_claim(self, plate: str, claim_type: str, amount: int) -> tuple[bool, str]:
        if not self.is_insured(plate):
            return False, "Vehicle is not insured"
        if self._claims_left.get(plate, 0) <= 0:
            return False, "No claims remaining"
        self._claims_left[plate] -= 1
        self.claims.append((plate, claim_type, amount))
        logger.info("Insurance claim processed", plate=plate, claim_type=claim_type, amount=amount)
        return True, "Claim processed successfully"


def calculate_impound_discount(
    provider: InsuranceProvider,
    plate: str,
    fee: int,
    discounts: dict[str, float],
) -> tuple[int, int]:
    """
    Apply the insurance discount for `plate` to an impound fee.

    Unknown tiers fall back to the "basic" rate.

    Returns:
        (discounted_fee, discount_percent)
    """
    if not provider.available or not provider.is_insured(plate):
        return fee, 0

    tier = provider.tier(plate) or "basic"
    rate = discounts.get(tier, discounts.get("basic", 0.0))
    final_fee = max(0.0, fee - fee * rate)
    return math.floor(final_fee), math.floor(rate * 100)
