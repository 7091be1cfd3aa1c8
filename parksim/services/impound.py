"""
Impound lot.

Police impound vehicles for a reason tier; owners pay to get them back:
- Fee by offense, plus a capped daily increase
- Insurance discount and claim on retrieval
- Admin release without fee
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Optional

from parksim.collaborators.base import (
    EconomyPort,
    NotificationPort,
    PersistencePort,
    Player,
    pay_from,
)
from parksim.core.errors import ErrorKind, Outcome, ParkingError
from parksim.core.event_bus import EventBus
from parksim.core.scheduler import Scheduler
from parksim.infrastructure.config import ImpoundConfig, InsuranceConfig
from parksim.infrastructure.logging import get_logger
from parksim.integrations.insurance import (
    InsuranceProvider,
    NullInsurance,
    calculate_impound_discount,
)
from parksim.integrations.permissions import PermissionPolicy

logger = get_logger(__name__)

SECONDS_PER_DAY = 86400


@dataclass
class ImpoundRecord:
    plate: str
    reason: str
    reason_label: str
    base_fee: int
    impounded_at: float
    impounded_by: str
    notes: Optional[str] = None


class ImpoundService:
    """Impound, price and release vehicles."""

    def __init__(
        self,
        bus: EventBus,
        scheduler: Scheduler,
        economy: EconomyPort,
        persistence: PersistencePort,
        notifier: NotificationPort,
        permissions: PermissionPolicy,
        insurance: Optional[InsuranceProvider] = None,
        config: Optional[ImpoundConfig] = None,
        insurance_config: Optional[InsuranceConfig] = None,
    ):
        self.bus = bus
        self.scheduler = scheduler
        self.economy = economy
        self.persistence = persistence
        self.notifier = notifier
        self.permissions = permissions
        self.insurance = insurance or NullInsurance()
        self.config = config or ImpoundConfig()
        self.insurance_config = insurance_config or InsuranceConfig()
        self.vehicles: dict[str, ImpoundRecord] = {}

    def _is_impounded(self, plate: str) -> bool:
        if plate in self.vehicles:
            return True
        state = self.persistence.get_entity_state(plate) or {}
        return state.get("state") == "impound"

    def _days_impounded(self, record: ImpoundRecord) -> int:
        return math.floor((self.scheduler.now() - record.impounded_at) / SECONDS_PER_DAY)

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def impound_vehicle(
        self,
        officer: Player,
        plate: str,
        reason: str,
        notes: Optional[str] = None,
    ) -> Outcome:
        """Impound `plate`. Unknown reasons are treated as illegal parking."""
        allowed, why = self.permissions.can_impound(officer, reason)
        if not allowed:
            return Outcome.fail(why, ErrorKind.AUTHORIZATION)

        if plate in self.vehicles:
            return Outcome.fail("Vehicle is already impounded")

        if reason not in self.config.reasons:
            reason = "parking"
        tier = self.config.reasons[reason]

        try:
            state = self.persistence.get_entity_state(plate) or {}
            self.persistence.set_entity_state(plate, {**state, "state": "impound"})
        except ParkingError as e:
            logger.error("Impound persistence failed", plate=plate, error=str(e))
            return Outcome.from_error(e)

        self.vehicles[plate] = ImpoundRecord(
            plate=plate,
            reason=reason,
            reason_label=tier.label,
            base_fee=tier.fee,
            impounded_at=self.scheduler.now(),
            impounded_by=officer.display_name,
            notes=notes,
        )

        self.persistence.audit("impound", officer.citizen_id, plate, {
            "reason": reason,
            "fee": tier.fee,
            "officer": officer.display_name,
            "notes": notes,
        })

        owner = self.persistence.get_owner(plate)
        if owner:
            self.notifier.notify(owner, f"Your vehicle {plate} was impounded: {tier.label}", "error")

        logger.info("Vehicle impounded", plate=plate, reason=reason, fee=tier.fee)
        self.bus.publish("impound:vehicleImpounded", {
            "plate": plate,
            "reason": reason,
            "fee": tier.fee,
            "officer": officer.citizen_id,
        })
        return Outcome.ok(f"Vehicle {plate} impounded for: {tier.label}", plate=plate, fee=tier.fee)

    def calculate_fee(self, plate: str) -> tuple[int, int, str]:
        """
        Current release fee.

        Returns:
            (fee, insurance discount percent, reason label)
        """
        record = self.vehicles.get(plate)
        if record is None:
            if not self._is_impounded(plate):
                return 0, 0, "Vehicle not impounded"
            return self.config.base_fee, 0, "Standard impound"

        days = min(self._days_impounded(record), self.config.max_daily_fees)
        total = record.base_fee + days * self.config.daily_fee_increase

        fee, discount = calculate_impound_discount(
            self.insurance, plate, total, self.insurance_config.discounts
        )
        return fee, discount, record.reason_label

    def retrieve_vehicle(self, player: Player, plate: str) -> Outcome:
        """Pay the fee and release an impounded vehicle to its owner."""
        try:
            owned = self.persistence.owns(player.citizen_id, plate)
            impounded = owned and self._is_impounded(plate)
        except ParkingError as e:
            return Outcome.from_error(e)
        if not owned:
            return Outcome.fail("You do not own this vehicle", ErrorKind.AUTHORIZATION)
        if not impounded:
            return Outcome.fail("Vehicle is not impounded")

        fee, discount, _ = self.calculate_fee(plate)

        try:
            account = pay_from(self.economy, player.citizen_id, fee, "Impound fee", self.config.payment_accounts)
        except ParkingError as e:
            return Outcome.from_error(e)
        if account is None:
            return Outcome.fail(f"Insufficient funds - ${fee} required", ErrorKind.INSUFFICIENT_FUNDS)

        try:
            state = self.persistence.get_entity_state(plate) or {}
            self.persistence.set_entity_state(plate, {**state, "state": "out"})
        except ParkingError as e:
            logger.error("Impound release failed, refunding", plate=plate, error=str(e))
            if fee > 0:
                self.economy.refund(player.citizen_id, account, fee, "Impound fee refund")
            self.bus.publish("impound:retrievalFailed", {"plate": plate, "owner": player.citizen_id, "refund": fee})
            return Outcome.from_error(e, refund=fee)

        if discount > 0:
            self.insurance.process_claim(plate, "impound", fee)

        self.vehicles.pop(plate, None)

        self.persistence.audit("impound_retrieve", player.citizen_id, plate, {"fee": fee, "discount": discount})
        self.bus.publish("impound:vehicleRetrieved", {
            "plate": plate,
            "owner": player.citizen_id,
            "fee": fee,
            "discount": discount,
        })

        message = f"Vehicle retrieved - Paid: ${fee}"
        if discount > 0:
            message += f" ({discount}% insurance discount)"
        return Outcome.ok(message, plate=plate, fee=fee, discount=discount)

    def get_details(self, plate: str) -> Optional[dict[str, Any]]:
        record = self.vehicles.get(plate)
        if record is None:
            return None

        fee, discount, _ = self.calculate_fee(plate)
        return {
            "plate": plate,
            "reason": record.reason_label,
            "impounded_at": record.impounded_at,
            "days_impounded": self._days_impounded(record),
            "base_fee": record.base_fee,
            "current_fee": fee,
            "insurance_discount": discount,
            "notes": record.notes,
            "impounded_by": record.impounded_by,
        }

    def get_player_vehicles(self, owner: str) -> list[dict[str, Any]]:
        vehicles = []
        for plate, record in self.vehicles.items():
            if not self.persistence.owns(owner, plate):
                continue
            fee, discount, _ = self.calculate_fee(plate)
            vehicles.append({
                "plate": plate,
                "reason": record.reason_label,
                "fee": fee,
                "discount": discount,
                "impounded_at": record.impounded_at,
            })
        return vehicles

    def admin_release(self, player: Player, plate: str) -> Outcome:
        """Release without a fee. Admins, or officers allowed to release."""
        allowed = player.is_admin or self.permissions.has_permission(player, "releaseImpound")[0]
        if not allowed:
            return Outcome.fail("Not authorized", ErrorKind.AUTHORIZATION)

        try:
            state = self.persistence.get_entity_state(plate) or {}
            self.persistence.set_entity_state(plate, {**state, "state": "out"})
        except ParkingError as e:
            return Outcome.from_error(e)

        self.vehicles.pop(plate, None)
        self.persistence.audit("impound_admin_release", player.citizen_id, plate, {"admin": player.display_name})
        self.bus.publish("impound:vehicleReleased", {"plate": plate, "released_by": player.citizen_id})
        return Outcome.ok("Vehicle released by admin", plate=plate)
