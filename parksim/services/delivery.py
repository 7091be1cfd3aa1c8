"""
Vehicle delivery service.

Brings a parked vehicle to the player's location:
- VIP tier benefits (discount, hourly allowance, rush, NPC driver, faster ETA)
- Tips for faster delivery
- Pre/post hooks around "delivery:complete" so extensions can veto or react
- Cancellation with partial refund until shortly before arrival
"""

from __future__ import annotations

import math
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Optional

from parksim.collaborators.base import (
    EconomyPort,
    NotificationPort,
    PersistencePort,
    Player,
    pay_from,
)
from parksim.core.errors import ErrorKind, Outcome, ParkingError, ValidationError
from parksim.core.event_bus import EventBus, Priority
from parksim.core.sessions import Session, SessionManager
from parksim.infrastructure.config import DeliveryConfig, DeliveryTier, TipLevel
from parksim.infrastructure.logging import get_logger

logger = get_logger(__name__)

COMPLETE_OPERATION = "delivery:complete"


def find_street_spawn(
    coords: tuple[float, float, float],
    heading: float,
    distance: float = 12.0,
) -> tuple[float, float, float, float]:
    """
    Spawn point `distance` metres ahead of the player along their heading,
    facing back towards them.
    """
    rad = math.radians(heading)
    x, y, z = coords
    return (
        x - math.sin(rad) * distance,
        y + math.cos(rad) * distance,
        z,
        (heading + 180.0) % 360.0,
    )


class DeliveryService:
    """Request, complete and cancel vehicle deliveries."""

    KIND = "deliver"

    def __init__(
        self,
        sessions: SessionManager,
        economy: EconomyPort,
        persistence: PersistencePort,
        notifier: NotificationPort,
        config: Optional[DeliveryConfig] = None,
    ):
        self.sessions = sessions
        self.economy = economy
        self.persistence = persistence
        self.notifier = notifier
        self.config = config or DeliveryConfig()
        self._hourly_counts: dict[tuple[str, str], int] = defaultdict(int)
        self._delivered: dict[str, dict[str, Any]] = {}

        self.bus.subscribe("parking:unpark", self._on_unpark, Priority.HIGH)

    @property
    def bus(self) -> EventBus:
        return self.sessions.bus

    def get_player_tier(self, player: Player) -> tuple[str, DeliveryTier]:
        """Membership tier name and its benefits. Unknown tiers get bronze."""
        if not player.vip_tier:
            return "none", self.config.tiers["none"]
        tier = self.config.tiers.get(player.vip_tier)
        if tier is None:
            return "bronze", self.config.tiers.get("bronze", self.config.tiers["none"])
        return player.vip_tier, tier

    def _hour_key(self, owner: str) -> tuple[str, str]:
        hour = datetime.fromtimestamp(self.sessions.scheduler.now(), timezone.utc).strftime("%Y%m%d%H")
        return owner, hour

    def _prune_hourly_counts(self, current_hour: str) -> None:
        for key in [k for k in self._hourly_counts if k[1] != current_hour]:
            del self._hourly_counts[key]

    def quote(
        self,
        player: Player,
        rush: bool = False,
        tip_level: Optional[str] = "none",
    ) -> dict[str, Any]:
        """Price and ETA for a delivery, after tier and job adjustments."""
        tier_name, tier = self.get_player_tier(player)
        rush = rush and tier.rush_available
        tip = self.config.tips.get(tip_level or "none") or TipLevel()

        cost = self.config.base_cost
        minutes = self.config.standard_minutes
        if rush:
            cost = math.ceil(cost * self.config.rush_multiplier)
            minutes = self.config.rush_minutes

        if tier.discount > 0:
            cost = math.ceil(cost * (1 - tier.discount))

        job_discount = self.config.job_discounts.get(player.job, 0.0)
        if job_discount > 0:
            cost = math.ceil(cost * (1 - job_discount))

        cost += tip.amount

        if tier.priority_minutes > 0:
            minutes = max(1, minutes - tier.priority_minutes)

        delay = self.sessions.compute_delay(
            minutes * 60,
            tip_multiplier=tip.multiplier,
            priority_bonus=self.config.priority_bonus,
            privileged=player.is_vip,
        )
        return {"tier": tier_name, "rush": rush, "cost": cost, "minutes": minutes, "delay": delay}

    # ------------------------------------------------------------------
    # Request
    # ------------------------------------------------------------------

    def request(
        self,
        player: Player,
        plate: str,
        coords: tuple[float, float, float],
        heading: float = 0.0,
        rush: bool = False,
        with_driver: bool = False,
        tip_level: Optional[str] = "none",
    ) -> Outcome:
        """Order delivery of a parked vehicle to `coords`."""
        if not self.config.enabled:
            return Outcome.fail("Delivery service disabled")

        tier_name, tier = self.get_player_tier(player)
        if not tier.enabled:
            return Outcome.fail("Delivery not available for your membership tier", ErrorKind.AUTHORIZATION)

        try:
            vehicle = self.persistence.get_entity_state(plate)
            owner = self.persistence.get_owner(plate)
        except ParkingError as e:
            return Outcome.from_error(e)

        if not vehicle or vehicle.get("state") != "parked":
            return Outcome.fail("Vehicle is not parked")

        if owner != player.citizen_id:
            return Outcome.fail("You do not own this vehicle", ErrorKind.AUTHORIZATION)

        if self.sessions.find_by_subject(plate) is not None:
            return Outcome.fail("A delivery is already on its way for this vehicle")

        hour_key = self._hour_key(player.citizen_id)
        self._prune_hourly_counts(hour_key[1])
        if tier.max_per_hour > 0 and self._hourly_counts[hour_key] >= tier.max_per_hour:
            return Outcome.fail("Hourly delivery limit reached", ErrorKind.RESOURCE_EXHAUSTED)

        with_driver = with_driver and tier.npc_driver
        quote = self.quote(player, rush=rush, tip_level=tip_level)
        cost = quote["cost"]

        try:
            account = pay_from(self.economy, player.citizen_id, cost, "Vehicle delivery", self.config.payment_accounts)
        except ParkingError as e:
            return Outcome.from_error(e)
        if account is None:
            return Outcome.fail(f"Insufficient funds - ${cost} required", ErrorKind.INSUFFICIENT_FUNDS)

        destination = find_street_spawn(coords, heading, self.config.spawn_distance)
        session = self.sessions.create_session(
            self.KIND,
            player.citizen_id,
            plate,
            priority_class=1 if player.is_vip else 10,
            payload={
                "vehicle_data": vehicle,
                "destination": destination,
                "player_coords": coords,
                "rush": quote["rush"],
                "with_driver": with_driver,
                "tier": tier_name,
                "tip_level": tip_level or "none",
            },
            cost=cost,
            account=account,
            delay=quote["delay"],
        )
        self._hourly_counts[hour_key] += 1
        self.sessions.schedule_completion(session.id, on_complete=self._complete)

        label = "Rush delivery" if quote["rush"] else "Standard delivery"
        eta = int(session.delay)
        return Outcome.ok(
            f"{label} arriving in {eta} seconds - ${cost}",
            delivery_id=session.id,
            cost=cost,
            eta_seconds=eta,
            tier=tier_name,
            rush=quote["rush"],
            with_driver=with_driver,
        )

    # ------------------------------------------------------------------
    # Completion
    # ------------------------------------------------------------------

    def _complete(self, delivery_id: str) -> Outcome:
        outcome = self.sessions.complete_session(delivery_id, commit=self._commit)
        delivered = self._delivered.pop(delivery_id, None)
        if outcome.success and delivered is not None:
            self._after_delivery(delivered)
        return outcome

    def _commit(self, session: Session, _slot: Optional[int]) -> dict[str, Any]:
        proceed, hooked = self.bus.execute_pre_hooks(COMPLETE_OPERATION, {
            "delivery_id": session.id,
            "owner": session.owner,
            "plate": session.subject,
            "delivery": dict(session.payload),
            "vehicle_data": session.payload.get("vehicle_data"),
        })
        if not proceed:
            raise ValidationError("Delivery cancelled by an extension")

        hooked = hooked or {}
        delivery = hooked.get("delivery") or session.payload
        vehicle_data = hooked.get("vehicle_data") or session.payload.get("vehicle_data")

        if not vehicle_data:
            raise ValidationError(f"No vehicle data for {session.subject}")
        if not (vehicle_data.get("model") or vehicle_data.get("vehicle")):
            raise ValidationError(f"No model recorded for {session.subject}")

        destination = delivery.get("destination")
        self.persistence.set_entity_state(session.subject, {
            **vehicle_data,
            "state": "out",
            "location": destination,
        })

        self._delivered[session.id] = {
            "delivery_id": session.id,
            "owner": session.owner,
            "plate": session.subject,
            "cost": session.cost,
            "delivery": delivery,
            "vehicle_data": vehicle_data,
        }
        logger.info("Delivery completed", plate=session.subject, owner=session.owner)
        return {
            "plate": session.subject,
            "destination": destination,
            "with_driver": delivery.get("with_driver", False),
        }

    def _after_delivery(self, delivered: dict[str, Any]) -> None:
        """Side effects once the vehicle is out; none of them can undo the delivery."""
        owner = delivered["owner"]
        plate = delivered["plate"]
        delivery = delivered["delivery"]

        self.bus.execute_post_hooks(COMPLETE_OPERATION, {
            "delivery_id": delivered["delivery_id"],
            "owner": owner,
            "plate": plate,
            "delivery": delivery,
            "vehicle_data": delivered["vehicle_data"],
        })

        try:
            self.notifier.notify(owner, "Your vehicle has been delivered", "success")
            self.persistence.audit("delivery_complete", owner, plate, {
                "cost": delivered["cost"],
                "tier": delivery.get("tier"),
                "rush": delivery.get("rush"),
                "with_driver": delivery.get("with_driver"),
            })
        except ParkingError as e:
            logger.error("Delivery follow-up failed", delivery_id=delivered["delivery_id"], error=str(e))

    # ------------------------------------------------------------------
    # Cancellation & queries
    # ------------------------------------------------------------------

    def cancel(self, player: Player, delivery_id: str) -> Outcome:
        """Cancel a pending delivery for a partial refund."""
        session = self.sessions.get_session(delivery_id)
        if session is None or session.kind != self.KIND:
            return Outcome.fail("Delivery not found")
        outcome = self.sessions.cancel_session(delivery_id, player.citizen_id, admin=player.is_admin)
        if outcome.success:
            refund = outcome.data["refund"]
            return Outcome.ok(f"Delivery cancelled - refunded ${refund}", **outcome.data)
        return outcome

    def get_active(self, player: Player) -> list[dict[str, Any]]:
        now = self.sessions.scheduler.now()
        return [
            {
                "id": s.id,
                "plate": s.subject,
                "time_left": int(s.remaining(now)),
                "rush": s.payload.get("rush", False),
                "with_driver": s.payload.get("with_driver", False),
            }
            for s in self.sessions.sessions_for_owner(player.citizen_id, kind=self.KIND)
        ]

    def _on_unpark(self, data: dict[str, Any]) -> None:
        """A vehicle driven out of its spot by hand no longer needs delivering."""
        plate = data.get("plate")
        owner = data.get("owner")
        for session in self.sessions.store.find(subject=plate, kind=self.KIND):
            if owner is None or session.owner == owner:
                self.sessions.abort_session(session.id, "Vehicle unparked manually")
                logger.info("Delivery dropped, vehicle unparked", delivery_id=session.id, plate=plate)
