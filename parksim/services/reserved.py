"""
Reserved parking spots.

Spot types:
- vip: any VIP member
- job: a job (optionally minimum grade and on duty)
- business: the business owner and its employees
- rental: whoever rented it, until the rental runs out
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, Optional

from parksim.collaborators.base import EconomyPort, Player, pay_from
from parksim.core.errors import ErrorKind, Outcome, ParkingError
from parksim.core.event_bus import EventBus, Priority
from parksim.core.scheduler import Scheduler
from parksim.infrastructure.config import ReservedConfig, ReservedSpotConfig
from parksim.infrastructure.logging import get_logger

logger = get_logger(__name__)

PARK_OPERATION = "parking:park"
SECONDS_PER_HOUR = 3600


@dataclass
class ReservedSpot:
    """Live state of a configured spot."""

    config: ReservedSpotConfig
    occupant: Optional[str] = None
    occupant_plate: Optional[str] = None
    occupied_at: Optional[float] = None
    rented_by: Optional[str] = None
    rental_expires: Optional[float] = None

    @property
    def id(self) -> str:
        return self.config.id

    @property
    def name(self) -> str:
        return self.config.name or f"Spot {self.config.id}"

    @property
    def type(self) -> str:
        return self.config.type


@dataclass
class Business:
    owner: str
    employees: set[str] = field(default_factory=set)


class ReservedService:
    """Access checks, occupancy and rentals for reserved spots."""

    def __init__(
        self,
        bus: EventBus,
        scheduler: Scheduler,
        economy: EconomyPort,
        config: Optional[ReservedConfig] = None,
    ):
        self.bus = bus
        self.scheduler = scheduler
        self.economy = economy
        self.config = config or ReservedConfig()
        self.spots: dict[str, ReservedSpot] = {s.id: ReservedSpot(config=s) for s in self.config.spots}
        self.businesses: dict[str, Business] = {}

        self.bus.register_pre_hook(PARK_OPERATION, self._guard_park, Priority.HIGH)
        logger.info("Reserved spots initialized", count=len(self.spots))

    def add_spot(self, spot: ReservedSpotConfig) -> ReservedSpot:
        reserved = ReservedSpot(config=spot)
        self.spots[spot.id] = reserved
        return reserved

    def register_business(self, business_id: str, owner: str, employees: Optional[list[str]] = None) -> None:
        self.businesses[business_id] = Business(owner=owner, employees=set(employees or ()))

    def _rental_active(self, spot: ReservedSpot) -> bool:
        return spot.rental_expires is not None and spot.rental_expires > self.scheduler.now()

    # ------------------------------------------------------------------
    # Access
    # ------------------------------------------------------------------

    def can_use_spot(self, player: Player, spot_id: str) -> tuple[bool, str]:
        """
        Check whether `player` may park in `spot_id`.

        Returns:
            (allowed, reason)
        """
        spot = self.spots.get(spot_id)
        if spot is None:
            return False, "Spot not found"

        if spot.rented_by and spot.rented_by != player.citizen_id:
            if self._rental_active(spot):
                return False, "Spot is rented by another player"
            spot.rented_by = None
            spot.rental_expires = None

        cfg = spot.config
        if spot.type == "vip":
            if not player.is_vip:
                return False, "VIP membership required"
            return True, "VIP access granted"

        if spot.type == "job":
            if player.job != cfg.required_job:
                return False, f"Requires {cfg.required_job} job"
            if cfg.required_grade is not None and player.grade < cfg.required_grade:
                return False, "Insufficient job grade"
            if cfg.require_on_duty and not player.on_duty:
                return False, "Must be on duty"
            return True, "Job access granted"

        if spot.type == "business":
            business = self.businesses.get(cfg.business_id or "")
            if business is not None:
                if business.owner == player.citizen_id:
                    return True, "Business owner access"
                if player.citizen_id in business.employees:
                    return True, "Employee access"
            return False, "Business access required"

        # rental
        if spot.rented_by == player.citizen_id:
            if self._rental_active(spot):
                return True, "Your rental"
            return False, "Rental expired"
        if not spot.rented_by:
            return False, "Spot available for rental"
        return False, "Spot rented by another"

    def occupy_spot(self, player: Player, spot_id: str, plate: str) -> Outcome:
        if not self.config.enabled:
            return Outcome.fail("Reserved parking is disabled")

        allowed, reason = self.can_use_spot(player, spot_id)
        if not allowed:
            return Outcome.fail(reason, ErrorKind.AUTHORIZATION)

        spot = self.spots[spot_id]
        if spot.occupant and spot.occupant != player.citizen_id:
            return Outcome.fail("Spot is occupied", ErrorKind.RESOURCE_EXHAUSTED)

        spot.occupant = player.citizen_id
        spot.occupant_plate = plate
        spot.occupied_at = self.scheduler.now()

        self.bus.publish("reserved:spotOccupied", {
            "spot_id": spot_id,
            "owner": player.citizen_id,
            "plate": plate,
        })
        return Outcome.ok("Reserved spot occupied", spot_id=spot_id)

    def vacate_spot(self, spot_id: str, plate: str) -> bool:
        spot = self.spots.get(spot_id)
        if spot is None or spot.occupant_plate != plate:
            return False

        spot.occupant = None
        spot.occupant_plate = None
        spot.occupied_at = None

        self.bus.publish("reserved:spotVacated", {"spot_id": spot_id, "plate": plate})
        return True

    # ------------------------------------------------------------------
    # Rentals
    # ------------------------------------------------------------------

    def rental_price(self, player: Player, hours: int) -> int:
        price = self.config.rental_price_per_hour * hours
        discount = self.config.vip_discounts.get(player.vip_tier or "", 0.0)
        if discount > 0:
            price = math.floor(price * (1 - discount))
        return price

    def rent_spot(self, player: Player, spot_id: str, hours: int) -> Outcome:
        """Rent a rental spot for up to `max_rental_hours`."""
        if not self.config.enabled:
            return Outcome.fail("Reserved parking is disabled")

        spot = self.spots.get(spot_id)
        if spot is None:
            return Outcome.fail("Spot not found")

        if spot.type != "rental":
            return Outcome.fail("This spot is not available for rental")

        if spot.rented_by and self._rental_active(spot):
            return Outcome.fail("Spot is currently rented", ErrorKind.RESOURCE_EXHAUSTED)

        if hours < 1:
            return Outcome.fail("Rental must be at least one hour")
        hours = min(hours, self.config.max_rental_hours)
        price = self.rental_price(player, hours)

        try:
            account = pay_from(self.economy, player.citizen_id, price, "Parking spot rental", self.config.payment_accounts)
        except ParkingError as e:
            return Outcome.from_error(e)
        if account is None:
            return Outcome.fail(f"Insufficient funds - ${price} required", ErrorKind.INSUFFICIENT_FUNDS)

        spot.rented_by = player.citizen_id
        spot.rental_expires = self.scheduler.now() + hours * SECONDS_PER_HOUR

        logger.info("Spot rented", spot_id=spot_id, owner=player.citizen_id, hours=hours, price=price)
        self.bus.publish("reserved:spotRented", {
            "spot_id": spot_id,
            "owner": player.citizen_id,
            "hours": hours,
            "price": price,
        })
        return Outcome.ok(
            f"Spot rented for {hours} hour(s) - ${price}",
            spot_id=spot_id,
            hours=hours,
            price=price,
            expires_at=spot.rental_expires,
        )

    def get_player_rentals(self, owner: str) -> list[dict[str, Any]]:
        now = self.scheduler.now()
        rentals = []
        for spot in self.spots.values():
            if spot.rented_by != owner:
                continue
            time_left = (spot.rental_expires or now) - now
            rentals.append({
                "spot_id": spot.id,
                "name": spot.name,
                "coords": spot.config.coords,
                "expires_at": spot.rental_expires,
                "time_left_minutes": max(0, math.floor(time_left / 60)),
            })
        return rentals

    def get_available_rentals(self) -> list[dict[str, Any]]:
        if not self.config.enabled:
            return []
        return [
            {
                "spot_id": spot.id,
                "name": spot.name,
                "coords": spot.config.coords,
                "price_per_hour": self.config.rental_price_per_hour,
            }
            for spot in self.spots.values()
            if spot.type == "rental" and (not spot.rented_by or not self._rental_active(spot))
        ]

    # ------------------------------------------------------------------
    # Enforcement
    # ------------------------------------------------------------------

    def check_violation(self, plate: str, spot_id: str, player: Optional[Player]) -> bool:
        """True if the vehicle's driver may not use the spot. Unknown driver counts as a violation."""
        if not self.config.enabled or spot_id not in self.spots:
            return False
        if player is None:
            return True
        allowed, _ = self.can_use_spot(player, spot_id)
        return not allowed

    def _guard_park(self, payload: dict[str, Any]) -> Any:
        if not self.config.enabled:
            return None

        spot_id = payload.get("spot_id")
        if not spot_id or spot_id not in self.spots:
            return None

        player: Player = payload["player"]
        outcome = self.occupy_spot(player, spot_id, payload.get("plate", ""))
        if not outcome.success:
            logger.info("Parking in reserved spot refused", spot_id=spot_id, reason=outcome.message)
            return False, {**payload, "reason": outcome.message}
        return True, payload
