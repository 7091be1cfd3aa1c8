"""
Valet service.

Valet drivers park and retrieve vehicles at fixed stands:
- One bounded resource per stand (its parking spots)
- Queue per stand with VIP priority
- Tips buy shorter waits
"""

from __future__ import annotations

from dataclasses import dataclass, field
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
from parksim.core.sessions import Session, SessionManager
from parksim.infrastructure.config import TipLevel, ValetConfig, ValetLocation
from parksim.infrastructure.logging import get_logger

logger = get_logger(__name__)


@dataclass
class ValetParking:
    """A vehicle currently held by the valet."""

    plate: str
    owner: str
    location_id: str
    spot_index: int
    parked_at: float
    vehicle_data: Optional[dict[str, Any]] = field(default=None)


class ValetService:
    """Park and retrieve vehicles through valet stands."""

    PARK = "park"
    RETRIEVE = "retrieve"

    def __init__(
        self,
        sessions: SessionManager,
        economy: EconomyPort,
        persistence: PersistencePort,
        notifier: NotificationPort,
        config: Optional[ValetConfig] = None,
    ):
        self.sessions = sessions
        self.economy = economy
        self.persistence = persistence
        self.notifier = notifier
        self.config = config or ValetConfig()
        self.parked: dict[str, ValetParking] = {}

        self._locations = {loc.id: loc for loc in self.config.locations}
        for loc in self.config.locations:
            self.sessions.register_resource(loc.id, capacity=loc.spots, max_queue=self.config.max_queue_per_location)

    @property
    def bus(self) -> EventBus:
        return self.sessions.bus

    def get_location(self, location_id: str) -> Optional[ValetLocation]:
        return self._locations.get(location_id)

    def get_locations(self) -> list[ValetLocation]:
        return list(self._locations.values())

    def _tip(self, table: dict[str, TipLevel], tip_level: Optional[str]) -> tuple[str, TipLevel]:
        level = tip_level or "none"
        return level, table.get(level) or TipLevel()

    # ------------------------------------------------------------------
    # Parking
    # ------------------------------------------------------------------

    def park_vehicle(
        self,
        player: Player,
        location_id: str,
        plate: str,
        tip_level: Optional[str] = "none",
    ) -> Outcome:
        """Hand a vehicle to the valet at `location_id`."""
        if not self.config.enabled:
            return Outcome.fail("Valet service is disabled")

        location = self.get_location(location_id)
        if location is None:
            return Outcome.fail("Invalid valet location")

        if not self.sessions.can_enqueue(location_id):
            return Outcome.fail("Valet queue is full - please try later", ErrorKind.RESOURCE_EXHAUSTED)

        try:
            owned = self.persistence.owns(player.citizen_id, plate)
        except ParkingError as e:
            return Outcome.from_error(e)
        if not owned:
            return Outcome.fail("You do not own this vehicle", ErrorKind.AUTHORIZATION)

        if plate in self.parked or self.sessions.find_by_subject(plate) is not None:
            return Outcome.fail("Vehicle is already with valet")

        tip_level, tip = self._tip(self.config.park_tips, tip_level)
        total = self.config.base_price + tip.amount

        try:
            account = pay_from(self.economy, player.citizen_id, total, "Valet parking", self.config.payment_accounts)
        except ParkingError as e:
            return Outcome.from_error(e)
        if account is None:
            return Outcome.fail(f"Insufficient funds - ${total} required", ErrorKind.INSUFFICIENT_FUNDS)

        rank = self.config.vip_rank if player.is_vip else self.config.standard_rank
        try:
            session = self.sessions.create_session(
                self.PARK,
                player.citizen_id,
                plate,
                priority_class=rank,
                payload={"location_id": location_id, "tip_level": tip_level},
                cost=total,
                account=account,
                base_duration=self.config.base_park_time,
                tip_multiplier=tip.multiplier,
                priority_bonus=self.config.vip_priority_bonus,
                privileged=player.is_vip,
                resource_id=location_id,
            )
        except ParkingError as e:
            self.economy.refund(player.citizen_id, account, total, "Valet parking - request rejected")
            return Outcome.from_error(e)

        self.sessions.schedule_completion(session.id, on_complete=self._complete_park)

        wait = int(session.delay)
        return Outcome.ok(
            f"Valet is parking your vehicle - {wait} seconds",
            session_id=session.id,
            wait_time=wait,
            cost=total,
            queue_position=self.sessions.get_queue_position(location_id, session.id),
        )

    def _complete_park(self, session_id: str) -> Outcome:
        return self.sessions.complete_session(session_id, commit=self._commit_park)

    def _commit_park(self, session: Session, spot_index: Optional[int]) -> dict[str, Any]:
        self.parked[session.subject] = ValetParking(
            plate=session.subject,
            owner=session.owner,
            location_id=session.resource_id or "",
            spot_index=spot_index or 0,
            parked_at=self.sessions.scheduler.now(),
        )
        self.notifier.notify(session.owner, "Your vehicle has been parked by valet", "success")
        return {"plate": session.subject, "location_id": session.resource_id, "spot_index": spot_index}

    # ------------------------------------------------------------------
    # Retrieval
    # ------------------------------------------------------------------

    def retrieve_vehicle(self, player: Player, plate: str, tip_level: Optional[str] = "none") -> Outcome:
        """Ask the valet to bring a parked vehicle back."""
        if not self.config.enabled:
            return Outcome.fail("Valet service is disabled")

        parking = self.parked.get(plate)
        if parking is None:
            return Outcome.fail("Vehicle is not parked with valet")

        if parking.owner != player.citizen_id:
            return Outcome.fail("You do not own this vehicle", ErrorKind.AUTHORIZATION)

        if self.sessions.find_by_subject(plate) is not None:
            return Outcome.fail("Valet is already handling this vehicle")

        tip_level, tip = self._tip(self.config.retrieve_tips, tip_level)
        total = self.config.retrieval_price + tip.amount

        try:
            account = pay_from(self.economy, player.citizen_id, total, "Valet retrieval", self.config.payment_accounts)
        except ParkingError as e:
            return Outcome.from_error(e)
        if account is None:
            return Outcome.fail(f"Insufficient funds - ${total} required", ErrorKind.INSUFFICIENT_FUNDS)

        session = self.sessions.create_session(
            self.RETRIEVE,
            player.citizen_id,
            plate,
            priority_class=self.config.vip_rank if player.is_vip else self.config.standard_rank,
            payload={"location_id": parking.location_id, "tip_level": tip_level},
            cost=total,
            account=account,
            base_duration=self.config.base_retrieve_time,
            tip_multiplier=tip.multiplier,
            priority_bonus=self.config.vip_priority_bonus,
            privileged=player.is_vip,
        )
        self.sessions.schedule_completion(session.id, on_complete=self._complete_retrieval)

        wait = int(session.delay)
        return Outcome.ok(
            f"Valet is retrieving your vehicle - {wait} seconds",
            session_id=session.id,
            wait_time=wait,
            cost=total,
        )

    def _complete_retrieval(self, session_id: str) -> Outcome:
        return self.sessions.complete_session(session_id, commit=self._commit_retrieval)

    def _commit_retrieval(self, session: Session, _slot: Optional[int]) -> dict[str, Any]:
        parking = self.parked.pop(session.subject, None)
        location_id = session.payload.get("location_id")
        if parking is not None:
            self.sessions.release_slot(parking.location_id, parking.plate)
            location_id = parking.location_id

        location = self.get_location(location_id) if location_id else None
        spawn_point = None
        if location is not None:
            spawn_point = location.retrieval_point or location.coords

        self.notifier.notify(session.owner, "Your vehicle has arrived", "success")
        return {
            "plate": session.subject,
            "location_id": location_id,
            "spawn_point": spawn_point,
            "vehicle_data": parking.vehicle_data if parking else None,
        }

    # ------------------------------------------------------------------
    # Misc
    # ------------------------------------------------------------------

    def cancel(self, player: Player, session_id: str) -> Outcome:
        return self.sessions.cancel_session(session_id, player.citizen_id, admin=player.is_admin)

    def store_vehicle_data(self, player: Player, plate: str, vehicle_data: dict[str, Any]) -> bool:
        """Attach the vehicle's properties once the valet has driven off."""
        parking = self.parked.get(plate)
        if parking is None or parking.owner != player.citizen_id:
            return False
        parking.vehicle_data = dict(vehicle_data)
        return True

    def get_player_vehicles(self, owner: str) -> list[dict[str, Any]]:
        return [
            {"plate": p.plate, "location_id": p.location_id, "parked_at": p.parked_at}
            for p in self.parked.values()
            if p.owner == owner
        ]

    def get_queue_position(self, location_id: str, session_id: str) -> int:
        return self.sessions.get_queue_position(location_id, session_id)
