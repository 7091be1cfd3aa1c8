"""
Parking violations.

Tickets are issued by officers or automatically (expired meters, zone
violations), then paid, contested or dismissed. Unpaid tickets pick up a
late fee after the grace period.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

from parksim.collaborators.base import (
    EconomyPort,
    NotificationPort,
    PersistencePort,
    Player,
    pay_from,
)
from parksim.core.errors import ErrorKind, Outcome, ParkingError
from parksim.core.event_bus import EventBus, Priority
from parksim.core.ids import IdGenerator
from parksim.core.scheduler import Scheduler
from parksim.infrastructure.config import ViolationsConfig
from parksim.infrastructure.logging import get_logger
from parksim.integrations.permissions import PermissionPolicy

logger = get_logger(__name__)

SECONDS_PER_HOUR = 3600


class TicketStatus(Enum):
    UNPAID = "unpaid"
    PAID = "paid"
    CONTESTED = "contested"
    DISMISSED = "dismissed"


@dataclass
class Ticket:
    id: str
    plate: str
    owner: Optional[str]
    type: str
    type_label: str
    fine: int
    points: int
    issued_at: float
    issued_by: str
    location: Optional[tuple[float, float, float]] = None
    notes: Optional[str] = None
    status: TicketStatus = TicketStatus.UNPAID
    paid_at: Optional[float] = None
    paid_amount: Optional[int] = None
    contest_reason: Optional[str] = None
    dismissed_by: Optional[str] = None
    dismiss_reason: Optional[str] = None


class ViolationService:
    """Issue and settle parking tickets."""

    def __init__(
        self,
        bus: EventBus,
        scheduler: Scheduler,
        economy: EconomyPort,
        persistence: PersistencePort,
        notifier: NotificationPort,
        permissions: PermissionPolicy,
        config: Optional[ViolationsConfig] = None,
        ids: Optional[IdGenerator] = None,
    ):
        self.bus = bus
        self.scheduler = scheduler
        self.economy = economy
        self.persistence = persistence
        self.notifier = notifier
        self.permissions = permissions
        self.config = config or ViolationsConfig()
        self.ids = ids or IdGenerator(clock=scheduler.now)
        self.tickets: dict[str, Ticket] = {}

        self.bus.subscribe("meters:expired", self._on_meter_expired, Priority.NORMAL)
        self.bus.subscribe("zones:violation", self._on_zone_violation, Priority.NORMAL)

    def _is_late(self, ticket: Ticket) -> bool:
        hours = (self.scheduler.now() - ticket.issued_at) / SECONDS_PER_HOUR
        return hours > self.config.grace_period_hours

    def current_fine(self, ticket: Ticket) -> int:
        if ticket.status == TicketStatus.UNPAID and self._is_late(ticket):
            return math.floor(ticket.fine * self.config.late_fee_multiplier)
        return ticket.fine

    # ------------------------------------------------------------------
    # Issuing
    # ------------------------------------------------------------------

    def issue_ticket(
        self,
        issuer: Optional[Player],
        plate: str,
        violation_type: str,
        location: Optional[tuple[float, float, float]] = None,
        notes: Optional[str] = None,
    ) -> Outcome:
        """
        Issue a ticket against `plate`.

        `issuer` is None for automated tickets, which skip permission checks.
        """
        if issuer is not None:
            allowed, reason = self.permissions.has_permission(issuer, "issueTicket")
            if not allowed:
                return Outcome.fail(reason, ErrorKind.AUTHORIZATION)
        return self._write_ticket(issuer, plate, violation_type, location, notes)

    def issue_by_officer(
        self,
        officer: Player,
        plate: str,
        violation_type: str,
        notes: Optional[str] = None,
    ) -> Outcome:
        """Ticket written by hand; only the configured jobs may write one."""
        if officer.job not in self.config.authorized_jobs:
            return Outcome.fail("Not authorized to issue tickets", ErrorKind.AUTHORIZATION)
        return self._write_ticket(officer, plate, violation_type, None, notes)

    def _write_ticket(
        self,
        issuer: Optional[Player],
        plate: str,
        violation_type: str,
        location: Optional[tuple[float, float, float]],
        notes: Optional[str],
    ) -> Outcome:
        ticket_type = self.config.types.get(violation_type)
        if ticket_type is None:
            return Outcome.fail("Invalid violation type")

        owner = self.persistence.get_owner(plate)

        ticket = Ticket(
            id=self.ids.ticket_id(),
            plate=plate,
            owner=owner,
            type=violation_type,
            type_label=ticket_type.label,
            fine=ticket_type.fine,
            points=ticket_type.points,
            issued_at=self.scheduler.now(),
            issued_by=issuer.display_name if issuer else "Automated System",
            location=location,
            notes=notes,
        )
        self.tickets[ticket.id] = ticket

        self.persistence.audit("ticket_issued", owner, plate, {
            "ticket_id": ticket.id,
            "type": violation_type,
            "fine": ticket.fine,
            "issued_by": ticket.issued_by,
        })

        if owner:
            self.notifier.notify(
                owner,
                f"You received a parking ticket: {ticket_type.label} - ${ticket_type.fine}",
                "error",
            )

        logger.info("Ticket issued", ticket_id=ticket.id, plate=plate, type=violation_type)
        self.bus.publish("violations:ticketIssued", {
            "ticket_id": ticket.id,
            "plate": plate,
            "owner": owner,
            "type": violation_type,
            "fine": ticket.fine,
            "location": location,
        })
        return Outcome.ok(
            f"Ticket issued: {ticket_type.label} - ${ticket_type.fine}",
            ticket_id=ticket.id,
            fine=ticket.fine,
        )

    # ------------------------------------------------------------------
    # Settling
    # ------------------------------------------------------------------

    def _owned_ticket(self, player: Player, ticket_id: str) -> tuple[Optional[Ticket], Optional[Outcome]]:
        ticket = self.tickets.get(ticket_id)
        if ticket is None:
            return None, Outcome.fail("Ticket not found")
        if ticket.owner != player.citizen_id:
            return None, Outcome.fail("This is not your ticket", ErrorKind.AUTHORIZATION)
        return ticket, None

    def pay_ticket(self, player: Player, ticket_id: str) -> Outcome:
        ticket, error = self._owned_ticket(player, ticket_id)
        if error is not None:
            return error

        if ticket.status == TicketStatus.PAID:
            return Outcome.fail("Ticket already paid")
        if ticket.status == TicketStatus.DISMISSED:
            return Outcome.fail("Ticket was dismissed")

        fine = self.current_fine(ticket)
        try:
            account = pay_from(self.economy, player.citizen_id, fine, "Parking ticket payment", self.config.payment_accounts)
        except ParkingError as e:
            return Outcome.from_error(e)
        if account is None:
            return Outcome.fail(f"Insufficient funds - ${fine} required", ErrorKind.INSUFFICIENT_FUNDS)

        ticket.status = TicketStatus.PAID
        ticket.paid_at = self.scheduler.now()
        ticket.paid_amount = fine

        self.bus.publish("violations:ticketPaid", {
            "ticket_id": ticket_id,
            "owner": player.citizen_id,
            "amount": fine,
        })
        return Outcome.ok(f"Ticket paid: ${fine}", ticket_id=ticket_id, amount=fine)

    def contest_ticket(self, player: Player, ticket_id: str, reason: str) -> Outcome:
        ticket, error = self._owned_ticket(player, ticket_id)
        if error is not None:
            return error

        if ticket.status != TicketStatus.UNPAID:
            return Outcome.fail("Ticket cannot be contested")

        ticket.status = TicketStatus.CONTESTED
        ticket.contest_reason = reason

        self.bus.publish("violations:ticketContested", {
            "ticket_id": ticket_id,
            "owner": player.citizen_id,
            "reason": reason,
        })
        return Outcome.ok("Ticket contested - awaiting review", ticket_id=ticket_id)

    def dismiss_ticket(self, player: Player, ticket_id: str, reason: str) -> Outcome:
        """Admins and the court (judge, lawyer) may dismiss any ticket."""
        if not player.is_admin and player.job not in self.config.dismiss_jobs:
            return Outcome.fail("Not authorized", ErrorKind.AUTHORIZATION)

        ticket = self.tickets.get(ticket_id)
        if ticket is None:
            return Outcome.fail("Ticket not found")

        ticket.status = TicketStatus.DISMISSED
        ticket.dismissed_by = player.display_name
        ticket.dismiss_reason = reason

        if ticket.owner:
            self.notifier.notify(ticket.owner, "Your parking ticket has been dismissed", "success")

        self.bus.publish("violations:ticketDismissed", {
            "ticket_id": ticket_id,
            "owner": ticket.owner,
            "reason": reason,
        })
        return Outcome.ok("Ticket dismissed", ticket_id=ticket_id)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_player_tickets(self, owner: str) -> list[dict[str, Any]]:
        return [
            {
                "id": t.id,
                "plate": t.plate,
                "type": t.type_label,
                "fine": self.current_fine(t),
                "original_fine": t.fine,
                "status": t.status.value,
                "issued_at": t.issued_at,
                "is_late": self._is_late(t),
            }
            for t in self.tickets.values()
            if t.owner == owner
        ]

    def count_unpaid(self, owner: str) -> int:
        return sum(1 for t in self.tickets.values() if t.owner == owner and t.status == TicketStatus.UNPAID)

    def exceeds_unpaid_limit(self, owner: str) -> bool:
        return self.count_unpaid(owner) >= self.config.max_unpaid_tickets

    # ------------------------------------------------------------------
    # Automated tickets
    # ------------------------------------------------------------------

    def _on_meter_expired(self, data: dict[str, Any]) -> None:
        if not self.config.auto_ticket:
            return
        self.issue_ticket(None, data["plate"], "expired_meter", data.get("location"), "Automated: Meter expired")

    def _on_zone_violation(self, data: dict[str, Any]) -> None:
        if not self.config.auto_ticket:
            return
        violation_type = data.get("zone_type") or "no_parking"
        self.issue_ticket(None, data["plate"], violation_type, data.get("location"), "Automated: Zone violation")
