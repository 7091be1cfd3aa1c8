"""
Enforcement permissions.

Maps an enforcement job and grade to the parking actions it may perform
(issue tickets, impound, release, dismiss). The grade matrix comes from
PermissionsConfig; a server swaps in its own job table there.
"""

from __future__ import annotations

from parksim.collaborators.base import Player
from parksim.infrastructure.config import PermissionsConfig
from parksim.infrastructure.logging import get_logger

logger = get_logger(__name__)


GRADE_NAMES = {
    0: "Recruit",
    1: "Officer",
    2: "Senior Officer",
    3: "Sergeant",
    4: "Lieutenant",
    5: "Captain",
    6: "Commander",
    7: "Chief",
}

ACTION_LABELS = {
    "issueTicket": "Issue Parking Ticket",
    "checkMeters": "Check Parking Meters",
    "bootVehicle": "Boot Vehicle",
    "impoundVehicle": "Impound Vehicle (Parking)",
    "impoundCriminal": "Impound Vehicle (Criminal)",
    "releaseImpound": "Release from Impound",
    "viewTicketHistory": "View Ticket History",
    "dismissTicket": "Dismiss Ticket",
}


def grade_name(grade: int) -> str:
    return GRADE_NAMES.get(grade, f"Grade {grade}")


class PermissionPolicy:
    """Grade-matrix permission checks for enforcement jobs."""

    def __init__(self, config: PermissionsConfig | None = None):
        self.config = config or PermissionsConfig()

    def is_enforcement(self, player: Player) -> bool:
        return player.job in self.config.enforcement_jobs

    def has_permission(self, player: Player, action: str) -> tuple[bool, str]:
        """
        Check whether `player` may perform `action`.

        Returns:
            (allowed, reason)
        """
        job_config = self.config.enforcement_jobs.get(player.job)
        if job_config is None:
            return False, "Not an enforcement job"

        required = job_config.get(action)
        if required is None:
            return False, "Action not permitted for this job"

        if player.grade < required:
            return False, f"Requires {grade_name(required)} or higher"

        if self.config.require_on_duty and not player.on_duty:
            return False, "Must be on duty"

        return True, "Authorized"

    def can_impound(self, player: Player, reason: str) -> tuple[bool, str]:
        action = self.config.impound_reasons.get(reason, "impoundVehicle")
        return self.has_permission(player, action)

    def get_player_permissions(self, player: Player) -> dict[str, dict]:
        permissions = {}
        for action, label in ACTION_LABELS.items():
            allowed, reason = self.has_permission(player, action)
            permissions[action] = {"allowed": allowed, "reason": reason, "label": label}
        return permissions
