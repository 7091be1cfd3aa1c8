"""Tests for enforcement permissions and insurance discounts."""

from parksim.collaborators import Player
from parksim.infrastructure.config import PermissionsConfig
from parksim.integrations import (
    InMemoryInsurance,
    NullInsurance,
    PermissionPolicy,
    calculate_impound_discount,
    grade_name,
)

DISCOUNTS = {"basic": 0.10, "standard": 0.25, "premium": 0.50, "full": 1.0}


class TestPermissionPolicy:
    def test_non_enforcement_job(self):
        policy = PermissionPolicy()
        allowed, reason = policy.has_permission(Player("C1", job="mechanic", on_duty=True), "issueTicket")
        assert allowed is False
        assert reason == "Not an enforcement job"

    def test_grade_requirement(self):
        policy = PermissionPolicy()
        cadet = Player("C1", job="police", grade=0, on_duty=True)

        allowed, reason = policy.has_permission(cadet, "issueTicket")

        assert allowed is False
        assert reason == "Requires Officer or higher"

    def test_on_duty_required(self):
        policy = PermissionPolicy()
        off_duty = Player("C1", job="police", grade=5, on_duty=False)
        assert policy.has_permission(off_duty, "issueTicket") == (False, "Must be on duty")

        relaxed = PermissionPolicy(PermissionsConfig(require_on_duty=False))
        assert relaxed.has_permission(off_duty, "issueTicket")[0] is True

    def test_impound_reason_maps_to_action(self):
        policy = PermissionPolicy()
        sergeant = Player("C1", job="police", grade=3, on_duty=True)
        senior = Player("C2", job="police", grade=2, on_duty=True)

        assert policy.can_impound(sergeant, "parking")[0] is True
        # crime needs impoundCriminal (grade 2); parking needs impoundVehicle (grade 3)
        assert policy.can_impound(senior, "crime")[0] is True
        assert policy.can_impound(senior, "parking")[0] is False

    def test_player_permission_summary(self, officer):
        permissions = PermissionPolicy().get_player_permissions(officer)
        assert permissions["issueTicket"]["allowed"] is True
        assert permissions["dismissTicket"]["allowed"] is False
        assert permissions["dismissTicket"]["label"] == "Dismiss Ticket"

    def test_grade_names(self):
        assert grade_name(0) == "Recruit"
        assert grade_name(7) == "Chief"
        assert grade_name(12) == "Grade 12"


class TestInsurance:
    def test_no_provider_means_no_discount(self):
        assert calculate_impound_discount(NullInsurance(), "ABC123", 750, DISCOUNTS) == (750, 0)

    def test_uninsured_vehicle(self):
        assert calculate_impound_discount(InMemoryInsurance(), "ABC123", 750, DISCOUNTS) == (750, 0)

    def test_tier_discount_is_floored(self):
        insurance = InMemoryInsurance()
        insurance.insure("ABC123", "standard")
        assert calculate_impound_discount(insurance, "ABC123", 750, DISCOUNTS) == (562, 25)

    def test_unknown_tier_uses_basic(self):
        insurance = InMemoryInsurance()
        insurance.insure("ABC123", "mystery")
        assert calculate_impound_discount(insurance, "ABC123", 500, DISCOUNTS) == (450, 10)

    def test_claims_run_out(self):
        insurance = InMemoryInsurance()
        insurance.insure("ABC123", "full", claims=1)

        assert insurance.process_claim("ABC123", "impound", 0)[0] is True
        assert insurance.process_claim("ABC123", "impound", 0) == (False, "No claims remaining")
        assert insurance.remaining_claims("ABC123") == 0
