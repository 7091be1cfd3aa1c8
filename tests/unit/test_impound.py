"""Tests for the impound lot."""

from unittest.mock import MagicMock

import pytest

from parksim.collaborators import Player
from parksim.core.errors import CollaboratorError, ErrorKind
from parksim.integrations import InMemoryInsurance, PermissionPolicy
from parksim.services.impound import SECONDS_PER_DAY, ImpoundService


@pytest.fixture
def insurance():
    return InMemoryInsurance()


@pytest.fixture
def impound(bus, scheduler, economy, persistence, notifier, insurance):
    return ImpoundService(bus, scheduler, economy, persistence, notifier, PermissionPolicy(), insurance=insurance)


@pytest.fixture
def owned(economy, persistence, player):
    economy.deposit(player.citizen_id, "bank", 10_000)
    persistence.register_vehicle("ABC123", player.citizen_id, model="sultan")


class TestImpoundVehicle:
    def test_officer_impounds(self, impound, persistence, notifier, recorder, officer, player, owned):
        outcome = impound.impound_vehicle(officer, "ABC123", "traffic", notes="Ran a red light")

        assert outcome.success is True
        assert outcome.data["fee"] == 750
        assert persistence.get_entity_state("ABC123")["state"] == "impound"
        assert recorder.named("impound:vehicleImpounded")[0]["reason"] == "traffic"
        assert persistence.audit_log[-1].action == "impound"
        assert notifier.messages_for(player.citizen_id) == ["Your vehicle ABC123 was impounded: Traffic Violation"]

    def test_grade_too_low(self, impound, owned):
        rookie = Player("C5", job="police", grade=1, on_duty=True)
        outcome = impound.impound_vehicle(rookie, "ABC123", "parking")
        assert outcome.kind == ErrorKind.AUTHORIZATION

    def test_unknown_reason_is_parking(self, impound, officer, owned):
        assert impound.impound_vehicle(officer, "ABC123", "loitering").data["fee"] == 250

    def test_already_impounded(self, impound, officer, owned):
        impound.impound_vehicle(officer, "ABC123", "parking")
        assert impound.impound_vehicle(officer, "ABC123", "parking").success is False


class TestFees:
    def test_daily_increase_is_capped(self, impound, scheduler, officer, owned):
        impound.impound_vehicle(officer, "ABC123", "parking")

        scheduler.advance(3 * SECONDS_PER_DAY + 60)
        assert impound.calculate_fee("ABC123") == (550, 0, "Illegal Parking")

        scheduler.advance(30 * SECONDS_PER_DAY)
        assert impound.calculate_fee("ABC123")[0] == 250 + 10 * 100

    def test_insurance_discount(self, impound, insurance, officer, owned):
        insurance.insure("ABC123", "premium")
        impound.impound_vehicle(officer, "ABC123", "crime")

        assert impound.calculate_fee("ABC123") == (750, 50, "Criminal Activity")

    def test_impounded_without_record_pays_base_fee(self, impound, persistence, owned):
        persistence.set_entity_state("ABC123", {"state": "impound"})
        assert impound.calculate_fee("ABC123") == (500, 0, "Standard impound")

    def test_not_impounded(self, impound, owned):
        assert impound.calculate_fee("ABC123")[0] == 0


class TestRetrieve:
    def test_pays_and_releases(self, impound, economy, persistence, recorder, officer, player, owned):
        impound.impound_vehicle(officer, "ABC123", "parking")

        outcome = impound.retrieve_vehicle(player, "ABC123")

        assert outcome.success is True
        assert outcome.message == "Vehicle retrieved - Paid: $250"
        assert economy.get_balance(player.citizen_id, "bank") == 9750
        assert persistence.get_entity_state("ABC123")["state"] == "out"
        assert impound.get_details("ABC123") is None
        assert recorder.named("impound:vehicleRetrieved")[0]["fee"] == 250

    def test_insurance_claim_filed(self, impound, insurance, officer, player, owned):
        insurance.insure("ABC123", "standard")
        impound.impound_vehicle(officer, "ABC123", "traffic")

        outcome = impound.retrieve_vehicle(player, "ABC123")

        assert outcome.message == "Vehicle retrieved - Paid: $562 (25% insurance discount)"
        assert insurance.claims == [("ABC123", "impound", 562)]

    def test_must_own_vehicle(self, impound, officer, vip_player, owned):
        impound.impound_vehicle(officer, "ABC123", "parking")
        assert impound.retrieve_vehicle(vip_player, "ABC123").kind == ErrorKind.AUTHORIZATION

    def test_insufficient_funds(self, impound, economy, officer, player, owned):
        economy.charge(player.citizen_id, "bank", 9_900, "spend")
        impound.impound_vehicle(officer, "ABC123", "police")
        assert impound.retrieve_vehicle(player, "ABC123").kind == ErrorKind.INSUFFICIENT_FUNDS

    def test_economy_failure_is_reported(self, impound, economy, officer, player, owned):
        impound.impound_vehicle(officer, "ABC123", "parking")
        economy.get_balance = MagicMock(side_effect=CollaboratorError("economy down"))

        outcome = impound.retrieve_vehicle(player, "ABC123")

        assert outcome.kind == ErrorKind.COLLABORATOR
        assert impound.get_details("ABC123") is not None

    def test_persistence_failure_refunds(self, impound, economy, persistence, recorder, officer, player, owned):
        impound.impound_vehicle(officer, "ABC123", "parking")
        persistence.set_entity_state = MagicMock(side_effect=CollaboratorError("database unavailable"))

        outcome = impound.retrieve_vehicle(player, "ABC123")

        assert outcome.kind == ErrorKind.COLLABORATOR
        assert economy.get_balance(player.citizen_id, "bank") == 10_000
        assert recorder.named("impound:retrievalFailed")[0]["refund"] == 250
        assert impound.get_details("ABC123") is not None


class TestQueriesAndAdmin:
    def test_details_and_player_list(self, impound, scheduler, officer, player, owned):
        impound.impound_vehicle(officer, "ABC123", "abandoned", notes="Left for a week")
        scheduler.advance(SECONDS_PER_DAY)

        details = impound.get_details("ABC123")
        assert details["days_impounded"] == 1
        assert details["current_fee"] == 600
        assert details["impounded_by"] == "Officer Reyes"

        vehicles = impound.get_player_vehicles(player.citizen_id)
        assert [v["plate"] for v in vehicles] == ["ABC123"]

    def test_admin_release(self, impound, persistence, officer, player, owned):
        impound.impound_vehicle(officer, "ABC123", "crime")
        admin = Player("ADMIN", is_admin=True)

        assert impound.admin_release(player, "ABC123").kind == ErrorKind.AUTHORIZATION
        assert impound.admin_release(admin, "ABC123").success is True
        assert persistence.get_entity_state("ABC123")["state"] == "out"

    def test_lieutenant_may_release(self, impound, officer, owned):
        impound.impound_vehicle(officer, "ABC123", "parking")
        lieutenant = Player("C6", job="police", grade=4, on_duty=True)
        assert impound.admin_release(lieutenant, "ABC123").success is True
