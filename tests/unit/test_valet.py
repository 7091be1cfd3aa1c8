"""Tests for the valet service."""

from unittest.mock import MagicMock

import pytest

from parksim.core.errors import CollaboratorError, ErrorKind
from parksim.infrastructure.config import ValetConfig, ValetLocation
from parksim.services.valet import ValetService


@pytest.fixture
def valet_config():
    return ValetConfig(
        max_queue_per_location=3,
        locations=[
            ValetLocation(id="pillbox", name="Pillbox Hill Valet", spots=2, retrieval_point=(10.0, 20.0, 30.0)),
            ValetLocation(id="tiny", name="Tiny Valet", spots=1),
        ],
    )


@pytest.fixture
def valet(manager, economy, persistence, notifier, valet_config):
    return ValetService(manager, economy, persistence, notifier, valet_config)


@pytest.fixture
def funded(economy, persistence, player, vip_player):
    for p in (player, vip_player):
        economy.deposit(p.citizen_id, "cash", 1000)
        economy.deposit(p.citizen_id, "bank", 5000)
    persistence.register_vehicle("ABC123", player.citizen_id, model="sultan")
    persistence.register_vehicle("VIP001", vip_player.citizen_id, model="zentorno")


class TestParkVehicle:
    """Handing a vehicle to the valet."""

    def test_charges_base_plus_tip_from_cash(self, valet, economy, player, funded):
        outcome = valet.park_vehicle(player, "pillbox", "ABC123", "medium")

        assert outcome.success is True
        assert outcome.data["cost"] == 200
        assert outcome.data["wait_time"] == 15
        assert outcome.data["queue_position"] == 1
        assert economy.get_balance(player.citizen_id, "cash") == 800

    def test_vip_waits_less(self, valet, vip_player, funded):
        outcome = valet.park_vehicle(vip_player, "pillbox", "VIP001")
        assert outcome.data["wait_time"] == 15

    def test_falls_back_to_bank(self, valet, economy, player, funded):
        economy.charge(player.citizen_id, "cash", 950, "spend")
        valet.park_vehicle(player, "pillbox", "ABC123")
        assert economy.get_balance(player.citizen_id, "bank") == 4900

    def test_insufficient_funds(self, valet, player, persistence):
        persistence.register_vehicle("ABC123", player.citizen_id)
        outcome = valet.park_vehicle(player, "pillbox", "ABC123")
        assert outcome.kind == ErrorKind.INSUFFICIENT_FUNDS

    def test_rejects_unknown_location_and_foreign_vehicle(self, valet, player, vip_player, funded):
        assert valet.park_vehicle(player, "nowhere", "ABC123").message == "Invalid valet location"
        outcome = valet.park_vehicle(player, "pillbox", "VIP001")
        assert outcome.kind == ErrorKind.AUTHORIZATION

    def test_rejects_duplicate_request(self, valet, player, funded):
        assert valet.park_vehicle(player, "pillbox", "ABC123").success is True
        success, message = valet.park_vehicle(player, "pillbox", "ABC123")
        assert success is False
        assert message == "Vehicle is already with valet"

    def test_full_queue_rejected_before_charging(self, valet, economy, persistence, player, funded):
        for i in range(3):
            persistence.register_vehicle(f"Q{i}", player.citizen_id)
            assert valet.park_vehicle(player, "pillbox", f"Q{i}").success is True
        before = economy.total(player.citizen_id)

        outcome = valet.park_vehicle(player, "pillbox", "ABC123")

        assert outcome.kind == ErrorKind.RESOURCE_EXHAUSTED
        assert economy.total(player.citizen_id) == before

    def test_disabled(self, manager, economy, persistence, notifier, player):
        service = ValetService(manager, economy, persistence, notifier, ValetConfig(enabled=False))
        assert service.park_vehicle(player, "pillbox", "ABC123").message == "Valet service is disabled"

    def test_economy_failure_is_reported(self, valet, manager, economy, player, funded):
        economy.get_balance = MagicMock(side_effect=CollaboratorError("economy down"))

        outcome = valet.park_vehicle(player, "pillbox", "ABC123")

        assert outcome.success is False
        assert outcome.kind == ErrorKind.COLLABORATOR
        assert outcome.message == "economy down"
        assert manager.find_by_subject("ABC123") is None

    def test_ownership_lookup_failure_is_reported(self, valet, persistence, player, funded):
        persistence.owns = MagicMock(side_effect=CollaboratorError("database unavailable"))
        assert valet.park_vehicle(player, "pillbox", "ABC123").kind == ErrorKind.COLLABORATOR

    def test_completion_occupies_spot(self, valet, manager, scheduler, notifier, recorder, player, funded):
        outcome = valet.park_vehicle(player, "pillbox", "ABC123")
        scheduler.advance(outcome.data["wait_time"])

        assert valet.get_player_vehicles(player.citizen_id)[0]["plate"] == "ABC123"
        assert manager.get_resource("pillbox").slots == {1: "ABC123"}
        assert recorder.named("valet:completed")[0]["spot_index"] == 1
        assert "Your vehicle has been parked by valet" in notifier.messages_for(player.citizen_id)

    def test_full_stand_refunds(self, valet, economy, scheduler, persistence, recorder, player, vip_player, funded):
        valet.park_vehicle(player, "tiny", "ABC123")
        valet.park_vehicle(vip_player, "tiny", "VIP001")

        scheduler.advance(30)

        assert valet.parked.keys() == {"VIP001"}
        refunded = recorder.named("valet:refunded")
        assert refunded[0]["subject"] == "ABC123"
        assert economy.get_balance(player.citizen_id, "bank") == 5100


class TestRetrieveVehicle:
    """Bringing a vehicle back."""

    def test_round_trip(self, valet, manager, scheduler, economy, recorder, player, funded):
        park = valet.park_vehicle(player, "pillbox", "ABC123")
        scheduler.advance(park.data["wait_time"])
        assert valet.store_vehicle_data(player, "ABC123", {"model": "sultan", "fuel": 80}) is True

        outcome = valet.retrieve_vehicle(player, "ABC123", "large")

        assert outcome.success is True
        assert outcome.data["cost"] == 150
        assert outcome.data["wait_time"] == 11

        scheduler.advance(11)

        completed = recorder.named("valet:completed")[-1]
        assert completed["kind"] == "retrieve"
        assert completed["spawn_point"] == (10.0, 20.0, 30.0)
        assert completed["vehicle_data"] == {"model": "sultan", "fuel": 80}
        assert manager.get_resource("pillbox").slots == {}
        assert valet.get_player_vehicles(player.citizen_id) == []

    def test_not_parked(self, valet, player, funded):
        assert valet.retrieve_vehicle(player, "ABC123").message == "Vehicle is not parked with valet"

    def test_other_players_vehicle(self, valet, scheduler, player, vip_player, funded):
        valet.park_vehicle(player, "pillbox", "ABC123")
        scheduler.advance(60)
        assert valet.retrieve_vehicle(vip_player, "ABC123").kind == ErrorKind.AUTHORIZATION


class TestCancel:
    def test_cancel_refunds_partially(self, valet, manager, economy, player, funded):
        valet.config.base_park_time = 120
        outcome = valet.park_vehicle(player, "pillbox", "ABC123")

        cancelled = valet.cancel(player, outcome.data["session_id"])

        assert cancelled.success is True
        assert cancelled.data["refund"] == 75
        assert manager.store.queue_length("pillbox") == 0
        assert valet.get_queue_position("pillbox", outcome.data["session_id"]) == 0
