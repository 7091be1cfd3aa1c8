"""Tests for the session/queue manager."""

from unittest.mock import MagicMock

import pytest

from parksim.core.errors import CollaboratorError, ErrorKind, ResourceExhaustedError, ValidationError
from parksim.core.ids import IdGenerator
from parksim.core.sessions import ResourcePool, SessionState, compute_delay


def _create(manager, subject="ABC123", owner="CIT001", **kwargs):
    params = {"cost": 100, "account": "cash", "base_duration": 60}
    params.update(kwargs)
    return manager.create_session("park", owner, subject, **params)


class TestComputeDelay:
    """delay = floor(base * tip * (1 - bonus if privileged)), min 5."""

    def test_tip_halves_delay(self):
        assert compute_delay(30, tip_multiplier=0.5) == 15

    def test_priority_bonus_only_for_privileged(self):
        assert compute_delay(30, priority_bonus=0.5, privileged=False) == 30
        assert compute_delay(30, priority_bonus=0.5, privileged=True) == 15

    def test_floors_to_whole_seconds(self):
        assert compute_delay(45, tip_multiplier=0.75) == 33

    def test_clamped_to_minimum(self):
        assert compute_delay(10, tip_multiplier=0.25) == 5
        assert compute_delay(10, tip_multiplier=0.25, minimum=1) == 2


class TestCreateAndComplete:
    """Creation, timers and completion."""

    def test_completes_fifteen_seconds_after_creation(self, manager, scheduler, recorder):
        created_at = scheduler.now()
        session = _create(manager, base_duration=30, tip_multiplier=0.5)

        assert session.delay == 15
        assert session.completes_at == created_at + 15
        assert recorder.named("valet:requested")[0]["session_id"] == session.id

        manager.schedule_completion(session.id)
        scheduler.advance(14)
        assert manager.get_session(session.id) is not None

        scheduler.advance(1)
        assert manager.get_session(session.id) is None
        assert len(recorder.named("valet:completed")) == 1

    def test_session_ids_are_unique_within_a_clock_tick(self, manager):
        first = _create(manager)
        manager.complete_session(first.id)
        second = _create(manager)
        assert first.id != second.id

    def test_id_format(self):
        ids = IdGenerator(run_id="run1", clock=lambda: 12.5)
        assert ids.session_id("park", "CIT1", "ABC") == "park:run1:CIT1:ABC:12500:1"
        assert ids.ticket_id() == "TKT_run1_12_2"

    def test_needs_delay_or_duration(self, manager):
        with pytest.raises(ValidationError):
            manager.create_session("park", "CIT001", "ABC123", cost=10)

    def test_explicit_delay_wins(self, manager, scheduler):
        session = manager.create_session("deliver", "CIT001", "ABC123", delay=75)
        assert session.completes_at == scheduler.now() + 75

    def test_complete_twice_is_noop(self, manager, recorder):
        session = _create(manager)

        first = manager.complete_session(session.id)
        second = manager.complete_session(session.id)

        assert first.success is True
        assert second.success is False
        assert len(recorder.named("valet:completed")) == 1
        assert manager.stats["committed"] == 1

    def test_commit_result_merged_into_event(self, manager, recorder):
        session = _create(manager)
        outcome = manager.complete_session(session.id, commit=lambda s, slot: {"spawn": (1, 2, 3)})

        assert outcome.data["spawn"] == (1, 2, 3)
        assert recorder.named("valet:completed")[0]["spawn"] == (1, 2, 3)

    def test_collaborator_failure_refunds_in_full(self, manager, economy, recorder):
        session = _create(manager, cost=150)

        def commit(s, slot):
            raise CollaboratorError("database down")

        outcome = manager.complete_session(session.id, commit=commit)

        assert outcome.success is False
        assert outcome.kind == ErrorKind.COLLABORATOR
        assert economy.get_balance("CIT001", "bank") == 150
        refunded = recorder.named("valet:refunded")
        assert refunded[0]["refund"] == 150
        assert refunded[0]["refund_ok"] is True
        assert manager.get_session(session.id) is None

    def test_unexpected_commit_error_refunds(self, manager, economy):
        session = _create(manager, cost=40)
        outcome = manager.complete_session(session.id, commit=MagicMock(side_effect=KeyError("x")))

        assert outcome.kind == ErrorKind.COLLABORATOR
        assert economy.get_balance("CIT001", "bank") == 40

    def test_rejected_refund_is_reported(self, manager, recorder):
        manager.economy = MagicMock()
        manager.economy.refund.return_value = False
        session = _create(manager, cost=80)

        manager.complete_session(session.id, commit=MagicMock(side_effect=CollaboratorError("down")))

        assert recorder.named("valet:refunded")[0]["refund_ok"] is False
        assert manager.get_session(session.id) is None


class TestCancel:
    """Partial refunds inside the grace rules."""

    def test_refunds_75_percent_and_leaves_no_queue_entry(self, manager, scheduler, economy, recorder):
        manager.register_resource("pillbox", capacity=2)
        session = _create(manager, cost=150, resource_id="pillbox")
        manager.schedule_completion(session.id)

        outcome = manager.cancel_session(session.id, "CIT001")

        assert outcome.success is True
        assert outcome.data["refund"] == 112
        assert economy.get_balance("CIT001", "bank") == 112
        assert manager.store.queue_length("pillbox") == 0
        assert manager.get_queue_position("pillbox", session.id) == 0

        scheduler.advance(120)
        assert recorder.named("valet:completed") == []
        assert recorder.named("valet:cancelled")[0]["refund"] == 112

    def test_only_owner_or_admin(self, manager):
        session = _create(manager)

        outcome = manager.cancel_session(session.id, "CIT999")
        assert outcome.kind == ErrorKind.AUTHORIZATION

        assert manager.cancel_session(session.id, "CIT999", admin=True).success is True

    def test_refused_inside_grace_window(self, manager, scheduler):
        session = _create(manager, base_duration=60)
        scheduler.advance(31)

        success, message = manager.cancel_session(session.id, "CIT001")

        assert success is False
        assert "Too late" in message
        assert manager.get_session(session.id) is not None

    def test_unknown_session(self, manager):
        assert manager.cancel_session("missing", "CIT001").success is False

    def test_abort_without_refund(self, manager, economy, recorder):
        session = _create(manager, cost=100)

        assert manager.abort_session(session.id, "superseded") is True
        assert economy.total("CIT001") == 0
        assert recorder.named("valet:cancelled")[0]["reason"] == "superseded"
        assert manager.abort_session(session.id, "again") is False


class TestResources:
    """Bounded slots and priority queues."""

    def test_pool_allocates_lowest_free_slot(self):
        pool = ResourcePool(id="lot", capacity=3)
        assert pool.allocate("A") == 1
        assert pool.allocate("B") == 2
        pool.release("A")
        assert pool.allocate("C") == 1
        assert pool.allocate("D") == 3
        assert pool.allocate("E") is None
        assert pool.is_full is True

    def test_n_plus_one_is_refunded(self, manager, economy, recorder):
        manager.register_resource("lot", capacity=2)
        sessions = [_create(manager, subject=f"PLATE{i}", cost=100, resource_id="lot") for i in range(3)]

        outcomes = [manager.complete_session(s.id) for s in sessions]

        assert [o.success for o in outcomes] == [True, True, False]
        assert outcomes[2].kind == ErrorKind.RESOURCE_EXHAUSTED
        assert economy.get_balance("CIT001", "bank") == 100
        refunded = recorder.named("valet:refunded")
        assert len(refunded) == 1
        assert refunded[0]["subject"] == "PLATE2"
        assert refunded[0]["refund"] == 100
        assert len(recorder.named("valet:completed")) == 2

    def test_queue_full_rejects(self, manager):
        manager.register_resource("lot", capacity=1, max_queue=1)
        _create(manager, subject="A", resource_id="lot")

        assert manager.can_enqueue("lot") is False
        with pytest.raises(ResourceExhaustedError):
            _create(manager, subject="B", resource_id="lot")

    def test_unknown_resource(self, manager):
        with pytest.raises(ValidationError):
            _create(manager, resource_id="nowhere")

    def test_vip_served_first_when_standard_arrives_first(self, manager):
        manager.register_resource("stand", capacity=1)
        standard = _create(manager, subject="STD", owner="CIT001", priority_class=10, resource_id="stand")
        vip = _create(manager, subject="VIP", owner="CIT002", priority_class=1, resource_id="stand")

        assert manager.get_queue_position("stand", vip.id) == 1
        assert manager.get_queue_position("stand", standard.id) == 2
        assert vip.state == SessionState.QUEUED

    def test_vip_served_first_when_vip_arrives_first(self, manager):
        manager.register_resource("stand", capacity=1)
        vip = _create(manager, subject="VIP", owner="CIT002", priority_class=1, resource_id="stand")
        standard = _create(manager, subject="STD", owner="CIT001", priority_class=10, resource_id="stand")

        assert manager.get_queue_position("stand", vip.id) == 1
        assert manager.get_queue_position("stand", standard.id) == 2

    def test_standard_keeps_slot_it_already_took(self, manager, economy):
        manager.register_resource("stand", capacity=1)
        standard = _create(manager, subject="STD", owner="CIT001", priority_class=10, resource_id="stand")
        assert manager.complete_session(standard.id).data["slot"] == 1

        vip = _create(manager, subject="VIP", owner="CIT002", priority_class=1, resource_id="stand", cost=100)
        assert manager.get_queue_position("stand", vip.id) == 1

        outcome = manager.complete_session(vip.id)
        assert outcome.kind == ErrorKind.RESOURCE_EXHAUSTED
        assert manager.get_resource("stand").slots == {1: "STD"}
        assert economy.get_balance("CIT002", "bank") == 100

    def test_equal_rank_is_first_come_first_served(self, manager):
        manager.register_resource("stand", capacity=1)
        first = _create(manager, subject="A", resource_id="stand")
        second = _create(manager, subject="B", resource_id="stand")

        assert manager.get_queue_position("stand", first.id) == 1
        assert manager.get_queue_position("stand", second.id) == 2


class TestSweeper:
    """Recovery of sessions whose timer was lost."""

    def test_sweep_completes_stuck_session(self, manager, scheduler, recorder):
        session = _create(manager, base_duration=20)
        manager.schedule_completion(session.id)
        manager.store.timers[session.id].cancel()

        scheduler.advance(20 + 30)
        assert manager.sweep_expired() == 0

        scheduler.advance(31)
        assert manager.sweep_expired() == 1
        assert manager.get_session(session.id) is None
        assert len(recorder.named("valet:completed")) == 1
        assert manager.stats["swept"] == 1

    def test_periodic_sweeper(self, manager, scheduler):
        session = _create(manager, base_duration=10)
        manager.start_sweeper(30)

        scheduler.advance(90)

        assert manager.get_session(session.id) is None
        manager.stop_sweeper()
        assert scheduler.pending == 0
