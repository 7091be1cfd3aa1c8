"""Shared fixtures: virtual clock, bus and in-memory collaborators."""

import pytest

from parksim.collaborators import InMemoryEconomy, InMemoryPersistence, Player, RecordingNotifier
from parksim.core.event_bus import EventBus
from parksim.core.ids import IdGenerator
from parksim.core.scheduler import ManualScheduler
from parksim.core.sessions import SessionManager, SessionStore
from parksim.infrastructure.config import SessionConfig


class EventRecorder:
    """Collects every published event as (name, payload)."""

    def __init__(self, bus: EventBus):
        self.events = []
        bus.subscribe_all(self._record)

    def _record(self, event_name, payload):
        self.events.append((event_name, payload))

    def named(self, event_name):
        return [payload for name, payload in self.events if name == event_name]

    def names(self):
        return [name for name, _ in self.events]


@pytest.fixture
def scheduler():
    return ManualScheduler(start=1_000_000.0)


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def recorder(bus):
    return EventRecorder(bus)


@pytest.fixture
def economy():
    return InMemoryEconomy()


@pytest.fixture
def persistence():
    return InMemoryPersistence()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def ids(scheduler):
    return IdGenerator(run_id="test", clock=scheduler.now)


@pytest.fixture
def session_config():
    return SessionConfig()


@pytest.fixture
def manager(bus, scheduler, economy, session_config, ids, notifier):
    return SessionManager(
        "valet", bus, scheduler, economy, session_config,
        store=SessionStore(), ids=ids, notifier=notifier,
    )


@pytest.fixture
def player():
    return Player(citizen_id="CIT001", name="Alex Doe")


@pytest.fixture
def vip_player():
    return Player(citizen_id="CIT002", name="Sam Vip", vip_tier="gold")


@pytest.fixture
def officer():
    return Player(citizen_id="CIT100", name="Officer Reyes", job="police", grade=3, on_duty=True)
