"""
Composition root.

Builds one bus, one scheduler and one set of collaborators, then wires every
service onto them:

    app = ParkingApp.build(load_config())
    app.start()
    app.valet.park_vehicle(player, "pillbox", "ABC123")
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from parksim.collaborators.base import EconomyPort, NotificationPort, PersistencePort
from parksim.collaborators.memory import InMemoryEconomy, InMemoryPersistence, RecordingNotifier
from parksim.core.event_bus import EventBus, EventLogger
from parksim.core.ids import IdGenerator
from parksim.core.scheduler import AsyncioScheduler, Scheduler
from parksim.core.sessions import SessionManager, SessionStore
from parksim.infrastructure.config import AppConfig
from parksim.infrastructure.logging import get_logger
from parksim.integrations.insurance import InsuranceProvider, NullInsurance
from parksim.integrations.permissions import PermissionPolicy
from parksim.services.delivery import DeliveryService
from parksim.services.impound import ImpoundService
from parksim.services.reserved import ReservedService
from parksim.services.valet import ValetService
from parksim.services.violations import ViolationService

logger = get_logger(__name__)


@dataclass
class ParkingApp:
    """All services sharing one bus, scheduler and collaborator set."""

    config: AppConfig
    bus: EventBus
    scheduler: Scheduler
    economy: EconomyPort
    persistence: PersistencePort
    notifier: NotificationPort
    event_logger: EventLogger
    valet_sessions: SessionManager
    delivery_sessions: SessionManager
    valet: ValetService
    delivery: DeliveryService
    impound: ImpoundService
    violations: ViolationService
    reserved: ReservedService

    @classmethod
    def build(
        cls,
        config: Optional[AppConfig] = None,
        scheduler: Optional[Scheduler] = None,
        economy: Optional[EconomyPort] = None,
        persistence: Optional[PersistencePort] = None,
        notifier: Optional[NotificationPort] = None,
        insurance: Optional[InsuranceProvider] = None,
        ids: Optional[IdGenerator] = None,
    ) -> ParkingApp:
        """Wire the application. Missing collaborators get in-memory versions."""
        config = config or AppConfig()
        scheduler = scheduler or AsyncioScheduler()
        economy = economy or InMemoryEconomy()
        persistence = persistence or InMemoryPersistence()
        notifier = notifier or RecordingNotifier()
        ids = ids or IdGenerator(clock=scheduler.now)

        bus = EventBus()
        event_logger = EventLogger()
        bus.subscribe_all(event_logger.handle)

        permissions = PermissionPolicy(config.permissions)

        valet_sessions = SessionManager(
            "valet", bus, scheduler, economy, config.sessions,
            store=SessionStore(), ids=ids, notifier=notifier,
        )
        delivery_sessions = SessionManager(
            "delivery", bus, scheduler, economy, config.sessions,
            store=SessionStore(), ids=ids, notifier=notifier,
        )

        app = cls(
            config=config,
            bus=bus,
            scheduler=scheduler,
            economy=economy,
            persistence=persistence,
            notifier=notifier,
            event_logger=event_logger,
            valet_sessions=valet_sessions,
            delivery_sessions=delivery_sessions,
            valet=ValetService(valet_sessions, economy, persistence, notifier, config.valet),
            delivery=DeliveryService(delivery_sessions, economy, persistence, notifier, config.delivery),
            impound=ImpoundService(
                bus, scheduler, economy, persistence, notifier, permissions,
                insurance=insurance or NullInsurance(),
                config=config.impound,
                insurance_config=config.insurance,
            ),
            violations=ViolationService(
                bus, scheduler, economy, persistence, notifier, permissions,
                config=config.violations, ids=ids,
            ),
            reserved=ReservedService(bus, scheduler, economy, config.reserved),
        )

        logger.info(
            "Parking app built",
            environment=config.environment,
            valet_locations=len(config.valet.locations),
            reserved_spots=len(config.reserved.spots),
        )
        return app

    @property
    def session_managers(self) -> list[SessionManager]:
        return [self.valet_sessions, self.delivery_sessions]

    def start(self) -> None:
        """Arm the expiry sweepers."""
        for manager in self.session_managers:
            manager.start_sweeper(self.config.sessions.sweep_interval_seconds)
        logger.info("Parking app started", sweep_interval=self.config.sessions.sweep_interval_seconds)

    def stop(self) -> None:
        """Stop the sweepers and drop every pending session timer."""
        for manager in self.session_managers:
            manager.stop_sweeper()
            manager.store.clear()
        logger.info("Parking app stopped", events=self.bus.stats["published"])
