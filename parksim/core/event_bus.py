"""
Priority Event Bus for parksim.

Implements synchronous publish/subscribe with priority tiers plus named
operation hooks:
- HIGH: runs first (guards, cancellations that must precede other reactions)
- NORMAL: default tier
- LOW: runs last (dispatch alerts, audit)

Pre-hooks run before an operation commits and may veto it or rewrite its
payload. Post-hooks run after the commit and are observational only.

Usage:
    bus = EventBus()
    bus.subscribe("valet:completed", on_parked, Priority.HIGH)
    bus.publish("valet:completed", {"plate": "ABC123"})

    bus.register_pre_hook("delivery:complete", block_stolen)
    proceed, payload = bus.execute_pre_hooks("delivery:complete", payload)
"""

from __future__ import annotations

import heapq
import itertools
from collections import defaultdict
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Callable

from parksim.infrastructure.logging import get_logger

logger = get_logger(__name__)


class Priority(IntEnum):
    """Subscriber priority tiers (lower = invoked earlier)."""
    HIGH = 0
    NORMAL = 1
    LOW = 2


EventHandler = Callable[[Any], Any]


@dataclass(order=True)
class Subscription:
    """Handler registration ordered by (priority, sequence)."""
    priority: int
    sequence: int
    name: str = field(compare=False)
    handler: EventHandler = field(compare=False)


class HookPhase(IntEnum):
    PRE = 0
    POST = 1


class EventBus:
    """
    Process-local event bus with priority ordering and operation hooks.

    Handlers run synchronously, one at a time. A handler that raises is
    logged and skipped; it never stops delivery to the remaining handlers.
    """

    def __init__(self) -> None:
        self._subscribers: dict[str, list[Subscription]] = defaultdict(list)
        self._all_subscribers: list[Subscription] = []
        self._hooks: dict[tuple[str, HookPhase], list[Subscription]] = defaultdict(list)
        self._sequence = itertools.count()
        self._published_count = 0
        self._error_count = 0
        self._veto_count = 0

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def _register(
        self,
        registry: list[Subscription],
        name: str,
        handler: EventHandler,
        priority: Priority | int,
    ) -> Subscription:
        subscription = Subscription(
            priority=int(priority),
            sequence=next(self._sequence),
            name=name,
            handler=handler,
        )
        registry.append(subscription)
        registry.sort()
        return subscription

    def subscribe(
        self,
        event_name: str,
        handler: EventHandler,
        priority: Priority | int = Priority.NORMAL,
    ) -> Subscription:
        """
        Subscribe a handler to an event.

        The same handler may subscribe more than once; each registration is
        invoked separately.
        """
        subscription = self._register(self._subscribers[event_name], event_name, handler, priority)
        logger.debug("Event handler subscribed", event_name=event_name, priority=int(priority))
        return subscription

    def subscribe_all(
        self,
        handler: EventHandler,
        priority: Priority | int = Priority.LOW,
    ) -> Subscription:
        """Subscribe to every event. Handler receives (event_name, payload)."""
        return self._register(self._all_subscribers, "*", handler, priority)

    def register_pre_hook(
        self,
        operation: str,
        handler: EventHandler,
        priority: Priority | int = Priority.NORMAL,
    ) -> Subscription:
        """Register a hook that runs before `operation` commits."""
        subscription = self._register(self._hooks[(operation, HookPhase.PRE)], operation, handler, priority)
        logger.debug("Hook registered", operation=operation, phase="pre", priority=int(priority))
        return subscription

    def register_post_hook(
        self,
        operation: str,
        handler: EventHandler,
        priority: Priority | int = Priority.NORMAL,
    ) -> Subscription:
        """Register a hook that runs after `operation` commits."""
        subscription = self._register(self._hooks[(operation, HookPhase.POST)], operation, handler, priority)
        logger.debug("Hook registered", operation=operation, phase="post", priority=int(priority))
        return subscription

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    def publish(self, event_name: str, payload: Any = None) -> None:
        """
        Deliver an event to every subscriber, HIGH to LOW.

        Per-event and `subscribe_all` handlers share one ordering by
        (priority, registration order). Fire-and-forget: handler return
        values are ignored.
        """
        self._published_count += 1

        subscriptions = heapq.merge(
            [(s, False) for s in self._subscribers.get(event_name, ())],
            [(s, True) for s in self._all_subscribers],
            key=lambda pair: pair[0],
        )
        for subscription, wildcard in subscriptions:
            try:
                if wildcard:
                    subscription.handler(event_name, payload)
                else:
                    subscription.handler(payload)
            except Exception as e:
                self._error_count += 1
                logger.error(
                    "Event handler error",
                    event_name=event_name,
                    handler=_handler_name(subscription.handler),
                    error=str(e),
                )

    def execute_pre_hooks(self, operation: str, payload: Any) -> tuple[bool, Any]:
        """
        Run pre-hooks for `operation` until one vetoes.

        A hook may return:
            (True, new_payload)  continue with a rewritten payload
            (False, payload)     veto
            False                veto
            anything else        continue unchanged

        Returns:
            (continue, payload as of the last hook that ran)
        """
        current = payload

        for subscription in list(self._hooks.get((operation, HookPhase.PRE), ())):
            try:
                result = subscription.handler(current)
            except Exception as e:
                # A crashing hook is not a veto
                self._error_count += 1
                logger.error(
                    "Pre-hook error",
                    operation=operation,
                    handler=_handler_name(subscription.handler),
                    error=str(e),
                )
                continue

            proceed, current = _interpret_hook_result(result, current)
            if not proceed:
                self._veto_count += 1
                logger.info(
                    "Operation vetoed by pre-hook",
                    operation=operation,
                    handler=_handler_name(subscription.handler),
                )
                return False, current

        return True, current

    def execute_post_hooks(self, operation: str, payload: Any) -> None:
        """Run every post-hook for `operation`; results are ignored."""
        for subscription in list(self._hooks.get((operation, HookPhase.POST), ())):
            try:
                subscription.handler(payload)
            except Exception as e:
                self._error_count += 1
                logger.error(
                    "Post-hook error",
                    operation=operation,
                    handler=_handler_name(subscription.handler),
                    error=str(e),
                )

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def subscriber_count(self, event_name: str) -> int:
        return len(self._subscribers.get(event_name, ()))

    def hook_count(self, operation: str, phase: HookPhase = HookPhase.PRE) -> int:
        return len(self._hooks.get((operation, phase), ()))

    @property
    def stats(self) -> dict[str, int]:
        """Get event bus statistics."""
        return {
            "published": self._published_count,
            "errors": self._error_count,
            "vetoes": self._veto_count,
            "handlers": sum(len(s) for s in self._subscribers.values()) + len(self._all_subscribers),
            "hooks": sum(len(h) for h in self._hooks.values()),
        }


def _interpret_hook_result(result: Any, current: Any) -> tuple[bool, Any]:
    # Only an explicit False vetoes; any other value continues unchanged
    if result is False:
        return False, current
    if isinstance(result, tuple) and len(result) == 2:
        proceed, new_payload = result
        if new_payload is None:
            new_payload = current
        return proceed is not False, new_payload
    return True, current


def _handler_name(handler: EventHandler) -> str:
    return getattr(handler, "__qualname__", None) or repr(handler)


class EventLogger:
    """
    Logs all events for audit trail.

    Attach with `bus.subscribe_all(event_logger.handle)`.
    """

    def __init__(self, log_level: str = "debug"):
        self.log_level = log_level
        self._event_counts: dict[str, int] = defaultdict(int)

    def handle(self, event_name: str, payload: Any) -> None:
        self._event_counts[event_name] += 1

        log_fn = getattr(logger, self.log_level, logger.debug)
        log_fn(
            "Domain event",
            event_name=event_name,
            payload=payload,
        )

    def get_counts(self) -> dict[str, int]:
        """Get event counts by name."""
        return dict(self._event_counts)
