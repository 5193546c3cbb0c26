"""
In-process publish/subscribe used by providers, the registry and the manager.

Components own an EventBus instead of inheriting from an emitter base class.
Handlers are plain callables, delivered synchronously in subscription order.

Usage:
    bus = EventBus("registry")
    subscription = bus.subscribe(RegistryEvent.STATUS_CHANGED, on_status)
    bus.emit(RegistryEvent.STATUS_CHANGED, "mock", ProviderStatus.READY)
    bus.unsubscribe(subscription)
"""

import itertools
import logging
from collections.abc import Callable, Hashable
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)

_subscription_ids = itertools.count(1)


@dataclass(frozen=True)
class Subscription:
    """Token returned by EventBus.subscribe, used to unsubscribe."""

    event: Hashable
    handler: Callable[..., Any]
    id: int


class EventBus:
    """Ordered event fan-out keyed by event kind.

    A handler that raises is logged and skipped; the emitter and the
    remaining handlers are unaffected.
    """

    def __init__(self, owner: str = "") -> None:
        self._owner = owner
        self._handlers: dict[Hashable, list[Subscription]] = {}

    def subscribe(self, event: Hashable, handler: Callable[..., Any]) -> Subscription:
        """Register ``handler`` for ``event``.

        Args:
            event: Event kind (usually an Enum member)
            handler: Callable invoked with the emitted arguments

        Returns:
            Subscription token for unsubscribe()
        """
        if not callable(handler):
            raise TypeError(f"Event handler must be callable, got {type(handler).__name__}")
        subscription = Subscription(event=event, handler=handler, id=next(_subscription_ids))
        self._handlers.setdefault(event, []).append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> bool:
        """Remove a subscription.

        Returns:
            True if it was registered, False otherwise
        """
        handlers = self._handlers.get(subscription.event)
        if not handlers or subscription not in handlers:
            return False
        handlers.remove(subscription)
        if not handlers:
            del self._handlers[subscription.event]
        return True

    def emit(self, event: Hashable, *args: Any) -> int:
        """Deliver ``args`` to every handler of ``event``.

        Returns:
            Number of handlers invoked
        """
        # Snapshot so handlers may (un)subscribe while being called
        handlers = list(self._handlers.get(event, ()))
        for subscription in handlers:
            try:
                subscription.handler(*args)
            except Exception as e:
                logger.error(
                    f"Event handler for {_event_name(event)} on {self._owner or 'bus'} failed: {e}",
                    exc_info=True,
                )
        return len(handlers)

    def listener_count(self, event: Hashable | None = None) -> int:
        """Count handlers for one event kind, or for all kinds."""
        if event is not None:
            return len(self._handlers.get(event, ()))
        return sum(len(handlers) for handlers in self._handlers.values())

    def clear(self) -> None:
        """Drop every subscription."""
        self._handlers.clear()


def _event_name(event: Hashable) -> str:
    return str(getattr(event, "value", event))
