"""Event bus for simulation observability.

A small synchronous bus that lets the runtime, feedback manager and lazy
loader publish domain events (tokensim.contracts.events) to whoever is
rendering them: the CLI, a UI bridge, or a test collecting assertions.
"""

from collections.abc import Callable
from typing import Any, Protocol, TypeVar

T = TypeVar("T")


class EventBusProtocol(Protocol):
    """Protocol satisfied by both EventBus and NullEventBus."""

    def subscribe(self, event_type: type[T], handler: Callable[[T], None]) -> None:
        """Subscribe a handler to an event type."""
        ...

    def emit(self, event: T) -> None:
        """Emit an event to all subscribers."""
        ...


class EventBus:
    """Synchronous event bus keyed by event class.

    Handler exceptions propagate to the emitter. Handlers are our code,
    so a broken one should fail the tick that triggered it.

    Example:
        bus = EventBus()
        bus.subscribe(StateTransitioned, lambda e: print(f"{e.node_id}: {e.from_state} -> {e.to_state}"))
        runtime = EnhancedFSMRuntime(event_bus=bus)
    """

    def __init__(self) -> None:
        self._subscribers: dict[type, list[Callable[[Any], None]]] = {}

    def subscribe(self, event_type: type[T], handler: Callable[[T], None]) -> None:
        """Subscribe a handler to an event type.

        Args:
            event_type: The event class to subscribe to
            handler: Callable that receives the event instance
        """
        self._subscribers.setdefault(event_type, []).append(handler)

    def unsubscribe(self, event_type: type[T], handler: Callable[[T], None]) -> None:
        """Remove a handler.

        Raises:
            ValueError: If the handler was never subscribed to event_type
        """
        self._subscribers.get(event_type, []).remove(handler)

    def emit(self, event: T) -> None:
        """Emit an event to all subscribers of its exact class.

        Handlers run in subscription order. Events nobody subscribed to
        are dropped.
        """
        for handler in list(self._subscribers.get(type(event), [])):
            handler(event)


class NullEventBus:
    """No-op event bus for library use without observers.

    Does NOT inherit from EventBus: subscribing to it is a no-op, and
    inheritance would hide that from someone expecting callbacks.
    """

    def subscribe(self, event_type: type[T], handler: Callable[[T], None]) -> None:
        """No-op subscription - handler will never be called."""
        pass

    def emit(self, event: T) -> None:
        """No-op emission."""
        pass
