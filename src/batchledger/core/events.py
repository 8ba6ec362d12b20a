"""Synchronous event bus between the execution engine and its observers.

The engine emits ProgressEvent / RunSummary / StateChanged; the CLI
subscribes formatters. Library callers that want no observation pass a
NullEventBus.
"""

from collections.abc import Callable
from typing import Any, Protocol, TypeVar

T = TypeVar("T")


class EventBusProtocol(Protocol):
    """Interface satisfied by both EventBus and NullEventBus."""

    def subscribe(self, event_type: type[T], handler: Callable[[T], None]) -> None: ...

    def emit(self, event: T) -> None: ...


class EventBus:
    """Dispatches events synchronously to subscribers, in subscription order.

    Handler exceptions propagate to the emitter. Handlers are our code, so
    a broken formatter should crash the run rather than hide progress.

    Example:
        bus = EventBus()
        bus.subscribe(ProgressEvent, lambda e: print(f"{e.completed}/{e.total}"))
        bus.emit(ProgressEvent(...))
    """

    def __init__(self) -> None:
        self._subscribers: dict[type, list[Callable[[Any], None]]] = {}

    def subscribe(self, event_type: type[T], handler: Callable[[T], None]) -> None:
        self._subscribers.setdefault(event_type, []).append(handler)

    def emit(self, event: T) -> None:
        """Emit an event. Events without subscribers are ignored."""
        for handler in self._subscribers.get(type(event), []):
            handler(event)


class NullEventBus:
    """No-op event bus for programmatic use.

    Does NOT inherit from EventBus: someone subscribing here expecting
    callbacks should notice nothing arrives, not have the bug hidden.
    """

    def subscribe(self, event_type: type[T], handler: Callable[[T], None]) -> None:
        pass

    def emit(self, event: T) -> None:
        pass
