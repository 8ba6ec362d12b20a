"""Tests for EventBus infrastructure."""

from dataclasses import dataclass

import pytest

from batchledger.core.events import EventBus, EventBusProtocol, NullEventBus


@dataclass(frozen=True)
class SampleEvent:
    value: str


@dataclass(frozen=True)
class OtherEvent:
    count: int


class TestEventBus:
    def test_subscribe_and_emit(self) -> None:
        bus = EventBus()
        received: list[SampleEvent] = []

        bus.subscribe(SampleEvent, received.append)
        bus.emit(SampleEvent(value="hello"))

        assert received == [SampleEvent(value="hello")]

    def test_handlers_called_in_subscription_order(self) -> None:
        bus = EventBus()
        order: list[int] = []

        bus.subscribe(SampleEvent, lambda e: order.append(1))
        bus.subscribe(SampleEvent, lambda e: order.append(2))
        bus.subscribe(SampleEvent, lambda e: order.append(3))
        bus.emit(SampleEvent(value="x"))

        assert order == [1, 2, 3]

    def test_dispatch_is_by_exact_type(self) -> None:
        bus = EventBus()
        samples: list[SampleEvent] = []
        others: list[OtherEvent] = []

        bus.subscribe(SampleEvent, samples.append)
        bus.subscribe(OtherEvent, others.append)
        bus.emit(OtherEvent(count=3))

        assert samples == []
        assert others == [OtherEvent(count=3)]

    def test_emit_without_subscribers_is_silent(self) -> None:
        EventBus().emit(SampleEvent(value="nobody listening"))

    def test_handler_exception_propagates(self) -> None:
        bus = EventBus()

        def broken(event: SampleEvent) -> None:
            raise RuntimeError("formatter bug")

        bus.subscribe(SampleEvent, broken)

        with pytest.raises(RuntimeError, match="formatter bug"):
            bus.emit(SampleEvent(value="x"))


class TestNullEventBus:
    def test_handlers_never_called(self) -> None:
        bus = NullEventBus()
        received: list[SampleEvent] = []

        bus.subscribe(SampleEvent, received.append)
        bus.emit(SampleEvent(value="dropped"))

        assert received == []

    def test_not_an_event_bus_subclass(self) -> None:
        assert not isinstance(NullEventBus(), EventBus)

    def test_both_satisfy_protocol(self) -> None:
        buses: list[EventBusProtocol] = [EventBus(), NullEventBus()]
        for bus in buses:
            bus.subscribe(SampleEvent, lambda e: None)
            bus.emit(SampleEvent(value="x"))
