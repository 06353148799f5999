# tests/unit/core/test_events.py
"""Tests for the synchronous EventBus and NullEventBus."""

from dataclasses import dataclass

import pytest


@dataclass(frozen=True)
class _Ping:
    n: int


@dataclass(frozen=True)
class _Pong:
    n: int


class TestEventBus:
    def test_handlers_receive_events_in_subscription_order(self) -> None:
        from tokensim.core.events import EventBus

        bus = EventBus()
        seen: list[str] = []
        bus.subscribe(_Ping, lambda e: seen.append(f"first:{e.n}"))
        bus.subscribe(_Ping, lambda e: seen.append(f"second:{e.n}"))

        bus.emit(_Ping(1))

        assert seen == ["first:1", "second:1"]

    def test_dispatch_is_by_exact_class(self) -> None:
        from tokensim.core.events import EventBus

        bus = EventBus()
        pings: list[_Ping] = []
        bus.subscribe(_Ping, pings.append)

        bus.emit(_Pong(7))

        assert pings == []

    def test_unsubscribe_stops_delivery(self) -> None:
        from tokensim.core.events import EventBus

        bus = EventBus()
        pings: list[_Ping] = []
        bus.subscribe(_Ping, pings.append)
        bus.unsubscribe(_Ping, pings.append)

        bus.emit(_Ping(1))

        assert pings == []

    def test_unsubscribe_unknown_handler_raises(self) -> None:
        from tokensim.core.events import EventBus

        with pytest.raises(ValueError):
            EventBus().unsubscribe(_Ping, print)

    def test_handler_exception_propagates(self) -> None:
        """A broken handler fails the emitter instead of being swallowed."""
        from tokensim.core.events import EventBus

        bus = EventBus()

        def broken(_event: _Ping) -> None:
            raise RuntimeError("handler bug")

        bus.subscribe(_Ping, broken)
        with pytest.raises(RuntimeError, match="handler bug"):
            bus.emit(_Ping(1))


class TestNullEventBus:
    def test_subscribe_and_emit_are_no_ops(self) -> None:
        from tokensim.core.events import NullEventBus

        bus = NullEventBus()
        seen: list[_Ping] = []
        bus.subscribe(_Ping, seen.append)
        bus.emit(_Ping(1))

        assert seen == []
