"""Tests for latest-value streams."""

import asyncio

import pytest

from anchorwatch.streams import ValueStream


class TestValueStream:
    def test_set_reports_change(self):
        stream = ValueStream(1)
        assert stream.set(2) is True
        assert stream.set(2) is False
        assert stream.current == 2

    @pytest.mark.asyncio
    async def test_subscriber_gets_current_then_changes(self):
        stream = ValueStream("a")
        with stream.subscribe() as values:
            stream.set("b")
            stream.set("b")
            stream.set("c")
            received = [await values.__anext__() for _ in range(3)]
        assert received == ["a", "b", "c"]

    @pytest.mark.asyncio
    async def test_without_replay(self):
        stream = ValueStream(0)
        with stream.subscribe(replay=False) as values:
            stream.set(5)
            assert await asyncio.wait_for(values.__anext__(), timeout=1) == 5

    def test_close_unsubscribes(self):
        stream = ValueStream(0)
        sub = stream.subscribe()
        assert stream.subscriber_count == 1
        sub.close()
        assert stream.subscriber_count == 0

    @pytest.mark.asyncio
    async def test_independent_subscribers(self):
        stream = ValueStream(0)
        with stream.subscribe(replay=False) as a, stream.subscribe(replay=False) as b:
            stream.set(1)
            assert await a.__anext__() == 1
            stream.set(2)
            assert await b.__anext__() == 1
            assert await b.__anext__() == 2
        assert stream.subscriber_count == 0
