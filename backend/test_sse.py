"""
Tests for SSE formatting and live dataset replacement fan-out.
"""

import asyncio
import json

from core.state import Store, add_data_source, make_data_source
from server.canvas import DashboardSession
from server.sse import EVT_DATASET_REPLACED, SSEEvent, SSEHub


def _collect(channel, n):
    async def _take():
        out = []
        async for event in channel:
            out.append(event)
            if len(out) == n:
                break
        return out
    return _take()


class TestSSEEvent:
    def test_format(self):
        """Wire format: id, event, data lines, blank line."""
        text = SSEEvent(event="dataset_replaced", data={"rowCount": 2}, id="abc").format()
        assert text == 'id: abc\nevent: dataset_replaced\ndata: {"rowCount": 2}\n\n'

    def test_empty_data(self):
        assert "data: {}" in SSEEvent(event="connected").format()


class TestSSEHub:
    """Tests for per-session fan-out."""

    def test_publish_reaches_every_subscriber(self):
        async def scenario():
            hub = SSEHub()
            a, b = hub.subscribe(), hub.subscribe()
            delivered = await hub.publish("ping", {"n": 1})
            await hub.close_all()
            return delivered, [e async for e in a], [e async for e in b]

        delivered, a_events, b_events = asyncio.run(scenario())
        assert delivered == 2
        assert len(a_events) == len(b_events) == 1
        assert "event: ping" in a_events[0]

    def test_unsubscribe(self):
        async def scenario():
            hub = SSEHub()
            channel = hub.subscribe()
            hub.unsubscribe(channel)
            return await hub.publish("ping")

        assert asyncio.run(scenario()) == 0


class TestLiveReplacement:
    """Tests for replacing a dataset's rows while subscribers listen."""

    def test_replace_rows_publishes(self):
        async def scenario():
            dash = DashboardSession(Store(saver=lambda project: None))
            source = make_data_source("sales", [{"region": "E", "sales": 1}])
            dash.store.dispatch(add_data_source, source)
            channel = dash.events.subscribe()
            ok = await dash.replace_rows(source.id, [{"region": "W", "sales": 5}, {"region": "E", "sales": 2}])
            events = await _collect(channel, 1)
            return ok, events, dash

        ok, events, dash = asyncio.run(scenario())
        assert ok
        assert f"event: {EVT_DATASET_REPLACED}" in events[0]
        payload = json.loads(events[0].split("data: ", 1)[1])
        assert payload["rowCount"] == 2
        assert payload["name"] == "sales"
        assert dash.store.state.primary_rows()[0]["region"] == "W"

    def test_unknown_source(self):
        async def scenario():
            dash = DashboardSession(Store(saver=lambda project: None))
            return await dash.replace_rows("missing", [])

        assert asyncio.run(scenario()) is False
