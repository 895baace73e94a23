"""Tests for the WebSocket connection manager."""

import json

import pytest
from fastapi import WebSocketDisconnect

from automation_engine.core.websocket_manager import WebSocketManager


class FakeWebSocket:
    """Collects sent frames; optionally fails every send."""

    def __init__(self, fail_sends=False):
        self.accepted = False
        self.closed_with = None
        self.fail_sends = fail_sends
        self.sent = []

    async def accept(self):
        self.accepted = True

    async def send_text(self, text):
        if self.fail_sends:
            raise WebSocketDisconnect(code=1006)
        self.sent.append(json.loads(text))

    async def close(self, code=1000):
        self.closed_with = code

    def events(self):
        return [message["event_type"] for message in self.sent]


@pytest.fixture
def manager():
    return WebSocketManager(max_connections=2)


class TestConnections:
    @pytest.mark.asyncio
    async def test_connect_sends_welcome(self, manager):
        websocket = FakeWebSocket()

        connection_id = await manager.connect(websocket, organization_id="org-1")

        assert websocket.accepted
        assert websocket.sent[0]["event_type"] == "connection_established"
        assert websocket.sent[0]["connection_id"] == connection_id
        info = manager.get_connection_info()
        assert info["total_connections"] == 1
        assert info["connections"][0]["organization_id"] == "org-1"

    @pytest.mark.asyncio
    async def test_connection_limit(self, manager):
        for _ in range(2):
            await manager.connect(FakeWebSocket())
        rejected = FakeWebSocket()

        assert await manager.connect(rejected) is None
        assert rejected.closed_with == 1013
        assert manager.get_connection_count() == 2

    @pytest.mark.asyncio
    async def test_disconnect_drops_subscriptions(self, manager):
        connection_id = await manager.connect(FakeWebSocket())
        await manager.subscribe(connection_id, "exec_1")

        await manager.disconnect(connection_id)

        assert manager.get_connection_count() == 0
        assert manager.get_subscriber_count("exec_1") == 0


class TestMessages:
    """Client commands sent over the socket."""

    @pytest.mark.asyncio
    async def test_subscribe_and_unsubscribe(self, manager):
        websocket = FakeWebSocket()
        connection_id = await manager.connect(websocket)

        await manager.handle_message(connection_id, json.dumps({"action": "subscribe", "execution_id": "exec_1"}))
        assert websocket.sent[-1] == {
            "event_type": "subscription_confirmed",
            "execution_id": "exec_1",
            "timestamp": websocket.sent[-1]["timestamp"],
        }
        assert manager.get_subscriber_count("exec_1") == 1

        await manager.handle_message(connection_id, json.dumps({"action": "unsubscribe", "execution_id": "exec_1"}))
        assert manager.get_subscriber_count("exec_1") == 0

    @pytest.mark.asyncio
    async def test_unauthorized_subscription(self, manager):
        websocket = FakeWebSocket()
        connection_id = await manager.connect(websocket)

        await manager.handle_message(
            connection_id,
            json.dumps({"action": "subscribe", "execution_id": "exec_foreign"}),
            authorize=lambda execution_id: False
        )

        assert websocket.sent[-1]["event_type"] == "error"
        assert "exec_foreign" in websocket.sent[-1]["message"]
        assert manager.get_subscriber_count("exec_foreign") == 0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("raw, message", [
        ("not json", "Invalid JSON"),
        ("[1, 2]", "Expected an object"),
        ('{"action": "subscribe"}', "execution_id is required"),
        ('{"action": "dance"}', "Unknown action: dance"),
    ])
    async def test_bad_messages(self, manager, raw, message):
        websocket = FakeWebSocket()
        connection_id = await manager.connect(websocket)

        await manager.handle_message(connection_id, raw)

        assert websocket.sent[-1] == {"event_type": "error", "message": message}

    @pytest.mark.asyncio
    async def test_ping(self, manager):
        websocket = FakeWebSocket()
        connection_id = await manager.connect(websocket)

        await manager.handle_message(connection_id, '{"action": "ping"}')

        assert websocket.events()[-1] == "pong"


class TestBroadcast:
    """Fan-out of execution events to subscribers."""

    @pytest.mark.asyncio
    async def test_only_subscribers_receive_events(self, manager):
        watcher, bystander = FakeWebSocket(), FakeWebSocket()
        watcher_id = await manager.connect(watcher)
        await manager.connect(bystander)
        await manager.subscribe(watcher_id, "exec_1")

        delivered = await manager.broadcast_execution_event("exec_1", "node_completed", {"node_key": "send"})

        assert delivered == 1
        assert watcher.sent[-1]["event_type"] == "node_completed"
        assert watcher.sent[-1]["data"] == {"node_key": "send"}
        assert bystander.events() == ["connection_established"]

    @pytest.mark.asyncio
    async def test_no_subscribers(self, manager):
        assert await manager.broadcast_execution_event("exec_1", "node_completed", {}) == 0

    @pytest.mark.asyncio
    async def test_failed_send_disconnects(self, manager):
        websocket = FakeWebSocket()
        connection_id = await manager.connect(websocket)
        await manager.subscribe(connection_id, "exec_1")
        websocket.fail_sends = True

        assert await manager.broadcast_execution_event("exec_1", "execution_completed", {}) == 0
        assert manager.get_connection_count() == 0
        assert manager.get_subscriber_count("exec_1") == 0

    @pytest.mark.asyncio
    async def test_queued_events_are_drained_in_order(self, manager):
        websocket = FakeWebSocket()
        connection_id = await manager.connect(websocket)
        await manager.subscribe(connection_id, "exec_1")

        manager.queue_execution_event("exec_1", "execution_started", {"workflow_id": "wf"})
        manager.queue_error("exec_1", "Node 'send' failed", {"node_key": "send"})
        assert manager.pending_events == 2

        assert await manager.drain() == 2

        assert websocket.events()[-2:] == ["execution_started", "execution_error"]
        assert websocket.sent[-1]["data"] == {
            "error_message": "Node 'send' failed",
            "error_details": {"node_key": "send"},
        }
        assert manager.pending_events == 0
