"""WebSocket manager for real-time execution monitoring."""

import asyncio
import json
import uuid
from datetime import datetime
from queue import Empty, Queue
from typing import Any, Callable, Dict, Optional, Set

from fastapi import WebSocket, WebSocketDisconnect

from .logging import get_logger

logger = get_logger(__name__)


class WebSocketConnection:
    """A WebSocket connection with its subscriptions."""

    def __init__(self, websocket: WebSocket, connection_id: str, organization_id: Optional[str] = None):
        self.websocket = websocket
        self.connection_id = connection_id
        self.organization_id = organization_id
        self.connected_at = datetime.utcnow()
        self.subscribed_executions: Set[str] = set()
        self.is_active = True


class WebSocketManager:
    """Tracks connections and fans execution events out to subscribers.

    Worker threads never touch sockets directly; they call the ``queue_*``
    methods and the broadcast processor drains the queue on the event loop.
    """

    def __init__(self, max_connections: int = 100):
        self.max_connections = max_connections
        self._connections: Dict[str, WebSocketConnection] = {}
        self._subscribers: Dict[str, Set[str]] = {}  # execution_id -> connection ids
        self._broadcast_lock = asyncio.Lock()
        self._broadcast_queue: Queue = Queue()
        self._queue_processor_task: Optional[asyncio.Task] = None
        self._processing_broadcasts = False

    async def connect(self, websocket: WebSocket, organization_id: Optional[str] = None) -> Optional[str]:
        """
        Accept a new WebSocket connection.

        Args:
            websocket: The incoming connection
            organization_id: Tenant whose executions the connection may watch

        Returns:
            The connection id, or None when the connection limit is reached
        """
        await websocket.accept()
        if self.get_connection_count() >= self.max_connections:
            logger.warning("Rejecting WebSocket connection: connection limit reached")
            await websocket.close(code=1013)
            return None

        connection_id = str(uuid.uuid4())
        self._connections[connection_id] = WebSocketConnection(websocket, connection_id, organization_id)
        logger.info(f"WebSocket connection established: {connection_id}")

        await self._send_to_connection(connection_id, {
            "event_type": "connection_established",
            "connection_id": connection_id,
            "timestamp": datetime.utcnow().isoformat(),
        })
        return connection_id

    async def disconnect(self, connection_id: str) -> None:
        connection = self._connections.pop(connection_id, None)
        if connection is None:
            return
        connection.is_active = False
        for execution_id in list(connection.subscribed_executions):
            self._remove_subscriber(connection_id, execution_id)
        logger.info(f"WebSocket connection closed: {connection_id}")

    async def subscribe(self, connection_id: str, execution_id: str) -> bool:
        """Subscribe a connection to the events of one execution."""
        connection = self._connections.get(connection_id)
        if connection is None or not connection.is_active:
            logger.warning(f"Attempted to subscribe unknown connection: {connection_id}")
            return False

        connection.subscribed_executions.add(execution_id)
        self._subscribers.setdefault(execution_id, set()).add(connection_id)
        logger.debug(f"Connection {connection_id} subscribed to {execution_id}")

        await self._send_to_connection(connection_id, {
            "event_type": "subscription_confirmed",
            "execution_id": execution_id,
            "timestamp": datetime.utcnow().isoformat(),
        })
        return True

    async def unsubscribe(self, connection_id: str, execution_id: str) -> bool:
        connection = self._connections.get(connection_id)
        if connection is None:
            return False
        connection.subscribed_executions.discard(execution_id)
        self._remove_subscriber(connection_id, execution_id)
        return True

    def _remove_subscriber(self, connection_id: str, execution_id: str):
        subscribers = self._subscribers.get(execution_id)
        if subscribers is None:
            return
        subscribers.discard(connection_id)
        if not subscribers:
            del self._subscribers[execution_id]

    async def handle_message(
        self,
        connection_id: str,
        raw: str,
        authorize: Optional[Callable[[str], bool]] = None
    ) -> None:
        """
        Handle a client command: subscribe, unsubscribe or ping.

        Args:
            connection_id: Connection that sent the message
            raw: JSON text such as {"action": "subscribe", "execution_id": "..."}
            authorize: Returns whether the connection may watch an execution
        """
        try:
            message = json.loads(raw)
        except ValueError:
            await self._send_to_connection(connection_id, {"event_type": "error", "message": "Invalid JSON"})
            return
        if not isinstance(message, dict):
            await self._send_to_connection(connection_id, {"event_type": "error", "message": "Expected an object"})
            return

        action = message.get("action")
        execution_id = message.get("execution_id")
        if action in ("subscribe", "unsubscribe") and not execution_id:
            await self._send_to_connection(connection_id, {"event_type": "error", "message": "execution_id is required"})
        elif action == "subscribe":
            if authorize is not None and not authorize(execution_id):
                await self._send_to_connection(connection_id, {
                    "event_type": "error",
                    "message": f"Execution '{execution_id}' not found",
                })
                return
            await self.subscribe(connection_id, execution_id)
        elif action == "unsubscribe":
            await self.unsubscribe(connection_id, execution_id)
        elif action == "ping":
            await self._send_to_connection(connection_id, {"event_type": "pong", "timestamp": datetime.utcnow().isoformat()})
        else:
            await self._send_to_connection(connection_id, {"event_type": "error", "message": f"Unknown action: {action}"})

    async def broadcast_execution_event(self, execution_id: str, event_type: str, data: Dict[str, Any]) -> int:
        """
        Send an event to every subscriber of an execution.

        Returns:
            int: Number of connections the event was delivered to
        """
        targets = set(self._subscribers.get(execution_id, set()))
        if not targets:
            return 0

        event = {
            "event_type": event_type,
            "execution_id": execution_id,
            "timestamp": datetime.utcnow().isoformat(),
            "data": data,
        }
        delivered = 0
        async with self._broadcast_lock:
            failed = []
            for connection_id in targets:
                if await self._send_to_connection(connection_id, event):
                    delivered += 1
                else:
                    failed.append(connection_id)
            for connection_id in failed:
                await self.disconnect(connection_id)
        logger.debug(f"Broadcast {event_type} for {execution_id} to {delivered} connections")
        return delivered

    async def _send_to_connection(self, connection_id: str, data: Dict[str, Any]) -> bool:
        connection = self._connections.get(connection_id)
        if connection is None or not connection.is_active:
            return False
        try:
            await connection.websocket.send_text(json.dumps(data, default=str))
            return True
        except WebSocketDisconnect:
            logger.info(f"WebSocket disconnected during send: {connection_id}")
        except Exception as e:
            logger.error(f"Error sending WebSocket message to {connection_id}: {str(e)}")
        connection.is_active = False
        return False

    def get_connection_count(self) -> int:
        return len([c for c in self._connections.values() if c.is_active])

    def get_subscriber_count(self, execution_id: str) -> int:
        return len(self._subscribers.get(execution_id, set()))

    def get_connection_info(self) -> Dict[str, Any]:
        connections = [
            {
                "connection_id": connection_id,
                "organization_id": connection.organization_id,
                "connected_at": connection.connected_at.isoformat(),
                "subscriptions": sorted(connection.subscribed_executions),
            }
            for connection_id, connection in self._connections.items()
            if connection.is_active
        ]
        return {
            "total_connections": len(connections),
            "connections": connections,
            "queued_events": self._broadcast_queue.qsize(),
        }

    # Broadcast queue, fed from worker threads

    def start_broadcast_processor(self):
        if not self._processing_broadcasts:
            self._processing_broadcasts = True
            self._queue_processor_task = asyncio.create_task(self._process_broadcast_queue())
            logger.info("WebSocket broadcast processor started")

    def stop_broadcast_processor(self):
        self._processing_broadcasts = False
        if self._queue_processor_task:
            self._queue_processor_task.cancel()
            self._queue_processor_task = None
            logger.info("WebSocket broadcast processor stopped")

    async def drain(self) -> int:
        """Broadcast everything currently queued; returns the number of events processed."""
        processed = 0
        while True:
            try:
                execution_id, event_type, data = self._broadcast_queue.get_nowait()
            except Empty:
                return processed
            try:
                await self.broadcast_execution_event(execution_id, event_type, data)
            finally:
                self._broadcast_queue.task_done()
            processed += 1

    async def _process_broadcast_queue(self):
        while self._processing_broadcasts:
            try:
                if not await self.drain():
                    await asyncio.sleep(0.1)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error processing broadcast queue: {str(e)}")
                await asyncio.sleep(0.1)

    def queue_execution_event(self, execution_id: str, event_type: str, data: Dict[str, Any]):
        """Queue an execution event for broadcasting from a worker thread."""
        self._broadcast_queue.put((execution_id, event_type, data))

    def queue_error(self, execution_id: str, error_message: str, error_details: Optional[Dict] = None):
        """Queue an error event for broadcasting from a worker thread."""
        self._broadcast_queue.put((execution_id, "execution_error", {
            "error_message": error_message,
            "error_details": error_details or {},
        }))

    @property
    def pending_events(self) -> int:
        return self._broadcast_queue.qsize()
