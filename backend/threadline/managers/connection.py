"""WebSocket subscription manager."""
import logging
from typing import Dict, List

from fastapi import WebSocket

logger = logging.getLogger(__name__)


class ConnectionManager:
    """Manages WebSocket subscriptions to per-message branch/version snapshots."""

    def __init__(self) -> None:
        self.active_connections: Dict[str, List[WebSocket]] = {}  # message_id -> subscribers

    async def connect(self, websocket: WebSocket, message_id: str) -> None:
        await websocket.accept()
        if message_id not in self.active_connections:
            self.active_connections[message_id] = []
        self.active_connections[message_id].append(websocket)

    def disconnect(self, websocket: WebSocket, message_id: str) -> None:
        if message_id in self.active_connections:
            if websocket in self.active_connections[message_id]:
                self.active_connections[message_id].remove(websocket)
            if not self.active_connections[message_id]:
                del self.active_connections[message_id]

    async def send_to_all(self, message: str, message_id: str) -> None:
        if message_id in self.active_connections:
            connections_to_remove = []
            for connection in self.active_connections[message_id]:
                try:
                    await connection.send_text(message)
                except Exception:
                    # Connection is closed, mark for removal
                    logger.debug("Dropping closed subscriber of %s", message_id)
                    connections_to_remove.append(connection)

            # Remove closed connections
            for conn in connections_to_remove:
                self.disconnect(conn, message_id)

    def get_subscriber_count(self, message_id: str) -> int:
        return len(self.active_connections.get(message_id, []))
