"""
WebSocket Manager for live dispatch boards.

Handles:
- Active connections per board date
- Broadcasting board snapshots to every screen showing that date
"""

import logging
from datetime import date
from typing import Dict, List

from fastapi import WebSocket

logger = logging.getLogger(__name__)


def board_topic(board_date: date) -> str:
    return f"board:{board_date.isoformat()}"


class WebSocketManager:
    """
    Manages WebSocket connections for live boards.
    """

    def __init__(self):
        # Topic subscriptions ("board:2024-03-01")
        # subscriptions: dict[topic, list[WebSocket]]
        self.subscriptions: Dict[str, List[WebSocket]] = {}

    async def connect(self, websocket: WebSocket, topic: str):
        """Accept connection and subscribe it to a topic."""
        await websocket.accept()
        await self.subscribe(websocket, topic)

    def disconnect(self, websocket: WebSocket):
        """Remove connection from every topic."""
        for topic in list(self.subscriptions):
            if websocket in self.subscriptions[topic]:
                self.subscriptions[topic].remove(websocket)
            if not self.subscriptions[topic]:
                del self.subscriptions[topic]

    async def subscribe(self, websocket: WebSocket, topic: str):
        """Subscribe websocket to a topic."""
        if topic not in self.subscriptions:
            self.subscriptions[topic] = []
        if websocket not in self.subscriptions[topic]:
            self.subscriptions[topic].append(websocket)

    def connection_count(self, topic: str) -> int:
        return len(self.subscriptions.get(topic, []))

    async def broadcast(self, message: dict, topic: str):
        """Send message to every subscriber of a topic; drop dead sockets."""
        dead = []
        for connection in list(self.subscriptions.get(topic, [])):
            try:
                await connection.send_json(message)
            except Exception as e:
                logger.debug(f"WebSocket send failed (topic={topic}): {e}")
                dead.append(connection)
        for connection in dead:
            self.disconnect(connection)


# Global instance
manager = WebSocketManager()
