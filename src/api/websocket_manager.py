"""WebSocket connection management for real-time job and notification updates."""

from dataclasses import dataclass, field
from typing import Callable

from fastapi import WebSocket


@dataclass
class Subscriber:
    """A live WebSocket plus who is listening on it."""

    websocket: WebSocket
    user_id: str | None = None
    is_admin: bool = False
    meta: dict = field(default_factory=dict)


class WebSocketManager:
    """Manages WebSocket connections grouped by key (a job id, or ``notifications``).

    Broadcasts can be narrowed with a predicate over each Subscriber, which is
    how admin-only and recipient-scoped notifications are delivered.
    """

    def __init__(self):
        """Initialize the WebSocket manager with empty connections dict."""
        self.connections: dict[str, list[Subscriber]] = {}

    async def connect(
        self,
        key: str,
        websocket: WebSocket,
        user_id: str | None = None,
        is_admin: bool = False,
    ) -> Subscriber:
        """Accept a WebSocket connection and add it to the pool for ``key``."""
        await websocket.accept()
        subscriber = Subscriber(websocket=websocket, user_id=user_id, is_admin=is_admin)
        self.connections.setdefault(key, []).append(subscriber)
        return subscriber

    async def broadcast(
        self,
        key: str,
        message: dict,
        predicate: Callable[[Subscriber], bool] | None = None,
    ) -> int:
        """Send ``message`` to every subscriber of ``key`` accepted by ``predicate``.

        Returns:
            Number of subscribers the message was delivered to

        Note:
            Automatically cleans up disconnected WebSockets.
        """
        delivered = 0
        disconnected = []
        for subscriber in list(self.connections.get(key, [])):
            if predicate is not None and not predicate(subscriber):
                continue
            try:
                await subscriber.websocket.send_json(message)
                delivered += 1
            except Exception:
                disconnected.append(subscriber)

        for subscriber in disconnected:
            if subscriber in self.connections.get(key, []):
                self.connections[key].remove(subscriber)
        return delivered

    def disconnect(self, key: str, websocket: WebSocket) -> None:
        """Remove a WebSocket from the connection pool."""
        subscribers = self.connections.get(key, [])
        self.connections[key] = [s for s in subscribers if s.websocket is not websocket]
        if not self.connections[key]:
            self.connections.pop(key, None)

    def cleanup(self, key: str) -> None:
        """Remove all connections for a given key."""
        self.connections.pop(key, None)

    def count(self, key: str) -> int:
        return len(self.connections.get(key, []))
