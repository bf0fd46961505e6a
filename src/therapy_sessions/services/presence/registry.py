from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Dict, List, Mapping, Optional, Protocol

from fastapi import WebSocket

from src.therapy_sessions.domain.models.user import UserRole


class DeliveryChannel(Protocol):
    """Anything that can push a JSON message to one connected client."""

    async def send_json(self, data: Mapping[str, Any]) -> None: ...


class WebSocketChannel:
    """DeliveryChannel backed by a FastAPI WebSocket connection."""

    def __init__(self, websocket: WebSocket) -> None:
        self._websocket = websocket

    async def send_json(self, data: Mapping[str, Any]) -> None:
        await self._websocket.send_json(dict(data))

    def __repr__(self) -> str:
        client = self._websocket.client
        return f"WebSocketChannel({client.host}:{client.port})" if client else "WebSocketChannel()"


@dataclass
class PresenceEntry:
    user_id: str
    role: UserRole
    channel: DeliveryChannel
    connected_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class PresenceRegistry:
    """Process-local map of connected users to their delivery channel.

    Only one channel is tracked per user: registering again (a reconnect or a
    second tab) replaces the previous entry, so only the most recent tab
    receives pushes. Nothing survives a restart; clients re-register on
    every connect.
    """

    def __init__(self) -> None:
        self._entries: Dict[str, PresenceEntry] = {}
        self._lock = Lock()

    def register(self, user_id: str, role: UserRole, channel: DeliveryChannel) -> PresenceEntry:
        entry = PresenceEntry(user_id=user_id, role=role, channel=channel)
        with self._lock:
            self._entries[user_id] = entry
        return entry

    def unregister(self, channel: DeliveryChannel) -> Optional[str]:
        """Remove the entry bound to ``channel`` and return its user id.

        A channel that was already replaced by a newer registration matches
        nothing, so a late disconnect from an old tab leaves the new tab
        registered.
        """

        with self._lock:
            for user_id, entry in self._entries.items():
                if entry.channel is channel:
                    del self._entries[user_id]
                    return user_id
        return None

    def get(self, user_id: str) -> Optional[PresenceEntry]:
        with self._lock:
            return self._entries.get(user_id)

    def list_by_role(self, role: UserRole) -> List[PresenceEntry]:
        with self._lock:
            return [entry for entry in self._entries.values() if entry.role == role]

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


presence_registry = PresenceRegistry()
