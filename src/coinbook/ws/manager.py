"""WebSocket connection manager.

Tracks active connections, the rooms they sit in (``user:{id}`` plus the
subscribable topics) and a short-lived buffer of per-user events that found no
open connection.
"""

from __future__ import annotations

import time
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

import structlog
from fastapi import WebSocket

logger = structlog.get_logger()

TOPICS = ("leaderboard", "activity-feed", "live-users")
ADMIN_TOPICS = frozenset({"live-users"})


def user_room(user_id: int) -> str:
    return f"user:{user_id}"


def make_frame(event: str, payload: Any) -> dict[str, Any]:  # noqa: ANN401
    return {"event": event, "payload": payload, "timestamp": datetime.now(timezone.utc).isoformat()}


def mask_email(email: str | None) -> str | None:
    if not email:
        return email
    local, _, _ = email.partition("@")
    return f"{local}@***"


def sanitize_user(info: dict[str, Any]) -> dict[str, Any]:
    """Roster entry safe for the live-users room."""
    last = (info.get("last_name") or "").strip()
    entry = {
        "user_id": info["user_id"],
        "first_name": info.get("first_name"),
        "last_name": f"{last[0]}." if last else None,
        "is_admin": bool(info.get("is_admin")),
        "connections": info.get("connections", 1),
        "connected_at": info.get("connected_at"),
    }
    entry["email"] = info.get("email") if entry["is_admin"] else mask_email(info.get("email"))
    return entry


@dataclass
class ClientConnection:
    websocket: WebSocket
    conn_id: str
    user_id: int | None = None
    is_admin: bool = False
    profile: dict[str, Any] = field(default_factory=dict)
    rooms: set[str] = field(default_factory=set)
    connected_at: float = field(default_factory=time.time)
    messages_sent: int = 0


class PendingBuffer:
    """Per-user frames kept for ``ttl`` seconds while the user has no socket."""

    def __init__(self, ttl: float = 300.0, clock: Callable[[], float] = time.time) -> None:
        self.ttl = ttl
        self.clock = clock
        self._items: dict[int, list[tuple[float, dict[str, Any]]]] = defaultdict(list)

    def add(self, user_id: int, frame: dict[str, Any]) -> None:
        self._items[user_id].append((self.clock(), frame))

    def take(self, user_id: int) -> list[dict[str, Any]]:
        """Remove and return the user's unexpired frames, oldest first."""
        items = self._items.pop(user_id, [])
        cutoff = self.clock() - self.ttl
        return [frame for created, frame in items if created >= cutoff]

    def purge_expired(self) -> int:
        cutoff = self.clock() - self.ttl
        removed = 0
        for user_id in list(self._items):
            kept = [(c, f) for c, f in self._items[user_id] if c >= cutoff]
            removed += len(self._items[user_id]) - len(kept)
            if kept:
                self._items[user_id] = kept
            else:
                del self._items[user_id]
        return removed

    def __len__(self) -> int:
        return sum(len(v) for v in self._items.values())


class ConnectionManager:
    """Room registry for one process; all access is on the event loop."""

    def __init__(self, pending: PendingBuffer | None = None) -> None:
        self.pending = pending or PendingBuffer()
        self._connections: dict[str, ClientConnection] = {}
        self._rooms: dict[str, set[str]] = defaultdict(set)

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    def get(self, conn_id: str) -> ClientConnection | None:
        return self._connections.get(conn_id)

    def room_size(self, room: str) -> int:
        return len(self._rooms.get(room, ()))

    def user_connection_count(self, user_id: int) -> int:
        return self.room_size(user_room(user_id))

    async def connect(self, websocket: WebSocket, conn_id: str) -> ClientConnection:
        await websocket.accept()
        client = ClientConnection(websocket=websocket, conn_id=conn_id)
        self._connections[conn_id] = client
        logger.info("ws_connected", conn_id=conn_id)
        return client

    def _join(self, client: ClientConnection, room: str) -> None:
        client.rooms.add(room)
        self._rooms[room].add(client.conn_id)

    def _leave(self, client: ClientConnection, room: str) -> None:
        client.rooms.discard(room)
        members = self._rooms.get(room)
        if members is not None:
            members.discard(client.conn_id)
            if not members:
                del self._rooms[room]

    def authenticate(
        self,
        conn_id: str,
        user_id: int,
        *,
        is_admin: bool = False,
        profile: dict[str, Any] | None = None,
    ) -> list[dict[str, Any]]:
        """Bind the connection to a user; returns buffered frames to deliver now.

        Re-authenticating as another user releases every previous room.
        """
        client = self._connections[conn_id]
        if client.user_id is not None and client.user_id != user_id:
            for room in list(client.rooms):
                self._leave(client, room)
            logger.info("ws_user_switched", conn_id=conn_id, old_user=client.user_id, new_user=user_id)
        client.user_id = user_id
        client.is_admin = is_admin
        client.profile = dict(profile or {})
        self._join(client, user_room(user_id))
        logger.info("ws_authenticated", conn_id=conn_id, user_id=user_id)
        return self.pending.take(user_id)

    def subscribe(self, conn_id: str, topic: str) -> str | None:
        """Join a topic room; returns an error message when refused."""
        client = self._connections.get(conn_id)
        if client is None:
            return "Unknown connection"
        if client.user_id is None:
            return "Authenticate before subscribing"
        if topic not in TOPICS:
            return f"Invalid topic: {topic}"
        if topic in ADMIN_TOPICS and not client.is_admin:
            return f"Topic {topic} requires admin access"
        self._join(client, topic)
        logger.debug("ws_subscribed", conn_id=conn_id, topic=topic)
        return None

    def unsubscribe(self, conn_id: str, topic: str) -> bool:
        client = self._connections.get(conn_id)
        if client is None or topic not in client.rooms or topic.startswith("user:"):
            return False
        self._leave(client, topic)
        return True

    async def disconnect(self, conn_id: str) -> ClientConnection | None:
        client = self._connections.pop(conn_id, None)
        if client is None:
            return None
        for room in list(client.rooms):
            self._leave(client, room)
        logger.info("ws_disconnected", conn_id=conn_id, user_id=client.user_id)
        return client

    async def _send(self, conn_ids: list[str], frame: dict[str, Any]) -> int:
        sent = 0
        failed: list[str] = []
        for conn_id in conn_ids:
            client = self._connections.get(conn_id)
            if client is None:
                continue
            try:
                await client.websocket.send_json(frame)
                client.messages_sent += 1
                sent += 1
            except Exception:
                failed.append(conn_id)
        for conn_id in failed:
            await self.disconnect(conn_id)
        return sent

    async def emit_to_room(self, room: str, event: str, payload: Any) -> int:  # noqa: ANN401
        return await self._send(sorted(self._rooms.get(room, ())), make_frame(event, payload))

    async def emit_to_user(self, user_id: int, event: str, payload: Any, *, buffer: bool = False) -> int:  # noqa: ANN401
        """Send to every socket of the user; buffer the frame when none is open."""
        frame = make_frame(event, payload)
        sent = await self._send(sorted(self._rooms.get(user_room(user_id), ())), frame)
        if sent == 0 and buffer:
            self.pending.add(user_id, frame)
            logger.debug("ws_event_buffered", user_id=user_id, event_name=event)
        return sent

    def live_users(self) -> list[dict[str, Any]]:
        """Sanitized roster of authenticated users, one entry per user."""
        roster: dict[int, dict[str, Any]] = {}
        for client in self._connections.values():
            if client.user_id is None:
                continue
            entry = roster.get(client.user_id)
            if entry is None:
                roster[client.user_id] = {
                    **client.profile,
                    "user_id": client.user_id,
                    "is_admin": client.is_admin,
                    "connections": 1,
                    "connected_at": datetime.fromtimestamp(client.connected_at, timezone.utc).isoformat(),
                }
            else:
                entry["connections"] += 1
        return [sanitize_user(info) for _, info in sorted(roster.items())]

    def get_stats(self) -> dict[str, Any]:
        return {
            "total_connections": len(self._connections),
            "authenticated_users": len({c.user_id for c in self._connections.values() if c.user_id is not None}),
            "rooms": {room: len(members) for room, members in self._rooms.items() if not room.startswith("user:")},
            "pending_events": len(self.pending),
        }
