"""Typed broadcast interface.

Services call one method per event family; room names and event strings stay
in this module. ``LocalGateway`` delivers to this process's connection
manager, ``RedisGateway`` publishes for the API process to bridge.
"""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from typing import Any

import structlog

from coinbook.gamification.notifications import TierTransition
from coinbook.gamification.streak_service import StreakUpdate
from coinbook.ws.manager import ConnectionManager, user_room

logger = structlog.get_logger()

PUBSUB_CHANNEL = "coinbook:ws"

ACHIEVEMENT_EARNED = "achievement:earned"
COIN_EARNED = "coin:earned"
COLLECTIONS_UPDATED = "collections:updated"
STREAK_UPDATED = "streak:updated"
LEADERBOARD_UPDATED = "leaderboard:updated"
ACTIVITY_NEW = "activity:new"
LIVE_USERS_UPDATE = "live-users:update"


class Gateway(ABC):
    """Event families; subclasses only implement ``_emit``."""

    @abstractmethod
    async def _emit(self, room: str, event: str, payload: Any, *, buffer: bool = False) -> None:  # noqa: ANN401
        ...

    async def deliver(self, room: str, event: str, payload: Any, *, buffer: bool = False) -> None:  # noqa: ANN401
        """Send a pre-built event as is, e.g. one relayed from another process."""
        await self._emit(room, event, payload, buffer=buffer)

    async def achievement_transition(self, user_id: int, transition: TierTransition) -> None:
        """Collections go out as coin:earned plus collections:updated."""
        payload = transition.to_payload()
        room = user_room(user_id)
        if transition.is_collection:
            await self._emit(room, COIN_EARNED, payload, buffer=True)
            await self._emit(
                room,
                COLLECTIONS_UPDATED,
                {"achievement_id": transition.achievement_id, "code": transition.code},
            )
        else:
            await self._emit(room, ACHIEVEMENT_EARNED, payload, buffer=True)
        await self.activity(
            "earn_badge",
            user_id,
            {"code": transition.code, "name": transition.name, "icon": transition.icon, "tier": transition.new_tier},
        )

    async def streak_updated(self, update: StreakUpdate) -> None:
        payload = update.to_dict()
        await self._emit(user_room(update.user_id), STREAK_UPDATED, payload)
        if update.milestone:
            await self._emit("activity-feed", STREAK_UPDATED, payload)
            await self.activity(
                "streak_milestone",
                update.user_id,
                {"streak_type": update.streak_type, "current_streak": update.current_streak},
            )

    async def leaderboard_updated(self, payload: dict[str, Any] | None = None) -> None:
        await self._emit("leaderboard", LEADERBOARD_UPDATED, payload or {})

    async def activity(
        self,
        activity_type: str,
        user_id: int,
        data: dict[str, Any],
        *,
        display_name: str | None = None,
    ) -> None:
        user: dict[str, Any] = {"id": user_id}
        if display_name:
            user["display_name"] = display_name
        await self._emit("activity-feed", ACTIVITY_NEW, {"type": activity_type, "user": user, "data": data})


class LocalGateway(Gateway):
    def __init__(self, manager: ConnectionManager) -> None:
        self.manager = manager

    async def _emit(self, room: str, event: str, payload: Any, *, buffer: bool = False) -> None:  # noqa: ANN401
        if room.startswith("user:"):
            await self.manager.emit_to_user(int(room.split(":", 1)[1]), event, payload, buffer=buffer)
        else:
            await self.manager.emit_to_room(room, event, payload)

    async def live_users_changed(self) -> None:
        await self.manager.emit_to_room("live-users", LIVE_USERS_UPDATE, {"users": self.manager.live_users()})


class RedisGateway(Gateway):
    """Publishes envelopes that ``PubSubBridge`` replays on the API process."""

    def __init__(self, redis: Any, channel: str = PUBSUB_CHANNEL) -> None:  # noqa: ANN401
        self.redis = redis
        self.channel = channel

    async def _emit(self, room: str, event: str, payload: Any, *, buffer: bool = False) -> None:  # noqa: ANN401
        envelope = {"room": room, "event": event, "payload": payload, "buffer": buffer}
        try:
            await self.redis.publish(self.channel, json.dumps(envelope, default=str))
        except Exception:
            logger.warning("ws_publish_failed", room=room, event_name=event, exc_info=True)
