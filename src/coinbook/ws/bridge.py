"""Bridges Redis pub/sub to WebSocket clients.

Worker processes publish gateway envelopes on one channel; the API process
replays them onto its local rooms.
"""

from __future__ import annotations

import asyncio
import json
from typing import Any

import redis.asyncio as aioredis
import structlog

from coinbook.ws.gateway import PUBSUB_CHANNEL, LocalGateway

logger = structlog.get_logger()


class PubSubBridge:
    """Subscribes to the gateway channel and pushes envelopes to local rooms."""

    def __init__(self, redis_client: aioredis.Redis, gateway: LocalGateway, channel: str = PUBSUB_CHANNEL) -> None:
        self.redis = redis_client
        self.gateway = gateway
        self.channel = channel
        self.delivered = 0
        self._running = False

    async def dispatch(self, raw: Any) -> bool:  # noqa: ANN401
        """Deliver one envelope; returns False for malformed input."""
        try:
            if isinstance(raw, bytes):
                raw = raw.decode()
            envelope = json.loads(raw)
            room = envelope["room"]
            event = envelope["event"]
        except (json.JSONDecodeError, UnicodeDecodeError, KeyError, TypeError):
            logger.warning("pubsub_invalid_message", channel=self.channel)
            return False

        await self.gateway.deliver(room, event, envelope.get("payload"), buffer=bool(envelope.get("buffer")))
        self.delivered += 1
        return True

    async def start(self) -> None:
        self._running = True
        pubsub = self.redis.pubsub()
        await pubsub.subscribe(self.channel)
        logger.info("pubsub_bridge_started", channel=self.channel)

        try:
            while self._running:
                message = await pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
                if message is None:
                    continue
                await self.dispatch(message.get("data", b""))
        except asyncio.CancelledError:
            pass
        finally:
            await pubsub.unsubscribe()
            await pubsub.close()
            logger.info("pubsub_bridge_stopped")

    async def stop(self) -> None:
        self._running = False
