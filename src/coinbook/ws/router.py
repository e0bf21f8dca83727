"""WebSocket endpoint: session authentication and topic subscriptions."""

from __future__ import annotations

import json
import uuid
from typing import Any

import structlog
from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect

from coinbook.auth.service import is_employee_admin, resolve_session
from coinbook.container import Services
from coinbook.errors import NotAuthenticated, NotAuthorized
from coinbook.gamification.leaderboard_service import public_name
from coinbook.repositories.unit_of_work import unit_of_work
from coinbook.ws.manager import make_frame

logger = structlog.get_logger()

router = APIRouter()


async def _authenticate(services: Services, conn_id: str, session_id: str | None) -> dict[str, Any]:
    """Bind the socket to the session's user and flush buffered events."""
    async with unit_of_work(services.session_factory) as repos:
        user = await resolve_session(repos, session_id)
    limit = services.settings.ws_max_connections_per_user
    current = services.manager.get(conn_id)
    rebinding = current is not None and current.user_id == user.id
    if not rebinding and services.manager.user_connection_count(user.id) >= limit:
        msg = f"Connection limit reached ({limit} per user)"
        raise NotAuthorized(msg)
    is_admin = is_employee_admin(user, services.settings.employee_email_domain)
    profile = {
        "display_name": public_name(user),
        "first_name": user.first_name,
        "last_name": user.last_name,
        "email": user.email,
    }
    pending = services.manager.authenticate(conn_id, user.id, is_admin=is_admin, profile=profile)

    client = services.manager.get(conn_id)
    if client is not None:
        await client.websocket.send_json(
            make_frame("authenticated", {"user_id": user.id, "is_admin": is_admin, "pending": len(pending)})
        )
        for frame in pending:
            await client.websocket.send_json(frame)

    services.tasks.spawn("login_streak", _login_streak(services, user.id), user_id=user.id)
    if services.local_gateway is not None:
        await services.local_gateway.live_users_changed()
    return {"user_id": user.id, "is_admin": is_admin}


async def _login_streak(services: Services, user_id: int) -> None:
    outcome = await services.gamification.process_activity(user_id, "login")
    if outcome.streak is not None and outcome.streak.changed:
        await services.gateway.streak_updated(outcome.streak)


@router.websocket("/ws")
async def websocket_endpoint(
    websocket: WebSocket,
    session_id: str | None = Query(None, alias="sessionId"),
) -> None:
    """Single socket per client, multiplexing topics.

    Protocol:
        Client -> Server:
            {"action": "auth", "session_id": "..."}
            {"action": "subscribe", "topic": "leaderboard"}
            {"action": "unsubscribe", "topic": "leaderboard"}
            {"action": "ping"}

        Server -> Client (every frame is {"event", "payload", "timestamp"}):
            authenticated, subscribed, unsubscribed, pong, error,
            and the broadcast events (achievement:earned, coin:earned, ...)
    """
    services: Services = websocket.app.state.services
    manager = services.manager
    conn_id = str(uuid.uuid4())
    await manager.connect(websocket, conn_id)

    async def send_error(message: str) -> None:
        await websocket.send_json(make_frame("error", {"message": message}))

    try:
        if session_id:
            try:
                await _authenticate(services, conn_id, session_id)
            except NotAuthenticated as exc:
                await send_error(exc.message)
            except NotAuthorized as exc:
                await send_error(exc.message)
                await websocket.close(code=1008)
                return

        while True:
            raw = await websocket.receive_text()
            try:
                msg = json.loads(raw)
            except json.JSONDecodeError:
                await send_error("Invalid JSON")
                continue
            if not isinstance(msg, dict):
                await send_error("Messages must be JSON objects")
                continue

            action = msg.get("action")

            if action == "auth":
                try:
                    await _authenticate(services, conn_id, msg.get("session_id") or msg.get("sessionId"))
                except NotAuthenticated as exc:
                    await send_error(exc.message)
                except NotAuthorized as exc:
                    await send_error(exc.message)
                    await websocket.close(code=1008)
                    return

            elif action == "subscribe":
                topic = str(msg.get("topic", ""))
                error = manager.subscribe(conn_id, topic)
                if error:
                    await send_error(error)
                else:
                    await websocket.send_json(make_frame("subscribed", {"topic": topic}))
                    if topic == "live-users":
                        await websocket.send_json(
                            make_frame("live-users:update", {"users": manager.live_users()})
                        )

            elif action == "unsubscribe":
                topic = str(msg.get("topic", ""))
                manager.unsubscribe(conn_id, topic)
                await websocket.send_json(make_frame("unsubscribed", {"topic": topic}))

            elif action == "ping":
                await websocket.send_json(make_frame("pong", {}))

            else:
                await send_error(f"Unknown action: {action}")

    except WebSocketDisconnect:
        pass
    except Exception:
        logger.exception("ws_error", conn_id=conn_id)
    finally:
        client = await manager.disconnect(conn_id)
        if client is not None and client.user_id is not None and services.local_gateway is not None:
            await services.local_gateway.live_users_changed()
