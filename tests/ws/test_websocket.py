"""WebSocket protocol tests over the real endpoint.

The sync TestClient runs the app on its own event loop, so setup that needs
the database is run through the client's portal.
"""

from __future__ import annotations

from functools import partial
from typing import Any

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool
from starlette.testclient import TestClient

from coinbook.cache.store import MemoryStore
from coinbook.container import Services, build_services
from coinbook.db.base import Base
from coinbook.main import create_app
from coinbook.repositories.unit_of_work import unit_of_work


def receive(ws) -> dict[str, Any]:
    """Next frame, skipping the login streak update sent after authentication."""
    while True:
        frame = ws.receive_json()
        if frame["event"] != "streak:updated":
            return frame


async def _prepare(services: Services, engine) -> dict[str, Any]:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    async with unit_of_work(services.session_factory) as repos:
        fan = await repos.users.create("fan@example.com", first_name="Jamie", last_name="Lee")
        staff = await repos.users.create("staff@jerky.com", first_name="Sam", last_name="Staff")
        fan_session = await repos.sessions.create(fan.id)
        staff_session = await repos.sessions.create(staff.id)
    return {"fan": fan.id, "staff": staff.id, "fan_session": fan_session.id, "staff_session": staff_session.id}


@pytest.fixture
def ws_env(settings, source):
    engine = create_async_engine(settings.database_url, poolclass=NullPool)
    services = build_services(
        settings,
        async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False),
        store=MemoryStore(),
        source=source,
    )
    with TestClient(create_app(services)) as client:
        ids = client.portal.call(_prepare, services, engine)
        yield client, services, ids
        client.portal.call(partial(services.tasks.drain, timeout=5))
        client.portal.call(engine.dispose)


class TestWebSocketAuth:
    def test_session_in_query(self, ws_env) -> None:
        client, _, ids = ws_env
        with client.websocket_connect(f"/ws?sessionId={ids['fan_session']}") as ws:
            frame = receive(ws)

        assert frame["event"] == "authenticated"
        assert frame["payload"] == {"user_id": ids["fan"], "is_admin": False, "pending": 0}

    def test_auth_message(self, ws_env) -> None:
        client, _, ids = ws_env
        with client.websocket_connect("/ws") as ws:
            ws.send_json({"action": "auth", "session_id": ids["staff_session"]})
            frame = receive(ws)

        assert frame["payload"]["is_admin"] is True

    def test_invalid_session_keeps_socket_open(self, ws_env) -> None:
        client, _, _ = ws_env
        with client.websocket_connect("/ws?sessionId=nope") as ws:
            error = receive(ws)
            ws.send_json({"action": "ping"})
            pong = receive(ws)

        assert error["event"] == "error"
        assert error["payload"]["message"] == "Invalid or expired session"
        assert pong["event"] == "pong"

    def test_buffered_events_follow_authentication(self, ws_env) -> None:
        client, services, ids = ws_env
        client.portal.call(
            partial(services.manager.emit_to_user, ids["fan"], "coin:earned", {"code": "beef"}, buffer=True)
        )

        with client.websocket_connect(f"/ws?sessionId={ids['fan_session']}") as ws:
            authenticated = receive(ws)
            buffered = receive(ws)

        assert authenticated["payload"]["pending"] == 1
        assert buffered["event"] == "coin:earned"
        assert buffered["payload"] == {"code": "beef"}

    def test_connection_limit_per_user(self, ws_env) -> None:
        client, services, ids = ws_env
        services.settings.ws_max_connections_per_user = 1
        url = f"/ws?sessionId={ids['fan_session']}"
        with client.websocket_connect(url) as first:
            assert receive(first)["event"] == "authenticated"
            with client.websocket_connect(url) as second:
                refused = receive(second)

        assert refused["event"] == "error"
        assert refused["payload"]["message"] == "Connection limit reached (1 per user)"


class TestSubscriptions:
    def test_subscribe_requires_auth(self, ws_env) -> None:
        client, _, _ = ws_env
        with client.websocket_connect("/ws") as ws:
            ws.send_json({"action": "subscribe", "topic": "leaderboard"})
            frame = receive(ws)

        assert frame["payload"]["message"] == "Authenticate before subscribing"

    def test_subscribe_then_receive_broadcast(self, ws_env) -> None:
        client, services, ids = ws_env
        with client.websocket_connect(f"/ws?sessionId={ids['fan_session']}") as ws:
            receive(ws)
            ws.send_json({"action": "subscribe", "topic": "leaderboard"})
            subscribed = receive(ws)
            client.portal.call(services.gateway.leaderboard_updated, {"period": "week"})
            update = receive(ws)

        assert (subscribed["event"], subscribed["payload"]) == ("subscribed", {"topic": "leaderboard"})
        assert update["event"] == "leaderboard:updated"
        assert update["payload"] == {"period": "week"}

    def test_live_users_is_admin_only(self, ws_env) -> None:
        client, _, ids = ws_env
        with client.websocket_connect(f"/ws?sessionId={ids['fan_session']}") as ws:
            receive(ws)
            ws.send_json({"action": "subscribe", "topic": "live-users"})
            frame = receive(ws)

        assert frame["event"] == "error"

    def test_admin_gets_roster_on_subscribe(self, ws_env) -> None:
        client, _, ids = ws_env
        with client.websocket_connect(f"/ws?sessionId={ids['staff_session']}") as ws:
            receive(ws)
            ws.send_json({"action": "subscribe", "topic": "live-users"})
            assert receive(ws)["event"] == "subscribed"
            roster = receive(ws)

        assert roster["event"] == "live-users:update"
        [entry] = roster["payload"]["users"]
        assert entry["user_id"] == ids["staff"]
        assert entry["email"] == "staff@jerky.com"

    def test_unsubscribe(self, ws_env) -> None:
        client, _, ids = ws_env
        with client.websocket_connect(f"/ws?sessionId={ids['fan_session']}") as ws:
            receive(ws)
            ws.send_json({"action": "subscribe", "topic": "activity-feed"})
            receive(ws)
            ws.send_json({"action": "unsubscribe", "topic": "activity-feed"})
            frame = receive(ws)

        assert frame["event"] == "unsubscribed"


class TestProtocolErrors:
    @pytest.mark.parametrize(
        ("raw", "message"),
        [
            ("{not json", "Invalid JSON"),
            ("[1, 2]", "Messages must be JSON objects"),
            ('{"action": "dance"}', "Unknown action: dance"),
        ],
    )
    def test_error_frames(self, ws_env, raw: str, message: str) -> None:
        client, _, _ = ws_env
        with client.websocket_connect("/ws") as ws:
            ws.send_text(raw)
            frame = receive(ws)

        assert frame["event"] == "error"
        assert frame["payload"]["message"] == message
