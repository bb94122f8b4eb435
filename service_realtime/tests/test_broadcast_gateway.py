"""
Tests for the broadcast gateway.
"""

import asyncio
import json
from unittest.mock import AsyncMock

import pytest

from shared.errors import AuthRequired
from service_realtime.app.broadcast.gateway import BroadcastGateway

from conftest import make_token, mock_websocket, sent_events, sent_frames


async def authenticated_session(ws_manager, user_id=42):
    session = ws_manager.add_connection(mock_websocket())
    await session.authenticate(make_token(user_id=user_id))
    return session


class TestBroadcastGateway:
    """Test BroadcastGateway fan-out."""

    @pytest.mark.asyncio
    async def test_publish_without_subscribers(self, gateway, snapshots):
        """Test publishing to an empty topic stores the snapshot only."""
        delivered = await gateway.publish("streamer:7", "streamer_update", {"viewers": 10})

        assert delivered == 0
        assert snapshots.read("streamer:7").data == {"viewers": 10}

    @pytest.mark.asyncio
    async def test_publish_reaches_subscribers(self, gateway, ws_manager, metrics):
        """Test every subscriber receives the update."""
        first = await authenticated_session(ws_manager, 1)
        second = await authenticated_session(ws_manager, 2)
        await first.subscribe("streamer:7")
        await second.subscribe("streamer:7")

        delivered = await gateway.publish("streamer:7", "streamer_update", {"viewers": 10})

        assert delivered == 2
        for session in (first, second):
            assert sent_frames(session.websocket) == [
                {"event": "streamer_update", "data": {"viewers": 10}}
            ]
        assert metrics.get_sample_value("messages_sent_total", {"event": "streamer_update"}) == 2

    @pytest.mark.asyncio
    async def test_subscribe_after_auth_replays_latest(self, gateway, ws_manager):
        """Test an anonymous subscribe fails, then succeeds with replay after authenticating."""
        session = ws_manager.add_connection(mock_websocket())
        await gateway.publish("game:42", "game_trend_update", {"viewers": 500})

        with pytest.raises(AuthRequired):
            await session.subscribe("game:42")

        await session.authenticate(make_token())
        await session.subscribe("game:42")

        assert sent_frames(session.websocket) == [
            {"event": "game_trend_update", "data": {"viewers": 500}}
        ]

    @pytest.mark.asyncio
    async def test_publish_order_per_topic(self, gateway, ws_manager):
        """Test subscribers observe one topic's updates in publish order."""
        release = asyncio.Event()
        received = {}

        def recorder(name):
            async def send_text(text):
                frame = json.loads(text)
                if frame["data"]["viewers"] == 10:
                    await release.wait()
                received.setdefault(name, []).append(frame["data"]["viewers"])
            return send_text

        sessions = []
        for user_id in (1, 2):
            session = await authenticated_session(ws_manager, user_id)
            await session.subscribe("streamer:7")
            session.websocket.send_text = AsyncMock(side_effect=recorder(user_id))
            sessions.append(session)

        first = asyncio.create_task(gateway.publish("streamer:7", "streamer_update", {"viewers": 10}))
        await asyncio.sleep(0)
        second = asyncio.create_task(gateway.publish("streamer:7", "streamer_update", {"viewers": 20}))
        await asyncio.sleep(0)
        release.set()

        assert await first == 2
        assert await second == 2
        assert received == {1: [10, 20], 2: [10, 20]}

    @pytest.mark.asyncio
    async def test_late_subscriber_sees_queued_updates_in_order(self, gateway, ws_manager, snapshots):
        """Test a connection joining while publishes are queued observes them in order."""
        release = asyncio.Event()
        early = await authenticated_session(ws_manager, 1)
        await early.subscribe("streamer:7")

        early_received = []

        async def blocking_send(text):
            frame = json.loads(text)
            if frame["data"]["viewers"] == 10:
                await release.wait()
            early_received.append(frame["data"]["viewers"])

        early.websocket.send_text = AsyncMock(side_effect=blocking_send)

        publishes = [asyncio.create_task(gateway.publish("streamer:7", "streamer_update", {"viewers": 10}))]
        for _ in range(5):
            await asyncio.sleep(0)
        for viewers in (15, 20):
            publishes.append(asyncio.create_task(
                gateway.publish("streamer:7", "streamer_update", {"viewers": viewers})
            ))
        for _ in range(5):
            await asyncio.sleep(0)

        # Queued publishes have not replaced the value still being delivered
        assert snapshots.read("streamer:7").data == {"viewers": 10}

        late_received = []

        async def recording_send(text):
            late_received.append(json.loads(text)["data"]["viewers"])

        late = ws_manager.add_connection(mock_websocket())
        late.websocket.send_text = AsyncMock(side_effect=recording_send)
        await late.authenticate(make_token(user_id=3))
        await late.subscribe("streamer:7")

        release.set()
        await asyncio.gather(*publishes)

        assert early_received == [10, 15, 20]
        assert late_received == [10, 15, 20]
        assert snapshots.read("streamer:7").data == {"viewers": 20}

    @pytest.mark.asyncio
    async def test_publish_skips_non_subscribers(self, gateway, ws_manager, registry):
        """Test updates do not reach connections that never subscribed."""
        subscriber = await authenticated_session(ws_manager, 1)
        bystander = await authenticated_session(ws_manager, 2)
        await subscriber.subscribe("streamer:7")

        await gateway.publish("streamer:7", "streamer_update", {"viewers": 10})

        assert registry.resolve_subscribers("streamer:7") == {subscriber.connection_id}
        assert sent_events(subscriber.websocket) == ["streamer_update"]
        bystander.websocket.send_text.assert_not_called()

    @pytest.mark.asyncio
    async def test_delivery_failure_is_isolated(self, gateway, ws_manager, metrics):
        """Test one failing connection does not stop the fan-out."""
        broken = await authenticated_session(ws_manager, 1)
        healthy = await authenticated_session(ws_manager, 2)
        await broken.subscribe("streamer:7")
        await healthy.subscribe("streamer:7")
        broken.websocket.send_text.side_effect = RuntimeError("connection reset")

        delivered = await gateway.publish("streamer:7", "streamer_update", {"viewers": 10})

        assert delivered == 1
        assert sent_events(healthy.websocket) == ["streamer_update"]
        assert not broken.is_closed
        assert metrics.get_sample_value("delivery_failures_total", {"event": "streamer_update"}) == 1

    @pytest.mark.asyncio
    async def test_closed_connection_not_delivered(self, gateway, ws_manager):
        """Test removed connections are never written to."""
        session = await authenticated_session(ws_manager)
        await session.subscribe("streamer:7")
        await ws_manager.remove_connection(session.connection_id)

        assert await gateway.publish("streamer:7", "streamer_update", {"viewers": 10}) == 0
        session.websocket.send_text.assert_not_called()

    @pytest.mark.asyncio
    async def test_topic_locks_released(self, gateway, ws_manager):
        """Test per-topic locks are dropped once idle."""
        session = await authenticated_session(ws_manager)
        await session.subscribe("streamer:7")

        await gateway.publish("streamer:7", "streamer_update", {"viewers": 10})

        assert gateway._topic_locks == {}

    @pytest.mark.asyncio
    async def test_broadcast_global(self, gateway, ws_manager):
        """Test global broadcasts reach anonymous and authenticated connections."""
        anonymous = ws_manager.add_connection(mock_websocket())
        authed = await authenticated_session(ws_manager)

        delivered = await gateway.broadcast_alert({"type": "maintenance", "message": "Restarting"})

        assert delivered == 2
        for session in (anonymous, authed):
            frame = sent_frames(session.websocket)[0]
            assert frame["event"] == "alert"
            assert frame["data"]["type"] == "maintenance"
            assert "timestamp" in frame["data"]

    @pytest.mark.asyncio
    async def test_notify_user(self, gateway, ws_manager, snapshots):
        """Test user notifications reach only that user's connections."""
        target = await authenticated_session(ws_manager, 42)
        other_tab = await authenticated_session(ws_manager, 42)
        other_user = await authenticated_session(ws_manager, 7)

        delivered = await gateway.send_user_notification("42", "Stream started", "success")

        assert delivered == 2
        for session in (target, other_tab):
            frame = sent_frames(session.websocket)[0]
            assert frame["event"] == "notification"
            assert frame["data"]["message"] == "Stream started"
            assert frame["data"]["type"] == "success"
        other_user.websocket.send_text.assert_not_called()
        assert snapshots.read("user:42") is None


class TestTypedHelpers:
    """Test collector-facing helpers."""

    @pytest.mark.asyncio
    async def test_streamer_update(self, gateway, snapshots):
        """Test streamer updates are wrapped and cached with the streamer ttl."""
        await gateway.broadcast_streamer_update("7", {"title": "Speedrun"})

        entry = snapshots.read_entry("streamer:7")
        assert entry.ttl_seconds == 60
        assert entry.value.event == "streamer_update"
        assert entry.value.data["streamerId"] == "7"
        assert entry.value.data["data"] == {"title": "Speedrun"}

    @pytest.mark.asyncio
    async def test_game_trend_update(self, gateway, snapshots):
        """Test game trend updates use the game ttl."""
        await gateway.broadcast_game_trend_update("509658", {"growth": 0.4})

        entry = snapshots.read_entry("game:509658")
        assert entry.ttl_seconds == 300
        assert entry.value.data["gameId"] == "509658"

    @pytest.mark.asyncio
    async def test_global_trends(self, gateway, snapshots):
        """Test global trends are cached on the global topic."""
        await gateway.broadcast_global_trends([{"gameId": "1"}])

        assert snapshots.read("global_trends").event == "global_trends_update"

    @pytest.mark.asyncio
    async def test_viewer_count_overwrites_streamer_snapshot(self, gateway, snapshots):
        """Test viewer counts share the streamer topic's snapshot slot."""
        await gateway.broadcast_streamer_update("7", {"title": "Speedrun"})
        await gateway.broadcast_viewer_count_update("7", 1234)

        entry = snapshots.read_entry("streamer:7")
        assert entry.value.event == "viewer_count_update"
        assert entry.value.data["count"] == 1234
        assert entry.ttl_seconds == 30

    @pytest.mark.asyncio
    async def test_live_status_change(self, gateway, ws_manager):
        """Test live status changes reach streamer subscribers."""
        session = await authenticated_session(ws_manager)
        await session.subscribe("streamer:7")

        await gateway.broadcast_live_status_change("7", True, {"title": "Live now"})

        frame = sent_frames(session.websocket)[0]
        assert frame["event"] == "live_status_change"
        assert frame["data"]["isLive"] is True
        assert frame["data"]["streamData"] == {"title": "Live now"}

    def test_ttl_overrides(self, registry, snapshots, ws_manager):
        """Test configured ttls replace the defaults."""
        gateway = BroadcastGateway(registry, snapshots, ws_manager, ttls={"streamer": 15})

        assert gateway.ttls["streamer"] == 15
        assert gateway.ttls["game"] == 300
