"""
Realtime service for Streampulse.
"""

import time
from typing import Any, Callable, Dict, Optional

from fastapi import Depends, Header, HTTPException, Query, WebSocket, WebSocketDisconnect
from pydantic import BaseModel, ConfigDict, Field

from shared.base_service import BaseService
from shared.config import ServiceConfig
from shared.errors import AuthRequired, ConnectionLimitExceeded
from shared.logging import clear_context, set_connection_context

from .auth.gate import AuthGate
from .broadcast.gateway import BroadcastGateway
from .cache.snapshot_cache import SnapshotCache
from .subscriptions.registry import TopicRegistry
from .subscriptions.topics import parse_topic
from .supervisor.health import HealthSupervisor
from .telemetry.client import TelemetryClient
from .ws.connection_manager import WebSocketConnectionManager
from .ws.handlers import WebSocketMessageHandler
from .ws.messages import Envelope, OutboundEvent, utc_timestamp


PUBLISHABLE_EVENTS = {
    OutboundEvent.STREAMER_UPDATE.value,
    OutboundEvent.GAME_TREND_UPDATE.value,
    OutboundEvent.GLOBAL_TRENDS_UPDATE.value,
    OutboundEvent.VIEWER_COUNT_UPDATE.value,
    OutboundEvent.LIVE_STATUS_CHANGE.value,
}

CONNECTION_LIMIT_CLOSE_CODE = 1013


class PublishRequest(BaseModel):
    """Collector update for one topic."""
    topic: str
    event: str
    data: Dict[str, Any] = Field(default_factory=dict)
    ttl: Optional[float] = Field(default=None, gt=0)


class AlertRequest(BaseModel):
    """System-wide alert; extra fields are passed through to clients."""
    model_config = ConfigDict(extra="allow")

    type: str


class NotificationRequest(BaseModel):
    """Notification for one user's connections."""
    user_id: str
    message: str
    type: str = "info"


class RealtimeService(BaseService):
    """Realtime subscription and broadcast service."""

    def __init__(
        self,
        config: Optional[ServiceConfig] = None,
        telemetry: Optional[TelemetryClient] = None,
        clock: Callable[[], float] = time.monotonic
    ):
        super().__init__("realtime", 8001, config=config)

        self.registry = TopicRegistry()
        self.snapshots = SnapshotCache(
            default_ttl=self.config.global_trends_snapshot_ttl,
            clock=clock,
            metrics=self.metrics
        )
        self.auth_gate = AuthGate(
            self.config.jwt_secret,
            algorithm=self.config.jwt_algorithm,
            metrics=self.metrics
        )
        self.ws_manager = WebSocketConnectionManager(
            registry=self.registry,
            snapshots=self.snapshots,
            auth_gate=self.auth_gate,
            max_connections=self.config.max_ws_connections,
            delivery_timeout=self.config.delivery_timeout_seconds,
            clock=clock,
            metrics=self.metrics
        )
        self.gateway = BroadcastGateway(
            registry=self.registry,
            snapshots=self.snapshots,
            connections=self.ws_manager,
            ttls={
                "streamer": self.config.streamer_snapshot_ttl,
                "game": self.config.game_snapshot_ttl,
                "global_trends": self.config.global_trends_snapshot_ttl,
                "viewer_count": self.config.viewer_count_snapshot_ttl,
            },
            metrics=self.metrics
        )
        self.supervisor = HealthSupervisor(
            connections=self.ws_manager,
            anonymous_timeout=self.config.anonymous_timeout_seconds,
            sweep_interval=self.config.sweep_interval_seconds,
            max_reconnect_attempts=self.config.max_reconnect_attempts,
            reconnect_base_delay=self.config.reconnect_base_delay_seconds,
            reconnect_max_delay=self.config.reconnect_max_delay_seconds,
            clock=clock,
            metrics=self.metrics,
            on_sweep=self.snapshots.purge_expired
        )
        self.telemetry = telemetry or TelemetryClient(
            self.config.telemetry_service_url,
            timeout=self.config.telemetry_timeout_seconds
        )
        self.ws_handler = WebSocketMessageHandler(
            snapshots=self.snapshots,
            telemetry=self.telemetry,
            on_authenticated=lambda session: self.supervisor.record_success(session.client_id)
        )

        self._setup_realtime_routes()
        self.app.state.realtime_service = self

    def _require_collector_key(self, x_collector_key: Optional[str] = Header(None)):
        """Guard collector ingest endpoints with the shared collector key."""
        expected = self.config.collector_api_key
        if expected and x_collector_key != expected:
            raise AuthRequired("Valid collector key required")

    def _setup_realtime_routes(self):
        """Set up realtime-specific routes."""
        collector_guard = Depends(self._require_collector_key)

        @self.app.get("/")
        async def root():
            """Root endpoint."""
            return {
                "service": "realtime",
                "message": "Streampulse - Realtime Service",
                "version": "1.0.0",
                "capabilities": ["websocket", "snapshots", "broadcast"],
                "reconnect": self.supervisor.backoff_contract()
            }

        @self.app.websocket("/ws/stream")
        async def websocket_endpoint(
            websocket: WebSocket,
            client_id: Optional[str] = Query(None),
            token: Optional[str] = Query(None)
        ):
            """WebSocket streaming endpoint."""
            await websocket.accept()

            try:
                session = self.ws_manager.add_connection(
                    websocket,
                    client_id=client_id,
                    metadata={"client": str(websocket.client) if websocket.client else None}
                )
            except ConnectionLimitExceeded as e:
                await websocket.send_text(Envelope(OutboundEvent.ERROR.value, {"message": e.message}).to_json())
                await websocket.close(code=CONNECTION_LIMIT_CLOSE_CODE)
                return

            set_connection_context(session.connection_id)

            try:
                warning = self.supervisor.record_connect(client_id)
                if warning:
                    await session.emit(OutboundEvent.NOTIFICATION.value, {**warning, "timestamp": utc_timestamp()})

                if token:
                    reply = await self.ws_handler.authenticate(session, token)
                    if reply:
                        await session.emit(reply.event, reply.data)

                while True:
                    message_text = await websocket.receive_text()
                    reply = await self.ws_handler.handle_message(session, message_text)
                    if reply:
                        await session.emit(reply.event, reply.data)

            except WebSocketDisconnect:
                pass
            except Exception as e:
                # Closed by the supervisor while waiting for a frame
                if not session.is_closed:
                    self.logger.error(
                        "WebSocket connection error",
                        connection_id=session.connection_id,
                        error=str(e)
                    )
            finally:
                removed = await self.ws_manager.remove_connection(
                    session.connection_id,
                    close_transport=False
                )
                if removed is not None:
                    self.supervisor.record_disconnect(removed)
                clear_context()

        @self.app.get("/snapshots/{topic}")
        async def get_snapshot(topic: str):
            """Current value for a topic without subscribing."""
            parse_topic(topic)
            envelope = self.snapshots.read(topic)
            if envelope is None:
                raise HTTPException(status_code=404, detail="No current snapshot for topic")
            return {"topic": topic, **envelope.to_dict()}

        @self.app.post("/publish", dependencies=[collector_guard])
        async def publish(request: PublishRequest):
            """Collector ingest for topic updates."""
            parse_topic(request.topic)
            if request.event not in PUBLISHABLE_EVENTS:
                raise HTTPException(status_code=400, detail=f"Unsupported event: {request.event}")

            data = {**request.data}
            data.setdefault("timestamp", utc_timestamp())
            delivered = await self.gateway.publish(request.topic, request.event, data, request.ttl)
            return {"success": True, "topic": request.topic, "delivered": delivered}

        @self.app.post("/alerts", dependencies=[collector_guard])
        async def alert(request: AlertRequest):
            """Collector ingest for system-wide alerts."""
            delivered = await self.gateway.broadcast_alert(request.model_dump())
            return {"success": True, "delivered": delivered}

        @self.app.post("/notifications", dependencies=[collector_guard])
        async def notify(request: NotificationRequest):
            """Notification for a single user's connections."""
            delivered = await self.gateway.send_user_notification(
                request.user_id,
                request.message,
                request.type
            )
            return {"success": True, "delivered": delivered}

        @self.app.get("/stats")
        async def get_stats():
            """Get realtime service statistics."""
            return {
                "websocket": self.ws_manager.get_connection_stats(),
                "registry": self.registry.get_stats(),
                "snapshots": self.snapshots.get_stats(),
                "supervisor": self.supervisor.get_stats()
            }

    async def _check_dependencies(self):
        """Check realtime service dependencies."""
        return {
            "telemetry": "ok" if await self.telemetry.health_check() else "error"
        }

    async def start(self):
        """Start realtime service components."""
        await self.supervisor.start()
        self.logger.info("Realtime service components started")

    async def stop(self):
        """Stop realtime service components."""
        await self.supervisor.stop()
        await self.ws_manager.close_all()
        self.logger.info("Realtime service components stopped")


def create_app(config: Optional[ServiceConfig] = None):
    """Create realtime service application."""
    service = RealtimeService(config=config)
    return service.app


if __name__ == "__main__":
    service = RealtimeService()
    service.run()
