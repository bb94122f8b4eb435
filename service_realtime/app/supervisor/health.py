"""
Connection health supervisor for the Realtime Service.

Two duties:

- a periodic sweep that closes connections still anonymous after the
  idle timeout (the only place connections are closed unilaterally);
- per-client reconnect bookkeeping, keyed by the client-reported id since
  transport connections are recreated on every reconnect. Clients that keep
  failing get a warning with the backoff contract; they are never blocked.
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from shared.logging import get_logger
from shared.metrics import MetricsCollector
from ..ws.connection_manager import WebSocketConnectionManager
from ..ws.session import ConnectionSession


IDLE_CLOSE_CODE = 4008


@dataclass
class ReconnectRecord:
    """Consecutive connection outcomes for one client."""
    consecutive_failures: int = 0
    total_attempts: int = 0
    last_attempt_at: float = 0.0


class HealthSupervisor:
    """Sweeps idle anonymous connections and tracks reconnect attempts."""

    def __init__(
        self,
        connections: WebSocketConnectionManager,
        anonymous_timeout: float = 1800,
        sweep_interval: float = 30,
        max_reconnect_attempts: int = 5,
        reconnect_base_delay: float = 1.0,
        reconnect_max_delay: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
        metrics: Optional[MetricsCollector] = None,
        on_sweep: Optional[Callable[[], Any]] = None
    ):
        self.connections = connections
        self.anonymous_timeout = anonymous_timeout
        self.sweep_interval = sweep_interval
        self.max_reconnect_attempts = max_reconnect_attempts
        self.reconnect_base_delay = reconnect_base_delay
        self.reconnect_max_delay = reconnect_max_delay
        self.clock = clock
        self.metrics = metrics
        self.on_sweep = on_sweep
        self.logger = get_logger("realtime.supervisor.health")

        self.reconnects: Dict[str, ReconnectRecord] = {}
        self._sweep_task: Optional[asyncio.Task] = None
        self.running = False

    async def start(self):
        """Start the sweep loop."""
        self.running = True
        self._sweep_task = asyncio.create_task(self._sweep_loop())
        self.logger.info(
            "Health supervisor started",
            sweep_interval=self.sweep_interval,
            anonymous_timeout=self.anonymous_timeout
        )

    async def stop(self):
        """Stop the sweep loop."""
        self.running = False
        if self._sweep_task:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None

        self.logger.info("Health supervisor stopped")

    async def _sweep_loop(self):
        while self.running:
            await asyncio.sleep(self.sweep_interval)
            try:
                await self.sweep()
            except Exception as e:
                self.logger.error("Error in sweep loop", error=str(e), exc_info=True)

    async def sweep(self) -> List[str]:
        """Close anonymous connections older than the timeout.

        Returns the IDs of the connections that were closed.
        """
        stale = [
            session for session in self.connections.anonymous_sessions()
            if session.connected_for() > self.anonymous_timeout
        ]

        closed = []
        for session in stale:
            # The client may have authenticated while an earlier close was pending
            if session.is_authenticated:
                continue
            self.logger.info(
                "Closing idle anonymous connection",
                connection_id=session.connection_id,
                connected_seconds=round(session.connected_for(), 1)
            )
            removed = await self.connections.remove_connection(
                session.connection_id,
                code=IDLE_CLOSE_CODE,
                reason="Authentication timeout"
            )
            # Already removed by its own handler while an earlier close was pending
            if removed is None:
                continue
            self.record_disconnect(session)
            closed.append(session.connection_id)

        if self.metrics:
            for _ in closed:
                self.metrics.increment_counter("swept_connections_total")

        self.prune_reconnects()

        if self.on_sweep is not None:
            self.on_sweep()

        return closed

    def reconnect_delay(self, attempts: int) -> float:
        """Backoff delay clients should wait before their next attempt."""
        if attempts <= 0:
            return 0.0
        delay = self.reconnect_base_delay * (2 ** (attempts - 1))
        return min(delay, self.reconnect_max_delay)

    def backoff_contract(self, attempts: int = 0) -> Dict[str, Any]:
        return {
            "reconnectDelay": self.reconnect_delay(max(attempts, 1)),
            "maxReconnectDelay": self.reconnect_max_delay,
            "maxReconnectAttempts": self.max_reconnect_attempts
        }

    def record_connect(self, client_id: Optional[str]) -> Optional[Dict[str, Any]]:
        """Register a new connection attempt for a client.

        Returns a warning payload once the client has reached the failure
        threshold, otherwise None. The attempt is never refused.
        """
        if not client_id:
            return None

        record = self.reconnects.setdefault(client_id, ReconnectRecord())
        record.total_attempts += 1
        record.last_attempt_at = self.clock()

        if record.consecutive_failures < self.max_reconnect_attempts:
            return None

        if self.metrics:
            self.metrics.increment_counter("reconnect_warnings_total")
        self.logger.warning(
            "Client exceeded reconnect attempts",
            client_id=client_id,
            consecutive_failures=record.consecutive_failures
        )
        return {
            "message": "Failed to connect to real-time updates",
            "type": "warning",
            "attempts": record.consecutive_failures,
            **self.backoff_contract(record.consecutive_failures)
        }

    def record_success(self, client_id: Optional[str]):
        """A connection from this client authenticated; reset its failures."""
        if client_id and client_id in self.reconnects:
            self.reconnects[client_id].consecutive_failures = 0

    def record_failure(self, client_id: Optional[str]) -> int:
        if not client_id:
            return 0
        record = self.reconnects.setdefault(client_id, ReconnectRecord())
        record.consecutive_failures += 1
        record.last_attempt_at = self.clock()
        return record.consecutive_failures

    def record_disconnect(self, session: ConnectionSession):
        """Count a connection that ended without authenticating as a failure."""
        if session.identity is None:
            self.record_failure(session.client_id)

    def prune_reconnects(self, max_age: Optional[float] = None) -> int:
        """Forget clients that have not attempted a connection recently."""
        max_age = max_age if max_age is not None else max(self.anonymous_timeout, 3600)
        cutoff = self.clock() - max_age
        stale = [cid for cid, r in self.reconnects.items() if r.last_attempt_at < cutoff]
        for client_id in stale:
            del self.reconnects[client_id]
        return len(stale)

    def failures_for(self, client_id: str) -> int:
        record = self.reconnects.get(client_id)
        return record.consecutive_failures if record else 0

    def get_stats(self) -> Dict[str, Any]:
        return {
            "running": self.running,
            "sweep_interval": self.sweep_interval,
            "anonymous_timeout": self.anonymous_timeout,
            "tracked_clients": len(self.reconnects),
            "clients_over_threshold": sum(
                1 for r in self.reconnects.values()
                if r.consecutive_failures >= self.max_reconnect_attempts
            )
        }
