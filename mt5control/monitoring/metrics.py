"""
Prometheus metrics plus a small HTTP server with health endpoints.

- /metrics - Prometheus text exposition (bearer token required if set)
- /health  - Liveness: every component healthy and the scheduler heartbeat fresh
- /ready   - Readiness: set_ready(True) called and healthy

Every component takes `metrics: Optional[ControlMetrics]`; None disables
instrumentation.
"""

from __future__ import annotations

import asyncio
import json
import time
from dataclasses import asdict, dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple
from urllib.parse import parse_qs, urlparse

from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry, Counter, Gauge, Histogram, generate_latest


class ControlMetrics:
    """Control-plane metrics on a private registry."""

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry or CollectorRegistry()
        r = self.registry

        # Robot lifecycle and order flow
        self.robot_starts = Counter("mt5c_robot_starts_total", "Robot start requests", ["robot"], registry=r)
        self.robot_stops = Counter("mt5c_robot_stops_total", "Robot stop requests", ["kind"], registry=r)
        self.orders_placed = Counter(
            "mt5c_orders_placed_total", "Orders accepted by the broker", ["symbol", "side"], registry=r,
        )
        self.orders_failed = Counter(
            "mt5c_orders_failed_total", "Orders rejected, timed out or skipped", ["reason"], registry=r,
        )
        self.close_errors = Counter("mt5c_close_errors_total", "Positions that failed to close", registry=r)

        # Balance and deal sync
        self.balance_reads = Counter("mt5c_balance_reads_total", "Balance reads by source", ["source"], registry=r)
        self.reconciled_trades = Counter(
            "mt5c_reconciled_trades_total", "Trades produced by reconciliation", ["status"], registry=r,
        )
        self.remote_call_latency = Histogram(
            "mt5c_remote_call_seconds",
            "Broker call latency (seconds)",
            ["operation"],
            buckets=(0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10, 30),
            registry=r,
        )

        # Scheduler
        self.scheduler_passes = Counter("mt5c_scheduler_passes_total", "Scheduler passes run", ["kind"], registry=r)
        self.circuit_open = Gauge(
            "mt5c_circuit_open", "Per-account circuit breaker open (1) or closed (0)", ["account"], registry=r,
        )

    def render(self) -> bytes:
        return generate_latest(self.registry)


@dataclass
class ComponentHealth:
    ok: bool
    detail: Optional[str]
    updated_at: float


class HealthChecker:
    """
    Component health registry behind /health and /ready.

    With `stale_after` set, the process also turns unhealthy when heartbeat()
    has not been called for that many seconds (a wedged scheduler loop).
    """

    def __init__(self, stale_after: Optional[float] = None, clock: Callable[[], float] = time.time) -> None:
        self.stale_after = stale_after
        self.components: Dict[str, ComponentHealth] = {}
        self._clock = clock
        self._ready = False
        self._heartbeat_at = clock()
        self._listeners: List[Callable[[str, bool], None]] = []

    def register_callback(self, callback: Callable[[str, bool], None]) -> None:
        self._listeners.append(callback)

    def set_component_health(self, name: str, healthy: bool, detail: Optional[str] = None) -> None:
        self.components[name] = ComponentHealth(healthy, detail, self._clock())
        for listener in self._listeners:
            listener(name, healthy)

    def set_ready(self, ready: bool) -> None:
        self._ready = ready

    def heartbeat(self) -> None:
        self._heartbeat_at = self._clock()

    def heartbeat_stale(self) -> bool:
        if self.stale_after is None:
            return False
        return self._clock() - self._heartbeat_at > self.stale_after

    def is_healthy(self) -> bool:
        return all(c.ok for c in self.components.values()) and not self.heartbeat_stale()

    def is_ready(self) -> bool:
        return self._ready and self.is_healthy()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "healthy": self.is_healthy(),
            "ready": self.is_ready(),
            "heartbeat_age_sec": round(self._clock() - self._heartbeat_at, 3),
            "components": {name: asdict(c) for name, c in self.components.items()},
            "details": {name: c.detail for name, c in self.components.items() if c.detail},
        }


_REASONS = {200: "OK", 401: "Unauthorized", 404: "Not Found", 503: "Service Unavailable"}

Reply = Tuple[int, str, bytes]


def _reply_json(status: int, payload: Dict[str, Any]) -> Reply:
    return status, "application/json", json.dumps(payload).encode()


def _encode(reply: Reply) -> bytes:
    status, content_type, body = reply
    head = (
        f"HTTP/1.1 {status} {_REASONS.get(status, 'Error')}\r\n"
        f"Content-Type: {content_type}\r\n"
        f"Content-Length: {len(body)}\r\n"
        "Connection: close\r\n\r\n"
    )
    return head.encode("latin-1") + body


def _parse_request(raw: bytes) -> Tuple[str, Dict[str, List[str]], Dict[str, str]]:
    """Path, query and lower-cased headers of a raw GET request."""
    head = raw.decode("latin-1").split("\r\n\r\n", 1)[0]
    request_line, *header_lines = head.split("\r\n")
    parts = request_line.split(" ")
    target = urlparse(parts[1] if len(parts) > 1 else "/")
    headers = {}
    for line in header_lines:
        name, sep, value = line.partition(":")
        if sep:
            headers[name.strip().lower()] = value.strip()
    return target.path, parse_qs(target.query), headers


async def start_metrics_server(
    metrics: ControlMetrics,
    port: int,
    host: str = "0.0.0.0",
    auth_token: Optional[str] = None,
    health_checker: Optional[HealthChecker] = None,
) -> asyncio.AbstractServer:
    """Serve /metrics, /health and /ready on host:port until the server is closed."""
    health = health_checker or HealthChecker()
    if health_checker is None:
        health.set_ready(True)

    def authorized(query: Dict[str, List[str]], headers: Dict[str, str]) -> bool:
        if not auth_token:
            return True
        return headers.get("authorization") == f"Bearer {auth_token}" or query.get("token", [""])[0] == auth_token

    def route(path: str, query: Dict[str, List[str]], headers: Dict[str, str]) -> Reply:
        if path == "/health":
            return _reply_json(200 if health.is_healthy() else 503, health.to_dict())
        if path == "/ready":
            ready = health.is_ready()
            return _reply_json(200 if ready else 503, {"ready": ready})
        if path == "/metrics":
            if not authorized(query, headers):
                return 401, "text/plain", b"unauthorized"
            return 200, CONTENT_TYPE_LATEST, metrics.render()
        return 404, "text/plain", b"not found"

    async def handle(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        try:
            raw = await reader.read(4096)
            writer.write(_encode(route(*_parse_request(raw))))
            await writer.drain()
        finally:
            writer.close()

    return await asyncio.start_server(handle, host, port)
