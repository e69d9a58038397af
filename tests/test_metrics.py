"""
Tests for ControlMetrics, HealthChecker and the metrics HTTP server.
"""

import asyncio
import json

import pytest
import pytest_asyncio

from mt5control.monitoring.metrics import ControlMetrics, HealthChecker, start_metrics_server


async def _get(port, path, headers=None):
    reader, writer = await asyncio.open_connection("127.0.0.1", port)
    lines = [f"GET {path} HTTP/1.1", "Host: localhost"]
    lines += [f"{k}: {v}" for k, v in (headers or {}).items()]
    writer.write(("\r\n".join(lines) + "\r\n\r\n").encode())
    await writer.drain()
    raw = await reader.read()
    writer.close()
    head, _, body = raw.partition(b"\r\n\r\n")
    status = int(head.split(b" ")[1])
    return status, body


@pytest_asyncio.fixture
async def server():
    metrics = ControlMetrics()
    health = HealthChecker()
    srv = await start_metrics_server(metrics, 0, host="127.0.0.1", auth_token="s3cret", health_checker=health)
    port = srv.sockets[0].getsockname()[1]
    yield metrics, health, port
    srv.close()
    await srv.wait_closed()


class TestHealthChecker:
    def test_ready_requires_flag_and_health(self):
        health = HealthChecker()
        assert health.is_healthy()
        assert not health.is_ready()

        health.set_ready(True)
        health.set_component_health("ledger", False, "load failed")

        assert not health.is_ready()
        assert health.to_dict()["details"] == {"ledger": "load failed"}

    def test_stale_heartbeat_is_unhealthy(self):
        now = [1000.0]
        health = HealthChecker(stale_after=60, clock=lambda: now[0])

        now[0] += 59
        assert health.is_healthy()

        now[0] += 2
        assert not health.is_healthy()

        health.heartbeat()
        assert health.is_healthy()
        assert health.to_dict()["heartbeat_age_sec"] == 0

    def test_callbacks_notified(self):
        health = HealthChecker()
        seen = []
        health.register_callback(lambda name, ok: seen.append((name, ok)))

        health.set_component_health("scheduler_balance", True)

        assert seen == [("scheduler_balance", True)]


class TestMetricsServer:
    @pytest.mark.asyncio
    async def test_health_and_ready(self, server):
        _, health, port = server

        status, body = await _get(port, "/health")
        assert status == 200
        assert json.loads(body)["healthy"] is True

        status, _ = await _get(port, "/ready")
        assert status == 503

        health.set_ready(True)
        status, _ = await _get(port, "/ready")
        assert status == 200

    @pytest.mark.asyncio
    async def test_metrics_require_token(self, server):
        metrics, _, port = server
        metrics.robot_starts.labels(robot="scalper").inc()

        status, _ = await _get(port, "/metrics")
        assert status == 401

        status, body = await _get(port, "/metrics", {"Authorization": "Bearer s3cret"})
        assert status == 200
        assert b'mt5c_robot_starts_total{robot="scalper"} 1.0' in body

        status, _ = await _get(port, "/metrics?token=s3cret")
        assert status == 200

    @pytest.mark.asyncio
    async def test_unknown_path(self, server):
        _, _, port = server

        status, _ = await _get(port, "/nope")

        assert status == 404


class TestControlMetrics:
    def test_private_registries(self):
        first, second = ControlMetrics(), ControlMetrics()

        first.orders_failed.labels(reason="timeout").inc()

        assert first.registry.get_sample_value("mt5c_orders_failed_total", {"reason": "timeout"}) == 1.0
        assert second.registry.get_sample_value("mt5c_orders_failed_total", {"reason": "timeout"}) is None
