"""
Entry point: run the control plane's background scheduler with metrics.

The caller-facing operations live on ControlPlane (mt5control.service); this
process hosts the scheduler and the /metrics, /health, /ready endpoints.
"""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import sys

from mt5control.config.config import Settings
from mt5control.config.config_validator import validate_and_log
from mt5control.infra.logging_cfg import LOGGER_NAME, build_logger
from mt5control.monitoring.metrics import ControlMetrics, HealthChecker, start_metrics_server
from mt5control.service import build_control_plane

log = build_logger(LOGGER_NAME)


async def main() -> None:
    cfg = Settings.load()
    build_logger(LOGGER_NAME, level=getattr(logging, cfg.log_level, logging.INFO), file_path=cfg.log_file)

    if not validate_and_log(cfg, log):
        log.error("Configuration validation failed, exiting")
        sys.exit(1)

    # A loop silent for two cycles of the slowest pass is wedged
    stale_after = None
    if cfg.scheduler_enabled:
        stale_after = 2 * max(cfg.evaluation_interval, cfg.balance_sync_interval, cfg.reconcile_interval)
    health_checker = HealthChecker(stale_after=stale_after)
    health_checker.set_component_health("config", True, "Configuration validated")
    metrics = ControlMetrics()

    plane = build_control_plane(cfg, metrics=metrics, health=health_checker)
    await plane.open()
    health_checker.set_component_health("ledger", True)

    srv = await start_metrics_server(
        metrics, cfg.metrics_port, auth_token=cfg.metrics_token, health_checker=health_checker,
    )
    log.info(json.dumps({"event": "startup", "config": cfg.dump()}))

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            pass

    health_checker.set_ready(True)
    try:
        if cfg.scheduler_enabled:
            await plane.scheduler.run(stop_event)
        else:
            await stop_event.wait()
    except (asyncio.CancelledError, KeyboardInterrupt):
        log.info("Shutdown signal received, cleaning up...")
    finally:
        health_checker.set_ready(False)
        log.info("Closing servers and connections...")
        srv.close()
        await srv.wait_closed()
        await plane.close()
        log.info("Shutdown complete")


def run() -> None:
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\nControl plane stopped by user")
    sys.exit(0)


if __name__ == "__main__":
    run()
