"""
Environment-driven configuration with validation.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

load_dotenv()


def env_bool(key: str, default: bool) -> bool:
    val = os.getenv(key)
    if val is None:
        return default
    return val.lower() in {"1", "true", "yes", "y"}


def _int_env(key: str, default: int) -> int:
    raw = os.getenv(key)
    if raw is None or raw == "":
        return default
    return int(raw)


def _float_env(key: str, default: float) -> float:
    raw = os.getenv(key)
    if raw is None or raw == "":
        return default
    return float(raw)


@dataclass(frozen=True)
class Settings:
    metaapi_token: Optional[str]
    provisioning_url: str
    client_url: str
    region: str
    http_timeout: float
    # Hard deadline for user-facing balance reads
    balance_max_wait: float
    # Deadline for a bulk close request at the broker
    close_timeout: float
    order_timeout: float
    history_window_days: int
    order_comment_prefix: str
    max_concurrent_trades: int
    evaluation_interval: float
    balance_sync_interval: float
    reconcile_interval: float
    api_error_threshold: int
    ledger_path: Optional[str]
    metrics_port: int
    metrics_token: Optional[str]
    log_file: Optional[str]
    log_level: str
    scheduler_enabled: bool

    def dump(self) -> dict:
        """Return a dict of settings for logging, with the token masked."""
        data = self.__dict__.copy()
        if data.get("metaapi_token"):
            data["metaapi_token"] = "***"
        if data.get("metrics_token"):
            data["metrics_token"] = "***"
        return data

    @classmethod
    def load(cls) -> "Settings":
        region = os.getenv("MT5C_REGION", "london")
        cfg = cls(
            metaapi_token=os.getenv("METAAPI_TOKEN") or os.getenv("MT5C_METAAPI_TOKEN"),
            provisioning_url=os.getenv(
                "MT5C_PROVISIONING_URL",
                "https://mt-provisioning-api-v1.agiliumtrade.agiliumtrade.ai",
            ),
            client_url=os.getenv(
                "MT5C_CLIENT_URL",
                f"https://mt-client-api-v1.{region}.agiliumtrade.ai",
            ),
            region=region,
            http_timeout=_float_env("MT5C_HTTP_TIMEOUT", 10.0),
            balance_max_wait=_float_env("MT5C_BALANCE_MAX_WAIT_SEC", 3.0),
            close_timeout=_float_env("MT5C_CLOSE_TIMEOUT_SEC", 30.0),
            order_timeout=_float_env("MT5C_ORDER_TIMEOUT_SEC", 15.0),
            history_window_days=_int_env("MT5C_HISTORY_WINDOW_DAYS", 30),
            order_comment_prefix=os.getenv("MT5C_ORDER_COMMENT_PREFIX", "mt5c"),
            max_concurrent_trades=_int_env("MT5C_MAX_CONCURRENT_TRADES", 5),
            evaluation_interval=_float_env("MT5C_EVALUATION_INTERVAL_SEC", 30.0),
            balance_sync_interval=_float_env("MT5C_BALANCE_SYNC_INTERVAL_SEC", 300.0),
            reconcile_interval=_float_env("MT5C_RECONCILE_INTERVAL_SEC", 120.0),
            api_error_threshold=_int_env("MT5C_API_ERROR_THRESHOLD", 5),
            ledger_path=os.getenv("MT5C_LEDGER_PATH", "state/ledger.json") or None,
            metrics_port=_int_env("MT5C_METRICS_PORT", 9096),
            metrics_token=os.getenv("MT5C_METRICS_TOKEN"),
            log_file=os.getenv("MT5C_LOG_FILE") or None,
            log_level=os.getenv("MT5C_LOG_LEVEL", "INFO").upper(),
            scheduler_enabled=env_bool("MT5C_SCHEDULER_ENABLED", True),
        )
        cfg._validate()
        _sanity_check(cfg)
        return cfg

    def _validate(self) -> None:
        if self.http_timeout <= 0:
            raise ValueError("MT5C_HTTP_TIMEOUT must be > 0")
        if self.balance_max_wait <= 0:
            raise ValueError("MT5C_BALANCE_MAX_WAIT_SEC must be > 0")
        if self.close_timeout <= 0 or self.order_timeout <= 0:
            raise ValueError("Close/order timeouts must be > 0")
        if self.history_window_days <= 0:
            raise ValueError("MT5C_HISTORY_WINDOW_DAYS must be > 0")
        if self.max_concurrent_trades <= 0:
            raise ValueError("MT5C_MAX_CONCURRENT_TRADES must be > 0")
        if not self.order_comment_prefix or "-" in self.order_comment_prefix:
            # The robot id is parsed back out of "<prefix>-<robot_id>"
            raise ValueError("MT5C_ORDER_COMMENT_PREFIX must be non-empty and contain no '-'")
        if self.evaluation_interval <= 0 or self.balance_sync_interval <= 0 or self.reconcile_interval <= 0:
            raise ValueError("Scheduler intervals must be > 0")

        if self.balance_max_wait > self.http_timeout:
            logging.getLogger("mt5control").warning(
                f"WARNING: MT5C_BALANCE_MAX_WAIT_SEC ({self.balance_max_wait}s) exceeds "
                f"MT5C_HTTP_TIMEOUT ({self.http_timeout}s); balance reads will be bounded by the HTTP timeout."
            )
        if self.ledger_path is None:
            logging.getLogger("mt5control").warning(
                "WARNING: MT5C_LEDGER_PATH is empty; the ledger is in-memory and lost on restart."
            )


def _sanity_check(cfg: Settings) -> None:
    """Log the critical settings once at startup so overrides are obvious."""
    logger = logging.getLogger("mt5control")
    payload = {
        "event": "config_loaded",
        "client_url": cfg.client_url,
        "balance_max_wait": cfg.balance_max_wait,
        "close_timeout": cfg.close_timeout,
        "history_window_days": cfg.history_window_days,
        "max_concurrent_trades": cfg.max_concurrent_trades,
        "scheduler_enabled": cfg.scheduler_enabled,
    }
    logger.info(json.dumps(payload))
