"""
Structured logging setup for the control plane.

Every component logs one-line JSON events ({"event": ..., **fields}) on the
"mt5control" logger. This module decides where they go:

- Console through rich's RichHandler, with repetitive outage warnings
  throttled per (event, account)
- Optional JSON-lines file written by a background thread, so a slow disk
  never stalls the event loop
"""

from __future__ import annotations

import atexit
import json
import logging
import queue
import sys
import threading
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Set

from rich.logging import RichHandler

LOGGER_NAME = "mt5control"

# Events that repeat once per account per pass while the broker is down
NOISY_EVENTS = frozenset({
    "balance_fetch_timeout",
    "balance_fetch_error",
    "remote_call_retry",
    "account_skipped_circuit_open",
    "scheduled_account_error",
})


def _event_payload(record: logging.LogRecord) -> Optional[Dict[str, Any]]:
    """Decoded event dict for a structured record, None for plain text."""
    try:
        data = json.loads(record.getMessage())
    except (json.JSONDecodeError, TypeError):
        return None
    return data if isinstance(data, dict) else None


class JsonFormatter(logging.Formatter):
    """
    JSON-lines formatter.

    Structured events are merged into the line (event fields at top level);
    plain messages land under "msg".
    """

    def format(self, record: logging.LogRecord) -> str:
        line: Dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "logger": record.name,
        }
        event = _event_payload(record)
        if event is None:
            line["msg"] = record.getMessage()
        else:
            line.update(event)
        suppressed = getattr(record, "suppressed", 0)
        if suppressed:
            line["suppressed"] = suppressed
        if record.exc_info:
            line["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(line, separators=(",", ":"), default=str)


class AsyncQueueHandler(logging.Handler):
    """
    Hands records to a writer thread through a bounded queue.

    emit() never blocks: when the queue is full the record is dropped and
    counted. close() drains what is queued before closing the target.
    """

    _STOP = object()

    def __init__(self, target: logging.Handler, max_queue_size: int = 10000) -> None:
        super().__init__()
        self.target = target
        self.dropped = 0
        self._queue: "queue.Queue[Any]" = queue.Queue(maxsize=max_queue_size)
        self._closed = False
        self._writer = threading.Thread(target=self._drain, name="mt5c-log-writer", daemon=True)
        self._writer.start()
        atexit.register(self.close)

    def emit(self, record: logging.LogRecord) -> None:
        if self._closed:
            return
        try:
            self._queue.put_nowait(record)
        except queue.Full:
            self.dropped += 1

    def flush(self) -> None:
        """Block until every queued record has been written."""
        if not self._closed:
            self._queue.join()
        self.target.flush()

    def _drain(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is self._STOP:
                    return
                self.target.handle(item)
            except Exception:
                self.handleError(item)
            finally:
                self._queue.task_done()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put(self._STOP)
        self._writer.join(timeout=2.0)
        if self.dropped:
            sys.stderr.write(f"[mt5control] dropped {self.dropped} log records (queue full)\n")
        self.target.close()
        super().close()


class ThrottledFilter(logging.Filter):
    """
    Let one noisy event per (event, account) through every cooldown_sec.

    Repeats inside the window are dropped and counted; the next record that
    passes carries the count as `record.suppressed`.
    """

    def __init__(
        self,
        cooldown_sec: float = 30.0,
        throttled_events: Optional[Set[str]] = None,
    ) -> None:
        super().__init__()
        self.cooldown_sec = cooldown_sec
        self.events = set(throttled_events) if throttled_events is not None else set(NOISY_EVENTS)
        self._window_start: Dict[str, float] = {}
        self._suppressed: Dict[str, int] = {}

    def filter(self, record: logging.LogRecord) -> bool:
        event = _event_payload(record)
        if event is None or event.get("event") not in self.events:
            return True

        key = f"{event['event']}:{event.get('account_id') or event.get('user_id') or ''}"
        started = self._window_start.get(key)
        if started is not None and record.created - started < self.cooldown_sec:
            self._suppressed[key] = self._suppressed.get(key, 0) + 1
            return False
        self._window_start[key] = record.created
        record.suppressed = self._suppressed.pop(key, 0)
        return True


def build_logger(
    name: str = LOGGER_NAME,
    level: int = logging.INFO,
    file_path: Optional[str] = None,
    async_file: bool = True,
    throttle_warnings: bool = True,
) -> logging.Logger:
    """
    Configure the project logger. Safe to call again (e.g. once config is
    loaded) to change the level; handlers are only attached the first time.

    Args:
        name: Logger name
        level: Minimum level for the logger and its handlers
        file_path: JSON-lines log file; None disables file output
        async_file: Write the file from a background thread
        throttle_warnings: Throttle noisy outage events on the console
    """
    logger = logging.getLogger(name)
    logger.setLevel(level)

    if logger.handlers:
        for handler in logger.handlers:
            handler.setLevel(level)
        return logger

    console = RichHandler(show_path=False, markup=False, rich_tracebacks=False)
    console.setFormatter(logging.Formatter("%(message)s"))
    console.setLevel(level)
    if throttle_warnings:
        console.addFilter(ThrottledFilter())
    logger.addHandler(console)

    if file_path:
        file_handler: logging.Handler = logging.FileHandler(file_path)
        file_handler.setFormatter(JsonFormatter())
        if async_file:
            file_handler = AsyncQueueHandler(file_handler)
        file_handler.setLevel(level)
        logger.addHandler(file_handler)

    logger.propagate = False
    return logger


def log_event(logger: logging.Logger, event: str, level: int = logging.INFO, **fields: Any) -> None:
    """Emit one structured event: log_event(log, "robot_started", user_id="u1")."""
    logger.log(level, json.dumps({"event": event, **fields}, default=str))
