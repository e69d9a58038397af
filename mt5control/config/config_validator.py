"""
Startup checks for Settings.

Each check is a plain function taking the settings and yielding
ValidationIssue objects. ERROR issues abort startup; WARNING and INFO are
only logged. Deployments can add their own checks with
ConfigValidator.register_validator().
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any, Callable, Iterable, Iterator, List, Optional, Tuple

logger = logging.getLogger(__name__)


class ValidationSeverity(Enum):
    ERROR = auto()
    WARNING = auto()
    INFO = auto()


@dataclass
class ValidationIssue:
    field: str
    message: str
    severity: ValidationSeverity
    value: Any = None
    suggestion: Optional[str] = None

    def render(self) -> str:
        text = f"CONFIG {self.severity.name}: {self.message}"
        return f"{text} (suggestion: {self.suggestion})" if self.suggestion else text


@dataclass
class ValidationResult:
    issues: List[ValidationIssue] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.get_errors()

    def _with(self, severity: ValidationSeverity) -> List[ValidationIssue]:
        return [i for i in self.issues if i.severity is severity]

    def get_errors(self) -> List[ValidationIssue]:
        return self._with(ValidationSeverity.ERROR)

    def get_warnings(self) -> List[ValidationIssue]:
        return self._with(ValidationSeverity.WARNING)


Check = Callable[[Any], Iterable[ValidationIssue]]

# field, lowest, highest
BOUNDS: List[Tuple[str, float, float]] = [
    ("http_timeout", 1.0, 120.0),
    ("balance_max_wait", 0.1, 60.0),
    ("close_timeout", 1.0, 300.0),
    ("order_timeout", 1.0, 120.0),
    ("history_window_days", 1, 365),
    ("max_concurrent_trades", 1, 100),
    ("evaluation_interval", 5.0, 86_400.0),
    ("balance_sync_interval", 10.0, 86_400.0),
    ("reconcile_interval", 10.0, 86_400.0),
    ("api_error_threshold", 1, 100),
    ("metrics_port", 0, 65_535),
]


def _error(name: str, message: str, **extra: Any) -> ValidationIssue:
    return ValidationIssue(name, message, ValidationSeverity.ERROR, **extra)


def check_token(cfg) -> Iterator[ValidationIssue]:
    if not getattr(cfg, "metaapi_token", None):
        yield _error("metaapi_token", "No MetaApi token configured", suggestion="Set METAAPI_TOKEN")


def check_endpoints(cfg) -> Iterator[ValidationIssue]:
    for name in ("provisioning_url", "client_url"):
        url = (getattr(cfg, name, None) or "").strip()
        if not url:
            yield _error(name, f"'{name}' is empty")
        elif not url.startswith(("https://", "http://")):
            yield _error(name, f"'{name}' is not an http(s) URL", value=url)
    if not (getattr(cfg, "order_comment_prefix", None) or "").strip():
        yield _error(
            "order_comment_prefix",
            "Order comment prefix is empty; robot positions could not be told apart from manual ones",
        )


def check_bounds(cfg) -> Iterator[ValidationIssue]:
    for name, low, high in BOUNDS:
        raw = getattr(cfg, name, None)
        try:
            number = float(raw)
        except (TypeError, ValueError):
            yield _error(name, f"'{name}' must be a number, got {raw!r}", value=raw)
            continue
        if not low <= number <= high:
            yield _error(
                name,
                f"'{name}' = {number:g} outside [{low:g}, {high:g}]",
                value=number,
                suggestion=f"Use a value between {low:g} and {high:g}",
            )


def check_timing(cfg) -> Iterator[ValidationIssue]:
    wait = getattr(cfg, "balance_max_wait", 3.0)
    if wait > 10:
        yield ValidationIssue(
            "balance_max_wait",
            f"Balance reads may block for up to {wait:g}s before falling back to cache",
            ValidationSeverity.WARNING,
            value=wait,
            suggestion="Keep user-facing reads under a few seconds",
        )
    close_timeout = getattr(cfg, "close_timeout", 30.0)
    if close_timeout > getattr(cfg, "evaluation_interval", 30.0):
        yield ValidationIssue(
            "close_timeout",
            "Close timeout exceeds the evaluation interval; a stop can overlap the next pass",
            ValidationSeverity.WARNING,
            value=close_timeout,
        )


def check_persistence(cfg) -> Iterator[ValidationIssue]:
    if getattr(cfg, "ledger_path", None) is None:
        yield ValidationIssue(
            "ledger_path",
            "Ledger is in-memory only; links and trades are lost on restart",
            ValidationSeverity.WARNING,
            suggestion="Set MT5C_LEDGER_PATH",
        )
    if getattr(cfg, "metrics_port", 0) and not getattr(cfg, "metrics_token", None):
        yield ValidationIssue("metrics_token", "Metrics endpoint is unauthenticated", ValidationSeverity.INFO)


DEFAULT_CHECKS: Tuple[Check, ...] = (check_token, check_endpoints, check_bounds, check_timing, check_persistence)


class ConfigValidator:
    def __init__(self, checks: Iterable[Check] = DEFAULT_CHECKS) -> None:
        self._checks: List[Check] = list(checks)

    def register_validator(self, validator: Check) -> None:
        self._checks.append(validator)

    def validate(self, cfg) -> ValidationResult:
        result = ValidationResult()
        for check in self._checks:
            try:
                result.issues.extend(check(cfg) or ())
            except Exception as e:
                logger.warning("config check %s raised: %s", getattr(check, "__name__", check), e)
        return result


def validate_config(cfg) -> ValidationResult:
    return ConfigValidator().validate(cfg)


def validate_and_log(cfg, logger_instance: Optional[logging.Logger] = None) -> bool:
    """Run the default checks, log every issue and return whether startup may proceed."""
    log = logger_instance or logger
    result = validate_config(cfg)

    levels = {
        ValidationSeverity.ERROR: logging.ERROR,
        ValidationSeverity.WARNING: logging.WARNING,
        ValidationSeverity.INFO: logging.INFO,
    }
    for issue in result.issues:
        log.log(levels[issue.severity], issue.render())

    errors = len(result.get_errors())
    if errors:
        log.error("Configuration rejected: %d error(s)", errors)
    else:
        log.info("Configuration validation passed")
    return result.valid
