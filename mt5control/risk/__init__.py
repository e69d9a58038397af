"""
Risk package.

Per-account circuit breakers for scheduled broker work.
"""

from mt5control.risk.circuit_breaker import AccountBreakers, CircuitBreaker, CircuitBreakerConfig

__all__ = [
    "AccountBreakers",
    "CircuitBreaker",
    "CircuitBreakerConfig",
]
