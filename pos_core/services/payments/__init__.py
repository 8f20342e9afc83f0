"""
Payment support: method rules and the gateway circuit breaker.
"""

from .circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerStats,
    CircuitOpenError,
    CircuitState,
    gateway_breaker,
)
from .validation import calculate_change, method_rule, validate_payment_request

__all__ = [
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitBreakerStats",
    "CircuitOpenError",
    "CircuitState",
    "gateway_breaker",
    "calculate_change",
    "method_rule",
    "validate_payment_request",
]
