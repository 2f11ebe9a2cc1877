"""
errors.py
==========
Exception taxonomy shared by the exchange clients, the core pipeline and the
HTTP layer.

The core never picks HTTP status codes itself: it reports ``success`` plus a
message. ``status_code`` is only read by web.py when an exception escapes to
a request handler.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class ArbitrageError(Exception):
    """Base class for every error raised on purpose by this package."""

    status_code: int = 500
    retryable: bool = False

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.context: Dict[str, Any] = context or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": type(self).__name__,
            "message": self.message,
            "retryable": self.retryable,
            "context": self.context,
        }


class ValidationError(ArbitrageError):
    """Bad API input. Raised at the HTTP boundary only."""

    status_code = 400


class ExchangeError(ArbitrageError):
    """An exchange answered, but with an error payload or an unusable shape."""

    status_code = 502

    def __init__(
        self,
        exchange: str,
        operation: str,
        message: str,
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        ctx = {"exchange": exchange, "operation": operation}
        ctx.update(context or {})
        super().__init__(f"[{exchange}] {operation} failed: {message}", ctx)
        self.exchange = exchange
        self.operation = operation


class NetworkError(ArbitrageError):
    """An exchange could not be reached after all retries."""

    status_code = 503
    retryable = True


class ConfigurationError(ArbitrageError):
    pass
