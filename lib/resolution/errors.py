"""Error taxonomy for the resolution engine.

Every error carries a reason code (what gets persisted on the job log and
dead-letter entry) and a ``retryable`` flag the job queue uses to decide
between backoff and immediate dead-lettering.
"""

from typing import Any, Dict, Optional


class EnrichmentError(Exception):
    """Base class. Never raised directly."""

    retryable = False
    default_reason = "unexpected_error"

    def __init__(
        self,
        message: str,
        reason_code: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.reason_code = reason_code or self.default_reason
        self.context = context or {}

    def __str__(self) -> str:
        if self.context:
            ctx = " ".join(f"{k}={v}" for k, v in self.context.items())
            return f"[{self.reason_code}] {self.message} ({ctx})"
        return f"[{self.reason_code}] {self.message}"


class NetworkError(EnrichmentError):
    """Transport failure talking to an external target."""

    retryable = True
    default_reason = "network_error"


class BlockedError(EnrichmentError):
    """Target refused us (captcha, WAF, rate limit...). Wraps a classifier signature."""

    retryable = True
    default_reason = "blocked"

    def __init__(self, signature, message: Optional[str] = None, context: Optional[Dict[str, Any]] = None):
        kind = getattr(signature.kind, "value", signature.kind)
        ctx = {"target": signature.target, **(context or {})}
        super().__init__(
            message or f"blocked by {signature.target}: {kind}",
            reason_code=f"blocked_{kind}",
            context=ctx,
        )
        self.signature = signature


class ValidationError(EnrichmentError):
    """Structurally invalid input record. Never retried."""

    default_reason = "validation_error"


class BudgetExceeded(EnrichmentError):
    """Field time/cost cap hit. Ends the field, not the job."""

    default_reason = "budget_exceeded"


class LogicError(EnrichmentError):
    """Unexpected internal state (illegal transition, missing field...)."""

    default_reason = "logic_error"


class ConfigurationError(EnrichmentError):
    """Bad or missing configuration detected at startup."""

    default_reason = "configuration_error"


def reason_code_of(exc: BaseException) -> str:
    """Reason code for any exception, wrapped or not."""
    if isinstance(exc, EnrichmentError):
        return exc.reason_code
    return "unexpected_error"


def is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, EnrichmentError) and exc.retryable
