"""
stepup/errors.py

Error taxonomy for the approval core.

Every error carries an HTTP status and a stable machine-readable code. The
HTTP layer renders them as {"error": code, "message": ..., **extra}; nothing
about *why* a secret comparison failed is ever included.

Recoverable errors (VerificationFailed, RateLimited, Expired, ...) let the
caller retry within limits. InternalMisconfiguration is fatal and rendered
distinctly so operators can tell "service broken" from "user made a mistake".
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class StepUpError(Exception):
    status_code = 400
    code = "error"

    def __init__(self, message: Optional[str] = None, *, code: Optional[str] = None):
        super().__init__(message or self.code)
        self.message = message or self.code
        if code:
            self.code = code

    def extra(self) -> Dict[str, Any]:
        return {}

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.code, "message": self.message, **self.extra()}


class Unauthorized(StepUpError):
    status_code = 401
    code = "unauthorized"


class NotFound(StepUpError):
    status_code = 404
    code = "not_found"


class InvalidInput(StepUpError):
    status_code = 400
    code = "invalid_input"


class MethodNotAllowed(StepUpError):
    status_code = 400
    code = "method_not_allowed"


class RateLimited(StepUpError):
    status_code = 429
    code = "rate_limited"

    def __init__(self, message: Optional[str] = None, *, retry_after: Optional[int] = None, code: Optional[str] = None):
        super().__init__(message, code=code)
        self.retry_after = retry_after

    def extra(self) -> Dict[str, Any]:
        if self.retry_after is None:
            return {}
        return {"retryAfter": self.retry_after}


class Expired(StepUpError):
    status_code = 410
    code = "expired"


class VerificationFailed(StepUpError):
    status_code = 400
    code = "verification_failed"

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        remaining_attempts: Optional[int] = None,
        code: Optional[str] = None,
    ):
        super().__init__(message, code=code)
        self.remaining_attempts = remaining_attempts

    def extra(self) -> Dict[str, Any]:
        if self.remaining_attempts is None:
            return {}
        return {"remainingAttempts": self.remaining_attempts}


class TooManyAttempts(StepUpError):
    status_code = 429
    code = "too_many_attempts"


class DeliveryFailed(StepUpError):
    status_code = 502
    code = "delivery_failed"


class SessionClosed(StepUpError):
    status_code = 409
    code = "session_closed"


class InternalMisconfiguration(StepUpError):
    status_code = 500
    code = "internal_misconfiguration"
