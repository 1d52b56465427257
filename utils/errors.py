"""
Error taxonomy shared by the connectors, onboarding and auth packages.

Every error carries the HTTP status it maps to, a stable machine-readable
``code`` and whether a caller may retry it (with backoff).  The FastAPI
exception handlers in ``api/middleware.py`` turn these into the JSON error
envelope.
"""

from __future__ import annotations


class AppError(Exception):
    status_code: int = 500
    code: str = "internal_error"
    retryable: bool = False

    def __init__(self, message: str = "", **details):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.details = details

    def to_dict(self) -> dict:
        return {
            "code": self.code,
            "message": self.message,
            "retryable": self.retryable,
        }


# ── Infrastructure ──────────────────────────────────────────────────────


class StoreUnavailable(AppError):
    """Persistence layer failed; safe to retry idempotent operations."""

    status_code = 503
    code = "store_unavailable"
    retryable = True


class CryptoError(AppError):
    """Ciphertext could not be authenticated (corruption or key mismatch)."""

    status_code = 500
    code = "crypto_error"


# ── OAuth ───────────────────────────────────────────────────────────────


class InvalidState(AppError):
    """OAuth state missing, expired, forged or already consumed."""

    status_code = 400
    code = "invalid_state"


class ProviderExchangeFailed(AppError):
    """The upstream OAuth provider errored or timed out."""

    status_code = 502
    code = "provider_exchange_failed"
    retryable = True


class TokenRejected(ProviderExchangeFailed):
    """The provider refused the grant (e.g. ``invalid_grant``)."""

    code = "token_rejected"
    retryable = False


class ReauthorizationRequired(AppError):
    """No usable credential; the user has to reconnect the account."""

    status_code = 409
    code = "reauthorization_required"


class UnknownProvider(AppError):
    status_code = 404
    code = "unknown_provider"


# ── Onboarding ──────────────────────────────────────────────────────────


class StepOutOfOrder(AppError):
    status_code = 400
    code = "step_out_of_order"


class StepNotSkippable(AppError):
    status_code = 400
    code = "step_not_skippable"


class UnknownStep(AppError):
    status_code = 404
    code = "unknown_step"


class UnknownBusinessType(AppError):
    status_code = 404
    code = "unknown_business_type"


class InvalidStepPayload(AppError):
    status_code = 422
    code = "invalid_step_payload"


# ── Accounts ────────────────────────────────────────────────────────────


class TokenInvalid(AppError):
    """Verification / reset token unknown or already used."""

    status_code = 400
    code = "token_invalid"


class TokenExpired(AppError):
    status_code = 400
    code = "token_expired"


class UserNotFound(AppError):
    status_code = 404
    code = "user_not_found"
