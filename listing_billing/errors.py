"""Billing error taxonomy.

Provider adapters never raise these; they return result objects. Services
raise them when a caller has to be told something went wrong, and the app
renders them as JSON via a single exception handler.
"""

from http import HTTPStatus
from typing import Any


class BillingError(Exception):
    """Base class for all errors surfaced to API callers."""

    status_code: int = HTTPStatus.INTERNAL_SERVER_ERROR
    code: str = "billing_error"

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        self.message = message
        if code:
            self.code = code
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        return {"success": False, "error": self.message, "code": self.code, **self.details}

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


class PaymentValidationError(BillingError):
    """Malformed request, rejected before any network call."""

    status_code = HTTPStatus.BAD_REQUEST
    code = "validation_error"


class NotFoundError(BillingError):
    status_code = HTTPStatus.NOT_FOUND
    code = "not_found"


class PaymentDeclinedError(BillingError):
    """The provider explicitly refused the charge."""

    status_code = HTTPStatus.PAYMENT_REQUIRED
    code = "declined"


class ProviderError(BillingError):
    """Network failure, malformed response or provider misconfiguration."""

    status_code = HTTPStatus.BAD_GATEWAY
    code = "provider_error"

    def __init__(self, message: str, retryable: bool = False, **kwargs: Any):
        self.retryable = retryable
        super().__init__(message, **kwargs)
        self.details.setdefault("retryable", retryable)


class StateConflictError(BillingError):
    """A subscription transition whose precondition no longer holds."""

    status_code = HTTPStatus.CONFLICT
    code = "state_conflict"


class VaultInconsistencyError(BillingError):
    """Vault exists provider-side but could not be recorded locally."""

    status_code = HTTPStatus.INTERNAL_SERVER_ERROR
    code = "vault_not_recorded"

    def __init__(self, message: str, vault_id: str, **kwargs: Any):
        self.vault_id = vault_id
        super().__init__(message, **kwargs)
        self.details.setdefault("customer_vault_id", vault_id)


class WebhookVerificationError(BillingError):
    status_code = HTTPStatus.UNAUTHORIZED
    code = "invalid_signature"
