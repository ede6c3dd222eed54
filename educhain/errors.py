"""
Error taxonomy for EduChain.

Every domain failure is an EduChainError carrying a stable reason code and
the HTTP status the API layer answers with. Transient failures set
``retryable`` so callers can tell a safe retry from a permanent refusal.
"""

from typing import Any, Dict, Optional


class EduChainError(Exception):
    """Base class for all domain errors."""

    code = "ERROR"
    status_code = 500
    retryable = False

    def __init__(self, message: str = "", **details: Any):
        self.message = message or self.code
        self.details = details
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        body = {
            "error": self.code,
            "message": self.message,
            "retryable": self.retryable,
        }
        body.update(self.details)
        return body


class ValidationError(EduChainError):
    """Missing or malformed input. User-fixable."""

    code = "VALIDATION_ERROR"
    status_code = 400

    def __init__(self, field: str, message: str):
        self.field = field
        super().__init__(f"{field}: {message}", field=field)


class MissingFieldError(ValidationError):
    code = "MISSING_FIELD"

    def __init__(self, field: str):
        super().__init__(field, "is required")


class MissingArtifactError(ValidationError):
    code = "MISSING_ARTIFACT"

    def __init__(self):
        super().__init__("artifact", "certificate file is required")


class UnauthorizedError(EduChainError):
    code = "UNAUTHORIZED"
    status_code = 401


class ForbiddenError(EduChainError):
    code = "FORBIDDEN"
    status_code = 403


class NotVerifiedError(EduChainError):
    code = "NOT_VERIFIED"
    status_code = 403

    def __init__(self, institution_id: str):
        super().__init__(
            "Institution must be verified to issue certificates",
            institution_id=institution_id,
        )


class NoActiveSubscriptionError(EduChainError):
    code = "NO_ACTIVE_SUBSCRIPTION"
    status_code = 403

    def __init__(self, institution_id: str):
        super().__init__("No active subscription", institution_id=institution_id)


class QuotaExceededError(EduChainError):
    code = "QUOTA_EXCEEDED"
    status_code = 403

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(reason, reason=reason, upgradeRequired=True)


class NotFoundError(EduChainError):
    code = "NOT_FOUND"
    status_code = 404


class AlreadyMintedError(EduChainError):
    code = "ALREADY_MINTED"
    status_code = 409

    def __init__(self, certificate_id: str, message: str = "Certificate already minted"):
        super().__init__(message, certificate_id=certificate_id)


class AddressMismatchError(EduChainError):
    code = "ADDRESS_MISMATCH"
    status_code = 400

    def __init__(self, certificate_id: str):
        super().__init__(
            "Wallet address does not match certificate student address",
            certificate_id=certificate_id,
        )


class LedgerUnavailableError(EduChainError):
    """The ledger could not be reached or rejected the call transiently."""

    code = "LEDGER_UNAVAILABLE"
    status_code = 503
    retryable = True


class StoreError(EduChainError):
    """The off-chain store failed. Fatal to the current request."""

    code = "STORE_ERROR"
    status_code = 500


class ContentStoreError(EduChainError):
    """The content addresser could not store the artifact."""

    code = "CONTENT_STORE_UNAVAILABLE"
    status_code = 503
    retryable = True


class RateLimitedError(EduChainError):
    code = "RATE_LIMIT"
    status_code = 429
    retryable = True

    def __init__(self, retry_after: Optional[float] = None):
        super().__init__("Rate limit exceeded", retry_after=retry_after)
