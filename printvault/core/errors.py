from __future__ import annotations


class PrintVaultError(Exception):
    """Base error for PrintVault."""

    code = "PRINTVAULT_ERROR"

    def __init__(self, message: str, **context: object) -> None:
        super().__init__(message)
        self.message = message
        # Keep structured context so callers can log and retry with specifics.
        self.context = context


class NotFoundError(PrintVaultError):
    """Ledger entry, job, token or object is absent."""

    code = "NOT_FOUND"


class QuotaExceededError(PrintVaultError):
    """No prints remain on the ledger entry."""

    code = "QUOTA_EXCEEDED"


class ConflictError(PrintVaultError):
    """An idempotency guard rejected the operation."""

    code = "CONFLICT"


class AlreadyUsedError(ConflictError):
    """Token or step already consumed."""

    code = "ALREADY_USED"


class AlreadyInFlightError(ConflictError):
    """Another unfetched, unexpired token exists for the same ledger entry."""

    code = "ALREADY_IN_FLIGHT"


class NotFetchedError(ConflictError):
    """Confirm attempted before the token content was fetched."""

    code = "NOT_FETCHED"


class ExpiredError(PrintVaultError):
    """Token TTL has passed."""

    code = "EXPIRED"


class IncompleteError(PrintVaultError):
    """Merge attempted while page artifacts are missing."""

    code = "INCOMPLETE"


class InvalidLayoutError(PrintVaultError):
    """Submitted page layouts are empty or malformed."""

    code = "INVALID_LAYOUT"


class InvalidTransitionError(PrintVaultError):
    """Job stage/status change not present in the transition table."""

    code = "INVALID_TRANSITION"


class MachineMismatchError(PrintVaultError):
    """Offline token redeemed from a different machine."""

    code = "MACHINE_MISMATCH"


class InvalidSignatureError(PrintVaultError):
    """Offline token signature does not match its claims."""

    code = "INVALID_SIGNATURE"


class FeatureDisabledError(PrintVaultError):
    """Capability is switched off in settings."""

    code = "FEATURE_DISABLED"


class UpstreamFailureError(PrintVaultError):
    """Object store, queue or rasterizer failure."""

    code = "UPSTREAM_FAILURE"


class RasterizationError(UpstreamFailureError):
    """Page rasterizer could not produce page bytes."""

    code = "RASTERIZATION_FAILED"


class ProviderConfigError(PrintVaultError):
    """Missing or invalid provider configuration."""

    code = "PROVIDER_CONFIG_ERROR"
