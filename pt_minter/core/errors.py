"""Failure taxonomy for the mint request lifecycle.

Every error carries a stable ``reason`` code (used for metrics and logs) and a
client-safe message (returned in the ``error`` field of the response).
"""

from __future__ import annotations


class MintError(Exception):
    """Base class for failures surfaced to the caller."""

    reason = "mint_error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class InvalidRequest(MintError):
    reason = "invalid_request"


class StorageError(MintError):
    """A registry, nonce, or journal store failed before any funds moved."""

    reason = "storage_error"


# --- Eligibility ---


class DeviceNotFound(MintError):
    reason = "device_not_found"

    def __init__(self, message: str = "Device does not exist") -> None:
        super().__init__(message)


class DeviceNotInitialized(MintError):
    reason = "device_not_initialized"

    def __init__(self, message: str = "Device not initialized") -> None:
        super().__init__(message)


class DeviceNotBound(MintError):
    reason = "device_not_bound"

    def __init__(self, message: str = "Device not bound") -> None:
        super().__init__(message)


# --- Authentication (the nonce is rotated on these) ---


class NonceNotFound(MintError):
    reason = "nonce_not_found"

    def __init__(self, message: str = "Nonce does not exist") -> None:
        super().__init__(message)


class InvalidNonce(MintError):
    reason = "invalid_nonce"

    def __init__(self, message: str = "Invalid nonce") -> None:
        super().__init__(message)


class InvalidSignature(MintError):
    reason = "invalid_signature"

    def __init__(self, message: str = "Invalid signature") -> None:
        super().__init__(message)


# --- External transfer ---


class AmountConversionError(MintError):
    reason = "amount_conversion_error"


class MintSubmissionError(MintError):
    """The mint was rejected before broadcast, or its outcome is unknown.

    ``ambiguous`` is True once the signed transaction has been handed to an
    RPC endpoint: it may be mined later, so it must be checked on-chain by
    ``tx_hash`` before anyone retries.
    """

    reason = "mint_submission_error"

    def __init__(self, message: str, *, ambiguous: bool = False, tx_hash: str | None = None) -> None:
        super().__init__(message)
        self.ambiguous = ambiguous
        self.tx_hash = tx_hash


class MintExecutionError(MintError):
    """The transaction was mined but reported a non-success status."""

    reason = "mint_execution_error"

    def __init__(self, message: str = "Transaction failed", *, tx_hash: str | None = None) -> None:
        super().__init__(message)
        self.tx_hash = tx_hash


# --- Bookkeeping ---


class ReconciliationError(MintError):
    """Points were minted on-chain but the aggregate record was not updated."""

    reason = "reconciliation_error"
