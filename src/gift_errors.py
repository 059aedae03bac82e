"""
WedList - Gift Registry Exception Hierarchy

Provides the error taxonomy for the confidential gift lifecycle.
All exceptions include structured error context for debugging and monitoring.
"""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any


class ErrorSeverity(Enum):
    """Severity levels for registry errors."""
    LOW = "low"           # Benign, recovered locally
    MEDIUM = "medium"     # Retryable by the user
    HIGH = "high"         # Protocol failure, requires attention


@dataclass
class ErrorContext:
    """Structured context for error tracking and debugging."""
    component: str
    action: str
    timestamp: str = field(default_factory=lambda: datetime.now(UTC).isoformat())
    details: dict[str, Any] = field(default_factory=dict)
    severity: ErrorSeverity = ErrorSeverity.MEDIUM

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        return {
            "component": self.component,
            "action": self.action,
            "timestamp": self.timestamp,
            "details": self.details,
            "severity": self.severity.value
        }


class GiftRegistryError(Exception):
    """
    Base exception for all gift registry errors.

    Every subclass is retryable from the user's point of view unless
    stated otherwise; nothing in the registry is fatal to the process.
    """

    retryable = True

    def __init__(
        self,
        message: str,
        component: str = "unknown",
        action: str = "unknown",
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
        details: dict[str, Any] | None = None,
        cause: Exception | None = None
    ):
        super().__init__(message)
        self.message = message
        self.context = ErrorContext(
            component=component,
            action=action,
            severity=severity,
            details=details or {}
        )
        self.cause = cause

        if cause:
            self.__cause__ = cause

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging/serialization."""
        result = {
            "error_type": type(self).__name__,
            "message": self.message,
            "retryable": self.retryable,
            **self.context.to_dict()
        }
        if self.cause:
            result["cause"] = {
                "type": type(self.cause).__name__,
                "message": str(self.cause)
            }
        return result

    def __str__(self) -> str:
        base = f"[{self.context.component}:{self.context.action}] {self.message}"
        if self.cause:
            base += f" (caused by: {self.cause})"
        return base


# =============================================================================
# Session Errors
# =============================================================================

class NotConnected(GiftRegistryError):
    """Raised when a mutating operation runs without a connected identity."""

    retryable = False

    def __init__(self, action: str = "unknown"):
        super().__init__(
            message="Please connect wallet first",
            component="wallet_session",
            action=action,
            severity=ErrorSeverity.MEDIUM,
        )


# =============================================================================
# Oracle Errors
# =============================================================================

class EncryptionFailed(GiftRegistryError):
    """
    Raised when the FHE oracle cannot encrypt a value.

    The caller must not submit anything to the ledger after this.
    """

    def __init__(
        self,
        message: str,
        details: dict[str, Any] | None = None,
        cause: Exception | None = None
    ):
        super().__init__(
            message=message,
            component="fhe_oracle",
            action="encrypt",
            severity=ErrorSeverity.MEDIUM,
            details=details,
            cause=cause
        )


class OracleInitializationFailed(GiftRegistryError):
    """Raised when the FHE session cannot be initialized."""

    def __init__(self, message: str, cause: Exception | None = None):
        super().__init__(
            message=message,
            component="fhe_oracle",
            action="initialize",
            severity=ErrorSeverity.HIGH,
            cause=cause
        )


class DecryptionFailed(GiftRegistryError):
    """
    Raised when opening a handle fails.

    ``reason`` distinguishes oracle denial, a malformed proof and a
    ledger rejection of the proof.
    """

    ORACLE_DENIED = "oracle_denied"
    MALFORMED_PROOF = "malformed_proof"
    LEDGER_REJECTED = "ledger_rejected"

    def __init__(
        self,
        message: str,
        reason: str = ORACLE_DENIED,
        details: dict[str, Any] | None = None,
        cause: Exception | None = None
    ):
        super().__init__(
            message=message,
            component="decryption_verifier",
            action=reason,
            severity=ErrorSeverity.HIGH,
            details={"reason": reason, **(details or {})},
            cause=cause
        )
        self.reason = reason


# =============================================================================
# Ledger Errors
# =============================================================================

class LedgerError(GiftRegistryError):
    """Base class for ledger-side failures."""

    def __init__(
        self,
        message: str,
        action: str = "ledger_operation",
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
        details: dict[str, Any] | None = None,
        cause: Exception | None = None
    ):
        super().__init__(
            message=message,
            component="ledger",
            action=action,
            severity=severity,
            details=details,
            cause=cause
        )


class LedgerReadFailed(LedgerError):
    """A read-only ledger query failed."""

    def __init__(
        self,
        message: str,
        details: dict[str, Any] | None = None,
        cause: Exception | None = None
    ):
        super().__init__(message=message, action="read", details=details, cause=cause)


class LedgerWriteFailed(LedgerError):
    """A signed ledger transaction failed for a reason other than signer rejection."""

    def __init__(
        self,
        message: str,
        details: dict[str, Any] | None = None,
        cause: Exception | None = None
    ):
        super().__init__(message=message, action="write", details=details, cause=cause)


class SignerRejected(LedgerError):
    """The signer declined to sign the transaction."""

    def __init__(self, message: str = "Transaction rejected", cause: Exception | None = None):
        super().__init__(message=message, action="sign", cause=cause)


class AlreadyVerified(LedgerError):
    """
    The ledger refused a proof because the record is already verified.

    This is a benign race with another client. The orchestrator recovers
    by re-reading the record instead of surfacing a failure.
    """

    retryable = False

    def __init__(self, gift_id: str | None = None, cause: Exception | None = None):
        super().__init__(
            message="Data already verified",
            action="verify_decryption",
            severity=ErrorSeverity.LOW,
            details={"gift_id": gift_id},
            cause=cause
        )
        self.gift_id = gift_id


class PartialListFailure(LedgerError):
    """
    One or more record fetches failed during listing.

    Never raised out of ``list_gifts``; carried on the manager so callers
    can inspect which ids were skipped.
    """

    def __init__(self, failed_ids: list[str]):
        super().__init__(
            message=f"Failed to load {len(failed_ids)} gift(s)",
            action="list",
            severity=ErrorSeverity.LOW,
            details={"failed_ids": list(failed_ids)},
        )
        self.failed_ids = list(failed_ids)


ALREADY_VERIFIED_MARKER = "data already verified"
SIGNER_REJECTED_MARKERS = ("user rejected transaction", "user denied", "rejected by signer")


def classify_ledger_rejection(
    message: str,
    gift_id: str | None = None,
    cause: Exception | None = None
) -> LedgerError:
    """
    Map a ledger revert/rejection message onto the error taxonomy.

    Args:
        message: Raw rejection message from the ledger or signer
        gift_id: Record the transaction targeted
        cause: Underlying exception, if any

    Returns:
        The matching LedgerError subclass instance
    """
    lowered = (message or "").lower()
    if ALREADY_VERIFIED_MARKER in lowered:
        return AlreadyVerified(gift_id=gift_id, cause=cause)
    if any(marker in lowered for marker in SIGNER_REJECTED_MARKERS):
        return SignerRejected(cause=cause)
    return LedgerWriteFailed(
        message or "Unknown error",
        details={"gift_id": gift_id},
        cause=cause
    )
