"""
Abstract capabilities for the gift ledger.

The ledger is the append-only system of record for gift records. Access
is split into two capabilities that are never combined into one object:

- LedgerReader: read-only queries, available to anyone
- LedgerWriter: signed transactions, bound to one signer identity
"""

import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from gift_errors import LedgerError, LedgerWriteFailed, classify_ledger_rejection


class ClaimState(Enum):
    """Public claim status of a gift, derived from ``public_value2``."""

    AVAILABLE = "Available"
    CLAIMED = "Claimed"


@dataclass
class GiftRecord:
    """
    A gift as stored on the ledger.

    ``decrypted_value`` is only meaningful when ``is_verified`` is true;
    use ``revealed_amount`` to read it safely.
    """

    id: str
    name: str
    description: str
    creator: str
    created_at: int
    is_verified: bool = False
    decrypted_value: int = 0
    public_value1: int = 0
    public_value2: int = 0
    encrypted_amount_handle: str | None = None

    @property
    def claim_state(self) -> ClaimState:
        return ClaimState.CLAIMED if self.public_value2 > 0 else ClaimState.AVAILABLE

    @property
    def revealed_amount(self) -> int | None:
        """The plaintext amount, or None while it is still encrypted."""
        return self.decrypted_value if self.is_verified else None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "creator": self.creator,
            "timestamp": self.created_at,
            "isVerified": self.is_verified,
            "decryptedValue": self.decrypted_value,
            "publicValue1": self.public_value1,
            "publicValue2": self.public_value2,
            "encryptedAmountHandle": self.encrypted_amount_handle,
            "claimState": self.claim_state.value,
        }

    @classmethod
    def from_business_data(cls, gift_id: str, data: dict[str, Any]) -> "GiftRecord":
        """Build a record from a ledger ``getBusinessData`` result."""
        return cls(
            id=gift_id,
            name=data.get("name", ""),
            description=data.get("description", ""),
            creator=data.get("creator", ""),
            created_at=int(data.get("timestamp") or 0),
            is_verified=bool(data.get("isVerified", False)),
            decrypted_value=int(data.get("decryptedValue") or 0),
            public_value1=int(data.get("publicValue1") or 0),
            public_value2=int(data.get("publicValue2") or 0),
            encrypted_amount_handle=data.get("encryptedAmountHandle"),
        )


class ReceiptStatus(Enum):
    """Status of a submitted ledger transaction."""

    PENDING = "pending"
    CONFIRMED = "confirmed"
    REVERTED = "reverted"


@dataclass
class PendingConfirmation:
    """
    A submitted ledger transaction awaiting confirmation.

    ``poll`` returns the current receipt as ``(status, details)``; ``wait``
    blocks until the transaction is confirmed or reverted. There is no
    deadline: a transaction cannot be recalled once submitted.
    """

    tx_hash: str
    poll: Callable[[], tuple[ReceiptStatus, dict[str, Any]]]
    poll_interval: float = 1.0
    gift_id: str | None = None
    receipt: dict[str, Any] = field(default_factory=dict)

    def wait(self) -> dict[str, Any]:
        """
        Block until the transaction is mined.

        Returns:
            Receipt details

        Raises:
            LedgerError: The transaction reverted (classified by reason)
        """
        while True:
            status, details = self.poll()
            if status == ReceiptStatus.CONFIRMED:
                self.receipt = details
                return details
            if status == ReceiptStatus.REVERTED:
                raise _revert_error(details.get("reason", ""), self.gift_id)
            time.sleep(self.poll_interval)


def _revert_error(reason: str, gift_id: str | None) -> LedgerError:
    error = classify_ledger_rejection(reason or "Transaction reverted", gift_id=gift_id)
    if isinstance(error, LedgerWriteFailed):
        error.context.details["reverted"] = True
    return error


class LedgerReader(ABC):
    """Read-only query capability. Raises LedgerReadFailed on failure."""

    @abstractmethod
    def get_address(self) -> str:
        """Address of the registry contract."""
        pass

    @abstractmethod
    def get_all_business_ids(self) -> list[str]:
        """All gift ids, in ledger enumeration order."""
        pass

    @abstractmethod
    def get_business_data(self, gift_id: str) -> dict[str, Any]:
        """
        Fetch one gift's public data.

        Returns:
            Dictionary with name, description, publicValue1, publicValue2,
            creator, timestamp, isVerified, decryptedValue
        """
        pass

    @abstractmethod
    def get_encrypted_value(self, gift_id: str) -> str:
        """Opaque handle of the gift's encrypted amount."""
        pass

    @abstractmethod
    def is_available(self) -> bool:
        """Contract-global availability flag used by the claim check."""
        pass


class LedgerWriter(ABC):
    """
    Signed transaction capability bound to ``signer``.

    Submission failures raise SignerRejected, AlreadyVerified or
    LedgerWriteFailed.
    """

    signer: str

    @abstractmethod
    def create_business_data(
        self,
        gift_id: str,
        name: str,
        encrypted_data: str,
        proof: str,
        public_value1: int,
        public_value2: int,
        description: str,
    ) -> PendingConfirmation:
        """Submit a new gift record."""
        pass

    @abstractmethod
    def verify_decryption(
        self, gift_id: str, clear_values_encoded: str, proof: str
    ) -> PendingConfirmation:
        """Submit a decryption proof; consumes the gift's handle."""
        pass
