"""
In-memory ledger backend.

Simulates the registry contract locally, useful for:
- Unit testing
- Development and demos without a gateway

Transactions confirm immediately. The contract rules that matter to the
lifecycle are enforced: only authorized signers write, ids are unique,
and a decryption proof is accepted at most once per record.
"""

import copy
import secrets
import threading
import time
from typing import Any

from fhe_oracle import decode_clear_values
from gift_errors import (
    ALREADY_VERIFIED_MARKER,
    LedgerReadFailed,
    LedgerWriteFailed,
    SignerRejected,
    classify_ledger_rejection,
)
from ledger.base import LedgerReader, LedgerWriter, PendingConfirmation, ReceiptStatus


class InMemoryLedger:
    """
    Shared state of a simulated registry contract.

    Hand out capabilities with ``reader()`` and ``writer(signer)``; the
    ledger object itself is not a capability.
    """

    def __init__(
        self,
        address: str | None = None,
        authorized_signers: set[str] | None = None,
        available: bool = True,
    ):
        self.address = address or "0x" + secrets.token_hex(20)
        self.authorized_signers = authorized_signers
        self.available = available

        self._records: dict[str, dict[str, Any]] = {}
        self._order: list[str] = []
        self._lock = threading.RLock()
        self._rejections: list[str] = []

    # =========================================================================
    # Capabilities
    # =========================================================================

    def reader(self) -> "InMemoryLedgerReader":
        return InMemoryLedgerReader(self)

    def writer(self, signer: str) -> "InMemoryLedgerWriter":
        return InMemoryLedgerWriter(self, signer)

    # =========================================================================
    # Contract state transitions
    # =========================================================================

    def _check_rejection(self, gift_id: str):
        if self._rejections:
            raise classify_ledger_rejection(self._rejections.pop(0), gift_id=gift_id)

    def _create(self, signer: str, gift_id: str, fields: dict[str, Any]):
        with self._lock:
            self._check_rejection(gift_id)
            if self.authorized_signers is not None and signer not in self.authorized_signers:
                raise LedgerWriteFailed("Signer not authorized", details={"signer": signer})
            if gift_id in self._records:
                raise LedgerWriteFailed("Business data already exists", details={"gift_id": gift_id})

            self._records[gift_id] = {
                "name": fields["name"],
                "description": fields["description"],
                "publicValue1": fields["publicValue1"],
                "publicValue2": fields["publicValue2"],
                "creator": signer,
                "timestamp": int(time.time()),
                "isVerified": False,
                "decryptedValue": 0,
                "encryptedData": fields["encryptedData"],
                "proof": fields["proof"],
                # Input ciphertexts are stored as-is; the ciphertext reference is the handle
                "handle": fields["encryptedData"],
            }
            self._order.append(gift_id)

    def _verify(self, gift_id: str, clear_values_encoded: str, proof: str):
        with self._lock:
            self._check_rejection(gift_id)
            record = self._records.get(gift_id)
            if record is None:
                raise LedgerWriteFailed("Business data does not exist", details={"gift_id": gift_id})
            if record["isVerified"]:
                raise classify_ledger_rejection(ALREADY_VERIFIED_MARKER, gift_id=gift_id)
            if not proof:
                raise LedgerWriteFailed("Invalid decryption proof", details={"gift_id": gift_id})

            record["isVerified"] = True
            values = decode_clear_values(clear_values_encoded)
            record["decryptedValue"] = values[0] if values else 0

    def _tx(self, gift_id: str) -> PendingConfirmation:
        receipt = {"status": ReceiptStatus.CONFIRMED.value, "giftId": gift_id}
        return PendingConfirmation(
            tx_hash="0x" + secrets.token_hex(32),
            poll=lambda: (ReceiptStatus.CONFIRMED, receipt),
            gift_id=gift_id,
        )

    # =========================================================================
    # Test Helpers
    # =========================================================================

    def reject_next_write(self, reason: str):
        """Make the next write transaction fail with ``reason``."""
        with self._lock:
            self._rejections.append(reason)

    def mark_verified(self, gift_id: str, value: int):
        """Simulate another client having already opened a gift."""
        with self._lock:
            self._records[gift_id]["isVerified"] = True
            self._records[gift_id]["decryptedValue"] = value

    def set_public_values(self, gift_id: str, public_value1: int = 0, public_value2: int = 0):
        with self._lock:
            self._records[gift_id]["publicValue1"] = public_value1
            self._records[gift_id]["publicValue2"] = public_value2

    def get_record(self, gift_id: str) -> dict[str, Any]:
        with self._lock:
            return copy.deepcopy(self._records[gift_id])


class InMemoryLedgerReader(LedgerReader):
    """Read-only view of an InMemoryLedger."""

    def __init__(self, ledger: InMemoryLedger):
        self._ledger = ledger

    def _record(self, gift_id: str) -> dict[str, Any]:
        record = self._ledger._records.get(gift_id)
        if record is None:
            raise LedgerReadFailed("Business data does not exist", details={"gift_id": gift_id})
        return record

    def get_address(self) -> str:
        return self._ledger.address

    def get_all_business_ids(self) -> list[str]:
        with self._ledger._lock:
            return list(self._ledger._order)

    def get_business_data(self, gift_id: str) -> dict[str, Any]:
        with self._ledger._lock:
            record = self._record(gift_id)
            return {
                key: record[key]
                for key in (
                    "name", "description", "publicValue1", "publicValue2",
                    "creator", "timestamp", "isVerified", "decryptedValue",
                )
            }

    def get_encrypted_value(self, gift_id: str) -> str:
        with self._ledger._lock:
            return self._record(gift_id)["handle"]

    def is_available(self) -> bool:
        return self._ledger.available


class InMemoryLedgerWriter(LedgerWriter):
    """Signer-bound view of an InMemoryLedger."""

    def __init__(self, ledger: InMemoryLedger, signer: str):
        if not signer:
            raise SignerRejected("No signer available")
        self._ledger = ledger
        self.signer = signer

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
        self._ledger._create(
            self.signer,
            gift_id,
            {
                "name": name,
                "description": description,
                "encryptedData": encrypted_data,
                "proof": proof,
                "publicValue1": public_value1,
                "publicValue2": public_value2,
            },
        )
        return self._ledger._tx(gift_id)

    def verify_decryption(
        self, gift_id: str, clear_values_encoded: str, proof: str
    ) -> PendingConfirmation:
        self._ledger._verify(gift_id, clear_values_encoded, proof)
        return self._ledger._tx(gift_id)
