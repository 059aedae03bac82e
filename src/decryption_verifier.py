"""
WedList - Decryption Verifier

Opens encrypted handles through the FHE oracle and has the ledger accept
the resulting proof. The clear values are returned only once the ledger
has confirmed the proof.

A proof submission consumes the handle on the ledger, so ``verify`` calls
its ledger callback exactly once and never retries it.
"""

import logging
import secrets
from collections.abc import Callable
from dataclasses import dataclass, field

from fhe_oracle import FHEOracle
from gift_errors import AlreadyVerified, DecryptionFailed, LedgerWriteFailed
from ledger.base import PendingConfirmation
from monitoring.metrics import metrics

logger = logging.getLogger(__name__)

# (clear_values_encoded, proof) -> pending ledger confirmation
SubmitToLedger = Callable[[str, str], PendingConfirmation]


@dataclass
class VerificationRequest:
    """An in-flight decryption. Discarded once resolved; never persisted."""

    handles: list[str]
    contract_address: str
    submit_to_ledger: SubmitToLedger
    request_id: str = field(default_factory=lambda: f"vreq_{secrets.token_hex(6)}")
    submitted: bool = False

    def submit(self, clear_values_encoded: str, proof: str) -> dict:
        if self.submitted:
            raise DecryptionFailed(
                "Decryption proof already submitted for this request",
                reason=DecryptionFailed.LEDGER_REJECTED,
                details={"request_id": self.request_id},
            )
        self.submitted = True
        confirmation = self.submit_to_ledger(clear_values_encoded, proof)
        return confirmation.wait()


class DecryptionVerifier:
    """Stateless request/response service over an FHE oracle."""

    def __init__(self, oracle: FHEOracle):
        self.oracle = oracle

    def verify(
        self,
        handles: list[str] | set[str],
        contract_address: str,
        submit_to_ledger: SubmitToLedger,
    ) -> dict[str, int]:
        """
        Open ``handles`` and drive the ledger to accept the proof.

        Args:
            handles: Ciphertext handles to open
            contract_address: Contract the handles belong to
            submit_to_ledger: Callback submitting (clear_values_encoded, proof)

        Returns:
            Mapping of handle to clear integer

        Raises:
            DecryptionFailed: Oracle denial, malformed proof or ledger rejection
            AlreadyVerified: The ledger already holds a verified value
            SignerRejected: The signer declined the proof transaction
        """
        request = VerificationRequest(
            handles=list(dict.fromkeys(handles)),
            contract_address=contract_address,
            submit_to_ledger=submit_to_ledger,
        )
        if not request.handles:
            raise DecryptionFailed("No handles to decrypt", reason=DecryptionFailed.ORACLE_DENIED)

        logger.debug(f"{request.request_id}: requesting decryption of {len(request.handles)} handle(s)")
        result = self.oracle.request_decryption(request.handles, contract_address)

        if set(result.clear_values) != set(request.handles):
            raise DecryptionFailed(
                "Oracle opened a different set of handles than requested",
                reason=DecryptionFailed.MALFORMED_PROOF,
                details={"request_id": request.request_id},
            )
        if not result.proof:
            raise DecryptionFailed(
                "Oracle returned no decryption proof",
                reason=DecryptionFailed.MALFORMED_PROOF,
            )

        try:
            request.submit(result.clear_values_encoded, result.proof)
        except AlreadyVerified:
            metrics.increment("verify_total", labels={"outcome": "already_verified"})
            raise
        except LedgerWriteFailed as e:
            metrics.increment("verify_total", labels={"outcome": "rejected"})
            raise DecryptionFailed(
                f"Ledger rejected decryption proof: {e.message}",
                reason=DecryptionFailed.LEDGER_REJECTED,
                details={"request_id": request.request_id},
                cause=e,
            ) from e

        metrics.increment("verify_total", labels={"outcome": "verified"})
        logger.info(f"{request.request_id}: decryption proof accepted")
        return dict(result.clear_values)
