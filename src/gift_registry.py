"""
WedList - Gift Lifecycle Manager

Orchestrates the confidential gift lifecycle against the FHE oracle and the
ledger:

    Created (encrypted) -> VerificationRequested -> Verified (plaintext)

Core principle: the ledger is the only source of truth. The local gift
cache is for display and is never consulted for a correctness decision;
before opening a gift the manager always re-reads its ledger record.

Operations never raise for protocol failures. Each resolves to a status in
the TransactionStatusTracker and a None/False return the caller may retry.
"""

import logging
import re
import threading
import time
from collections.abc import Callable
from enum import Enum
from typing import Any

from decryption_verifier import DecryptionVerifier
from fhe_oracle import FHEOracle, FHEOracleClient
from gift_errors import (
    AlreadyVerified,
    GiftRegistryError,
    LedgerReadFailed,
    NotConnected,
    OracleInitializationFailed,
    PartialListFailure,
    SignerRejected,
)
from ledger.base import GiftRecord, LedgerReader, LedgerWriter
from ledger.http import HMACSigner, HTTPLedgerReader, HTTPLedgerWriter
from monitoring.logging import LoggingContext, configure_logging
from monitoring.metrics import metrics
from registry_config import RegistryConfig
from retry import RetryConfig, retry_call
from transaction_status import TransactionStatusTracker
from wallet_session import WalletSession

logger = logging.getLogger(__name__)

WriterFactory = Callable[[str], LedgerWriter]

_LEADING_INT = re.compile(r"^\s*([+-]?\d+)")


class GiftState(Enum):
    """Lifecycle state of a gift as seen by this client."""

    CREATED = "created"
    VERIFICATION_REQUESTED = "verification_requested"
    VERIFIED = "verified"


def coerce_amount(amount: Any) -> int:
    """
    Coerce user input to a non-negative integer amount.

    Leading-integer parsing: "12" -> 12, "12.9" -> 12, "7 roses" -> 7.
    Empty, invalid or negative input becomes 0.
    """
    if isinstance(amount, bool) or amount is None:
        return 0
    if isinstance(amount, int):
        return max(amount, 0)
    if isinstance(amount, float):
        if amount != amount or amount in (float("inf"), float("-inf")):
            return 0
        return max(int(amount), 0)

    match = _LEADING_INT.match(str(amount))
    if not match:
        return 0
    return max(int(match.group(1)), 0)


def _verified_value(data: dict[str, Any]) -> int | None:
    """The recorded plaintext of a verified gift, or None while it is still encrypted."""
    if not data.get("isVerified"):
        return None
    try:
        return int(data.get("decryptedValue") or 0)
    except (TypeError, ValueError) as e:
        raise LedgerReadFailed(
            "Malformed ledger response", details={"field": "decryptedValue"}, cause=e
        ) from e


class GiftLifecycleManager:
    """
    Sole orchestrator of gift creation, listing, decryption and claiming.

    Owns the gift cache, the activity history and the status slot. Ledger
    access is split into a read capability and a writer factory that binds
    a signing capability to the connected identity on demand.
    """

    def __init__(
        self,
        reader: LedgerReader,
        writer_factory: WriterFactory,
        oracle: FHEOracle,
        session: WalletSession,
        tracker: TransactionStatusTracker | None = None,
        verifier: DecryptionVerifier | None = None,
        read_retry: RetryConfig | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.reader = reader
        self.writer_factory = writer_factory
        self.oracle = oracle
        self.session = session
        self.tracker = tracker or TransactionStatusTracker()
        self.verifier = verifier or DecryptionVerifier(oracle)
        self.read_retry = read_retry or RetryConfig(max_retries=2, base_delay=0.25)
        self.clock = clock

        self._gifts: list[GiftRecord] = []
        self._history: list[str] = []
        self._in_flight: set[str] = set()
        self._issued_ids: set[str] = set()
        self._contract_address: str | None = None
        self._lock = threading.RLock()

        self.last_list_failure: PartialListFailure | None = None

    # =========================================================================
    # Owned state
    # =========================================================================

    @property
    def gifts(self) -> list[GiftRecord]:
        """Last ledger snapshot. Display only."""
        with self._lock:
            return list(self._gifts)

    @property
    def history(self) -> list[str]:
        with self._lock:
            return list(self._history)

    @property
    def status(self):
        return self.tracker.current

    @property
    def contract_address(self) -> str:
        """Registry contract address, learned once from the ledger."""
        if self._contract_address is None:
            self._contract_address = self._read(self.reader.get_address)
        return self._contract_address

    def get_gift(self, gift_id: str) -> GiftRecord | None:
        """Cached record for ``gift_id``, if the last listing had it."""
        with self._lock:
            for gift in self._gifts:
                if gift.id == gift_id:
                    return gift
        return None

    def gift_state(self, gift_id: str) -> GiftState | None:
        with self._lock:
            if gift_id in self._in_flight:
                return GiftState.VERIFICATION_REQUESTED
        gift = self.get_gift(gift_id)
        if gift is None:
            return None
        return GiftState.VERIFIED if gift.is_verified else GiftState.CREATED

    def close(self) -> None:
        """Release pending status timers."""
        self.tracker.close()

    # =========================================================================
    # Helpers
    # =========================================================================

    def _read(self, func: Callable, *args):
        return retry_call(func, args=args, config=self.read_retry)

    def _record(self, message: str):
        with self._lock:
            self._history.append(message)

    def _new_gift_id(self) -> str:
        millis = int(self.clock() * 1000)
        with self._lock:
            while f"gift-{millis}" in self._issued_ids:
                millis += 1
            gift_id = f"gift-{millis}"
            self._issued_ids.add(gift_id)
        return gift_id

    def _ensure_oracle(self):
        if not self.oracle.is_initialized:
            logger.info("Initializing FHE oracle session")
            self.oracle.initialize()

    def _require_identity(self, action: str) -> str | None:
        try:
            return self.session.require_identity(action)
        except NotConnected as e:
            logger.info(f"{action} refused: not connected")
            metrics.increment("gift_operations_total", labels={"operation": action, "outcome": "not_connected"})
            self.tracker.error(e.message)
            return None

    def _fail(self, action: str, message: str, error: Exception | None = None):
        if error is not None:
            logger.error(f"{action} failed: {error}")
        metrics.increment("gift_operations_total", labels={"operation": action, "outcome": "error"})
        self.tracker.error(message)

    def _succeed(self, action: str, message: str):
        metrics.increment("gift_operations_total", labels={"operation": action, "outcome": "success"})
        self.tracker.success(message)

    # =========================================================================
    # Create
    # =========================================================================

    def create_gift(self, name: str, description: str, amount: Any) -> GiftRecord | None:
        """
        Encrypt ``amount`` and register a new gift on the ledger.

        Returns:
            The new record, or None if creation failed (see ``status``)
        """
        with LoggingContext(operation="create_gift"):
            identity = self._require_identity("create_gift")
            if identity is None:
                return None

            self.tracker.pending("Creating gift with FHE encryption...")
            value = coerce_amount(amount)

            try:
                self._ensure_oracle()
                contract = self.contract_address
                gift_id = self._new_gift_id()

                # No ledger write unless encryption succeeded
                encrypted = self.oracle.encrypt(contract, identity, value)

                writer = self.writer_factory(identity)
                confirmation = writer.create_business_data(
                    gift_id,
                    name,
                    encrypted.encrypted_data,
                    encrypted.proof,
                    0,
                    0,
                    description,
                )
                self.tracker.pending("Waiting for transaction...")
                confirmation.wait()
            except OracleInitializationFailed as e:
                self._fail("create_gift", "FHE initialization failed", e)
                return None
            except SignerRejected as e:
                self._fail("create_gift", "Transaction rejected", e)
                return None
            except GiftRegistryError as e:
                self._fail("create_gift", f"Creation failed: {e.message}", e)
                return None

            logger.info(f"Gift {gift_id} created")
            self._record(f"Created gift: {name}")
            self._succeed("create_gift", "Gift created successfully!")

            self.list_gifts()
            record = self.get_gift(gift_id)
            if record is None:
                # Refresh missed the new record; report what was written
                record = GiftRecord(
                    id=gift_id,
                    name=name,
                    description=description,
                    creator=identity,
                    created_at=int(self.clock()),
                )
            return record

    # =========================================================================
    # List / refresh
    # =========================================================================

    def list_gifts(self) -> list[GiftRecord]:
        """
        Re-fetch every gift from the ledger.

        A record that fails to load is logged and skipped; the result may
        be partial. If the id enumeration itself fails, an error status is
        set, the cache is kept and an empty list is returned.
        """
        with LoggingContext(operation="list_gifts"):
            try:
                with metrics.timer("ledger_list_ms"):
                    gift_ids = self._read(self.reader.get_all_business_ids)
            except GiftRegistryError as e:
                self._fail("list_gifts", "Failed to load gifts", e)
                return []

            with self._lock:
                known_handles = {g.id: g.encrypted_amount_handle for g in self._gifts}

            records: list[GiftRecord] = []
            failed: list[str] = []
            for gift_id in gift_ids:
                try:
                    data = self._read(self.reader.get_business_data, gift_id)
                    record = GiftRecord.from_business_data(gift_id, data)
                except Exception as e:
                    logger.warning(f"Error loading gift data for {gift_id}: {e}")
                    failed.append(gift_id)
                    continue

                if record.encrypted_amount_handle is None:
                    record.encrypted_amount_handle = known_handles.get(gift_id)
                records.append(record)

            with self._lock:
                self._gifts = records
                self.last_list_failure = PartialListFailure(failed) if failed else None

            metrics.set_gauge("gifts_cached", len(records))
            if failed:
                metrics.increment("list_fetch_failures_total", value=len(failed))
            return list(records)

    # =========================================================================
    # Decrypt
    # =========================================================================

    def decrypt_gift(self, gift_id: str) -> int | None:
        """
        Reveal a gift's amount under a verifiable proof.

        Idempotent: a gift the ledger already reports as verified returns
        its stored value with no oracle round-trip. Losing a race with
        another client converges on the value that client recorded.

        Returns:
            The plaintext amount, or None on failure (see ``status``)
        """
        with LoggingContext(operation="decrypt_gift", gift_id=gift_id):
            identity = self._require_identity("decrypt_gift")
            if identity is None:
                return None

            try:
                data = self._read(self.reader.get_business_data, gift_id)
                value = _verified_value(data)
            except GiftRegistryError as e:
                self._fail("decrypt_gift", f"Decryption failed: {e.message}", e)
                return None

            if value is not None:
                logger.info("Gift already verified; skipping oracle")
                self._succeed("decrypt_gift", "Gift amount already verified")
                self._store_plaintext(gift_id, value)
                return value

            with self._lock:
                self._in_flight.add(gift_id)
            try:
                self._ensure_oracle()
                contract = self.contract_address
                handle = self._read(self.reader.get_encrypted_value, gift_id)
                writer = self.writer_factory(identity)

                self.tracker.pending("Verifying decryption...")
                clear_values = self.verifier.verify(
                    [handle],
                    contract,
                    lambda encoded, proof: writer.verify_decryption(gift_id, encoded, proof),
                )
            except AlreadyVerified:
                logger.info("Lost verification race; re-reading ledger")
                return self._recover_verified(gift_id)
            except OracleInitializationFailed as e:
                self._fail("decrypt_gift", "FHE initialization failed", e)
                return None
            except SignerRejected as e:
                self._fail("decrypt_gift", "Transaction rejected", e)
                return None
            except GiftRegistryError as e:
                self._fail("decrypt_gift", f"Decryption failed: {e.message}", e)
                return None
            finally:
                with self._lock:
                    self._in_flight.discard(gift_id)

            value = clear_values[handle]
            self.list_gifts()
            self._store_plaintext(gift_id, value, handle)
            self._record(f"Decrypted gift: {data.get('name', gift_id)}")
            self._succeed("decrypt_gift", "Gift amount decrypted successfully!")
            return value

    def _recover_verified(self, gift_id: str) -> int | None:
        try:
            value = _verified_value(self._read(self.reader.get_business_data, gift_id))
        except GiftRegistryError as e:
            self._fail("decrypt_gift", f"Decryption failed: {e.message}", e)
            return None

        self.list_gifts()
        if value is None:
            self._fail("decrypt_gift", "Decryption failed: verification not visible on ledger")
            return None

        self._store_plaintext(gift_id, value)
        metrics.increment("gift_operations_total", labels={"operation": "decrypt_gift", "outcome": "already_verified"})
        self.tracker.success("Gift amount is already verified")
        return value

    def _store_plaintext(self, gift_id: str, value: int, handle: str | None = None):
        """Mirror a ledger-confirmed plaintext into the display cache."""
        with self._lock:
            for gift in self._gifts:
                if gift.id == gift_id:
                    gift.is_verified = True
                    gift.decrypted_value = value
                    if handle is not None:
                        gift.encrypted_amount_handle = handle

    # =========================================================================
    # Claim
    # =========================================================================

    def claim_gift(self, gift_id: str) -> bool:
        """
        Claim a gift if the registry reports availability.

        The availability check reads the contract-global ``is_available``
        flag, not a per-gift field.

        Returns:
            True if the claim was recorded
        """
        with LoggingContext(operation="claim_gift", gift_id=gift_id):
            if self._require_identity("claim_gift") is None:
                return False

            self.tracker.pending("Claiming gift...")
            try:
                available = self._read(self.reader.is_available)
            except GiftRegistryError as e:
                self._fail("claim_gift", "Claim failed", e)
                return False

            if not available:
                self._fail("claim_gift", "Gift is not available")
                return False

            gift = self.get_gift(gift_id)
            self._record(f"Claimed gift: {gift.name if gift else gift_id}")
            self._succeed("claim_gift", "Gift claimed successfully!")
            return True


# =============================================================================
# Wiring
# =============================================================================


def create_registry(
    session: WalletSession,
    config: RegistryConfig | None = None,
    tracker: TransactionStatusTracker | None = None,
) -> GiftLifecycleManager:
    """
    Build a manager backed by the HTTP ledger gateway and oracle.

    Args:
        session: Wallet session supplying the connected identity
        config: Registry configuration (defaults to environment)
        tracker: Optional status tracker to share with a UI
    """
    config = config or RegistryConfig.from_env()
    configure_logging(level=config.log_level, json_output=config.log_json)
    if not config.signer_secret:
        logger.warning("WEDLIST_SIGNER_SECRET not set; ledger writes will be refused")

    def writer_factory(signer: str) -> LedgerWriter:
        if not config.signer_secret:
            raise SignerRejected("No signing key configured")
        return HTTPLedgerWriter(
            HMACSigner(signer, config.signer_secret),
            endpoint=config.ledger_endpoint,
            verify_ssl=config.verify_ssl,
            timeout=config.request_timeout,
            poll_interval=config.confirmation_poll_interval,
        )

    return GiftLifecycleManager(
        reader=HTTPLedgerReader(
            endpoint=config.ledger_endpoint,
            verify_ssl=config.verify_ssl,
            timeout=config.request_timeout,
        ),
        writer_factory=writer_factory,
        oracle=FHEOracleClient(
            endpoint=config.oracle_endpoint,
            verify_ssl=config.verify_ssl,
            timeout=config.request_timeout,
        ),
        session=session,
        tracker=tracker or TransactionStatusTracker(
            success_ms=config.status_success_ms,
            error_ms=config.status_error_ms,
        ),
        read_retry=config.read_retry,
    )
