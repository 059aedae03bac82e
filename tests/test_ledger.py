"""
Tests for the ledger capabilities (src/ledger/)

Tests cover:
- GiftRecord parsing and claim state
- PendingConfirmation polling
- In-memory ledger contract rules
- HMAC request signing
- HTTP reader/writer against a mocked requests session
- HTTP reader/writer against a local gateway, one request per call
"""

import json
import os
import sys
import threading
import time
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from unittest.mock import MagicMock, patch

import pytest
import requests

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from fhe_oracle import encode_clear_values
from gift_errors import (
    AlreadyVerified,
    LedgerReadFailed,
    LedgerWriteFailed,
    SignerRejected,
)
from ledger import (
    ClaimState,
    GiftRecord,
    HMACSigner,
    HTTPLedgerReader,
    HTTPLedgerWriter,
    InMemoryLedger,
    LedgerReader,
    LedgerWriter,
    PendingConfirmation,
    ReceiptStatus,
)
from ledger.http import NONCE_HEADER, SIGNATURE_HEADER, SIGNER_HEADER, TIMESTAMP_HEADER
from retry import RetryConfig, is_retryable_exception, retry_call

ALICE = "0x" + "a1" * 20
BOB = "0x" + "b2" * 20


def _response(status_code=200, payload=None, text=""):
    response = MagicMock()
    response.status_code = status_code
    response.ok = status_code < 400
    response.text = text
    response.json.return_value = payload if payload is not None else {}
    return response


def _create(writer, gift_id="gift-1", name="Toaster"):
    return writer.create_business_data(gift_id, name, "0xcipher", "0xproof", 0, 0, "Four slots")


# ============================================================
# GiftRecord
# ============================================================


class TestGiftRecord:
    """Tests for GiftRecord parsing."""

    def test_from_business_data(self):
        record = GiftRecord.from_business_data(
            "gift-1",
            {
                "name": "Toaster",
                "description": "Four slots",
                "creator": ALICE,
                "timestamp": "1700000000",
                "isVerified": True,
                "decryptedValue": 50,
                "publicValue1": 0,
                "publicValue2": 0,
            },
        )

        assert record.id == "gift-1"
        assert record.created_at == 1700000000
        assert record.revealed_amount == 50
        assert record.claim_state == ClaimState.AVAILABLE

    def test_unverified_amount_is_unknown(self):
        """A stale decryptedValue is never exposed before verification."""
        record = GiftRecord.from_business_data("gift-1", {"decryptedValue": 99})

        assert record.is_verified is False
        assert record.revealed_amount is None

    def test_claimed_iff_public_value2_positive(self):
        assert GiftRecord.from_business_data("g", {"publicValue2": 1}).claim_state == ClaimState.CLAIMED
        assert GiftRecord.from_business_data("g", {"publicValue2": 0}).claim_state == ClaimState.AVAILABLE

    def test_to_dict(self):
        record = GiftRecord(id="gift-1", name="Vase", description="", creator=BOB, created_at=5)

        data = record.to_dict()

        assert data["claimState"] == "Available"
        assert data["isVerified"] is False
        assert data["timestamp"] == 5


# ============================================================
# PendingConfirmation
# ============================================================


class TestPendingConfirmation:
    """Tests for receipt polling."""

    def test_waits_through_pending(self):
        responses = iter([
            (ReceiptStatus.PENDING, {}),
            (ReceiptStatus.PENDING, {}),
            (ReceiptStatus.CONFIRMED, {"blockNumber": 7}),
        ])
        pending = PendingConfirmation(tx_hash="0x1", poll=lambda: next(responses), poll_interval=0.5)

        with patch("ledger.base.time.sleep") as sleep:
            receipt = pending.wait()

        assert receipt == {"blockNumber": 7}
        assert pending.receipt == receipt
        assert sleep.call_count == 2

    def test_revert_with_already_verified_reason(self):
        pending = PendingConfirmation(
            tx_hash="0x1",
            poll=lambda: (ReceiptStatus.REVERTED, {"reason": "execution reverted: Data already verified"}),
            gift_id="gift-1",
        )

        with pytest.raises(AlreadyVerified) as exc_info:
            pending.wait()

        assert exc_info.value.gift_id == "gift-1"

    def test_revert_marks_write_failure(self):
        pending = PendingConfirmation(
            tx_hash="0x1",
            poll=lambda: (ReceiptStatus.REVERTED, {"reason": "out of gas"}),
        )

        with pytest.raises(LedgerWriteFailed) as exc_info:
            pending.wait()

        assert exc_info.value.context.details["reverted"] is True


# ============================================================
# In-memory ledger
# ============================================================


class TestInMemoryLedger:
    """Tests for the simulated registry contract."""

    @pytest.fixture
    def ledger(self):
        return InMemoryLedger(address="0x" + "c0" * 20)

    def test_capabilities_are_separate(self, ledger):
        reader = ledger.reader()
        writer = ledger.writer(ALICE)

        assert isinstance(reader, LedgerReader)
        assert not isinstance(reader, LedgerWriter)
        assert isinstance(writer, LedgerWriter)
        assert not hasattr(writer, "get_business_data")

    def test_create_and_read(self, ledger):
        _create(ledger.writer(ALICE)).wait()
        reader = ledger.reader()

        data = reader.get_business_data("gift-1")

        assert reader.get_all_business_ids() == ["gift-1"]
        assert data["creator"] == ALICE
        assert data["isVerified"] is False
        assert "encryptedData" not in data
        assert reader.get_encrypted_value("gift-1") == "0xcipher"

    def test_duplicate_id_rejected(self, ledger):
        writer = ledger.writer(ALICE)
        _create(writer)

        with pytest.raises(LedgerWriteFailed):
            _create(writer)

    def test_unauthorized_signer(self):
        ledger = InMemoryLedger(authorized_signers={ALICE})

        with pytest.raises(LedgerWriteFailed):
            _create(ledger.writer(BOB))

    def test_writer_requires_signer(self, ledger):
        with pytest.raises(SignerRejected):
            ledger.writer("")

    def test_verify_records_plaintext(self, ledger):
        writer = ledger.writer(ALICE)
        _create(writer)

        writer.verify_decryption("gift-1", encode_clear_values([75]), "0xproof").wait()

        data = ledger.reader().get_business_data("gift-1")
        assert data["isVerified"] is True
        assert data["decryptedValue"] == 75

    def test_verify_at_most_once(self, ledger):
        writer = ledger.writer(ALICE)
        _create(writer)
        writer.verify_decryption("gift-1", encode_clear_values([75]), "0xproof")

        with pytest.raises(AlreadyVerified):
            ledger.writer(BOB).verify_decryption("gift-1", encode_clear_values([1]), "0xproof")

        assert ledger.get_record("gift-1")["decryptedValue"] == 75

    def test_verify_requires_proof(self, ledger):
        writer = ledger.writer(ALICE)
        _create(writer)

        with pytest.raises(LedgerWriteFailed):
            writer.verify_decryption("gift-1", encode_clear_values([75]), "")

    def test_unknown_gift_read(self, ledger):
        with pytest.raises(LedgerReadFailed):
            ledger.reader().get_business_data("gift-404")

    def test_reject_next_write(self, ledger):
        ledger.reject_next_write("User rejected transaction")

        with pytest.raises(SignerRejected):
            _create(ledger.writer(ALICE))

        # Only the next write is affected
        _create(ledger.writer(ALICE))
        assert ledger.reader().get_all_business_ids() == ["gift-1"]

    def test_global_availability(self, ledger):
        assert ledger.reader().is_available() is True
        ledger.available = False
        assert ledger.reader().is_available() is False


# ============================================================
# HMAC Signing
# ============================================================


class TestHMACSigner:
    """Tests for write request signing."""

    @pytest.fixture
    def signer(self):
        return HMACSigner(ALICE, "test_secret_key_12345")

    def test_sign_request_returns_headers(self, signer):
        headers = signer.sign_request("POST", "/gifts", '{"id": "gift-1"}')

        assert headers[SIGNER_HEADER] == ALICE
        assert TIMESTAMP_HEADER in headers
        assert NONCE_HEADER in headers
        assert len(headers[SIGNATURE_HEADER]) == 64

    def test_signature_covers_body(self, signer):
        first = signer.compute_signature("POST", "/gifts", 1000, "n1", '{"a": 1}')
        second = signer.compute_signature("POST", "/gifts", 1000, "n1", '{"a": 2}')

        assert first != second

    def test_signature_bound_to_signer(self):
        alice = HMACSigner(ALICE, "secret")
        bob = HMACSigner(BOB, "secret")

        assert alice.compute_signature("POST", "/gifts", 1, "n") != bob.compute_signature("POST", "/gifts", 1, "n")

    def test_nonce_is_unique(self, signer):
        assert signer.sign_request("POST", "/x")[NONCE_HEADER] != signer.sign_request("POST", "/x")[NONCE_HEADER]

    def test_timestamp_is_current(self, signer):
        timestamp = int(signer.sign_request("POST", "/x")[TIMESTAMP_HEADER])

        assert abs(timestamp - int(time.time())) <= 2


# ============================================================
# HTTP backends
# ============================================================


class TestHTTPLedgerReader:
    """Tests for the HTTP read capability."""

    @pytest.fixture
    def reader(self):
        reader = HTTPLedgerReader(endpoint="https://ledger.example/")
        reader.session.request = MagicMock()
        return reader

    def test_api_base(self, reader):
        assert reader.api_base == "https://ledger.example/api/v1"

    def test_get_all_business_ids(self, reader):
        reader.session.request.return_value = _response(payload={"ids": ["gift-1", "gift-2"]})

        assert reader.get_all_business_ids() == ["gift-1", "gift-2"]
        kwargs = reader.session.request.call_args.kwargs
        assert kwargs["method"] == "GET"
        assert kwargs["url"] == "https://ledger.example/api/v1/gifts/ids"

    def test_is_available(self, reader):
        reader.session.request.return_value = _response(payload={"available": False})

        assert reader.is_available() is False

    def test_http_error_maps_to_read_failure(self, reader):
        reader.session.request.return_value = _response(
            404, payload={"message": "Business data does not exist"}
        )

        with pytest.raises(LedgerReadFailed) as exc_info:
            reader.get_business_data("gift-404")

        assert exc_info.value.message == "Business data does not exist"

    def test_transport_failure_is_retryable(self, reader):
        reader.session.request.side_effect = requests.exceptions.ConnectionError("refused")

        with pytest.raises(LedgerReadFailed) as exc_info:
            reader.get_address()

        assert is_retryable_exception(exc_info.value, RetryConfig().retryable_exceptions)

    def test_transient_status_is_retryable(self, reader):
        reader.session.request.return_value = _response(503, text="Service unavailable")

        with pytest.raises(LedgerReadFailed) as exc_info:
            reader.get_all_business_ids()

        assert exc_info.value.context.details["status_code"] == 503
        assert is_retryable_exception(exc_info.value, RetryConfig().retryable_exceptions)

    def test_transient_status_is_retried_by_read_policy(self, reader):
        reader.session.request.side_effect = [
            _response(503, text="Service unavailable"),
            _response(payload={"ids": ["gift-1"]}),
        ]

        with patch("retry.time.sleep"):
            ids = retry_call(
                reader.get_all_business_ids,
                config=RetryConfig(max_retries=2, base_delay=0, jitter=0),
            )

        assert ids == ["gift-1"]
        assert reader.session.request.call_count == 2

    def test_missing_gift_is_not_retryable(self, reader):
        reader.session.request.return_value = _response(404, payload={"message": "Business data does not exist"})

        with pytest.raises(LedgerReadFailed) as exc_info:
            reader.get_business_data("gift-404")

        assert not is_retryable_exception(exc_info.value, RetryConfig().retryable_exceptions)

    @pytest.mark.parametrize(
        "call,payload",
        [
            (lambda r: r.get_encrypted_value("gift-1"), {}),
            (lambda r: r.get_address(), {"contract": "0xc0"}),
            (lambda r: r.is_available(), {}),
            (lambda r: r.get_all_business_ids(), {"ids": "gift-1"}),
            (lambda r: r.get_business_data("gift-1"), ["Toaster", "Four slots"]),
        ],
    )
    def test_malformed_reply_is_read_failure(self, reader, call, payload):
        reader.session.request.return_value = _response(payload=payload)

        with pytest.raises(LedgerReadFailed) as exc_info:
            call(reader)

        assert exc_info.value.message == "Malformed ledger response"

    def test_transport_never_retries(self, reader):
        retries = reader.session.get_adapter("https://ledger.example/api/v1/contract").max_retries

        assert retries.total == 0
        assert retries.read is False
        assert not retries.is_retry("GET", 503)

    def test_audit_log(self, reader):
        reader.session.request.return_value = _response(payload={"address": "0xc0"})

        reader.get_address()

        log = reader.get_audit_log()
        assert log[-1]["method"] == "GET"
        assert log[-1]["path"] == "/contract"
        assert log[-1]["success"] is True

    def test_unknown_receipt_status_is_pending(self, reader):
        reader.session.request.return_value = _response(payload={"status": "queued"})

        status, _ = reader.get_transaction_status("0xabc")

        assert status == ReceiptStatus.PENDING


class TestHTTPLedgerWriter:
    """Tests for the signed HTTP write capability."""

    @pytest.fixture
    def signer(self):
        return HMACSigner(ALICE, "s3cret")

    @pytest.fixture
    def writer(self, signer):
        writer = HTTPLedgerWriter(signer, endpoint="https://ledger.example", poll_interval=0)
        writer.session.request = MagicMock()
        writer._receipts.session.request = MagicMock()
        return writer

    def test_signer_identity(self, writer):
        assert writer.signer == ALICE

    def test_create_is_signed(self, writer, signer):
        writer.session.request.return_value = _response(payload={"txHash": "0xabc"})

        pending = _create(writer)

        kwargs = writer.session.request.call_args.kwargs
        headers = kwargs["headers"]
        expected = signer.compute_signature(
            "POST", "/gifts", int(headers[TIMESTAMP_HEADER]), headers[NONCE_HEADER], kwargs["data"]
        )
        assert headers[SIGNATURE_HEADER] == expected
        assert pending.tx_hash == "0xabc"

    def test_waits_for_receipt(self, writer):
        writer.session.request.return_value = _response(payload={"txHash": "0xabc"})
        writer._receipts.session.request.side_effect = [
            _response(payload={"status": "pending"}),
            _response(payload={"status": "confirmed", "blockNumber": 3}),
        ]

        with patch("ledger.base.time.sleep"):
            receipt = _create(writer).wait()

        assert receipt["blockNumber"] == 3
        url = writer._receipts.session.request.call_args.kwargs["url"]
        assert url.endswith("/transactions/0xabc")

    def test_already_verified_rejection(self, writer):
        writer.session.request.return_value = _response(
            400, payload={"reason": "execution reverted: Data already verified"}
        )

        with pytest.raises(AlreadyVerified):
            writer.verify_decryption("gift-1", encode_clear_values([50]), "0xproof")

    def test_signer_rejection(self, writer):
        writer.session.request.return_value = _response(403, payload={"reason": "User rejected transaction"})

        with pytest.raises(SignerRejected):
            _create(writer)

    def test_transport_failure_is_not_retried(self, writer):
        writer.session.request.side_effect = requests.exceptions.ConnectionError("reset")

        with pytest.raises(LedgerWriteFailed):
            _create(writer)

        assert writer.session.request.call_count == 1

    def test_transport_never_retries_post(self, writer):
        for url in ("https://ledger.example/api/v1/gifts", "http://ledger.example/api/v1/gifts"):
            retries = writer.session.get_adapter(url).max_retries

            assert retries.total == 0
            assert retries.read is False
            assert not retries.is_retry("POST", 503)
            assert not retries.is_retry("POST", 429, has_retry_after=True)

    def test_reply_without_tx_hash(self, writer):
        writer.session.request.return_value = _response(payload={"status": "queued"})

        with pytest.raises(LedgerWriteFailed) as exc_info:
            _create(writer)

        assert exc_info.value.message == "Malformed ledger response"

    def test_verify_body(self, writer):
        writer.session.request.return_value = _response(payload={"txHash": "0xdef"})
        encoded = encode_clear_values([50])

        writer.verify_decryption("gift-1", encoded, "0xproof")

        kwargs = writer.session.request.call_args.kwargs
        assert kwargs["url"] == "https://ledger.example/api/v1/gifts/gift-1/verify"
        assert encoded in kwargs["data"]


class TestHTTPLedgerAgainstGateway:
    """Runs the HTTP capabilities against a local gateway that always answers 503."""

    @pytest.fixture
    def gateway(self):
        counts = {"GET": 0, "POST": 0}

        class Handler(BaseHTTPRequestHandler):
            def _unavailable(self):
                counts[self.command] += 1
                length = int(self.headers.get("Content-Length") or 0)
                if length:
                    self.rfile.read(length)
                body = json.dumps({"error": "Service unavailable"}).encode()
                self.send_response(503)
                self.send_header("Content-Type", "application/json")
                self.send_header("Content-Length", str(len(body)))
                self.end_headers()
                self.wfile.write(body)

            do_GET = _unavailable
            do_POST = _unavailable

            def log_message(self, format, *args):
                pass

        server = ThreadingHTTPServer(("127.0.0.1", 0), Handler)
        thread = threading.Thread(target=server.serve_forever, daemon=True)
        thread.start()
        try:
            yield f"http://127.0.0.1:{server.server_address[1]}", counts
        finally:
            server.shutdown()
            server.server_close()

    def test_proof_submission_is_sent_once(self, gateway):
        endpoint, counts = gateway
        writer = HTTPLedgerWriter(HMACSigner(ALICE, "s3cret"), endpoint=endpoint, timeout=5)

        with pytest.raises(LedgerWriteFailed):
            writer.verify_decryption("gift-1", encode_clear_values([50]), "0xproof")

        assert counts["POST"] == 1

    def test_create_is_sent_once(self, gateway):
        endpoint, counts = gateway
        writer = HTTPLedgerWriter(HMACSigner(ALICE, "s3cret"), endpoint=endpoint, timeout=5)

        with pytest.raises(LedgerWriteFailed):
            _create(writer)

        assert counts["POST"] == 1

    def test_read_is_sent_once_per_call(self, gateway):
        endpoint, counts = gateway
        reader = HTTPLedgerReader(endpoint=endpoint, timeout=5)

        with pytest.raises(LedgerReadFailed) as exc_info:
            reader.get_all_business_ids()

        assert counts["GET"] == 1
        assert is_retryable_exception(exc_info.value, RetryConfig().retryable_exceptions)
