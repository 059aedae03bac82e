"""
HTTP ledger gateway backend.

Talks JSON to a ledger gateway that fronts the registry contract:

    GET  /api/v1/contract                  -> {"address": ...}
    GET  /api/v1/gifts/ids                 -> {"ids": [...]}
    GET  /api/v1/gifts/<id>                -> business data
    GET  /api/v1/gifts/<id>/handle         -> {"handle": ...}
    GET  /api/v1/available                 -> {"available": bool}
    POST /api/v1/gifts                     -> {"txHash": ...}
    POST /api/v1/gifts/<id>/verify         -> {"txHash": ...}
    GET  /api/v1/transactions/<tx_hash>    -> {"status": ..., "reason": ...}

Writes are signed with HMAC-SHA256 request headers. The transport never
retries: a POST is sent exactly once, and reads are retried by the caller
through retry.retry_call. A 429 or 5xx reply to a read is reported as a
LedgerReadFailed caused by a RetryableError.
"""

import contextlib
import hashlib
import hmac
import json
import logging
import secrets
import time
from datetime import UTC, datetime
from typing import Any

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from gift_errors import LedgerReadFailed, LedgerWriteFailed, classify_ledger_rejection
from ledger.base import LedgerReader, LedgerWriter, PendingConfirmation, ReceiptStatus
from registry_config import DEFAULT_LEDGER_ENDPOINT
from retry import RetryableError

logger = logging.getLogger(__name__)

API_VERSION = "v1"

# Timeouts (seconds)
DEFAULT_TIMEOUT = 30
CONNECT_TIMEOUT = 10

# Replies that mark a read as transient
RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 504})

SIGNATURE_HEADER = "X-WedList-Signature"
TIMESTAMP_HEADER = "X-WedList-Timestamp"
NONCE_HEADER = "X-WedList-Nonce"
SIGNER_HEADER = "X-WedList-Signer"


class HMACSigner:
    """
    Signs ledger write requests on behalf of one signer identity.

    The gateway checks the signature, timestamp and nonce before it
    relays the transaction.
    """

    def __init__(self, signer: str, secret_key: str):
        self.signer = signer
        self.secret_key = secret_key.encode("utf-8")

    def compute_signature(
        self, method: str, path: str, timestamp: int, nonce: str, body: str | None = None
    ) -> str:
        sign_string = f"{method.upper()}\n{path}\n{timestamp}\n{nonce}\n{self.signer}\n{body or ''}"
        return hmac.new(self.secret_key, sign_string.encode("utf-8"), hashlib.sha256).hexdigest()

    def sign_request(
        self, method: str, path: str, body: str | None = None, timestamp: int | None = None
    ) -> dict[str, str]:
        """
        Sign a request and return authentication headers.

        Args:
            method: HTTP method
            path: Request path
            body: Request body (JSON string)
            timestamp: Optional timestamp (uses current time if not provided)
        """
        if timestamp is None:
            timestamp = int(time.time())

        nonce = secrets.token_hex(16)
        return {
            SIGNATURE_HEADER: self.compute_signature(method, path, timestamp, nonce, body),
            TIMESTAMP_HEADER: str(timestamp),
            NONCE_HEADER: nonce,
            SIGNER_HEADER: self.signer,
        }


class _LedgerHTTPClient:
    """Shared session handling and audit logging for both capabilities."""

    def __init__(
        self,
        endpoint: str = DEFAULT_LEDGER_ENDPOINT,
        verify_ssl: bool = True,
        timeout: int = DEFAULT_TIMEOUT,
    ):
        self.endpoint = endpoint.rstrip("/")
        self.api_base = f"{self.endpoint}/api/{API_VERSION}"
        self.verify_ssl = verify_ssl
        self.timeout = timeout
        self.audit_log: list[dict[str, Any]] = []
        self._setup_session()

    def _setup_session(self):
        self.session = requests.Session()

        # One attempt per request for every verb, including read timeouts
        retry_strategy = Retry(total=0, read=False, status=0)
        adapter = HTTPAdapter(max_retries=retry_strategy)
        self.session.mount("http://", adapter)
        self.session.mount("https://", adapter)

        self.session.headers.update(
            {
                "Content-Type": "application/json",
                "Accept": "application/json",
                "User-Agent": f"WedList-Python/{API_VERSION}",
            }
        )

    def _make_request(
        self,
        method: str,
        path: str,
        body: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> tuple[bool, Any]:
        """
        Make an HTTP request.

        Returns:
            Tuple of (success, response_data or error)

        Raises:
            requests.exceptions.RequestException: Transport failure
        """
        url = f"{self.api_base}{path}"
        body_str = json.dumps(body) if body else None

        request_log = {
            "timestamp": datetime.now(UTC).isoformat(),
            "method": method,
            "path": path,
            "body_hash": hashlib.sha256(body_str.encode()).hexdigest() if body_str else None,
        }

        try:
            response = self.session.request(
                method=method,
                url=url,
                data=body_str,
                headers=headers or {},
                timeout=(CONNECT_TIMEOUT, self.timeout),
                verify=self.verify_ssl,
            )
        except requests.exceptions.RequestException as e:
            request_log["error"] = str(e)
            self.audit_log.append(request_log)
            raise

        request_log["status_code"] = response.status_code
        request_log["success"] = response.ok
        self.audit_log.append(request_log)

        if response.ok:
            try:
                return True, response.json()
            except json.JSONDecodeError:
                return True, {"raw": response.text}

        error_data = {
            "error": f"HTTP {response.status_code}",
            "status_code": response.status_code,
            "message": response.text,
        }
        with contextlib.suppress(ValueError):
            payload = response.json()
            if isinstance(payload, dict):
                error_data.update(payload)
        return False, error_data

    def get_audit_log(self, limit: int = 100) -> list[dict[str, Any]]:
        """Get recent audit log entries."""
        return self.audit_log[-limit:]


class HTTPLedgerReader(_LedgerHTTPClient, LedgerReader):
    """Read-only ledger capability over HTTP."""

    def _get(self, path: str) -> dict[str, Any]:
        try:
            success, result = self._make_request("GET", path)
        except requests.exceptions.RequestException as e:
            raise LedgerReadFailed(f"Ledger unreachable: {e}", details={"path": path}, cause=e) from e

        if not success:
            status_code = result.get("status_code")
            cause = None
            if status_code in RETRYABLE_STATUS_CODES:
                cause = RetryableError(f"HTTP {status_code}")
            raise LedgerReadFailed(
                result.get("message") or result.get("error", "Ledger read failed"),
                details={"path": path, "status_code": status_code},
                cause=cause,
            )

        if not isinstance(result, dict):
            raise LedgerReadFailed("Malformed ledger response", details={"path": path})
        return result

    def _field(self, path: str, key: str) -> Any:
        result = self._get(path)
        if key not in result:
            raise LedgerReadFailed(
                "Malformed ledger response", details={"path": path, "missing": key}
            )
        return result[key]

    def get_address(self) -> str:
        return self._field("/contract", "address")

    def get_all_business_ids(self) -> list[str]:
        ids = self._field("/gifts/ids", "ids")
        if not isinstance(ids, list):
            raise LedgerReadFailed("Malformed ledger response", details={"path": "/gifts/ids"})
        return [str(gift_id) for gift_id in ids]

    def get_business_data(self, gift_id: str) -> dict[str, Any]:
        return self._get(f"/gifts/{gift_id}")

    def get_encrypted_value(self, gift_id: str) -> str:
        return self._field(f"/gifts/{gift_id}/handle", "handle")

    def is_available(self) -> bool:
        return bool(self._field("/available", "available"))

    def get_transaction_status(self, tx_hash: str) -> tuple[ReceiptStatus, dict[str, Any]]:
        result = self._get(f"/transactions/{tx_hash}")
        try:
            status = ReceiptStatus(result.get("status", "pending"))
        except ValueError:
            status = ReceiptStatus.PENDING
        return status, result


class HTTPLedgerWriter(_LedgerHTTPClient, LedgerWriter):
    """
    Signed ledger capability over HTTP.

    Receipts are polled through a separate read-only session.
    """

    def __init__(
        self,
        signer: HMACSigner,
        endpoint: str = DEFAULT_LEDGER_ENDPOINT,
        verify_ssl: bool = True,
        timeout: int = DEFAULT_TIMEOUT,
        poll_interval: float = 1.0,
    ):
        super().__init__(endpoint=endpoint, verify_ssl=verify_ssl, timeout=timeout)
        self._signer = signer
        self.signer = signer.signer
        self.poll_interval = poll_interval
        self._receipts = HTTPLedgerReader(endpoint=endpoint, verify_ssl=verify_ssl, timeout=timeout)

    def _submit(self, path: str, body: dict[str, Any], gift_id: str) -> PendingConfirmation:
        headers = self._signer.sign_request("POST", path, json.dumps(body))
        try:
            success, result = self._make_request("POST", path, body=body, headers=headers)
        except requests.exceptions.RequestException as e:
            raise LedgerWriteFailed(
                f"Ledger unreachable: {e}", details={"gift_id": gift_id}, cause=e
            ) from e

        if not success:
            raise classify_ledger_rejection(
                result.get("reason") or result.get("message") or result.get("error", ""),
                gift_id=gift_id,
            )

        if not isinstance(result, dict) or not result.get("txHash"):
            raise LedgerWriteFailed("Malformed ledger response", details={"gift_id": gift_id})

        tx_hash = result["txHash"]
        logger.info(f"Submitted transaction {tx_hash} for {gift_id}")
        return PendingConfirmation(
            tx_hash=tx_hash,
            poll=lambda: self._receipts.get_transaction_status(tx_hash),
            poll_interval=self.poll_interval,
            gift_id=gift_id,
        )

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
        body = {
            "id": gift_id,
            "name": name,
            "encryptedData": encrypted_data,
            "proof": proof,
            "publicValue1": public_value1,
            "publicValue2": public_value2,
            "description": description,
        }
        return self._submit("/gifts", body, gift_id)

    def verify_decryption(
        self, gift_id: str, clear_values_encoded: str, proof: str
    ) -> PendingConfirmation:
        body = {"clearValues": clear_values_encoded, "proof": proof}
        return self._submit(f"/gifts/{gift_id}/verify", body, gift_id)
