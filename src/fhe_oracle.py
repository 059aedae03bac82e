"""
WedList - FHE Oracle Client

Client for the external fully-homomorphic encryption oracle. The oracle
performs the cryptography; this module only defines the request/response
contracts and transports them.

Operations:
- initialize: open an FHE session (once per connected identity)
- encrypt: plaintext integer -> ciphertext + input proof, bound to a
  contract address and submitter so it cannot be replayed elsewhere
- request_decryption: ciphertext handles -> clear values + decryption proof

A MockFHEOracle is provided for tests and demos.
"""

import hashlib
import hmac
import logging
import secrets
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from gift_errors import DecryptionFailed, EncryptionFailed, OracleInitializationFailed
from monitoring.metrics import metrics
from registry_config import DEFAULT_ORACLE_ENDPOINT

logger = logging.getLogger(__name__)

API_VERSION = "v1"
DEFAULT_TIMEOUT = 30
CONNECT_TIMEOUT = 10

UINT256_HEX_DIGITS = 64
MAX_PLAINTEXT = 2 ** 64 - 1  # euint64


# =============================================================================
# Data Classes
# =============================================================================


@dataclass
class EncryptedInput:
    """Ciphertext plus the proof that it was correctly formed for its context."""

    encrypted_data: str
    proof: str
    contract_address: str = ""
    submitter: str = ""


@dataclass
class DecryptionResult:
    """Clear values opened by the oracle, and the proof the ledger checks."""

    clear_values: dict[str, int]
    clear_values_encoded: str
    proof: str
    handles: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any], handles: list[str]) -> "DecryptionResult":
        """
        Parse an oracle response.

        Raises:
            DecryptionFailed: The response is missing its proof or values
        """
        proof = data.get("proof") or data.get("decryptionProof")
        encoded = data.get("clearValuesEncoded") or data.get("abiEncodedClearValues")
        raw_values = data.get("clearValues")
        if not proof or not encoded or not isinstance(raw_values, dict):
            raise DecryptionFailed(
                "Oracle returned a malformed decryption proof",
                reason=DecryptionFailed.MALFORMED_PROOF,
            )

        try:
            clear_values = {handle: int(raw_values[handle]) for handle in handles}
        except (KeyError, TypeError, ValueError) as e:
            raise DecryptionFailed(
                "Oracle response does not cover every requested handle",
                reason=DecryptionFailed.MALFORMED_PROOF,
                cause=e,
            ) from e

        return cls(
            clear_values=clear_values,
            clear_values_encoded=encoded,
            proof=proof,
            handles=list(handles),
        )


# =============================================================================
# Encoding helpers
# =============================================================================


def validate_plaintext(value: Any) -> int:
    """
    Check that a value can be encrypted.

    Raises:
        EncryptionFailed: value is not a non-negative integer in range
    """
    if isinstance(value, bool) or not isinstance(value, int):
        raise EncryptionFailed(
            "Plaintext must be an integer", details={"type": type(value).__name__}
        )
    if value < 0 or value > MAX_PLAINTEXT:
        raise EncryptionFailed("Plaintext out of range", details={"value": value})
    return value


def encode_clear_values(values: list[int]) -> str:
    """ABI-encode clear values as consecutive uint256 words."""
    return "0x" + "".join(format(v, f"0{UINT256_HEX_DIGITS}x") for v in values)


def decode_clear_values(encoded: str) -> list[int]:
    """Inverse of ``encode_clear_values``."""
    data = encoded[2:] if encoded.startswith("0x") else encoded
    return [
        int(data[i:i + UINT256_HEX_DIGITS], 16)
        for i in range(0, len(data), UINT256_HEX_DIGITS)
    ]


# =============================================================================
# Oracle interface
# =============================================================================


class FHEOracle(ABC):
    """Encryption/decryption oracle contract."""

    @property
    @abstractmethod
    def is_initialized(self) -> bool:
        pass

    @abstractmethod
    def initialize(self) -> None:
        """
        Open the FHE session. Idempotent.

        Raises:
            OracleInitializationFailed
        """
        pass

    @abstractmethod
    def encrypt(self, contract_address: str, submitter: str, plaintext: int) -> EncryptedInput:
        """
        Encrypt ``plaintext`` for use by ``submitter`` at ``contract_address``.

        Raises:
            EncryptionFailed
        """
        pass

    @abstractmethod
    def request_decryption(self, handles: list[str], contract_address: str) -> DecryptionResult:
        """
        Open ciphertext handles in the context of ``contract_address``.

        Raises:
            DecryptionFailed
        """
        pass


class FHEOracleClient(FHEOracle):
    """HTTP client for a remote FHE oracle (relayer)."""

    def __init__(
        self,
        endpoint: str = DEFAULT_ORACLE_ENDPOINT,
        verify_ssl: bool = True,
        timeout: int = DEFAULT_TIMEOUT,
    ):
        self.endpoint = endpoint.rstrip("/")
        self.api_base = f"{self.endpoint}/api/{API_VERSION}"
        self.verify_ssl = verify_ssl
        self.timeout = timeout
        self._initialized = False
        self._lock = threading.Lock()
        self._setup_session()

    def _setup_session(self):
        self.session = requests.Session()

        # Only the public-key fetch is idempotent; encrypt/decrypt are sent once
        retry_strategy = Retry(
            total=3,
            backoff_factor=0.5,
            status_forcelist=[429, 502, 503, 504],
            allowed_methods=["GET"],
        )
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

    def _request(self, method: str, path: str, body: dict[str, Any] | None = None) -> dict[str, Any]:
        response = self.session.request(
            method=method,
            url=f"{self.api_base}{path}",
            json=body,
            timeout=(CONNECT_TIMEOUT, self.timeout),
            verify=self.verify_ssl,
        )
        if not response.ok:
            message = response.text
            try:
                payload = response.json()
            except ValueError:
                payload = None
            if isinstance(payload, dict):
                message = payload.get("error", message)
            raise requests.exceptions.HTTPError(
                f"HTTP {response.status_code}: {message}", response=response
            )
        data = response.json()
        if not isinstance(data, dict):
            raise ValueError(f"Malformed oracle response for {path}")
        return data

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    def initialize(self) -> None:
        with self._lock:
            if self._initialized:
                return
            try:
                self._request("GET", "/keys")
            except (requests.exceptions.RequestException, ValueError) as e:
                raise OracleInitializationFailed("FHE initialization failed", cause=e) from e
            self._initialized = True
            logger.info("FHE oracle session initialized")

    def encrypt(self, contract_address: str, submitter: str, plaintext: int) -> EncryptedInput:
        validate_plaintext(plaintext)
        body = {
            "contractAddress": contract_address,
            "userAddress": submitter,
            "value": plaintext,
        }
        try:
            with metrics.timer("oracle_encrypt_ms"):
                data = self._request("POST", "/encrypt", body)
        except (requests.exceptions.RequestException, ValueError) as e:
            raise EncryptionFailed(f"Encryption failed: {e}", cause=e) from e

        if not data.get("encryptedData") or not data.get("proof"):
            raise EncryptionFailed("Oracle returned an incomplete encrypted input")

        metrics.increment("oracle_encrypt_total")
        return EncryptedInput(
            encrypted_data=data["encryptedData"],
            proof=data["proof"],
            contract_address=contract_address,
            submitter=submitter,
        )

    def request_decryption(self, handles: list[str], contract_address: str) -> DecryptionResult:
        body = {"handles": list(handles), "contractAddress": contract_address}
        try:
            with metrics.timer("oracle_decrypt_ms"):
                data = self._request("POST", "/decrypt", body)
        except (requests.exceptions.RequestException, ValueError) as e:
            raise DecryptionFailed(
                f"Decryption request denied: {e}",
                reason=DecryptionFailed.ORACLE_DENIED,
                cause=e,
            ) from e

        metrics.increment("oracle_decrypt_total")
        return DecryptionResult.from_dict(data, list(handles))


# =============================================================================
# Mock Oracle for Testing
# =============================================================================


class MockFHEOracle(FHEOracle):
    """
    Local stand-in for the FHE oracle.

    Ciphertexts are random references to plaintexts held in memory; proofs
    are HMACs over the ciphertext and its binding context. Decryption is
    refused for handles bound to another contract.
    """

    def __init__(self, fail_initialize: bool = False):
        self._key = secrets.token_bytes(32)
        self._ciphertexts: dict[str, tuple[int, str, str]] = {}
        self._initialized = False
        self._fail_initialize = fail_initialize
        self._encrypt_failures: list[str] = []
        self._decrypt_failures: list[str] = []
        self.encrypt_calls = 0
        self.decrypt_calls = 0

    def _mac(self, *parts: str) -> str:
        return "0x" + hmac.new(self._key, "|".join(parts).encode(), hashlib.sha256).hexdigest()

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    def initialize(self) -> None:
        if self._fail_initialize:
            raise OracleInitializationFailed("FHE initialization failed")
        self._initialized = True

    def encrypt(self, contract_address: str, submitter: str, plaintext: int) -> EncryptedInput:
        self.encrypt_calls += 1
        if self._encrypt_failures:
            raise EncryptionFailed(self._encrypt_failures.pop(0))
        validate_plaintext(plaintext)

        ciphertext = "0x" + secrets.token_hex(32)
        self._ciphertexts[ciphertext] = (plaintext, contract_address, submitter)
        return EncryptedInput(
            encrypted_data=ciphertext,
            proof=self._mac("input", ciphertext, contract_address, submitter),
            contract_address=contract_address,
            submitter=submitter,
        )

    def request_decryption(self, handles: list[str], contract_address: str) -> DecryptionResult:
        self.decrypt_calls += 1
        if self._decrypt_failures:
            raise DecryptionFailed(self._decrypt_failures.pop(0))

        values = []
        for handle in handles:
            entry = self._ciphertexts.get(handle)
            if entry is None or entry[1] != contract_address:
                raise DecryptionFailed(
                    "Handle not decryptable in this context",
                    details={"handle": handle},
                )
            values.append(entry[0])

        encoded = encode_clear_values(values)
        return DecryptionResult(
            clear_values=dict(zip(handles, values)),
            clear_values_encoded=encoded,
            proof=self._mac("decrypt", contract_address, encoded, *handles),
            handles=list(handles),
        )

    # =========================================================================
    # Test Helpers
    # =========================================================================

    def fail_next_encrypt(self, message: str = "Oracle unavailable"):
        self._encrypt_failures.append(message)

    def fail_next_decrypt(self, message: str = "Decryption denied"):
        self._decrypt_failures.append(message)

    def verify_input_proof(self, encrypted: EncryptedInput) -> bool:
        """Check an input proof against its claimed binding context."""
        expected = self._mac(
            "input", encrypted.encrypted_data, encrypted.contract_address, encrypted.submitter
        )
        return hmac.compare_digest(expected, encrypted.proof)
