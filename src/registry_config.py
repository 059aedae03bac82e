"""
WedList - Registry Configuration

Environment Variables:
    WEDLIST_LEDGER_ENDPOINT=http://localhost:8545
    WEDLIST_ORACLE_ENDPOINT=http://localhost:8700
    WEDLIST_SIGNER_SECRET=<hmac secret for the signing capability>
    WEDLIST_VERIFY_SSL=true
    WEDLIST_REQUEST_TIMEOUT=30
    WEDLIST_CONFIRMATION_POLL_INTERVAL=1.0
    WEDLIST_STATUS_SUCCESS_MS=2000
    WEDLIST_STATUS_ERROR_MS=3000
    LOG_LEVEL=INFO
    LOG_FORMAT=console   (or json)
"""

import os
from dataclasses import dataclass, field

from retry import RetryConfig

DEFAULT_LEDGER_ENDPOINT = "http://localhost:8545"
DEFAULT_ORACLE_ENDPOINT = "http://localhost:8700"

# Status display lifetimes (milliseconds)
STATUS_SUCCESS_MS = 2000
STATUS_ERROR_MS = 3000


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class RegistryConfig:
    """Configuration for the gift registry client."""

    ledger_endpoint: str = DEFAULT_LEDGER_ENDPOINT
    oracle_endpoint: str = DEFAULT_ORACLE_ENDPOINT
    signer_secret: str | None = None
    verify_ssl: bool = True

    # Timeouts (seconds)
    request_timeout: int = 30

    # Receipt polling; there is no confirmation deadline
    confirmation_poll_interval: float = 1.0

    status_success_ms: int = STATUS_SUCCESS_MS
    status_error_ms: int = STATUS_ERROR_MS

    read_retry: RetryConfig = field(default_factory=RetryConfig)

    log_level: str = "INFO"
    log_json: bool = False

    @classmethod
    def from_env(cls) -> "RegistryConfig":
        """Create configuration from environment variables."""
        return cls(
            ledger_endpoint=os.getenv("WEDLIST_LEDGER_ENDPOINT", DEFAULT_LEDGER_ENDPOINT),
            oracle_endpoint=os.getenv("WEDLIST_ORACLE_ENDPOINT", DEFAULT_ORACLE_ENDPOINT),
            signer_secret=os.getenv("WEDLIST_SIGNER_SECRET") or None,
            verify_ssl=_env_bool("WEDLIST_VERIFY_SSL", True),
            request_timeout=int(os.getenv("WEDLIST_REQUEST_TIMEOUT", "30")),
            confirmation_poll_interval=float(os.getenv("WEDLIST_CONFIRMATION_POLL_INTERVAL", "1.0")),
            status_success_ms=int(os.getenv("WEDLIST_STATUS_SUCCESS_MS", str(STATUS_SUCCESS_MS))),
            status_error_ms=int(os.getenv("WEDLIST_STATUS_ERROR_MS", str(STATUS_ERROR_MS))),
            read_retry=RetryConfig.from_env(),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_json=os.getenv("LOG_FORMAT", "").strip().lower() == "json",
        )
