"""
WedList - Wallet Session

The connected identity as reported by an external wallet provider. The
registry only reads it; connecting and switching accounts happen outside.
"""

import logging
import threading
from dataclasses import dataclass, field

from gift_errors import NotConnected

logger = logging.getLogger(__name__)


@dataclass
class WalletSession:
    """Current identity and connection state."""

    address: str | None = None
    is_connected: bool = False
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    @property
    def identity(self) -> str | None:
        """The connected address, or None when no identity is available."""
        if self.is_connected and self.address:
            return self.address
        return None

    def require_identity(self, action: str = "unknown") -> str:
        """
        Return the connected address.

        Raises:
            NotConnected: No identity is available
        """
        identity = self.identity
        if identity is None:
            raise NotConnected(action=action)
        return identity

    def connect(self, address: str) -> None:
        with self._lock:
            self.address = address
            self.is_connected = True
        logger.info(f"Wallet connected: {address}")

    def disconnect(self) -> None:
        with self._lock:
            self.is_connected = False
            self.address = None
        logger.info("Wallet disconnected")
