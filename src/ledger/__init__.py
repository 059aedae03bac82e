"""
Ledger capabilities for the gift registry.

Available backends:
    - InMemoryLedger: simulated contract for tests and demos
    - HTTPLedgerReader / HTTPLedgerWriter: ledger gateway over HTTP

Usage:
    from ledger import InMemoryLedger

    chain = InMemoryLedger()
    reader = chain.reader()
    writer = chain.writer("0xabc...")
"""

from ledger.base import (
    ClaimState,
    GiftRecord,
    LedgerReader,
    LedgerWriter,
    PendingConfirmation,
    ReceiptStatus,
)
from ledger.http import HMACSigner, HTTPLedgerReader, HTTPLedgerWriter
from ledger.memory import InMemoryLedger

__all__ = [
    "ClaimState",
    "GiftRecord",
    "LedgerReader",
    "LedgerWriter",
    "PendingConfirmation",
    "ReceiptStatus",
    "HMACSigner",
    "HTTPLedgerReader",
    "HTTPLedgerWriter",
    "InMemoryLedger",
]
