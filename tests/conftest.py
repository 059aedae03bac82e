"""
Pytest configuration and shared fixtures for WedList tests.

This module provides:
- A manual scheduler so status expiry can be driven by tests
- An in-memory ledger and a mock FHE oracle
- A connected wallet session and a ready-to-use lifecycle manager
"""

import os
import sys

import pytest

# Add src to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from fhe_oracle import MockFHEOracle  # noqa: E402
from gift_registry import GiftLifecycleManager  # noqa: E402
from ledger import InMemoryLedger  # noqa: E402
from monitoring.metrics import metrics  # noqa: E402
from retry import RetryConfig  # noqa: E402
from transaction_status import Scheduler, TimerHandle, TransactionStatusTracker  # noqa: E402
from wallet_session import WalletSession  # noqa: E402

ALICE = "0x" + "a1" * 20
BOB = "0x" + "b2" * 20


class ManualTimer(TimerHandle):
    def __init__(self, due: float, callback):
        self.due = due
        self.callback = callback
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class ManualScheduler(Scheduler):
    """Scheduler whose clock only moves when a test calls ``advance``."""

    def __init__(self):
        self.now = 0.0
        self.timers: list[ManualTimer] = []

    def schedule(self, delay, callback):
        timer = ManualTimer(self.now + delay, callback)
        self.timers.append(timer)
        return timer

    def advance(self, seconds: float):
        self.now += seconds
        for timer in list(self.timers):
            if not timer.cancelled and timer.due <= self.now:
                self.timers.remove(timer)
                timer.callback()

    @property
    def active(self) -> list[ManualTimer]:
        return [t for t in self.timers if not t.cancelled]


@pytest.fixture(autouse=True)
def reset_metrics():
    """Give every test a clean metrics collector."""
    metrics.reset()
    yield
    metrics.reset()


@pytest.fixture
def scheduler():
    return ManualScheduler()


@pytest.fixture
def tracker(scheduler):
    return TransactionStatusTracker(scheduler=scheduler)


@pytest.fixture
def chain():
    """Simulated registry contract."""
    return InMemoryLedger(address="0x" + "c0" * 20)


@pytest.fixture
def oracle():
    return MockFHEOracle()


@pytest.fixture
def session():
    wallet = WalletSession()
    wallet.connect(ALICE)
    return wallet


@pytest.fixture
def no_retry():
    return RetryConfig(max_retries=0, base_delay=0, jitter=0)


@pytest.fixture
def manager(chain, oracle, session, tracker, no_retry):
    """Lifecycle manager wired to the in-memory ledger and mock oracle."""
    registry = GiftLifecycleManager(
        reader=chain.reader(),
        writer_factory=chain.writer,
        oracle=oracle,
        session=session,
        tracker=tracker,
        read_retry=no_retry,
        clock=lambda: 1_700_000_000.0,
    )
    yield registry
    registry.close()
