"""
WedList - Transaction Status Tracker

A single-slot, human-readable status for the operation in progress:

    idle -> pending -> success | error -> idle (after a fixed delay)

A new status overwrites the slot immediately; there is no queue. Expiry
runs on an injectable scheduler, and a scheduled expiry is cancelled only
when a later update resets the slot.
"""

import logging
import threading
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum

from monitoring.metrics import metrics
from registry_config import STATUS_ERROR_MS, STATUS_SUCCESS_MS

logger = logging.getLogger(__name__)


class StatusPhase(Enum):
    """Phase of the operation shown in the status slot."""

    PENDING = "pending"
    SUCCESS = "success"
    ERROR = "error"


@dataclass(frozen=True)
class TransactionStatus:
    """Snapshot of the status slot."""

    phase: StatusPhase = StatusPhase.PENDING
    message: str = ""
    visible: bool = False

    @property
    def is_idle(self) -> bool:
        return not self.visible


IDLE = TransactionStatus()


# =============================================================================
# Timer scheduling
# =============================================================================


class TimerHandle(ABC):
    @abstractmethod
    def cancel(self) -> None:
        pass


class Scheduler(ABC):
    """Runs a callback after a delay (seconds)."""

    @abstractmethod
    def schedule(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        pass


class _ThreadTimerHandle(TimerHandle):
    def __init__(self, timer: threading.Timer):
        self._timer = timer

    def cancel(self) -> None:
        self._timer.cancel()


class ThreadingScheduler(Scheduler):
    """Daemon ``threading.Timer`` per scheduled callback."""

    def schedule(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        timer = threading.Timer(delay, callback)
        timer.daemon = True
        timer.start()
        return _ThreadTimerHandle(timer)


# =============================================================================
# Tracker
# =============================================================================


class TransactionStatusTracker:
    """
    Observable single-slot status.

    Subscribers are called with the new TransactionStatus on every change,
    including the automatic return to idle.
    """

    def __init__(
        self,
        scheduler: Scheduler | None = None,
        success_ms: int = STATUS_SUCCESS_MS,
        error_ms: int = STATUS_ERROR_MS,
    ):
        self.scheduler = scheduler or ThreadingScheduler()
        self.success_ms = success_ms
        self.error_ms = error_ms

        self._status = IDLE
        self._timer: TimerHandle | None = None
        self._generation = 0
        self._lock = threading.RLock()
        self._subscribers: list[Callable[[TransactionStatus], None]] = []

    @property
    def current(self) -> TransactionStatus:
        with self._lock:
            return self._status

    def subscribe(self, callback: Callable[[TransactionStatus], None]) -> Callable[[], None]:
        """
        Register a status observer.

        Returns:
            A function that removes the observer
        """
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe():
            with self._lock:
                self._subscribers = [cb for cb in self._subscribers if cb is not callback]

        return unsubscribe

    def pending(self, message: str) -> None:
        self._set(StatusPhase.PENDING, message)

    def success(self, message: str) -> None:
        self._set(StatusPhase.SUCCESS, message)

    def error(self, message: str) -> None:
        self._set(StatusPhase.ERROR, message)

    def clear(self) -> None:
        """Reset to idle immediately."""
        with self._lock:
            self._cancel_timer()
            self._generation += 1
            self._status = IDLE
        self._emit(IDLE)

    def close(self) -> None:
        """Cancel any pending expiry; the slot keeps its last value."""
        with self._lock:
            self._cancel_timer()
            self._generation += 1

    def _cancel_timer(self):
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _set(self, phase: StatusPhase, message: str):
        status = TransactionStatus(phase=phase, message=message, visible=True)
        with self._lock:
            self._cancel_timer()
            self._generation += 1
            self._status = status

            delay_ms = {StatusPhase.SUCCESS: self.success_ms, StatusPhase.ERROR: self.error_ms}.get(phase)
            if delay_ms is not None:
                generation = self._generation
                self._timer = self.scheduler.schedule(
                    delay_ms / 1000, lambda: self._expire(generation)
                )

        metrics.increment("status_transitions_total", labels={"phase": phase.value})
        log = logger.warning if phase == StatusPhase.ERROR else logger.debug
        log(f"Status {phase.value}: {message}")
        self._emit(status)

    def _expire(self, generation: int):
        with self._lock:
            # A newer update owns the slot
            if generation != self._generation:
                return
            self._timer = None
            self._status = IDLE
        self._emit(IDLE)

    def _emit(self, status: TransactionStatus):
        with self._lock:
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(status)
            except Exception as e:
                logger.warning(f"Status subscriber error: {e}")
