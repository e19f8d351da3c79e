"""
Cooperative cancellation for long-running registry operations.
"""
import threading
from typing import Optional

from ..MODELS.errors import OperationCancelled


class CancellationToken:
    """
    A flag shared between the caller and a running operation.

    Operations call :meth:`raise_if_cancelled` at safe points; the caller
    calls :meth:`cancel` from any thread.
    """
    def __init__(self):
        self._event = threading.Event()
        self.reason = ""

    def cancel(self, reason: str = "operation cancelled") -> None:
        self.reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: float) -> bool:
        """Sleeps up to ``timeout`` seconds, returning early (True) if cancelled."""
        return self._event.wait(timeout)

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise OperationCancelled(self.reason)


def check_cancelled(ctx: Optional[CancellationToken]) -> None:
    """No-op when no token was supplied."""
    if ctx is not None:
        ctx.raise_if_cancelled()
