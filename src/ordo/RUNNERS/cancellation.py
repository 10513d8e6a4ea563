"""
Cancellation shared by every probe and wait of a run.
"""
import threading
from typing import Optional


class CancellationToken:
    """
    One-shot cancellation signal.

    Waits go through ``wait`` so that cancelling wakes every waiter at once.
    """
    def __init__(self):
        self._event = threading.Event()
        self._timer: Optional[threading.Timer] = None
        self.reason: str = ""

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> None:
        """
        Cancels the token. Only the first reason is kept.
        """
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    def wait(self, timeout: float) -> bool:
        """
        Sleeps up to ``timeout`` seconds.

        :return: True if the token was cancelled, False if the time elapsed.
        """
        return self._event.wait(timeout)

    def cancel_after(self, seconds: float, reason: str = "global deadline exceeded") -> None:
        """
        Cancels the token automatically after ``seconds``.
        """
        self.disarm()
        self._timer = threading.Timer(seconds, self.cancel, args=(reason,))
        self._timer.daemon = True
        self._timer.start()

    def disarm(self) -> None:
        """Stops a pending ``cancel_after`` timer."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
