"""Cooperative cancellation token shared by the agent loop and the decoder."""

import logging
import threading

logger = logging.getLogger(__name__)


class CancelToken:
    """One-shot cancellation signal.

    ``cancel()`` may be called from any thread. The agent loop checks
    ``cancelled`` at its checkpoints; nothing is interrupted preemptively.
    Abort callbacks are the lower-level path: they run once, on the
    cancelling thread, when the token is first set.
    """

    def __init__(self):
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._abort_callbacks: list = []

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> bool:
        """Set the token. Returns True only for the call that set it."""
        with self._lock:
            if self._event.is_set():
                return False
            self._event.set()
            callbacks = list(self._abort_callbacks)
            self._abort_callbacks.clear()
        for callback in callbacks:
            try:
                callback()
            except Exception:
                logger.debug("abort callback failed", exc_info=True)
        return True

    def wait(self, timeout: float | None = None) -> bool:
        return self._event.wait(timeout)

    def reset(self) -> None:
        """Re-arm the token for a new turn."""
        with self._lock:
            self._event.clear()
            self._abort_callbacks.clear()

    def add_abort_callback(self, callback) -> None:
        """Register a hook run on cancellation (immediately if already set)."""
        with self._lock:
            if not self._event.is_set():
                self._abort_callbacks.append(callback)
                return
        callback()

    def remove_abort_callback(self, callback) -> None:
        with self._lock:
            try:
                self._abort_callbacks.remove(callback)
            except ValueError:
                pass
