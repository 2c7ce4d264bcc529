"""Thread-safe stop and finish signalling for a viewer loop."""

from __future__ import annotations

import threading


class ViewerControl:
    """Flags that let other threads pause or end a running viewer loop.

    A viewer that has not started counts as both stopped and finished.
    """

    def __init__(self):
        self._finish_lock = threading.Lock()
        self._stop_lock = threading.Lock()
        self._finish_requested = False
        self._finished = True
        self._stopped = True
        self._stop_requested = False

    def start(self):
        """Mark the loop as running."""
        with self._finish_lock:
            self._finished = False
        with self._stop_lock:
            self._stopped = False

    def request_finish(self):
        """Ask the loop to end."""
        with self._finish_lock:
            self._finish_requested = True

    def check_finish(self):
        """Whether the loop has been asked to end."""
        with self._finish_lock:
            return self._finish_requested

    def set_finish(self):
        """Mark the loop as ended."""
        with self._finish_lock:
            self._finished = True

    def is_finished(self):
        """Whether the loop has ended."""
        with self._finish_lock:
            return self._finished

    def request_stop(self):
        """Ask a running loop to pause; ignored when already stopped."""
        with self._stop_lock:
            if not self._stopped:
                self._stop_requested = True

    def is_stopped(self):
        """Whether the loop is paused."""
        with self._stop_lock:
            return self._stopped

    def stop(self):
        """Pause if a stop was requested and no finish was; return whether it paused."""
        with self._stop_lock, self._finish_lock:
            if self._finish_requested:
                return False
            if self._stop_requested:
                self._stopped = True
                self._stop_requested = False
                return True
            return False

    def release(self):
        """Resume a paused loop."""
        with self._stop_lock:
            self._stopped = False