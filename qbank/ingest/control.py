"""
Cooperative pause/cancel signalling.

A CancellationToken is created per batch job and passed through every
suspension point. Workers check it at chunk boundaries; nothing blocks or
polls on it.
"""

import threading


class CancellationToken:
    """Thread-safe pause and cancel flags for one batch job."""

    def __init__(self):
        self._pause = threading.Event()
        self._cancel = threading.Event()

    def request_pause(self) -> None:
        self._pause.set()

    def clear_pause(self) -> None:
        self._pause.clear()

    def request_cancel(self) -> None:
        self._cancel.set()

    @property
    def pause_requested(self) -> bool:
        return self._pause.is_set()

    @property
    def cancel_requested(self) -> bool:
        return self._cancel.is_set()

    @property
    def should_stop(self) -> bool:
        return self._pause.is_set() or self._cancel.is_set()

    def __repr__(self) -> str:
        return f"CancellationToken(pause={self.pause_requested}, cancel={self.cancel_requested})"
