"""
Request Generation Tracker
==========================
Monotonic tokens for detecting stale async results.

Every upload and every cancel calls begin(). A removal result is applied
only if the token it was dispatched with is still the current one.
"""


class RequestGenerationTracker:
    """Issues increasing generation tokens."""

    def __init__(self, start: int = 0):
        self._current = start

    @property
    def current(self) -> int:
        return self._current

    def begin(self) -> int:
        """Start a new generation and return its token."""
        self._current += 1
        return self._current

    def is_stale(self, token: int) -> bool:
        """True iff `token` is not the current generation."""
        return token != self._current
