"""LocalTaskRegistry — which recurring events have a loop in this process."""

from __future__ import annotations

import logging

logger = logging.getLogger(__name__)


class LocalTaskRegistry:
    """In-process set of event IDs with an active recurrence loop.

    At most one loop per event ID per process: :meth:`claim` succeeds only
    for the first caller until the entry is released.
    """

    def __init__(self) -> None:
        self._active: set[str] = set()

    def claim(self, event_id: str) -> bool:
        """Record a loop for *event_id*. Returns False if one already exists."""
        if event_id in self._active:
            return False
        self._active.add(event_id)
        return True

    def release(self, event_id: str) -> bool:
        """Drop the entry. The loop stops at its next scheduling boundary."""
        if event_id not in self._active:
            return False
        self._active.discard(event_id)
        logger.debug("Released recurring event %s", event_id)
        return True

    def is_active(self, event_id: str) -> bool:
        return event_id in self._active

    def clear(self) -> None:
        self._active.clear()

    @property
    def events(self) -> frozenset[str]:
        return frozenset(self._active)

    def __contains__(self, event_id: object) -> bool:
        return event_id in self._active

    def __len__(self) -> int:
        return len(self._active)
