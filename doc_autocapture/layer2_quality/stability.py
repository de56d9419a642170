"""
Layer 2 — Stability Tracking
Bounded corner-position history and the jitter-to-score mapping.
"""
import math
from typing import Iterator, Optional, Tuple

from ..models import CornerHistoryEntry, Corners, round_half_up


class CornerHistory:
    """
    Immutable ring buffer of recent corner sets.

    ``push`` returns a new history so a frame's update can be committed only
    after the whole frame has been processed.
    """

    def __init__(self, capacity: int, entries: Tuple[CornerHistoryEntry, ...] = ()):
        if capacity < 1:
            raise ValueError("capacity must be positive")
        self.capacity = capacity
        self._entries = tuple(entries[-capacity:])

    def push(self, entry: CornerHistoryEntry) -> 'CornerHistory':
        """Append an entry, evicting the oldest when full."""
        return CornerHistory(self.capacity, self._entries + (entry,))

    def record(self, frame_index: int, corners: Corners, timestamp_ms: float) -> 'CornerHistory':
        return self.push(CornerHistoryEntry(frame_index, tuple(corners), timestamp_ms))

    def cleared(self) -> 'CornerHistory':
        return CornerHistory(self.capacity)

    @property
    def entries(self) -> Tuple[CornerHistoryEntry, ...]:
        return self._entries

    @property
    def latest(self) -> Optional[CornerHistoryEntry]:
        return self._entries[-1] if self._entries else None

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[CornerHistoryEntry]:
        return iter(self._entries)

    def average_movement(self) -> Optional[float]:
        """
        Mean per-corner displacement over every consecutive pair of entries.

        Returns:
            Average movement in pixels, or None with fewer than 2 entries
        """
        if len(self._entries) < 2:
            return None

        total = 0.0
        comparisons = 0
        for prev, current in zip(self._entries, self._entries[1:]):
            for a, b in zip(prev.corners, current.corners):
                total += math.hypot(b.x - a.x, b.y - a.y)
                comparisons += 1

        return total / max(comparisons, 1)


def movement_to_score(avg_movement: float, low_px: float = 5.0, high_px: float = 50.0) -> int:
    """
    Piecewise-linear jitter score.

    ``avg_movement <= low_px`` maps to 100, ``>= high_px`` to 0, linear in
    between.
    """
    if avg_movement <= low_px:
        return 100
    if avg_movement >= high_px:
        return 0
    ratio = (avg_movement - low_px) / (high_px - low_px)
    return max(0, min(100, round_half_up(100 - ratio * 100)))


def stability_score(history: CornerHistory, low_px: float = 5.0, high_px: float = 50.0) -> int:
    """Stability of a history; 0 until at least two entries exist."""
    movement = history.average_movement()
    if movement is None:
        return 0
    return movement_to_score(movement, low_px, high_px)
