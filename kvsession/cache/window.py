# SPDX-License-Identifier: Apache-2.0
"""
Context window manager for kvsession.

Tracks the write cursor into the engine's bounded context window and keeps
it below ``capacity - headroom``. Two independent operations reduce the
cursor:

- ``shift()`` compacts the positional window by evicting its oldest half
  and renumbering the rest. The logical token record is left alone; the
  number of evicted tokens is accumulated in ``evicted``.
- ``truncate()`` invalidates everything from a position onwards, used when
  a new prompt diverges from the cached one.
"""

import logging
from typing import Optional

from ..engine.base import DEFAULT_SEQ_ID, EngineAdapter
from ..exceptions import KVSessionError
from .stats import SessionCacheStats

logger = logging.getLogger(__name__)


class ContextWindowManager:
    """
    Write cursor and eviction policy for one engine sequence.

    Invariants:
        ``0 <= cursor <= capacity - headroom`` after every operation that
        completes, provided callers consult ``needs_shift`` before writing.
    """

    def __init__(
        self,
        engine: EngineAdapter,
        capacity: int,
        headroom: int,
        stats: Optional[SessionCacheStats] = None,
        seq_id: int = DEFAULT_SEQ_ID,
    ):
        self.engine = engine
        self.capacity = capacity
        self.headroom = headroom
        self.stats = stats
        self.seq_id = seq_id

        self.cursor = 0
        # Logical tokens evicted from the head of the window by shifts
        self.evicted = 0

    @property
    def limit(self) -> int:
        """Position a write must never reach."""
        return self.capacity - self.headroom

    @property
    def available(self) -> int:
        """Free positions left before the limit."""
        return max(self.limit - self.cursor, 0)

    def needs_shift(self, extra: int = 0) -> bool:
        """True if writing ``extra`` more tokens would reach the limit."""
        return self.cursor + extra >= self.limit

    def shift(self) -> int:
        """
        Evict the oldest half of the resident window.

        Positions ``[0, discard)`` are removed and ``[discard, cursor)`` are
        renumbered to start at zero. Halving (rather than evicting a fixed
        amount) keeps the number of future shifts logarithmic.

        If the engine fails part-way, the whole window is dropped (cursor and
        ``evicted`` back to 0) before the error is re-raised, so the cursor
        never describes memory the engine no longer holds.

        Returns:
            Number of positions discarded (0 when the window is empty).

        Raises:
            KVSessionError: The engine could not remove or renumber positions.
        """
        discard = self.cursor // 2
        if discard == 0:
            return 0

        logger.info(
            f"Context full at {self.cursor}/{self.capacity}, discarding {discard} tokens",
            extra={"cursor": self.cursor, "discarded": discard},
        )
        try:
            self.engine.remove_memory_range(self.seq_id, 0, discard)
            self.engine.shift_memory_range(self.seq_id, discard, self.cursor, -discard)
        except KVSessionError as e:
            logger.error(f"Context shift failed at {self.cursor}, dropping the window: {e}")
            self.reset()
            self.engine.remove_memory_range(self.seq_id, 0, -1)
            raise
        self.cursor -= discard
        self.evicted += discard

        if self.stats is not None:
            self.stats.record_shift(discard)
        return discard

    def truncate(self, position: int) -> None:
        """
        Drop engine memory from ``position`` to the end of the window.

        Args:
            position: First window position to invalidate.
        """
        if position < 0 or position > self.cursor:
            raise ValueError(
                f"Cannot truncate window at {position}, cursor is {self.cursor}"
            )
        self.engine.remove_memory_range(self.seq_id, position, -1)
        self.cursor = position

    def clear(self) -> None:
        """Drop the whole window, including the record of evicted tokens."""
        self.truncate(0)
        self.evicted = 0

    def advance(self, count: int) -> None:
        """Move the cursor past ``count`` freshly decoded tokens."""
        self.cursor += count

    def reset(self) -> None:
        """Forget all positions without touching the engine."""
        self.cursor = 0
        self.evicted = 0

    def to_dict(self) -> dict:
        """Window state for stats reporting."""
        return {
            "capacity": self.capacity,
            "headroom": self.headroom,
            "cursor": self.cursor,
            "evicted": self.evicted,
            "available": self.available,
        }
