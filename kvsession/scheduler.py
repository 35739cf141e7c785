# SPDX-License-Identifier: Apache-2.0
"""
Batch scheduler for prompt ingestion.

Splits an arbitrary-length token sequence into fixed-size chunks and drives
them through the engine, checking window capacity before every chunk.
"""

import logging
from typing import Optional, Sequence

from .cache.window import ContextWindowManager
from .engine.base import Batch, EngineAdapter
from .exceptions import DecodeError, KVSessionError

logger = logging.getLogger(__name__)


class BatchScheduler:
    """
    Chunked decoder bound to one context window.

    Positions are taken from the window cursor when each chunk is built, so
    a shift in the middle of a long prompt renumbers the remaining chunks
    instead of writing past the limit.
    """

    def __init__(
        self,
        engine: EngineAdapter,
        window: ContextWindowManager,
        batch_size: int,
    ):
        if batch_size <= 0:
            raise ValueError(f"batch_size must be positive: {batch_size}")
        self.engine = engine
        self.window = window
        self.batch_size = batch_size
        self._batch = Batch(seq_id=window.seq_id)

    def _make_room(self, chunk_size: int) -> None:
        """Shift until a chunk of ``chunk_size`` fits below the limit."""
        while self.window.needs_shift(chunk_size):
            if self.window.shift() == 0:
                break

    def decode(self, tokens: Sequence[int], start_position: Optional[int] = None) -> int:
        """
        Decode ``tokens`` into the window.

        Only the globally-last token requests logits, so sampling can start
        right after the sequence. Chunks decoded before a failure stay
        committed; nothing is retried or rolled back.

        Args:
            tokens: Tokens to append to the window.
            start_position: Expected cursor at entry; defaults to the
                current cursor.

        Returns:
            The cursor after the last chunk.

        Raises:
            DecodeError: A chunk was rejected, or the shift that had to
                precede it failed. ``committed_tokens`` tells how many
                leading tokens were decoded before it. After a failed shift
                the window is empty, so none of them remain resident.
        """
        if start_position is not None and start_position != self.window.cursor:
            raise ValueError(
                f"start_position {start_position} does not match cursor {self.window.cursor}"
            )

        total = len(tokens)
        for offset in range(0, total, self.batch_size):
            chunk = tokens[offset:offset + self.batch_size]
            position = self.window.cursor
            try:
                self._make_room(len(chunk))
            except KVSessionError as e:
                logger.error(f"Context shift failed before chunk at offset {offset}: {e}")
                raise DecodeError(
                    f"Context shift failed before chunk at offset {offset}",
                    committed_tokens=offset,
                    details={"position": position, "chunk_size": len(chunk)},
                ) from e

            self._batch.clear()
            base = self.window.cursor
            for j, token_id in enumerate(chunk):
                self._batch.add(token_id, base + j, offset + j == total - 1)

            try:
                self.engine.decode(self._batch)
            except DecodeError as e:
                logger.error(
                    f"Decode failed for chunk at offset {offset} "
                    f"({len(chunk)} tokens, position {base}): {e}"
                )
                raise DecodeError(
                    f"Batch decode failed at offset {offset}",
                    committed_tokens=offset,
                    details={"position": base, "chunk_size": len(chunk)},
                ) from e

            self.window.advance(len(chunk))
            logger.debug(f"Decoded chunk of {len(chunk)} tokens at position {base}")

        return self.window.cursor
