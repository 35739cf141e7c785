# SPDX-License-Identifier: Apache-2.0
"""
Token streamer: the per-step generation loop.

Each ``step()`` samples one token, decodes it into the window and returns
whatever text became complete. Token bytes are buffered until they form
whole UTF-8 characters, so a character split across tokens is emitted
exactly once.
"""

import logging
from typing import Optional

from .cache.stats import SessionCacheStats
from .cache.window import ContextWindowManager
from .engine.base import Batch, EngineAdapter
from .exceptions import KVSessionError
from .state import SessionState, StepOutcome, StepResult, StreamerState
from .utils.utf8 import Utf8State, classify_utf8, utf8_boundary

logger = logging.getLogger(__name__)


class TokenStreamer:
    """
    Generation state machine: READY -> GENERATING -> {STOPPED, EXHAUSTED}.

    Terminal states are sticky: once a terminal result was returned, every
    later ``step()`` returns the same result without touching the engine
    until ``begin()`` is called for a new prompt.
    """

    def __init__(
        self,
        engine: EngineAdapter,
        window: ContextWindowManager,
        state: SessionState,
        stats: Optional[SessionCacheStats] = None,
        log_malformed: bool = True,
    ):
        self.engine = engine
        self.window = window
        self.state = state
        self.stats = stats
        self.log_malformed = log_malformed

        self.status = StreamerState.READY
        self._terminal: Optional[StepResult] = None

    @property
    def finished(self) -> bool:
        return self._terminal is not None

    def begin(self) -> None:
        """Arm the streamer for a freshly processed prompt."""
        self.status = StreamerState.READY
        self._terminal = None

    def fail(self, error: Exception) -> StepResult:
        """Put the streamer in a terminal failed state."""
        return self._finish(StreamerState.STOPPED, StepOutcome.FAILED, error=error)

    def reset(self) -> None:
        """Back to READY with nothing buffered."""
        self.state.pending_bytes.clear()
        self.begin()

    def step(self) -> StepResult:
        """Produce the next piece of output."""
        if self._terminal is not None:
            return self._terminal

        self.status = StreamerState.GENERATING

        if self.window.needs_shift():
            try:
                # Horizon is window-relative; keep the remaining budget intact
                self.state.stop_horizon -= self.window.shift()
            except KVSessionError as e:
                # The window was dropped; trim the record to match it
                del self.state.cached_tokens[self.window.evicted + self.window.cursor:]
                self.state.stop_horizon = self.window.cursor
                return self._step_failed(e)

        if self.window.cursor >= self.state.stop_horizon:
            return self._finish(StreamerState.EXHAUSTED, StepOutcome.LENGTH)

        position = self.window.cursor
        try:
            token = self.engine.sample()
            self.engine.accept(token)
            self.engine.decode(Batch.single(token, position, self.window.seq_id))
        except KVSessionError as e:
            logger.error(f"Generation step failed at position {position}: {e}")
            return self._step_failed(e)

        self.window.advance(1)
        self.state.cached_tokens.append(token)
        if self.stats is not None:
            self.stats.tokens_generated += 1

        if self.engine.is_end_of_generation(token):
            return self._finish(
                StreamerState.STOPPED, StepOutcome.END_OF_GENERATION, token=token
            )

        self.state.pending_bytes += self.engine.token_to_bytes(token)
        return StepResult(StepOutcome.CONTINUING, text=self._drain(), token=token)

    def _step_failed(self, error: Exception) -> StepResult:
        if self.stats is not None:
            self.stats.decode_failures += 1
        return self.fail(error)

    def _drain(self) -> str:
        """
        Emit the pending buffer up to the last whole character.

        A malformed buffer is flushed with replacement characters, except
        for a trailing character that is still incomplete; that stays
        buffered so the next token can finish it.
        """
        pending = self.state.pending_bytes
        verdict = classify_utf8(pending)

        if verdict is Utf8State.TRUNCATED:
            return ""

        cut = len(pending)
        if verdict is Utf8State.MALFORMED:
            if self.log_malformed:
                logger.warning(
                    f"Flushing malformed UTF-8 buffer of {len(pending)} bytes: {bytes(pending)!r}"
                )
            if self.stats is not None:
                self.stats.malformed_flushes += 1
            cut = utf8_boundary(pending)

        text = pending[:cut].decode("utf-8", errors="replace")
        del pending[:cut]
        return text

    def _flush(self) -> str:
        """Decode whatever is left in the buffer, replacing partial characters."""
        if not self.state.pending_bytes:
            return ""
        text = self.state.pending_bytes.decode("utf-8", errors="replace")
        self.state.pending_bytes.clear()
        return text

    def _finish(
        self,
        status: StreamerState,
        outcome: StepOutcome,
        token: Optional[int] = None,
        error: Optional[Exception] = None,
    ) -> StepResult:
        self.status = status
        result = StepResult(outcome, text=self._flush(), token=token, error=error)
        logger.debug(f"Generation finished: {outcome.value} at position {self.window.cursor}")
        # Later polls repeat the outcome but never re-emit the flushed text
        self._terminal = StepResult(outcome, token=token, error=error)
        return result
