# SPDX-License-Identifier: Apache-2.0
"""
Session state and result types for kvsession.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional


class SessionStatus(Enum):
    """Status values returned by the session lifecycle API."""

    OK = "ok"
    MODEL_LOAD_FAILED = "model_load_failed"
    CONTEXT_INIT_FAILED = "context_init_failed"
    DECODE_FAILED = "decode_failed"
    NOT_LOADED = "not_loaded"

    @property
    def ok(self) -> bool:
        return self is SessionStatus.OK


class StreamerState(Enum):
    """Generation loop states."""

    READY = "ready"
    GENERATING = "generating"
    STOPPED = "stopped"
    EXHAUSTED = "exhausted"


class StepOutcome(Enum):
    """Tag of a single generation step result."""

    CONTINUING = "continuing"
    END_OF_GENERATION = "end_of_generation"
    LENGTH = "length"
    FAILED = "failed"


@dataclass
class StepResult:
    """
    Result of one generation step.

    Attributes:
        outcome: What happened in this step.
        text: Newly completed text. Empty while a multi-byte character is
            still being assembled.
        token: The token sampled in this step, if any.
        error: The engine error that ended generation (FAILED only).
    """

    outcome: StepOutcome
    text: str = ""
    token: Optional[int] = None
    error: Optional[Exception] = None

    @property
    def finished(self) -> bool:
        """True for every terminal outcome."""
        return self.outcome is not StepOutcome.CONTINUING

    @property
    def finish_reason(self) -> Optional[str]:
        """OpenAI-style finish reason, None while generation continues."""
        if self.outcome is StepOutcome.END_OF_GENERATION:
            return "stop"
        if self.outcome is StepOutcome.LENGTH:
            return "length"
        if self.outcome is StepOutcome.FAILED:
            return "error"
        return None


@dataclass
class SessionState:
    """
    Mutable per-session record shared by the prompt and generation paths.

    Attributes:
        cached_tokens: Every token committed to the engine for the current
            conversation, in position order. Shifts do not shorten it.
        stop_horizon: Window position at which generation must stop.
        pending_bytes: Token bytes not yet emitted as whole characters.
    """

    cached_tokens: List[int] = field(default_factory=list)
    stop_horizon: int = 0
    pending_bytes: bytearray = field(default_factory=bytearray)

    def reset(self) -> None:
        """Return to the empty state."""
        self.cached_tokens.clear()
        self.stop_horizon = 0
        self.pending_bytes.clear()
