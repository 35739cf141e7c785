# SPDX-License-Identifier: Apache-2.0
"""Mock engine for testing session, window, scheduler and streamer components.

FakeEngine replaces a real inference backend with a scripted in-memory one:
memory is a position -> token map, samples come from a queue, and every
call is recorded so tests can assert on the exact engine traffic.
"""

from collections import deque
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from kvsession.engine.base import Batch, EngineAdapter
from kvsession.exceptions import (
    BackendNotInitializedError,
    ContextInitError,
    ContextShiftError,
    DecodeError,
    ModelLoadError,
)


@dataclass
class RecordedBatch:
    """Snapshot of a decoded batch."""

    tokens: List[int]
    positions: List[int]
    logits: List[bool]


@dataclass
class FakeEngine(EngineAdapter):
    """Scripted engine adapter.

    Attributes:
        prompts: Explicit tokenizations; other text tokenizes to one token
            per character (its code point).
        token_bytes: Explicit token -> bytes mapping; other tokens below 128
            map to their ASCII byte.
        eog_token: End-of-generation token id.
        fail_decodes: Indices (0-based, counting every decode call) that fail.
        fail_load: Raise ModelLoadError from load().
        fail_context: Raise ContextInitError from load().
        fail_shift: Raise ContextShiftError from shift_memory_range().
    """

    prompts: Dict[str, List[int]] = field(default_factory=dict)
    token_bytes: Dict[int, bytes] = field(default_factory=dict)
    eog_token: int = 2
    fail_decodes: Set[int] = field(default_factory=set)
    fail_load: bool = False
    fail_context: bool = False
    fail_shift: bool = False

    def __post_init__(self) -> None:
        self.calls: List[Tuple] = []
        self.batches: List[RecordedBatch] = []
        self.memory: Dict[int, int] = {}
        self.samples: deque = deque()
        self.accepted: List[int] = []
        self.decode_count = 0
        self.initialized = False
        self.loaded = False
        self.temperature: Optional[float] = None
        self.sampler_settings: Dict[str, Any] = {}
        self.backend_path: Optional[str] = None
        self.load_args: Optional[Tuple[str, int, int]] = None

    # -- scripting helpers -------------------------------------------------

    def queue_samples(self, tokens: Iterable[int]) -> None:
        """Tokens returned by successive sample() calls."""
        self.samples.extend(tokens)

    def resident_tokens(self) -> List[int]:
        """Tokens in memory ordered by position."""
        return [self.memory[p] for p in sorted(self.memory)]

    def calls_named(self, name: str) -> List[Tuple]:
        return [c for c in self.calls if c[0] == name]

    def clear_calls(self) -> None:
        self.calls.clear()
        self.batches.clear()

    # -- EngineAdapter -----------------------------------------------------

    def initialize(self, backend_path: Optional[str] = None) -> None:
        self.calls.append(("initialize", backend_path))
        self.initialized = True
        self.backend_path = backend_path

    def load(self, model_path: str, context_size: int, batch_size: int) -> None:
        self.calls.append(("load", model_path, context_size, batch_size))
        if not self.initialized:
            raise BackendNotInitializedError("backend not initialized")
        if self.fail_load:
            raise ModelLoadError(f"cannot read {model_path}", model_name=model_path)
        if self.fail_context:
            raise ContextInitError("out of memory", context_size=context_size)
        self.load_args = (model_path, context_size, batch_size)
        self.loaded = True

    def unload(self) -> None:
        self.calls.append(("unload",))
        self.loaded = False
        self.memory.clear()
        self.accepted.clear()

    def shutdown(self) -> None:
        self.calls.append(("shutdown",))
        self.initialized = False

    @property
    def is_loaded(self) -> bool:
        return self.loaded

    def tokenize(self, text: str) -> List[int]:
        self.calls.append(("tokenize", text))
        if text in self.prompts:
            return list(self.prompts[text])
        return [ord(ch) for ch in text]

    def decode(self, batch: Batch) -> None:
        index = self.decode_count
        self.decode_count += 1
        self.calls.append(("decode", list(batch.tokens), list(batch.positions)))
        self.batches.append(
            RecordedBatch(list(batch.tokens), list(batch.positions), list(batch.logits))
        )
        if index in self.fail_decodes:
            raise DecodeError(f"decode #{index} rejected")
        for token, position in zip(batch.tokens, batch.positions):
            self.memory[position] = token

    def sample(self) -> int:
        self.calls.append(("sample",))
        if not self.samples:
            return self.eog_token
        return self.samples.popleft()

    def accept(self, token: int) -> None:
        self.calls.append(("accept", token))
        self.accepted.append(token)

    def token_to_bytes(self, token: int) -> bytes:
        if token in self.token_bytes:
            return self.token_bytes[token]
        return bytes([token]) if token < 128 else b""

    def is_end_of_generation(self, token: int) -> bool:
        return token == self.eog_token

    def remove_memory_range(self, seq_id: int, start: int, end: int) -> None:
        self.calls.append(("remove", seq_id, start, end))
        stop = float("inf") if end < 0 else end
        for position in [p for p in self.memory if start <= p < stop]:
            del self.memory[position]

    def shift_memory_range(self, seq_id: int, start: int, end: int, delta: int) -> None:
        self.calls.append(("shift", seq_id, start, end, delta))
        if self.fail_shift:
            raise ContextShiftError(f"cannot move positions [{start}, {end})")
        moved = {p: t for p, t in self.memory.items() if start <= p < end}
        for position in moved:
            del self.memory[position]
        for position, token in moved.items():
            self.memory[position + delta] = token

    def configure_sampler(
        self,
        temperature: float,
        top_p: float = 0.0,
        top_k: int = 0,
        repetition_penalty: Optional[float] = None,
    ) -> None:
        self.calls.append(("configure_sampler", temperature))
        self.temperature = temperature
        self.sampler_settings = {
            "temperature": temperature,
            "top_p": top_p,
            "top_k": top_k,
            "repetition_penalty": repetition_penalty,
        }
