# SPDX-License-Identifier: Apache-2.0
"""
Engine adapter interface for kvsession.

The adapter owns everything model-specific: weights, tokenizer, sampler
and the position-indexed key/value memory. The session core only talks to
it through the operations below.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import List, Optional

# The session core only ever drives a single sequence
DEFAULT_SEQ_ID = 0


@dataclass
class Batch:
    """
    A contiguous chunk of tokens submitted to the engine in one decode.

    Attributes:
        tokens: Token ids in position order.
        positions: Absolute window position of every token.
        logits: Per-token flag, True when the engine must keep output
            logits for that token.
        seq_id: Sequence the tokens belong to.
    """

    tokens: List[int] = field(default_factory=list)
    positions: List[int] = field(default_factory=list)
    logits: List[bool] = field(default_factory=list)
    seq_id: int = DEFAULT_SEQ_ID

    def add(self, token: int, position: int, want_logits: bool) -> None:
        """Append one token to the batch."""
        self.tokens.append(token)
        self.positions.append(position)
        self.logits.append(want_logits)

    def clear(self) -> None:
        """Drop every token from the batch."""
        self.tokens.clear()
        self.positions.clear()
        self.logits.clear()

    def __len__(self) -> int:
        return len(self.tokens)

    @classmethod
    def single(cls, token: int, position: int, seq_id: int = DEFAULT_SEQ_ID) -> "Batch":
        """Build a one-token batch that requests logits."""
        return cls(tokens=[token], positions=[position], logits=[True], seq_id=seq_id)


class EngineAdapter(ABC):
    """
    Abstract base class for token-generation engines.

    Implementations raise ``EngineError`` subclasses on failure; the
    session turns those into status values at its boundary.
    """

    @abstractmethod
    def initialize(self, backend_path: Optional[str] = None) -> None:
        """Prepare the backend runtime. Must precede ``load``."""
        pass

    @abstractmethod
    def load(
        self,
        model_path: str,
        context_size: int,
        batch_size: int,
    ) -> None:
        """
        Load a model and allocate its context.

        Raises:
            ModelLoadError: The model could not be read.
            ContextInitError: The context window could not be allocated.
        """
        pass

    @abstractmethod
    def unload(self) -> None:
        """Free sampler, context, batch buffer and model."""
        pass

    @abstractmethod
    def shutdown(self) -> None:
        """Release the backend runtime itself."""
        pass

    @property
    @abstractmethod
    def is_loaded(self) -> bool:
        """True while a model and context are allocated."""
        pass

    @abstractmethod
    def tokenize(self, text: str) -> List[int]:
        """Convert text to token ids, adding and parsing special tokens."""
        pass

    @abstractmethod
    def decode(self, batch: Batch) -> None:
        """
        Run the model over a batch and commit it to memory.

        Raises:
            DecodeError: The engine rejected the batch.
        """
        pass

    @abstractmethod
    def sample(self) -> int:
        """Sample one token from the logits of the last decoded batch."""
        pass

    @abstractmethod
    def accept(self, token: int) -> None:
        """Record a sampled token in the sampler's history."""
        pass

    @abstractmethod
    def token_to_bytes(self, token: int) -> bytes:
        """Raw text bytes for a token; may be part of a multi-byte character."""
        pass

    @abstractmethod
    def is_end_of_generation(self, token: int) -> bool:
        """True if the token ends an output sequence."""
        pass

    @abstractmethod
    def remove_memory_range(self, seq_id: int, start: int, end: int) -> None:
        """
        Remove memory for positions ``[start, end)``.

        A negative ``end`` means "to the end of the sequence".
        """
        pass

    @abstractmethod
    def shift_memory_range(self, seq_id: int, start: int, end: int, delta: int) -> None:
        """Move memory for positions ``[start, end)`` by ``delta`` positions."""
        pass

    def configure_sampler(
        self,
        temperature: float,
        top_p: float = 0.0,
        top_k: int = 0,
        repetition_penalty: Optional[float] = None,
    ) -> None:
        """
        Rebuild the sampler chain.

        Args:
            temperature: Sampling temperature (0 means greedy).
            top_p: Nucleus sampling probability (0 disables it).
            top_k: Top-k sampling (0 disables it).
            repetition_penalty: Penalty for recently accepted tokens
                (None disables it).

        Default implementation does nothing; override if the engine
        supports per-request sampling settings.
        """
        pass
