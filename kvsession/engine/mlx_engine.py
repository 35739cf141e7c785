# SPDX-License-Identifier: Apache-2.0
"""
MLX engine adapter.

Runs a single sequence on Apple Silicon through mlx-lm. The per-layer KV
caches from ``make_prompt_cache`` are indexed by physical slot; a parallel
position table lets the session remove and renumber position ranges the
way a cell-based KV store would:

- removing a tail range trims every cache layer,
- removing any other range drops the matching slots,
- shifting a range re-rotates the cached keys through each layer's RoPE
  module, so attention sees the new positions.

mlx-lm models take the next position from the cache offset, so a decode is
only accepted when the window is contiguous from position 0 and the batch
starts at the current offset.
"""

import logging
from pathlib import Path
from typing import Any, Callable, List, Optional

import mlx.core as mx

from ..exceptions import (
    BackendNotInitializedError,
    ContextInitError,
    ContextShiftError,
    DecodeError,
    EngineError,
    ModelLoadError,
)
from ..utils.tokenizer import get_tokenizer_config, is_byte_level_vocab, piece_to_bytes
from .base import Batch, EngineAdapter

logger = logging.getLogger(__name__)


class MLXEngine(EngineAdapter):
    """Single-sequence engine on mlx-lm."""

    def __init__(
        self,
        trust_remote_code: bool = True,
        repetition_context_size: int = 64,
    ):
        """
        Args:
            trust_remote_code: Whether to trust remote tokenizer code.
            repetition_context_size: Accepted tokens the repetition penalty
                looks at.
        """
        self._trust_remote_code = trust_remote_code
        self._repetition_context_size = repetition_context_size

        self._initialized = False
        self._base_dir: Optional[Path] = None

        self._model: Any = None
        self._tokenizer: Any = None
        self._cache: List[Any] = []
        self._positions: List[int] = []
        self._logits: Optional[mx.array] = None
        self._history: List[int] = []
        self._byte_level = False
        self._context_size = 0
        self._batch_size = 0

        self._sampler: Optional[Callable[[mx.array], mx.array]] = None
        self._logits_processors: List[Callable] = []

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def initialize(self, backend_path: Optional[str] = None) -> None:
        """
        Select the default device and remember the model base directory.

        Args:
            backend_path: Optional directory that relative model paths are
                resolved against.
        """
        if mx.metal.is_available():
            mx.set_default_device(mx.gpu)
        else:
            mx.set_default_device(mx.cpu)
        self._base_dir = Path(backend_path).expanduser() if backend_path else None
        self._initialized = True
        logger.info(f"MLX backend initialized on {mx.default_device()}")

    def _resolve_model_path(self, model_path: str) -> str:
        path = Path(model_path).expanduser()
        if self._base_dir is not None and not path.is_absolute():
            candidate = self._base_dir / path
            if candidate.exists():
                return str(candidate)
        return str(path) if path.exists() else model_path

    def load(self, model_path: str, context_size: int, batch_size: int) -> None:
        if not self._initialized:
            raise BackendNotInitializedError("MLX backend is not initialized")

        from mlx_lm import load
        from mlx_lm.models.cache import make_prompt_cache

        resolved = self._resolve_model_path(model_path)
        tokenizer_config = get_tokenizer_config(
            resolved, trust_remote_code=self._trust_remote_code
        )

        try:
            model, tokenizer = load(resolved, tokenizer_config=tokenizer_config)
        except Exception as e:
            raise ModelLoadError(
                f"Failed to load model from {resolved}: {e}", model_name=resolved
            ) from e

        max_positions = self._max_positions(model)
        if max_positions is not None and context_size > max_positions:
            raise ContextInitError(
                f"Context size {context_size} exceeds the model limit of {max_positions}",
                context_size=context_size,
            )

        try:
            cache = make_prompt_cache(model)
        except Exception as e:
            raise ContextInitError(
                f"Failed to allocate KV cache: {e}", context_size=context_size
            ) from e

        for layer_cache in cache:
            if not (hasattr(layer_cache, "is_trimmable") and layer_cache.is_trimmable()):
                raise ContextInitError(
                    f"Cache type {type(layer_cache).__name__} cannot be trimmed",
                    context_size=context_size,
                )

        self._model = model
        self._tokenizer = tokenizer
        self._cache = cache
        self._positions = []
        self._logits = None
        self._history = []
        self._context_size = context_size
        self._batch_size = batch_size
        self._byte_level = is_byte_level_vocab(tokenizer.get_vocab())
        self.configure_sampler(0.0)
        logger.info(f"Loaded {resolved} ({len(cache)} cache layers)")

    @staticmethod
    def _max_positions(model: Any) -> Optional[int]:
        args = getattr(model, "args", None)
        value = getattr(args, "max_position_embeddings", None)
        return value if isinstance(value, int) and value > 0 else None

    def unload(self) -> None:
        self._model = None
        self._tokenizer = None
        self._cache = []
        self._positions = []
        self._logits = None
        self._history = []
        self._sampler = None
        self._logits_processors = []
        mx.clear_cache()

    def shutdown(self) -> None:
        self.unload()
        self._initialized = False

    @property
    def is_loaded(self) -> bool:
        return self._model is not None

    def _require_loaded(self) -> None:
        if self._model is None:
            raise EngineError("No model loaded")

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    def tokenize(self, text: str) -> List[int]:
        self._require_loaded()
        return list(self._tokenizer.encode(text))

    def token_to_bytes(self, token: int) -> bytes:
        self._require_loaded()
        piece = self._tokenizer.convert_ids_to_tokens(int(token))
        return piece_to_bytes(piece, self._byte_level)

    def is_end_of_generation(self, token: int) -> bool:
        self._require_loaded()
        return int(token) in self._tokenizer.eos_token_ids

    # ------------------------------------------------------------------
    # Sampling
    # ------------------------------------------------------------------

    def configure_sampler(
        self,
        temperature: float,
        top_p: float = 0.0,
        top_k: int = 0,
        repetition_penalty: Optional[float] = None,
    ) -> None:
        from mlx_lm.sample_utils import make_logits_processors, make_sampler

        self._sampler = make_sampler(temp=temperature, top_p=top_p, top_k=top_k)
        self._logits_processors = make_logits_processors(
            repetition_penalty=repetition_penalty,
            repetition_context_size=self._repetition_context_size,
        )
        logger.debug(
            f"Sampler configured: temperature={temperature}, top_p={top_p}, "
            f"top_k={top_k}, repetition_penalty={repetition_penalty}"
        )

    def sample(self) -> int:
        self._require_loaded()
        if self._logits is None:
            raise DecodeError("No logits available; decode a batch that requests logits first")

        logits = self._logits
        if self._logits_processors and self._history:
            history = mx.array(self._history)
            for processor in self._logits_processors:
                logits = processor(history, logits)

        logprobs = logits - mx.logsumexp(logits, axis=-1, keepdims=True)
        token = self._sampler(logprobs)
        return int(token.item())

    def accept(self, token: int) -> None:
        self._history.append(int(token))

    # ------------------------------------------------------------------
    # Decode
    # ------------------------------------------------------------------

    @property
    def _offset(self) -> int:
        return len(self._positions)

    def decode(self, batch: Batch) -> None:
        self._require_loaded()
        if not batch.tokens:
            return
        if len(batch) > self._batch_size:
            raise DecodeError(f"Batch of {len(batch)} tokens exceeds batch size {self._batch_size}")
        if self._positions and self._positions[-1] != self._offset - 1:
            raise DecodeError("KV cache positions are not contiguous")
        if batch.positions[0] != self._offset:
            raise DecodeError(
                f"Batch starts at position {batch.positions[0]}, cache offset is {self._offset}"
            )
        if batch.positions[-1] >= self._context_size:
            raise DecodeError(
                f"Position {batch.positions[-1]} is outside the {self._context_size}-token context"
            )

        try:
            inputs = mx.array(batch.tokens)[None]
            logits = self._model(inputs, cache=self._cache)
            wanted = [i for i, flag in enumerate(batch.logits) if flag]
            if wanted:
                self._logits = logits[:, wanted[-1], :]
                mx.eval(self._logits)
            else:
                self._logits = None
                mx.eval([c.state for c in self._cache])
        except Exception as e:
            raise DecodeError(f"MLX forward pass failed: {e}") from e

        self._positions.extend(batch.positions)

    # ------------------------------------------------------------------
    # Memory ranges
    # ------------------------------------------------------------------

    def remove_memory_range(self, seq_id: int, start: int, end: int) -> None:
        self._require_loaded()
        if end < 0:
            end = (max(self._positions) + 1) if self._positions else 0

        keep = [i for i, pos in enumerate(self._positions) if not start <= pos < end]
        removed = self._offset - len(keep)
        if removed == 0:
            return

        if keep == list(range(len(keep))):
            for layer_cache in self._cache:
                layer_cache.trim(removed)
            # Logits belonged to a token that is gone
            self._logits = None
        else:
            index = mx.array(keep)
            for layer_cache in self._cache:
                keys, values = layer_cache.state
                layer_cache.state = (
                    mx.take(keys, index, axis=2),
                    mx.take(values, index, axis=2),
                )
            mx.eval([c.state for c in self._cache])

        self._positions = [self._positions[i] for i in keep]
        logger.debug(f"Removed {removed} positions in [{start}, {end})")

    def _rope_modules(self) -> List[Any]:
        ropes = []
        for layer in getattr(self._model, "layers", []):
            rope = getattr(getattr(layer, "self_attn", None), "rope", None)
            if rope is None:
                raise ContextShiftError(
                    f"Model layer {type(layer).__name__} has no rotary embedding to re-position"
                )
            ropes.append(rope)
        if len(ropes) != len(self._cache):
            raise ContextShiftError(
                f"Found {len(ropes)} RoPE modules for {len(self._cache)} cache layers"
            )
        return ropes

    def shift_memory_range(self, seq_id: int, start: int, end: int, delta: int) -> None:
        self._require_loaded()
        slots = [i for i, pos in enumerate(self._positions) if start <= pos < end]
        if not slots or delta == 0:
            return
        first, last = slots[0], slots[-1] + 1
        if slots != list(range(first, last)):
            raise ContextShiftError(f"Positions [{start}, {end}) are not stored contiguously")

        ropes = self._rope_modules()
        for layer_cache, rope in zip(self._cache, ropes):
            keys, values = layer_cache.state
            # A length-1 sequence axis makes RoPE rotate every slot by exactly delta
            moved = mx.expand_dims(keys[:, :, first:last, :], axis=-2)
            moved = rope(moved, offset=delta).squeeze(axis=-2)
            keys = mx.concatenate([keys[:, :, :first, :], moved, keys[:, :, last:, :]], axis=2)
            layer_cache.state = (keys, values)
        mx.eval([c.state for c in self._cache])

        for i in slots:
            self._positions[i] += delta
        logger.debug(f"Shifted positions [{start}, {end}) by {delta}")
