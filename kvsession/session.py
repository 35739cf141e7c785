# SPDX-License-Identifier: Apache-2.0
"""
Session: the live state of one conversation on top of an inference engine.

The session holds the cached token record, the window cursor, the stop
horizon and the pending-byte buffer, and orchestrates prefix reuse,
batched prompt ingestion and step-wise generation.

The lifecycle API never lets engine exceptions escape: ``load`` and
``process_prompt`` return a ``SessionStatus`` and ``generate_next_token``
returns a ``StepResult``. Operations are blocking and must be serialized
by the caller; nothing here takes a lock.

Usage:
    session = Session(MLXEngine())
    session.initialize()
    if session.load("mlx-community/Qwen3-0.6B-4bit").ok:
        session.process_prompt("Hello", max_new_tokens=64)
        for fragment in session.stream():
            print(fragment, end="")
"""

import logging
from typing import Any, Dict, Iterator, List, Optional, Sequence

from .cache.prefix import common_prefix_length
from .cache.stats import SessionCacheStats
from .cache.window import ContextWindowManager
from .config import SessionConfig
from .engine.base import EngineAdapter
from .exceptions import (
    BackendNotInitializedError,
    ConfigurationError,
    ContextInitError,
    DecodeError,
    EngineError,
    InvalidInputError,
    KVSessionError,
    ModelLoadError,
    SessionNotLoadedError,
)
from .logging_config import SessionLogContext
from .scheduler import BatchScheduler
from .state import SessionState, SessionStatus, StepOutcome, StepResult
from .streamer import TokenStreamer

logger = logging.getLogger(__name__)


class Session:
    """
    Cache controller for a single conversation.

    Exactly one session should drive an engine at a time.
    """

    def __init__(
        self,
        engine: EngineAdapter,
        config: Optional[SessionConfig] = None,
        name: str = "session",
    ):
        """
        Create an empty session.

        Args:
            engine: Engine adapter the session drives.
            config: Window, batch, sampler and stream settings.
            name: Label attached to log records.

        Raises:
            ConfigurationError: The configuration is invalid.
        """
        self.config = config or SessionConfig()
        errors = self.config.validate()
        if errors:
            raise ConfigurationError(
                f"Invalid session configuration: {'; '.join(errors)}",
                details={"errors": errors},
            )

        self.engine = engine
        self.name = name
        self.stats = SessionCacheStats()
        self.state = SessionState()
        self.window = ContextWindowManager(
            engine,
            capacity=self.config.window.capacity,
            headroom=self.config.window.headroom,
            stats=self.stats,
        )
        self.scheduler = BatchScheduler(engine, self.window, self.config.batch.batch_size)
        self.streamer = TokenStreamer(
            engine,
            self.window,
            self.state,
            stats=self.stats,
            log_malformed=self.config.stream.log_malformed,
        )

        self.last_result: Optional[StepResult] = None
        self._initialized = False
        self._loaded = False

    # ------------------------------------------------------------------
    # State accessors
    # ------------------------------------------------------------------

    @property
    def is_loaded(self) -> bool:
        return self._loaded

    @property
    def cursor(self) -> int:
        """Next free position in the engine window."""
        return self.window.cursor

    @property
    def cached_tokens(self) -> List[int]:
        return self.state.cached_tokens

    @property
    def stop_horizon(self) -> int:
        return self.state.stop_horizon

    @property
    def pending_bytes(self) -> bytes:
        return bytes(self.state.pending_bytes)

    @property
    def remaining_tokens(self) -> int:
        """Generation budget left for the current prompt."""
        return max(self.state.stop_horizon - self.window.cursor, 0)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def initialize(self, backend_path: Optional[str] = None) -> None:
        """Prepare the engine backend. Must precede ``load``."""
        self.engine.initialize(backend_path)
        self._initialized = True
        logger.info(f"Backend initialized ({backend_path or 'default path'})")

    def load(self, model_path: str, context_size: Optional[int] = None) -> SessionStatus:
        """
        Load a model and allocate its context window.

        Args:
            model_path: Local path or model repository id.
            context_size: Window capacity; defaults to the configured one.

        Returns:
            OK, MODEL_LOAD_FAILED or CONTEXT_INIT_FAILED.
        """
        with SessionLogContext(self.name):
            if self._loaded:
                self.unload()

            capacity = context_size or self.config.window.capacity
            if capacity - self.window.headroom <= self.scheduler.batch_size:
                logger.error(
                    f"Context size {capacity} leaves no room for a {self.scheduler.batch_size}-token batch"
                )
                return SessionStatus.CONTEXT_INIT_FAILED

            logger.info(f"Loading model from: {model_path}")
            try:
                self.engine.load(model_path, capacity, self.scheduler.batch_size)
            except BackendNotInitializedError as e:
                logger.error(f"initialize() must be called before load(): {e}")
                return SessionStatus.MODEL_LOAD_FAILED
            except ModelLoadError as e:
                logger.error(f"Failed to load model: {e}")
                return SessionStatus.MODEL_LOAD_FAILED
            except ContextInitError as e:
                logger.error(f"Failed to initialize context: {e}")
                return SessionStatus.CONTEXT_INIT_FAILED

            self.configure_sampler()
            self.window.capacity = capacity
            self._reset()
            self._loaded = True
            logger.info(f"Model loaded with a {capacity}-token context window")
            return SessionStatus.OK

    def unload(self) -> None:
        """Free engine resources and reset the session to empty."""
        if self._loaded:
            self.engine.unload()
            self._loaded = False
            logger.info("Model unloaded")
        self._reset()

    def shutdown(self) -> None:
        """Unload if needed and release the backend runtime."""
        self.unload()
        if self._initialized:
            self.engine.shutdown()
            self._initialized = False
            logger.info("Backend shut down")

    def configure_sampler(self, temperature: Optional[float] = None) -> None:
        """
        Push the configured sampler settings to the engine.

        Args:
            temperature: Overrides the configured temperature for this
                call only; top-p, top-k and repetition penalty always come
                from the configuration.
        """
        sampler = self.config.sampler
        self.engine.configure_sampler(
            sampler.temperature if temperature is None else temperature,
            top_p=sampler.top_p,
            top_k=sampler.top_k,
            repetition_penalty=sampler.repetition_penalty,
        )

    def _reset(self) -> None:
        self.state.reset()
        self.window.reset()
        self.streamer.reset()
        self.stats.reset()
        self.last_result = None

    # ------------------------------------------------------------------
    # Prompt processing
    # ------------------------------------------------------------------

    def _reuse_prefix(self, incoming: List[int]) -> int:
        """
        Keep the part of the window shared with ``incoming``.

        Returns:
            Number of leading tokens of ``incoming`` already in the record.
        """
        cached = self.state.cached_tokens
        k = common_prefix_length(cached, incoming)

        # An exact hit leaves nothing to decode and no fresh logits to
        # sample from; re-decode the final prompt token.
        if k > 0 and k == len(incoming):
            k -= 1

        if k < len(cached):
            evicted = self.window.evicted
            if k >= evicted:
                self.window.truncate(k - evicted)
            else:
                # The shared prefix was shifted out of the window already
                logger.info(f"Shared prefix of {k} tokens is no longer resident, clearing window")
                self.window.clear()
                k = 0
            del cached[k:]

        return k

    def _abort_prompt(self, error: Exception, committed: Sequence[int] = ()) -> SessionStatus:
        """
        Record a failed prompt and leave generation in a failed state.

        ``committed`` are prompt tokens that reached the window before the
        failure. The token record is then cut back to what the window
        still holds, which is nothing if a failed shift dropped it.
        """
        cached = self.state.cached_tokens
        cached.extend(committed)
        del cached[self.window.evicted + self.window.cursor:]
        self.state.stop_horizon = self.window.cursor
        self.stats.decode_failures += 1
        self.streamer.fail(error)
        return SessionStatus.DECODE_FAILED

    def process_prompt(self, text: str, max_new_tokens: int) -> SessionStatus:
        """
        Ingest a prompt, reusing the cached prefix.

        Sets the stop horizon to ``cursor + max_new_tokens``.

        Args:
            text: Full prompt text (the whole conversation so far).
            max_new_tokens: Generation budget for this prompt.

        Returns:
            OK, DECODE_FAILED or NOT_LOADED.

        Raises:
            InvalidInputError: ``max_new_tokens`` is negative.
        """
        if max_new_tokens < 0:
            raise InvalidInputError(
                f"max_new_tokens must be non-negative: {max_new_tokens}",
                field="max_new_tokens",
            )
        if not self._loaded:
            logger.error("process_prompt() called without a loaded model")
            return SessionStatus.NOT_LOADED

        with SessionLogContext(self.name):
            self.streamer.reset()
            self.last_result = None

            try:
                incoming = self.engine.tokenize(text)
            except EngineError as e:
                logger.error(f"Tokenization failed: {e}")
                self.streamer.fail(e)
                return SessionStatus.DECODE_FAILED

            evicted_before = self.window.evicted
            try:
                reused = self._reuse_prefix(incoming)
            except KVSessionError as e:
                logger.error(f"Could not drop the stale part of the KV cache: {e}")
                return self._abort_prompt(e)
            new_tokens = incoming[reused:]
            resident = max(reused - evicted_before, 0)
            logger.info(
                f"Reusing {resident} tokens from KV cache, evaluating {len(new_tokens)} new tokens",
                extra={"cursor": self.window.cursor, "tokens": len(new_tokens)},
            )

            try:
                if self.window.cursor + len(new_tokens) > self.window.limit:
                    self.window.shift()
                self.scheduler.decode(new_tokens)
            except DecodeError as e:
                logger.error(f"Prompt decode failed: {e}")
                return self._abort_prompt(e, new_tokens[:e.committed_tokens])
            except KVSessionError as e:
                logger.error(f"Context shift before the prompt failed: {e}")
                return self._abort_prompt(e)

            self.state.cached_tokens.extend(new_tokens)
            self.state.stop_horizon = self.window.cursor + max_new_tokens
            self.stats.record_prompt(resident, len(new_tokens))
            return SessionStatus.OK

    # ------------------------------------------------------------------
    # Generation
    # ------------------------------------------------------------------

    def generate_next_token(self) -> StepResult:
        """
        Run one generation step.

        Returns:
            CONTINUING with newly completed text (possibly empty), or a
            terminal END_OF_GENERATION / LENGTH / FAILED result.
        """
        if not self._loaded:
            result = StepResult(
                StepOutcome.FAILED,
                error=SessionNotLoadedError("generate_next_token() called without a loaded model"),
            )
        else:
            with SessionLogContext(self.name):
                result = self.streamer.step()
        self.last_result = result
        return result

    def stream(self) -> Iterator[str]:
        """
        Lazily yield text fragments until generation ends.

        The iterator is finite and not restartable; process a new prompt
        to continue the conversation. Inspect ``last_result`` afterwards
        to tell a natural stop from a failure.
        """
        while True:
            result = self.generate_next_token()
            if result.text:
                yield result.text
            if result.finished:
                return

    def get_stats(self) -> Dict[str, Any]:
        """Cache statistics together with the current window state."""
        return {
            **self.stats.to_dict(),
            "window": self.window.to_dict(),
            "cached_tokens": len(self.state.cached_tokens),
            "stop_horizon": self.state.stop_horizon,
            "pending_bytes": len(self.state.pending_bytes),
            "streamer": self.streamer.status.value,
        }
