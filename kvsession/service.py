# SPDX-License-Identifier: Apache-2.0
"""
Generation service: the caller-facing wrapper around a Session.

Tracks whether a model is loaded, applies sampler temperature per request,
truncates output at stop sequences, and converts session statuses into
exceptions for callers that prefer them.
"""

import logging
from typing import Callable, Iterator, List, Optional, Sequence

from .exceptions import ModelLoadError, ModelNotLoadedError, PromptProcessingError
from .session import Session
from .state import StepOutcome

logger = logging.getLogger(__name__)


class StopSequenceFilter:
    """
    Incremental stop-sequence matcher for streamed text.

    Holds back the shortest tail that could still be the start of a stop
    sequence split across fragments, and emits everything before it.
    """

    def __init__(self, stop_sequences: Sequence[str]):
        self._stops = [s for s in stop_sequences if s]
        self._tail_keep = max((len(s) for s in self._stops), default=0) - 1
        self._buffer = ""
        self.stopped = False

    def feed(self, text: str) -> str:
        """Add a fragment; return the text that is safe to emit."""
        if self.stopped or not text:
            return ""
        if not self._stops:
            return text

        self._buffer += text
        hits = [i for i in (self._buffer.find(s) for s in self._stops) if i != -1]
        if hits:
            out = self._buffer[:min(hits)]
            self._buffer = ""
            self.stopped = True
            return out

        if self._tail_keep > 0 and len(self._buffer) > self._tail_keep:
            out = self._buffer[:-self._tail_keep]
            self._buffer = self._buffer[-self._tail_keep:]
            return out
        if self._tail_keep > 0:
            return ""

        out, self._buffer = self._buffer, ""
        return out

    def finish(self) -> str:
        """Release the held-back tail at the end of generation."""
        out, self._buffer = self._buffer, ""
        return "" if self.stopped else out


class GenerationService:
    """Single-conversation text generation on top of a Session."""

    def __init__(self, session: Session):
        self.session = session
        self._initialized = False
        self.finish_reason: Optional[str] = None

    @property
    def is_model_loaded(self) -> bool:
        return self.session.is_loaded

    def initialize(self, backend_path: Optional[str] = None) -> None:
        """Initialize the backend once; later calls are no-ops."""
        if not self._initialized:
            self.session.initialize(backend_path)
            self._initialized = True

    def load_model(
        self,
        model_path: str,
        context_size: Optional[int] = None,
        on_progress: Optional[Callable[[float], None]] = None,
    ) -> None:
        """
        Load a model into the session.

        Args:
            model_path: Local path or model repository id.
            context_size: Window capacity; defaults to the session config.
            on_progress: Called with 0.1 before loading and 1.0 on success.

        Raises:
            ModelLoadError: The session reported a load failure.
        """
        if on_progress is not None:
            on_progress(0.1)

        status = self.session.load(model_path, context_size=context_size)
        if not status.ok:
            raise ModelLoadError(
                f"Failed to load model. Status: {status.value}",
                model_name=model_path,
                details={"status": status.value},
            )

        if on_progress is not None:
            on_progress(1.0)

    def unload_model(self) -> None:
        if self.session.is_loaded:
            self.session.unload()

    def shutdown(self) -> None:
        self.session.shutdown()
        self._initialized = False

    def generate_stream(
        self,
        prompt: str,
        max_tokens: int,
        stop_sequences: Sequence[str] = (),
        temperature: Optional[float] = None,
    ) -> Iterator[str]:
        """
        Process a prompt and return an iterator over generated fragments.

        The prompt is ingested before this method returns, so loading and
        decode errors surface here rather than on the first ``next()``.

        Args:
            prompt: Full prompt text.
            max_tokens: Maximum number of tokens to generate.
            stop_sequences: Strings that end generation; they are not emitted.
            temperature: Sampling temperature for this request.

        Raises:
            ModelNotLoadedError: No model is loaded.
            PromptProcessingError: The prompt could not be ingested.
        """
        if not self.session.is_loaded:
            raise ModelNotLoadedError("Cannot generate, model not loaded.")

        if temperature is not None:
            self.session.configure_sampler(temperature)

        self.finish_reason = None
        status = self.session.process_prompt(prompt, max_tokens)
        if not status.ok:
            raise PromptProcessingError(
                f"Failed to process prompt. Status: {status.value}",
                status=status.value,
            )

        return self._iter_fragments(list(stop_sequences))

    def _iter_fragments(self, stop_sequences: List[str]) -> Iterator[str]:
        stop_filter = StopSequenceFilter(stop_sequences)

        for fragment in self.session.stream():
            text = stop_filter.feed(fragment)
            if text:
                yield text
            if stop_filter.stopped:
                self.finish_reason = "stop"
                logger.debug("Stop sequence reached")
                return

        tail = stop_filter.finish()
        if tail:
            yield tail

        result = self.session.last_result
        self.finish_reason = result.finish_reason if result is not None else None
        if result is not None and result.outcome is StepOutcome.FAILED:
            logger.warning(f"Generation ended with an engine failure: {result.error}")
