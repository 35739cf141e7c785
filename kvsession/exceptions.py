# SPDX-License-Identifier: Apache-2.0
"""
Custom exception hierarchy for kvsession.

Engine adapters and internal components raise these exceptions. The
session lifecycle API catches engine errors at its boundary and turns
them into status values, so callers of ``Session`` only see them through
``SessionStatus`` and ``StepResult``.

Usage:
    from kvsession.exceptions import DecodeError, ModelLoadError

    try:
        engine.decode(batch)
    except DecodeError as e:
        logger.error(f"Decode failed: {e}")
"""

from typing import Optional


class KVSessionError(Exception):
    """
    Base exception for all kvsession errors.

    All custom exceptions in kvsession inherit from this class to allow
    for easy catching of all kvsession-related errors.
    """

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} (details: {self.details})"
        return self.message


# =============================================================================
# Engine-related Exceptions
# =============================================================================


class EngineError(KVSessionError):
    """Base exception for errors reported by the inference engine."""

    pass


class BackendNotInitializedError(EngineError):
    """The engine backend was used before ``initialize()``."""

    pass


class ModelLoadError(EngineError):
    """
    Failed to load the model (bad path or format).

    Attributes:
        model_name: The name/path of the model that failed to load.
    """

    def __init__(
        self,
        message: str,
        model_name: Optional[str] = None,
        details: Optional[dict] = None,
    ):
        super().__init__(message, details)
        self.model_name = model_name


class ContextInitError(EngineError):
    """
    Failed to allocate the engine context (KV memory, batch buffer, sampler).

    Attributes:
        context_size: The requested context window size, if known.
    """

    def __init__(
        self,
        message: str,
        context_size: Optional[int] = None,
        details: Optional[dict] = None,
    ):
        super().__init__(message, details)
        self.context_size = context_size


class DecodeError(EngineError):
    """
    The engine rejected a batch.

    Attributes:
        committed_tokens: Number of tokens from the current sequence that
            were decoded successfully before the failure. Those tokens stay
            resident in the engine window.
    """

    def __init__(
        self,
        message: str,
        committed_tokens: int = 0,
        details: Optional[dict] = None,
    ):
        super().__init__(message, details)
        self.committed_tokens = committed_tokens


# =============================================================================
# Cache-related Exceptions
# =============================================================================


class CacheError(KVSessionError):
    """Base exception for context window errors."""

    pass


class ContextShiftError(CacheError):
    """
    The engine cannot renumber resident positions.

    Raised by adapters whose memory layout does not support moving a
    position range (for example, models without a rotary embedding module).
    """

    pass


# =============================================================================
# Session-related Exceptions
# =============================================================================


class SessionError(KVSessionError):
    """Base exception for session lifecycle errors."""

    pass


class SessionNotLoadedError(SessionError):
    """A session operation was called before a successful ``load()``."""

    pass


class ModelNotLoadedError(SessionError):
    """Generation was requested while no model is loaded."""

    pass


class PromptProcessingError(SessionError):
    """
    The prompt could not be ingested.

    Attributes:
        status: The session status returned by ``process_prompt``.
    """

    def __init__(
        self,
        message: str,
        status: Optional[str] = None,
        details: Optional[dict] = None,
    ):
        super().__init__(message, details)
        self.status = status


class InvalidInputError(SessionError):
    """
    Caller input is invalid.

    Attributes:
        field: The field that is invalid, if applicable.
    """

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        details: Optional[dict] = None,
    ):
        super().__init__(message, details)
        self.field = field


# =============================================================================
# Configuration-related Exceptions
# =============================================================================


class ConfigurationError(KVSessionError):
    """
    Configuration is invalid or inconsistent.

    Attributes:
        config_key: The configuration key that is invalid.
    """

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        details: Optional[dict] = None,
    ):
        super().__init__(message, details)
        self.config_key = config_key
