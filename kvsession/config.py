# SPDX-License-Identifier: Apache-2.0
"""
Centralized configuration for kvsession.

This module provides dataclass-based configuration with:
- Environment variable overrides (prefixed with KVSESSION_)
- Validation that reports every problem at once
- Defaults matching an 8K-token window with 512-token batches
"""

import os
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

DEFAULT_CONTEXT_SIZE = 8192
DEFAULT_BATCH_SIZE = 512
DEFAULT_HEADROOM = 4
DEFAULT_TEMPERATURE = 0.7


@dataclass
class WindowConfig:
    """Context window configuration."""

    capacity: int = DEFAULT_CONTEXT_SIZE
    headroom: int = DEFAULT_HEADROOM

    @property
    def limit(self) -> int:
        """Highest cursor value a write may reach."""
        return self.capacity - self.headroom


@dataclass
class BatchConfig:
    """Prompt ingestion configuration."""

    batch_size: int = DEFAULT_BATCH_SIZE


@dataclass
class SamplerConfig:
    """Sampler configuration passed to the engine at load time."""

    temperature: float = DEFAULT_TEMPERATURE
    top_p: float = 0.0
    top_k: int = 0
    repetition_penalty: Optional[float] = None


@dataclass
class StreamConfig:
    """Token streaming configuration."""

    # Log a warning whenever a malformed byte buffer is flushed
    log_malformed: bool = True


@dataclass
class SessionConfig:
    """
    Centralized configuration for a kvsession Session.

    Combines all configuration sections and provides environment
    variable overrides.
    """

    window: WindowConfig = field(default_factory=WindowConfig)
    batch: BatchConfig = field(default_factory=BatchConfig)
    sampler: SamplerConfig = field(default_factory=SamplerConfig)
    stream: StreamConfig = field(default_factory=StreamConfig)

    @classmethod
    def from_env(cls) -> "SessionConfig":
        """
        Create config from environment variables.

        Environment variables are prefixed with KVSESSION_.
        """
        config = cls()

        config.window.capacity = int(
            os.getenv("KVSESSION_CONTEXT_SIZE", str(config.window.capacity))
        )
        config.window.headroom = int(
            os.getenv("KVSESSION_HEADROOM", str(config.window.headroom))
        )
        config.batch.batch_size = int(
            os.getenv("KVSESSION_BATCH_SIZE", str(config.batch.batch_size))
        )
        config.sampler.temperature = float(
            os.getenv("KVSESSION_TEMPERATURE", str(config.sampler.temperature))
        )

        config.sampler.top_p = float(
            os.getenv("KVSESSION_TOP_P", str(config.sampler.top_p))
        )
        config.sampler.top_k = int(
            os.getenv("KVSESSION_TOP_K", str(config.sampler.top_k))
        )

        repetition_penalty = os.getenv("KVSESSION_REPETITION_PENALTY")
        if repetition_penalty:
            config.sampler.repetition_penalty = float(repetition_penalty)

        config.stream.log_malformed = os.getenv(
            "KVSESSION_LOG_MALFORMED", "true"
        ).lower() == "true"

        return config

    def to_dict(self) -> Dict[str, Any]:
        """Convert config to dictionary."""
        return {
            "window": asdict(self.window),
            "batch": asdict(self.batch),
            "sampler": asdict(self.sampler),
            "stream": asdict(self.stream),
        }

    def validate(self) -> List[str]:
        """
        Validate configuration.

        Returns:
            List of validation errors (empty if valid).
        """
        errors = []

        if self.window.capacity <= 0:
            errors.append(f"capacity must be positive: {self.window.capacity}")
        if self.window.headroom < 1:
            errors.append(f"headroom must be at least 1: {self.window.headroom}")
        if self.window.headroom >= self.window.capacity:
            errors.append(
                f"headroom ({self.window.headroom}) must be smaller than "
                f"capacity ({self.window.capacity})"
            )

        if self.batch.batch_size <= 0:
            errors.append(f"batch_size must be positive: {self.batch.batch_size}")
        elif self.batch.batch_size >= self.window.limit:
            errors.append(
                f"batch_size ({self.batch.batch_size}) must be smaller than "
                f"capacity - headroom ({self.window.limit})"
            )

        if not 0.0 <= self.sampler.temperature <= 2.0:
            errors.append(f"temperature must be 0.0-2.0: {self.sampler.temperature}")
        if not 0.0 <= self.sampler.top_p <= 1.0:
            errors.append(f"top_p must be 0.0-1.0: {self.sampler.top_p}")
        if self.sampler.top_k < 0:
            errors.append(f"top_k must be non-negative: {self.sampler.top_k}")

        return errors
