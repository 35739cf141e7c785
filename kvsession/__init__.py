# SPDX-License-Identifier: Apache-2.0
"""
kvsession: session cache controller for single-conversation LLM inference

This package manages the live state of one conversation on top of a
token-generation engine:

Features:
- Prefix reuse of the previously computed context
- Context window eviction by halving ("shift")
- Batched incremental prompt decode
- Token streaming with UTF-8 boundary buffering
"""

from kvsession._version import __version__

from kvsession.cache.prefix import common_prefix_length
from kvsession.cache.stats import SessionCacheStats
from kvsession.cache.window import ContextWindowManager
from kvsession.config import SessionConfig
from kvsession.engine.base import Batch, EngineAdapter
from kvsession.scheduler import BatchScheduler
from kvsession.service import GenerationService, StopSequenceFilter
from kvsession.session import Session
from kvsession.state import (
    SessionState,
    SessionStatus,
    StepOutcome,
    StepResult,
    StreamerState,
)
from kvsession.streamer import TokenStreamer

__all__ = [
    # Session
    "Session",
    "SessionConfig",
    "SessionState",
    "SessionStatus",
    # Generation
    "TokenStreamer",
    "StepOutcome",
    "StepResult",
    "StreamerState",
    "GenerationService",
    "StopSequenceFilter",
    # Cache
    "common_prefix_length",
    "ContextWindowManager",
    "SessionCacheStats",
    "BatchScheduler",
    # Engine
    "Batch",
    "EngineAdapter",
    # Version
    "__version__",
]
