# SPDX-License-Identifier: Apache-2.0
"""
Engine abstraction for kvsession.

Provides:
- EngineAdapter: interface the session drives
- MLXEngine: mlx-lm implementation (import from kvsession.engine.mlx_engine;
  it needs mlx at import time)
"""

from .base import DEFAULT_SEQ_ID, Batch, EngineAdapter

__all__ = [
    "Batch",
    "DEFAULT_SEQ_ID",
    "EngineAdapter",
]
