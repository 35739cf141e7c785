# SPDX-License-Identifier: Apache-2.0
"""
Context cache management for kvsession.

- prefix: longest common prefix between cached and incoming tokens
- window: write cursor, shift eviction and truncation
- stats: reuse and eviction statistics
"""

from .prefix import common_prefix_length
from .stats import SessionCacheStats
from .window import ContextWindowManager

__all__ = [
    "common_prefix_length",
    "ContextWindowManager",
    "SessionCacheStats",
]
