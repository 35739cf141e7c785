# SPDX-License-Identifier: Apache-2.0
"""
Utility modules for kvsession.
"""

from .tokenizer import get_tokenizer_config, piece_to_bytes
from .utf8 import Utf8State, classify_utf8, is_valid_utf8, utf8_boundary

__all__ = [
    # Tokenizer utilities
    "get_tokenizer_config",
    "piece_to_bytes",
    # UTF-8 utilities
    "Utf8State",
    "classify_utf8",
    "is_valid_utf8",
    "utf8_boundary",
]
