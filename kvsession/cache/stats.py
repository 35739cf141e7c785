# SPDX-License-Identifier: Apache-2.0
"""
Session cache statistics for kvsession.

Tracks how much prompt work the prefix cache saved and how often the
context window had to be compacted.
"""

from dataclasses import asdict, dataclass
from typing import Any, Dict


@dataclass
class SessionCacheStats:
    """
    Statistics for one session's context cache.

    A prompt counts as a hit when at least one cached token was reused.
    """

    hits: int = 0
    misses: int = 0
    prompts_processed: int = 0
    tokens_reused: int = 0
    tokens_evaluated: int = 0
    tokens_generated: int = 0
    shifts: int = 0
    tokens_discarded: int = 0
    decode_failures: int = 0
    malformed_flushes: int = 0

    @property
    def reuse_rate(self) -> float:
        """
        Fraction of prompt tokens served from the cache.

        Returns:
            Rate between 0.0 and 1.0.
        """
        total = self.tokens_reused + self.tokens_evaluated
        if total == 0:
            return 0.0
        return self.tokens_reused / total

    @property
    def hit_rate(self) -> float:
        """Fraction of prompts that reused at least one token."""
        total = self.hits + self.misses
        if total == 0:
            return 0.0
        return self.hits / total

    def record_prompt(self, reused: int, evaluated: int) -> None:
        """Record one processed prompt."""
        self.prompts_processed += 1
        self.tokens_reused += reused
        self.tokens_evaluated += evaluated
        if reused > 0:
            self.hits += 1
        else:
            self.misses += 1

    def record_shift(self, discarded: int) -> None:
        """Record one context shift."""
        self.shifts += 1
        self.tokens_discarded += discarded

    def reset(self) -> None:
        """Reset all statistics to zero."""
        for name in asdict(self):
            setattr(self, name, 0)

    def to_dict(self) -> Dict[str, Any]:
        """
        Convert stats to dictionary.

        Returns:
            Dictionary with all stats fields and computed rates.
        """
        d = asdict(self)
        d["reuse_rate"] = self.reuse_rate
        d["hit_rate"] = self.hit_rate
        return d
