# SPDX-License-Identifier: Apache-2.0
"""
Prefix matching between the cached token record and a new prompt.
"""

from typing import Sequence


def common_prefix_length(cached: Sequence[int], incoming: Sequence[int]) -> int:
    """
    Length of the longest common prefix of two token sequences.

    Args:
        cached: Tokens currently recorded for the session.
        incoming: Freshly tokenized prompt.

    Returns:
        The largest k such that ``cached[:k] == incoming[:k]``.
    """
    limit = min(len(cached), len(incoming))
    k = 0
    while k < limit and cached[k] == incoming[k]:
        k += 1
    return k
