# SPDX-License-Identifier: Apache-2.0
"""
UTF-8 boundary checks for streamed token bytes.

Tokens can split a multi-byte character, so streamed bytes are only
emitted once they form whole characters.
"""

from enum import Enum


class Utf8State(Enum):
    """Classification of an accumulated byte buffer."""

    COMPLETE = "complete"    # one or more whole characters
    TRUNCATED = "truncated"  # valid so far, ends inside a character
    MALFORMED = "malformed"  # can never become valid by appending bytes


def _sequence_length(lead: int) -> int:
    """Total byte length announced by a leading byte, 0 if it is not one."""
    if lead & 0x80 == 0x00:
        return 1
    if lead & 0xE0 == 0xC0:
        return 2
    if lead & 0xF0 == 0xE0:
        return 3
    if lead & 0xF8 == 0xF0:
        return 4
    return 0


def classify_utf8(data: bytes) -> Utf8State:
    """
    Scan a buffer byte by byte and classify it.

    The leading byte's high bits give the expected sequence length and
    every following byte of the sequence must be ``10xxxxxx``. Running out
    of bytes in the middle of a sequence means the buffer is truncated.

    Args:
        data: Accumulated bytes.

    Returns:
        The buffer state. An empty buffer is COMPLETE.
    """
    i = 0
    size = len(data)
    while i < size:
        length = _sequence_length(data[i])
        if length == 0:
            return Utf8State.MALFORMED
        for j in range(i + 1, i + length):
            if j >= size:
                return Utf8State.TRUNCATED
            if data[j] & 0xC0 != 0x80:
                return Utf8State.MALFORMED
        i += length
    return Utf8State.COMPLETE


def utf8_boundary(data: bytes) -> int:
    """
    Index where a trailing, still incomplete character starts.

    Malformed bytes are stepped over one unit at a time, so a valid
    partial character after them is still found.

    Args:
        data: Accumulated bytes.

    Returns:
        Start of the trailing truncated sequence, or ``len(data)`` if the
        buffer does not end inside a character.
    """
    i = 0
    size = len(data)
    while i < size:
        length = _sequence_length(data[i])
        if length == 0:
            i += 1
            continue
        end = i + length
        for j in range(i + 1, end):
            if j >= size:
                return i
            if data[j] & 0xC0 != 0x80:
                end = j
                break
        i = end
    return size


def is_valid_utf8(data: bytes) -> bool:
    """True if the buffer consists only of whole, well-formed characters."""
    return classify_utf8(data) is Utf8State.COMPLETE
