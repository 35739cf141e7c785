# SPDX-License-Identifier: Apache-2.0
"""
Tokenizer utilities for kvsession.

This module provides tokenizer configuration fixes and the byte-level
vocabulary table used to recover raw token bytes.
"""

import logging
import re
from functools import lru_cache
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

# SentencePiece byte-fallback pieces look like "<0xE2>"
_BYTE_FALLBACK = re.compile(r"<0x([0-9A-Fa-f]{2})>")

# SentencePiece word-boundary marker
SPM_SPACE = "▁"


def is_qwen3_model(model_name: str) -> bool:
    """
    Check if the model is a Qwen3 model.

    Args:
        model_name: The model name or path.

    Returns:
        True if the model is a Qwen3 model.
    """
    return "qwen3" in model_name.lower()


def get_tokenizer_config(
    model_name: str,
    trust_remote_code: bool = False,
) -> dict[str, Any]:
    """
    Get tokenizer configuration with model-specific fixes.

    Qwen3 changed eos_token from <|im_end|> to <|endoftext|> while its chat
    template still ends turns with <|im_end|>; without the fix generation
    never reaches an end-of-generation token.

    Args:
        model_name: The model name or path.
        trust_remote_code: Whether to trust remote code.

    Returns:
        Dictionary of tokenizer configuration options.
    """
    config: dict[str, Any] = {"trust_remote_code": trust_remote_code}

    if is_qwen3_model(model_name):
        config["eos_token"] = "<|im_end|>"
        logger.debug("Qwen3 detected: setting eos_token to <|im_end|>")

    return config


@lru_cache(maxsize=1)
def byte_level_decoder() -> Dict[str, int]:
    """
    Map GPT-2 byte-level vocabulary characters back to raw bytes.

    Byte-level BPE vocabularies spell every byte with a printable
    character; bytes outside the printable ranges are shifted to code
    points starting at 256.
    """
    printable = (
        list(range(ord("!"), ord("~") + 1))
        + list(range(ord("¡"), ord("¬") + 1))
        + list(range(ord("®"), ord("ÿ") + 1))
    )
    decoder = {chr(b): b for b in printable}
    n = 0
    for b in range(256):
        if b not in printable:
            decoder[chr(256 + n)] = b
            n += 1
    return decoder


def is_byte_level_vocab(vocab: Dict[str, int]) -> bool:
    """Heuristic: byte-level BPE vocabularies spell a leading space as 'Ġ'."""
    return "Ġ" in vocab or any(piece.startswith("Ġ") for piece in list(vocab)[:2048])


def piece_to_bytes(piece: Optional[str], byte_level: bool) -> bytes:
    """
    Convert a vocabulary piece to the raw bytes it stands for.

    Args:
        piece: Token string as stored in the vocabulary.
        byte_level: Whether the vocabulary uses the GPT-2 byte-level alphabet.

    Returns:
        Raw bytes, possibly a fragment of a multi-byte character.
    """
    if not piece:
        return b""

    match = _BYTE_FALLBACK.fullmatch(piece)
    if match:
        return bytes([int(match.group(1), 16)])

    if byte_level:
        decoder = byte_level_decoder()
        if all(ch in decoder for ch in piece):
            return bytes(decoder[ch] for ch in piece)

    return piece.replace(SPM_SPACE, " ").encode("utf-8")
