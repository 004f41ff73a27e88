"""Token counting for chunk-sizing decisions."""

from __future__ import annotations

import logging
import threading

import tiktoken

logger = logging.getLogger(__name__)

_ENCODING_MODEL = "gpt-4o"
_FALLBACK_ENCODING = "cl100k_base"

_encoder: tiktoken.Encoding | None = None
_encoder_lock = threading.Lock()


def _get_encoder() -> tiktoken.Encoding:
    """Load the tokenizer once per process (first call may download it)."""
    global _encoder
    if _encoder is None:
        with _encoder_lock:
            if _encoder is None:
                try:
                    _encoder = tiktoken.encoding_for_model(_ENCODING_MODEL)
                except KeyError:
                    logger.debug("No tiktoken mapping for %s, using %s", _ENCODING_MODEL, _FALLBACK_ENCODING)
                    _encoder = tiktoken.get_encoding(_FALLBACK_ENCODING)
    return _encoder


def count_tokens(text: str) -> int:
    """Return the number of model tokens in *text* (0 for empty text)."""
    if not text:
        return 0
    return len(_get_encoder().encode(text, disallowed_special=()))
