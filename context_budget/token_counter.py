"""Fallback tokenizers for running without a host tokenizer.

``create_token_counter`` turns the ``token_counter`` config string into a
``str -> int`` callable:

    estimate                  four characters per token, no dependencies
    tiktoken[:<encoding>]     tiktoken, ``cl100k_base`` unless named
    callable:<module>:<attr>  any importable callable
"""

from __future__ import annotations

import importlib
import logging
from typing import Callable

logger = logging.getLogger(__name__)

TokenCounter = Callable[[str], int]

CHARS_PER_TOKEN = 4
DEFAULT_TIKTOKEN_ENCODING = "cl100k_base"


def estimate_tokens(text: str) -> int:
    """Character-ratio estimate; any non-empty text costs at least one token."""
    if not text:
        return 0
    return max(1, len(text) // CHARS_PER_TOKEN)


def _tiktoken_counter(encoding_name: str) -> TokenCounter:
    try:
        import tiktoken
    except ImportError as e:
        raise ImportError(
            "token_counter 'tiktoken' needs the tiktoken package: "
            "pip install context-budget[tiktoken]"
        ) from e
    encoding = tiktoken.get_encoding(encoding_name or DEFAULT_TIKTOKEN_ENCODING)

    def count(text: str) -> int:
        return len(encoding.encode(text)) if text else 0

    return count


def _imported_counter(target: str) -> TokenCounter:
    module_path, sep, attr_path = target.rpartition(":")
    if not sep or not module_path or not attr_path:
        raise ValueError(
            f"Invalid token_counter 'callable:{target}', expected callable:<module>:<attr>"
        )
    obj = importlib.import_module(module_path)
    for attr in attr_path.split("."):
        obj = getattr(obj, attr)
    if not callable(obj):
        raise ValueError(f"token_counter target {target!r} is not callable")
    return obj


_BUILDERS: dict[str, Callable[[str], TokenCounter]] = {
    "estimate": lambda _arg: estimate_tokens,
    "tiktoken": _tiktoken_counter,
    "callable": _imported_counter,
}


def create_token_counter(mode: str = "estimate") -> TokenCounter:
    name, _, arg = mode.partition(":")
    builder = _BUILDERS.get(name.strip())
    if builder is None:
        raise ValueError(
            f"Unknown token counter mode: {mode!r} (expected one of {', '.join(_BUILDERS)})"
        )
    counter = builder(arg.strip())
    logger.debug("Using %s token counter", mode)
    return counter
