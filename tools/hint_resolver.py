#!/usr/bin/env python3
"""
hint_resolver.py - Translate SKIP/NEAR hints into a search start offset

    SKIP x        -> x (x beyond the stream is a HintRangeError)
    NEAR x        -> max(0, min(x, len) - window)
    NEAR sos      -> 0
    NEAR eos      -> max(0, len - window)
    no hint       -> 0

The window is supplied by the caller; see near_window().
"""

from typing import Optional

from query_ast import Hint, HintKind, NearAnchor
from stream_errors import HintRangeError

# Default lookback added to the structure's own footprint for NEAR hints.
# 64 KiB also covers the largest trailing field a 16-bit length can size.
DEFAULT_NEAR_MARGIN = 0x10000


def near_window(signature_len: int, required_bytes: int,
                margin: int = DEFAULT_NEAR_MARGIN) -> int:
    """Lookback used by NEAR hints: one structure footprint plus a margin."""
    return signature_len + required_bytes + margin


def check_hint(hint: Optional[Hint], stream_len: int, structure: str = '') -> None:
    """Raise HintRangeError if a SKIP hint points past the end of the stream."""
    if hint is None or hint.kind != HintKind.SKIP:
        return
    if hint.target < 0 or hint.target > stream_len:
        where = f" on structure '{structure}'" if structure else ''
        raise HintRangeError(
            f"SKIP hint 0x{hint.target:x}{where} is outside the stream "
            f"(length 0x{stream_len:x})"
        )


def resolve_hint(hint: Optional[Hint], stream_len: int, window: int = 0) -> int:
    """Return the offset at which the signature search should start."""
    if hint is None:
        return 0

    if hint.kind == HintKind.SKIP:
        check_hint(hint, stream_len)
        return hint.target

    target = hint.target
    if target == NearAnchor.START:
        return 0
    if target == NearAnchor.END:
        return max(0, stream_len - window)
    return max(0, min(target, stream_len) - window)
