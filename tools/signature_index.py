#!/usr/bin/env python3
"""
signature_index.py - Signature-anchored search over a byte buffer

One linear search per structure per scan; bytes.find does the heavy
lifting.

Usage:
    index = SignatureIndex(data, b'PK\\x05\\x06')
    pos = index.find_next(0)        # None if absent

    # Only matches starting before offset 0x100
    index = SignatureIndex(data, sig, limit=0x100)
"""

from typing import Optional, Union

ByteBuffer = Union[bytes, bytearray]


class SignatureIndex:
    """Finds occurrences of one signature in one buffer."""

    def __init__(self, buf: ByteBuffer, signature: bytes,
                 limit: Optional[int] = None):
        if not signature:
            raise ValueError("Signature must not be empty")
        self.buf = buf
        self.signature = bytes(signature)
        # Exclusive upper bound for a match start
        self.limit = len(buf) if limit is None else min(limit, len(buf))

    def find_next(self, start: int = 0) -> Optional[int]:
        """Lowest offset >= start where the signature begins, or None."""
        start = max(start, 0)
        if start >= self.limit:
            return None
        end = min(len(self.buf), self.limit - 1 + len(self.signature))
        if end - start < len(self.signature):
            return None
        pos = self.buf.find(self.signature, start, end)
        return None if pos < 0 else pos
