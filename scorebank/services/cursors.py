"""Opaque keyset cursors for paginated reads.

A cursor is the sort key of the last row on a page, JSON-encoded and
base64url-wrapped so clients treat it as a token rather than state.
"""

from __future__ import annotations

import base64
import binascii
import json
import math

from scorebank.engine.errors import InvalidCursor


def encode_cursor(*key: object) -> str:
    raw = json.dumps(list(key), separators=(",", ":")).encode()
    return base64.urlsafe_b64encode(raw).decode().rstrip("=")


def _check(value: object, kind: type) -> bool:
    if kind is str:
        return isinstance(value, str)
    # bool is an int subclass, never a valid key
    if isinstance(value, bool) or not isinstance(value, int | float):
        return False
    if kind is int:
        return isinstance(value, int)
    return math.isfinite(value)


def decode_cursor(cursor: str, *kinds: type) -> list:
    """Decode *cursor* into one value per entry of *kinds* (``int``,
    ``float`` or ``str``), raising :class:`InvalidCursor` on any mismatch.
    """
    padded = cursor + "=" * (-len(cursor) % 4)
    try:
        key = json.loads(base64.urlsafe_b64decode(padded.encode()))
    except (binascii.Error, ValueError, UnicodeDecodeError):
        raise InvalidCursor(f"Malformed cursor: {cursor!r}") from None
    if not isinstance(key, list) or len(key) != len(kinds):
        raise InvalidCursor(f"Malformed cursor: {cursor!r}")
    if not all(_check(value, kind) for value, kind in zip(key, kinds)):
        raise InvalidCursor(f"Malformed cursor: {cursor!r}")
    return [kind(value) for value, kind in zip(key, kinds)]
