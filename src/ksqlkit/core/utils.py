from __future__ import annotations

"""
ksqlkit.core.utils
==================

Low-level helpers with no external dependencies:
- Stable hashing of JSON-like payloads (statement fingerprints, group ids).
- Compact JSON (de)serialization to/from UTF-8 bytes, exact for decimals.
- Short random suffixes for consumer group ids.
"""

import json
from decimal import Decimal
from hashlib import blake2b
from secrets import token_hex
from typing import Any

DEFAULT_DIGEST_SIZE = 20


def stable_hash(payload: Any, *, digest_size: int = DEFAULT_DIGEST_SIZE) -> str:
    """
    Deterministic BLAKE2b hex digest of a JSON-like payload.

    Keys are sorted and whitespace dropped so equal payloads always hash equal.
    Not a signature; use it for idempotency/cache keys.
    """
    data = json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")
    return blake2b(data, digest_size=digest_size).hexdigest()


_ENCODER = json.JSONEncoder(ensure_ascii=False, separators=(",", ":"))


def _encode(x: Any) -> str:
    if isinstance(x, Decimal):
        if not x.is_finite():
            raise ValueError(f"{x} is not a finite decimal")
        return format(x, "f")
    if isinstance(x, dict):
        return "{" + ",".join(f"{_ENCODER.encode(str(k))}:{_encode(v)}" for k, v in x.items()) + "}"
    if isinstance(x, (list, tuple)):
        return "[" + ",".join(_encode(v) for v in x) + "]"
    return _ENCODER.encode(x)


def dumps(x: Any) -> bytes:
    """
    Compact JSON to UTF-8 bytes (ensure_ascii=False, no spaces).

    Decimals are written as exact fixed-point number text, never through float.
    """
    return _encode(x).encode("utf-8")


def loads(b: bytes | bytearray | str) -> Any:
    """Inverse of dumps(): fractional numbers come back as Decimal."""
    if isinstance(b, (bytes, bytearray)):
        b = b.decode("utf-8")
    return json.loads(b, parse_float=Decimal)


def short_id(n_bytes: int = 4) -> str:
    if n_bytes <= 0:
        raise ValueError("n_bytes must be positive")
    return token_hex(n_bytes)
