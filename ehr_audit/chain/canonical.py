"""Canonical encoding and chain hash computation.

Each entry's hash is a pure function of the entry's own post-redaction
fields and the previous entry's hash:

    hash[n] = SHA256(canonical(entry[n] without "hash") || hash[n-1])

The canonical form is compact JSON with lexicographically sorted keys, so
the on-disk key order and whitespace never affect verification.
"""

import hashlib
import json
from collections.abc import Mapping
from typing import Any

from ..errors import SerializationError
from ..models import GENESIS_HASH

__all__ = [
    "GENESIS_HASH",
    "canonicalize",
    "compute_chain_hash",
    "decode_line",
    "encode_line",
    "entry_hash",
]


def canonicalize(data: Mapping[str, Any]) -> str:
    """Convert a mapping to its canonical JSON form.

    Args:
        data: Entry fields (without the "hash" field)

    Returns:
        Compact, key-sorted JSON string

    Raises:
        SerializationError: If the data holds non-JSON values (e.g., NaN, objects)
    """
    try:
        return json.dumps(
            data, sort_keys=True, separators=(",", ":"), ensure_ascii=False, allow_nan=False
        )
    except (TypeError, ValueError) as e:
        raise SerializationError("entry", f"not JSON-serializable: {e}") from e


def compute_chain_hash(canonical: str, previous_hash: str) -> str:
    """Compute SHA256(canonical || previous_hash) as hex."""
    try:
        payload = (canonical + previous_hash).encode("utf-8")
    except UnicodeEncodeError as e:
        raise SerializationError("entry", f"not encodable as UTF-8: {e.reason}") from e
    return hashlib.sha256(payload).hexdigest()


def entry_hash(data: Mapping[str, Any], previous_hash: str) -> str:
    """Compute the chain hash of an entry dictionary, ignoring any stored hash."""
    fields = {k: v for k, v in data.items() if k != "hash"}
    return compute_chain_hash(canonicalize(fields), previous_hash)


def encode_line(data: Mapping[str, Any]) -> str:
    """Encode an entry dictionary as one JSON Lines record (without newline).

    Field order is preserved for readability; verification re-canonicalizes.
    """
    try:
        return json.dumps(data, separators=(",", ":"), ensure_ascii=False, allow_nan=False)
    except (TypeError, ValueError) as e:
        raise SerializationError("entry", f"not JSON-serializable: {e}") from e


def _reject_constant(name: str) -> Any:
    raise ValueError(f"non-JSON constant {name}")


def decode_line(raw: bytes | str) -> dict[str, Any]:
    """Parse one persisted line into an entry dictionary.

    Raises:
        ValueError: If the line is not UTF-8, not strict JSON or not an object
    """
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8")
    data = json.loads(raw, parse_constant=_reject_constant)
    if not isinstance(data, dict):
        raise ValueError("entry is not a JSON object")
    return data
