# src/helper/canonical.py
from __future__ import annotations

import hashlib
import json
from typing import Any


def to_plain(obj: Any) -> Any:
    """
    Convert pydantic models to plain JSON-compatible data; pass anything
    else through unchanged.
    """
    if hasattr(obj, "model_dump"):
        return obj.model_dump(mode="json")
    return obj


def canonical_json(obj: Any) -> str:
    """
    Serialize an object (including pydantic models) into canonical JSON:
    sorted keys, no insignificant whitespace, UTF-8 kept as-is.

    Every digest in the pipeline (witness digest, header hash, artifact
    checksum) is computed over this encoding, so two semantically equal
    inputs always hash identically.
    """
    return json.dumps(
        to_plain(obj),
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
    )


def canonical_bytes(obj: Any) -> bytes:
    return canonical_json(obj).encode("utf-8")


def sha256_hex(data: bytes | str) -> str:
    if isinstance(data, str):
        data = data.encode("utf-8")
    return hashlib.sha256(data).hexdigest()


def is_canonical_json(raw: bytes) -> bool:
    """
    Return True iff `raw` is valid UTF-8 JSON already in canonical form.

    Used to reject event payloads that would otherwise admit several byte
    encodings of the same fact.
    """
    try:
        decoded = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, ValueError):
        return False
    return canonical_bytes(decoded) == raw
