# fingerprint.py
# Stable content hash for structured tool input.
#
# Two calls with the same name and equal input dicts always produce the same
# hash regardless of key order. Used for repeat detection only.
#
# stdlib only.

import hashlib
import json
from typing import Any


def _sha256(data: str) -> str:
    return hashlib.sha256(data.encode("utf-8")).hexdigest()


def _serialize(value: Any) -> str:
    """Deterministic serialization. sort_keys is non-negotiable."""
    return json.dumps(value, sort_keys=True, ensure_ascii=False, default=str)


def hash_input(tool_input: Any) -> str:
    return _sha256(_serialize(tool_input if tool_input is not None else {}))
