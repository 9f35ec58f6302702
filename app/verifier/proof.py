"""Opaque per-condition proof tokens.

A proof is base64 (standard alphabet) of a JSON document:

    {"value": ..., "condition": {...}, "result": bool,
     "nonce": int, "timestamp": "<ISO-8601>"}

The nonce and timestamp make every token unique, even for identical
inputs. The token is an audit/display artifact only: anyone can decode it,
and nothing binds it to the evaluated value.
"""

import base64
import binascii
import json
import secrets
from datetime import datetime, timezone
from typing import Any, Dict

from app.verifier.exceptions import ProofDecodeError

# Keep nonces within the integer range JSON consumers can represent exactly
NONCE_BOUND = 2 ** 53


def encode_proof(value: Any, condition: Dict[str, Any], result: bool) -> str:
    """Encode an evaluation outcome as a proof token.

    Args:
        value: The subject-side value that was compared
        condition: The declared `{value, operator}` condition
        result: Whether the condition held
    """
    document = {
        "value": value,
        "condition": condition,
        "result": result,
        "nonce": secrets.randbelow(NONCE_BOUND),
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    raw = json.dumps(document, separators=(",", ":"), ensure_ascii=False, default=str)
    return base64.b64encode(raw.encode("utf-8")).decode("ascii")


def decode_proof(token: str) -> Dict[str, Any]:
    """Decode a proof token back to its fields.

    Raises:
        ProofDecodeError: If the token is not base64-encoded JSON object.
    """
    try:
        raw = base64.b64decode(token.encode("ascii"), validate=True)
        document = json.loads(raw.decode("utf-8"))
    except (binascii.Error, UnicodeError, ValueError) as e:
        raise ProofDecodeError(f"Invalid proof token: {e}")
    if not isinstance(document, dict):
        raise ProofDecodeError("Invalid proof token: not a JSON object")
    return document
