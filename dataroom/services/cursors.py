from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
from datetime import datetime
from typing import Any

from dataroom.domain.clock import ensure_utc


class CursorError(ValueError):
    # Raise for malformed or tampered cursor tokens.
    pass


def encode_cursor(payload: dict[str, Any], secret: str) -> str:
    # Sign cursor payloads to prevent client-side tampering.
    raw = json.dumps(payload, separators=(",", ":"), sort_keys=True).encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), raw, hashlib.sha256).hexdigest()
    encoded = base64.urlsafe_b64encode(raw).decode("utf-8").rstrip("=")
    return f"{encoded}.{signature}"


def decode_cursor(token: str, secret: str) -> dict[str, Any]:
    # Verify cursor signatures and return the decoded payload.
    try:
        encoded, signature = token.split(".", 1)
    except ValueError as exc:
        raise CursorError("Invalid cursor format") from exc
    padded = encoded + "=" * (-len(encoded) % 4)
    try:
        raw = base64.urlsafe_b64decode(padded.encode("utf-8"))
    except (ValueError, binascii.Error) as exc:
        raise CursorError("Invalid cursor encoding") from exc
    expected = hmac.new(secret.encode("utf-8"), raw, hashlib.sha256).hexdigest()
    if not hmac.compare_digest(expected, signature):
        raise CursorError("Invalid cursor signature")
    try:
        payload = json.loads(raw.decode("utf-8"))
    except json.JSONDecodeError as exc:
        raise CursorError("Invalid cursor payload") from exc
    if not isinstance(payload, dict):
        raise CursorError("Invalid cursor payload")
    return payload


def build_position(*, scope: str, timestamp: datetime, row_id: int) -> dict[str, Any]:
    # Capture the last row of a page so the next page resumes strictly after it.
    return {
        "v": 1,
        "scope": scope,
        "ts": ensure_utc(timestamp).isoformat(),
        "id": row_id,
    }


def parse_position(payload: dict[str, Any], *, expected_scope: str) -> tuple[datetime, int]:
    # Reject cursors minted for a different room or filter combination.
    if payload.get("scope") != expected_scope:
        raise CursorError("Cursor scope mismatch")
    try:
        timestamp = datetime.fromisoformat(str(payload["ts"]))
        row_id = int(payload["id"])
    except (KeyError, TypeError, ValueError) as exc:
        raise CursorError("Cursor position missing") from exc
    return ensure_utc(timestamp), row_id
