from __future__ import annotations

import base64
import hashlib
import hmac
import json
import os
import threading
import time
from dataclasses import dataclass
from typing import Any


SESSION_TTL_SECONDS = 60 * 60 * 12
DEFAULT_ROLE = "member"

BOARD_ROLES = frozenset({"board_finance", "board_internal", "board_external"})
# May look at the rental overview, but not act on it.
OVERVIEW_READ_ONLY_ROLES = frozenset({"alumni_auditor", "alumni_board"})

_LOCK = threading.Lock()
_REVOKED: dict[str, float] = {}


def _require_session_secret() -> bytes:
    raw = (os.environ.get("SESSION_SIGNING_SECRET") or "").strip()
    if len(raw) < 32:
        raise RuntimeError("SESSION_SIGNING_SECRET must be set and at least 32 characters long.")
    return raw.encode("utf-8")


_SESSION_SECRET = _require_session_secret()


@dataclass(frozen=True)
class ActorContext:
    """Who is performing an operation. Passed explicitly into every lifecycle call."""

    user_id: int
    role: str = DEFAULT_ROLE
    email: str | None = None

    @property
    def is_board(self) -> bool:
        return self.role in BOARD_ROLES

    @property
    def can_view_rental_overview(self) -> bool:
        return self.is_board or self.role in OVERVIEW_READ_ONLY_ROLES


def _normalize_role(raw_role: str | None) -> str:
    role = (raw_role or "").strip().lower()
    return role or DEFAULT_ROLE


def actor_from_session(session: dict[str, Any] | None) -> ActorContext | None:
    if not session:
        return None
    try:
        user_id = int(session.get("userID") or 0)
    except (TypeError, ValueError):
        return None
    if user_id <= 0:
        return None
    return ActorContext(
        user_id=user_id,
        role=_normalize_role(session.get("role")),
        email=session.get("email") or None,
    )


def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def _b64decode(encoded: str) -> bytes:
    return base64.urlsafe_b64decode(encoded + "=" * (-len(encoded) % 4))


def create_session(payload: dict[str, Any]) -> str:
    """Issue a signed token. Login itself happens in the surrounding auth layer."""
    session_payload = dict(payload)
    session_payload["expiresAt"] = time.time() + SESSION_TTL_SECONDS
    body = json.dumps(session_payload, ensure_ascii=True, separators=(",", ":")).encode("utf-8")
    encoded = _b64encode(body)
    signature = hmac.new(_SESSION_SECRET, encoded.encode("ascii"), hashlib.sha256).digest()
    return f"{encoded}.{_b64encode(signature)}"


def get_session(token: str | None) -> dict[str, Any] | None:
    if not token:
        return None
    now = time.time()
    try:
        encoded, encoded_sig = token.split(".", 1)
        expected_sig = hmac.new(_SESSION_SECRET, encoded.encode("ascii"), hashlib.sha256).digest()
        if not hmac.compare_digest(expected_sig, _b64decode(encoded_sig)):
            return None
        decoded_session = json.loads(_b64decode(encoded).decode("utf-8"))
    except (ValueError, UnicodeError):
        return None

    if not isinstance(decoded_session, dict):
        return None
    if now >= float(decoded_session.get("expiresAt") or 0.0):
        return None

    with _LOCK:
        for revoked_token, revoked_exp in list(_REVOKED.items()):
            if now >= revoked_exp:
                _REVOKED.pop(revoked_token, None)
        if token in _REVOKED:
            return None
    return decoded_session


def remove_session(token: str | None) -> None:
    session = get_session(token)
    if not session:
        return
    with _LOCK:
        _REVOKED[str(token)] = float(session.get("expiresAt") or time.time() + SESSION_TTL_SECONDS)
