from __future__ import annotations

import base64
import hashlib
import hmac
import json
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from fastapi import Header, HTTPException, status

from .config import ROLES, SECRET_KEY, TOKEN_EXPIRE_HOURS


@dataclass(frozen=True)
class Principal:
    user_id: str
    role: str


def _sign(body: str) -> str:
    return hmac.new(SECRET_KEY.encode(), body.encode(), hashlib.sha256).hexdigest()


def create_token(user_id: str, role: str, expires_in: timedelta | None = None) -> str:
    if role not in ROLES:
        raise ValueError(f"unknown role {role!r}")
    exp = datetime.now(timezone.utc) + (expires_in or timedelta(hours=TOKEN_EXPIRE_HOURS))
    raw = json.dumps({"user_id": user_id, "role": role, "exp": exp.timestamp()}, separators=(",", ":")).encode()
    b64 = base64.urlsafe_b64encode(raw).decode().rstrip("=")
    return f"{b64}.{_sign(b64)}"


def decode_token(token: str) -> Principal:
    try:
        b64, sig = token.split(".")
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token") from exc

    if not hmac.compare_digest(sig, _sign(b64)):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid signature")

    padded = b64 + "=" * (-len(b64) % 4)
    payload = json.loads(base64.urlsafe_b64decode(padded.encode()).decode())
    if datetime.now(timezone.utc).timestamp() > payload.get("exp", 0):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Token expired")
    if payload.get("role") not in ROLES or not payload.get("user_id"):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Token is missing identity claims")
    return Principal(user_id=str(payload["user_id"]), role=payload["role"])


def get_principal(authorization: str = Header(default="")) -> Principal:
    if not authorization.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Missing bearer token")
    return decode_token(authorization.replace("Bearer ", "", 1))


def role_guard(principal: Principal, role: str) -> None:
    if principal.role != role:
        raise HTTPException(status_code=403, detail=f"Only {role}s can do this")
