from __future__ import annotations

import base64
import hashlib
import hmac
import json
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Header, HTTPException, status

from .config import SECRET_KEY, TOKEN_EXPIRE_HOURS

DISPATCH_ROLES = {"admin", "dispatcher"}
ANALYTICS_ROLES = {"admin", "dispatcher", "agency_admin"}
RESPONDER_ROLE = "responder"


@dataclass(frozen=True)
class Caller:
    """Identity carried in a dispatch API token."""

    user_id: str
    email: str
    role: str
    agency_id: Optional[str] = None


def hash_password(password: str, salt: str | None = None) -> str:
    salt = salt or hashlib.sha256(SECRET_KEY.encode()).hexdigest()[:16]
    digest = hashlib.pbkdf2_hmac("sha256", password.encode(), salt.encode(), 120_000)
    return f"{salt}${digest.hex()}"


def verify_password(password: str, stored_hash: str) -> bool:
    salt, sep, _ = stored_hash.partition("$")
    return bool(sep) and hmac.compare_digest(hash_password(password, salt), stored_hash)


def _sign(body: str) -> str:
    return hmac.new(SECRET_KEY.encode(), body.encode(), hashlib.sha256).hexdigest()


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=detail)


def issue_token(caller: Caller) -> str:
    expires = datetime.now(timezone.utc) + timedelta(hours=TOKEN_EXPIRE_HOURS)
    raw = json.dumps({**asdict(caller), "exp": expires.timestamp()}, separators=(",", ":")).encode()
    body = base64.urlsafe_b64encode(raw).decode().rstrip("=")
    return f"{body}.{_sign(body)}"


def read_token(token: str) -> Caller:
    body, sep, sig = token.partition(".")
    if not sep:
        raise _unauthorized("Invalid token")
    if not hmac.compare_digest(sig, _sign(body)):
        raise _unauthorized("Invalid signature")

    claims = json.loads(base64.urlsafe_b64decode(body + "=" * (-len(body) % 4)).decode())
    if datetime.now(timezone.utc).timestamp() > claims.pop("exp", 0):
        raise _unauthorized("Token expired")
    return Caller(**claims)


def current_caller(authorization: str = Header(default="")) -> Caller:
    scheme, _, token = authorization.partition(" ")
    if scheme != "Bearer" or not token:
        raise _unauthorized("Missing bearer token")
    return read_token(token)


def require_role(caller: Caller, allowed: set[str]) -> None:
    if caller.role not in allowed:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden")


def require_responder(caller: Caller) -> None:
    if caller.role != RESPONDER_ROLE:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Only responders can access this")
