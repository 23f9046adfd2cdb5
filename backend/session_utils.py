import base64
import hashlib
import hmac
import json
import os
import secrets
import time
from typing import Any

from errors import InvalidCredential


def _b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def _b64url_decode(data: str) -> bytes:
    padding = "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode((data + padding).encode("ascii"))


def _session_secret() -> bytes:
    secret = os.getenv("SESSION_SECRET")
    if not secret:
        raise RuntimeError("SESSION_SECRET is required")
    return secret.encode("utf-8")


def _sign(payload_part: bytes) -> bytes:
    return hmac.new(_session_secret(), payload_part, hashlib.sha256).digest()


def token_digest(token: str) -> str:
    """Key for a token in the revocation table."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def create_session_token(voter_id: str, ttl_seconds: int = 3600, now: float | None = None) -> str:
    issued_at = int(now if now is not None else time.time())
    claims = {
        "sub": str(voter_id),
        "exp": issued_at + int(ttl_seconds),
        "jti": secrets.token_hex(8),
    }
    body = json.dumps(claims, sort_keys=True, separators=(",", ":")).encode("utf-8")
    payload_part = _b64url_encode(body)
    return f"{payload_part}.{_b64url_encode(_sign(payload_part.encode('ascii')))}"


def verify_session_token(token: str, now: float | None = None) -> dict[str, Any]:
    """Check signature and expiry; every failure is an ``InvalidCredential``."""
    try:
        payload_part, signature_part = token.split(".", 1)
        provided = _b64url_decode(signature_part)
        signed = payload_part.encode("ascii")
    except (ValueError, UnicodeEncodeError) as exc:
        raise InvalidCredential("Invalid session token format") from exc

    if not hmac.compare_digest(_sign(signed), provided):
        raise InvalidCredential("Invalid session token signature")

    try:
        claims = json.loads(_b64url_decode(payload_part).decode("utf-8"))
        expires = int(claims.get("exp", 0))
        subject = claims["sub"]
    except (ValueError, KeyError, TypeError, AttributeError) as exc:
        raise InvalidCredential("Invalid session token payload") from exc

    if expires < int(now if now is not None else time.time()):
        raise InvalidCredential("Session token expired")
    if not isinstance(subject, str) or not subject:
        raise InvalidCredential("Invalid session token subject")
    return claims
