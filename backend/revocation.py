import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable

from errors import RevokedCredential
from models import utcnow
from session_utils import token_digest, verify_session_token

logger = logging.getLogger(__name__)


@dataclass
class Identity:
    voter_id: str
    expires_at: datetime
    token: str


class RevocationRegistry:
    """Invalidated credentials, keyed by token digest until they would expire anyway."""

    def __init__(self, store, clock: Callable[[], datetime] = utcnow) -> None:
        self.store = store
        self.clock = clock

    def revoke(self, token: str, expires_at: datetime) -> None:
        self.store.revoke_token(token_digest(token), expires_at)
        logger.info("Revoked session token expiring at %s", expires_at.isoformat())

    def is_revoked(self, token: str) -> bool:
        return self.store.is_token_revoked(token_digest(token), self.clock())

    def purge_expired(self) -> int:
        removed = self.store.purge_revoked_tokens(self.clock())
        if removed:
            logger.info("Cleaned %d expired revoked tokens", removed)
        return removed


class CredentialVerifier:
    def __init__(self, registry: RevocationRegistry, clock: Callable[[], datetime] = utcnow) -> None:
        self.registry = registry
        self.clock = clock

    def verify(self, token: str) -> Identity:
        payload = verify_session_token(token, now=self.clock().timestamp())
        if self.registry.is_revoked(token):
            raise RevokedCredential()
        return Identity(
            voter_id=payload["sub"],
            expires_at=datetime.fromtimestamp(int(payload["exp"]), tz=timezone.utc),
            token=token,
        )
