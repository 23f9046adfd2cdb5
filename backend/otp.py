"""Step-up one-time passcodes bound to a voter identity.

A challenge is a 6-digit code valid for five minutes. Each wrong guess burns
one of five attempts; once they are gone only a fresh ``issue`` helps. A
correct code is consumed on first use.
"""
import hmac
import logging
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

from config import OTP_DIGITS, OTP_EXPIRY_MINUTES, OTP_MAX_ATTEMPTS, OTP_RESEND_COOLDOWN_SECONDS
from errors import ChallengeExpired, ChallengeNotFound, InvalidCode, RateLimited, TooManyAttempts
from models import Challenge, utcnow

logger = logging.getLogger(__name__)


def generate_code(digits: int = OTP_DIGITS) -> str:
    return f"{secrets.randbelow(10 ** digits):0{digits}d}"


@dataclass
class IssueResult:
    challenge_id: str
    expires_at: datetime
    delivered: bool

    def to_dict(self):
        return {
            "challenge_id": self.challenge_id,
            "expires_at": self.expires_at.isoformat(),
            "delivered": self.delivered,
        }


class ChallengeIssuer:
    def __init__(self, store, delivery, clock: Callable[[], datetime] = utcnow,
                 ttl: timedelta = timedelta(minutes=OTP_EXPIRY_MINUTES),
                 max_attempts: int = OTP_MAX_ATTEMPTS,
                 cooldown: timedelta = timedelta(seconds=OTP_RESEND_COOLDOWN_SECONDS),
                 code_factory: Callable[[], str] = generate_code) -> None:
        self.store = store
        self.delivery = delivery
        self.clock = clock
        self.ttl = ttl
        self.max_attempts = max_attempts
        self.cooldown = cooldown
        self.code_factory = code_factory

    def issue(self, voter_id: str, address: str) -> IssueResult:
        now = self.clock()
        existing = self.store.get_challenge(voter_id)
        # An undelivered code may be replaced right away.
        if existing and existing.delivered and now < existing.issued_at + self.cooldown:
            retry_after = int((existing.issued_at + self.cooldown - now).total_seconds()) + 1
            raise RateLimited(retry_after=retry_after)

        challenge = Challenge(
            voter_id=voter_id,
            challenge_id=uuid.uuid4().hex,
            code=self.code_factory(),
            issued_at=now,
            expires_at=now + self.ttl,
        )
        self.store.put_challenge(challenge)

        try:
            delivered = bool(self.delivery.send(address, challenge.code))
        except Exception:  # noqa: BLE001
            logger.exception("OTP delivery raised for voter %s", voter_id)
            delivered = False
        if delivered:
            self.store.mark_challenge_delivered(voter_id, challenge.challenge_id)
        else:
            logger.warning("OTP for voter %s was issued but not delivered", voter_id)
        return IssueResult(challenge_id=challenge.challenge_id, expires_at=challenge.expires_at, delivered=delivered)

    def verify(self, voter_id: str, code: str) -> None:
        challenge = self.store.get_challenge(voter_id)
        if challenge is None:
            raise ChallengeNotFound()
        if challenge.attempts >= self.max_attempts:
            raise TooManyAttempts()
        if self.clock() >= challenge.expires_at:
            raise ChallengeExpired()

        if not hmac.compare_digest(str(code).encode("utf-8"), challenge.code.encode("utf-8")):
            attempts = self.store.record_failed_attempt(voter_id, challenge.challenge_id, self.max_attempts)
            if attempts is None:
                raise TooManyAttempts()
            remaining = self.max_attempts - attempts
            logger.info("Wrong OTP for voter %s, %d attempt(s) left", voter_id, remaining)
            raise InvalidCode(attempts_remaining=remaining)

        if not self.store.consume_challenge(voter_id, challenge.challenge_id, self.max_attempts):
            # Spent, superseded or used concurrently.
            raise ChallengeNotFound()
