import logging
from datetime import datetime, timedelta
from typing import Callable

from config import VERIFICATION_TTL_SECONDS
from errors import VerificationRequired
from models import STEP_FACE, STEP_OTP, utcnow

logger = logging.getLogger(__name__)

REQUIRED_STEPS = (STEP_OTP, STEP_FACE)


class VerificationTracker:
    """Remembers which step-up checks a voter passed for an election."""

    def __init__(self, store, clock: Callable[[], datetime] = utcnow,
                 ttl: timedelta = timedelta(seconds=VERIFICATION_TTL_SECONDS)) -> None:
        self.store = store
        self.clock = clock
        self.ttl = ttl

    def record(self, voter_id: str, election_id: int, step: str) -> None:
        self.store.record_verification(voter_id, election_id, step, self.clock())

    def passed(self, voter_id: str, election_id: int) -> set[str]:
        return self.store.verified_steps(voter_id, election_id, self.clock() - self.ttl)

    def require(self, voter_id: str, election_id: int) -> None:
        missing = [step for step in REQUIRED_STEPS if step not in self.passed(voter_id, election_id)]
        if missing:
            raise VerificationRequired(missing=missing)

    def clear(self, voter_id: str, election_id: int) -> None:
        self.store.clear_verifications(voter_id, election_id)
