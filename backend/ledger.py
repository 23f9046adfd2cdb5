"""Authoritative, append-only record of votes.

``cast_vote`` rejects with a distinct error per cause, in a fixed order, and
leaves the final one-vote-per-voter decision to the storage engine's
uniqueness constraint so that concurrent attempts by the same voter cannot
both succeed.
"""
import logging
import secrets
from datetime import datetime
from typing import Callable

from errors import (
    AlreadyVoted,
    NotEligible,
    PersistenceError,
    ReferenceNumberTaken,
    SelfVote,
    UnknownCandidate,
    VoterNotFound,
)
from lifecycle import ElectionLifecycleManager
from models import Candidate, Election, TallyRow, Vote, utcnow

logger = logging.getLogger(__name__)

# No 0/O or 1/I so references survive being read aloud or retyped.
REFERENCE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
REFERENCE_ATTEMPTS = 5


def generate_reference_number() -> str:
    chars = "".join(secrets.choice(REFERENCE_ALPHABET) for _ in range(8))
    return f"EV-{chars[:4]}-{chars[4:]}"


class VoteLedger:
    def __init__(self, store, clock: Callable[[], datetime] = utcnow,
                 reference_factory: Callable[[], str] = generate_reference_number, gate=None,
                 lifecycle: ElectionLifecycleManager | None = None) -> None:
        self.store = store
        self.clock = clock
        self.lifecycle = lifecycle or ElectionLifecycleManager(store, clock=clock)
        self.reference_factory = reference_factory
        # Optional VerificationTracker; when set, OTP and face steps must have passed.
        self.gate = gate

    def check_ballot(self, voter_id: str, election_id: int, candidate_id: str) -> tuple[Election, Candidate]:
        """Run every precondition of a cast except the final atomic insert."""
        if voter_id == candidate_id:
            raise SelfVote()

        election = self.lifecycle.require_ongoing(election_id)

        candidate = self.store.get_candidate(election_id, candidate_id)
        if candidate is None:
            raise UnknownCandidate(candidate_id=candidate_id)

        voter = self.store.get_voter(voter_id)
        if voter is None:
            raise VoterNotFound()
        if not election.admits(voter.faculty_id):
            raise NotEligible(faculty_scope=election.faculty_scope)
        return election, candidate

    def cast_vote(self, voter_id: str, election_id: int, candidate_id: str) -> Vote:
        self.check_ballot(voter_id, election_id, candidate_id)
        if self.gate is not None:
            # Spent verifications are cleared after a vote; answer a repeat with
            # AlreadyVoted rather than VerificationRequired.
            if self.store.get_vote(voter_id, election_id) is not None:
                raise AlreadyVoted(election_id=election_id)
            self.gate.require(voter_id, election_id)

        for _ in range(REFERENCE_ATTEMPTS):
            vote = Vote(
                voter_id=voter_id,
                election_id=election_id,
                candidate_id=candidate_id,
                reference_number=self.reference_factory(),
                cast_at=self.clock(),
            )
            try:
                inserted = self.store.insert_vote(vote)
            except ReferenceNumberTaken:
                logger.warning("Reference number collision for election %s, regenerating", election_id)
                continue
            if not inserted:
                raise AlreadyVoted(election_id=election_id)
            logger.info("Vote %s recorded for election %s", vote.reference_number, election_id)
            if self.gate is not None:
                try:
                    self.gate.clear(voter_id, election_id)
                except PersistenceError:
                    logger.warning("Could not clear verifications for voter %s after voting", voter_id)
            return vote

        raise PersistenceError("Could not allocate a unique reference number")

    def vote_status(self, voter_id: str, election_id: int) -> Vote | None:
        return self.store.get_vote(voter_id, election_id)

    def get_results(self, election_id: int) -> list[TallyRow]:
        self.lifecycle.get(election_id)
        return self.store.tally(election_id)
