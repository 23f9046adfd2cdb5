"""Lock-guarded in-memory backend mirroring ``PostgresStore``.

Used for single-process development (``STORE_BACKEND=memory``) and the test
suite. Every method runs under one lock so the same conditional-update and
uniqueness guarantees hold across threads. Records are copied on the way in
and out; callers never share mutable state with the store.
"""
import itertools
import threading
from dataclasses import replace
from datetime import datetime

from config import GENERAL_SCOPE
from errors import (
    AcademicAlreadyClaimed,
    AlreadyCandidate,
    AlreadyEnrolled,
    ElectionNotOngoing,
    MatricNumberTaken,
    ReferenceNumberTaken,
    SelfVote,
    UnknownCandidate,
    VoterNotFound,
)
from models import (
    STATUS_ENDED,
    STATUS_ONGOING,
    STATUS_UPCOMING,
    AcademicClaim,
    Candidate,
    Challenge,
    Election,
    TallyRow,
    Vote,
    Voter,
)


class MemoryStore:
    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._election_ids = itertools.count(1)
        self._voters: dict[str, Voter] = {}
        self._academic: dict[str, AcademicClaim] = {}
        self._faces: dict[str, bytes] = {}
        self._elections: dict[int, Election] = {}
        self._candidates: dict[tuple[int, str], Candidate] = {}
        self._votes: dict[tuple[str, int], Vote] = {}
        self._references: set[str] = set()
        self._challenges: dict[str, Challenge] = {}
        self._verifications: dict[tuple[str, int, str], datetime] = {}
        self._revoked: dict[str, datetime] = {}
        self._devices: dict[str, str] = {}

    def ensure_schema(self) -> None:
        pass

    # -- voters and KYC ---------------------------------------------------------

    def add_voter(self, voter: Voter) -> Voter:
        with self._lock:
            self._voters.setdefault(voter.voter_id, replace(voter))
            return replace(self._voters[voter.voter_id])

    def get_voter(self, voter_id: str) -> Voter | None:
        with self._lock:
            voter = self._voters.get(voter_id)
            return replace(voter) if voter else None

    def claim_academic(self, claim: AcademicClaim) -> None:
        with self._lock:
            voter = self._voters.get(claim.voter_id)
            if voter is None:
                raise VoterNotFound()
            if claim.voter_id in self._academic:
                raise AcademicAlreadyClaimed()
            if any(c.matric_no == claim.matric_no for c in self._academic.values()):
                raise MatricNumberTaken()
            self._academic[claim.voter_id] = replace(claim)
            if voter.faculty_id is None:
                voter.faculty_id = claim.faculty_id

    def put_face_reference(self, voter_id: str, image: bytes) -> None:
        with self._lock:
            if voter_id not in self._voters:
                raise VoterNotFound()
            if voter_id in self._faces:
                raise AlreadyEnrolled()
            self._faces[voter_id] = bytes(image)

    def get_face_reference(self, voter_id: str) -> bytes | None:
        with self._lock:
            return self._faces.get(voter_id)

    # -- elections ----------------------------------------------------------------

    def create_election(
        self, title: str, start_date: datetime, duration: int, faculty_scope: str, created_by: str | None = None
    ) -> Election:
        with self._lock:
            election = Election(
                election_id=next(self._election_ids),
                title=title,
                start_date=start_date,
                duration=duration,
                status=STATUS_UPCOMING,
                faculty_scope=faculty_scope,
            )
            self._elections[election.election_id] = election
            return replace(election)

    def get_election(self, election_id: int) -> Election | None:
        with self._lock:
            election = self._elections.get(election_id)
            return replace(election) if election else None

    def list_open_elections(self) -> list[Election]:
        with self._lock:
            return sorted(
                (replace(e) for e in self._elections.values() if e.status != STATUS_ENDED),
                key=lambda e: e.start_date,
            )

    def compare_and_set_status(self, election_id: int, expected: str, new: str) -> bool:
        with self._lock:
            election = self._elections.get(election_id)
            if election is None or election.status != expected:
                return False
            election.status = new
            return True

    # -- candidates ---------------------------------------------------------------

    def add_candidate(self, candidate: Candidate) -> bool:
        with self._lock:
            election = self._elections.get(candidate.election_id)
            if election is None or election.status != STATUS_UPCOMING:
                return False
            if candidate.candidate_id not in self._voters:
                raise VoterNotFound()
            key = (candidate.election_id, candidate.candidate_id)
            if key in self._candidates:
                raise AlreadyCandidate()
            self._candidates[key] = replace(candidate)
            return True

    def get_candidate(self, election_id: int, candidate_id: str) -> Candidate | None:
        with self._lock:
            candidate = self._candidates.get((election_id, candidate_id))
            return replace(candidate) if candidate else None

    # -- votes ----------------------------------------------------------------------

    def insert_vote(self, vote: Vote) -> bool:
        # Same order as the PostgreSQL insert: status filter, CHECK, ON CONFLICT,
        # reference index, then the candidate foreign key.
        with self._lock:
            key = (vote.voter_id, vote.election_id)
            election = self._elections.get(vote.election_id)
            if election is None or election.status != STATUS_ONGOING:
                if key in self._votes:
                    return False
                raise ElectionNotOngoing()
            if vote.voter_id == vote.candidate_id:
                raise SelfVote()
            if key in self._votes:
                return False
            if vote.reference_number in self._references:
                raise ReferenceNumberTaken()
            if (vote.election_id, vote.candidate_id) not in self._candidates:
                raise UnknownCandidate()
            self._votes[key] = replace(vote)
            self._references.add(vote.reference_number)
            return True

    def get_vote(self, voter_id: str, election_id: int) -> Vote | None:
        with self._lock:
            vote = self._votes.get((voter_id, election_id))
            return replace(vote) if vote else None

    def tally(self, election_id: int) -> list[TallyRow]:
        with self._lock:
            counts = {cid: 0 for (eid, cid) in self._candidates if eid == election_id}
            for vote in self._votes.values():
                if vote.election_id == election_id and vote.candidate_id in counts:
                    counts[vote.candidate_id] += 1
            rows = [
                TallyRow(
                    candidate_id=cid,
                    name=self._voters[cid].full_name if cid in self._voters else None,
                    votes=count,
                )
                for cid, count in counts.items()
            ]
        return sorted(rows, key=lambda r: (-r.votes, r.candidate_id))

    # -- step-up verification marks -------------------------------------------

    def record_verification(self, voter_id: str, election_id: int, step: str, verified_at: datetime) -> None:
        with self._lock:
            self._verifications[(voter_id, election_id, step)] = verified_at

    def verified_steps(self, voter_id: str, election_id: int, since: datetime) -> set[str]:
        with self._lock:
            return {
                step
                for (vid, eid, step), at in self._verifications.items()
                if vid == voter_id and eid == election_id and at >= since
            }

    def clear_verifications(self, voter_id: str, election_id: int) -> None:
        with self._lock:
            for key in [k for k in self._verifications if k[0] == voter_id and k[1] == election_id]:
                del self._verifications[key]

    # -- OTP challenges ---------------------------------------------------------

    def get_challenge(self, voter_id: str) -> Challenge | None:
        with self._lock:
            challenge = self._challenges.get(voter_id)
            return replace(challenge) if challenge else None

    def put_challenge(self, challenge: Challenge) -> None:
        with self._lock:
            self._challenges[challenge.voter_id] = replace(challenge, attempts=0, delivered=False)

    def mark_challenge_delivered(self, voter_id: str, challenge_id: str) -> None:
        with self._lock:
            challenge = self._challenges.get(voter_id)
            if challenge is not None and challenge.challenge_id == challenge_id:
                challenge.delivered = True

    def record_failed_attempt(self, voter_id: str, challenge_id: str, limit: int) -> int | None:
        with self._lock:
            challenge = self._challenges.get(voter_id)
            if challenge is None or challenge.challenge_id != challenge_id or challenge.attempts >= limit:
                return None
            challenge.attempts += 1
            return challenge.attempts

    def consume_challenge(self, voter_id: str, challenge_id: str, limit: int) -> bool:
        with self._lock:
            challenge = self._challenges.get(voter_id)
            if challenge is None or challenge.challenge_id != challenge_id or challenge.attempts >= limit:
                return False
            del self._challenges[voter_id]
            return True

    def purge_expired_challenges(self, now: datetime) -> int:
        with self._lock:
            expired = [k for k, c in self._challenges.items() if c.expires_at < now]
            for key in expired:
                del self._challenges[key]
            return len(expired)

    # -- revocation -------------------------------------------------------------

    def revoke_token(self, token_hash: str, expires_at: datetime) -> None:
        with self._lock:
            self._revoked.setdefault(token_hash, expires_at)

    def is_token_revoked(self, token_hash: str, now: datetime) -> bool:
        with self._lock:
            expires_at = self._revoked.get(token_hash)
            return expires_at is not None and expires_at > now

    def purge_revoked_tokens(self, now: datetime) -> int:
        with self._lock:
            expired = [k for k, exp in self._revoked.items() if exp < now]
            for key in expired:
                del self._revoked[key]
            return len(expired)

    # -- push devices -------------------------------------------------------------

    def register_device(self, voter_id: str, push_token: str) -> None:
        with self._lock:
            if voter_id not in self._voters:
                raise VoterNotFound()
            self._devices[voter_id] = push_token

    def device_tokens_for_scope(self, faculty_scope: str) -> list[str]:
        with self._lock:
            tokens = {
                token
                for voter_id, token in self._devices.items()
                if faculty_scope == GENERAL_SCOPE or str(self._voters[voter_id].faculty_id) == faculty_scope
            }
        return sorted(tokens)
