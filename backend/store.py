"""PostgreSQL storage backend.

Every invariant that has to survive concurrent workers lives in the schema:
one vote per (voter, election), candidates scoped to their election, no
self-votes, unique matriculation numbers. Status changes and candidate
registration are conditional statements, never read-then-write.
"""
import logging
from contextlib import contextmanager
from datetime import datetime

import psycopg2
from psycopg2 import errors as pg_errors

from config import GENERAL_SCOPE
from db import get_connection, release_connection
from errors import (
    AcademicAlreadyClaimed,
    AlreadyCandidate,
    AlreadyEnrolled,
    ElectionNotOngoing,
    MatricNumberTaken,
    PersistenceError,
    ReferenceNumberTaken,
    SelfVote,
    UnknownCandidate,
    VoterNotFound,
)
from models import (
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

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS users (
    userid TEXT PRIMARY KEY,
    email TEXT UNIQUE NOT NULL,
    full_name TEXT,
    faculty_id INTEGER,
    created_at TIMESTAMPTZ DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS academic_details (
    userid TEXT PRIMARY KEY REFERENCES users(userid),
    matric_no TEXT UNIQUE NOT NULL,
    faculty_id INTEGER NOT NULL,
    faculty_name TEXT NOT NULL,
    department TEXT NOT NULL,
    level TEXT NOT NULL,
    verified_at TIMESTAMPTZ DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS face_references (
    userid TEXT PRIMARY KEY REFERENCES users(userid),
    image BYTEA NOT NULL,
    created_at TIMESTAMPTZ DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS elections (
    id SERIAL PRIMARY KEY,
    title TEXT NOT NULL,
    start_date TIMESTAMPTZ NOT NULL,
    duration INTEGER NOT NULL CHECK (duration > 0),
    status TEXT NOT NULL DEFAULT 'upcoming'
        CHECK (status IN ('upcoming', 'ongoing', 'ended')),
    faculty_scope TEXT NOT NULL DEFAULT 'general',
    created_by TEXT,
    created_at TIMESTAMPTZ DEFAULT NOW(),
    status_changed_at TIMESTAMPTZ
);

CREATE TABLE IF NOT EXISTS candidates (
    election_id INTEGER NOT NULL REFERENCES elections(id),
    candidate_id TEXT NOT NULL REFERENCES users(userid),
    bio TEXT NOT NULL DEFAULT '',
    manifesto TEXT NOT NULL DEFAULT '',
    created_at TIMESTAMPTZ DEFAULT NOW(),
    PRIMARY KEY (election_id, candidate_id)
);

CREATE TABLE IF NOT EXISTS votes (
    id SERIAL PRIMARY KEY,
    voter_id TEXT NOT NULL REFERENCES users(userid),
    election_id INTEGER NOT NULL,
    candidate_id TEXT NOT NULL,
    reference_number TEXT NOT NULL,
    cast_at TIMESTAMPTZ NOT NULL,
    CONSTRAINT votes_one_per_voter UNIQUE (voter_id, election_id),
    CONSTRAINT votes_reference_unique UNIQUE (reference_number),
    CONSTRAINT votes_candidate_in_election FOREIGN KEY (election_id, candidate_id)
        REFERENCES candidates(election_id, candidate_id),
    CONSTRAINT votes_no_self_vote CHECK (voter_id <> candidate_id)
);

CREATE TABLE IF NOT EXISTS otp_challenges (
    voter_id TEXT PRIMARY KEY,
    challenge_id TEXT NOT NULL,
    code TEXT NOT NULL,
    attempts INTEGER NOT NULL DEFAULT 0,
    delivered BOOLEAN NOT NULL DEFAULT FALSE,
    issued_at TIMESTAMPTZ NOT NULL,
    expires_at TIMESTAMPTZ NOT NULL
);

CREATE TABLE IF NOT EXISTS vote_verifications (
    voter_id TEXT NOT NULL,
    election_id INTEGER NOT NULL,
    step TEXT NOT NULL,
    verified_at TIMESTAMPTZ NOT NULL,
    PRIMARY KEY (voter_id, election_id, step)
);

CREATE TABLE IF NOT EXISTS revoked_tokens (
    token_hash TEXT PRIMARY KEY,
    expires_at TIMESTAMPTZ NOT NULL
);

CREATE TABLE IF NOT EXISTS user_devices (
    user_id TEXT PRIMARY KEY REFERENCES users(userid),
    expo_token TEXT NOT NULL,
    updated_at TIMESTAMPTZ DEFAULT NOW()
);

CREATE INDEX IF NOT EXISTS elections_open_status ON elections (status) WHERE status <> 'ended';
CREATE INDEX IF NOT EXISTS votes_by_election ON votes (election_id, candidate_id);
"""

_ELECTION_COLUMNS = "id, title, start_date, duration, status, faculty_scope"


def _election(row) -> Election:
    return Election(
        election_id=row[0],
        title=row[1],
        start_date=row[2],
        duration=row[3],
        status=row[4],
        faculty_scope=row[5],
    )


class PostgresStore:
    @contextmanager
    def _cursor(self):
        try:
            conn = get_connection()
        except psycopg2.Error as exc:
            raise PersistenceError("Database unavailable") from exc
        cur = conn.cursor()
        try:
            yield cur
            conn.commit()
        except (psycopg2.OperationalError, psycopg2.InterfaceError) as exc:
            self._rollback(conn)
            logger.warning("Database operation failed: %s", exc)
            raise PersistenceError() from exc
        except Exception:
            self._rollback(conn)
            raise
        finally:
            cur.close()
            release_connection(conn)

    @staticmethod
    def _rollback(conn) -> None:
        try:
            conn.rollback()
        except psycopg2.Error:
            logger.warning("Rollback failed on a broken connection")

    def ensure_schema(self) -> None:
        with self._cursor() as cur:
            cur.execute(SCHEMA)

    # -- voters and KYC ---------------------------------------------------------

    def add_voter(self, voter: Voter) -> Voter:
        with self._cursor() as cur:
            cur.execute(
                """
                INSERT INTO users (userid, email, full_name, faculty_id)
                VALUES (%s, %s, %s, %s)
                ON CONFLICT (userid) DO NOTHING
                """,
                (voter.voter_id, voter.email, voter.full_name, voter.faculty_id),
            )
        return voter

    def get_voter(self, voter_id: str) -> Voter | None:
        with self._cursor() as cur:
            cur.execute(
                "SELECT userid, email, full_name, faculty_id FROM users WHERE userid = %s",
                (voter_id,),
            )
            row = cur.fetchone()
        if not row:
            return None
        return Voter(voter_id=row[0], email=row[1], full_name=row[2], faculty_id=row[3])

    def claim_academic(self, claim: AcademicClaim) -> None:
        try:
            with self._cursor() as cur:
                cur.execute("SELECT 1 FROM users WHERE userid = %s FOR UPDATE", (claim.voter_id,))
                if not cur.fetchone():
                    raise VoterNotFound()
                cur.execute(
                    """
                    INSERT INTO academic_details (userid, matric_no, faculty_id, faculty_name, department, level)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    """,
                    (
                        claim.voter_id,
                        claim.matric_no,
                        claim.faculty_id,
                        claim.faculty_name,
                        claim.department,
                        claim.level,
                    ),
                )
                cur.execute(
                    "UPDATE users SET faculty_id = %s WHERE userid = %s AND faculty_id IS NULL",
                    (claim.faculty_id, claim.voter_id),
                )
        except pg_errors.UniqueViolation as exc:
            if exc.diag.constraint_name == "academic_details_matric_no_key":
                raise MatricNumberTaken() from exc
            raise AcademicAlreadyClaimed() from exc

    def put_face_reference(self, voter_id: str, image: bytes) -> None:
        try:
            with self._cursor() as cur:
                cur.execute(
                    "INSERT INTO face_references (userid, image) VALUES (%s, %s)",
                    (voter_id, psycopg2.Binary(image)),
                )
        except pg_errors.UniqueViolation as exc:
            raise AlreadyEnrolled() from exc
        except pg_errors.ForeignKeyViolation as exc:
            raise VoterNotFound() from exc

    def get_face_reference(self, voter_id: str) -> bytes | None:
        with self._cursor() as cur:
            cur.execute("SELECT image FROM face_references WHERE userid = %s", (voter_id,))
            row = cur.fetchone()
        return bytes(row[0]) if row else None

    # -- elections ----------------------------------------------------------------

    def create_election(
        self, title: str, start_date: datetime, duration: int, faculty_scope: str, created_by: str | None = None
    ) -> Election:
        with self._cursor() as cur:
            cur.execute(
                f"""
                INSERT INTO elections (title, start_date, duration, faculty_scope, created_by)
                VALUES (%s, %s, %s, %s, %s)
                RETURNING {_ELECTION_COLUMNS}
                """,
                (title, start_date, duration, faculty_scope, created_by),
            )
            return _election(cur.fetchone())

    def get_election(self, election_id: int) -> Election | None:
        with self._cursor() as cur:
            cur.execute(f"SELECT {_ELECTION_COLUMNS} FROM elections WHERE id = %s", (election_id,))
            row = cur.fetchone()
        return _election(row) if row else None

    def list_open_elections(self) -> list[Election]:
        with self._cursor() as cur:
            cur.execute(f"SELECT {_ELECTION_COLUMNS} FROM elections WHERE status <> 'ended' ORDER BY start_date")
            return [_election(row) for row in cur.fetchall()]

    def compare_and_set_status(self, election_id: int, expected: str, new: str) -> bool:
        with self._cursor() as cur:
            cur.execute(
                """
                UPDATE elections
                SET status = %s, status_changed_at = NOW()
                WHERE id = %s AND status = %s
                """,
                (new, election_id, expected),
            )
            return cur.rowcount == 1

    # -- candidates ---------------------------------------------------------------

    def add_candidate(self, candidate: Candidate) -> bool:
        """Insert only while the election is upcoming; False otherwise."""
        try:
            with self._cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO candidates (election_id, candidate_id, bio, manifesto)
                    SELECT %s, %s, %s, %s
                    WHERE EXISTS (SELECT 1 FROM elections WHERE id = %s AND status = %s)
                    """,
                    (
                        candidate.election_id,
                        candidate.candidate_id,
                        candidate.bio,
                        candidate.manifesto,
                        candidate.election_id,
                        STATUS_UPCOMING,
                    ),
                )
                return cur.rowcount == 1
        except pg_errors.UniqueViolation as exc:
            raise AlreadyCandidate() from exc
        except pg_errors.ForeignKeyViolation as exc:
            raise VoterNotFound() from exc

    def get_candidate(self, election_id: int, candidate_id: str) -> Candidate | None:
        with self._cursor() as cur:
            cur.execute(
                """
                SELECT election_id, candidate_id, bio, manifesto
                FROM candidates
                WHERE election_id = %s AND candidate_id = %s
                """,
                (election_id, candidate_id),
            )
            row = cur.fetchone()
        if not row:
            return None
        return Candidate(election_id=row[0], candidate_id=row[1], bio=row[2], manifesto=row[3])

    # -- votes ----------------------------------------------------------------------

    def insert_vote(self, vote: Vote) -> bool:
        """Record a vote; False when the voter already has one in this election."""
        try:
            with self._cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO votes (voter_id, election_id, candidate_id, reference_number, cast_at)
                    SELECT %s, %s, %s, %s, %s
                    WHERE EXISTS (SELECT 1 FROM elections WHERE id = %s AND status = %s)
                    ON CONFLICT ON CONSTRAINT votes_one_per_voter DO NOTHING
                    RETURNING id
                    """,
                    (
                        vote.voter_id,
                        vote.election_id,
                        vote.candidate_id,
                        vote.reference_number,
                        vote.cast_at,
                        vote.election_id,
                        STATUS_ONGOING,
                    ),
                )
                if cur.fetchone():
                    return True
                cur.execute(
                    "SELECT 1 FROM votes WHERE voter_id = %s AND election_id = %s",
                    (vote.voter_id, vote.election_id),
                )
                if cur.fetchone():
                    return False
        except pg_errors.UniqueViolation as exc:
            raise ReferenceNumberTaken() from exc
        except pg_errors.ForeignKeyViolation as exc:
            raise UnknownCandidate() from exc
        except pg_errors.CheckViolation as exc:
            raise SelfVote() from exc
        raise ElectionNotOngoing()

    def get_vote(self, voter_id: str, election_id: int) -> Vote | None:
        with self._cursor() as cur:
            cur.execute(
                """
                SELECT voter_id, election_id, candidate_id, reference_number, cast_at
                FROM votes
                WHERE voter_id = %s AND election_id = %s
                """,
                (voter_id, election_id),
            )
            row = cur.fetchone()
        if not row:
            return None
        return Vote(voter_id=row[0], election_id=row[1], candidate_id=row[2], reference_number=row[3], cast_at=row[4])

    def tally(self, election_id: int) -> list[TallyRow]:
        with self._cursor() as cur:
            cur.execute(
                """
                SELECT c.candidate_id, u.full_name, COUNT(v.id)
                FROM candidates c
                LEFT JOIN users u ON u.userid = c.candidate_id
                LEFT JOIN votes v ON v.election_id = c.election_id AND v.candidate_id = c.candidate_id
                WHERE c.election_id = %s
                GROUP BY c.candidate_id, u.full_name
                ORDER BY COUNT(v.id) DESC, c.candidate_id
                """,
                (election_id,),
            )
            return [TallyRow(candidate_id=r[0], name=r[1], votes=int(r[2])) for r in cur.fetchall()]

    # -- step-up verification marks -------------------------------------------

    def record_verification(self, voter_id: str, election_id: int, step: str, verified_at: datetime) -> None:
        with self._cursor() as cur:
            cur.execute(
                """
                INSERT INTO vote_verifications (voter_id, election_id, step, verified_at)
                VALUES (%s, %s, %s, %s)
                ON CONFLICT (voter_id, election_id, step)
                DO UPDATE SET verified_at = EXCLUDED.verified_at
                """,
                (voter_id, election_id, step, verified_at),
            )

    def verified_steps(self, voter_id: str, election_id: int, since: datetime) -> set[str]:
        with self._cursor() as cur:
            cur.execute(
                """
                SELECT step FROM vote_verifications
                WHERE voter_id = %s AND election_id = %s AND verified_at >= %s
                """,
                (voter_id, election_id, since),
            )
            return {row[0] for row in cur.fetchall()}

    def clear_verifications(self, voter_id: str, election_id: int) -> None:
        with self._cursor() as cur:
            cur.execute(
                "DELETE FROM vote_verifications WHERE voter_id = %s AND election_id = %s",
                (voter_id, election_id),
            )

    # -- OTP challenges ---------------------------------------------------------

    def get_challenge(self, voter_id: str) -> Challenge | None:
        with self._cursor() as cur:
            cur.execute(
                """
                SELECT voter_id, challenge_id, code, issued_at, expires_at, attempts, delivered
                FROM otp_challenges WHERE voter_id = %s
                """,
                (voter_id,),
            )
            row = cur.fetchone()
        if not row:
            return None
        return Challenge(
            voter_id=row[0],
            challenge_id=row[1],
            code=row[2],
            issued_at=row[3],
            expires_at=row[4],
            attempts=row[5],
            delivered=row[6],
        )

    def put_challenge(self, challenge: Challenge) -> None:
        """Replace any previous challenge for the voter with a fresh one."""
        with self._cursor() as cur:
            cur.execute(
                """
                INSERT INTO otp_challenges (voter_id, challenge_id, code, attempts, delivered, issued_at, expires_at)
                VALUES (%s, %s, %s, 0, FALSE, %s, %s)
                ON CONFLICT (voter_id)
                DO UPDATE SET challenge_id = EXCLUDED.challenge_id, code = EXCLUDED.code, attempts = 0,
                              delivered = FALSE, issued_at = EXCLUDED.issued_at, expires_at = EXCLUDED.expires_at
                """,
                (challenge.voter_id, challenge.challenge_id, challenge.code, challenge.issued_at, challenge.expires_at),
            )

    def mark_challenge_delivered(self, voter_id: str, challenge_id: str) -> None:
        with self._cursor() as cur:
            cur.execute(
                "UPDATE otp_challenges SET delivered = TRUE WHERE voter_id = %s AND challenge_id = %s",
                (voter_id, challenge_id),
            )

    def record_failed_attempt(self, voter_id: str, challenge_id: str, limit: int) -> int | None:
        """Atomically count a failed attempt; None once the budget is spent."""
        with self._cursor() as cur:
            cur.execute(
                """
                UPDATE otp_challenges SET attempts = attempts + 1
                WHERE voter_id = %s AND challenge_id = %s AND attempts < %s
                RETURNING attempts
                """,
                (voter_id, challenge_id, limit),
            )
            row = cur.fetchone()
        return int(row[0]) if row else None

    def consume_challenge(self, voter_id: str, challenge_id: str, limit: int) -> bool:
        with self._cursor() as cur:
            cur.execute(
                "DELETE FROM otp_challenges WHERE voter_id = %s AND challenge_id = %s AND attempts < %s",
                (voter_id, challenge_id, limit),
            )
            return cur.rowcount == 1

    def purge_expired_challenges(self, now: datetime) -> int:
        with self._cursor() as cur:
            cur.execute("DELETE FROM otp_challenges WHERE expires_at < %s", (now,))
            return cur.rowcount

    # -- revocation -------------------------------------------------------------

    def revoke_token(self, token_hash: str, expires_at: datetime) -> None:
        with self._cursor() as cur:
            cur.execute(
                """
                INSERT INTO revoked_tokens (token_hash, expires_at)
                VALUES (%s, %s)
                ON CONFLICT (token_hash) DO NOTHING
                """,
                (token_hash, expires_at),
            )

    def is_token_revoked(self, token_hash: str, now: datetime) -> bool:
        with self._cursor() as cur:
            cur.execute(
                "SELECT 1 FROM revoked_tokens WHERE token_hash = %s AND expires_at > %s",
                (token_hash, now),
            )
            return cur.fetchone() is not None

    def purge_revoked_tokens(self, now: datetime) -> int:
        with self._cursor() as cur:
            cur.execute("DELETE FROM revoked_tokens WHERE expires_at < %s", (now,))
            return cur.rowcount

    # -- push devices -------------------------------------------------------------

    def register_device(self, voter_id: str, push_token: str) -> None:
        try:
            with self._cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO user_devices (user_id, expo_token, updated_at)
                    VALUES (%s, %s, NOW())
                    ON CONFLICT (user_id)
                    DO UPDATE SET expo_token = EXCLUDED.expo_token, updated_at = NOW()
                    """,
                    (voter_id, push_token),
                )
        except pg_errors.ForeignKeyViolation as exc:
            raise VoterNotFound() from exc

    def device_tokens_for_scope(self, faculty_scope: str) -> list[str]:
        with self._cursor() as cur:
            cur.execute(
                """
                SELECT DISTINCT d.expo_token
                FROM user_devices d
                JOIN users u ON u.userid = d.user_id
                WHERE %s = %s OR u.faculty_id::TEXT = %s
                """,
                (faculty_scope, GENERAL_SCOPE, faculty_scope),
            )
            return [row[0] for row in cur.fetchall()]
