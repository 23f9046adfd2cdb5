from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

from config import GENERAL_SCOPE

STATUS_UPCOMING = "upcoming"
STATUS_ONGOING = "ongoing"
STATUS_ENDED = "ended"
STATUSES = (STATUS_UPCOMING, STATUS_ONGOING, STATUS_ENDED)

STEP_OTP = "otp"
STEP_FACE = "face"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


@dataclass
class Voter:
    voter_id: str
    email: str
    full_name: str | None = None
    faculty_id: int | None = None


@dataclass
class Election:
    election_id: int
    title: str
    start_date: datetime
    duration: int
    status: str = STATUS_UPCOMING
    faculty_scope: str = GENERAL_SCOPE

    @property
    def end_date(self) -> datetime:
        return self.start_date + timedelta(minutes=self.duration)

    def admits(self, faculty_id: int | None) -> bool:
        if self.faculty_scope == GENERAL_SCOPE:
            return True
        return faculty_id is not None and str(faculty_id) == self.faculty_scope

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.election_id,
            "title": self.title,
            "start_date": _iso(self.start_date),
            "end_date": _iso(self.end_date),
            "duration": self.duration,
            "status": self.status,
            "faculty_scope": self.faculty_scope,
        }


@dataclass
class Candidate:
    election_id: int
    candidate_id: str
    bio: str = ""
    manifesto: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "election_id": self.election_id,
            "candidate_id": self.candidate_id,
            "bio": self.bio,
            "manifesto": self.manifesto,
        }


@dataclass
class Vote:
    voter_id: str
    election_id: int
    candidate_id: str
    reference_number: str
    cast_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "election_id": self.election_id,
            "candidate_id": self.candidate_id,
            "reference_number": self.reference_number,
            "timestamp": _iso(self.cast_at),
        }


@dataclass
class Challenge:
    voter_id: str
    challenge_id: str
    code: str
    issued_at: datetime
    expires_at: datetime
    attempts: int = 0
    delivered: bool = False


@dataclass
class AcademicClaim:
    voter_id: str
    matric_no: str
    faculty_id: int
    faculty_name: str
    department: str
    level: str


@dataclass
class TallyRow:
    candidate_id: str
    name: str | None
    votes: int

    def to_dict(self) -> dict[str, Any]:
        return {"candidate_id": self.candidate_id, "name": self.name, "votes": self.votes}
