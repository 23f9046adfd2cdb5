"""Error taxonomy shared by every component.

Each error carries a stable ``code`` the client can branch on, a ``kind``
(``input``, ``state``, ``transient`` or ``security``) and the HTTP status the
API layer answers with. Transient errors are the only retryable ones.
"""
from typing import Any

INPUT = "input"
STATE = "state"
TRANSIENT = "transient"
SECURITY = "security"


class VotingError(Exception):
    code = "voting_error"
    kind = STATE
    status = 400
    message = "Request could not be completed"

    def __init__(self, message: str | None = None, **details: Any) -> None:
        super().__init__(message or self.message)
        self.details = details

    @property
    def retryable(self) -> bool:
        return self.kind == TRANSIENT

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"error": self.code, "message": str(self)}
        if self.details:
            body["details"] = self.details
        if self.retryable:
            body["retryable"] = True
        return body


# -- client input ------------------------------------------------------------

class InvalidRequest(VotingError):
    code = "invalid_request"
    kind = INPUT
    message = "Request body failed validation"


class InvalidImage(VotingError):
    code = "invalid_image"
    kind = INPUT
    message = "Invalid image format. Use base64 encoded JPEG/PNG"


class ImageTooLarge(VotingError):
    code = "image_too_large"
    kind = INPUT
    message = "Image size too large (max 10MB)"


class InvalidPushToken(VotingError):
    code = "invalid_push_token"
    kind = INPUT
    message = "Invalid Expo push token"


class UnknownFaculty(VotingError):
    code = "unknown_faculty"
    kind = INPUT
    message = "Invalid faculty name provided"


# -- state violations ----------------------------------------------------------

class VoterNotFound(VotingError):
    code = "voter_not_found"
    status = 404
    message = "User not found"


class ElectionNotFound(VotingError):
    code = "election_not_found"
    status = 404
    message = "Election not found"


class InvalidTransition(VotingError):
    code = "invalid_transition"
    message = "Election status transition is not allowed"


class ElectionNotOngoing(VotingError):
    code = "election_not_ongoing"
    message = "Election is not open for voting"


class ElectionNotUpcoming(VotingError):
    code = "election_not_upcoming"
    message = "Candidates can only register before the election starts"


class NotEligible(VotingError):
    code = "not_eligible"
    status = 403
    message = "This election is restricted to another faculty"


class UnknownCandidate(VotingError):
    code = "unknown_candidate"
    status = 404
    message = "Candidate does not exist in this election"


class SelfVote(VotingError):
    code = "self_vote"
    message = "Voters cannot vote for themselves"


class AlreadyVoted(VotingError):
    code = "already_voted"
    status = 409
    message = "A vote has already been recorded for this election"


class NoVoteRecorded(VotingError):
    code = "no_vote"
    status = 404
    message = "No vote recorded for this election"


class AlreadyCandidate(VotingError):
    code = "already_candidate"
    status = 409
    message = "Already registered as a candidate in this election"


class VerificationRequired(VotingError):
    code = "verification_required"
    status = 403
    message = "Complete OTP and face verification first"


class NoReferenceEnrolled(VotingError):
    code = "no_reference_enrolled"
    status = 404
    message = "No face reference on file. Complete KYC first"


class AlreadyEnrolled(VotingError):
    code = "already_enrolled"
    status = 409
    message = "A face reference is already on file"


class FaceMismatch(VotingError):
    code = "face_mismatch"
    status = 422
    message = "Face does not match. Please try again."


class AcademicAlreadyClaimed(VotingError):
    code = "academic_already_claimed"
    status = 409
    message = "Academic details are already verified for this account"


class MatricNumberTaken(VotingError):
    code = "matric_number_taken"
    status = 409
    message = "Matriculation number is already claimed"


# -- transient infrastructure ------------------------------------------------

class PersistenceError(VotingError):
    code = "persistence_error"
    kind = TRANSIENT
    status = 503
    message = "Database error"


class ServiceTimeout(VotingError):
    code = "service_timeout"
    kind = TRANSIENT
    status = 504
    message = "Upstream service timed out"


class ServiceUnavailable(VotingError):
    code = "service_unavailable"
    kind = TRANSIENT
    status = 502
    message = "Upstream service unavailable"


# -- security --------------------------------------------------------------------

class InvalidCredential(VotingError):
    code = "invalid_credential"
    kind = SECURITY
    status = 401
    message = "Invalid or expired token"


class RevokedCredential(VotingError):
    code = "revoked_credential"
    kind = SECURITY
    status = 401
    message = "Token is revoked, please log in again"


class AdminRequired(VotingError):
    code = "admin_required"
    kind = SECURITY
    status = 403
    message = "Administrator privileges required"


class ChallengeNotFound(VotingError):
    code = "challenge_not_found"
    kind = SECURITY
    status = 401
    message = "Verification code not found. Please request a new code."


class InvalidCode(VotingError):
    code = "invalid_code"
    kind = SECURITY
    status = 401
    message = "Invalid verification code."


class ChallengeExpired(VotingError):
    code = "challenge_expired"
    kind = SECURITY
    status = 401
    message = "Verification code expired. Please request a new code."


class TooManyAttempts(VotingError):
    code = "too_many_attempts"
    kind = SECURITY
    status = 429
    message = "Too many attempts. Please request a new code."


class RateLimited(VotingError):
    code = "rate_limited"
    kind = SECURITY
    status = 429
    message = "Please wait before requesting another code."


class ReferenceNumberTaken(PersistenceError):
    code = "reference_number_taken"
    message = "Generated reference number collided with an existing vote"
