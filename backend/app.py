import logging
from concurrent.futures import Executor, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable

from flask import Blueprint, Flask, current_app, g, jsonify, request
from flask_cors import CORS
from pydantic import BaseModel, ValidationError
from werkzeug.exceptions import HTTPException

import config
from biometric import BiometricMatcher, HttpFaceComparator
from email_service import EmailChallengeDelivery
from errors import (
    AdminRequired,
    AlreadyVoted,
    FaceMismatch,
    InvalidCredential,
    InvalidPushToken,
    InvalidRequest,
    NoVoteRecorded,
    VerificationRequired,
    VoterNotFound,
    VotingError,
)
from kyc import claim_academic_details
from ledger import VoteLedger
from lifecycle import ElectionLifecycleManager, EventPublisher, LifecycleScheduler
from memory_store import MemoryStore
from models import STEP_FACE, STEP_OTP, utcnow
from notifications import ExpoPushChannel, NotificationFanout, is_push_token
from otp import ChallengeIssuer
from revocation import CredentialVerifier, Identity, RevocationRegistry
from schemas import (
    AcademicClaimRequest,
    CandidateRequest,
    CreateElectionRequest,
    DeviceRequest,
    FaceImageRequest,
    StatusUpdateRequest,
    VerifyOtpRequest,
)
from store import PostgresStore
from verification import VerificationTracker

logging.basicConfig(level=config.LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)


@dataclass
class Services:
    store: Any
    clock: Callable[[], datetime]
    lifecycle: ElectionLifecycleManager
    challenges: ChallengeIssuer
    biometric: BiometricMatcher
    ledger: VoteLedger
    verifications: VerificationTracker
    revocation: RevocationRegistry
    credentials: CredentialVerifier
    fanout: NotificationFanout
    admin_ids: frozenset[str] = field(default_factory=lambda: config.ADMIN_VOTER_IDS)


def build_services(store=None, delivery=None, comparator=None, push_channel=None,
                   clock: Callable[[], datetime] = utcnow, executor: Executor | None = None,
                   admin_ids: frozenset[str] | None = None) -> Services:
    if store is None:
        store = MemoryStore() if config.STORE_BACKEND == "memory" else PostgresStore()
    fanout = NotificationFanout(store, push_channel or ExpoPushChannel())
    verifications = VerificationTracker(store, clock=clock)
    revocation = RevocationRegistry(store, clock=clock)
    lifecycle = ElectionLifecycleManager(store, events=EventPublisher(fanout, executor), clock=clock)
    return Services(
        store=store,
        clock=clock,
        lifecycle=lifecycle,
        challenges=ChallengeIssuer(store, delivery or EmailChallengeDelivery(), clock=clock),
        biometric=BiometricMatcher(store, comparator or HttpFaceComparator()),
        ledger=VoteLedger(store, clock=clock, gate=verifications, lifecycle=lifecycle),
        verifications=verifications,
        revocation=revocation,
        credentials=CredentialVerifier(revocation, clock=clock),
        fanout=fanout,
        admin_ids=config.ADMIN_VOTER_IDS if admin_ids is None else admin_ids,
    )


api = Blueprint("api", __name__)


def _services() -> Services:
    return current_app.extensions["voting"]


def _parse(model: type[BaseModel]) -> BaseModel:
    data = request.get_json(silent=True)
    if data is None:
        data = {}
    try:
        return model.model_validate(data)
    except ValidationError as exc:
        fields = [
            {"field": ".".join(str(p) for p in err["loc"]) or "body", "message": err["msg"]}
            for err in exc.errors()
        ]
        raise InvalidRequest(fields=fields) from exc


def _identity() -> Identity:
    if "identity" not in g:
        auth_header = request.headers.get("Authorization", "")
        if not auth_header.startswith("Bearer "):
            raise InvalidCredential("Missing bearer session token")
        token = auth_header.split(" ", 1)[1].strip()
        g.identity = _services().credentials.verify(token)
    return g.identity


def _require_admin() -> Identity:
    identity = _identity()
    if identity.voter_id not in _services().admin_ids:
        raise AdminRequired()
    return identity


def handle_voting_error(exc: VotingError):
    if exc.retryable:
        logger.warning("%s on %s %s: %s", exc.code, request.method, request.path, exc)
    return jsonify(exc.to_dict()), exc.status


# -- elections -------------------------------------------------------------------

@api.route("/elections", methods=["POST"])
def create_election():
    identity = _require_admin()
    body = _parse(CreateElectionRequest)
    election = _services().lifecycle.create(
        body.title, body.start_date, body.duration, body.faculty_scope, created_by=identity.voter_id
    )
    return jsonify(election.to_dict()), 201


@api.route("/elections/<int:election_id>", methods=["GET"])
def get_election(election_id: int):
    _identity()
    return jsonify(_services().lifecycle.get(election_id).to_dict())


@api.route("/elections/<int:election_id>/status", methods=["POST"])
def update_election_status(election_id: int):
    _require_admin()
    body = _parse(StatusUpdateRequest)
    election = _services().lifecycle.transition(election_id, body.status)
    return jsonify(election.to_dict())


@api.route("/elections/<int:election_id>/advance", methods=["POST"])
def advance_election(election_id: int):
    _identity()
    election = _services().lifecycle.advance(election_id)
    return jsonify(election.to_dict())


@api.route("/elections/<int:election_id>/candidates", methods=["POST"])
def register_candidate(election_id: int):
    identity = _identity()
    body = _parse(CandidateRequest)
    candidate = _services().lifecycle.register_candidate(election_id, identity.voter_id, body.bio, body.manifesto)
    return jsonify(candidate.to_dict()), 201


@api.route("/elections/<int:election_id>/results", methods=["GET"])
def election_results(election_id: int):
    _identity()
    services = _services()
    election = services.lifecycle.get(election_id)
    rows = services.ledger.get_results(election_id)
    return jsonify(
        {
            "election_id": election_id,
            "status": election.status,
            "results": [row.to_dict() for row in rows],
        }
    )


# -- vote pipeline -------------------------------------------------------------

@api.route("/elections/<int:election_id>/vote-status", methods=["GET"])
def vote_status(election_id: int):
    identity = _identity()
    services = _services()
    body = {"election_id": election_id, "voting_open": services.lifecycle.is_voting_open(election_id)}
    vote = services.ledger.vote_status(identity.voter_id, election_id)
    if vote is None:
        return jsonify({"has_voted": False, **body})
    return jsonify({"has_voted": True, **body, "timestamp": vote.cast_at.isoformat()})


@api.route("/elections/<int:election_id>/candidates/<candidate_id>/otp", methods=["POST"])
def issue_vote_otp(election_id: int, candidate_id: str):
    identity = _identity()
    services = _services()
    services.ledger.check_ballot(identity.voter_id, election_id, candidate_id)
    if services.ledger.vote_status(identity.voter_id, election_id) is not None:
        raise AlreadyVoted(election_id=election_id)

    voter = services.store.get_voter(identity.voter_id)
    if voter is None:
        raise VoterNotFound()
    result = services.challenges.issue(identity.voter_id, voter.email)
    body = result.to_dict()
    body["message"] = "Verification code sent" if result.delivered else "Verification code could not be delivered, request a new one"
    return jsonify(body), 200


@api.route("/elections/<int:election_id>/candidates/<candidate_id>/verify-otp", methods=["POST"])
def verify_vote_otp(election_id: int, candidate_id: str):
    identity = _identity()
    body = _parse(VerifyOtpRequest)
    services = _services()
    services.ledger.check_ballot(identity.voter_id, election_id, candidate_id)
    services.challenges.verify(identity.voter_id, body.code)
    services.verifications.record(identity.voter_id, election_id, STEP_OTP)
    return jsonify({"message": "OTP verified"})


@api.route("/elections/<int:election_id>/candidates/<candidate_id>/verify-face", methods=["POST"])
def verify_vote_face(election_id: int, candidate_id: str):
    identity = _identity()
    body = _parse(FaceImageRequest)
    services = _services()
    services.ledger.check_ballot(identity.voter_id, election_id, candidate_id)
    if STEP_OTP not in services.verifications.passed(identity.voter_id, election_id):
        raise VerificationRequired("Verify the OTP before the face check", missing=[STEP_OTP])

    result = services.biometric.match(identity.voter_id, body.image)
    if not result.is_match:
        raise FaceMismatch(similarity=result.similarity)
    services.verifications.record(identity.voter_id, election_id, STEP_FACE)
    return jsonify({"message": "Face verified", **result.to_dict()})


@api.route("/elections/<int:election_id>/candidates/<candidate_id>/vote", methods=["POST"])
def cast_vote(election_id: int, candidate_id: str):
    identity = _identity()
    vote = _services().ledger.cast_vote(identity.voter_id, election_id, candidate_id)
    return jsonify({"status": "SUCCESS", **vote.to_dict()}), 201


@api.route("/elections/<int:election_id>/receipt", methods=["GET"])
def vote_receipt(election_id: int):
    identity = _identity()
    services = _services()
    election = services.lifecycle.get(election_id)
    vote = services.ledger.vote_status(identity.voter_id, election_id)
    if vote is None:
        raise NoVoteRecorded(election_id=election_id)
    candidate = services.store.get_voter(vote.candidate_id)
    return jsonify(
        {
            **vote.to_dict(),
            "election_title": election.title,
            "candidate_name": candidate.full_name if candidate else None,
        }
    )


# -- account, devices, KYC -----------------------------------------------------

@api.route("/auth/logout", methods=["POST"])
def logout():
    identity = _identity()
    _services().revocation.revoke(identity.token, identity.expires_at)
    return jsonify({"message": "Logged out"})


@api.route("/devices", methods=["POST"])
def register_device():
    identity = _identity()
    body = _parse(DeviceRequest)
    if not is_push_token(body.expo_token):
        raise InvalidPushToken()
    _services().store.register_device(identity.voter_id, body.expo_token)
    logger.info("Registered device for voter %s", identity.voter_id)
    return jsonify({"message": "Device registered successfully"})


@api.route("/kyc/face", methods=["POST"])
def enroll_face():
    identity = _identity()
    body = _parse(FaceImageRequest)
    _services().biometric.enroll(identity.voter_id, body.image)
    return jsonify({"message": "Face data stored successfully"}), 201


@api.route("/kyc/academic", methods=["POST"])
def claim_academic():
    identity = _identity()
    body = _parse(AcademicClaimRequest)
    claim = claim_academic_details(
        _services().store, identity.voter_id, body.faculty, body.department, body.matric_no, body.level
    )
    return jsonify({"message": "Academic data stored successfully", "faculty_id": claim.faculty_id}), 201


@api.route("/health")
def health():
    return jsonify({"status": "ok", "store": type(_services().store).__name__})


def create_app(services: Services | None = None) -> Flask:
    app = Flask(__name__)
    CORS(app)
    app.extensions["voting"] = services or build_services()
    app.register_blueprint(api)
    app.register_error_handler(VotingError, handle_voting_error)

    @app.errorhandler(HTTPException)
    def handle_http_error(exc: HTTPException):
        return jsonify({"error": exc.name.lower().replace(" ", "_"), "message": exc.description}), exc.code

    @app.errorhandler(Exception)
    def handle_unexpected(exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.path)
        return jsonify({"error": "internal_error", "message": "Internal server error"}), 500

    return app


def create_server(services: Services | None = None, sweep_seconds: float = config.LIFECYCLE_SWEEP_SECONDS) -> Flask:
    """Production entrypoint: schema, notification workers and the lifecycle sweep.

    Run under a WSGI server with ``gunicorn 'app:create_server()'``.
    """
    if services is None:
        services = build_services(executor=ThreadPoolExecutor(max_workers=config.NOTIFY_WORKERS))
    services.store.ensure_schema()
    scheduler = LifecycleScheduler(
        services.lifecycle,
        sweep_seconds,
        housekeeping=[
            lambda: services.store.purge_expired_challenges(services.clock()),
            services.revocation.purge_expired,
        ],
    )
    scheduler.start()
    app = create_app(services)
    app.extensions["lifecycle_scheduler"] = scheduler
    return app


if __name__ == "__main__":
    create_server().run(debug=False)
