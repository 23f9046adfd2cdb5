import re
import threading
from datetime import timedelta

import pytest

from errors import (
    AlreadyVoted,
    ElectionNotFound,
    ElectionNotOngoing,
    NotEligible,
    PersistenceError,
    SelfVote,
    UnknownCandidate,
    VerificationRequired,
    VoterNotFound,
)
from ledger import REFERENCE_ALPHABET, VoteLedger, generate_reference_number
from lifecycle import ElectionLifecycleManager
from models import STEP_FACE, STEP_OTP
from verification import VerificationTracker

REFERENCE_PATTERN = re.compile(r"^EV-[A-HJ-NP-Z2-9]{4}-[A-HJ-NP-Z2-9]{4}$")


@pytest.fixture
def manager(store, clock):
    return ElectionLifecycleManager(store, clock=clock)


def _open_election(manager, clock, scope="general", candidates=("v2", "v3", "v4")):
    election = manager.create("Student Union", clock() + timedelta(minutes=1), 120, scope)
    for candidate_id in candidates:
        manager.register_candidate(election.election_id, candidate_id, "", "")
    clock.advance(minutes=1)
    return manager.advance(election.election_id)


@pytest.fixture
def election(manager, clock):
    return _open_election(manager, clock)


@pytest.fixture
def ledger(store, clock):
    return VoteLedger(store, clock=clock)


def test_reference_number_format():
    refs = {generate_reference_number() for _ in range(200)}
    assert all(REFERENCE_PATTERN.match(ref) for ref in refs)
    assert not set("01IO") & set(REFERENCE_ALPHABET)


def test_cast_records_vote(ledger, election, clock):
    vote = ledger.cast_vote("v1", election.election_id, "v2")
    assert REFERENCE_PATTERN.match(vote.reference_number)
    assert vote.cast_at == clock()
    assert ledger.vote_status("v1", election.election_id) == vote


def test_second_vote_rejected(ledger, election):
    ledger.cast_vote("v1", election.election_id, "v2")
    with pytest.raises(AlreadyVoted):
        ledger.cast_vote("v1", election.election_id, "v3")


def test_concurrent_casts_by_one_voter(ledger, election):
    outcomes = []
    lock = threading.Lock()
    barrier = threading.Barrier(50)

    def worker(candidate_id):
        barrier.wait()
        try:
            ledger.cast_vote("v1", election.election_id, candidate_id)
            result = "ok"
        except AlreadyVoted:
            result = "dup"
        with lock:
            outcomes.append(result)

    threads = [threading.Thread(target=worker, args=("v2" if i % 2 else "v3",)) for i in range(50)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert outcomes.count("ok") == 1
    assert outcomes.count("dup") == 49
    assert sum(row.votes for row in ledger.get_results(election.election_id)) == 1


def test_self_vote_rejected_whatever_the_election_state(ledger, manager, election, clock):
    with pytest.raises(SelfVote):
        ledger.cast_vote("v2", election.election_id, "v2")
    with pytest.raises(SelfVote):
        ledger.cast_vote("v2", 999, "v2")
    clock.advance(hours=3)
    manager.advance(election.election_id)
    with pytest.raises(SelfVote):
        ledger.cast_vote("v2", election.election_id, "v2")


def test_unknown_election(ledger):
    with pytest.raises(ElectionNotFound):
        ledger.cast_vote("v1", 999, "v2")


def test_election_must_be_ongoing(ledger, manager, clock):
    upcoming = manager.create("Later", clock() + timedelta(days=1), 60, "general")
    manager.register_candidate(upcoming.election_id, "v2", "", "")
    with pytest.raises(ElectionNotOngoing):
        ledger.cast_vote("v1", upcoming.election_id, "v2")


def test_ended_election_rejects_votes(ledger, manager, election, clock):
    clock.advance(hours=3)
    manager.advance(election.election_id)
    with pytest.raises(ElectionNotOngoing):
        ledger.cast_vote("v1", election.election_id, "v2")


def test_closed_election_reported_before_unknown_candidate(ledger, manager, clock):
    upcoming = manager.create("Later", clock() + timedelta(days=1), 60, "general")
    with pytest.raises(ElectionNotOngoing):
        ledger.cast_vote("v1", upcoming.election_id, "nobody")


def test_status_read_through_lifecycle(store, clock, election):
    seen = []

    class RecordingManager(ElectionLifecycleManager):
        def require_ongoing(self, election_id):
            seen.append(election_id)
            return super().require_ongoing(election_id)

    ledger = VoteLedger(store, clock=clock, lifecycle=RecordingManager(store, clock=clock))
    ledger.cast_vote("v1", election.election_id, "v2")
    assert seen == [election.election_id]


def test_unknown_candidate(ledger, election):
    with pytest.raises(UnknownCandidate):
        ledger.cast_vote("v1", election.election_id, "v1-friend")


def test_unknown_voter(ledger, election):
    with pytest.raises(VoterNotFound):
        ledger.cast_vote("ghost", election.election_id, "v2")


def test_faculty_scoped_election(ledger, manager, clock):
    law = _open_election(manager, clock, scope="1250", candidates=("v4",))
    with pytest.raises(NotEligible):
        ledger.cast_vote("v1", law.election_id, "v4")


def test_tally_includes_candidates_without_votes(ledger, election):
    ledger.cast_vote("v1", election.election_id, "v2")
    ledger.cast_vote("admin", election.election_id, "v2")
    results = {row.candidate_id: row.votes for row in ledger.get_results(election.election_id)}
    assert results == {"v2": 2, "v3": 0, "v4": 0}


def test_results_for_unknown_election(ledger):
    with pytest.raises(ElectionNotFound):
        ledger.get_results(42)


def test_reference_collision_is_retried(store, clock, election):
    VoteLedger(store, clock=clock, reference_factory=lambda: "EV-AAAA-AAAA").cast_vote("v1", election.election_id, "v2")

    refs = iter(["EV-AAAA-AAAA", "EV-BBBB-BBBB"])
    vote = VoteLedger(store, clock=clock, reference_factory=lambda: next(refs)).cast_vote(
        "v3", election.election_id, "v2"
    )
    assert vote.reference_number == "EV-BBBB-BBBB"


def test_reference_collisions_exhausted(store, clock, election):
    stuck = VoteLedger(store, clock=clock, reference_factory=lambda: "EV-AAAA-AAAA")
    stuck.cast_vote("v1", election.election_id, "v2")
    with pytest.raises(PersistenceError):
        stuck.cast_vote("v3", election.election_id, "v2")
    assert store.get_vote("v3", election.election_id) is None


def test_gate_requires_both_steps(store, clock, election):
    tracker = VerificationTracker(store, clock=clock)
    ledger = VoteLedger(store, clock=clock, gate=tracker)

    with pytest.raises(VerificationRequired) as exc_info:
        ledger.cast_vote("v1", election.election_id, "v2")
    assert exc_info.value.details["missing"] == [STEP_OTP, STEP_FACE]

    tracker.record("v1", election.election_id, STEP_OTP)
    with pytest.raises(VerificationRequired):
        ledger.cast_vote("v1", election.election_id, "v2")

    tracker.record("v1", election.election_id, STEP_FACE)
    ledger.cast_vote("v1", election.election_id, "v2")
    assert tracker.passed("v1", election.election_id) == set()

    with pytest.raises(AlreadyVoted):
        ledger.cast_vote("v1", election.election_id, "v2")


def test_gate_marks_expire(store, clock, election):
    tracker = VerificationTracker(store, clock=clock)
    ledger = VoteLedger(store, clock=clock, gate=tracker)
    tracker.record("v1", election.election_id, STEP_OTP)
    tracker.record("v1", election.election_id, STEP_FACE)
    clock.advance(minutes=11)
    with pytest.raises(VerificationRequired):
        ledger.cast_vote("v1", election.election_id, "v2")
