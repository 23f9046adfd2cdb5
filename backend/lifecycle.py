"""Election status state machine.

Status only ever moves ``upcoming -> ongoing -> ended``, and only once the
clock has passed the relevant boundary. Every move is a conditional update on
the expected prior status, so concurrent observers of the same boundary
collapse into one transition and one status-change event.
"""
import logging
import threading
from concurrent.futures import Executor
from datetime import datetime
from typing import Callable

from errors import (
    ElectionNotFound,
    ElectionNotOngoing,
    ElectionNotUpcoming,
    InvalidTransition,
    NotEligible,
    VoterNotFound,
)
from models import STATUS_ENDED, STATUS_ONGOING, STATUS_UPCOMING, STATUSES, Candidate, Election, utcnow

logger = logging.getLogger(__name__)

NEXT_STATUS = {STATUS_UPCOMING: STATUS_ONGOING, STATUS_ONGOING: STATUS_ENDED}


def due_at(election: Election, status: str) -> datetime | None:
    """Earliest instant at which ``election`` may hold ``status``."""
    if status == STATUS_ONGOING:
        return election.start_date
    if status == STATUS_ENDED:
        return election.end_date
    return None


class EventPublisher:
    """Best-effort delivery of status-change events to the notification fan-out."""

    def __init__(self, fanout=None, executor: Executor | None = None) -> None:
        self.fanout = fanout
        self.executor = executor

    def election_created(self, election: Election) -> None:
        self._publish("election_created", election)

    def status_changed(self, election: Election, new_status: str) -> None:
        self._publish("election_status_changed", election, new_status)

    def _publish(self, event: str, election: Election, *args) -> None:
        if self.fanout is None:
            return
        if self.executor is not None:
            try:
                self.executor.submit(self._deliver, event, election, *args)
            except RuntimeError as exc:
                logger.error("Could not schedule %s notification for election %s: %s", event, election.election_id, exc)
            return
        self._deliver(event, election, *args)

    def _deliver(self, event: str, election: Election, *args) -> None:
        try:
            getattr(self.fanout, event)(election, *args)
        except Exception:  # noqa: BLE001
            logger.exception("%s notification failed for election %s", event, election.election_id)


class ElectionLifecycleManager:
    def __init__(self, store, events: EventPublisher | None = None,
                 clock: Callable[[], datetime] = utcnow) -> None:
        self.store = store
        self.events = events or EventPublisher()
        self.clock = clock

    def get(self, election_id: int) -> Election:
        election = self.store.get_election(election_id)
        if election is None:
            raise ElectionNotFound(election_id=election_id)
        return election

    def create(self, title: str, start_date: datetime, duration: int, faculty_scope: str,
               created_by: str | None = None) -> Election:
        election = self.store.create_election(title, start_date, duration, faculty_scope, created_by)
        logger.info("Election %s %r created for %s, starts %s", election.election_id, title,
                    faculty_scope, start_date.isoformat())
        self.events.election_created(election)
        return election

    def register_candidate(self, election_id: int, voter_id: str, bio: str, manifesto: str) -> Candidate:
        election = self.get(election_id)
        if election.status != STATUS_UPCOMING:
            raise ElectionNotUpcoming(status=election.status)
        voter = self.store.get_voter(voter_id)
        if voter is None:
            raise VoterNotFound()
        if not election.admits(voter.faculty_id):
            raise NotEligible(faculty_scope=election.faculty_scope)

        candidate = Candidate(election_id=election_id, candidate_id=voter_id, bio=bio, manifesto=manifesto)
        if not self.store.add_candidate(candidate):
            # The election started between the read above and the insert.
            raise ElectionNotUpcoming()
        logger.info("Voter %s registered as candidate in election %s", voter_id, election_id)
        return candidate

    def transition(self, election_id: int, proposed: str, now: datetime | None = None) -> Election:
        now = now or self.clock()
        if proposed not in STATUSES:
            raise InvalidTransition(f"Unknown status {proposed!r}", proposed=proposed)

        election = self.get(election_id)
        current = election.status

        if current == proposed:
            # A retry of a forward move someone else already made.
            boundary = due_at(election, proposed)
            if boundary is not None and now >= boundary:
                return election
            raise InvalidTransition(f"Election is already {current}", current=current, proposed=proposed)

        if NEXT_STATUS.get(current) != proposed:
            raise InvalidTransition(
                f"Cannot move election from {current} to {proposed}", current=current, proposed=proposed
            )

        boundary = due_at(election, proposed)
        if now < boundary:
            raise InvalidTransition(
                f"Election cannot be {proposed} before {boundary.isoformat()}",
                current=current,
                proposed=proposed,
                not_before=boundary.isoformat(),
            )

        if self.store.compare_and_set_status(election_id, current, proposed):
            election.status = proposed
            logger.info("Election %s moved %s -> %s", election_id, current, proposed)
            self.events.status_changed(election, proposed)
            return election

        # Lost the race; the winner's result is ours if it made the same move.
        latest = self.get(election_id)
        if latest.status == proposed:
            return latest
        raise InvalidTransition(
            f"Cannot move election from {latest.status} to {proposed}", current=latest.status, proposed=proposed
        )

    def advance(self, election_id: int, now: datetime | None = None) -> Election:
        """Move the election as far forward as the clock allows."""
        now = now or self.clock()
        election = self.get(election_id)
        while election.status in NEXT_STATUS:
            target = NEXT_STATUS[election.status]
            if now < due_at(election, target):
                break
            election = self.transition(election_id, target, now=now)
        return election

    def sweep(self, now: datetime | None = None) -> list[Election]:
        now = now or self.clock()
        changed = []
        for election in self.store.list_open_elections():
            try:
                advanced = self.advance(election.election_id, now=now)
            except Exception:  # noqa: BLE001
                logger.exception("Lifecycle sweep failed for election %s", election.election_id)
                continue
            if advanced.status != election.status:
                changed.append(advanced)
        return changed

    def is_voting_open(self, election_id: int) -> bool:
        return self.get(election_id).status == STATUS_ONGOING

    def require_ongoing(self, election_id: int) -> Election:
        election = self.get(election_id)
        if election.status != STATUS_ONGOING:
            raise ElectionNotOngoing(status=election.status)
        return election


class LifecycleScheduler:
    """Background thread that sweeps elections on a fixed interval."""

    def __init__(self, manager: ElectionLifecycleManager, interval_seconds: float,
                 housekeeping: list[Callable[[], object]] | None = None) -> None:
        self.manager = manager
        self.interval = interval_seconds
        self.housekeeping = housekeeping or []
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def run_once(self) -> None:
        try:
            changed = self.manager.sweep()
            if changed:
                logger.info("Lifecycle sweep advanced %d election(s)", len(changed))
        except Exception:  # noqa: BLE001
            logger.exception("Lifecycle sweep failed; retrying next tick")
        for task in self.housekeeping:
            try:
                task()
            except Exception:  # noqa: BLE001
                logger.exception("Housekeeping task %r failed", task)

    def _run(self) -> None:
        while not self._stop.is_set():
            self.run_once()
            self._stop.wait(self.interval)

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="lifecycle-scheduler", daemon=True)
        self._thread.start()

    def stop(self, timeout: float | None = None) -> None:
        self._stop.set()
        if self._thread:
            self._thread.join(timeout)
