import base64
from datetime import datetime, timedelta, timezone

import pytest

from memory_store import MemoryStore
from models import Voter

PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00\x00\x00\rIHDR" + b"\x00" * 32
JPEG_BYTES = b"\xff\xd8\xff\xe0" + b"\x00" * 32


def png_b64(data_uri: bool = False) -> str:
    encoded = base64.b64encode(PNG_BYTES).decode("ascii")
    return f"data:image/png;base64,{encoded}" if data_uri else encoded


class FakeClock:
    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class FakeDelivery:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.sent: list[tuple[str, str]] = []

    def send(self, address, code):
        if self.fail:
            return False
        self.sent.append((address, code))
        return True

    @property
    def last_code(self) -> str:
        return self.sent[-1][1]


class FakeComparator:
    def __init__(self, similarities=None) -> None:
        self.similarities = [92.0] if similarities is None else similarities
        self.calls = 0

    def compare(self, reference, target):
        self.calls += 1
        return list(self.similarities)


class FakePushChannel:
    def __init__(self, fail_batches=()) -> None:
        self.fail_batches = set(fail_batches)
        self.batches: list[list[dict]] = []

    def send_batch(self, messages):
        index = len(self.batches)
        self.batches.append(messages)
        if index in self.fail_batches:
            raise RuntimeError(f"batch {index} exploded")
        return [{"status": "ok", "id": f"ticket-{index}-{i}"} for i in range(len(messages))]


@pytest.fixture(autouse=True)
def session_secret(monkeypatch):
    monkeypatch.setenv("SESSION_SECRET", "test-session-secret")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    store = MemoryStore()
    store.add_voter(Voter(voter_id="admin", email="admin@uni.edu", full_name="Election Admin"))
    store.add_voter(Voter(voter_id="v1", email="v1@uni.edu", full_name="Ada Obi", faculty_id=1050))
    store.add_voter(Voter(voter_id="v2", email="v2@uni.edu", full_name="Bola Ade", faculty_id=1050))
    store.add_voter(Voter(voter_id="v3", email="v3@uni.edu", full_name="Chidi Eze", faculty_id=1050))
    store.add_voter(Voter(voter_id="v4", email="v4@uni.edu", full_name="Dayo Lawal", faculty_id=1250))
    return store


@pytest.fixture
def delivery():
    return FakeDelivery()


@pytest.fixture
def comparator():
    return FakeComparator()


@pytest.fixture
def push_channel():
    return FakePushChannel()
