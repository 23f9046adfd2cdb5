import time
from datetime import timedelta

import pytest

from app import build_services, create_app, create_server
from conftest import png_b64
from session_utils import create_session_token


@pytest.fixture
def services(store, delivery, comparator, push_channel, clock):
    return build_services(
        store=store,
        delivery=delivery,
        comparator=comparator,
        push_channel=push_channel,
        clock=clock,
        admin_ids=frozenset({"admin"}),
    )


@pytest.fixture
def client(services):
    return create_app(services).test_client()


@pytest.fixture
def auth(clock):
    def headers(voter_id):
        return {"Authorization": f"Bearer {create_session_token(voter_id, now=clock().timestamp())}"}

    return headers


@pytest.fixture
def election_id(client, auth, clock):
    resp = client.post(
        "/elections",
        json={
            "title": "Faculty Rep",
            "start_date": (clock() + timedelta(minutes=1)).isoformat(),
            "duration": 60,
            "faculty_scope": "general",
        },
        headers=auth("admin"),
    )
    assert resp.status_code == 201
    return resp.get_json()["id"]


@pytest.fixture
def ongoing(client, auth, clock, election_id):
    for candidate in ("v2", "v3"):
        resp = client.post(f"/elections/{election_id}/candidates", json={"bio": candidate}, headers=auth(candidate))
        assert resp.status_code == 201
    client.post("/kyc/face", json={"image": png_b64()}, headers=auth("v1"))
    clock.advance(minutes=1)
    resp = client.post(f"/elections/{election_id}/advance", headers=auth("v1"))
    assert resp.get_json()["status"] == "ongoing"
    return election_id


def _verify(client, auth, delivery, election_id, voter_id="v1", candidate="v2"):
    base = f"/elections/{election_id}/candidates/{candidate}"
    assert client.post(f"{base}/otp", headers=auth(voter_id)).status_code == 200
    resp = client.post(f"{base}/verify-otp", json={"code": delivery.last_code}, headers=auth(voter_id))
    assert resp.status_code == 200
    return client.post(f"{base}/verify-face", json={"image": png_b64(data_uri=True)}, headers=auth(voter_id))


def test_full_voting_flow(client, auth, delivery, ongoing):
    headers = auth("v1")

    resp = client.get(f"/elections/{ongoing}/vote-status", headers=headers)
    assert resp.get_json() == {"has_voted": False, "election_id": ongoing, "voting_open": True}

    resp = client.post(f"/elections/{ongoing}/candidates/v2/vote", headers=headers)
    assert resp.status_code == 403
    assert resp.get_json()["error"] == "verification_required"

    resp = _verify(client, auth, delivery, ongoing)
    assert resp.status_code == 200
    assert resp.get_json()["similarity"] == 92.0

    resp = client.post(f"/elections/{ongoing}/candidates/v2/vote", headers=headers)
    assert resp.status_code == 201
    body = resp.get_json()
    assert body["status"] == "SUCCESS"
    assert body["reference_number"].startswith("EV-")

    resp = client.post(f"/elections/{ongoing}/candidates/v3/vote", headers=headers)
    assert resp.status_code == 409
    assert resp.get_json()["error"] == "already_voted"

    resp = client.post(f"/elections/{ongoing}/candidates/v3/otp", headers=headers)
    assert resp.status_code == 409

    resp = client.get(f"/elections/{ongoing}/results", headers=headers)
    assert resp.get_json()["results"] == [
        {"candidate_id": "v2", "name": "Bola Ade", "votes": 1},
        {"candidate_id": "v3", "name": "Chidi Eze", "votes": 0},
    ]

    resp = client.get(f"/elections/{ongoing}/receipt", headers=headers)
    assert resp.status_code == 200
    assert resp.get_json()["reference_number"] == body["reference_number"]
    assert resp.get_json()["candidate_name"] == "Bola Ade"

    resp = client.get(f"/elections/{ongoing}/vote-status", headers=headers)
    assert resp.get_json()["has_voted"] is True


def test_status_change_pushes_to_registered_devices(client, auth, clock, push_channel, election_id):
    resp = client.post("/devices", json={"expo_token": "ExponentPushToken[v1]"}, headers=auth("v1"))
    assert resp.status_code == 200
    clock.advance(minutes=1)
    resp = client.post(f"/elections/{election_id}/status", json={"status": "ongoing"}, headers=auth("admin"))
    assert resp.status_code == 200
    assert push_channel.batches[-1][0]["title"] == "Election Started"


def test_premature_status_update_rejected(client, auth, election_id):
    resp = client.post(f"/elections/{election_id}/status", json={"status": "ongoing"}, headers=auth("admin"))
    assert resp.status_code == 400
    assert resp.get_json()["error"] == "invalid_transition"


def test_status_update_requires_admin(client, auth, election_id):
    resp = client.post(f"/elections/{election_id}/status", json={"status": "ongoing"}, headers=auth("v1"))
    assert resp.status_code == 403
    assert resp.get_json()["error"] == "admin_required"


def test_missing_token(client, election_id):
    resp = client.get(f"/elections/{election_id}")
    assert resp.status_code == 401
    assert resp.get_json()["error"] == "invalid_credential"


def test_invalid_body_lists_fields(client, auth):
    resp = client.post("/elections", json={"title": "", "duration": 0}, headers=auth("admin"))
    assert resp.status_code == 400
    body = resp.get_json()
    assert body["error"] == "invalid_request"
    fields = {f["field"] for f in body["details"]["fields"]}
    assert {"title", "start_date", "duration"} <= fields


def test_unknown_election(client, auth):
    resp = client.get("/elections/404", headers=auth("v1"))
    assert resp.status_code == 404
    assert resp.get_json()["error"] == "election_not_found"


def test_unknown_route_is_json(client):
    resp = client.get("/nope")
    assert resp.status_code == 404
    assert resp.get_json()["error"] == "not_found"


def test_self_vote(client, auth, ongoing):
    resp = client.post(f"/elections/{ongoing}/candidates/v2/otp", headers=auth("v2"))
    assert resp.status_code == 400
    assert resp.get_json()["error"] == "self_vote"


def test_face_mismatch(client, auth, delivery, comparator, ongoing):
    comparator.similarities = [50.0]
    resp = _verify(client, auth, delivery, ongoing)
    assert resp.status_code == 422
    assert resp.get_json()["details"] == {"similarity": 50.0}


def test_face_before_otp(client, auth, ongoing):
    resp = client.post(
        f"/elections/{ongoing}/candidates/v2/verify-face", json={"image": png_b64()}, headers=auth("v1")
    )
    assert resp.status_code == 403
    assert resp.get_json()["details"]["missing"] == ["otp"]


def test_wrong_otp(client, auth, delivery, ongoing):
    base = f"/elections/{ongoing}/candidates/v2"
    client.post(f"{base}/otp", headers=auth("v1"))
    wrong = "000000" if delivery.last_code != "000000" else "111111"
    resp = client.post(f"{base}/verify-otp", json={"code": wrong}, headers=auth("v1"))
    assert resp.status_code == 401
    assert resp.get_json()["details"]["attempts_remaining"] == 4


def test_otp_rate_limited(client, auth, ongoing):
    base = f"/elections/{ongoing}/candidates/v2"
    assert client.post(f"{base}/otp", headers=auth("v1")).status_code == 200
    resp = client.post(f"{base}/otp", headers=auth("v1"))
    assert resp.status_code == 429
    assert resp.get_json()["error"] == "rate_limited"


def test_undelivered_otp_reported(client, auth, delivery, ongoing):
    delivery.fail = True
    resp = client.post(f"/elections/{ongoing}/candidates/v2/otp", headers=auth("v1"))
    assert resp.status_code == 200
    assert resp.get_json()["delivered"] is False


def test_candidate_registration_closed_once_ongoing(client, auth, ongoing):
    resp = client.post(f"/elections/{ongoing}/candidates", json={}, headers=auth("v4"))
    assert resp.status_code == 400
    assert resp.get_json()["error"] == "election_not_upcoming"


def test_receipt_without_vote(client, auth, ongoing):
    resp = client.get(f"/elections/{ongoing}/receipt", headers=auth("v3"))
    assert resp.status_code == 404
    assert resp.get_json()["error"] == "no_vote"
    assert resp.get_json()["details"] == {"election_id": ongoing}


def test_logout_revokes_token(client, auth):
    headers = auth("v1")
    assert client.post("/auth/logout", headers=headers).status_code == 200
    resp = client.post("/auth/logout", headers=headers)
    assert resp.status_code == 401
    assert resp.get_json()["error"] == "revoked_credential"


def test_invalid_push_token(client, auth):
    resp = client.post("/devices", json={"expo_token": "not-a-token"}, headers=auth("v1"))
    assert resp.status_code == 400
    assert resp.get_json()["error"] == "invalid_push_token"


def test_academic_claim_once(client, auth):
    body = {"faculty": "Law", "department": "Private Law", "matric_no": "law/21/001", "level": "300"}
    resp = client.post("/kyc/academic", json=body, headers=auth("admin"))
    assert resp.status_code == 201
    assert resp.get_json()["faculty_id"] == 1250

    resp = client.post("/kyc/academic", json=body, headers=auth("admin"))
    assert resp.status_code == 409

    resp = client.post("/kyc/academic", json=body, headers=auth("v1"))
    assert resp.get_json()["error"] == "matric_number_taken"


def test_unknown_faculty(client, auth):
    body = {"faculty": "Astrology", "department": "x", "matric_no": "a1", "level": "100"}
    resp = client.post("/kyc/academic", json=body, headers=auth("v1"))
    assert resp.status_code == 400
    assert resp.get_json()["error"] == "unknown_faculty"


def test_face_enrollment_rejects_bad_image(client, auth):
    resp = client.post("/kyc/face", json={"image": "data:image/gif;base64,R0lG"}, headers=auth("v1"))
    assert resp.status_code == 400
    assert resp.get_json()["error"] == "invalid_image"


def test_health(client):
    assert client.get("/health").get_json() == {"status": "ok", "store": "MemoryStore"}


def test_vote_status_reports_closed_election(client, auth, election_id):
    resp = client.get(f"/elections/{election_id}/vote-status", headers=auth("v1"))
    assert resp.get_json() == {"has_voted": False, "election_id": election_id, "voting_open": False}


def test_create_server_starts_lifecycle_sweep(services, auth, clock, election_id):
    clock.advance(minutes=1)
    app = create_server(services, sweep_seconds=0.01)
    scheduler = app.extensions["lifecycle_scheduler"]
    try:
        assert scheduler._thread.is_alive()
        for _ in range(200):
            if services.lifecycle.get(election_id).status == "ongoing":
                break
            time.sleep(0.01)
        assert services.lifecycle.get(election_id).status == "ongoing"
    finally:
        scheduler.stop(timeout=1)
    assert not scheduler._thread.is_alive()
