"""End-to-end tests through the HTTP layer."""
from contextlib import ExitStack

import pytest
from fastapi.testclient import TestClient

from config import Settings
from main import create_app

from factories import donation_payload, request_payload


@pytest.fixture
def app(tmp_path):
    settings = Settings(
        database_url=f"sqlite:///{tmp_path / 'api.db'}",
        store_backend="sql",
        session_secret="test-secret",
        log_level="WARNING",
    )
    return create_app(settings)


def signed_up(stack, app, email, role):
    client = stack.enter_context(TestClient(app))
    response = client.post(
        "/register",
        json={"email": email, "name": email.split("@")[0], "password": "pw-123456", "role": role},
    )
    assert response.status_code == 201, response.text
    return client


@pytest.fixture
def clients(app):
    with ExitStack() as stack:
        yield {
            "donor": signed_up(stack, app, "donor@sharematch.org", "donor"),
            "ngo_a": signed_up(stack, app, "ngo-a@sharematch.org", "recipient"),
            "ngo_b": signed_up(stack, app, "ngo-b@sharematch.org", "recipient"),
        }


def test_root(app):
    with TestClient(app) as client:
        response = client.get("/")
    assert response.status_code == 200
    assert response.json()["service"] == "ShareMatch"


def test_register_login_and_me(app):
    with TestClient(app) as client:
        created = client.post(
            "/register",
            json={
                "email": "food-bank@sharematch.org",
                "name": "Food Bank",
                "password": "hunter22",
                "role": "recipient",
            },
        )
        assert created.status_code == 201
        assert "password_hash" not in created.json()

        duplicate = client.post(
            "/register",
            json={
                "email": "food-bank@sharematch.org",
                "name": "Again",
                "password": "x",
                "role": "donor",
            },
        )
        assert duplicate.status_code == 400

        assert client.post("/logout").status_code == 204
        assert client.get("/me").status_code == 401

        bad = client.post("/login", json={"email": "food-bank@sharematch.org", "password": "nope"})
        assert bad.status_code == 400

        good = client.post(
            "/login", json={"email": "food-bank@sharematch.org", "password": "hunter22"}
        )
        assert good.status_code == 200
        me = client.get("/me")
        assert me.status_code == 200
        assert me.json()["role"] == "recipient"


def test_writes_require_a_session(app):
    with TestClient(app) as client:
        assert client.post("/donations/", json=donation_payload()).status_code == 401
        assert client.post("/donations/abc/claim").status_code == 401
        assert client.post("/matches/reconcile").status_code == 401


def test_claim_flow(clients):
    donor, ngo_a, ngo_b = clients["donor"], clients["ngo_a"], clients["ngo_b"]

    created = donor.post("/donations/", json=donation_payload())
    assert created.status_code == 201, created.text
    donation = created.json()
    assert donation["status"] == "open"
    assert donation["version"] == 1

    request_a = ngo_a.post("/requests/", json=request_payload()).json()
    request_b = ngo_b.post("/requests/", json=request_payload(urgency="low")).json()

    suggestions = donor.get(f"/donations/{donation['id']}/suggestions")
    assert suggestions.status_code == 200
    ranked = suggestions.json()["candidates"]
    assert [c["request_id"] for c in ranked] == [request_a["id"], request_b["id"]]
    assert ranked[0]["score"] >= 85
    assert suggestions.json()["truncated"] is False

    won = ngo_a.post(f"/donations/{donation['id']}/claim", json={"request_id": request_a["id"]})
    assert won.status_code == 200, won.text
    claim = won.json()
    assert claim["warnings"] == []
    assert claim["score"] == ranked[0]["score"]

    lost = ngo_b.post(f"/donations/{donation['id']}/claim", json={"request_id": request_b["id"]})
    assert lost.status_code == 409
    assert lost.json()["kind"] == "AlreadyClaimed"

    assert donor.get(f"/donations/{donation['id']}").json()["status"] == "matched"
    assert ngo_a.get(f"/requests/{request_a['id']}").json()["fulfilled"] is True
    assert ngo_b.get(f"/requests/{request_b['id']}").json()["fulfilled"] is False

    completed = donor.post(f"/matches/{claim['match_id']}/complete")
    assert completed.status_code == 200
    assert completed.json()["status"] == "completed"
    assert donor.get(f"/donations/{donation['id']}").json()["status"] == "completed"

    kinds = [e["kind"] for e in donor.get("/matches/events").json()]
    assert kinds[0] == "match.completed"
    assert "donation.claimed" in kinds


def test_cancel_and_reclaim(clients):
    donor, ngo_a, ngo_b = clients["donor"], clients["ngo_a"], clients["ngo_b"]
    donation = donor.post("/donations/", json=donation_payload()).json()
    match_id = ngo_a.post(f"/donations/{donation['id']}/claim").json()["match_id"]

    assert ngo_b.post(f"/matches/{match_id}/cancel").status_code == 403

    released = ngo_a.post(f"/matches/{match_id}/cancel")
    assert released.status_code == 200
    assert released.json()["status"] == "cancelled"

    again = ngo_b.post(f"/donations/{donation['id']}/claim")
    assert again.status_code == 200

    withdrawn = donor.post(f"/donations/{donation['id']}/cancel")
    assert withdrawn.status_code == 200
    assert withdrawn.json()["status"] == "cancelled"

    matches = donor.get("/matches/", params={"donation_id": donation["id"]}).json()
    assert {m["status"] for m in matches} == {"cancelled"}
    assert len(matches) == 2


def test_withdraw_open_donation(clients):
    donor, ngo_a = clients["donor"], clients["ngo_a"]
    donation = donor.post("/donations/", json=donation_payload()).json()

    withdrawn = donor.post(f"/donations/{donation['id']}/cancel")

    assert withdrawn.status_code == 200, withdrawn.text
    assert withdrawn.json()["status"] == "cancelled"
    assert withdrawn.json()["match_id"] is None
    assert ngo_a.post(f"/donations/{donation['id']}/claim").status_code == 409


def test_error_statuses(clients):
    donor, ngo_a = clients["donor"], clients["ngo_a"]

    unknown_category = donor.post("/donations/", json=donation_payload(category="furniture"))
    assert unknown_category.status_code == 422
    assert unknown_category.json()["kind"] == "ValidationError"

    assert donor.post("/donations/", json=donation_payload(description="")).status_code == 422
    assert ngo_a.post("/donations/", json=donation_payload()).status_code == 403
    assert donor.get("/donations/missing").status_code == 404
    assert donor.get("/matches/missing").json()["kind"] == "NotFound"

    donation = donor.post("/donations/", json=donation_payload()).json()
    match_id = ngo_a.post(f"/donations/{donation['id']}/claim").json()["match_id"]
    ngo_a.post(f"/matches/{match_id}/complete")
    repeat_cancel = ngo_a.post(f"/matches/{match_id}/cancel")
    assert repeat_cancel.status_code == 409
    assert repeat_cancel.json()["kind"] == "InvalidTransition"


def test_manual_fulfilment_and_filters(clients):
    ngo_a = clients["ngo_a"]
    request = ngo_a.post("/requests/", json=request_payload(category="books")).json()

    fulfilled = ngo_a.post(f"/requests/{request['id']}/fulfill")
    assert fulfilled.status_code == 200
    assert fulfilled.json()["fulfilled"] is True
    assert ngo_a.post(f"/requests/{request['id']}/fulfill").status_code == 200

    assert ngo_a.get("/requests/", params={"fulfilled": False}).json() == []
    assert len(ngo_a.get("/requests/", params={"category": "book"}).json()) == 1

    assert clients["donor"].post(f"/requests/{request['id']}/fulfill").status_code == 403


def test_candidates_and_reconcile(clients):
    donor, ngo_a = clients["donor"], clients["ngo_a"]
    donor.post("/donations/", json=donation_payload())
    ngo_a.post("/requests/", json=request_payload())

    body = donor.get("/matches/candidates", params={"min_score": 50}).json()
    assert len(body["candidates"]) == 1
    assert body["donations_considered"] == 1

    report = donor.post("/matches/reconcile")
    assert report.status_code == 200
    assert report.json() == {
        "requests_marked": [],
        "orphaned_donations": [],
        "dangling_matches": [],
    }
