"""Integration tests for the FastAPI endpoints.

Uses TestClient with the DB session and runtime dependencies pointed at an
in-memory database and a mocked Google API.
"""
from __future__ import annotations

from datetime import timedelta
from urllib.parse import parse_qs, urlparse

import httpx
import pytest
from fastapi.testclient import TestClient

from matchmaker.app import app, db_session, get_runtime
from matchmaker.credentials import GOOGLE_TOKEN_URL, GOOGLE_USERINFO_URL
from matchmaker.runtime import build_runtime
from matchmaker.tests.conftest import add_user
from matchmaker.utils import utcnow

SOON = utcnow() + timedelta(days=2)


def _google(request: httpx.Request) -> httpx.Response:
    url = str(request.url)
    if url == GOOGLE_TOKEN_URL:
        form = parse_qs(request.content.decode())
        if form.get("code") == ["bad-code"]:
            return httpx.Response(400, json={"error": "invalid_grant"})
        return httpx.Response(200, json={"access_token": "acc", "refresh_token": "ref", "expires_in": 3600})
    if url == GOOGLE_USERINFO_URL:
        return httpx.Response(200, json={"email": "ina@gmail.test"})
    return httpx.Response(404)


@pytest.fixture()
def runtime(factory, settings):
    return build_runtime(factory, settings, transport=httpx.MockTransport(_google))


@pytest.fixture()
def client(factory, runtime):
    """FastAPI TestClient bound to the in-memory database."""

    def override_db_session():
        session = factory()
        try:
            yield session
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    app.dependency_overrides[db_session] = override_db_session
    app.dependency_overrides[get_runtime] = lambda: runtime
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture()
def ids(session, pair):
    investor_id, company_id = pair
    admin = add_user(session, role="admin")
    session.commit()
    return investor_id, company_id, admin.id


def _as(user_id: int) -> dict[str, str]:
    return {"X-User-Id": str(user_id)}


class TestAuth:
    def test_health_is_public(self, client):
        assert client.get("/api/health").json() == {"ok": True}

    def test_missing_header(self, client):
        assert client.get("/api/users/me/availability").status_code == 401

    def test_unknown_user(self, client):
        assert client.get("/api/users/me/availability", headers=_as(404)).status_code == 401

    def test_admin_routes_need_admin(self, client, ids):
        investor_id, _, admin_id = ids
        assert client.get("/api/admin/match-cache", headers=_as(investor_id)).status_code == 403
        resp = client.get("/api/admin/match-cache", headers=_as(admin_id))
        assert resp.status_code == 200
        assert resp.json()["size"] == 0


class TestMatchingEndpoints:
    def test_get_match(self, client, ids):
        investor_id, company_id, _ = ids
        resp = client.get(f"/api/matches/{investor_id}/{company_id}", headers=_as(investor_id))
        assert resp.status_code == 200
        data = resp.json()
        assert data["match_score"]["overall"] >= 95
        assert data["match_score"]["confidence"] == "high"

    def test_get_match_404(self, client, ids):
        investor_id, _, admin_id = ids
        resp = client.get(f"/api/matches/{investor_id}/{admin_id}", headers=_as(investor_id))
        assert resp.status_code == 404

    def test_recommendations(self, client, ids):
        investor_id, company_id, admin_id = ids
        resp = client.get("/api/investors/me/recommendations", headers=_as(investor_id))
        assert resp.status_code == 200
        assert [r["user_id"] for r in resp.json()] == [company_id]

        stats = client.get("/api/admin/match-cache", headers=_as(admin_id)).json()
        assert stats["size"] == 1
        assert client.delete("/api/admin/match-cache", headers=_as(admin_id)).status_code == 200
        assert client.get("/api/admin/match-cache", headers=_as(admin_id)).json()["size"] == 0


class TestAvailabilityEndpoints:
    def test_put_and_get(self, client, ids):
        investor_id, _, _ = ids
        body = {"windows": [
            {"day_of_week": 2, "start_time": "13:00", "end_time": "15:00", "timezone": "Europe/Berlin"},
            {"day_of_week": 0, "start_time": "9:00", "end_time": "10:00"},
        ]}
        assert client.put("/api/users/me/availability", json=body, headers=_as(investor_id)).status_code == 200
        resp = client.get("/api/users/me/availability", headers=_as(investor_id))
        assert [(w["day_of_week"], w["start_time"]) for w in resp.json()] == [(0, "09:00"), (2, "13:00")]

    def test_invalid_window(self, client, ids):
        investor_id, _, _ = ids
        body = {"windows": [{"day_of_week": 1, "start_time": "15:00", "end_time": "13:00"}]}
        assert client.put("/api/users/me/availability", json=body, headers=_as(investor_id)).status_code == 400
        body = {"windows": [{"day_of_week": 7, "start_time": "09:00", "end_time": "10:00"}]}
        assert client.put("/api/users/me/availability", json=body, headers=_as(investor_id)).status_code == 422

    def test_arrangement_preferences(self, client, ids):
        investor_id, _, _ = ids
        resp = client.post("/api/users/me/arrangement-preferences", json={"arrange_meetings": False},
                           headers=_as(investor_id))
        assert resp.status_code == 200
        assert resp.json()["arrange_meetings"] is False


class TestMeetingEndpoints:
    def test_request_lifecycle(self, client, ids):
        investor_id, company_id, _ = ids
        resp = client.post("/api/meetings/requests", headers=_as(investor_id), json={
            "to_user_id": company_id, "message": "Intro call",
            "proposed_start": SOON.isoformat(), "proposed_end": (SOON + timedelta(minutes=30)).isoformat(),
        })
        assert resp.status_code == 201
        request_id = resp.json()["id"]
        proposal_id = resp.json()["proposals"][0]["id"]

        dup = client.post("/api/meetings/requests", headers=_as(company_id), json={"to_user_id": investor_id})
        assert dup.status_code == 409

        own = client.post(f"/api/meetings/requests/{request_id}/proposals/{proposal_id}/accept",
                          headers=_as(investor_id))
        assert own.status_code == 403

        accepted = client.post(f"/api/meetings/requests/{request_id}/proposals/{proposal_id}/accept",
                               headers=_as(company_id))
        assert accepted.status_code == 200
        assert accepted.json()["status"] == "CONFIRMED"

        meetings = client.get("/api/users/me/meetings", headers=_as(investor_id)).json()
        assert [m["id"] for m in meetings] == [accepted.json()["id"]]

        listed = client.get("/api/meetings/requests", headers=_as(company_id)).json()
        assert listed[0]["status"] == "CONFIRMED"

    def test_requester_cannot_confirm(self, client, ids):
        investor_id, company_id, _ = ids
        request_id = client.post("/api/meetings/requests", headers=_as(investor_id),
                                 json={"to_user_id": company_id}).json()["id"]
        resp = client.patch(f"/api/meetings/requests/{request_id}", headers=_as(investor_id),
                            json={"status": "confirmed"})
        assert resp.status_code == 403

        resp = client.patch(f"/api/meetings/requests/{request_id}", headers=_as(company_id), json={
            "status": "confirmed", "start_time": SOON.isoformat(),
            "end_time": (SOON + timedelta(hours=1)).isoformat(),
        })
        assert resp.status_code == 200
        assert resp.json()["meeting"]["participant_b_id"] == company_id

    def test_request_to_self(self, client, ids):
        investor_id, _, _ = ids
        resp = client.post("/api/meetings/requests", headers=_as(investor_id), json={"to_user_id": investor_id})
        assert resp.status_code == 400

    def test_missing_request_404(self, client, ids):
        investor_id, _, _ = ids
        resp = client.post("/api/meetings/requests/999/proposals", headers=_as(investor_id), json={
            "start_time": SOON.isoformat(), "end_time": (SOON + timedelta(minutes=30)).isoformat(),
        })
        assert resp.status_code == 404


class TestNotificationEndpoints:
    def test_list_and_mark(self, client, ids):
        investor_id, company_id, _ = ids
        client.post("/api/meetings/requests", headers=_as(investor_id), json={"to_user_id": company_id})

        notes = client.get("/api/notifications", headers=_as(company_id)).json()
        assert [n["type"] for n in notes] == ["meeting_requested"]
        assert notes[0]["data"]["from_user_id"] == investor_id

        assert client.patch(f"/api/notifications/{notes[0]['id']}/read", headers=_as(investor_id)).status_code == 404
        read = client.patch(f"/api/notifications/{notes[0]['id']}/read", headers=_as(company_id))
        assert read.json()["is_read"] is True
        resp = client.post("/api/notifications/mark-all-read", headers=_as(company_id))
        assert resp.json() == {"updated_count": 0}


class TestOAuthEndpoints:
    def test_authorize_and_callback(self, client, runtime, ids):
        investor_id, _, _ = ids
        resp = client.get("/api/oauth/authorize", headers=_as(investor_id))
        assert resp.status_code == 200
        state = parse_qs(urlparse(resp.json()["auth_url"]).query)["state"][0]

        cb = client.get("/api/oauth/callback", params={"code": "good-code", "state": state}, follow_redirects=False)
        assert cb.status_code in (302, 307)
        assert cb.headers["location"] == "http://frontend.test/dashboard/settings?oauth=success"

        status = client.get("/api/oauth/status", headers=_as(investor_id)).json()
        assert status["connected"] is True
        assert status["calendar_email"] == "ina@gmail.test"

        resp = client.post("/api/oauth/settings", headers=_as(investor_id), json={"calendar_id": "team@example.com"})
        assert resp.json()["calendar_id"] == "team@example.com"

        assert client.post("/api/oauth/disconnect", headers=_as(investor_id)).json()["deleted"] is True
        assert client.get("/api/oauth/status", headers=_as(investor_id)).json()["connected"] is False

    def test_callback_rejects_forged_state(self, client, ids):
        resp = client.get("/api/oauth/callback", params={"code": "x", "state": "forged.state"},
                          follow_redirects=False)
        assert resp.status_code == 400

    def test_callback_exchange_error_redirects(self, client, runtime, ids):
        investor_id, _, _ = ids
        state = runtime.oauth.encode_state(investor_id)
        resp = client.get("/api/oauth/callback", params={"code": "bad-code", "state": state}, follow_redirects=False)
        assert "oauth=error" in resp.headers["location"]
        assert not runtime.credentials.has_credentials(investor_id)

    def test_authorize_unconfigured(self, client, runtime, ids):
        investor_id, _, _ = ids
        runtime.oauth.settings = runtime.settings.model_copy(update={"google_client_id": ""})
        assert client.get("/api/oauth/authorize", headers=_as(investor_id)).status_code == 503


class TestSchedulerEndpoints:
    def test_pairs_and_run(self, client, ids):
        investor_id, company_id, admin_id = ids
        pairs = client.get("/api/admin/scheduler/pairs", headers=_as(admin_id)).json()
        assert [(p["investor_id"], p["company_id"]) for p in pairs] == [(investor_id, company_id)]

        run = client.post("/api/admin/scheduler/run", headers=_as(admin_id))
        assert run.status_code == 200
        data = run.json()
        assert (data["scheduled"], data["failed"], data["skipped"]) == (1, 0, 0)
        meeting_id = data["results"][0]["meeting_id"]

        again = client.post("/api/admin/scheduler/pairs", headers=_as(admin_id),
                            json={"investor_id": investor_id, "company_id": company_id})
        assert again.json()["status"] == "skipped"

        synced = client.post(f"/api/meetings/{meeting_id}/calendar-sync", headers=_as(company_id))
        assert synced.status_code == 200
        assert synced.json()["calendar_sync_status"] == "none"

        notes = client.get("/api/notifications", headers=_as(company_id)).json()
        assert [n["type"] for n in notes] == ["auto_meeting_scheduled"]

    def test_run_requires_admin(self, client, ids):
        investor_id, _, _ = ids
        assert client.post("/api/admin/scheduler/run", headers=_as(investor_id)).status_code == 403
