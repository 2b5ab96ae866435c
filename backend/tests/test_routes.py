"""
HTTP-level tests: status codes, error bodies and auth for every route.
"""
from unittest.mock import patch
from uuid import uuid4

import jwt
import pytest

from prospector.api import deps
from prospector.models.research_report import ResearchReport
from prospector.models.research_request import ResearchRequest, RequestStatus

from tests.fixtures.fakes import FakeChatClient, make_completion, rate_limit_error

CRITERIA = {
    "productDescription": "Cloud records management",
    "territory": {"states": ["Texas"]},
    "targetCategories": ["Police departments"],
    "competitors": ["Tyler Technologies"],
}

PROSPECTS = {
    "prospects": [
        {"name": "Austin Police Department", "city": "Austin", "state": "Texas", "score": 90},
        {"name": "Tulsa Police Department", "city": "Tulsa", "state": "Oklahoma"},
    ]
}


def bearer(sub):
    token = jwt.encode({"sub": sub}, "test-secret", algorithm="HS256")
    return {"Authorization": f"Bearer {token}"}


def _fake_llm(responder):
    client = FakeChatClient(responder)
    return patch("prospector.services.discovery.get_llm_client", return_value=client)


class TestDiscoveryRoutes:
    def test_create_session(self, client):
        resp = client.post("/api/discovery/sessions", json=CRITERIA)
        assert resp.status_code == 201
        body = resp.json()
        assert body["status"] == "created"
        assert body["isAnonymous"] is True
        assert body["isExisting"] is False

    def test_create_session_dedupes_for_user(self, client):
        first = client.post("/api/discovery/sessions", json=CRITERIA, headers=bearer("user-1")).json()
        second = client.post("/api/discovery/sessions", json=CRITERIA, headers=bearer("user-1")).json()
        assert second["sessionId"] == first["sessionId"]
        assert second["isExisting"] is True

    def test_invalid_token_is_anonymous(self, client):
        resp = client.post(
            "/api/discovery/sessions", json=CRITERIA, headers={"Authorization": "Bearer not-a-jwt"}
        )
        assert resp.json()["isAnonymous"] is True

    def test_discover_then_snapshot(self, client):
        session_id = client.post("/api/discovery/sessions", json=CRITERIA).json()["sessionId"]

        with _fake_llm(lambda kw: make_completion(tool_arguments=PROSPECTS)):
            resp = client.post("/api/discovery/prospects", json={"sessionId": session_id, **CRITERIA})

        assert resp.status_code == 200
        body = resp.json()
        assert [p["name"] for p in body["prospects"]] == ["Austin Police Department"]
        assert len(body["jobs"]) == 1

        snapshot = client.get(f"/api/discovery/sessions/{session_id}").json()
        assert snapshot["session"]["status"] == "prospects_discovered"
        assert snapshot["progress"] == 0
        assert snapshot["complete"] is False
        assert snapshot["jobs"][0]["status"] == "queued"

    def test_unknown_session(self, client):
        with _fake_llm(lambda kw: make_completion(tool_arguments=PROSPECTS)):
            resp = client.post("/api/discovery/prospects", json={"sessionId": str(uuid4())})
        assert resp.status_code == 404
        assert resp.json() == {"error": "Session not found"}

    def test_other_users_session(self, client):
        session_id = client.post(
            "/api/discovery/sessions", json=CRITERIA, headers=bearer("user-1")
        ).json()["sessionId"]

        resp = client.get(f"/api/discovery/sessions/{session_id}", headers=bearer("user-2"))
        assert resp.status_code == 403
        assert resp.json() == {"error": "Access denied"}

    def test_missing_territory_is_400(self, client):
        criteria = {**CRITERIA, "territory": {"states": []}}
        session_id = client.post("/api/discovery/sessions", json=criteria).json()["sessionId"]

        with _fake_llm(lambda kw: make_completion(tool_arguments=PROSPECTS)) as llm:
            resp = client.post("/api/discovery/prospects", json={"sessionId": session_id})
        assert resp.status_code == 400
        assert resp.json() == {"error": "Missing territory: at least one state is required"}
        assert llm.call_count == 0

    def test_rate_limit_maps_to_429(self, client):
        session_id = client.post("/api/discovery/sessions", json=CRITERIA).json()["sessionId"]

        def boom(kwargs):
            raise rate_limit_error()

        with _fake_llm(boom):
            resp = client.post("/api/discovery/prospects", json={"sessionId": session_id})
        assert resp.status_code == 429
        assert resp.json() == {"error": "Rate limit exceeded. Please try again later."}

    def test_validation_error_body(self, client):
        resp = client.post("/api/discovery/prospects", json={"sessionId": "nope"})
        assert resp.status_code == 422
        assert resp.json()["error"].startswith("Invalid sessionId")


@pytest.fixture
def owned_request(db):
    r = ResearchRequest(target_account="Travis County", user_id="user-1", status=RequestStatus.PENDING)
    db.add(r)
    db.commit()
    return r


PLAYBOOK = {"title": "Travis County playbook", "topInsight": "Budget vote in September", "synthesis": "fallback"}


class TestDeepResearchRoute:
    @pytest.mark.parametrize("body", [None, {}, {"requestId": ""}])
    def test_missing_request_id(self, client, body):
        resp = client.post("/api/research/deep", json=body)
        assert resp.status_code == 400
        assert resp.json() == {"error": "Missing requestId"}

    @pytest.mark.parametrize("request_id", ["not-a-uuid", str(uuid4())])
    def test_unknown_request(self, client, request_id):
        resp = client.post("/api/research/deep", json={"requestId": request_id})
        assert resp.status_code == 404
        assert resp.json() == {"error": "Research request not found"}

    def test_owned_request_needs_token(self, client, owned_request):
        resp = client.post("/api/research/deep", json={"requestId": str(owned_request.id)})
        assert resp.status_code == 401
        assert resp.json() == {"error": "Authentication required"}

    def test_owned_request_other_user(self, client, owned_request):
        resp = client.post(
            "/api/research/deep", json={"requestId": str(owned_request.id)}, headers=bearer("user-2")
        )
        assert resp.status_code == 403

    def test_success(self, client, owned_request):
        with patch("prospector.api.routes_research.run_account_research", return_value=PLAYBOOK) as run:
            resp = client.post(
                "/api/research/deep", json={"requestId": str(owned_request.id)}, headers=bearer("user-1")
            )
        assert resp.status_code == 200
        assert resp.json() == {"success": True, "report": PLAYBOOK}
        assert run.call_args.args[1].id == owned_request.id

    def test_unexpected_failure_is_500(self, client, owned_request):
        with patch("prospector.api.routes_research.run_account_research", side_effect=RuntimeError("boom")):
            resp = client.post(
                "/api/research/deep", json={"requestId": str(owned_request.id)}, headers=bearer("user-1")
            )
        assert resp.status_code == 500
        assert resp.json() == {"error": "Internal server error"}


class TestResearchRequestRoutes:
    def test_create_without_run_now(self, client):
        with patch("prospector.api.routes_research.celery_app.send_task") as send:
            resp = client.post("/api/research-requests", json={"targetAccount": "  Harris County  "})
        assert resp.status_code == 201
        body = resp.json()
        assert body["targetAccount"] == "Harris County"
        assert body["status"] == "pending"
        assert body["report"] is None
        send.assert_not_called()

    def test_create_with_run_now_queues_task(self, client):
        with patch("prospector.api.routes_research.celery_app.send_task") as send:
            resp = client.post(
                "/api/research-requests", json={"targetAccount": "Harris County", "runNow": True}
            )
        request_id = resp.json()["id"]
        send.assert_called_once_with(
            "prospector.services.orchestrator.run_research_request", args=[request_id], queue="research"
        )

    def test_blank_target_account_is_rejected(self, client):
        resp = client.post("/api/research-requests", json={"targetAccount": "   "})
        assert resp.status_code == 422
        assert "targetAccount" in resp.json()["error"]

    def test_get_with_report(self, client, db, owned_request):
        owned_request.status = RequestStatus.COMPLETED
        db.add(ResearchReport(request_id=owned_request.id, user_id="user-1", content=PLAYBOOK,
                              summary=PLAYBOOK["topInsight"], sources=[]))
        db.commit()

        resp = client.get(f"/api/research-requests/{owned_request.id}", headers=bearer("user-1"))
        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "completed"
        assert body["report"]["summary"] == "Budget vote in September"
        assert body["report"]["content"]["title"] == "Travis County playbook"


class TestApiKey:
    def test_wrong_key_rejected(self, client):
        with patch.object(deps.settings, "API_AUTH_KEY", "k"):
            resp = client.post("/api/discovery/sessions", json=CRITERIA, headers={"X-API-Key": "wrong"})
        assert resp.status_code == 401
        assert resp.json() == {"error": "Invalid API key"}

    def test_right_key_accepted(self, client):
        with patch.object(deps.settings, "API_AUTH_KEY", "k"):
            resp = client.post("/api/discovery/sessions", json=CRITERIA, headers={"X-API-Key": "k"})
        assert resp.status_code == 201
