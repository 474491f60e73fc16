"""
Tests for the HTTP surface (branch_api).

Covers:
- Actor header handling and correlation ids
- camelCase request and response bodies
- Kernel error -> HTTP status mapping
- The full create -> edit -> review -> publish flow over HTTP
"""

from uuid import uuid4

import pytest
from fastapi.testclient import TestClient

from branch_api.app import create_app


@pytest.fixture
def client(orchestrator):
    with TestClient(create_app(orchestrator=orchestrator)) as client:
        yield client


def as_actor(actor_id):
    return {"X-Actor-Id": str(actor_id)}


@pytest.fixture
def new_branch(client, actors):
    """Factory: create a branch over HTTP and return its JSON body."""

    def _create(name="feature", **extra):
        response = client.post(
            "/branches",
            json={"name": name, "reviewerIds": [str(actors.reviewer)], **extra},
            headers=as_actor(actors.owner),
        )
        assert response.status_code == 201, response.text
        return response.json()

    return _create


# ---------------------------------------------------------------------------
# Plumbing
# ---------------------------------------------------------------------------


class TestPlumbing:

    def test_healthz(self, client):
        response = client.get("/healthz")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    def test_correlation_id_is_echoed(self, client):
        response = client.get("/healthz", headers={"X-Correlation-Id": "req-7"})
        assert response.headers["X-Correlation-Id"] == "req-7"

    def test_correlation_id_is_generated(self, client):
        assert client.get("/healthz").headers["X-Correlation-Id"]

    def test_missing_actor_header(self, client):
        response = client.post("/branches", json={"name": "anonymous"})
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "HTTP_ERROR"

    def test_malformed_actor_header(self, client):
        response = client.post(
            "/branches", json={"name": "x"}, headers={"X-Actor-Id": "not-a-uuid"}
        )
        assert response.status_code == 400

    def test_request_validation_error_shape(self, client, actors):
        response = client.post("/branches", json={"name": ""}, headers=as_actor(actors.owner))
        assert response.status_code == 422
        assert response.json()["error"]["code"] == "REQUEST_VALIDATION_ERROR"


# ---------------------------------------------------------------------------
# Bodies
# ---------------------------------------------------------------------------


class TestBodies:

    def test_create_branch_uses_camel_case(self, new_branch, actors):
        body = new_branch(requiredApprovals=1, visibility="team")
        assert body["ownerId"] == str(actors.owner)
        assert body["reviewerIds"] == [str(actors.reviewer)]
        assert body["requiredApprovals"] == 1
        assert body["state"] == "draft"
        assert body["visibility"] == "team"
        assert body["contentRef"].startswith("branches/feature-")

    def test_list_branches_filters_by_owner(self, client, new_branch, actors):
        created = new_branch()
        response = client.get("/branches", params={"ownerId": str(actors.owner)})
        assert [b["id"] for b in response.json()] == [created["id"]]
        assert client.get("/branches", params={"ownerId": str(uuid4())}).json() == []

    def test_content_routes(self, client, new_branch, actors, seed_content):
        branch_id = new_branch()["id"]
        owner = as_actor(actors.owner)

        written = client.put(
            f"/branches/{branch_id}/content/docs/new.md", json={"body": "new"}, headers=owner
        )
        assert written.status_code == 200
        assert len(written.json()["commitId"]) == 64

        client.post(
            f"/branches/{branch_id}/content-renames",
            json={"fromPath": "docs/new.md", "toPath": "docs/renamed.md"},
            headers=owner,
        )
        client.delete(f"/branches/{branch_id}/content/README.md", headers=owner)

        snapshot = client.get(f"/branches/{branch_id}/content").json()
        expected = {k: v for k, v in seed_content.items() if k != "README.md"}
        assert snapshot == {**expected, "docs/renamed.md": "new"}

    def test_capabilities_and_can_transition(self, client, new_branch, actors):
        branch_id = new_branch()["id"]
        caps = client.get(
            f"/branches/{branch_id}/capabilities", headers=as_actor(actors.owner)
        ).json()
        assert caps["canSubmitForReview"] is True
        assert caps["canPublish"] is False

        check = client.get(
            f"/branches/{branch_id}/can-transition",
            params={"event": "ARCHIVE"},
            headers=as_actor(actors.owner),
        ).json()
        assert check["allowed"] is False


# ---------------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------------


class TestErrorMapping:

    def test_unknown_branch_is_404(self, client):
        missing = uuid4()
        response = client.get(f"/branches/{missing}")
        assert response.status_code == 404
        error = response.json()["error"]
        assert error["code"] == "BRANCH_NOT_FOUND"
        assert error["details"]["branch_id"] == str(missing)

    def test_non_owner_is_403(self, client, new_branch, actors):
        branch_id = new_branch()["id"]
        response = client.patch(
            f"/branches/{branch_id}", json={"name": "hijack"}, headers=as_actor(actors.outsider)
        )
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "NOT_OWNER"

    def test_threshold_out_of_range_is_422(self, client, actors):
        response = client.post(
            "/branches",
            json={"name": "impossible", "requiredApprovals": 11},
            headers=as_actor(actors.owner),
        )
        assert response.status_code == 422
        assert response.json()["error"]["code"] == "THRESHOLD_OUT_OF_RANGE"

    def test_no_reviewers_is_422(self, client, actors):
        branch_id = client.post(
            "/branches", json={"name": "lonely"}, headers=as_actor(actors.owner)
        ).json()["id"]
        response = client.post(
            f"/branches/{branch_id}/submit-for-review", json={}, headers=as_actor(actors.owner)
        )
        assert response.status_code == 422
        assert response.json()["error"]["code"] == "NO_REVIEWERS_ASSIGNED"

    def test_state_conflict_is_409(self, client, new_branch, actors):
        branch_id = new_branch()["id"]
        owner = as_actor(actors.owner)
        assert client.post(
            f"/branches/{branch_id}/submit-for-review", json={}, headers=owner
        ).status_code == 200
        response = client.post(f"/branches/{branch_id}/submit-for-review", json={}, headers=owner)
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "INVALID_TRANSITION"

    def test_transition_endpoint_reports_rejection_in_body(self, client, new_branch, actors):
        branch_id = new_branch()["id"]
        response = client.post(
            f"/branches/{branch_id}/transitions",
            json={"event": "ARCHIVE"},
            headers=as_actor(actors.owner),
        )
        assert response.status_code == 200
        body = response.json()
        assert body["success"] is False
        assert body["fromState"] == "draft"
        assert body["errorCode"] == "INVALID_TRANSITION"

    def test_strict_validation_conflict_is_409(
        self, client, orchestrator, approved_via_orchestrator, actors
    ):
        branch = approved_via_orchestrator()
        orchestrator.write_ref_content("main", "docs/intro.md", "# Intro, hotfix\n", actors.admin)
        body = {"branchId": str(branch.id)}

        lenient = client.post("/convergence/validate", json=body)
        assert lenient.status_code == 200
        assert lenient.json()["isValid"] is False

        strict = client.post("/convergence/validate", params={"requireClean": "true"}, json=body)
        assert strict.status_code == 409
        error = strict.json()["error"]
        assert error["code"] == "CONFLICT_DETECTED"
        assert error["details"]["conflicts"][0]["path"] == "docs/intro.md"

    def test_strict_validation_passes_clean_branch(self, client, approved_via_orchestrator):
        branch = approved_via_orchestrator()
        response = client.post(
            "/convergence/validate",
            params={"requireClean": "true"},
            json={"branchId": str(branch.id)},
        )
        assert response.status_code == 200
        assert response.json()["isValid"] is True

    def test_error_body_is_documented(self, client):
        openapi = client.get("/openapi.json").json()
        assert any(name.startswith("ErrorResponse") for name in openapi["components"]["schemas"])
        responses = openapi["paths"]["/convergence/validate"]["post"]["responses"]
        ref = responses["409"]["content"]["application/json"]["schema"]["$ref"]
        assert ref.rsplit("/", 1)[-1].startswith("ErrorResponse")


# ---------------------------------------------------------------------------
# Full flow
# ---------------------------------------------------------------------------


class TestPublishFlow:

    def test_edit_review_publish(self, client, orchestrator, new_branch, actors):
        branch_id = new_branch()["id"]
        owner = as_actor(actors.owner)
        reviewer = as_actor(actors.reviewer)
        publisher = as_actor(actors.publisher)

        client.put(
            f"/branches/{branch_id}/content/docs/intro.md", json={"body": "# Intro v2\n"}, headers=owner
        )
        submitted = client.post(
            f"/branches/{branch_id}/submit-for-review", json={"reason": "ready"}, headers=owner
        ).json()
        assert submitted["branch"]["state"] == "review"
        assert submitted["transition"]["event"] == "SUBMIT_FOR_REVIEW"

        started = client.post(f"/branches/{branch_id}/reviews/start", headers=reviewer).json()
        assert started["status"] == "in_progress"

        decision = client.post(
            f"/branches/{branch_id}/reviews/decision",
            json={"decision": "approved", "comment": "ship it"},
            headers=reviewer,
        ).json()
        assert decision["transitioned"] is True
        assert decision["toState"] == "approved"
        assert decision["tally"]["progress"] == "1 of 1 required approvals"

        report = client.post("/convergence/validate", json={"branchId": branch_id}).json()
        assert report["isValid"] is True

        operation = client.post(
            "/convergence/publish", json={"branchId": branch_id}, headers=publisher
        ).json()
        assert operation["status"] == "succeeded"
        assert operation["mergeCommit"]

        status = client.get(f"/convergence/{operation['id']}/status").json()
        assert status["isOverdue"] is False
        assert status["pollIntervalSeconds"] == 2

        assert client.get(f"/branches/{branch_id}").json()["state"] == "archived"
        events = [r["event"] for r in client.get(f"/branches/{branch_id}/transitions").json()]
        assert events[-3:] == ["APPROVE", "PUBLISH", "ARCHIVE"]
        assert orchestrator.ref_snapshot("main")["docs/intro.md"] == "# Intro v2\n"

    def test_second_operation_conflicts(self, client, approved_via_orchestrator, actors):
        branch = approved_via_orchestrator()
        publisher = as_actor(actors.publisher)
        first = client.post("/convergence", json={"branchId": str(branch.id)}, headers=publisher)
        assert first.status_code == 201
        assert first.json()["status"] == "pending"

        second = client.post("/convergence", json={"branchId": str(branch.id)}, headers=publisher)
        assert second.status_code == 409
        assert second.json()["error"]["code"] == "CONCURRENT_OPERATION_IN_PROGRESS"

        cancelled = client.post(f"/convergence/{first.json()['id']}/cancel", headers=publisher)
        assert cancelled.json()["status"] == "cancelled"
        history = client.get(f"/branches/{branch.id}/convergence").json()
        assert [op["status"] for op in history] == ["cancelled"]
