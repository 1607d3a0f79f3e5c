"""API tests for the runs blueprint and the background run executor.

The model side is the conftest FakeProvider behind a real LLMGateway
(patched in as ``run_service.get_gateway``); the tracker side is the real
Azure DevOps client over the FakeSession (``tracker`` fixture).

Coverage
--------
    1. Generate: synchronous run (201), items generated in request order
    2. Before-snapshot fetch failure rejects only that item (phase "fetch")
    3. Generation failure: item rejected, request id falls back to X-Request-ID
    4. Large batches dispatched to the task runner (202)
    5. Request validation, unknown project, missing integration
    6. Work-item browsing, upstream failures as 502
    7. Run / run-items / apply endpoints
    8. RunTaskRunner marks a crashed run failed
    9. Health readiness
"""

from unittest.mock import patch

import pytest

from storyforge.ai.gateway import LLMGateway
from storyforge.ai.task_runner import task_runner
from storyforge.integrations.ado_client import F_DESCRIPTION, F_TITLE
from storyforge.models import db
from storyforge.models.run import Run
from storyforge.services import run_service

ORG = "https://dev.azure.com/contoso"


class ProviderError(Exception):
    def __init__(self, message, status_code=None):
        super().__init__(message)
        self.status_code = status_code


@pytest.fixture()
def llm(gateway):
    with patch.object(run_service, "get_gateway", return_value=gateway):
        yield gateway


def _ado_item(item_id=42, title="Add login"):
    return {
        "id": item_id,
        "url": f"{ORG}/_apis/wit/workItems/{item_id}",
        "fields": {
            F_TITLE: title,
            F_DESCRIPTION: "<p>Members need to sign in.</p>",
            "System.WorkItemType": "User Story",
            "System.State": "New",
        },
    }


def _generate(client, project_id, body, **headers):
    return client.post(f"/api/v1/projects/{project_id}/work-items/generate", json=body, headers=headers)


def _items(client, run_id):
    res = client.get(f"/api/v1/runs/{run_id}/items")
    assert res.status_code == 200
    return res.get_json()["items"]


# ═════════════════════════════════════════════════════════════════════════════
# 1-4. Generate
# ═════════════════════════════════════════════════════════════════════════════


class TestGenerate:
    def test_sync_run(self, client, make_project, tracker, llm, fake_response):
        project = make_project()
        tracker.add("GET", "/_apis/wit/workitems/", fake_response(200, _ado_item()))

        res = _generate(client, project.id, {"itemIds": ["42", "44", "42"]})

        assert res.status_code == 201
        body = res.get_json()
        assert body["status"] == "completed"
        items = _items(client, body["runId"])
        assert [i["source_item_id"] for i in items] == ["42", "44"]
        assert all(i["status"] == "generated" for i in items)
        assert items[0]["before"]["title"] == "Add login"
        assert items[0]["after"]["enhanced"]["tasks"] == [
            "Implement OAuth flow", "PR Review", "Dev Testing", "QA Handoff",
        ]

        run = client.get(f"/api/v1/runs/{body['runId']}").get_json()
        assert run["provider"] == "openai"
        assert run["model"] == "gpt-4o-mini"
        assert run["item_count"] == 2
        assert run["completed_at"] is not None

    def test_fetch_failure_rejects_only_that_item(self, client, make_project, tracker, llm, fake_response):
        project = make_project()
        tracker.add("GET", "/_apis/wit/workitems/", fake_response(200, _ado_item()))
        tracker.add("GET", "/_apis/wit/workitems/43", fake_response(404, text="TF401232: does not exist"))

        res = _generate(client, project.id, {"itemIds": ["42", "43"]}, **{"X-Request-ID": "corr-1"})

        assert res.status_code == 201
        ok, missing = _items(client, res.get_json()["runId"])
        assert ok["status"] == "generated"
        assert missing["status"] == "rejected"
        assert missing["after"]["phase"] == "fetch"
        assert missing["after"]["status"] == 404
        assert missing["after"]["request_id"] == "corr-1"
        assert "TF401232" in missing["after"]["error"]

    def test_generation_failure_uses_correlation_id(self, client, make_project, tracker, provider_cls,
                                                    enhancement, fake_response):
        project = make_project()
        tracker.add("GET", "/_apis/wit/workitems/", fake_response(200, _ado_item()))
        provider = provider_cls([enhancement(), ProviderError("invalid schema", status_code=400)])
        gateway = LLMGateway(
            providers={"openai": provider}, timeout=None, backoff_base_ms=0, jitter_ms=0, sleep=lambda s: None,
        )

        with patch.object(run_service, "get_gateway", return_value=gateway):
            res = _generate(client, project.id, {"itemIds": ["42", "43"]}, **{"X-Request-ID": "corr-9"})

        assert res.status_code == 201
        assert res.get_json()["status"] == "completed"
        ok, failed = _items(client, res.get_json()["runId"])
        assert ok["status"] == "generated"
        assert failed["status"] == "rejected"
        assert failed["after"] == {
            "error": "invalid schema", "request_id": "corr-9", "status": 400, "phase": "generating",
        }

    def test_large_batch_runs_in_background(self, client, make_project, tracker, llm, fake_response):
        project = make_project()
        tracker.add("GET", "/_apis/wit/workitems/", fake_response(200, _ado_item()))
        item_ids = [str(i) for i in range(40, 46)]

        with patch.object(run_service.task_runner, "submit") as submit:
            res = _generate(client, project.id, {"itemIds": item_ids})

        assert res.status_code == 202
        assert res.get_json()["status"] == "pending"
        run_id, execute_fn = submit.call_args.args
        assert run_id == res.get_json()["runId"]

        execute_fn(run_id)

        run = db.session.get(Run, run_id)
        assert run.status == "completed"
        assert [i.status for i in run.items] == ["generated"] * 6

    def test_template_and_context_recorded(self, client, make_project, tracker, llm, fake_response):
        project = make_project()
        tracker.add("GET", "/_apis/wit/workitems/", fake_response(200, _ado_item()))

        res = _generate(client, project.id, {
            "itemIds": ["42"],
            "template": {"name": "Story template", "body": "As a ..."},
            "context": [{"name": "arch.md", "text": "Services run on App Service."}],
        })

        run = client.get(f"/api/v1/runs/{res.get_json()['runId']}").get_json()
        assert run["template_ref"] == "Story template"
        assert run["context_refs"] == [{"name": "arch.md"}]


class TestGenerateValidation:
    @pytest.mark.parametrize("body", [
        {},
        {"itemIds": []},
        {"itemIds": "42"},
        {"itemIds": [True]},
        {"itemIds": ["42"], "template": "plain text"},
        {"itemIds": ["42"], "context": "arch.md"},
        {"itemIds": ["42"], "templateRef": 7},
    ])
    def test_invalid_body(self, client, make_project, tracker, body):
        project = make_project()
        res = _generate(client, project.id, body)
        assert res.status_code == 400
        assert res.get_json()["code"] == "ERR_VALIDATION_INVALID"
        assert Run.query.count() == 0

    def test_non_json_body(self, client, make_project):
        project = make_project()
        res = client.post(
            f"/api/v1/projects/{project.id}/work-items/generate", data="itemIds=42", content_type="text/plain",
        )
        assert res.status_code == 400

    def test_unknown_project(self, client):
        res = _generate(client, 999, {"itemIds": ["42"]})
        assert res.status_code == 404
        assert res.get_json()["error"] == "Project not found"

    def test_missing_integration(self, client, make_project):
        project = make_project(tracker=None)
        res = _generate(client, project.id, {"itemIds": ["42"]})
        assert res.status_code == 400
        assert res.get_json()["code"] == "ERR_NOT_CONFIGURED"
        assert Run.query.count() == 0


# ═════════════════════════════════════════════════════════════════════════════
# 5-6. Work-item browsing
# ═════════════════════════════════════════════════════════════════════════════


class TestWorkItems:
    def test_list(self, client, make_project, tracker, fake_response):
        project = make_project()
        tracker.add("POST", "/_apis/wit/wiql", fake_response(200, {"workItems": [{"id": 42}, {"id": 43}]}))
        tracker.add("GET", "/_apis/wit/workitems", fake_response(200, {"value": [
            _ado_item(42), _ado_item(43, title="Reset password"),
        ]}))

        res = client.get(f"/api/v1/projects/{project.id}/work-items?type=User%20Story&limit=5")

        assert res.status_code == 200
        body = res.get_json()
        assert body["total"] == 2
        assert [i["title"] for i in body["items"]] == ["Add login", "Reset password"]
        assert body["items"][0]["type"] == "User Story"
        wiql = tracker.calls_to("POST", "/wiql")[0]
        assert "[System.WorkItemType] = 'User Story'" in wiql["json"]["query"]
        assert wiql["params"]["$top"] == 5

    @pytest.mark.parametrize("limit", [0, 201])
    def test_limit_bounds(self, client, make_project, tracker, limit):
        project = make_project()
        res = client.get(f"/api/v1/projects/{project.id}/work-items?limit={limit}")
        assert res.status_code == 400

    def test_upstream_failure_is_502(self, client, make_project, tracker, fake_response):
        project = make_project()
        tracker.add("POST", "/_apis/wit/wiql", fake_response(401, text="unauthorized"))

        res = client.get(f"/api/v1/projects/{project.id}/work-items")

        assert res.status_code == 502
        body = res.get_json()
        assert body["code"] == "ERR_UPSTREAM"
        assert body["details"] == {"upstream_status": 401}

    def test_get_one(self, client, make_project, tracker, fake_response):
        project = make_project()
        tracker.add("GET", "/_apis/wit/workitems/42", fake_response(200, _ado_item()))

        res = client.get(f"/api/v1/projects/{project.id}/work-items/42")

        assert res.status_code == 200
        body = res.get_json()
        assert body["id"] == "42"
        assert body["snapshot"]["description_markup"] == "<p>Members need to sign in.</p>"

    def test_get_one_missing(self, client, make_project, tracker, fake_response):
        project = make_project()
        tracker.add("GET", "/_apis/wit/workitems/404", fake_response(404, text="TF401232"))

        res = client.get(f"/api/v1/projects/{project.id}/work-items/404")

        assert res.status_code == 404
        assert res.get_json()["error"] == "Work item not found"


# ═════════════════════════════════════════════════════════════════════════════
# 7. Runs and apply
# ═════════════════════════════════════════════════════════════════════════════


class TestRunEndpoints:
    def test_unknown_run(self, client):
        assert client.get("/api/v1/runs/nope").status_code == 404
        assert client.get("/api/v1/runs/nope/items").status_code == 404
        assert client.post("/api/v1/runs/nope/apply", json={}).status_code == 404

    def test_generate_then_apply(self, client, make_project, tracker, llm, fake_response):
        project = make_project()
        tracker.add("GET", "/_apis/wit/workitems/42", fake_response(200, _ado_item()))
        tracker.add("PATCH", "/_apis/wit/workitems/42", fake_response(200, {"id": 42}))
        run_id = _generate(client, project.id, {"itemIds": ["42"]}).get_json()["runId"]

        res = client.post(f"/api/v1/runs/{run_id}/apply", json={"selectedFields": ["title", "description"]})

        assert res.status_code == 200
        body = res.get_json()
        assert body["summary"]["succeeded"] == 1
        assert body["results"][0]["sourceItemId"] == "42"
        assert _items(client, run_id)[0]["status"] == "applied"

    def test_apply_rejects_bad_fields(self, client, make_project, tracker, llm, fake_response):
        project = make_project()
        tracker.add("GET", "/_apis/wit/workitems/42", fake_response(200, _ado_item()))
        run_id = _generate(client, project.id, {"itemIds": ["42"]}).get_json()["runId"]

        res = client.post(f"/api/v1/runs/{run_id}/apply", json={"selectedFields": ["state"]})

        assert res.status_code == 400
        assert "state" in res.get_json()["error"]

    def test_apply_while_generating_is_409(self, client, make_project, tracker, llm, fake_response):
        project = make_project()
        tracker.add("GET", "/_apis/wit/workitems/", fake_response(200, _ado_item()))
        with patch.object(run_service.task_runner, "submit"):
            run_id = _generate(client, project.id, {"itemIds": [str(i) for i in range(40, 46)]}).get_json()["runId"]

        res = client.post(f"/api/v1/runs/{run_id}/apply", json={})

        assert res.status_code == 409
        assert res.get_json()["code"] == "ERR_CONFLICT_STATE"

    def test_request_id_echoed(self, client):
        res = client.get("/api/v1/runs/nope", headers={"X-Request-ID": "abc123"})
        assert res.headers["X-Request-ID"] == "abc123"


# ═════════════════════════════════════════════════════════════════════════════
# 8. Background executor
# ═════════════════════════════════════════════════════════════════════════════


class TestTaskRunner:
    def test_crashed_run_marked_failed(self, make_project):
        project = make_project()
        run = Run(project_id=project.id, status="running")
        db.session.add(run)
        db.session.commit()
        run_id = run.id

        def explode(rid):
            raise RuntimeError("worker crashed")

        task_runner.submit(run_id, explode)
        task_runner.wait(run_id, timeout=5)

        db.session.expire_all()
        run = db.session.get(Run, run_id)
        assert run.status == "failed"
        assert run.error_message == "worker crashed"
        assert task_runner.is_running(run_id) is False


# ═════════════════════════════════════════════════════════════════════════════
# 9. Health
# ═════════════════════════════════════════════════════════════════════════════


class TestHealth:
    def test_ready(self, client):
        res = client.get("/api/v1/health/ready")
        assert res.status_code == 200
        assert res.get_json()["database"]["status"] == "ok"
