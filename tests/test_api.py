"""Tests for the management API: envelopes, automations, executions and segments."""

import pytest
from fakeredis import FakeAsyncRedis, FakeServer
from fastapi.testclient import TestClient

import mailflow.api.app as app_module
from mailflow.api import deps
from mailflow.api.app import create_app
from mailflow.api.routes import automations as automations_api
from mailflow.api.routes import executions as executions_api
from mailflow.models.automation import TriggerKind
from mailflow.models.event import Event
from mailflow.models.execution import ExecutionStatus
from mailflow.schemas.automation import AutomationCreate, AutomationUpdate
from mailflow.schemas.common import PaginationParams
from mailflow.services import build_coordinator, build_segment_service
from mailflow.storage.automation_store import AutomationStore
from mailflow.storage.execution_store import ExecutionStore
from tests.helpers import make_subscriber

AUTOMATION_BODY = {
    "tenant_id": "tenant_1",
    "name": "Welcome series",
    "trigger": {"type": "user_signup", "conditions": {"source": "any"}},
    "actions": [
        {"type": "send_email", "template_id": "tpl_welcome"},
        {"type": "wait", "amount": 3, "unit": "days"},
        {"type": "add_tag", "tag": "onboarded"},
    ],
}


def _make_client(monkeypatch, server: FakeServer) -> TestClient:
    async def _noop() -> None:
        return None

    monkeypatch.setattr(app_module, "init_redis_pool", _noop)
    monkeypatch.setattr(app_module, "close_redis_pool", _noop)

    def fake_redis() -> FakeAsyncRedis:
        return FakeAsyncRedis(server=server, decode_responses=True)

    app = create_app()
    app.dependency_overrides[deps.get_automation_store] = lambda: AutomationStore(fake_redis())
    app.dependency_overrides[deps.get_execution_store] = lambda: ExecutionStore(fake_redis())
    app.dependency_overrides[deps.get_coordinator] = lambda: build_coordinator(fake_redis(), None)
    app.dependency_overrides[deps.get_segment_service] = lambda: build_segment_service(fake_redis())
    return TestClient(app)


@pytest.fixture
def client(monkeypatch) -> TestClient:
    return _make_client(monkeypatch, FakeServer())


def test_not_found_envelope(client) -> None:
    response = client.get("/api/v1/automations/auto_missing")

    assert response.status_code == 404
    assert response.json() == {"code": 404, "message": "Automation auto_missing not found", "data": None}


def test_domain_not_found_envelope(client) -> None:
    response = client.get("/api/v1/segments/seg_missing")

    assert response.status_code == 404
    assert response.json()["message"] == "Segment seg_missing not found"


def test_request_validation_envelope(client) -> None:
    response = client.post("/api/v1/automations", json={"name": ""})

    assert response.status_code == 422
    payload = response.json()
    assert payload["code"] == 422
    assert payload["message"] == "Validation error"
    assert isinstance(payload["data"], list) and payload["data"]


def test_unknown_action_kind_rejected(client) -> None:
    body = dict(AUTOMATION_BODY, actions=[{"type": "send_sms"}])

    response = client.post("/api/v1/automations", json=body)

    assert response.status_code == 422


def test_domain_validation_envelope(client) -> None:
    response = client.post(
        "/api/v1/segments",
        json={
            "tenant_id": "tenant_1",
            "name": "Bad",
            "conditions": [{"field": "bounce_count", "operator": "contains", "value": 1}],
        },
    )

    assert response.status_code == 422
    assert response.json() == {
        "code": 422,
        "message": "Invalid condition for field bounce_count: Invalid operator for field type",
        "data": None,
    }


def test_automation_lifecycle(client) -> None:
    created = client.post("/api/v1/automations", json=AUTOMATION_BODY).json()["data"]
    automation_id = created["automation_id"]
    assert created["version"] == 1

    listed = client.get("/api/v1/automations", params={"tenant_id": "tenant_1"}).json()
    assert listed["total"] == 1

    patched = client.patch(f"/api/v1/automations/{automation_id}", json={"name": "Renamed"}).json()["data"]
    assert patched["name"] == "Renamed"
    assert patched["metadata"]["version"] == 2
    assert len(patched["actions"]) == 3

    paused = client.patch(f"/api/v1/automations/{automation_id}/status", json={"active": False}).json()["data"]
    assert paused["active"] is False
    assert paused["metadata"]["version"] == 2

    deleted = client.delete(f"/api/v1/automations/{automation_id}")
    assert deleted.json()["data"] == {"executions_cancelled": 0}
    assert client.get(f"/api/v1/automations/{automation_id}").status_code == 404


def test_segment_endpoints(client) -> None:
    fields = client.get("/api/v1/segments/fields").json()["data"]
    status = next(f for f in fields if f["id"] == "status")
    assert "contains" in status["operators"]
    assert "active" in status["options"]

    templates = client.get("/api/v1/segments/templates").json()["data"]
    assert "never_purchased" in {t["name"] for t in templates}

    created = client.post("/api/v1/segments/from-template", json={"tenant_id": "tenant_1", "template_name": "cart_abandoners"})
    assert created.status_code == 200
    segment_id = created.json()["data"]["segment_id"]

    page = client.get(f"/api/v1/segments/{segment_id}/subscribers").json()["data"]
    assert page == {"subscribers": [], "total": 0, "has_more": False}

    recalculated = client.post(f"/api/v1/segments/{segment_id}/recalculate").json()["data"]
    assert recalculated == {"segment_id": segment_id, "subscriber_count": 0}

    preview = client.post("/api/v1/segments/preview", json={"tenant_id": "tenant_1", "conditions": []}).json()["data"]
    assert preview["total"] == 0

    assert client.delete(f"/api/v1/segments/{segment_id}").status_code == 200
    assert client.delete(f"/api/v1/segments/{segment_id}").status_code == 404


def test_missing_segment_template(client) -> None:
    response = client.post("/api/v1/segments/from-template", json={"tenant_id": "tenant_1", "template_name": "nope"})

    assert response.status_code == 404


@pytest.mark.asyncio
async def test_delete_cancels_running_executions(coordinator, automations, executions, subscribers) -> None:
    await subscribers.save(make_subscriber("sub_1"))
    body = dict(AUTOMATION_BODY, actions=[{"type": "wait", "amount": 1, "unit": "days"}, {"type": "add_tag", "tag": "x"}])
    created = await automations_api.create_automation(data=AutomationCreate.model_validate(body), store=automations)
    automation_id = created.data.automation_id

    started = await coordinator.process_event(
        Event(tenant_id="tenant_1", subscriber_id="sub_1", trigger_type=TriggerKind.SIGNUP)
    )
    assert len(started) == 1

    response = await automations_api.delete_automation(
        automation_id=automation_id,
        store=automations,
        coordinator=coordinator,
    )

    assert response.data == {"executions_cancelled": 1}
    stored = await executions.get(started[0].execution_id)
    assert stored.status == ExecutionStatus.CANCELLED
    assert stored.cancel_reason == "automation deleted"


@pytest.mark.asyncio
async def test_execution_history_and_stats(coordinator, automations, executions, subscribers) -> None:
    for subscriber_id in ("sub_1", "sub_2", "sub_3"):
        await subscribers.save(make_subscriber(subscriber_id))
    body = dict(AUTOMATION_BODY, actions=[{"type": "wait", "amount": 1, "unit": "days"}, {"type": "add_tag", "tag": "x"}])
    created = await automations_api.create_automation(data=AutomationCreate.model_validate(body), store=automations)
    automation_id = created.data.automation_id

    started = []
    for subscriber_id in ("sub_1", "sub_2", "sub_3"):
        started += await coordinator.process_event(
            Event(tenant_id="tenant_1", subscriber_id=subscriber_id, trigger_type=TriggerKind.SIGNUP)
        )
    await executions_api.cancel_execution(execution_id=started[0].execution_id, coordinator=coordinator, data=None)

    history = await executions_api.list_executions(
        automation_id=automation_id,
        automations=automations,
        executions=executions,
        pagination=PaginationParams(page=1, page_size=2),
        status=None,
    )
    assert history.total == 3
    assert len(history.data) == 2
    assert history.has_more is True

    active = await executions_api.list_executions(
        automation_id=automation_id,
        automations=automations,
        executions=executions,
        pagination=PaginationParams(page=1, page_size=20),
        status=ExecutionStatus.ACTIVE,
    )
    assert active.total == 2

    stats = await executions_api.get_automation_stats(
        automation_id=automation_id,
        automations=automations,
        coordinator=coordinator,
    )
    assert (stats.data.total, stats.data.active, stats.data.cancelled) == (3, 2, 1)

    detail = await executions_api.get_execution(execution_id=started[1].execution_id, executions=executions)
    assert [entry.action_kind for entry in detail.data.step_log] == ["wait"]


def test_update_schema_rejects_empty_actions() -> None:
    with pytest.raises(ValueError):
        AutomationUpdate(actions=[])
