"""Tests for the execution coordinator: start, suspend, resume, branch, cancel."""

import pytest

from mailflow.core.errors import ClaimConflictError, NotFoundError
from mailflow.models.automation import (
    Automation,
    BranchCondition,
    ConditionAction,
    CustomContent,
    Delay,
    DelayUnit,
    ListAction,
    SendEmailAction,
    TriggerKind,
    TriggerSpec,
    WaitAction,
)
from mailflow.models.event import Event
from mailflow.models.execution import ExecutionStatus
from mailflow.storage.redis_client import RedisKeys
from tests.helpers import T0, make_subscriber


def make_automation(
    actions,
    automation_id: str = "auto_1",
    conditions: dict | None = None,
    trigger: TriggerKind = TriggerKind.SIGNUP,
) -> Automation:
    return Automation(
        automation_id=automation_id,
        tenant_id="tenant_1",
        name="Welcome series",
        trigger=TriggerSpec(type=trigger, conditions=conditions or {}),
        actions=actions,
    )


def signup_event(subscriber_id: str = "sub_alice", event_id: str = "evt_1") -> Event:
    return Event(
        event_id=event_id,
        tenant_id="tenant_1",
        subscriber_id=subscriber_id,
        trigger_type=TriggerKind.SIGNUP,
        timestamp=T0,
        data={"source": "landing_page"},
    )


def custom_email(html: str) -> SendEmailAction:
    return SendEmailAction(subject="Hi {{firstName}}", custom_content=CustomContent(html=html))


@pytest.mark.asyncio
async def test_send_wait_send_scenario(coordinator, automations, executions, clock, delivery, alice, welcome_template) -> None:
    await automations.create(
        make_automation([
            SendEmailAction(template_id="tpl_welcome"),
            WaitAction(amount=3, unit="days"),
            custom_email("<p>Second</p>"),
        ])
    )

    started = await coordinator.process_event(signup_event())

    assert len(started) == 1
    execution = started[0]
    assert execution.status is ExecutionStatus.ACTIVE
    assert execution.current_step == 2
    assert execution.next_action_at == T0.replace(day=6)
    assert len(delivery.sent) == 1

    clock.advance(days=1)
    assert await coordinator.resume_due() == 0

    clock.advance(days=2, minutes=1)
    assert await coordinator.resume_due() == 1

    stored = await executions.get(execution.execution_id)
    assert stored.status is ExecutionStatus.COMPLETED
    assert stored.next_action_at is None
    assert [entry.action_kind for entry in stored.step_log] == ["send_email", "wait", "send_email"]
    assert [m.html for m in delivery.sent] == [
        "<p>Hi Alice, thanks for joining via landing_page.</p>",
        "<p>Second</p>",
    ]

    clock.advance(days=30)
    assert await coordinator.resume_due() == 0


@pytest.mark.asyncio
async def test_explicit_action_delay_suspends(coordinator, automations, clock, delivery, alice) -> None:
    await automations.create(
        make_automation([
            SendEmailAction(
                custom_content=CustomContent(html="first"),
                delay=Delay(amount=2, unit=DelayUnit.HOURS),
            ),
            custom_email("second"),
        ])
    )

    execution = (await coordinator.process_event(signup_event()))[0]

    assert execution.current_step == 1
    assert execution.next_action_at == T0.replace(hour=11)

    clock.advance(hours=2)
    assert await coordinator.resume_due() == 1
    assert [m.html for m in delivery.sent] == ["first", "second"]


@pytest.mark.asyncio
async def test_branch_false_completes_without_later_steps(coordinator, automations, executions, subscribers, clock, alice) -> None:
    await automations.create(
        make_automation([
            WaitAction(amount=7, unit="days"),
            ConditionAction(
                conditions=[BranchCondition(field="last_active_at", operator="greater_than", value="now-7d")]
            ),
            ListAction(type="remove_from_list", list_id="newsletter"),
        ])
    )
    execution = (await coordinator.process_event(signup_event()))[0]

    clock.advance(days=7, minutes=1)
    await coordinator.resume_due()

    stored = await executions.get(execution.execution_id)
    assert stored.status is ExecutionStatus.COMPLETED
    assert stored.current_step == 2
    assert stored.step_log[-1].data == {"condition_met": False, "evaluated": 1}
    assert (await subscribers.get("tenant_1", "sub_alice")).lists == ["newsletter"]


@pytest.mark.asyncio
async def test_branch_true_continues(coordinator, automations, executions, subscribers, clock, alice) -> None:
    await automations.create(
        make_automation([
            WaitAction(amount=7, unit="days"),
            ConditionAction(
                conditions=[BranchCondition(field="last_active_at", operator="greater_than", value="now-7d")]
            ),
            ListAction(type="remove_from_list", list_id="newsletter"),
        ])
    )
    execution = (await coordinator.process_event(signup_event()))[0]

    await subscribers.touch("tenant_1", "sub_alice", at=clock.advance(days=3))
    clock.advance(days=4, minutes=1)
    await coordinator.resume_due()

    stored = await executions.get(execution.execution_id)
    assert stored.status is ExecutionStatus.COMPLETED
    assert len(stored.step_log) == 3
    assert (await subscribers.get("tenant_1", "sub_alice")).lists == []


@pytest.mark.asyncio
async def test_single_active_execution_per_pair(coordinator, automations, clock, alice) -> None:
    await automations.create(make_automation([WaitAction(amount=1, unit="days"), custom_email("x")]))

    first = await coordinator.process_event(signup_event(event_id="evt_1"))
    second = await coordinator.process_event(signup_event(event_id="evt_2"))

    assert len(first) == 1
    assert second == []

    clock.advance(days=1)
    await coordinator.resume_due()
    third = await coordinator.process_event(signup_event(event_id="evt_3"))
    assert len(third) == 1


@pytest.mark.asyncio
async def test_dangling_active_guard_is_replaced(coordinator, automations, executions, redis, alice) -> None:
    await automations.create(make_automation([WaitAction(amount=1, unit="days"), custom_email("x")]))
    await redis.set(RedisKeys.execution_active("auto_1", "sub_alice"), "exec_lost")

    started = await coordinator.process_event(signup_event())

    assert len(started) == 1
    active = await executions.get_active("auto_1", "sub_alice")
    assert active is not None
    assert active.execution_id == started[0].execution_id
    assert await coordinator.process_event(signup_event(event_id="evt_2")) == []


@pytest.mark.asyncio
async def test_trigger_conditions_and_inactive_automations(coordinator, automations, alice) -> None:
    await automations.create(make_automation([custom_email("x")], "auto_src", {"source": "import"}))
    await automations.create(make_automation([custom_email("x")], "auto_off"))
    await automations.set_active("auto_off", False)

    assert await coordinator.process_event(signup_event()) == []


@pytest.mark.asyncio
async def test_event_without_subscriber_is_skipped(coordinator, automations) -> None:
    await automations.create(make_automation([custom_email("x")], trigger=TriggerKind.GENERIC_EVENT))
    event = Event(tenant_id="tenant_1", trigger_type=TriggerKind.GENERIC_EVENT)

    assert await coordinator.process_event(event) == []


@pytest.mark.asyncio
async def test_failed_step_is_recorded(coordinator, automations, executions, alice) -> None:
    await automations.create(
        make_automation([SendEmailAction(template_id="tpl_missing"), custom_email("never")])
    )

    execution = (await coordinator.process_event(signup_event()))[0]

    stored = await executions.get(execution.execution_id)
    assert stored.status is ExecutionStatus.FAILED
    assert stored.failed_step == 0
    assert stored.error == "Template not found"
    assert len(stored.step_log) == 1
    assert stored.step_log[0].success is False
    assert await executions.get_active("auto_1", "sub_alice") is None


@pytest.mark.asyncio
async def test_cancel_stops_suspended_execution(coordinator, automations, executions, clock, delivery, alice) -> None:
    await automations.create(make_automation([WaitAction(amount=1, unit="hours"), custom_email("x")]))
    execution = (await coordinator.process_event(signup_event()))[0]

    assert await coordinator.cancel(execution.execution_id, "unsubscribed") is True
    assert await coordinator.cancel(execution.execution_id) is False

    clock.advance(hours=2)
    assert await coordinator.resume_due() == 0
    assert delivery.sent == []

    stored = await executions.get(execution.execution_id)
    assert stored.status is ExecutionStatus.CANCELLED
    assert stored.cancel_reason == "unsubscribed"

    with pytest.raises(NotFoundError):
        await coordinator.cancel("exec_missing")


@pytest.mark.asyncio
async def test_cancel_for_automation_and_stats(coordinator, automations, subscribers, alice) -> None:
    await subscribers.save(make_subscriber("sub_bob"))
    await automations.create(make_automation([WaitAction(amount=1, unit="days"), custom_email("x")]))
    await coordinator.process_event(signup_event("sub_alice", "evt_a"))
    await coordinator.process_event(signup_event("sub_bob", "evt_b"))

    assert await coordinator.cancel_for_automation("auto_1") == 2

    stats = await coordinator.get_stats("auto_1")
    assert (stats.total, stats.active, stats.cancelled) == (2, 0, 2)


@pytest.mark.asyncio
async def test_cancel_for_subscriber_spans_automations(coordinator, automations, subscribers, alice) -> None:
    await subscribers.save(make_subscriber("sub_bob"))
    await automations.create(make_automation([WaitAction(amount=1, unit="days"), custom_email("x")]))
    await automations.create(
        make_automation([WaitAction(amount=2, unit="days"), custom_email("y")], automation_id="auto_2")
    )
    await coordinator.process_event(signup_event("sub_alice", "evt_a"))
    await coordinator.process_event(signup_event("sub_bob", "evt_b"))

    assert await coordinator.cancel_for_subscriber("tenant_1", "sub_alice", "unsubscribed") == 2
    assert await coordinator.cancel_for_subscriber("tenant_1", "sub_alice") == 0

    stats = [await coordinator.get_stats(automation_id) for automation_id in ("auto_1", "auto_2")]
    assert [(s.active, s.cancelled) for s in stats] == [(1, 1), (1, 1)]


@pytest.mark.asyncio
async def test_resume_claim_conflict(coordinator, automations, executions, clock, alice) -> None:
    await automations.create(make_automation([WaitAction(amount=1, unit="hours"), custom_email("x")]))
    execution = (await coordinator.process_event(signup_event()))[0]
    clock.advance(hours=1)

    await executions.claim(execution.execution_id)

    with pytest.raises(ClaimConflictError):
        await coordinator.resume(execution.execution_id)
    assert await coordinator.resume_due() == 0


@pytest.mark.asyncio
async def test_execution_keeps_its_definition_version(coordinator, automations, executions, clock, delivery, alice) -> None:
    await automations.create(make_automation([WaitAction(amount=1, unit="days"), custom_email("v1 body")]))
    execution = (await coordinator.process_event(signup_event()))[0]

    await automations.update("auto_1", make_automation([WaitAction(amount=1, unit="days"), custom_email("v2 body")]))

    clock.advance(days=1)
    await coordinator.resume_due()

    stored = await executions.get(execution.execution_id)
    assert stored.automation_version == 1
    assert stored.status is ExecutionStatus.COMPLETED
    assert [m.html for m in delivery.sent] == ["v1 body"]
    assert (await automations.get("auto_1")).version == 2


@pytest.mark.asyncio
async def test_missing_definition_fails_on_resume(coordinator, automations, executions, clock, alice) -> None:
    await automations.create(make_automation([WaitAction(amount=1, unit="days"), custom_email("x")]))
    execution = (await coordinator.process_event(signup_event()))[0]
    await automations.delete("auto_1")

    clock.advance(days=1)
    await coordinator.resume_due()

    stored = await executions.get(execution.execution_id)
    assert stored.status is ExecutionStatus.FAILED
    assert "not found" in stored.error
