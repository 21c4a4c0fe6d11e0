"""Tests for event parsing and consumption, idempotent event handling and the scheduler tick."""

import json
from contextlib import asynccontextmanager

import pytest
from pydantic import ValidationError

from mailflow.engine.coordinator import ExecutionCoordinator
from mailflow.messaging.consumer import RabbitMQConsumer, parse_event
from mailflow.messaging.handler import EventHandler
from mailflow.models.automation import (
    Automation,
    CustomContent,
    SendEmailAction,
    TriggerKind,
    TriggerSpec,
    WaitAction,
)
from mailflow.models.event import Event
from mailflow.scheduler import Scheduler
from mailflow.storage.auxiliary import IdempotencyStore
from tests.helpers import T0


def welcome_automation() -> Automation:
    return Automation(
        automation_id="auto_1",
        tenant_id="tenant_1",
        name="Welcome",
        trigger=TriggerSpec(type=TriggerKind.SIGNUP),
        actions=[
            SendEmailAction(subject="Hi", custom_content=CustomContent(html="first")),
            WaitAction(amount=1, unit="days"),
            SendEmailAction(subject="Hi", custom_content=CustomContent(html="second")),
        ],
    )


def test_parse_event_uses_message_id_fallback() -> None:
    body = json.dumps({
        "tenant_id": "tenant_1",
        "subscriber_id": "sub_1",
        "trigger_type": "user_signup",
        "timestamp": "2024-06-03T09:00:00",
    }).encode()

    event = parse_event(body, message_id="amqp_42")

    assert event.event_id == "amqp_42"
    assert event.trigger_type is TriggerKind.SIGNUP
    assert event.timestamp == T0


def test_parse_event_rejects_bad_payloads() -> None:
    with pytest.raises(ValueError):
        parse_event(b"[1, 2]")
    with pytest.raises(ValueError):
        parse_event(b"not json")
    with pytest.raises(ValidationError):
        parse_event(json.dumps({"tenant_id": "t", "trigger_type": "page_scroll"}).encode())


@pytest.mark.asyncio
async def test_duplicate_events_start_nothing(coordinator, automations, redis, delivery, alice) -> None:
    await automations.create(welcome_automation())
    idempotency = IdempotencyStore(redis, ttl_seconds=60)
    handler = EventHandler(coordinator, idempotency)
    event = Event(
        event_id="evt_dup",
        tenant_id="tenant_1",
        subscriber_id="sub_alice",
        trigger_type=TriggerKind.SIGNUP,
        timestamp=T0,
    )

    await handler.handle_event(event)
    await handler.handle_event(event)

    assert await idempotency.is_processed("evt_dup") is True
    assert [m.html for m in delivery.sent] == ["first"]


@pytest.mark.asyncio
async def test_failed_processing_is_not_marked(coordinator, redis, monkeypatch) -> None:
    idempotency = IdempotencyStore(redis, ttl_seconds=60)
    handler = EventHandler(coordinator, idempotency)

    async def explode(event):
        raise RuntimeError("redis down")

    monkeypatch.setattr(coordinator, "process_event", explode)
    event = Event(event_id="evt_err", tenant_id="tenant_1", trigger_type=TriggerKind.SIGNUP)

    with pytest.raises(RuntimeError):
        await handler.handle_event(event)
    assert await idempotency.is_processed("evt_err") is False


@pytest.mark.asyncio
async def test_redelivered_event_skips_automations_already_started(
    automations, executions, actions, redis, clock, delivery, alice, monkeypatch
) -> None:
    for automation_id in ("auto_a", "auto_b"):
        await automations.create(
            Automation(
                automation_id=automation_id,
                tenant_id="tenant_1",
                name=automation_id,
                trigger=TriggerSpec(type=TriggerKind.SIGNUP),
                actions=[SendEmailAction(subject="Hi", custom_content=CustomContent(html=automation_id))],
            )
        )
    idempotency = IdempotencyStore(redis, ttl_seconds=60)
    coordinator = ExecutionCoordinator(
        automations=automations,
        executions=executions,
        actions=actions,
        clock=clock,
        batch_pause_seconds=0,
        idempotency=idempotency,
    )
    handler = EventHandler(coordinator, idempotency)

    create_if_absent = executions.create_if_absent
    calls = []

    async def flaky_create(execution):
        calls.append(execution.automation_id)
        if len(calls) == 2:
            raise ConnectionError("redis down")
        return await create_if_absent(execution)

    monkeypatch.setattr(executions, "create_if_absent", flaky_create)
    event = Event(
        event_id="evt_retry",
        tenant_id="tenant_1",
        subscriber_id="sub_alice",
        trigger_type=TriggerKind.SIGNUP,
        timestamp=T0,
    )

    with pytest.raises(ConnectionError):
        await handler.handle_event(event)
    assert [m.html for m in delivery.sent] == [calls[0]]

    await handler.handle_event(event)

    assert sorted(m.html for m in delivery.sent) == ["auto_a", "auto_b"]
    assert await idempotency.is_processed("evt_retry") is True


@pytest.mark.asyncio
async def test_scheduler_tick_resumes_due_executions(coordinator, automations, clock, delivery, alice) -> None:
    await automations.create(welcome_automation())
    await coordinator.process_event(
        Event(tenant_id="tenant_1", subscriber_id="sub_alice", trigger_type=TriggerKind.SIGNUP, timestamp=T0)
    )
    scheduler = Scheduler(coordinator, interval_seconds=1, clock=clock)

    assert (await scheduler.tick()).executions_resumed == 0

    clock.advance(days=1)
    result = await scheduler.tick()

    assert result.executions_resumed == 1
    assert result.continuations_sent == 0
    assert [m.html for m in delivery.sent] == ["first", "second"]


class FakeMessage:
    """Minimal stand-in for an aio-pika incoming message."""

    def __init__(self, body: bytes, redelivered: bool = False):
        self.body = body
        self.message_id = "amqp_1"
        self.redelivered = redelivered
        self.processed = False
        self.outcome: tuple | None = None

    async def reject(self, requeue: bool = False) -> None:
        self.processed = True
        self.outcome = ("reject", requeue)

    @asynccontextmanager
    async def process(self, ignore_processed: bool = False):
        yield self
        if not (ignore_processed and self.processed):
            self.processed = True
            self.outcome = ("ack",)


SIGNUP_BODY = json.dumps({"tenant_id": "tenant_1", "subscriber_id": "sub_1", "trigger_type": "user_signup"}).encode()


@pytest.mark.asyncio
async def test_consumer_acks_malformed_messages() -> None:
    handled = []

    async def handler(event: Event) -> None:
        handled.append(event)

    message = FakeMessage(b"not json")
    await RabbitMQConsumer(handler)._process_message(message)

    assert message.outcome == ("ack",)
    assert handled == []


@pytest.mark.asyncio
@pytest.mark.parametrize(("redelivered", "requeue"), [(False, True), (True, False)])
async def test_consumer_requeues_failed_event_once(redelivered, requeue) -> None:
    async def handler(event: Event) -> None:
        raise ConnectionError("redis down")

    message = FakeMessage(SIGNUP_BODY, redelivered=redelivered)
    await RabbitMQConsumer(handler)._process_message(message)

    assert message.outcome == ("reject", requeue)


@pytest.mark.asyncio
async def test_consumer_acks_handled_event() -> None:
    handled = []

    async def handler(event: Event) -> None:
        handled.append(event)

    message = FakeMessage(SIGNUP_BODY)
    await RabbitMQConsumer(handler)._process_message(message)

    assert message.outcome == ("ack",)
    assert handled[0].event_id == "amqp_1"
