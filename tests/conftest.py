"""Pytest configuration and fixtures."""

from typing import AsyncIterator

import pytest
import pytest_asyncio
from fakeredis import FakeAsyncRedis

from mailflow.engine.actions import ActionExecutor
from mailflow.engine.coordinator import ExecutionCoordinator
from mailflow.models.subscriber import EmailTemplate, Subscriber
from mailflow.storage.automation_store import AutomationStore
from mailflow.storage.campaign_store import CampaignStore
from mailflow.storage.execution_store import ExecutionStore
from mailflow.storage.segment_store import SegmentStore
from mailflow.storage.subscriber_store import SubscriberStore
from mailflow.storage.template_store import TemplateStore
from tests.helpers import T0, FakeDelivery, MutableClock, make_subscriber


@pytest_asyncio.fixture
async def redis() -> AsyncIterator[FakeAsyncRedis]:
    client = FakeAsyncRedis(decode_responses=True)
    yield client
    await client.flushall()
    await client.aclose()


@pytest.fixture
def clock() -> MutableClock:
    return MutableClock()


@pytest.fixture
def delivery() -> FakeDelivery:
    return FakeDelivery()


@pytest.fixture
def subscribers(redis) -> SubscriberStore:
    return SubscriberStore(redis)


@pytest.fixture
def templates(redis) -> TemplateStore:
    return TemplateStore(redis)


@pytest.fixture
def automations(redis) -> AutomationStore:
    return AutomationStore(redis)


@pytest.fixture
def executions(redis) -> ExecutionStore:
    return ExecutionStore(redis)


@pytest.fixture
def segments(redis) -> SegmentStore:
    return SegmentStore(redis)


@pytest.fixture
def campaigns(redis) -> CampaignStore:
    return CampaignStore(redis)


@pytest.fixture
def actions(subscribers, templates, delivery) -> ActionExecutor:
    return ActionExecutor(subscribers=subscribers, templates=templates, delivery=delivery)


@pytest.fixture
def coordinator(automations, executions, actions, clock) -> ExecutionCoordinator:
    return ExecutionCoordinator(
        automations=automations,
        executions=executions,
        actions=actions,
        clock=clock,
        worker_concurrency=4,
        resume_batch_size=100,
        batch_pause_seconds=0,
    )


@pytest_asyncio.fixture
async def alice(subscribers) -> Subscriber:
    return await subscribers.save(
        make_subscriber(
            "sub_alice",
            first_name="Alice",
            last_name="Smith",
            lists=["newsletter"],
            last_active_at=T0,
        )
    )


@pytest_asyncio.fixture
async def welcome_template(templates) -> EmailTemplate:
    return await templates.save(
        EmailTemplate(
            template_id="tpl_welcome",
            tenant_id="tenant_1",
            name="Welcome",
            subject="Welcome, {{firstName}}!",
            html_content="<p>Hi {{ name }}, thanks for joining via {{source}}.</p>",
            text_content="Hi {{name}}",
        )
    )
