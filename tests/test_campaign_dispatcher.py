"""Tests for campaign sends, A/B splitting and the persisted winner continuation."""

from datetime import timedelta

import pytest
import pytest_asyncio

from mailflow.campaigns.dispatcher import CampaignDispatcher, confidence_score, split_test_groups
from mailflow.core.errors import DeliveryError, NotFoundError, ValidationError
from mailflow.models.campaign import ABTestConfig, Campaign, CampaignStatus, Variant, VariantResult
from mailflow.models.segment import Condition, SegmentDefinition
from mailflow.models.subscriber import SubscriberStatus
from tests.helpers import T0, FakeDelivery, make_subscriber


def make_dispatcher(campaigns, segments, subscribers, delivery, clock) -> CampaignDispatcher:
    return CampaignDispatcher(
        campaigns=campaigns,
        segments=segments,
        subscribers=subscribers,
        delivery=delivery,
        clock=clock,
        batch_size=3,
        batch_pause_seconds=0,
        page_size=4,
    )


@pytest.fixture
def dispatcher(campaigns, segments, subscribers, delivery, clock) -> CampaignDispatcher:
    return make_dispatcher(campaigns, segments, subscribers, delivery, clock)


@pytest_asyncio.fixture
async def audience(subscribers) -> None:
    for index in range(10):
        await subscribers.save(
            make_subscriber(
                f"sub_{index}",
                first_name=f"N{index}",
                country="FR" if index % 2 == 0 else "DE",
                created_at=T0 - timedelta(minutes=index),
            )
        )
    await subscribers.save(make_subscriber("sub_gone", status=SubscriberStatus.UNSUBSCRIBED))


def make_campaign(campaign_id: str = "camp_1", **fields) -> Campaign:
    return Campaign(
        campaign_id=campaign_id,
        tenant_id="tenant_1",
        name="June newsletter",
        subject="News for {{firstName}}",
        html_content="<p>Hello {{name}}</p>",
        **fields,
    )


def ab_config(wait_hours: int = 2) -> ABTestConfig:
    return ABTestConfig(
        test_percentage=50,
        winner_wait_hours=wait_hours,
        variants=[
            Variant(name="A", subject="Subject A", html_content="<p>A</p>", percentage=50),
            Variant(name="B", subject="Subject B", html_content="<p>B</p>", percentage=50),
        ],
    )


def test_split_test_groups_floors_and_keeps_leftovers() -> None:
    recipients = [make_subscriber(f"s{i}") for i in range(10)]
    variants = [
        Variant(name="A", subject="a", html_content="a", percentage=50),
        Variant(name="B", subject="b", html_content="b", percentage=50),
    ]

    groups, remainder = split_test_groups(recipients, 50, variants)

    assert [len(groups["A"]), len(groups["B"])] == [2, 2]
    assert len(remainder) == 6
    assert remainder[0].subscriber_id == "s4"
    every = [s.subscriber_id for g in groups.values() for s in g] + [s.subscriber_id for s in remainder]
    assert sorted(every) == sorted(s.subscriber_id for s in recipients)


def test_confidence_score() -> None:
    assert confidence_score([VariantResult(variant="A")]) == 0.0
    assert confidence_score([VariantResult(variant="A"), VariantResult(variant="B")]) == 0.0
    score = confidence_score([
        VariantResult(variant="A", conversion_rate=10),
        VariantResult(variant="B", conversion_rate=5),
    ])
    assert score == pytest.approx(66.666, rel=1e-3)
    capped = confidence_score([
        VariantResult(variant="A", conversion_rate=10),
        VariantResult(variant="B", conversion_rate=0),
    ])
    assert capped == 95.0


def test_ab_variants_must_total_100() -> None:
    with pytest.raises(ValueError):
        ABTestConfig(
            test_percentage=20,
            variants=[
                Variant(name="A", subject="a", html_content="a", percentage=50),
                Variant(name="B", subject="b", html_content="b", percentage=40),
            ],
        )


@pytest.mark.asyncio
async def test_send_to_active_audience(dispatcher, campaigns, delivery, audience) -> None:
    await campaigns.save(make_campaign())

    result = await dispatcher.send("camp_1")

    assert result.success is True
    assert (result.sent, result.failed) == (10, 0)
    assert "sub_gone@example.com" not in {m.to for m in delivery.sent}
    assert {m.metadata["campaign_id"] for m in delivery.sent} == {"camp_1"}
    assert any(m.subject == "News for N3" for m in delivery.sent)

    stored = await campaigns.get("camp_1")
    assert stored.status is CampaignStatus.SENT
    assert stored.stats.sent == 10
    assert stored.sent_at == T0


@pytest.mark.asyncio
async def test_rejected_messages_count_as_failed(campaigns, segments, subscribers, clock, audience) -> None:
    delivery = FakeDelivery(reject={"sub_1@example.com"})
    dispatcher = make_dispatcher(campaigns, segments, subscribers, delivery, clock)
    await campaigns.save(make_campaign())

    result = await dispatcher.send("camp_1")

    assert (result.sent, result.failed) == (9, 1)


@pytest.mark.asyncio
async def test_segments_intersect(dispatcher, campaigns, segments, delivery, audience) -> None:
    await segments.save(
        SegmentDefinition(
            segment_id="seg_fr",
            tenant_id="tenant_1",
            name="French",
            conditions=[Condition(field="country", operator="equals", value="FR")],
        )
    )
    await campaigns.save(make_campaign(segment_ids=["seg_fr"]))

    result = await dispatcher.send("camp_1")

    assert result.sent == 5
    assert {m.to for m in delivery.sent} == {f"sub_{i}@example.com" for i in (0, 2, 4, 6, 8)}


@pytest.mark.asyncio
async def test_no_recipients_marks_failed(dispatcher, campaigns) -> None:
    await campaigns.save(make_campaign())

    result = await dispatcher.send("camp_1")

    assert result.success is False
    assert result.error == "No recipients found"
    assert (await campaigns.get("camp_1")).status is CampaignStatus.FAILED


@pytest.mark.asyncio
async def test_send_guards(dispatcher, campaigns, segments, subscribers, clock, audience) -> None:
    await campaigns.save(make_campaign(status=CampaignStatus.SENT))
    with pytest.raises(ValidationError):
        await dispatcher.send("camp_1")

    await campaigns.save(make_campaign("camp_2"))
    no_delivery = make_dispatcher(campaigns, segments, subscribers, None, clock)
    with pytest.raises(DeliveryError):
        await no_delivery.send("camp_2")


@pytest.mark.asyncio
async def test_ab_test_then_winner_continuation(dispatcher, campaigns, delivery, clock, audience) -> None:
    await campaigns.save(make_campaign(ab_test=ab_config(wait_hours=2)))

    result = await dispatcher.send("camp_1")

    assert result.success is True
    assert (result.sent, result.remaining) == (4, 6)
    assert sorted(m.subject for m in delivery.sent) == ["Subject A", "Subject A", "Subject B", "Subject B"]
    assert (await campaigns.get("camp_1")).status is CampaignStatus.TESTING

    await dispatcher.record_variant_event("camp_1", "B", "converted")
    clock.advance(hours=1)
    assert await dispatcher.run_due_continuations() == 0

    clock.advance(hours=1)
    assert await dispatcher.run_due_continuations() == 1
    assert await dispatcher.run_due_continuations() == 0

    winner_sends = delivery.sent[4:]
    assert len(winner_sends) == 6
    assert {m.subject for m in winner_sends} == {"Subject B"}
    assert len({m.to for m in delivery.sent}) == 10

    stored = await campaigns.get("camp_1")
    assert stored.status is CampaignStatus.SENT
    assert stored.winner == "B"
    assert stored.stats.sent == 10

    results = await dispatcher.variant_results(stored)
    assert [(r.variant, r.sent, r.is_winner) for r in results] == [("A", 2, False), ("B", 2, True)]
    assert results[1].conversion_rate == 50.0


@pytest.mark.asyncio
async def test_missing_segment_keeps_campaign_sendable(dispatcher, campaigns, delivery, audience) -> None:
    await campaigns.save(make_campaign(segment_ids=["seg_missing"]))

    with pytest.raises(NotFoundError):
        await dispatcher.send("camp_1")

    assert (await campaigns.get("camp_1")).status is CampaignStatus.DRAFT
    assert delivery.sent == []


@pytest.mark.asyncio
async def test_failed_winner_send_keeps_remainder(dispatcher, campaigns, delivery, clock, audience, monkeypatch) -> None:
    await campaigns.save(make_campaign(ab_test=ab_config(wait_hours=2)))
    await dispatcher.send("camp_1")

    async def broken_send(message):
        raise RuntimeError("provider client crashed")

    monkeypatch.setattr(delivery, "send", broken_send)
    clock.advance(hours=2)

    assert await dispatcher.run_due_continuations() == 0

    stored = await campaigns.get("camp_1")
    assert stored.status is CampaignStatus.FAILED
    assert stored.winner is None
    assert len(await campaigns.remainder("camp_1")) == 6

    clock.advance(hours=1)
    assert await dispatcher.run_due_continuations() == 0


@pytest.mark.asyncio
async def test_unknown_variant_event_rejected(dispatcher) -> None:
    with pytest.raises(ValidationError):
        await dispatcher.record_variant_event("camp_1", "A", "bounced")
