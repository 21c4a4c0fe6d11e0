"""Campaign dispatch: audience resolution, batched sends and A/B winner continuations.

An A/B campaign sends its variants to a test share of the audience and
persists the rest as a remainder. A continuation scheduled
``winner_wait_hours`` later is claimed by the scheduler tick, which picks the
winning variant from the recorded counters and sends it to the remainder.
"""

import asyncio
import math
from datetime import datetime, timedelta

from mailflow.core.config import get_settings
from mailflow.core.errors import ClaimConflictError, DeliveryError, NotFoundError, ValidationError
from mailflow.core.logging import get_logger
from mailflow.core.timeutil import Clock, utcnow
from mailflow.delivery.base import DeliveryChannel
from mailflow.engine.personalize import build_tokens, personalize
from mailflow.models.campaign import (
    Campaign,
    CampaignStatus,
    DispatchResult,
    Variant,
    VariantResult,
)
from mailflow.models.message import OutboundMessage
from mailflow.models.subscriber import Subscriber, SubscriberStatus
from mailflow.observability.metrics import CLAIM_CONFLICTS, DUE_RECORDS, MESSAGES_SENT
from mailflow.segmentation.compiler import CompiledSegment, SegmentCompiler
from mailflow.storage.campaign_store import CampaignStore
from mailflow.storage.segment_store import SegmentStore
from mailflow.storage.subscriber_store import SubscriberStore

logger = get_logger(__name__)

SENDABLE_STATUSES = frozenset({CampaignStatus.DRAFT, CampaignStatus.SCHEDULED, CampaignStatus.PAUSED})


def confidence_score(results: list[VariantResult]) -> float:
    """Rough confidence that the best variant beats the runner-up, capped at 95."""
    if len(results) < 2:
        return 0.0

    best, second = sorted(results, key=lambda r: r.conversion_rate, reverse=True)[:2]
    average = (best.conversion_rate + second.conversion_rate) / 2
    if average == 0:
        return 0.0
    return min(95.0, (best.conversion_rate - second.conversion_rate) / average * 100)


def split_test_groups(
    recipients: list[Subscriber],
    test_percentage: float,
    variants: list[Variant],
) -> tuple[dict[str, list[Subscriber]], list[Subscriber]]:
    """Split an audience into per-variant test groups and a remainder.

    ``floor(n * test_percentage / 100)`` recipients form the test share; each
    variant takes ``floor(test_size * percentage / 100)`` of it in order.
    Test recipients left over by rounding join the remainder.

    Returns:
        (groups by variant name, remainder)
    """
    test_size = math.floor(len(recipients) * test_percentage / 100)
    test = recipients[:test_size]

    groups: dict[str, list[Subscriber]] = {}
    cursor = 0
    for variant in variants:
        count = math.floor(test_size * variant.percentage / 100)
        groups[variant.name] = test[cursor:cursor + count]
        cursor += count

    remainder = test[cursor:] + recipients[test_size:]
    return groups, remainder


class CampaignDispatcher:
    """Sends campaigns to segment-defined audiences."""

    def __init__(
        self,
        campaigns: CampaignStore,
        segments: SegmentStore,
        subscribers: SubscriberStore,
        delivery: DeliveryChannel | None,
        compiler: SegmentCompiler | None = None,
        clock: Clock = utcnow,
        batch_size: int | None = None,
        batch_pause_seconds: float | None = None,
        page_size: int | None = None,
    ):
        settings = get_settings()
        self._campaigns = campaigns
        self._segments = segments
        self._subscribers = subscribers
        self._delivery = delivery
        self._compiler = compiler or SegmentCompiler()
        self._clock = clock
        self._batch_size = batch_size or settings.delivery_batch_size
        self._pause = settings.batch_pause_seconds if batch_pause_seconds is None else batch_pause_seconds
        self._page_size = page_size or settings.audience_page_size
        self._default_wait_hours = settings.ab_test_wait_hours

    async def resolve_audience(self, campaign: Campaign) -> list[Subscriber]:
        """Active subscribers in every one of the campaign's segments.

        With no segments the audience is every active subscriber of the tenant.

        Raises:
            NotFoundError: If a segment does not exist for the campaign's tenant
        """
        active = await self._fetch_all(self._compiler.compile(campaign.tenant_id, []))

        member_ids: set[str] | None = None
        for segment_id in campaign.segment_ids:
            segment = await self._segments.get(segment_id, tenant_id=campaign.tenant_id)
            if segment is None:
                raise NotFoundError(f"Segment {segment_id} not found")

            compiled = self._compiler.compile(segment.tenant_id, segment.conditions, segment.logical_operator)
            ids = {s.subscriber_id for s in await self._fetch_all(compiled)}
            member_ids = ids if member_ids is None else member_ids & ids

        if member_ids is None:
            return active
        return [s for s in active if s.subscriber_id in member_ids]

    async def send(self, campaign_id: str) -> DispatchResult:
        """Send a campaign now.

        A campaign whose audience cannot be resolved keeps its status.

        Raises:
            NotFoundError: If the campaign does not exist
            ValidationError: If the campaign was already sent
            DeliveryError: If no delivery channel is configured
        """
        campaign = await self._campaigns.get(campaign_id)
        if campaign is None:
            raise NotFoundError(f"Campaign {campaign_id} not found")
        if campaign.status not in SENDABLE_STATUSES:
            raise ValidationError(f"Campaign {campaign_id} cannot be sent from status {campaign.status.value}")
        if self._delivery is None:
            raise DeliveryError("Delivery not configured")

        recipients = await self.resolve_audience(campaign)
        if not recipients:
            campaign.status = CampaignStatus.FAILED
            await self._campaigns.save(campaign)
            logger.warning("Campaign has no recipients", campaign_id=campaign_id)
            return DispatchResult(success=False, error="No recipients found")

        campaign.status = CampaignStatus.SENDING
        await self._campaigns.save(campaign)

        logger.info("Sending campaign", campaign_id=campaign_id, recipients=len(recipients))

        if campaign.ab_test and campaign.ab_test.enabled:
            return await self._send_ab_test(campaign, recipients)

        sent, failed = await self._send_batches(campaign, recipients, campaign.subject, campaign.html_content)

        campaign.stats.total = len(recipients)
        campaign.stats.sent = sent
        campaign.stats.failed = failed
        campaign.status = CampaignStatus.SENT
        campaign.sent_at = self._clock()
        await self._campaigns.save(campaign)

        logger.info("Campaign sent", campaign_id=campaign_id, sent=sent, failed=failed)
        return DispatchResult(success=True, sent=sent, failed=failed)

    async def variant_results(self, campaign: Campaign) -> list[VariantResult]:
        """Measure each variant; the highest conversion rate wins."""
        if not campaign.ab_test or not campaign.ab_test.enabled:
            return []

        results = []
        for variant in campaign.ab_test.variants:
            counters = await self._campaigns.variant_counters(campaign.campaign_id, variant.name)
            sent = counters["sent"]
            results.append(
                VariantResult(
                    variant=variant.name,
                    sent=sent,
                    open_rate=counters["opened"] / sent * 100 if sent else 0.0,
                    click_rate=counters["clicked"] / sent * 100 if sent else 0.0,
                    conversion_rate=counters["converted"] / sent * 100 if sent else 0.0,
                )
            )

        if len(results) > 1:
            best = results[0]
            for result in results[1:]:
                if result.conversion_rate > best.conversion_rate:
                    best = result
            best.is_winner = True
            best.confidence = confidence_score(results)

        return results

    async def record_variant_event(self, campaign_id: str, variant: str, event: str) -> None:
        """Count an open, click or conversion attributed to a variant."""
        counter = {"opened": "opened", "clicked": "clicked", "converted": "converted"}.get(event)
        if counter is None:
            raise ValidationError(f"Unknown variant event: {event}")
        await self._campaigns.incr_variant(campaign_id, variant, counter)

    async def run_due_continuations(self, now: datetime | None = None) -> int:
        """Send the winning variant for every due A/B continuation.

        A continuation whose winner send raises marks its campaign FAILED and
        puts the remainder back under the campaign for inspection; it is not
        rescheduled because part of the remainder may already have been sent.

        Returns:
            Number of continuations completed by this worker
        """
        if self._delivery is None:
            raise DeliveryError("Delivery not configured")

        now = now or self._clock()
        campaign_ids = await self._campaigns.due_continuations(now, get_settings().resume_batch_size)
        DUE_RECORDS.labels(record="continuation").set(len(campaign_ids))

        completed = 0
        for campaign_id in campaign_ids:
            try:
                remaining_ids = await self._campaigns.claim_continuation(campaign_id)
            except ClaimConflictError as e:
                CLAIM_CONFLICTS.labels(record="continuation").inc()
                logger.info("Continuation claim lost", campaign_id=campaign_id, error=str(e))
                continue

            try:
                await self._send_winner(campaign_id, remaining_ids)
            except Exception as e:
                logger.error(
                    "Winner send failed",
                    campaign_id=campaign_id,
                    remaining=len(remaining_ids),
                    error=str(e),
                    exc_info=True,
                )
                await self._fail_continuation(campaign_id, remaining_ids)
                continue
            completed += 1
        return completed

    async def _fail_continuation(self, campaign_id: str, remaining_ids: list[str]) -> None:
        await self._campaigns.restore_remainder(campaign_id, remaining_ids)
        campaign = await self._campaigns.get(campaign_id)
        if campaign is not None:
            campaign.status = CampaignStatus.FAILED
            await self._campaigns.save(campaign)

    async def _send_ab_test(self, campaign: Campaign, recipients: list[Subscriber]) -> DispatchResult:
        ab_test = campaign.ab_test
        groups, remainder = split_test_groups(recipients, ab_test.test_percentage, ab_test.variants)

        sent = failed = 0
        for variant in ab_test.variants:
            group = groups[variant.name]
            if not group:
                continue
            variant_sent, variant_failed = await self._send_batches(
                campaign,
                group,
                variant.subject,
                variant.html_content,
                variant=variant.name,
            )
            sent += variant_sent
            failed += variant_failed

        wait_hours = ab_test.winner_wait_hours or self._default_wait_hours
        due_at = self._clock() + timedelta(hours=wait_hours)
        await self._campaigns.schedule_continuation(
            campaign.campaign_id,
            due_at,
            [s.subscriber_id for s in remainder],
        )

        campaign.stats.total = len(recipients)
        campaign.stats.sent = sent
        campaign.stats.failed = failed
        campaign.status = CampaignStatus.TESTING
        campaign.sent_at = self._clock()
        await self._campaigns.save(campaign)

        logger.info(
            "A/B test variants sent",
            campaign_id=campaign.campaign_id,
            sent=sent,
            failed=failed,
            remaining=len(remainder),
            winner_due_at=due_at.isoformat(),
        )
        return DispatchResult(success=True, sent=sent, failed=failed, remaining=len(remainder))

    async def _send_winner(self, campaign_id: str, remaining_ids: list[str]) -> None:
        campaign = await self._campaigns.get(campaign_id)
        if campaign is None or campaign.ab_test is None:
            logger.warning("Continuation for unknown A/B campaign", campaign_id=campaign_id)
            return

        results = await self.variant_results(campaign)
        winner = next((r for r in results if r.is_winner), None)
        variant = next((v for v in campaign.ab_test.variants if winner and v.name == winner.variant), None)
        if variant is None:
            logger.warning("No A/B winner", campaign_id=campaign_id)
            campaign.status = CampaignStatus.SENT
            await self._campaigns.save(campaign)
            return

        recipients = []
        for subscriber_id in remaining_ids:
            subscriber = await self._subscribers.get(campaign.tenant_id, subscriber_id)
            if subscriber is not None and subscriber.status is SubscriberStatus.ACTIVE:
                recipients.append(subscriber)

        sent, failed = await self._send_batches(campaign, recipients, variant.subject, variant.html_content)

        campaign.winner = variant.name
        campaign.stats.sent += sent
        campaign.stats.failed += failed
        campaign.status = CampaignStatus.SENT
        await self._campaigns.save(campaign)

        logger.info(
            "A/B winner sent",
            campaign_id=campaign_id,
            winner=variant.name,
            confidence=winner.confidence,
            sent=sent,
            failed=failed,
        )

    async def _fetch_all(self, compiled: CompiledSegment) -> list[Subscriber]:
        subscribers: list[Subscriber] = []
        offset = 0
        now = self._clock()
        while True:
            page = await self._subscribers.fetch_rows(compiled.rows(limit=self._page_size, offset=offset), now)
            subscribers.extend(page)
            if len(page) < self._page_size:
                return subscribers
            offset += self._page_size

    async def _send_batches(
        self,
        campaign: Campaign,
        recipients: list[Subscriber],
        subject: str,
        html: str,
        variant: str | None = None,
    ) -> tuple[int, int]:
        sent = failed = 0
        for offset in range(0, len(recipients), self._batch_size):
            batch = recipients[offset:offset + self._batch_size]
            results = await asyncio.gather(
                *(self._send_one(campaign, subscriber, subject, html, variant) for subscriber in batch)
            )
            sent += sum(1 for ok in results if ok)
            failed += sum(1 for ok in results if not ok)

            if offset + self._batch_size < len(recipients) and self._pause:
                await asyncio.sleep(self._pause)
        return sent, failed

    async def _send_one(
        self,
        campaign: Campaign,
        subscriber: Subscriber,
        subject: str,
        html: str,
        variant: str | None,
    ) -> bool:
        tokens = build_tokens(subscriber)
        message = OutboundMessage(
            to=subscriber.email,
            subject=personalize(subject, tokens),
            html=personalize(html, tokens),
            text=personalize(campaign.text_content, tokens),
            metadata={
                "tenant_id": campaign.tenant_id,
                "campaign_id": campaign.campaign_id,
                "subscriber_id": subscriber.subscriber_id,
                "variant": variant,
            },
        )

        try:
            result = await self._delivery.send(message)
        except DeliveryError as e:
            logger.warning("Campaign send failed", campaign_id=campaign.campaign_id, to=subscriber.email, error=str(e))
            MESSAGES_SENT.labels(source="campaign", status="failed").inc()
            return False

        MESSAGES_SENT.labels(source="campaign", status="sent" if result.success else "rejected").inc()
        if result.success and variant:
            await self._campaigns.incr_variant(campaign.campaign_id, variant, "sent")
        return result.success
