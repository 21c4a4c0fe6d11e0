"""Wiring of stores, delivery and engine components."""

from redis.asyncio import Redis

from mailflow.campaigns.dispatcher import CampaignDispatcher
from mailflow.core.config import Settings, get_settings
from mailflow.core.logging import get_logger
from mailflow.delivery.base import DeliveryChannel
from mailflow.delivery.http import HTTPChannel
from mailflow.delivery.smtp import SMTPChannel
from mailflow.engine.actions import ActionExecutor
from mailflow.engine.coordinator import ExecutionCoordinator
from mailflow.segmentation.service import SegmentService
from mailflow.storage.auxiliary import IdempotencyStore
from mailflow.storage.automation_store import AutomationStore
from mailflow.storage.campaign_store import CampaignStore
from mailflow.storage.execution_store import ExecutionStore
from mailflow.storage.segment_store import SegmentStore
from mailflow.storage.subscriber_store import SubscriberStore
from mailflow.storage.template_store import TemplateStore

logger = get_logger(__name__)


def build_delivery_channel(settings: Settings | None = None) -> DeliveryChannel | None:
    """Create the configured delivery channel, or None when it is not configured."""
    settings = settings or get_settings()

    if settings.delivery_backend == "http":
        if not settings.delivery_api_url:
            logger.warning("HTTP delivery not configured")
            return None
        return HTTPChannel(settings)

    if not settings.smtp_host:
        logger.warning("SMTP not configured")
        return None
    return SMTPChannel(settings)


def build_coordinator(redis: Redis, delivery: DeliveryChannel | None) -> ExecutionCoordinator:
    """Create an execution coordinator backed by Redis."""
    actions = ActionExecutor(
        subscribers=SubscriberStore(redis),
        templates=TemplateStore(redis),
        delivery=delivery,
    )
    return ExecutionCoordinator(
        automations=AutomationStore(redis),
        executions=ExecutionStore(redis),
        actions=actions,
        idempotency=IdempotencyStore(redis),
    )


def build_segment_service(redis: Redis) -> SegmentService:
    return SegmentService(segments=SegmentStore(redis), subscribers=SubscriberStore(redis))


def build_campaign_dispatcher(redis: Redis, delivery: DeliveryChannel | None) -> CampaignDispatcher:
    return CampaignDispatcher(
        campaigns=CampaignStore(redis),
        segments=SegmentStore(redis),
        subscribers=SubscriberStore(redis),
        delivery=delivery,
    )
