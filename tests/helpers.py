"""Shared test doubles."""

from datetime import datetime, timedelta, timezone

from mailflow.delivery.base import DeliveryChannel
from mailflow.models.message import DeliveryResult, OutboundMessage
from mailflow.models.subscriber import Subscriber

T0 = datetime(2024, 6, 3, 9, 0, tzinfo=timezone.utc)


class MutableClock:
    """Clock the tests move forward by hand."""

    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeDelivery(DeliveryChannel):
    """In-memory delivery channel recording every message."""

    channel_type = "fake"

    def __init__(self, reject: set[str] | None = None):
        self.sent: list[OutboundMessage] = []
        self._reject = reject or set()

    async def send(self, message: OutboundMessage) -> DeliveryResult:
        if message.to in self._reject:
            return DeliveryResult(success=False, error="Mailbox unavailable")
        self.sent.append(message)
        return DeliveryResult(success=True, message_id=f"msg_{len(self.sent)}")


def make_subscriber(subscriber_id: str, tenant_id: str = "tenant_1", **fields) -> Subscriber:
    fields.setdefault("email", f"{subscriber_id}@example.com")
    fields.setdefault("created_at", T0)
    return Subscriber(subscriber_id=subscriber_id, tenant_id=tenant_id, **fields)
