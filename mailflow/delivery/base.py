"""Base class for delivery channels."""

from abc import ABC, abstractmethod

from mailflow.models.message import DeliveryResult, OutboundMessage


class DeliveryChannel(ABC):
    """Abstract base class for outbound message delivery."""

    @property
    @abstractmethod
    def channel_type(self) -> str:
        """Return channel type identifier."""
        pass

    @abstractmethod
    async def send(self, message: OutboundMessage) -> DeliveryResult:
        """Hand a message to the provider.

        Args:
            message: Personalized outbound message

        Returns:
            Provider verdict; a rejected message is ``success=False``

        Raises:
            DeliveryError: If the provider could not be reached
        """
        pass

    async def close(self) -> None:
        """Clean up resources. Override if needed."""
        pass
