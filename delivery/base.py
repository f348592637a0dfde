"""
Abstract outbound delivery for the conversation bot.

Base class for everything that carries an Action to the user or staff.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

from conversation.models import Action

logger = logging.getLogger(__name__)


@dataclass
class DeliveryResult:
    """Response from a delivery attempt."""
    success: bool
    message_id: Optional[str] = None
    error: Optional[str] = None


class ActionDelivery(ABC):
    """Abstract base class for delivery collaborators."""

    @abstractmethod
    async def deliver(self, action: Action) -> DeliveryResult:
        """Deliver a REPLY or NOTIFY action."""
        ...

    async def health_check(self) -> bool:
        return True

    async def close(self) -> None:
        return None


class LoggingDelivery(ActionDelivery):
    """Writes actions to the log. Used when no callback is configured."""

    async def deliver(self, action: Action) -> DeliveryResult:
        logger.info(
            f"Delivering {action.kind.value} to {action.conversation_id}: {action.payload[:80]}",
            extra={"conversation_id": action.conversation_id, "kind": action.kind.value},
        )
        return DeliveryResult(success=True)
