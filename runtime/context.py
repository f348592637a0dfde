"""
Runtime context for the conversation bot.

Everything shared between requests (storage adapter, lock table,
dispatcher, delivery client) is created here and handed to the API or
CLI explicitly. Nothing is reachable through module globals.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from config.settings import Settings
from conversation.dispatcher import Dispatcher
from conversation.engine import ConversationEngine
from conversation.normalizer import Clock, EventNormalizer, utc_now
from delivery.base import ActionDelivery, LoggingDelivery
from delivery.callback import CallbackDelivery
from storage.base import StorageAdapter
from storage.factory import create_store
from storage.locks import KeyedLocks

logger = logging.getLogger(__name__)


@dataclass
class BotContext:
    """Explicitly owned bundle of the bot's collaborators."""
    settings: Settings
    store: StorageAdapter
    locks: KeyedLocks
    engine: ConversationEngine
    normalizer: EventNormalizer
    delivery: ActionDelivery
    dispatcher: Dispatcher

    async def aclose(self) -> None:
        await self.dispatcher.aclose()
        await self.delivery.close()
        await self.store.close()
        logger.info("Bot context closed")

    def health(self) -> dict:
        return {
            "backend": self.store.name,
            "transports": self.normalizer.transports,
            "pending_conversations": self.dispatcher.pending_conversations,
        }


def create_delivery(settings: Settings) -> ActionDelivery:
    if settings.delivery_callback_url:
        logger.info(f"Delivering actions to {settings.delivery_callback_url}")
        return CallbackDelivery(
            settings.delivery_callback_url,
            api_key=settings.delivery_api_key,
            timeout=settings.delivery_timeout,
        )
    logger.warning("DELIVERY_CALLBACK_URL not set, actions will only be logged")
    return LoggingDelivery()


async def build_context(
    settings: Settings,
    store: Optional[StorageAdapter] = None,
    delivery: Optional[ActionDelivery] = None,
    clock: Clock = utc_now,
) -> BotContext:
    """Assemble the context; store and delivery can be injected (tests, CLI)."""
    locks = KeyedLocks()
    if store is None:
        store = await create_store(settings, locks)
    if delivery is None:
        delivery = create_delivery(settings)

    engine = ConversationEngine(settings.engine_config)
    dispatcher = Dispatcher(
        store,
        engine,
        delivery,
        retry=settings.retry_policy,
        reorder_window=settings.reorder_window,
    )
    logger.info(f"Bot context ready (backend={store.name})")
    return BotContext(
        settings=settings,
        store=store,
        locks=locks,
        engine=engine,
        normalizer=EventNormalizer(clock),
        delivery=delivery,
        dispatcher=dispatcher,
    )
