"""Builds the long-lived collaborators (classifier, engine, adapters, notifier) once per process."""

from dataclasses import dataclass
from datetime import timedelta
from functools import lru_cache
from typing import Callable, Optional

import httpx
from sqlalchemy.orm import Session

from techrehub.config import Settings, settings
from techrehub.database import SessionLocal
from techrehub.logging_config import get_logger
from techrehub.services.catalog import Catalog, load_catalog, load_intents_file
from techrehub.services.channel_base import ChannelAdapter
from techrehub.services.conversation_engine import ConversationEngine
from techrehub.services.intent_classifier import IntentClassifier, build_corpus
from techrehub.services.messenger_service import MessengerAdapter
from techrehub.services.notifier import OperatorNotifier
from techrehub.services.record_service import RecordService
from techrehub.services.session_store import CachedSessionStore, InMemorySessionCache, SqlSessionStore
from techrehub.services.whatsapp_service import WhatsAppAdapter

logger = get_logger("runtime")


@dataclass
class Runtime:
    engine: ConversationEngine
    records: RecordService
    notifier: OperatorNotifier
    whatsapp: WhatsAppAdapter
    messenger: MessengerAdapter
    catalog: Catalog

    def adapter_for(self, platform: str) -> ChannelAdapter:
        if platform == "whatsapp":
            return self.whatsapp
        if platform == "messenger":
            return self.messenger
        raise KeyError(platform)


def build_runtime(
    config: Settings = settings,
    session_factory: Callable[[], Session] = SessionLocal,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    **engine_overrides,
) -> Runtime:
    catalog = load_catalog()
    classifier = IntentClassifier.train(
        build_corpus(catalog, load_intents_file()),
        threshold=config.intent_threshold,
    )
    records = RecordService(session_factory)

    whatsapp = WhatsAppAdapter(
        access_token=config.whatsapp_access_token,
        phone_number_id=config.whatsapp_phone_number_id,
        api_url=config.whatsapp_api_url,
        app_secret=config.whatsapp_app_secret,
        catalog=catalog,
        signature_required=config.webhook_signature_required,
        timeout=config.send_timeout_seconds,
        records=records,
        transport=transport,
    )
    messenger = MessengerAdapter(
        page_access_token=config.messenger_page_access_token,
        api_url=config.messenger_api_url,
        app_secret=config.messenger_app_secret,
        signature_required=config.webhook_signature_required,
        timeout=config.send_timeout_seconds,
        records=records,
        transport=transport,
    )
    notifier = OperatorNotifier(whatsapp.send_text, config.admin_numbers)

    store = CachedSessionStore(
        SqlSessionStore(session_factory),
        InMemorySessionCache(ttl_seconds=config.session_cache_ttl_seconds),
    )
    options = {
        "stale_after": timedelta(minutes=config.session_stale_minutes),
        "history_limit": config.session_history_limit,
        "serialize_turns": config.serialize_turns,
        **engine_overrides,
    }
    engine = ConversationEngine(
        classifier=classifier,
        store=store,
        records=records,
        notifier=notifier,
        catalog=catalog,
        **options,
    )
    logger.info(
        "Runtime ready",
        extra={
            "context": {
                "intents": len(classifier.intents),
                "whatsapp_configured": whatsapp.configured,
                "messenger_configured": messenger.configured,
                "admins": len(config.admin_numbers),
            }
        },
    )
    return Runtime(
        engine=engine,
        records=records,
        notifier=notifier,
        whatsapp=whatsapp,
        messenger=messenger,
        catalog=catalog,
    )


@lru_cache(maxsize=1)
def get_runtime() -> Runtime:
    return build_runtime()
