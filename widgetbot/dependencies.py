"""Explicitly constructed service handles for one process.

The entry point (server lifespan or CLI) calls ``build_services()`` once,
passes the container around, and calls ``close_services()`` on shutdown.
No client in this package is created at import time.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from langchain_openai import OpenAIEmbeddings
from sqlalchemy.ext.asyncio import AsyncEngine

from widgetbot.config import (
    EMBEDDING_MODEL,
    OPENAI_API_KEY,
    SIDE_EFFECT_WEBHOOK_SECRET,
    SIDE_EFFECT_WEBHOOK_URL,
)
from widgetbot.knowledge.bots import SqlBotRepository
from widgetbot.knowledge.indexer import KnowledgeIndexer
from widgetbot.knowledge.retriever import VectorRetriever
from widgetbot.knowledge.store import PgVectorChunkStore
from widgetbot.orchestrator import ChatOrchestrator
from widgetbot.services.database import create_engine, create_session_factory
from widgetbot.services.llm import LLMClient, build_chat_model
from widgetbot.services.metrics import MetricsClient
from widgetbot.services.rate_limiter import SlidingWindowRateLimiter
from widgetbot.services.side_effects import SideEffectDispatcher

logger = logging.getLogger(__name__)


@dataclass
class Services:
    engine: AsyncEngine | None
    bots: SqlBotRepository
    orchestrator: ChatOrchestrator
    indexer: KnowledgeIndexer
    dispatcher: SideEffectDispatcher
    metrics: MetricsClient


def build_services() -> Services:
    """Wire every collaborator from ``widgetbot.config``."""
    metrics = MetricsClient()
    engine = create_engine()
    session_factory = create_session_factory(engine)

    bots = SqlBotRepository(session_factory)
    store = PgVectorChunkStore(session_factory)
    embeddings = OpenAIEmbeddings(model=EMBEDDING_MODEL, api_key=OPENAI_API_KEY)

    orchestrator = ChatOrchestrator(
        bots=bots,
        retriever=VectorRetriever(embeddings, store, metrics),
        llm=LLMClient(build_chat_model(), metrics),
        rate_limiter=SlidingWindowRateLimiter(),
        metrics=metrics,
    )
    services = Services(
        engine=engine,
        bots=bots,
        orchestrator=orchestrator,
        indexer=KnowledgeIndexer(embeddings, store, metrics),
        dispatcher=SideEffectDispatcher(
            SIDE_EFFECT_WEBHOOK_URL, metrics, secret=SIDE_EFFECT_WEBHOOK_SECRET,
        ),
        metrics=metrics,
    )
    logger.info("Services built (webhook %s)", "on" if services.dispatcher.enabled else "off")
    return services


async def close_services(services: Services) -> None:
    """Release connections and flush buffered metrics."""
    await services.dispatcher.aclose()
    if services.engine is not None:
        await services.engine.dispose()
    services.metrics.flush()
    logger.info("Services closed")
