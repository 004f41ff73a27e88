"""Shared test fixtures for the widget chat core test suite."""

from __future__ import annotations

import os
from typing import Sequence
from unittest.mock import MagicMock

import pytest


def pytest_configure(config):
    """Set test environment variables BEFORE collection starts.

    This runs before any imports, so config.py won't fail on module load.
    """
    os.environ.setdefault("ANTHROPIC_API_KEY", "test-anthropic-key-123")
    os.environ.setdefault("OPENAI_API_KEY", "test-openai-key-456")
    os.environ.setdefault("METRICS_ENABLED", "false")


def word_count(text: str) -> int:
    """Token counter stand-in: one token per whitespace-delimited word."""
    return len(text.split())


# ── Fakes for the external capabilities ─────────────────────────────


class FakeEmbeddings:
    """Async embeddings double; fails when ``error`` is set."""

    def __init__(self, dims: int = 3, error: Exception | None = None):
        self.dims = dims
        self.error = error
        self.queries: list[str] = []
        self.documents: list[list[str]] = []

    async def aembed_query(self, text: str) -> list[float]:
        self.queries.append(text)
        if self.error:
            raise self.error
        return [0.1] * self.dims

    async def aembed_documents(self, texts: list[str]) -> list[list[float]]:
        self.documents.append(list(texts))
        if self.error:
            raise self.error
        return [[float(i)] * self.dims for i in range(len(texts))]


class FakeChunkStore:
    """In-memory ``ChunkStore`` returning canned search results."""

    def __init__(self, results=None, error: Exception | None = None):
        self.results = list(results or [])
        self.error = error
        self.searches: list[tuple[str, int]] = []
        self.replaced: dict[str, list] = {}

    async def search(self, bot_id: str, vector: Sequence[float], top_k: int):
        self.searches.append((bot_id, top_k))
        if self.error:
            raise self.error
        return self.results[:top_k]

    async def replace_chunks(self, bot_id, chunks, vectors) -> int:
        if self.error:
            raise self.error
        self.replaced[bot_id] = list(zip(chunks, vectors))
        return len(chunks)


class FakeBotRepository:
    def __init__(self, *bots):
        self.bots = {bot.id: bot for bot in bots}
        self.calls: list[str] = []

    async def get(self, bot_id: str):
        self.calls.append(bot_id)
        return self.bots.get(bot_id)


@pytest.fixture
def metrics():
    """A MetricsClient double that records calls but never publishes."""
    return MagicMock()


@pytest.fixture
def make_bot():
    """Factory fixture for ``Bot`` records with sensible defaults."""
    from widgetbot.models import Bot

    def _make(**overrides):
        fields = {
            "id": "bot-1",
            "account_id": "acct-1",
            "description": "Bright Smile is a family dental practice offering cleanings and whitening.",
            "tone": "Friendly",
            "contact_email": "hello@brightsmile.test",
            "contact_phone": "",
            "address": "",
        }
        fields.update(overrides)
        return Bot(**fields)

    return _make
