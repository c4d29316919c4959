"""Shared fakes: a canned narrator and in-memory connections."""

import pytest

from api.hub import BroadcastHub
from api.sessions import SessionService
from api.storage import MemoryStorage
from narrator import GameSummary


class FakeNarrator:
    """Returns canned text and records what it was asked."""

    def __init__(self, text: str = "Fog rolls over Shadowbrook."):
        self.text = text
        self.contexts = []
        self.summaries = []

    async def generate_narrative(self, context, api_key):
        self.contexts.append((context, api_key))
        return self.text

    async def generate_summary(self, context, api_key):
        self.summaries.append((context, api_key))
        return GameSummary(winner=context.winner, summary=f"The {context.winner.lower()} prevail.", key_moments=[])


class FakeConnection:
    """Collects everything sent to it; raises on send when broken."""

    def __init__(self, broken: bool = False):
        self.sent = []
        self.broken = broken

    async def send_json(self, data):
        if self.broken:
            raise RuntimeError("connection closed")
        self.sent.append(data)

    def types(self):
        return [m["type"] for m in self.sent]


@pytest.fixture(autouse=True)
def no_env_narrator_key(monkeypatch):
    for name in ("GEMINI_API_KEY", "OPENAI_API_KEY", "ANTHROPIC_API_KEY", "NARRATOR_PROVIDER"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def fake_narrator():
    return FakeNarrator()


@pytest.fixture
def storage():
    return MemoryStorage()


@pytest.fixture
def service(storage, fake_narrator):
    return SessionService(storage, BroadcastHub(), narrator=fake_narrator)


@pytest.fixture
def make_connection():
    return FakeConnection
