from __future__ import annotations

import math
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

import pytest

from memoria.config.schema import Config
from memoria.errors import ProviderError, ProviderUnavailableError
from memoria.memory.store import MemoStore
from memoria.providers.gateway import ProviderGateway
from memoria.providers.local import LocalGeneration
from memoria.providers.remote import RemoteCompletion, RemoteEmbeddings
from memoria.providers.usage import UsageLedger
from memoria.queue.manager import JobQueue
from memoria.queue.store import SqliteJobStore
from memoria.sessions import AgentSessionTracker, SessionStore
from memoria.storage.chat_store import SqliteChatStore
from memoria.telemetry.inmemory import InMemoryTelemetry
from memoria.utils.helpers import utc_now

DEFAULT_VECTOR = [1.0, 0.0, 0.0, 0.0]


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeLocal:
    """Stands in for OllamaClient; replies are picked by prompt shape."""

    def __init__(self) -> None:
        self.available = True
        self.verdict = "YES"
        self.header: str | None = "Alice explains the deploy pipeline in #eng."
        self.summary = "Deploys go through the staging pipeline"
        self.tags = '["deploy", "ci"]'
        self.category = "procedure"
        self.vectors: dict[str, list[float]] = {}
        self.prompts: list[str] = []
        self.embedded: list[str] = []

    async def is_available(self) -> bool:
        return self.available

    def mark_unavailable(self) -> None:
        self.available = False

    async def embed(self, text: str, *, model: str) -> list[float]:
        if not self.available:
            raise ProviderUnavailableError("embed", "down")
        self.embedded.append(text)
        for key, vector in self.vectors.items():
            if key in text:
                return list(vector)
        return list(DEFAULT_VECTOR)

    async def generate(
        self,
        prompt: str,
        *,
        model: str,
        max_tokens: int = 120,
        temperature: float = 0.1,
        system: str | None = None,
    ) -> LocalGeneration:
        if not self.available:
            raise ProviderUnavailableError("generate", "down")
        self.prompts.append(prompt)
        if "Answer YES or NO" in prompt:
            text = self.verdict
        elif "situating the message" in prompt:
            text = self.header or ""
        elif "concise title" in prompt:
            text = self.summary
        elif "topic tags" in prompt:
            text = self.tags
        elif "exactly one of" in prompt:
            text = self.category
        else:
            text = ""
        return LocalGeneration(text=text, input_tokens=10, output_tokens=5)


class FakeRemote:
    """Stands in for LiteLLMClient; completions are served from a queue."""

    def __init__(self) -> None:
        self.completions: list[RemoteCompletion | Exception] = []
        self.fail_embeddings = False
        self.calls: list[dict[str, Any]] = []
        self.embed_calls: list[list[str]] = []

    def reply(self, content: str, **kwargs: Any) -> None:
        self.completions.append(
            RemoteCompletion(content=content, input_tokens=100, output_tokens=20, **kwargs)
        )

    async def complete(self, messages: list[dict[str, Any]], **kwargs: Any) -> RemoteCompletion:
        self.calls.append({"messages": [dict(m) for m in messages], **kwargs})
        if not self.completions:
            raise ProviderError("no scripted completion")
        result = self.completions.pop(0)
        if isinstance(result, Exception):
            raise result
        return result

    async def embed(self, texts: list[str], *, model: str, timeout: float = 30.0) -> RemoteEmbeddings:
        self.embed_calls.append(list(texts))
        if self.fail_embeddings:
            raise ProviderError("remote embedding down")
        return RemoteEmbeddings(vectors=[[0.0, 1.0, 0.0, 0.0] for _ in texts], input_tokens=len(texts) * 8)


@pytest.fixture(autouse=True)
def memoria_home(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    home = tmp_path / "home"
    monkeypatch.setenv("MEMORIA_HOME", str(home))
    return home


@pytest.fixture
def config() -> Config:
    return Config()


@pytest.fixture
def telemetry() -> InMemoryTelemetry:
    return InMemoryTelemetry()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def job_store(tmp_path: Path, clock: FakeClock):
    store = SqliteJobStore(tmp_path / "queue.db", clock=clock)
    yield store
    store.close()


@pytest.fixture
def queue(job_store: SqliteJobStore, telemetry: InMemoryTelemetry) -> JobQueue:
    return JobQueue(job_store, telemetry=telemetry)


@pytest.fixture
def chat(tmp_path: Path):
    store = SqliteChatStore(tmp_path / "chat.db")
    yield store
    store.close()


@pytest.fixture
def memos(tmp_path: Path):
    store = MemoStore(tmp_path / "memos.db")
    yield store
    store.close()


@pytest.fixture
def ledger(tmp_path: Path):
    store = UsageLedger(tmp_path / "usage.db")
    yield store
    store.close()


@pytest.fixture
def tracker(tmp_path: Path, telemetry: InMemoryTelemetry):
    store = SessionStore(tmp_path / "sessions.db")
    yield AgentSessionTracker(store, telemetry=telemetry)
    store.close()


@pytest.fixture
def local() -> FakeLocal:
    return FakeLocal()


@pytest.fixture
def remote() -> FakeRemote:
    return FakeRemote()


@pytest.fixture
def gateway(
    config: Config,
    local: FakeLocal,
    remote: FakeRemote,
    ledger: UsageLedger,
    telemetry: InMemoryTelemetry,
) -> ProviderGateway:
    return ProviderGateway(config, local=local, remote=remote, ledger=ledger, telemetry=telemetry)


def minutes_ago(minutes: float) -> datetime:
    return utc_now() - timedelta(minutes=minutes)


def at_similarity(similarity: float) -> list[float]:
    """Unit vector whose cosine with DEFAULT_VECTOR is ``similarity``."""
    return [similarity, math.sqrt(1.0 - similarity**2), 0.0, 0.0]
