from __future__ import annotations

import math
import random
import re
import zlib
from pathlib import Path
from typing import Any, Iterable, List, Mapping, Optional, Sequence, Union

import pytest

from infrasim.interactions import InteractionLog
from infrasim.manager import InfraMemoryManager
from infrasim.mutations import MutationEngine
from infrasim.parser import ResilientParser
from infrasim.storage import OrganizationStore
from infrasim.tools import ChatResponder, CommandRouter


class FakeEmbeddingClient:
    """Deterministic bag-of-words vectors; ``dimension`` can be changed mid-test."""

    model = "fake-embedding"

    def __init__(self, dimension: int = 1024) -> None:
        self.dimension = dimension
        self.calls: List[List[str]] = []

    async def embed(self, texts: Iterable[str]) -> List[List[float]]:
        items = list(texts)
        self.calls.append(items)
        return [self._vector(text) for text in items]

    def _vector(self, text: str) -> List[float]:
        vector = [0.0] * self.dimension
        for token in re.findall(r"[a-z0-9]+", text.lower()):
            vector[zlib.crc32(token.encode("utf-8")) % self.dimension] += 1.0
        norm = math.sqrt(sum(value * value for value in vector)) or 1.0
        return [value / norm for value in vector]


class FakeLLMClient:
    model = "fake-llm"

    def __init__(self, replies: Sequence[Union[str, Exception]] = (), default: Optional[str] = None) -> None:
        self.replies = list(replies)
        self.default = default
        self.calls: List[List[Mapping[str, Any]]] = []

    async def chat(
        self, messages: Sequence[Mapping[str, Any]], *, extra_body: Mapping[str, Any] | None = None
    ) -> str:
        self.calls.append(list(messages))
        if self.replies:
            reply = self.replies.pop(0)
        elif self.default is not None:
            reply = self.default
        else:
            raise AssertionError("No reply queued for chat call")
        if isinstance(reply, Exception):
            raise reply
        return reply


class SleepRecorder:
    def __init__(self) -> None:
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def embedder() -> FakeEmbeddingClient:
    return FakeEmbeddingClient()


@pytest.fixture
def store_dir(tmp_path: Path) -> Path:
    return tmp_path / "vector-store"


@pytest.fixture
def store(store_dir: Path, embedder: FakeEmbeddingClient) -> OrganizationStore:
    return OrganizationStore(store_dir, embedder)


@pytest.fixture
def sleeper() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def make_llm():
    def _factory(replies: Sequence[Union[str, Exception]] = (), default: Optional[str] = None) -> FakeLLMClient:
        return FakeLLMClient(replies, default=default)

    return _factory


@pytest.fixture
def make_router(store: OrganizationStore):
    def _factory(llm_client: Any = None, simulation: Any = None) -> CommandRouter:
        rng = random.Random(7)
        return CommandRouter(
            store,
            engine=MutationEngine(rng),
            chat=ChatResponder(llm_client),
            simulation=simulation,
            rng=rng,
        )

    return _factory


@pytest.fixture
def make_manager(store: OrganizationStore, sleeper: SleepRecorder, make_router):
    def _factory(llm_client: Any) -> InfraMemoryManager:
        log = InteractionLog(50)
        parser = ResilientParser(llm_client=llm_client, interactions=log, sleep=sleeper)
        return InfraMemoryManager(store=store, parser=parser, router=make_router(llm_client))

    return _factory
