import json
from collections.abc import Callable
from datetime import datetime, timezone

import pytest

from cascade_categorizer.classifiers.base import ChatCompleter, Embedder
from cascade_categorizer.core.settings import CascadeConfig
from cascade_categorizer.errors import TransientStageError
from cascade_categorizer.models import Category, Transaction
from cascade_categorizer.services.categorization import CategorizationPipeline, build_pipeline
from cascade_categorizer.services.usage import UsageRecorder
from cascade_categorizer.storage.memory import InMemoryStorage

ORG = "org-1"
NOW = datetime(2024, 3, 15, 12, 0, tzinfo=timezone.utc)


class FakeEmbedder(Embedder):
    """Looks vectors up by exact text; unknown text raises like a provider outage."""

    def __init__(self, vectors: dict[str, list[float]] | None = None):
        self.vectors = dict(vectors or {})
        self.calls: list[str] = []

    def embed(self, text: str) -> list[float]:
        self.calls.append(text)
        if text not in self.vectors:
            raise TransientStageError(f"no vector for {text!r}")
        return self.vectors[text]


class FakeCompleter(ChatCompleter):
    """Answers with a canned reply, or builds one from a callable over the prompt."""

    def __init__(self, reply: str | Callable[[str], str] = "[]", tokens: int = 0):
        self.reply = reply
        self.tokens = tokens
        self.calls: list[dict] = []

    def complete(self, model, messages, temperature=0.0, max_tokens=None):
        self.calls.append({"model": model, "messages": messages})
        prompt = messages[-1]["content"]
        text = self.reply(prompt) if callable(self.reply) else self.reply
        return text, self.tokens


def llm_reply(assignments: dict[str, int], confidence: float = 0.9) -> str:
    return json.dumps(
        [
            {"transaction_id": tx_id, "category_id": category_id, "confidence": confidence, "reasoning": "test"}
            for tx_id, category_id in assignments.items()
        ]
    )


def make_tx(
    tx_id: str,
    description: str = "",
    merchant: str | None = None,
    amount: float = -10.0,
    org: str = ORG,
    category_id: int | None = None,
) -> Transaction:
    return Transaction(
        id=tx_id,
        organization_id=org,
        amount=amount,
        description=description,
        merchant_name=merchant,
        date=NOW,
        category_id=category_id,
    )


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def storage() -> InMemoryStorage:
    store = InMemoryStorage()
    for category_id, name in ((1, "Coffee"), (2, "Groceries"), (3, "Travel"), (4, "Utilities")):
        store.add_category(Category(id=category_id, organization_id=ORG, name=name))
    return store


@pytest.fixture
def usage() -> UsageRecorder:
    return UsageRecorder(synchronous=True)


@pytest.fixture
def embedder() -> FakeEmbedder:
    return FakeEmbedder()


@pytest.fixture
def completer() -> FakeCompleter:
    return FakeCompleter()


@pytest.fixture
def config() -> CascadeConfig:
    return CascadeConfig()


@pytest.fixture
def pipeline(
    storage: InMemoryStorage,
    embedder: FakeEmbedder,
    completer: FakeCompleter,
    config: CascadeConfig,
    usage: UsageRecorder,
) -> CategorizationPipeline:
    return build_pipeline(storage, embedder, completer, config=config, usage=usage)
