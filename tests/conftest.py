import hashlib
import threading
from collections import Counter
from pathlib import Path
from types import SimpleNamespace
from typing import Callable, List, Optional, Sequence

import pytest

from folio.core.config import Settings
from folio.core.embed import EmbeddingGateway
from folio.core.errors import ExtractionError
from folio.core.ingest import IngestionOrchestrator
from folio.core.store import MemoryStore

DIMENSIONS = 8


class FakeTextSource:
    """Text source serving fixed page texts, counting tool invocations per page."""

    def __init__(self, pages: Sequence[str], fail_on_count: bool = False, gate: Optional[threading.Event] = None):
        self.pages = list(pages)
        self.fail_on_count = fail_on_count
        self.gate = gate
        self.extract_started = threading.Event()
        self.calls: Counter = Counter()
        self._lock = threading.Lock()

    def page_count(self, pdf_path: Path) -> int:
        if self.fail_on_count:
            raise ExtractionError("Could not read PDF: file is damaged")
        return len(self.pages)

    def extract_page(self, pdf_path: Path, page_number: int) -> str:
        self.extract_started.set()
        if self.gate is not None:
            self.gate.wait(timeout=10)
        with self._lock:
            self.calls[page_number] += 1
        return self.pages[page_number - 1]


def text_vector(text: str, dimensions: int = DIMENSIONS) -> List[float]:
    """Deterministic non-zero vector for a text."""
    digest = hashlib.sha256(text.encode("utf-8")).digest()
    return [digest[i] / 255.0 + 0.01 for i in range(dimensions)]


class FakeEmbeddingsClient:
    """OpenAI-shaped client exposing ``embeddings.create``."""

    def __init__(
        self,
        dimensions: int = DIMENSIONS,
        vector_for: Optional[Callable[[str], List[float]]] = None,
        fail_when: Optional[Callable[[List[str]], Optional[Exception]]] = None
    ):
        self.dimensions = dimensions
        self.vector_for = vector_for or (lambda text: text_vector(text, dimensions))
        self.fail_when = fail_when
        self.requests: List[List[str]] = []
        self._lock = threading.Lock()
        self.embeddings = SimpleNamespace(create=self._create)

    def _create(self, model: str, input: List[str], dimensions: int):
        with self._lock:
            self.requests.append(list(input))
        if self.fail_when is not None:
            error = self.fail_when(list(input))
            if error is not None:
                raise error
        return SimpleNamespace(
            data=[SimpleNamespace(embedding=self.vector_for(text)) for text in input]
        )


class FakeChatClient:
    """OpenAI-shaped client exposing ``chat.completions.create``."""

    def __init__(self, content: Optional[str] = "Answer from the context [Source 1].", error: Optional[Exception] = None):
        self.content = content
        self.error = error
        self.requests: List[dict] = []
        self.chat = SimpleNamespace(completions=SimpleNamespace(create=self._create))

    def _create(self, **kwargs):
        self.requests.append(kwargs)
        if self.error is not None:
            raise self.error
        message = SimpleNamespace(content=self.content)
        return SimpleNamespace(choices=[SimpleNamespace(message=message)])


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        openai_api_key="test-key",
        embed_dimensions=DIMENSIONS,
        embed_backoff_min=0,
        embed_backoff_max=0,
        worker_count=3,
        processing_dir=tmp_path / "processing",
    )


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def embeddings_client() -> FakeEmbeddingsClient:
    return FakeEmbeddingsClient()


@pytest.fixture
def embedder(embeddings_client, settings) -> EmbeddingGateway:
    return EmbeddingGateway.from_settings(settings, client=embeddings_client)


@pytest.fixture
def make_orchestrator(store, embedder, settings):
    """Build an orchestrator over the memory store for a given text source."""

    created = []

    def build(text_source, embedder_override=None, store_override=None) -> IngestionOrchestrator:
        orchestrator = IngestionOrchestrator(
            store=store_override or store,
            embedder=embedder_override or embedder,
            text_source=text_source,
            settings=settings,
        )
        created.append(orchestrator)
        return orchestrator

    yield build

    for orchestrator in created:
        orchestrator.shutdown(timeout=10)
