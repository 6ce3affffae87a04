import httpx
import openai
import pytest

from conftest import FakeEmbeddingsClient
from folio.core.config import Settings
from folio.core.embed import EmbeddingGateway, batched, make_openai_client
from folio.core.errors import ConfigurationError, EmbeddingError


def rate_limit_error() -> openai.RateLimitError:
    request = httpx.Request("POST", "https://api.openai.com/v1/embeddings")
    response = httpx.Response(429, request=request)
    return openai.RateLimitError("Rate limit reached", response=response, body=None)


def gateway(client, **kwargs) -> EmbeddingGateway:
    options = dict(dimensions=8, batch_size=50, max_attempts=3, backoff_min=0, backoff_max=0)
    options.update(kwargs)
    return EmbeddingGateway(client, **options)


def test_batched():
    assert batched([1, 2, 3, 4, 5], 2) == [[1, 2], [3, 4], [5]]
    assert batched([], 3) == []


def test_embeds_in_batches_preserving_order():
    client = FakeEmbeddingsClient()
    texts = [f"chunk {i}" for i in range(120)]

    vectors = gateway(client).embed(texts)

    assert [len(r) for r in client.requests] == [50, 50, 20]
    assert len(vectors) == 120
    assert vectors[77] == client.vector_for("chunk 77")


def test_rate_limit_is_retried():
    failures = {"left": 2}

    def fail_twice(texts):
        if failures["left"]:
            failures["left"] -= 1
            return rate_limit_error()
        return None

    client = FakeEmbeddingsClient(fail_when=fail_twice)
    vectors = gateway(client).embed(["hello"])

    assert len(client.requests) == 3
    assert vectors == [client.vector_for("hello")]


def test_rate_limit_exhaustion_raises_embedding_error():
    client = FakeEmbeddingsClient(fail_when=lambda texts: rate_limit_error())

    with pytest.raises(EmbeddingError) as excinfo:
        gateway(client, max_attempts=3).embed(["hello"])

    assert len(client.requests) == 3
    assert "3 attempts" in str(excinfo.value)
    assert isinstance(excinfo.value.__cause__, openai.RateLimitError)


def test_other_failures_are_not_retried():
    client = FakeEmbeddingsClient(fail_when=lambda texts: RuntimeError("connection reset"))

    with pytest.raises(EmbeddingError) as excinfo:
        gateway(client).embed(["hello"])

    assert len(client.requests) == 1
    assert "connection reset" in str(excinfo.value)


def test_dimension_mismatch():
    client = FakeEmbeddingsClient(dimensions=4)
    with pytest.raises(EmbeddingError):
        gateway(client, dimensions=8).embed(["hello"])


def test_count_mismatch():
    client = FakeEmbeddingsClient()
    original = client.embeddings.create

    def drop_one(model, input, dimensions):
        response = original(model=model, input=input, dimensions=dimensions)
        response.data = response.data[:-1]
        return response

    client.embeddings.create = drop_one
    with pytest.raises(EmbeddingError):
        gateway(client).embed(["a", "b"])


def test_embed_query():
    client = FakeEmbeddingsClient()
    assert gateway(client).embed_query("what is a timer?") == client.vector_for("what is a timer?")


def test_from_settings_uses_configuration():
    settings = Settings(openai_api_key="k", embed_model="text-embedding-3-large", embed_dimensions=3072, embed_batch_size=10)
    client = FakeEmbeddingsClient(dimensions=3072)
    embedder = EmbeddingGateway.from_settings(settings, client=client)

    assert embedder.model == "text-embedding-3-large"
    assert embedder.dimensions == 3072
    assert embedder.batch_size == 10


def test_missing_api_key():
    with pytest.raises(ConfigurationError):
        make_openai_client(Settings(openai_api_key=""))
