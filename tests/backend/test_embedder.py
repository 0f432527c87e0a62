import math
from types import SimpleNamespace

import httpx
import pytest
from openai import APIError

import apps.backend.docquiz.embedder as embedder
from apps.backend.docquiz.config import settings
from apps.backend.docquiz.errors import ConfigurationError, UpstreamFailure
from apps.backend.docquiz.schemas import PageChunk


class _FakeEmbeddings:
    def __init__(self, fail_on=None, usage=True):
        self.calls = []
        self.fail_on = fail_on
        self.usage = usage

    def create(self, model, input):
        self.calls.append(input)
        if self.fail_on is not None and input == self.fail_on:
            request = httpx.Request("POST", "https://api.openai.com/v1/embeddings")
            raise APIError("rate limited", request, body=None)
        usage = SimpleNamespace(prompt_tokens=len(input.split()), total_tokens=None) if self.usage else None
        return SimpleNamespace(data=[SimpleNamespace(embedding=[3.0, 4.0], index=0)], usage=usage)


def _use_client(monkeypatch, embeddings):
    monkeypatch.setattr(settings, "embedding_provider", "openai")
    monkeypatch.setattr(settings, "openai_api_key", "sk-test")
    monkeypatch.setattr(embedder, "_client", lambda: SimpleNamespace(embeddings=embeddings))


def test_one_call_per_chunk_in_order(monkeypatch):
    fake = _FakeEmbeddings()
    _use_client(monkeypatch, fake)
    chunks = [PageChunk(page=1, content="alpha beta"), PageChunk(page=2, content="gamma delta epsilon")]
    out = embedder.embed_chunks(chunks)
    assert fake.calls == ["alpha beta", "gamma delta epsilon"]
    assert [c.page for c in out] == [1, 2]
    assert [c.tokens for c in out] == [2, 3]
    assert out[0].embedding == pytest.approx([0.6, 0.8])


def test_tokens_absent_without_usage(monkeypatch):
    _use_client(monkeypatch, _FakeEmbeddings(usage=False))
    out = embedder.embed_chunks([PageChunk(page=1, content="alpha")])
    assert out[0].tokens is None


def test_backend_error_aborts_batch(monkeypatch):
    fake = _FakeEmbeddings(fail_on="second")
    _use_client(monkeypatch, fake)
    chunks = [PageChunk(page=1, content=t) for t in ("first", "second", "third")]
    with pytest.raises(UpstreamFailure) as exc:
        embedder.embed_chunks(chunks)
    assert "rate limited" in exc.value.message
    assert fake.calls == ["first", "second"]


def test_missing_vector_is_upstream_failure(monkeypatch):
    class _Empty:
        def create(self, model, input):
            return SimpleNamespace(data=[], usage=None)

    _use_client(monkeypatch, _Empty())
    with pytest.raises(UpstreamFailure):
        embedder.embed_chunks([PageChunk(page=1, content="alpha")])


def test_missing_key_fails_before_any_call(monkeypatch):
    monkeypatch.setattr(settings, "embedding_provider", "openai")
    monkeypatch.setattr(settings, "openai_api_key", None)
    with pytest.raises(ConfigurationError):
        embedder.embed_chunks([PageChunk(page=1, content="alpha")])


def test_fake_provider_is_deterministic_and_normalized():
    a = embedder.embed_texts(["same text"])[0]
    b = embedder.embed_texts(["same text"])[0]
    assert a == b
    assert len(a) == settings.embedding_dim
    assert math.isclose(math.sqrt(sum(x * x for x in a)), 1.0, rel_tol=1e-9)
