import os

# Must be set before the app modules build their engine
os.environ["DATABASE_URL"] = "sqlite://"

import random
import textwrap

import fitz
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from apps.backend.docquiz import repository as repo
from apps.backend.docquiz.cache import TTLCache
from apps.backend.docquiz.config import settings
from apps.backend.docquiz.db import get_session, init_db
from apps.backend.docquiz.embedder import _fake_vector
from apps.backend.docquiz.main import app
from apps.backend.docquiz.routers import get_cache
from apps.backend.docquiz.schemas import EmbeddedChunk

USER_ID = "user-1"
TEST_DIM = 16

VOCAB = [
    "river", "signal", "market", "protein", "engine", "ledger", "glacier", "enzyme",
    "harbor", "circuit", "pollen", "theorem", "canyon", "vaccine", "orbit", "tariff",
    "lattice", "monsoon", "quartz", "synapse", "voltage", "estuary", "algorithm", "fossil",
    "membrane", "turbine", "dialect", "nebula", "sediment", "catalyst", "archive", "mineral",
    "compiler", "reservoir", "plankton", "isotope", "vector", "ferment", "delta", "meadow",
]


def make_text(seed: int, sentences: int = 6) -> str:
    """Readable, non-repeating prose; different seeds share almost no phrases."""
    rng = random.Random(seed)
    out = []
    for i in range(sentences):
        w = rng.sample(VOCAB, 8)
        out.append(
            f"The {w[0]} {w[1]} is connected to {w[2]} and {w[3]} because "
            f"{w[4]} {w[5]} shapes {w[6]} {w[7]} in case {seed}-{i}."
        )
    return " ".join(out)


def make_pdf(page_texts) -> bytes:
    doc = fitz.open()
    for body in page_texts:
        page = doc.new_page()
        y = 40
        for line in textwrap.wrap(body, 90):
            page.insert_text((36, y), line, fontsize=8)
            y += 10
    data = doc.tobytes()
    doc.close()
    return data


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture(autouse=True)
def offline_backends(monkeypatch):
    monkeypatch.setattr(settings, "embedding_provider", "fake")
    monkeypatch.setattr(settings, "embedding_dim", TEST_DIM)
    monkeypatch.setattr(settings, "qgen_provider", "heuristic")
    monkeypatch.setattr(settings, "ocr_provider", "")
    monkeypatch.setattr(settings, "openai_api_key", None)


@pytest.fixture
def engine():
    eng = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    init_db(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def cache():
    return TTLCache(max_entries=16, ttl_seconds=60.0, clock=FakeClock())


@pytest.fixture
def client(session_factory, cache):
    def _session():
        session = session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    app.dependency_overrides[get_session] = _session
    app.dependency_overrides[get_cache] = lambda: cache
    yield TestClient(app, headers={"X-User-Id": USER_ID})
    app.dependency_overrides.clear()


@pytest.fixture
def seed_document(db):
    """Store a document straight through the repository: {page: [chunk text, ...]}."""
    def _seed(pages, user_id: str = USER_ID, title: str = "Seeded Doc") -> str:
        doc = repo.create_document_record(db, user_id, title)
        chunks = [
            EmbeddedChunk(page=page, content=content, embedding=_fake_vector(content, TEST_DIM))
            for page, contents in pages.items()
            for content in contents
        ]
        repo.save_doc_chunks(db, doc.id, chunks)
        db.commit()
        return str(doc.id)
    return _seed
