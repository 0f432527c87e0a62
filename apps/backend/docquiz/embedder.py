import math
import hashlib
from typing import List, Optional, Sequence

from .config import settings
from .errors import ConfigurationError, UpstreamFailure
from .logger import get_logger
from .schemas import EmbeddedChunk, PageChunk

logger = get_logger(__name__)

def _normalize(vec: List[float]) -> List[float]:
    # cosine likes normalized vectors
    s = math.sqrt(sum(v*v for v in vec)) or 1.0
    return [v / s for v in vec]

def _fake_vector(text: str, dim: int) -> List[float]:
    # Deterministic, non-semantic vectors for dev. Do NOT use in prod.
    h = hashlib.sha256(text.encode("utf-8")).digest()
    raw = []
    while len(raw) < dim:
        raw.extend(h)
        h = hashlib.sha256(h).digest()
    # map bytes to [-0.5, 0.5)
    return _normalize([(b / 255.0) - 0.5 for b in raw[:dim]])

def _client():
    if not settings.openai_api_key:
        raise ConfigurationError("OPENAI_API_KEY is not set; cannot call the embedding backend")
    from openai import OpenAI
    return OpenAI(api_key=settings.openai_api_key)

def _embed_one(client, text: str) -> tuple[List[float], Optional[int]]:
    """One backend round trip. Raises UpstreamFailure on any failure."""
    from openai import APIError

    try:
        resp = client.embeddings.create(model=settings.openai_embedding_model, input=text)
    except APIError as e:
        raise UpstreamFailure(f"Embedding backend error: {e.message}") from e

    data = getattr(resp, "data", None) or []
    vector = getattr(data[0], "embedding", None) if data else None
    if not vector:
        raise UpstreamFailure("Embedding backend returned no vector")

    usage = getattr(resp, "usage", None)
    tokens = None
    if usage is not None:
        tokens = getattr(usage, "prompt_tokens", None) or getattr(usage, "total_tokens", None)
    return _normalize(list(vector)), tokens

def embed_chunks(chunks: Sequence[PageChunk]) -> List[EmbeddedChunk]:
    """Embed each chunk with its own backend call, in order.

    The batch aborts on the first failure; nothing partial is returned, so the
    caller either stores every vector or none.
    """
    if not chunks:
        return []

    if settings.embedding_provider.lower() == "fake":
        return [
            EmbeddedChunk(page=c.page, content=c.content,
                          embedding=_fake_vector(c.content, settings.embedding_dim), tokens=None)
            for c in chunks
        ]

    client = _client()
    out: List[EmbeddedChunk] = []
    for i, c in enumerate(chunks):
        try:
            vec, tokens = _embed_one(client, c.content)
        except UpstreamFailure:
            logger.error(f"Embedding failed at chunk {i + 1}/{len(chunks)} (page {c.page}); aborting batch")
            raise
        out.append(EmbeddedChunk(page=c.page, content=c.content, embedding=vec, tokens=tokens))
    logger.info(f"Embedded {len(out)} chunks with {settings.openai_embedding_model}")
    return out

def embed_texts(texts: List[str]) -> List[List[float]]:
    """Vectors for free text (retrieval queries)."""
    chunks = [PageChunk(page=1, content=t) for t in texts]
    return [c.embedding for c in embed_chunks(chunks)]
