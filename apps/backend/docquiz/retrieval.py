import math
from typing import List, Optional, Sequence, Tuple

from sqlalchemy import Select, select, func
from sqlalchemy.orm import Session

from .embedder import embed_texts
from .errors import QuizError
from .logger import get_logger
from .models import Document, DocChunk
from .repository import _as_uuids
from .schemas import RetrievedChunk

logger = get_logger(__name__)

MIN_LIMIT = 30

def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    if a is None or b is None or len(a) == 0 or len(a) != len(b):
        return 0.0
    dot = sum(x * y for x, y in zip(a, b))
    na = math.sqrt(sum(x * x for x in a))
    nb = math.sqrt(sum(y * y for y in b))
    if na == 0 or nb == 0:
        return 0.0
    return dot / (na * nb)

def as_float_list(vector) -> Optional[List[float]]:
    # pgvector hands back numpy arrays, JSON hands back lists
    if vector is None or len(vector) == 0:
        return None
    return [float(x) for x in vector]

def _to_retrieved(row: DocChunk) -> RetrievedChunk:
    return RetrievedChunk(document_id=str(row.document_id), page=row.page, content=row.content,
                          embedding=as_float_list(row.embedding), tokens=row.tokens)

def nearest_chunks_stmt(stmt: Select, query_vec: Sequence[float], limit: int) -> Select:
    """Order by pgvector cosine distance (`<=>`), served by the ivfflat index."""
    return (
        stmt.where(DocChunk.embedding.is_not(None))
        .order_by(DocChunk.embedding.cosine_distance(list(query_vec)), DocChunk.document_id, DocChunk.page)
        .limit(limit)
    )

def _rank_in_python(db: Session, stmt: Select, query_vec: Sequence[float], limit: int) -> List[DocChunk]:
    rows = [r for r in db.scalars(stmt) if as_float_list(r.embedding)]
    ranked = sorted(
        rows,
        key=lambda r: (-cosine_similarity(query_vec, as_float_list(r.embedding)), str(r.document_id), r.page),
    )
    return ranked[:limit]

def retrieve_ranked(
    db: Session,
    user_id: Optional[str],
    doc_ids: Sequence[str],
    k: int = 40,
    query: Optional[str] = None,
) -> Tuple[List[RetrievedChunk], str]:
    """
    Top chunks from the user's documents (optionally restricted to doc_ids),
    together with the ordering actually used: "vector" or "length".

    With a query, chunks are ranked by cosine similarity to the query vector,
    in SQL on Postgres and in Python on other databases.
    Without one (or if embedding the query fails) the order is content length
    descending, then document id, then page: a stopgap, not a relevance order.
    At most max(k, 30) rows are returned.
    """
    if not user_id:
        return [], "length"

    limit = max(k or 40, MIN_LIMIT)
    stmt = (
        select(DocChunk)
        .join(Document, Document.id == DocChunk.document_id)
        .where(Document.user_id == user_id)
    )
    targets = [d for d in (doc_ids or []) if d]
    if targets:
        stmt = stmt.where(Document.id.in_(_as_uuids(targets)))

    query_vec = None
    if query and query.strip():
        try:
            query_vec = embed_texts([query.strip()])[0]
        except QuizError as e:
            logger.warning(f"Query embedding failed, falling back to length order: {e.message}")

    if query_vec is not None:
        if db.get_bind().dialect.name == "postgresql":
            ranked = list(db.scalars(nearest_chunks_stmt(stmt, query_vec, limit)))
        else:
            ranked = _rank_in_python(db, stmt, query_vec, limit)
        if ranked:
            out = [_to_retrieved(r) for r in ranked]
            logger.info(f"Retrieved {len(out)} chunks by vector similarity for user {user_id}")
            return out, "vector"

    rows = db.scalars(
        stmt.order_by(func.length(DocChunk.content).desc(), DocChunk.document_id, DocChunk.page)
        .limit(limit)
    )
    out = [_to_retrieved(r) for r in rows]
    logger.info(f"Retrieved {len(out)} chunks by length order for user {user_id}")
    return out, "length"

def retrieve_top_k(
    db: Session,
    user_id: Optional[str],
    doc_ids: Sequence[str],
    k: int = 40,
    query: Optional[str] = None,
) -> List[RetrievedChunk]:
    chunks, _ = retrieve_ranked(db, user_id, doc_ids, k=k, query=query)
    return chunks
