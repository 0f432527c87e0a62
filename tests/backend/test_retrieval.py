from sqlalchemy import inspect, select
from sqlalchemy.dialects import postgresql
from sqlalchemy.schema import CreateIndex

import apps.backend.docquiz.retrieval as retrieval
from apps.backend.docquiz.errors import UpstreamFailure
from apps.backend.docquiz.models import DocChunk
from apps.backend.docquiz.retrieval import (
    as_float_list,
    cosine_similarity,
    nearest_chunks_stmt,
    retrieve_ranked,
    retrieve_top_k,
)

from conftest import USER_ID, make_text


def _seed_fifty(seed_document):
    # 50 chunks across two documents, all of different lengths
    first = seed_document({p: [make_text(p, sentences=1 + p % 7) + " " + "x" * p] for p in range(1, 26)})
    second = seed_document({p: [make_text(100 + p, sentences=1 + p % 5) + " " + "y" * (p + 30)]
                            for p in range(1, 26)}, title="Second")
    return first, second


def _is_length_ordered(rows):
    keys = [(-len(r.content), r.document_id, r.page) for r in rows]
    return keys == sorted(keys)


def test_small_k_is_floored_at_thirty(db, seed_document):
    _seed_fifty(seed_document)
    rows = retrieve_top_k(db, USER_ID, [], k=5)
    assert len(rows) == 30
    assert _is_length_ordered(rows)


def test_large_k_is_respected(db, seed_document):
    _seed_fifty(seed_document)
    assert len(retrieve_top_k(db, USER_ID, [], k=45)) == 45
    assert len(retrieve_top_k(db, USER_ID, [], k=80)) == 50


def test_unknown_or_missing_user_gets_nothing(db, seed_document):
    _seed_fifty(seed_document)
    assert retrieve_top_k(db, "someone-else", [], k=40) == []
    assert retrieve_top_k(db, None, [], k=40) == []


def test_restricts_to_requested_documents(db, seed_document):
    first, second = _seed_fifty(seed_document)
    rows = retrieve_top_k(db, USER_ID, [second], k=40)
    assert len(rows) == 25
    assert {r.document_id for r in rows} == {second}


def test_other_users_documents_are_invisible(db, seed_document):
    mine = seed_document({1: [make_text(1)]})
    theirs = seed_document({1: [make_text(2)]}, user_id="intruder")
    rows = retrieve_top_k(db, USER_ID, [mine, theirs], k=40)
    assert {r.document_id for r in rows} == {mine}


def test_query_ranks_by_similarity(db, seed_document):
    target = make_text(42)
    seed_document({1: [make_text(1) * 3], 2: [target], 3: [make_text(3) * 2]})
    # Fake vectors are hash based, so the exact text is the only close match
    rows = retrieve_top_k(db, USER_ID, [], k=40, query=target)
    assert rows[0].content == target


def test_query_embedding_failure_falls_back_to_length(db, seed_document, monkeypatch):
    seed_document({1: [make_text(1)], 2: [make_text(2) * 2]})

    def _boom(texts):
        raise UpstreamFailure("backend down")

    monkeypatch.setattr(retrieval, "embed_texts", _boom)
    rows = retrieve_top_k(db, USER_ID, [], k=40, query="anything")
    assert _is_length_ordered(rows)
    assert rows[0].page == 2


def test_cosine_similarity_edge_cases():
    assert cosine_similarity([1.0, 0.0], [1.0, 0.0]) == 1.0
    assert cosine_similarity([1.0, 0.0], [0.0, 1.0]) == 0.0
    assert cosine_similarity([], [1.0]) == 0.0
    assert cosine_similarity([0.0, 0.0], [1.0, 1.0]) == 0.0


def test_ranked_retrieval_reports_mode(db, seed_document, monkeypatch):
    target = make_text(42)
    seed_document({1: [make_text(1)], 2: [target]})
    rows, mode = retrieve_ranked(db, USER_ID, [], k=40, query=target)
    assert mode == "vector"
    assert rows[0].content == target
    assert retrieve_ranked(db, USER_ID, [], k=40)[1] == "length"

    def _boom(texts):
        raise UpstreamFailure("backend down")

    monkeypatch.setattr(retrieval, "embed_texts", _boom)
    assert retrieve_ranked(db, USER_ID, [], k=40, query=target)[1] == "length"


def test_vector_ranking_runs_in_postgres():
    stmt = nearest_chunks_stmt(select(DocChunk), [0.1, 0.2, 0.3], 30)
    sql = str(stmt.compile(dialect=postgresql.dialect()))
    assert "<=>" in sql
    assert "LIMIT" in sql
    assert "embedding IS NOT NULL" in sql


def test_embedding_index_is_postgres_only(engine):
    index = next(i for i in DocChunk.__table__.indexes if i.name == "doc_chunks_embedding_ivfflat")
    ddl = str(CreateIndex(index).compile(dialect=postgresql.dialect()))
    assert "USING ivfflat" in ddl
    assert "vector_cosine_ops" in ddl
    assert "lists = 100" in ddl
    names = {i["name"] for i in inspect(engine).get_indexes("doc_chunks")}
    assert "doc_chunks_embedding_ivfflat" not in names


def test_stored_vectors_come_back_as_float_lists():
    assert as_float_list(None) is None
    assert as_float_list([]) is None
    assert as_float_list((1, 2.5)) == [1.0, 2.5]
