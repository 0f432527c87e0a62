# apps/backend/docquiz/repository.py
"""Store operations. Reads that return a quiz or document always filter by user."""
import uuid
from datetime import datetime
from typing import Iterable, List, Optional, Sequence

from sqlalchemy import select, func, case
from sqlalchemy.orm import Session

from .models import Document, DocChunk, Quiz, Question, Attempt, Answer
from .schemas import EmbeddedChunk, GradedAnswer, QuizQuestion, UserQuizPerformance


def _as_uuid(value) -> Optional[uuid.UUID]:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (ValueError, TypeError):
        return None


def _as_uuids(values: Iterable) -> List[uuid.UUID]:
    return [u for u in (_as_uuid(v) for v in values) if u is not None]


# ---------- Documents & chunks ----------

def create_document_record(db: Session, user_id: str, title: str, meta: Optional[dict] = None) -> Document:
    doc = Document(user_id=user_id, title=title, meta=meta or {})
    db.add(doc)
    db.flush()
    return doc


def get_documents_by_ids(db: Session, user_id: str, doc_ids: Sequence[str]) -> List[Document]:
    ids = _as_uuids(doc_ids)
    if not ids:
        return []
    return list(db.scalars(
        select(Document).where(Document.user_id == user_id, Document.id.in_(ids))
    ))


def list_documents(db: Session, user_id: str, limit: int = 20) -> List[tuple]:
    """(document, chunk_count) for the user's most recent documents."""
    counts = (
        select(DocChunk.document_id, func.count(DocChunk.id).label("n"))
        .group_by(DocChunk.document_id)
        .subquery()
    )
    rows = db.execute(
        select(Document, func.coalesce(counts.c.n, 0))
        .outerjoin(counts, counts.c.document_id == Document.id)
        .where(Document.user_id == user_id)
        .order_by(Document.created_at.desc())
        .limit(limit)
    ).all()
    return [(doc, int(n)) for doc, n in rows]


def get_document_chunks(db: Session, document_id: str) -> List[DocChunk]:
    did = _as_uuid(document_id)
    if did is None:
        return []
    return list(db.scalars(
        select(DocChunk).where(DocChunk.document_id == did).order_by(DocChunk.page, DocChunk.id)
    ))


def save_doc_chunks(db: Session, document_id, chunks: Sequence[EmbeddedChunk]) -> List[DocChunk]:
    """Insert chunks, skipping any (document, page, content) already stored."""
    did = _as_uuid(document_id)
    existing = set(db.execute(
        select(DocChunk.page, DocChunk.content).where(DocChunk.document_id == did)
    ).all())
    rows: List[DocChunk] = []
    for c in chunks:
        key = (c.page, c.content)
        if key in existing:
            continue
        existing.add(key)
        rows.append(DocChunk(document_id=did, page=c.page, content=c.content,
                             embedding=c.embedding, tokens=c.tokens))
    db.add_all(rows)
    db.flush()
    return rows


# ---------- Quizzes & questions ----------

def create_quiz_record(db: Session, user_id: str, title: str, difficulty: str, topic: Optional[str] = None) -> Quiz:
    quiz = Quiz(user_id=user_id, title=title, difficulty=difficulty, topic=topic)
    db.add(quiz)
    db.flush()
    return quiz


def save_quiz_questions(db: Session, quiz_id, questions: Sequence[QuizQuestion]) -> List[Question]:
    rows = []
    for pos, q in enumerate(questions):
        rows.append(Question(
            id=_as_uuid(q.id) or uuid.uuid4(),
            quiz_id=_as_uuid(quiz_id),
            position=pos,
            prompt=q.prompt,
            difficulty=q.difficulty,
            options=[o.model_dump() for o in q.options],
            correct=q.correct,
            explanation=q.explanation,
            source_refs=[r.model_dump(by_alias=True) for r in q.source_refs],
        ))
    db.add_all(rows)
    db.flush()
    return rows


def get_quiz_by_id(db: Session, quiz_id: str, user_id: str) -> Optional[Quiz]:
    qid = _as_uuid(quiz_id)
    if qid is None:
        return None
    return db.scalars(
        select(Quiz).where(Quiz.id == qid, Quiz.user_id == user_id)
    ).first()


def get_questions_by_quiz_id(db: Session, quiz_id) -> List[Question]:
    qid = _as_uuid(quiz_id)
    if qid is None:
        return []
    return list(db.scalars(
        select(Question).where(Question.quiz_id == qid).order_by(Question.position)
    ))


# ---------- Attempts ----------

def create_quiz_attempt(db: Session, quiz_id, user_id: str, started_at: datetime,
                        submitted_at: datetime, score_pct: int) -> Attempt:
    attempt = Attempt(quiz_id=_as_uuid(quiz_id), user_id=user_id, started_at=started_at,
                      submitted_at=submitted_at, score_pct=score_pct)
    db.add(attempt)
    db.flush()
    return attempt


def save_quiz_answers(db: Session, attempt_id, answers: Sequence[GradedAnswer]) -> List[Answer]:
    rows = [
        Answer(attempt_id=_as_uuid(attempt_id), question_id=_as_uuid(a.question_id),
               chosen_option_id=a.chosen_option_id, is_correct=a.is_correct, feedback=None)
        for a in answers
    ]
    db.add_all(rows)
    db.flush()
    return rows


def get_user_quiz_performance(db: Session, user_id: str, topic: Optional[str] = None,
                              limit: int = 20) -> List[UserQuizPerformance]:
    """Most recent attempts by this user, newest first."""
    answered = (
        select(Answer.attempt_id,
               func.count(Answer.id).label("total"),
               func.sum(case((Answer.is_correct.is_(True), 1), else_=0)).label("correct"))
        .group_by(Answer.attempt_id)
        .subquery()
    )
    stmt = (
        select(Attempt, Quiz.topic, answered.c.total, answered.c.correct)
        .join(Quiz, Quiz.id == Attempt.quiz_id)
        .outerjoin(answered, answered.c.attempt_id == Attempt.id)
        .where(Attempt.user_id == user_id, Quiz.user_id == user_id)
        .order_by(Attempt.submitted_at.desc())
        .limit(limit)
    )
    if topic:
        stmt = stmt.where(Quiz.topic == topic)
    out = []
    for attempt, quiz_topic, total, correct in db.execute(stmt).all():
        out.append(UserQuizPerformance(
            quiz_id=str(attempt.quiz_id),
            topic=quiz_topic,
            score=attempt.score_pct,
            attempted_at=attempt.submitted_at or attempt.started_at,
            question_count=int(total or 0),
            correct_count=int(correct or 0),
        ))
    return out
