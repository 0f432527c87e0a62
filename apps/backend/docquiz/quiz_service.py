# apps/backend/docquiz/quiz_service.py
"""Operations behind the HTTP routes.

Each function runs inside the caller's session; the route's `get_session`
dependency owns the commit, so a quiz and its questions (or an attempt and
its answers) are written together or not at all.
"""
import uuid
from datetime import datetime, timezone
from typing import List, Optional, Sequence, Tuple, Union

from sqlalchemy.orm import Session

from . import repository as repo
from .cache import TTLCache
from .config import settings
from .embedder import embed_chunks
from .errors import BadRequest, NotFound, UnprocessableDocument, UpstreamFailure
from .grader import grade
from .identity import CurrentUser, require_user
from .logger import get_logger
from .pdf_ingest import chunk_pages, extract_pages_text, ocr_pages_with_openai
from .retrieval import as_float_list, retrieve_ranked, retrieve_top_k
from .sampler import SampleResult, resolve_config, sample
from .schemas import (
    EASY_FAMILY,
    AnswerIn,
    Difficulty,
    DocumentListItem,
    DocumentQuizConfig,
    DocumentQuizContext,
    GenerateQuizResult,
    IngestResult,
    OpenedQuiz,
    OpenQuizResult,
    OutlineTopic,
    PageText,
    QuizQuestion,
    QuizResult,
    RetrievedChunk,
    SubtopicQuizContext,
    TopicQuizContext,
    UserQuizPerformance,
)
from .synthesizer import question_count, synthesize

logger = get_logger(__name__)

PDF_CONTENT_TYPES = ("application/pdf", "application/x-pdf", "application/octet-stream")


# ---------- Ingestion ----------

def _store_document(db: Session, user: CurrentUser, title: str, pages: List[PageText],
                    meta: dict) -> IngestResult:
    chunks = chunk_pages(pages)
    if not chunks:
        raise UnprocessableDocument("No usable text to ingest.")
    # Embed before writing anything so a backend failure leaves no half-stored document
    embedded = embed_chunks(chunks)
    doc = repo.create_document_record(db, user.id, title, meta)
    saved = repo.save_doc_chunks(db, doc.id, embedded)
    logger.info(f"Ingested document {doc.id} ({len(saved)} chunks, {len(pages)} pages) for user {user.id}")
    return IngestResult(document_id=str(doc.id), title=title, chunks=len(saved), pages_processed=len(pages))


def ingest_pdf(db: Session, user: Optional[CurrentUser], data: bytes, filename: Optional[str] = None,
               title: Optional[str] = None, content_type: Optional[str] = None) -> IngestResult:
    """
    Extract text per page with PyMuPDF, OCR text-less pages when enabled, then
    chunk, embed and store.
    """
    user = require_user(user)
    if content_type and content_type not in PDF_CONTENT_TYPES:
        raise BadRequest(f"Unsupported upload type: {content_type}")
    if not data:
        raise BadRequest("Uploaded file is empty")

    pages = extract_pages_text(data)
    if settings.max_pages and len(pages) > settings.max_pages:
        pages = pages[:settings.max_pages]

    empties = [p.page for p in pages if not p.text.strip()]
    use_ocr = settings.ocr_provider.lower() == "openai" and bool(settings.openai_api_key)
    if empties and use_ocr:
        ocred = {p.page: p.text for p in ocr_pages_with_openai(data, empties, dpi=settings.ocr_dpi,
                                                                model=settings.ocr_model)}
        pages = [PageText(page=p.page, text=(ocred.get(p.page) or p.text or "").strip()) for p in pages]

    if all(not p.text.strip() for p in pages):
        raise UnprocessableDocument(
            "No text found. If this is a scanned PDF, set OCR_PROVIDER=openai and provide OPENAI_API_KEY."
        )

    doc_title = title or filename or "Uploaded PDF"
    return _store_document(db, user, doc_title, pages, {"filename": filename, "pages": len(pages)})


def ingest_text(db: Session, user: Optional[CurrentUser], title: str, text: str) -> IngestResult:
    user = require_user(user)
    if not (text or "").strip():
        raise BadRequest("No text to ingest.")
    return _store_document(db, user, title, [PageText(page=1, text=text)], {"source": "text"})


def list_documents(db: Session, user: Optional[CurrentUser], limit: int = 20) -> List[DocumentListItem]:
    user = require_user(user)
    return [
        DocumentListItem(document_id=str(doc.id), title=doc.title, chunks=n, created_at=doc.created_at)
        for doc, n in repo.list_documents(db, user.id, limit)
    ]


def retrieve(db: Session, user: Optional[CurrentUser], doc_ids: Sequence[str], k: int = 40,
             query: Optional[str] = None) -> Tuple[List[RetrievedChunk], str]:
    # An anonymous caller simply sees nothing
    return retrieve_ranked(db, user.id if user else None, doc_ids, k=k, query=query)


# ---------- Quiz generation ----------

def quiz_title(difficulty: str) -> str:
    return "Quick Warm-up Quiz" if difficulty in EASY_FAMILY else "Deep Dive Challenge"


def _sample_cache_key(source: str, doc_ids: Sequence[str], config: DocumentQuizConfig,
                      outline: Sequence[OutlineTopic], pages: Sequence[int] = ()) -> tuple:
    """Everything that changes which chunks get sampled, or how."""
    return (
        "sample",
        source,
        tuple(sorted(doc_ids)),
        tuple(sorted(set(pages))),
        config.version,
        config.model_dump_json(),
        tuple(t.model_dump_json() for t in outline),
    )


def _persist_quiz(db: Session, user: CurrentUser, title: str, difficulty: str, topic: Optional[str],
                  questions: Sequence[QuizQuestion]) -> str:
    if not questions:
        raise UpstreamFailure("Question generation produced no usable questions")
    quiz = repo.create_quiz_record(db, user.id, title, difficulty, topic)
    repo.save_quiz_questions(db, quiz.id, questions)
    logger.info(f"Saved quiz {quiz.id} with {len(questions)} questions for user {user.id}")
    return str(quiz.id)


def generate_quiz(
    db: Session,
    user: Optional[CurrentUser],
    document_ids: Sequence[str],
    difficulty: Difficulty,
    cache: TTLCache,
    config: Union[DocumentQuizConfig, dict, None] = None,
    outline: Sequence[OutlineTopic] = (),
) -> GenerateQuizResult:
    """Whole-document quiz over the user's documents.

    Retrieves up to `retrieval_k` chunks, samples and compresses them under the
    token budget (memoised per document set and config), then synthesizes a
    screened question set sized from the number of retrieved chunks.
    """
    user = require_user(user)
    doc_ids = [d for d in document_ids if d]
    if not doc_ids:
        raise BadRequest("At least one document is required")
    cfg = resolve_config(config)

    docs = repo.get_documents_by_ids(db, user.id, doc_ids)
    if not docs:
        raise NotFound("No matching documents for this user")

    chunks = retrieve_top_k(db, user.id, [str(d.id) for d in docs], k=settings.retrieval_k)
    if not chunks:
        raise NotFound("No content found for the selected documents")

    title = quiz_title(difficulty)
    doc_title = docs[0].title if len(docs) == 1 else ", ".join(d.title for d in docs)
    key = _sample_cache_key(f"topk:{settings.retrieval_k}", [str(d.id) for d in docs], cfg, outline)
    sampled: SampleResult = cache.get_or_create(key, lambda: sample(chunks, cfg, outline, doc_title))

    context = DocumentQuizContext(
        question_count=question_count(difficulty, len(chunks)),
        difficulty=difficulty,
        document_ids=[str(d.id) for d in docs],
        document_title=doc_title,
        user_performance=repo.get_user_quiz_performance(db, user.id),
        all_topics=list(outline),
        all_pages=sorted({c.page for c in chunks}),
        document_summary=" ".join(s.summary for s in sampled.summaries if s.kind == "topic"),
        sampled_snippets=sampled.snippets,
        compressed_summaries=sampled.summaries,
        config=cfg,
    )
    result = synthesize(context)
    diagnostics = result.diagnostics.model_copy(update={
        "approx_token_count": sampled.total_approx_tokens,
        "snippet_count": len(sampled.snippets),
    })
    context = result.context.model_copy(update={"diagnostics": diagnostics})
    logger.info(f"Diagnostics for {context.document_title!r}: {context.diagnostics.model_dump_json(by_alias=True)}")

    quiz_id = _persist_quiz(db, user, title, difficulty, None, result.questions)
    return GenerateQuizResult(quiz_id=quiz_id, count=len(result.questions), title=title,
                              diagnostics=context.diagnostics)


def _scope_name(context) -> str:
    if isinstance(context, SubtopicQuizContext):
        return context.subtopic_name
    if isinstance(context, TopicQuizContext):
        return context.topic_name
    if isinstance(context, DocumentQuizContext):
        return context.document_title or "Document"
    raise TypeError(f"Unsupported quiz context: {type(context).__name__}")


def _scope_pages(context) -> List[int]:
    if isinstance(context, SubtopicQuizContext):
        return context.subtopic_pages
    if isinstance(context, TopicQuizContext):
        return context.topic_pages
    return context.all_pages


def generate_scoped_quiz(db: Session, user: Optional[CurrentUser], context, cache: TTLCache) -> GenerateQuizResult:
    """Quiz for one subtopic, topic or document, using chunks of the context's first document."""
    user = require_user(user)
    if not context.document_ids:
        raise BadRequest("At least one document is required")

    docs = repo.get_documents_by_ids(db, user.id, context.document_ids[:1])
    if not docs:
        raise NotFound("Document not found")
    doc = docs[0]

    pages = set(_scope_pages(context))
    rows = repo.get_document_chunks(db, str(doc.id))
    chunks = [
        RetrievedChunk(document_id=str(doc.id), page=r.page, content=r.content,
                       embedding=as_float_list(r.embedding), tokens=r.tokens)
        for r in rows if not pages or r.page in pages
    ]
    if not chunks:
        raise NotFound("No content found for this quiz scope")

    name = _scope_name(context)
    topic = None if isinstance(context, DocumentQuizContext) else name
    update = {
        "document_ids": [str(doc.id)],
        "document_title": context.document_title or doc.title,
        "user_performance": repo.get_user_quiz_performance(db, user.id, topic=topic),
    }
    if isinstance(context, DocumentQuizContext):
        cfg = context.config
        key = _sample_cache_key("scoped", [str(doc.id)], cfg, context.all_topics, pages)
        sampled: SampleResult = cache.get_or_create(
            key, lambda: sample(chunks, cfg, context.all_topics, update["document_title"])
        )
        update.update({
            "sampled_snippets": sampled.snippets,
            "compressed_summaries": sampled.summaries,
            "all_pages": context.all_pages or sorted({c.page for c in chunks}),
        })
    else:
        update["source_chunks"] = chunks
    context = context.model_copy(update=update)

    result = synthesize(context)
    title = f"Quiz: {name}"
    quiz_id = _persist_quiz(db, user, title, context.difficulty, topic, result.questions)
    return GenerateQuizResult(quiz_id=quiz_id, count=len(result.questions), title=title,
                              diagnostics=result.diagnostics)


# ---------- Taking a quiz ----------

def _question_from_row(row) -> QuizQuestion:
    return QuizQuestion.model_validate({
        "id": str(row.id),
        "prompt": row.prompt,
        "options": row.options,
        "correct": row.correct,
        "explanation": row.explanation,
        "difficulty": row.difficulty,
        "sourceRefs": row.source_refs,
    })


def open_quiz(db: Session, user: Optional[CurrentUser], quiz_id: str, title: Optional[str] = None) -> OpenQuizResult:
    user = require_user(user)
    quiz = repo.get_quiz_by_id(db, quiz_id, user.id)
    if quiz is None:
        raise NotFound("Quiz not found")
    rows = repo.get_questions_by_quiz_id(db, quiz.id)
    if not rows:
        raise NotFound("Quiz has no questions")
    shown_title = title or quiz.title
    return OpenQuizResult(
        document_id=str(uuid.uuid4()),
        title=shown_title,
        quiz=OpenedQuiz(quiz_id=str(quiz.id), title=shown_title,
                        questions=[_question_from_row(r) for r in rows]),
    )


def submit_quiz_attempt(db: Session, user: Optional[CurrentUser], quiz_id: str, answers: Sequence[AnswerIn],
                        started_at: Optional[datetime] = None) -> QuizResult:
    """Grade and record a new attempt; resubmitting never overwrites an earlier one."""
    user = require_user(user)
    quiz = repo.get_quiz_by_id(db, quiz_id, user.id)
    if quiz is None:
        raise NotFound("Quiz not found")
    questions = repo.get_questions_by_quiz_id(db, quiz.id)
    if not questions:
        raise BadRequest("Quiz has no questions to submit")

    result = grade(str(quiz.id), questions, answers)
    now = datetime.now(timezone.utc)
    attempt = repo.create_quiz_attempt(db, quiz.id, user.id, started_at or now, now, result.score)
    repo.save_quiz_answers(db, attempt.id, result.answers)
    logger.info(f"Attempt {attempt.id} on quiz {quiz.id}: {result.correct_count}/{result.total}")
    return result.model_copy(update={"attempt_id": str(attempt.id)})


def quiz_history(db: Session, user: Optional[CurrentUser], topic: Optional[str] = None,
                 limit: int = 20) -> List[UserQuizPerformance]:
    user = require_user(user)
    return repo.get_user_quiz_performance(db, user.id, topic=topic, limit=limit)
