# apps/backend/docquiz/routers.py

from fastapi import APIRouter, Depends, Query, File, UploadFile, Form, Request
from pydantic import BaseModel, Field
from typing import List, Optional
from sqlalchemy.orm import Session
from sqlalchemy import text

from . import quiz_service as service
from .cache import TTLCache
from .db import get_session
from .identity import CurrentUser, current_user
from .schemas import AnswerIn, Difficulty, DocumentQuizConfig, OutlineTopic, QuizContext

router = APIRouter()

def get_cache(request: Request) -> TTLCache:
    return request.app.state.cache

# ---------- Health ----------

@router.get("/healthz")
def healthz(db: Session = Depends(get_session)):
    db.execute(text("SELECT 1"))
    return {"ok": True}

# ---------- Documents ----------

@router.get("/docs/list")
def docs_list(
    limit: int = Query(20, ge=1, le=100),
    db: Session = Depends(get_session),
    user: Optional[CurrentUser] = Depends(current_user),
):
    """List the caller's recent documents with chunk counts."""
    docs = service.list_documents(db, user, limit=limit)
    return {"count": len(docs), "docs": [d.model_dump(by_alias=True) for d in docs]}

@router.get("/retrieve")
def retrieve(
    doc_id: List[str] = Query(default=[], alias="docId"),
    k: int = Query(40, ge=1, le=200),
    q: Optional[str] = Query(None, description="Optional query; ranks by embedding similarity"),
    db: Session = Depends(get_session),
    user: Optional[CurrentUser] = Depends(current_user),
):
    rows, mode = service.retrieve(db, user, doc_id, k=k, query=q)
    return {"count": len(rows), "mode": mode,
            "results": [r.model_dump(by_alias=True) for r in rows]}

# ---------- Ingestion: text ----------

class IngestTextReq(BaseModel):
    title: str
    text: str

@router.post("/ingest/text")
def ingest_text(
    payload: IngestTextReq,
    db: Session = Depends(get_session),
    user: Optional[CurrentUser] = Depends(current_user),
):
    result = service.ingest_text(db, user, payload.title, payload.text)
    return result.model_dump(by_alias=True)

# ---------- Ingestion: PDF ----------

@router.post("/ingest/upload_pdf")
def ingest_pdf(
    file: UploadFile = File(...),
    title: Optional[str] = Form(None),
    db: Session = Depends(get_session),
    user: Optional[CurrentUser] = Depends(current_user),
):
    """
    Extract text per page with PyMuPDF (digital PDFs), chunk, embed, store.
    Scanned pages are OCR'd when OCR_PROVIDER=openai and a key is configured.
    """
    data = file.file.read()
    result = service.ingest_pdf(db, user, data, filename=file.filename, title=title,
                                content_type=file.content_type)
    return result.model_dump(by_alias=True)

# ---------- Quiz generation ----------

class GenerateQuizReq(BaseModel):
    document_ids: List[str] = Field(alias="documentIds")
    difficulty: Difficulty = "easy"
    config: Optional[DocumentQuizConfig] = None
    outline: List[OutlineTopic] = Field(default_factory=list)

    model_config = {"populate_by_name": True}

@router.post("/quiz/generate")
def quiz_generate(
    payload: GenerateQuizReq,
    db: Session = Depends(get_session),
    user: Optional[CurrentUser] = Depends(current_user),
    cache: TTLCache = Depends(get_cache),
):
    result = service.generate_quiz(db, user, payload.document_ids, payload.difficulty, cache,
                                   config=payload.config, outline=payload.outline)
    return result.model_dump(by_alias=True)

class GenerateScopedReq(BaseModel):
    context: QuizContext

@router.post("/quiz/generate_scoped")
def quiz_generate_scoped(
    payload: GenerateScopedReq,
    db: Session = Depends(get_session),
    user: Optional[CurrentUser] = Depends(current_user),
    cache: TTLCache = Depends(get_cache),
):
    result = service.generate_scoped_quiz(db, user, payload.context, cache)
    return result.model_dump(by_alias=True)

# ---------- Taking a quiz ----------

class OpenQuizReq(BaseModel):
    quiz_id: str = Field(alias="quizId")
    title: Optional[str] = None

    model_config = {"populate_by_name": True}

@router.post("/quiz/open")
def quiz_open(
    payload: OpenQuizReq,
    db: Session = Depends(get_session),
    user: Optional[CurrentUser] = Depends(current_user),
):
    result = service.open_quiz(db, user, payload.quiz_id, payload.title)
    return result.model_dump(by_alias=True)

class SubmitQuizReq(BaseModel):
    quiz_id: str = Field(alias="quizId")
    answers: List[AnswerIn] = Field(default_factory=list)

    model_config = {"populate_by_name": True}

@router.post("/quiz/submit")
def quiz_submit(
    payload: SubmitQuizReq,
    db: Session = Depends(get_session),
    user: Optional[CurrentUser] = Depends(current_user),
):
    result = service.submit_quiz_attempt(db, user, payload.quiz_id, payload.answers)
    return result.model_dump(by_alias=True)

@router.get("/quiz/history")
def quiz_history(
    topic: Optional[str] = None,
    limit: int = Query(20, ge=1, le=100),
    db: Session = Depends(get_session),
    user: Optional[CurrentUser] = Depends(current_user),
):
    rows = service.quiz_history(db, user, topic=topic, limit=limit)
    return {"count": len(rows), "attempts": [r.model_dump(by_alias=True, mode="json") for r in rows]}
