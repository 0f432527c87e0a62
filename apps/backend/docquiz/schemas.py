"""Domain and wire types for ingestion, sampling, synthesis and grading.

Attributes are snake_case in Python and camelCase on the wire; the
Question/Option shape (four options labelled A-D, ``sourceRefs`` of
``{documentId, page}``) is the persisted contract.
"""
from datetime import datetime
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


Difficulty = Literal["easy", "medium", "hard", "mixed", "easy-medium"]
EASY_FAMILY = ("easy", "easy-medium")

SnippetReason = Literal["anchor", "topic", "periodic", "fallback"]
# Higher survives budget trimming longer; anchors are never trimmed.
REASON_PRIORITY = {"anchor": 3, "topic": 2, "periodic": 1, "fallback": 0}

OPTION_LABELS = ("A", "B", "C", "D")


# ---------- Ingestion ----------

class PageText(CamelModel):
    page: int = Field(ge=1)
    text: str


class PageChunk(CamelModel):
    page: int = Field(ge=1)
    content: str


class EmbeddedChunk(PageChunk):
    embedding: List[float]
    tokens: Optional[int] = None


class RetrievedChunk(CamelModel):
    document_id: str
    page: int
    content: str
    # Carried for the sampler; never serialised back to clients.
    embedding: Optional[List[float]] = Field(default=None, exclude=True)
    tokens: Optional[int] = Field(default=None, exclude=True)


class IngestResult(CamelModel):
    document_id: str
    title: str
    chunks: int
    pages_processed: int


class DocumentListItem(CamelModel):
    document_id: str
    title: str
    chunks: int
    created_at: Optional[datetime] = None


# ---------- Sampling / compression ----------

class SampledSnippet(CamelModel):
    page: int
    content: str
    reason: SnippetReason
    approx_tokens: int
    document_id: Optional[str] = None


class CompressedSummary(CamelModel):
    topic_id: str
    title: str
    summary: str
    pages: List[int]
    kind: Literal["topic", "subtopic"]
    parent_topic_id: Optional[str] = None
    document_id: Optional[str] = None


class SamplingConfig(CamelModel):
    periodic_interval: int = Field(default=10, ge=1)
    max_samples: int = Field(default=28, ge=1)
    diversity_threshold: float = Field(default=0.88, gt=0.0, le=1.0)
    token_budget: int = Field(default=3200, gt=0)
    topic_coverage: bool = True
    anchor_pages: bool = True
    minimum_snippets: int = Field(default=6, ge=0)


class CompressionConfig(CamelModel):
    max_sentences: int = Field(default=4, ge=1)
    max_characters: int = Field(default=600, ge=1)
    min_sentence_length: int = Field(default=40, ge=0)
    max_sentence_length: int = Field(default=260, ge=1)


class DocumentQuizConfig(CamelModel):
    version: int = 2
    sampling: SamplingConfig = Field(default_factory=SamplingConfig)
    compression: CompressionConfig = Field(default_factory=CompressionConfig)

    @model_validator(mode="after")
    def _check_bounds(self):
        if self.sampling.minimum_snippets > self.sampling.max_samples:
            raise ValueError("minimumSnippets must not exceed maxSamples")
        if self.compression.min_sentence_length > self.compression.max_sentence_length:
            raise ValueError("minSentenceLength must not exceed maxSentenceLength")
        return self


class OutlineSubtopic(CamelModel):
    subtopic: str
    pages: List[int] = Field(default_factory=list)


class OutlineTopic(CamelModel):
    topic: str
    description: str = ""
    pages: List[int] = Field(default_factory=list)
    subtopics: List[OutlineSubtopic] = Field(default_factory=list)


# ---------- Diagnostics ----------

class IntentCounts(CamelModel):
    scenario: int = 0
    conceptual: int = 0
    recall: int = 0


class DropCounts(CamelModel):
    structural: int = 0
    redundant: int = 0
    literal: int = 0


class DocumentQuizDiagnostics(CamelModel):
    approx_token_count: int = 0
    snippet_count: int = 0
    coverage_ratio: float = Field(default=0.0, ge=0.0, le=1.0)
    application_ratio: float = Field(default=0.0, ge=0.0, le=1.0)
    # Every question flagged by a screen, even if an earlier screen already dropped it
    structural_question_count: int = 0
    redundant_question_count: int = 0
    literal_question_count: int = 0
    intent_counts: IntentCounts = Field(default_factory=IntentCounts)
    # Each dropped question counted once, under the first screen that caught it
    drop_counts: DropCounts = Field(default_factory=DropCounts)
    rejected_count: int = 0
    warnings: List[str] = Field(default_factory=list)


# ---------- Quiz context (one variant per scope) ----------

class UserQuizPerformance(CamelModel):
    quiz_id: str
    topic: Optional[str] = None
    score: int
    attempted_at: datetime
    question_count: int
    correct_count: int


class _QuizContextBase(CamelModel):
    question_count: int = 0
    difficulty: Difficulty = "easy"
    document_ids: List[str] = Field(default_factory=list)
    document_title: Optional[str] = None
    user_performance: List[UserQuizPerformance] = Field(default_factory=list)


class SubtopicQuizContext(_QuizContextBase):
    scope: Literal["subtopic"] = "subtopic"
    subtopic_name: str
    parent_topic_name: str = ""
    subtopic_pages: List[int] = Field(default_factory=list)
    subtopic_content: str = ""
    source_chunks: List[RetrievedChunk] = Field(default_factory=list)


class TopicQuizContext(_QuizContextBase):
    scope: Literal["topic"] = "topic"
    topic_name: str
    topic_pages: List[int] = Field(default_factory=list)
    all_subtopics: List[OutlineSubtopic] = Field(default_factory=list)
    topic_content: str = ""
    source_chunks: List[RetrievedChunk] = Field(default_factory=list)


class DocumentQuizContext(_QuizContextBase):
    scope: Literal["document"] = "document"
    document_title: str = ""
    all_topics: List[OutlineTopic] = Field(default_factory=list)
    all_pages: List[int] = Field(default_factory=list)
    document_summary: str = ""
    sampled_snippets: List[SampledSnippet] = Field(default_factory=list)
    compressed_summaries: List[CompressedSummary] = Field(default_factory=list)
    config: DocumentQuizConfig = Field(default_factory=DocumentQuizConfig)
    diagnostics: Optional[DocumentQuizDiagnostics] = None


QuizContext = Annotated[
    Union[SubtopicQuizContext, TopicQuizContext, DocumentQuizContext],
    Field(discriminator="scope"),
]


class SourceUnit(CamelModel):
    """One block of source text a question may be built from."""
    unit_id: int
    kind: Literal["chunk", "content", "snippet", "summary"]
    text: str
    pages: List[int]
    document_id: Optional[str] = None
    title: Optional[str] = None


# ---------- Questions ----------

class QuizOption(CamelModel):
    id: str
    label: str
    text: str


class SourceRef(CamelModel):
    document_id: str
    page: int


class QuizQuestion(CamelModel):
    id: str
    prompt: str
    options: List[QuizOption]
    correct: str
    explanation: str
    difficulty: Difficulty
    source_refs: List[SourceRef]

    @model_validator(mode="after")
    def _check_gradable(self):
        if len(self.options) != 4:
            raise ValueError("a question needs exactly 4 options")
        if tuple(o.label for o in self.options) != OPTION_LABELS:
            raise ValueError("options must be labelled A-D in order")
        ids = [o.id for o in self.options]
        if len(set(ids)) != 4:
            raise ValueError("option ids must be unique")
        if self.correct not in ids:
            raise ValueError("correct must reference one of the option ids")
        if not self.source_refs:
            raise ValueError("a question needs at least one source reference")
        return self


class GenerateQuizResult(CamelModel):
    quiz_id: str
    count: int
    title: str
    diagnostics: Optional[DocumentQuizDiagnostics] = None


class OpenedQuiz(CamelModel):
    quiz_id: str
    title: str
    questions: List[QuizQuestion]


class OpenQuizResult(CamelModel):
    document_id: str
    title: str
    quiz: OpenedQuiz


# ---------- Grading ----------

class AnswerIn(CamelModel):
    question_id: str
    chosen_option_id: Optional[str] = None


class GradedAnswer(CamelModel):
    question_id: str
    chosen_option_id: Optional[str] = None
    is_correct: bool


class QuizResult(CamelModel):
    quiz_id: str
    total: int
    correct_count: int
    score: int = Field(ge=0, le=100)
    answers: List[GradedAnswer]
    attempt_id: Optional[str] = None
