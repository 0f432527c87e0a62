"""Turn a quiz context into screened, gradable questions plus run diagnostics."""
import re
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Set

from pydantic import BaseModel, Field, ValidationError

from .errors import MalformedQuestion, NotFound
from .logger import get_logger
from .pdf_ingest import normalize_whitespace
from .qgen import DraftGenerator, _sanitize_choices, generate_question_drafts
from .sampler import approx_token_count
from .schemas import (
    EASY_FAMILY,
    OPTION_LABELS,
    DocumentQuizContext,
    DocumentQuizDiagnostics,
    DropCounts,
    IntentCounts,
    QuizOption,
    QuizQuestion,
    SourceRef,
    SourceUnit,
    SubtopicQuizContext,
    TopicQuizContext,
)

logger = get_logger(__name__)

_VALID_DIFFICULTIES = ("easy", "medium", "hard", "mixed", "easy-medium")


def question_count(difficulty: str, available_units: int) -> int:
    """easy family: clamp(n//3, 5, 10); otherwise clamp(n//2, 8, 12). A zero floor uses the minimum."""
    if difficulty in EASY_FAMILY:
        return max(5, min(10, available_units // 3 or 5))
    return max(8, min(12, available_units // 2 or 8))


# ---------- Units ----------

def build_units(context) -> List[SourceUnit]:
    units: List[SourceUnit] = []

    def add(kind, text, pages, document_id, title=None):
        text = normalize_whitespace(text)
        if text and document_id:
            units.append(SourceUnit(unit_id=len(units), kind=kind, text=text,
                                    pages=sorted(set(pages)), document_id=document_id, title=title))

    ids = getattr(context, "document_ids", None) or []
    default_doc = ids[0] if ids else None

    if isinstance(context, SubtopicQuizContext):
        for c in context.source_chunks:
            add("chunk", c.content, [c.page], c.document_id, context.subtopic_name)
        first = context.source_chunks[0].document_id if context.source_chunks else None
        add("content", context.subtopic_content, context.subtopic_pages or [1],
            default_doc or first, context.subtopic_name)
    elif isinstance(context, TopicQuizContext):
        for c in context.source_chunks:
            add("chunk", c.content, [c.page], c.document_id, context.topic_name)
        first = context.source_chunks[0].document_id if context.source_chunks else None
        add("content", context.topic_content, context.topic_pages or [1],
            default_doc or first, context.topic_name)
    elif isinstance(context, DocumentQuizContext):
        for s in context.sampled_snippets:
            add("snippet", s.content, [s.page], s.document_id or default_doc)
        for summary in context.compressed_summaries:
            add("summary", summary.summary, summary.pages, summary.document_id or default_doc, summary.title)
    else:
        raise TypeError(f"Unsupported quiz context: {type(context).__name__}")
    return units


# ---------- Ingress normalization ----------

def _option_texts(raw) -> tuple[List[str], List[Optional[str]]]:
    """(texts, original ids) from a dict keyed A-D, a list of strings or a list of option objects."""
    if isinstance(raw, dict):
        by_label = {str(k).strip().upper(): v for k, v in raw.items()}
        if not all(label in by_label for label in OPTION_LABELS):
            return [], []
        return [str(by_label[label] or "") for label in OPTION_LABELS], [None] * 4
    if isinstance(raw, list):
        texts, ids = [], []
        for opt in raw:
            if isinstance(opt, dict):
                texts.append(str(opt.get("text") or opt.get("description") or ""))
                ids.append(opt.get("id") if isinstance(opt.get("id"), str) else None)
            else:
                texts.append(str(opt) if opt is not None else "")
                ids.append(None)
        return texts, ids
    return [], []


def _correct_index(draft: Dict, texts: List[str], original_ids: List[Optional[str]]) -> Optional[int]:
    value = draft.get("correct", draft.get("correct_index", draft.get("answer")))
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, int):
        return value if 0 <= value < len(texts) else None
    token = str(value).strip()
    if token in original_ids:
        return original_ids.index(token)
    letter = token.rstrip(".)").upper()
    if letter in OPTION_LABELS:
        return OPTION_LABELS.index(letter)
    if token.isdigit() and int(token) < len(texts):
        return int(token)
    lowered = [t.strip().lower() for t in texts]
    if token.lower() in lowered:
        return lowered.index(token.lower())
    return None


def _unit_of(draft: Dict, by_id: Dict[int, SourceUnit]) -> Optional[SourceUnit]:
    value = draft.get("unit")
    if isinstance(value, bool):
        return None
    try:
        return by_id.get(int(value))
    except (TypeError, ValueError):
        return None


def normalize_draft(draft: Dict, units: Sequence[SourceUnit], difficulty: str,
                    question_id: Optional[str] = None) -> QuizQuestion:
    """Canonical QuizQuestion from any draft shape, or MalformedQuestion."""
    prompt = str(draft.get("prompt") or draft.get("stem") or draft.get("question") or "").strip()
    if not prompt:
        raise MalformedQuestion("draft has no prompt")

    texts, original_ids = _option_texts(draft.get("options", draft.get("choices")))
    cleaned = _sanitize_choices(texts)
    if not cleaned:
        raise MalformedQuestion(f"draft options are unusable: {texts!r}")

    idx = _correct_index(draft, texts, original_ids)
    if idx is None:
        raise MalformedQuestion("draft has no resolvable correct option")

    explanation = str(draft.get("explanation") or draft.get("rationale") or "").strip()
    if not explanation:
        raise MalformedQuestion("draft has no explanation")

    by_id = {u.unit_id: u for u in units}
    unit = _unit_of(draft, by_id)
    refs: List[SourceRef] = []
    if unit is not None:
        refs = [SourceRef(document_id=unit.document_id, page=p) for p in unit.pages]
    else:
        cited = draft.get("sourcePages") or draft.get("source_pages") or []
        for page in cited if isinstance(cited, list) else []:
            owner = next((u for u in units if page in u.pages), None)
            if owner is not None:
                ref = SourceRef(document_id=owner.document_id, page=page)
                if ref not in refs:
                    refs.append(ref)
    if not refs:
        raise MalformedQuestion("draft cannot be traced back to a source page")

    qid = question_id or str(uuid.uuid4())
    level = draft.get("difficulty") if draft.get("difficulty") in _VALID_DIFFICULTIES else difficulty
    try:
        return QuizQuestion(
            id=qid,
            prompt=prompt,
            options=[QuizOption(id=f"{qid}-option-{i}", label=OPTION_LABELS[i], text=t)
                     for i, t in enumerate(cleaned)],
            correct=f"{qid}-option-{idx}",
            explanation=explanation,
            difficulty=level,
            source_refs=refs,
        )
    except ValidationError as e:
        raise MalformedQuestion(str(e)) from e


# ---------- Screening ----------

@dataclass
class ScreeningPolicy:
    """Tunable thresholds for dropping weak questions."""
    redundant_prompt_similarity: float = 0.85
    redundant_answer_similarity: float = 0.8
    literal_run_words: int = 8
    structural_patterns: Sequence[str] = field(default_factory=lambda: (
        r"\bwhich page\b",
        r"\bon what page\b",
        r"\bpage numbers?\b",
        r"\bhow many (pages|sections|chapters|headings|figures|tables|slides)\b",
        r"\btable of contents\b",
        r"\b(heading|subheading|header|footer|font|formatting|layout|margin)s?\b",
        r"\bbullet points?\b",
        r"\bwhat is the title of\b",
        r"\b(figure|table) \d+ (is|appears)\b",
    ))
    scenario_patterns: Sequence[str] = field(default_factory=lambda: (
        r"\b(suppose|imagine|scenario|situation)\b",
        r"\bwould\b",
        r"\bshould\b",
        r"\bapply(ing)?\b",
        r"\bwhat (happens|would happen) if\b",
        r"\bif (a|an|you|the)\b",
    ))
    conceptual_patterns: Sequence[str] = field(default_factory=lambda: (
        r"\bwhy\b",
        r"\bhow (does|do|is|are|can)\b",
        r"\bexplain(s|ed)?\b",
        r"\bbest (describes|explains|summari[sz]es|reflects)\b",
        r"\b(relationship|difference|compare|contrast|purpose|main idea|implies|implication)\b",
    ))


DEFAULT_POLICY = ScreeningPolicy()

_TOKEN_RE = re.compile(r"\w+")


def _tokens(text: str) -> List[str]:
    return _TOKEN_RE.findall((text or "").lower())


def _token_jaccard(a: str, b: str) -> float:
    ta, tb = set(_tokens(a)), set(_tokens(b))
    if not ta or not tb:
        return 0.0
    return len(ta & tb) / len(ta | tb)


def _correct_text(q: QuizQuestion) -> str:
    return next(o.text for o in q.options if o.id == q.correct)


def is_structural(q: QuizQuestion, policy: ScreeningPolicy = DEFAULT_POLICY) -> bool:
    return any(re.search(p, q.prompt, re.I) for p in policy.structural_patterns)


def is_redundant(q: QuizQuestion, kept: Sequence[QuizQuestion], policy: ScreeningPolicy = DEFAULT_POLICY) -> bool:
    answer = _correct_text(q)
    for other in kept:
        if (_token_jaccard(q.prompt, other.prompt) >= policy.redundant_prompt_similarity
                and _token_jaccard(answer, _correct_text(other)) >= policy.redundant_answer_similarity):
            return True
    return False


def is_literal(q: QuizQuestion, source_text: str, policy: ScreeningPolicy = DEFAULT_POLICY) -> bool:
    """Prompt lifts a long verbatim run from the source and the answer is copied from it too."""
    source = " ".join(_tokens(source_text))
    answer = " ".join(_tokens(_correct_text(q)))
    if not source or not answer or f" {answer} " not in f" {source} ":
        return False
    words = _tokens(q.prompt)
    n = policy.literal_run_words
    for i in range(len(words) - n + 1):
        if f" {' '.join(words[i:i + n])} " in f" {source} ":
            return True
    return False


def classify_intent(q: QuizQuestion, policy: ScreeningPolicy = DEFAULT_POLICY) -> str:
    if any(re.search(p, q.prompt, re.I) for p in policy.scenario_patterns):
        return "scenario"
    if any(re.search(p, q.prompt, re.I) for p in policy.conceptual_patterns):
        return "conceptual"
    return "recall"


# ---------- Synthesis ----------

class SynthesisResult(BaseModel):
    questions: List[QuizQuestion] = Field(default_factory=list)
    diagnostics: DocumentQuizDiagnostics
    requested_count: int
    # The input context; a document context comes back with the diagnostics attached
    context: Any = None


def _coverage(context, units: Sequence[SourceUnit], kept: Sequence[QuizQuestion]) -> float:
    referenced: Set[int] = {r.page for q in kept for r in q.source_refs}
    if isinstance(context, DocumentQuizContext) and context.all_topics:
        covered = sum(1 for t in context.all_topics if referenced & set(t.pages))
        return min(1.0, covered / len(context.all_topics))
    unit_pages = {p for u in units for p in u.pages}
    if not unit_pages:
        return 0.0
    return min(1.0, len(referenced & unit_pages) / len(unit_pages))


def synthesize(context, generate: Optional[DraftGenerator] = None,
               policy: ScreeningPolicy = DEFAULT_POLICY) -> SynthesisResult:
    units = build_units(context)
    if not units:
        raise NotFound("No content available for this quiz scope")

    count = context.question_count if context.question_count > 0 else question_count(context.difficulty, len(units))
    generate = generate or generate_question_drafts
    # Ask for some slack so screening does not leave the quiz short
    drafts = generate(context, units, count + max(2, count // 2))

    by_id = {u.unit_id: u for u in units}
    kept: List[QuizQuestion] = []
    intents = IntentCounts()
    drops = DropCounts()
    flagged = {"structural": 0, "redundant": 0, "literal": 0}
    rejected = 0

    for draft in drafts:
        if len(kept) >= count:
            break
        try:
            q = normalize_draft(draft, units, context.difficulty)
        except MalformedQuestion as e:
            rejected += 1
            logger.warning(f"Rejected malformed draft: {e.message}")
            continue

        unit = _unit_of(draft, by_id)
        if unit is not None:
            source_text = unit.text
        else:
            pages = {r.page for r in q.source_refs}
            source_text = " ".join(u.text for u in units if pages & set(u.pages))

        reasons = []
        if is_structural(q, policy):
            reasons.append("structural")
        if is_redundant(q, kept, policy):
            reasons.append("redundant")
        if is_literal(q, source_text, policy):
            reasons.append("literal")
        for r in reasons:
            flagged[r] += 1
        if reasons:
            setattr(drops, reasons[0], getattr(drops, reasons[0]) + 1)
            logger.info(f"Dropped {reasons[0]} question: {q.prompt[:80]}")
            continue

        intent = classify_intent(q, policy)
        setattr(intents, intent, getattr(intents, intent) + 1)
        kept.append(q)

    coverage = _coverage(context, units, kept)
    application = (intents.scenario + intents.conceptual) / len(kept) if kept else 0.0
    warnings = []
    if len(kept) < count:
        warnings.append(f"Only {len(kept)} of {count} requested questions survived screening")
    if coverage < 0.5:
        warnings.append(f"Low coverage ratio ({coverage:.2f})")
    if application < 0.3:
        warnings.append(f"Low application ratio ({application:.2f})")

    snippet_count = (
        len(context.sampled_snippets) if isinstance(context, DocumentQuizContext)
        else sum(1 for u in units if u.kind == "chunk")
    )
    diagnostics = DocumentQuizDiagnostics(
        approx_token_count=sum(approx_token_count(u.text) for u in units),
        snippet_count=snippet_count,
        coverage_ratio=round(coverage, 4),
        application_ratio=round(application, 4),
        structural_question_count=flagged["structural"],
        redundant_question_count=flagged["redundant"],
        literal_question_count=flagged["literal"],
        intent_counts=intents,
        drop_counts=drops,
        rejected_count=rejected,
        warnings=warnings,
    )
    for w in warnings:
        logger.warning(w)
    if isinstance(context, DocumentQuizContext):
        context = context.model_copy(update={"diagnostics": diagnostics})
    return SynthesisResult(questions=kept, diagnostics=diagnostics, requested_count=count, context=context)
