import json, re, textwrap
from typing import Callable, Dict, List, Sequence

from .config import settings
from .errors import UpstreamFailure
from .logger import get_logger
from .sampler import split_sentences
from .pdf_ingest import normalize_whitespace
from .schemas import (
    DocumentQuizContext,
    SourceUnit,
    SubtopicQuizContext,
    TopicQuizContext,
    UserQuizPerformance,
)

logger = get_logger(__name__)

# (context, units, count) -> raw question drafts
DraftGenerator = Callable[[object, Sequence[SourceUnit], int], List[Dict]]

_CHOICE_PREFIX_RE = re.compile(r"^\s*[A-Da-d]\s*[\.):-]\s*")

def _strip_choice_prefix(s: str) -> str:
    return _CHOICE_PREFIX_RE.sub("", s or "").strip()

def _looks_placeholder(s: str) -> bool:
    t = (s or "").strip()
    return bool(re.fullmatch(r"[A-Da-d][\.)]?", t))

def _sanitize_choices(choices: List[str]) -> List[str] | None:
    # Remove leading labels like "A.", "B)", etc., and validate
    if not isinstance(choices, list):
        return None
    cleaned = [_strip_choice_prefix(str(c)) for c in choices]
    # reject if any too short or still placeholders
    if any(len(c) < 3 or _looks_placeholder(c) for c in cleaned):
        return None
    if len(cleaned) != 4:
        return None
    # Must be unique
    if len(set(c.lower() for c in cleaned)) < 4:
        return None
    return cleaned

# ---------- Prompt building ----------

_BASE_PROMPT = textwrap.dedent("""
You are an expert study tutor writing multiple-choice questions about the content below.
Every question must be answerable from the provided content only; do not write generic questions.
Write questions, options and explanations in the same language as the content.
Prefer questions that test understanding or application over questions that can be answered
by copying a phrase from the text, and never ask about page numbers, headings, layout or formatting.
""").strip()

_OUTPUT_RULES = textwrap.dedent("""
Output a strict JSON array only. Each item:
{{
  "unit": <number of the content block the question is built from>,
  "prompt": "...",
  "options": {{"A": "...", "B": "...", "C": "...", "D": "..."}},
  "correct": "A" | "B" | "C" | "D",
  "explanation": "why the correct option is correct",
  "difficulty": "{difficulty}",
  "sourcePages": [<page numbers>]
}}
Options are plain text WITHOUT leading letters. Generate exactly {count} questions.
""").strip()

def _performance_lines(history: Sequence[UserQuizPerformance]) -> str:
    if not history:
        return "No previous attempts."
    lines = []
    for h in history[:5]:
        label = f" on {h.topic}" if h.topic else ""
        lines.append(f"- scored {h.score}%{label} ({h.correct_count}/{h.question_count})")
    return "\n".join(lines)

def _unit_lines(units: Sequence[SourceUnit]) -> str:
    return "\n\n".join(
        f"[{u.unit_id}] ({u.kind}, pages {', '.join(str(p) for p in u.pages)})\n{u.text}"
        for u in units
    )

def build_quiz_prompt(context, units: Sequence[SourceUnit], count: int) -> str:
    if isinstance(context, SubtopicQuizContext):
        header = textwrap.dedent(f"""
        CONTEXT: Subtopic quiz
        - Document: "{context.document_title or 'Unknown Document'}"
        - Subtopic: "{context.subtopic_name}" (parent topic: "{context.parent_topic_name}")
        - Pages: {', '.join(str(p) for p in context.subtopic_pages)}
        Focus every question on "{context.subtopic_name}".
        """).strip()
    elif isinstance(context, TopicQuizContext):
        subtopics = "\n".join(
            f"  - {s.subtopic} (pages {', '.join(str(p) for p in s.pages)})" for s in context.all_subtopics
        ) or "  (none listed)"
        header = textwrap.dedent(f"""
        CONTEXT: Topic quiz
        - Document: "{context.document_title or 'Unknown Document'}"
        - Topic: "{context.topic_name}"
        - Pages: {', '.join(str(p) for p in context.topic_pages)}
        - Subtopics:
        """).strip() + "\n" + subtopics + "\nCover the subtopics evenly."
    elif isinstance(context, DocumentQuizContext):
        topics = "\n".join(
            f"  - {t.topic} (pages {', '.join(str(p) for p in t.pages)})" for t in context.all_topics
        ) or "  (no outline)"
        header = textwrap.dedent(f"""
        CONTEXT: Whole-document quiz
        - Document: "{context.document_title}"
        - Topics:
        """).strip() + "\n" + topics + "\nSpread questions across as many topics and pages as possible."
    else:
        raise TypeError(f"Unsupported quiz context: {type(context).__name__}")

    return "\n\n".join([
        _BASE_PROMPT,
        header,
        f"Difficulty: {context.difficulty}",
        "Learner history:\n" + _performance_lines(context.user_performance),
        "CONTENT BLOCKS:\n" + _unit_lines(units),
        _OUTPUT_RULES.format(count=count, difficulty=context.difficulty),
    ])

# ---------- Heuristic generator (no API key) ----------

_HEURISTIC_STEMS = (
    "According to the material on page {page}{about}, which statement is accurate?",
    "Which statement best describes the explanation given on page {page}{about}?",
    "A learner reviewing page {page}{about} would be right to say which of the following?",
)

_NEGATIONS = (
    (" is ", " is not "),
    (" are ", " are not "),
    (" was ", " was not "),
    (" were ", " were not "),
    (" can ", " cannot "),
    (" will ", " will not "),
    (" has ", " does not have "),
    (" have ", " do not have "),
)

_GENERIC_DISTRACTORS = (
    "The material states that this idea has no practical use.",
    "The material presents this only as an unproven rumour.",
    "The material says the opposite of every claim made here.",
)

def _negate(sentence: str) -> str:
    for src, dst in _NEGATIONS:
        if src in sentence:
            return sentence.replace(src, dst, 1)
    return "It is not true that " + sentence[0].lower() + sentence[1:]

def _candidate_sentences(unit: SourceUnit) -> List[str]:
    return [s for s in split_sentences(normalize_whitespace(unit.text)) if 40 <= len(s) <= 260]

def heuristic_drafts(context, units: Sequence[SourceUnit], count: int) -> List[Dict]:
    """Rule-based drafts so the pipeline works without a generation backend.

    Each question asks which statement about a page holds; distractors are
    negated sentences from the same material.
    """
    per_unit = {u.unit_id: _candidate_sentences(u) for u in units}
    pool = [s for u in units for s in per_unit[u.unit_id]]
    used: set[str] = set()
    drafts: List[Dict] = []

    for rnd in range(max((len(v) for v in per_unit.values()), default=0)):
        for u in units:
            if len(drafts) >= count:
                return drafts
            sentences = per_unit[u.unit_id]
            if rnd >= len(sentences) or sentences[rnd] in used:
                continue
            correct = sentences[rnd]
            used.add(correct)

            others = [s for s in pool if s != correct]
            distractors: List[str] = []
            offset = len(drafts)
            for j in range(len(others)):
                cand = _negate(others[(offset + j) % len(others)])
                if cand not in distractors and cand != correct:
                    distractors.append(cand)
                if len(distractors) == 3:
                    break
            for g in _GENERIC_DISTRACTORS:
                if len(distractors) == 3:
                    break
                distractors.append(g)

            pos = len(drafts) % 4
            choices = distractors[:pos] + [correct] + distractors[pos:]
            page = u.pages[0] if u.pages else 1
            about = f" about {u.title}" if u.title else ""
            drafts.append({
                "unit": u.unit_id,
                "stem": _HEURISTIC_STEMS[len(drafts) % len(_HEURISTIC_STEMS)].format(page=page, about=about),
                "choices": choices,
                "correct_index": pos,
                "rationale": f"Page {page} states: \"{correct}\"",
                "difficulty": context.difficulty,
            })
    return drafts

# ---------- Backend entry point ----------

def _openai_drafts(context, units: Sequence[SourceUnit], count: int) -> List[Dict]:
    from openai import OpenAI, OpenAIError

    client = OpenAI(api_key=settings.openai_api_key)
    prompt = build_quiz_prompt(context, units, count)
    try:
        resp = client.chat.completions.create(
            model=settings.qgen_model,
            messages=[{"role": "user", "content": prompt}],
            temperature=settings.qgen_temperature,
        )
    except OpenAIError as e:
        logger.error(f"Question generation call failed: {e}")
        raise UpstreamFailure(f"Question generation failed: {e}") from e

    content = (resp.choices[0].message.content or "").strip()
    # Extract JSON block if model wraps it in prose
    m = re.search(r"\[.*\]", content, flags=re.S)
    raw = m.group(0) if m else content
    try:
        items = json.loads(raw)
    except json.JSONDecodeError as e:
        raise UpstreamFailure("Question generation returned unparsable output") from e
    if not isinstance(items, list):
        raise UpstreamFailure("Question generation did not return a list")
    return [it for it in items if isinstance(it, dict)]

def generate_question_drafts(context, units: Sequence[SourceUnit], count: int) -> List[Dict]:
    """Return raw drafts in whatever shape the backend produced; the synthesizer normalizes them."""
    provider = settings.qgen_provider.lower()
    if provider != "openai" or not settings.openai_api_key:
        logger.info(f"Using heuristic question drafts (provider={provider})")
        return heuristic_drafts(context, units, count)
    drafts = _openai_drafts(context, units, count)
    logger.info(f"Generation backend returned {len(drafts)} drafts for {context.scope} scope")
    return drafts
