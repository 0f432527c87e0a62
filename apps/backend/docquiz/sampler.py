"""Budgeted snippet selection and per-topic compression for document quizzes.

Selection runs four passes over the page-ordered chunks (anchor, topic,
periodic, fallback), then trims the result to the token budget, dropping
fallback snippets first, then periodic, then topic. Anchors are only admitted
while they fit the budget, so they never need to be trimmed.
"""
import math
import re
from typing import Dict, List, Optional, Sequence, Set, Union

from pydantic import BaseModel, Field, ValidationError

from .errors import BadRequest
from .logger import get_logger
from .pdf_ingest import normalize_whitespace
from .retrieval import cosine_similarity
from .schemas import (
    CompressedSummary,
    CompressionConfig,
    DocumentQuizConfig,
    OutlineTopic,
    REASON_PRIORITY,
    RetrievedChunk,
    SampledSnippet,
    SnippetReason,
)

logger = get_logger(__name__)

MIN_SNIPPET_CHARS = 120
CHARS_PER_TOKEN = 4
SHINGLE_SIZE = 3

_SENTENCE_SPLIT_RE = re.compile(r"(?<=[.!?])\s+")
_WORD_RE = re.compile(r"\w+")


class SampleResult(BaseModel):
    snippets: List[SampledSnippet] = Field(default_factory=list)
    summaries: List[CompressedSummary] = Field(default_factory=list)
    total_approx_tokens: int = 0
    trimmed_count: int = 0


def resolve_config(overrides: Union[DocumentQuizConfig, dict, None] = None) -> DocumentQuizConfig:
    """Defaults merged with a (possibly partial) override; invalid bundles are a BadRequest."""
    if overrides is None:
        return DocumentQuizConfig()
    if isinstance(overrides, DocumentQuizConfig):
        return overrides
    try:
        return DocumentQuizConfig.model_validate(overrides)
    except ValidationError as e:
        first = e.errors()[0]
        raise BadRequest(f"Invalid quiz config: {first.get('msg', 'validation error')}") from e


def approx_token_count(text: str, tokens: Optional[int] = None) -> int:
    if tokens:
        return int(tokens)
    return math.ceil(len(normalize_whitespace(text)) / CHARS_PER_TOKEN)


def _shingles(text: str) -> Set[tuple]:
    words = _WORD_RE.findall(text.lower())
    if len(words) < SHINGLE_SIZE:
        return {tuple(words)} if words else set()
    return {tuple(words[i:i + SHINGLE_SIZE]) for i in range(len(words) - SHINGLE_SIZE + 1)}


def _jaccard(a: Set, b: Set) -> float:
    if not a or not b:
        return 0.0
    return len(a & b) / len(a | b)


def _page_order(chunks: Sequence[RetrievedChunk]) -> List[RetrievedChunk]:
    # Longest first within a page so "the first chunk of page N" is substantive.
    return sorted(chunks, key=lambda c: (c.page, c.document_id, -len(c.content)))


class _Selection:
    def __init__(self, config: DocumentQuizConfig):
        self.cfg = config.sampling
        self.snippets: List[SampledSnippet] = []
        self.used: Set[int] = set()
        self._vectors: List[Optional[List[float]]] = []
        self._shingles: List[Set[tuple]] = []

    @property
    def total_tokens(self) -> int:
        return sum(s.approx_tokens for s in self.snippets)

    def covers(self, pages: Set[int]) -> bool:
        return any(s.page in pages for s in self.snippets)

    def _too_similar(self, chunk: RetrievedChunk, shingles: Set[tuple]) -> bool:
        threshold = self.cfg.diversity_threshold
        for vec, sh in zip(self._vectors, self._shingles):
            if chunk.embedding and vec:
                sim = cosine_similarity(chunk.embedding, vec)
            else:
                sim = _jaccard(shingles, sh)
            if sim >= threshold:
                return True
        return False

    def admit(self, idx: int, chunk: RetrievedChunk, reason: SnippetReason, check_budget: bool = False) -> bool:
        if idx in self.used:
            return False
        content = normalize_whitespace(chunk.content)
        if len(content) < MIN_SNIPPET_CHARS:
            return False
        if len(self.snippets) >= self.cfg.max_samples:
            return False
        tokens = approx_token_count(content, chunk.tokens)
        if check_budget and self.total_tokens + tokens > self.cfg.token_budget:
            return False
        shingles = _shingles(content)
        if self._too_similar(chunk, shingles):
            return False
        self.used.add(idx)
        self._vectors.append(chunk.embedding)
        self._shingles.append(shingles)
        self.snippets.append(SampledSnippet(
            page=chunk.page, content=content, reason=reason,
            approx_tokens=tokens, document_id=chunk.document_id,
        ))
        return True

    def trim_to_budget(self) -> int:
        """Drop lowest-priority, most recently added snippets until within budget."""
        dropped = 0
        while self.total_tokens > self.cfg.token_budget:
            droppable = [i for i, s in enumerate(self.snippets) if s.reason != "anchor"]
            if not droppable:
                break
            victim = min(droppable, key=lambda i: (REASON_PRIORITY[self.snippets[i].reason], -i))
            del self.snippets[victim]
            del self._vectors[victim]
            del self._shingles[victim]
            dropped += 1
        return dropped


def _anchor_indices(ordered: List[RetrievedChunk], outline: Sequence[OutlineTopic]) -> List[int]:
    first_on_page: Dict[int, int] = {}
    for i, c in enumerate(ordered):
        first_on_page.setdefault(c.page, i)

    picks: List[int] = []
    if outline:
        for topic in outline:
            pages = sorted(p for p in topic.pages if p in first_on_page)
            if pages:
                picks.append(first_on_page[pages[0]])
                picks.append(first_on_page[pages[-1]])
    else:
        picks = [0, len(ordered) // 2, len(ordered) - 1]

    unique: List[int] = []
    for i in picks:
        if i not in unique:
            unique.append(i)
    return unique


def select_snippets(
    chunks: Sequence[RetrievedChunk],
    config: DocumentQuizConfig,
    outline: Sequence[OutlineTopic] = (),
) -> tuple[List[SampledSnippet], int]:
    """Returns (snippets, number trimmed for budget)."""
    ordered = _page_order(chunks)
    if not ordered:
        return [], 0

    cfg = config.sampling
    sel = _Selection(config)

    if cfg.anchor_pages:
        for idx in _anchor_indices(ordered, outline):
            sel.admit(idx, ordered[idx], "anchor", check_budget=True)

    if cfg.topic_coverage:
        scopes = []
        for topic in outline:
            scopes.append(set(topic.pages))
            scopes.extend(set(sub.pages) for sub in topic.subtopics)
        for pages in scopes:
            if not pages or sel.covers(pages):
                continue
            for idx, c in enumerate(ordered):
                if c.page in pages and sel.admit(idx, c, "topic"):
                    break

    interval = max(1, cfg.periodic_interval)
    remaining = [i for i in range(len(ordered)) if i not in sel.used]
    for idx in remaining[::interval]:
        if len(sel.snippets) >= cfg.max_samples:
            break
        sel.admit(idx, ordered[idx], "periodic")

    if len(sel.snippets) < cfg.minimum_snippets:
        for idx, c in enumerate(ordered):
            if len(sel.snippets) >= cfg.minimum_snippets:
                break
            sel.admit(idx, c, "fallback")

    trimmed = sel.trim_to_budget()
    if trimmed:
        logger.info(f"Trimmed {trimmed} snippets to stay within {cfg.token_budget} tokens")
    return sel.snippets, trimmed


# ---------- Compression ----------

def _slug(value: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", value.lower()).strip("-")


def create_topic_id(title: str, parent_topic_id: Optional[str] = None) -> str:
    base = _slug(title)
    return f"{_slug(parent_topic_id)}-{base}" if parent_topic_id else base


def split_sentences(text: str) -> List[str]:
    return [s.strip() for s in _SENTENCE_SPLIT_RE.split(text) if s.strip()]


def score_sentence(sentence: str, index: int) -> float:
    score = 0.0
    if re.search(r"[A-Z][a-z]+\s(is|are|was|were)\s", sentence):
        score += 2
    if re.search(r"\b(for example|for instance|such as|including)\b", sentence, re.I):
        score += 1.5
    if re.search(r"\b(because|therefore|as a result|leads to)\b", sentence, re.I):
        score += 1.5
    if re.search(r"\d", sentence):
        score += 1
    if re.search(r"\b(step|process|method|approach)\b", sentence, re.I):
        score += 1
    score += max(0.0, 1.2 - index * 0.05)
    return score


def summarize_text(text: str, cfg: CompressionConfig) -> str:
    seen: Set[str] = set()
    sentences = []
    for s in split_sentences(normalize_whitespace(text)):
        if s not in seen:
            seen.add(s)
            sentences.append(s)

    kept = [
        (i, s) for i, s in enumerate(sentences)
        if cfg.min_sentence_length <= len(s) <= cfg.max_sentence_length
    ]
    best = sorted(kept, key=lambda e: (-score_sentence(e[1], e[0]), e[0]))[:cfg.max_sentences]
    summary = " ".join(s for _, s in sorted(best))

    if len(summary) > cfg.max_characters:
        summary = summary[:cfg.max_characters]
        last_stop = summary.rfind(".")
        if last_stop > cfg.max_characters * 0.6:
            summary = summary[:last_stop + 1]
    return summary.strip()


def compress_topics(
    chunks: Sequence[RetrievedChunk],
    snippets: Sequence[SampledSnippet],
    config: DocumentQuizConfig,
    outline: Sequence[OutlineTopic] = (),
    title: str = "",
) -> List[CompressedSummary]:
    """One summary per topic and subtopic, built from the selected snippets on its
    pages (any chunk on those pages when no snippet landed there)."""
    def text_for(pages: Set[int]) -> tuple[str, Optional[str]]:
        picked = [s for s in snippets if s.page in pages]
        if picked:
            return " ".join(s.content for s in picked), picked[0].document_id
        fallback = [c for c in _page_order(chunks) if c.page in pages]
        if fallback:
            return " ".join(c.content for c in fallback), fallback[0].document_id
        return "", None

    summaries: List[CompressedSummary] = []

    def build(pages: Sequence[int], name: str, kind: str, parent: Optional[str] = None) -> None:
        text, doc_id = text_for(set(pages))
        if not text:
            return
        summary = summarize_text(text, config.compression)
        if not summary:
            return
        summaries.append(CompressedSummary(
            topic_id=create_topic_id(name, parent), title=name, summary=summary,
            pages=sorted(set(pages)), kind=kind, parent_topic_id=_slug(parent) if parent else None,
            document_id=doc_id,
        ))

    for topic in outline:
        build(topic.pages, topic.topic, "topic")
        for sub in topic.subtopics:
            build(sub.pages, sub.subtopic, "subtopic", topic.topic)

    if not summaries:
        all_pages = sorted({c.page for c in chunks})
        build(all_pages, title or "Document", "topic")
    return summaries


def sample(
    chunks: Sequence[RetrievedChunk],
    config: Union[DocumentQuizConfig, dict, None] = None,
    outline: Sequence[OutlineTopic] = (),
    title: str = "",
) -> SampleResult:
    cfg = resolve_config(config)
    snippets, trimmed = select_snippets(chunks, cfg, outline)
    summaries = compress_topics(chunks, snippets, cfg, outline, title)
    result = SampleResult(
        snippets=snippets,
        summaries=summaries,
        total_approx_tokens=sum(s.approx_tokens for s in snippets),
        trimmed_count=trimmed,
    )
    logger.info(
        f"Sampled {len(snippets)} snippets (~{result.total_approx_tokens} tokens) "
        f"and {len(summaries)} summaries from {len(chunks)} chunks"
    )
    return result
