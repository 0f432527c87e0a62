import pytest

from apps.backend.docquiz.errors import MalformedQuestion, NotFound
from apps.backend.docquiz.qgen import build_quiz_prompt, heuristic_drafts
from apps.backend.docquiz.sampler import sample
from apps.backend.docquiz.schemas import (
    DocumentQuizContext,
    OutlineTopic,
    RetrievedChunk,
    SourceUnit,
    SubtopicQuizContext,
    TopicQuizContext,
)
from apps.backend.docquiz.synthesizer import (
    build_units,
    classify_intent,
    is_literal,
    is_structural,
    normalize_draft,
    question_count,
    synthesize,
)

from conftest import make_text

UNITS = [
    SourceUnit(unit_id=0, kind="snippet", text=make_text(1), pages=[3], document_id="doc-1"),
    SourceUnit(unit_id=1, kind="summary", text=make_text(2), pages=[4, 5], document_id="doc-1", title="Part"),
]


def _draft(**overrides):
    draft = {
        "unit": 0,
        "prompt": "Why does the process described here depend on its inputs?",
        "options": {"A": "Because inputs shape it", "B": "It never changes", "C": "Only by chance", "D": "Nobody knows"},
        "correct": "A",
        "explanation": "The passage links the inputs to the outcome.",
    }
    draft.update(overrides)
    return draft


def _document_context(n_chunks=9, difficulty="easy", outline=()):
    chunks = [RetrievedChunk(document_id="doc-1", page=i + 1, content=make_text(i)) for i in range(n_chunks)]
    sampled = sample(chunks, None, outline, "Doc")
    return DocumentQuizContext(
        question_count=question_count(difficulty, n_chunks),
        difficulty=difficulty,
        document_ids=["doc-1"],
        document_title="Doc",
        all_topics=list(outline),
        sampled_snippets=sampled.snippets,
        compressed_summaries=sampled.summaries,
    )


@pytest.mark.parametrize("difficulty,n,expected", [
    ("easy", 9, 5), ("easy", 0, 5), ("easy", 18, 6), ("easy-medium", 60, 10),
    ("medium", 9, 8), ("hard", 20, 10), ("mixed", 40, 12),
])
def test_question_count_policy(difficulty, n, expected):
    assert question_count(difficulty, n) == expected


def test_normalize_dict_options():
    q = normalize_draft(_draft(), UNITS, "easy", question_id="q1")
    assert [o.label for o in q.options] == ["A", "B", "C", "D"]
    assert [o.id for o in q.options] == ["q1-option-0", "q1-option-1", "q1-option-2", "q1-option-3"]
    assert q.correct == "q1-option-0"
    assert q.source_refs[0].document_id == "doc-1"
    assert q.source_refs[0].page == 3


def test_normalize_legacy_stem_choices_shape():
    legacy = {
        "unit": 1,
        "stem": "Which statement best explains the summary?",
        "choices": ["A. First idea", "B) Second idea", "C: Third idea", "D - Fourth idea"],
        "correct_index": 2,
        "rationale": "It is stated directly.",
    }
    q = normalize_draft(legacy, UNITS, "medium", question_id="q2")
    assert [o.text for o in q.options] == ["First idea", "Second idea", "Third idea", "Fourth idea"]
    assert q.correct == "q2-option-2"
    assert [r.page for r in q.source_refs] == [4, 5]


def test_normalize_option_objects_and_source_pages():
    draft = _draft(
        unit=None,
        options=[{"id": "x1", "text": "Alpha choice"}, {"id": "x2", "text": "Beta choice"},
                 {"id": "x3", "text": "Gamma choice"}, {"id": "x4", "text": "Delta choice"}],
        correct="x3",
        sourcePages=[5],
    )
    q = normalize_draft(draft, UNITS, "easy", question_id="q3")
    assert q.correct == "q3-option-2"
    assert [(r.document_id, r.page) for r in q.source_refs] == [("doc-1", 5)]


@pytest.mark.parametrize("overrides", [
    {"prompt": ""},
    {"options": {"A": "one", "B": "two"}},
    {"options": {"A": "Same", "B": "same", "C": "Other one", "D": "Last one"}},
    {"correct": "E"},
    {"explanation": ""},
    {"unit": 99, "sourcePages": [42]},
])
def test_malformed_drafts_are_rejected(overrides):
    with pytest.raises(MalformedQuestion):
        normalize_draft(_draft(**overrides), UNITS, "easy")


def test_structural_and_intent_screens():
    structural = normalize_draft(_draft(prompt="On what page does the second heading appear?"), UNITS, "easy")
    assert is_structural(structural)
    scenario = normalize_draft(_draft(prompt="If a farmer applied this idea, what would happen?"), UNITS, "easy")
    assert classify_intent(scenario) == "scenario"
    conceptual = normalize_draft(_draft(), UNITS, "easy")
    assert classify_intent(conceptual) == "conceptual"
    recall = normalize_draft(_draft(prompt="What is named first in the passage?"), UNITS, "easy")
    assert classify_intent(recall) == "recall"


def test_literal_screen_needs_copied_prompt_and_answer():
    source = "The river signal is connected to market and harbor because the ledger shapes trade."
    copied = normalize_draft(_draft(
        prompt="The river signal is connected to market and what?",
        options={"A": "harbor", "B": "glacier", "C": "quartz", "D": "nebula"},
    ), UNITS, "easy")
    assert is_literal(copied, source)
    rephrased = normalize_draft(_draft(
        prompt="What links the signal to trade?",
        options={"A": "harbor", "B": "glacier", "C": "quartz", "D": "nebula"},
    ), UNITS, "easy")
    assert not is_literal(rephrased, source)


def test_synthesize_document_context_with_heuristic_drafts():
    context = _document_context()
    result = synthesize(context)
    assert result.requested_count == 5
    assert len(result.questions) == 5
    ids = [o.id for q in result.questions for o in q.options]
    assert len(ids) == len(set(ids))
    for q in result.questions:
        assert len(q.options) == 4
        assert q.correct in {o.id for o in q.options}
        assert q.source_refs
    d = result.diagnostics
    assert 0.0 <= d.coverage_ratio <= 1.0
    assert 0.0 <= d.application_ratio <= 1.0
    assert d.intent_counts.scenario + d.intent_counts.conceptual + d.intent_counts.recall == 5
    assert context.diagnostics is None
    assert result.context.diagnostics == d
    assert result.context.sampled_snippets == context.sampled_snippets


def test_synthesize_drops_and_counts_screened_drafts():
    context = _document_context()
    good = heuristic_drafts(context, build_units(context), 5)
    bad = [
        _draft(unit=0, prompt="Which page has the largest heading?"),
        {"unit": 0, "stem": "Missing options"},
    ]

    def generate(ctx, units, count):
        return bad + [dict(good[0]), dict(good[0])] + good[1:]

    result = synthesize(context, generate=generate)
    d = result.diagnostics
    assert d.drop_counts.structural == 1
    assert d.drop_counts.redundant == 1
    assert d.rejected_count == 1
    assert d.structural_question_count >= 1
    assert len(result.questions) == 5


def test_low_ratios_warn_but_do_not_fail():
    context = _document_context()

    def generate(ctx, units, count):
        return [_draft(unit=0, prompt=f"What is listed as item {i} in the text?",
                       options={"A": f"Alpha {i}", "B": f"Beta {i}", "C": f"Gamma {i}", "D": f"Delta {i}"})
                for i in range(count)]

    result = synthesize(context, generate=generate)
    assert result.questions
    assert any("application" in w for w in result.diagnostics.warnings)


def test_coverage_uses_outline_topics():
    outline = [OutlineTopic(topic="Start", pages=[1, 2, 3]), OutlineTopic(topic="Rest", pages=[4, 5, 6, 7, 8, 9])]
    context = _document_context(outline=outline)

    def generate(ctx, units, count):
        # every question cites page 1 only
        return [_draft(unit=None, sourcePages=[1], prompt=f"Why does step {i} matter here?",
                       options={"A": f"Reason {i}", "B": f"Other {i}", "C": f"Third {i}", "D": f"Fourth {i}"})
                for i in range(count)]

    result = synthesize(context, generate=generate)
    assert result.diagnostics.coverage_ratio == 0.5


def test_scoped_contexts_build_units():
    chunks = [RetrievedChunk(document_id="doc-9", page=p, content=make_text(p)) for p in (2, 3)]
    sub = SubtopicQuizContext(subtopic_name="Enzymes", parent_topic_name="Biology", subtopic_pages=[2, 3],
                              subtopic_content=make_text(50), source_chunks=chunks, document_ids=["doc-9"])
    units = build_units(sub)
    assert [u.kind for u in units] == ["chunk", "chunk", "content"]
    assert all(u.document_id == "doc-9" for u in units)

    topic = TopicQuizContext(topic_name="Biology", source_chunks=chunks, difficulty="hard")
    result = synthesize(topic)
    assert 0 < len(result.questions) <= result.requested_count
    assert result.requested_count == 8
    assert "Topic quiz" in build_quiz_prompt(topic, build_units(topic), 8)


def test_empty_context_is_not_found():
    with pytest.raises(NotFound):
        synthesize(TopicQuizContext(topic_name="Nothing", document_ids=["doc-1"]))


def test_unknown_context_type_is_rejected():
    with pytest.raises(TypeError):
        build_units(object())
