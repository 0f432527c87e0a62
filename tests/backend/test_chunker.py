from apps.backend.docquiz.pdf_ingest import chunk_pages, chunk_text, normalize_whitespace
from apps.backend.docquiz.schemas import PageText

from conftest import make_text


def _reassemble(chunks, overlap):
    out = chunks[0]
    for c in chunks[1:]:
        out += c[overlap:]
    return out


def test_short_page_is_single_normalized_chunk():
    pages = [PageText(page=1, text="  Hello\n\n   world,\tthis is   short.  ")]
    chunks = chunk_pages(pages)
    assert len(chunks) == 1
    assert chunks[0].page == 1
    assert chunks[0].content == "Hello world, this is short."


def test_empty_pages_yield_nothing():
    pages = [PageText(page=1, text=""), PageText(page=2, text="   \n\t ")]
    assert chunk_pages(pages) == []


def test_long_text_overlaps_exactly_and_reassembles():
    text = make_text(7, sentences=40)
    chunks = chunk_text(text)
    assert len(chunks) >= 3
    assert all(len(c) <= 1200 for c in chunks)
    for prev, nxt in zip(chunks, chunks[1:]):
        assert prev[-200:] == nxt[:200]
    assert _reassemble(chunks, 200) == normalize_whitespace(text)


def test_window_backs_off_to_space():
    text = make_text(3, sentences=30)
    for c in chunk_text(text)[:-1]:
        # every non-final window ends right before a space
        assert not c.endswith(" ")
        assert len(c) >= 800


def test_hard_cut_without_spaces():
    text = "x" * 3000
    chunks = chunk_text(text)
    assert [len(c) for c in chunks] == [1200, 1200, 1000]
    assert _reassemble(chunks, 200) == text


def test_chunk_pages_keeps_page_numbers():
    pages = [PageText(page=1, text=make_text(1, 2)), PageText(page=2, text=make_text(2, 40))]
    chunks = chunk_pages(pages)
    assert chunks[0].page == 1
    assert {c.page for c in chunks[1:]} == {2}
    assert chunk_pages(pages) == chunks
