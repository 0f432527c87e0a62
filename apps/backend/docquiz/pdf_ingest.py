import fitz  # PyMuPDF
from typing import List, Optional
import base64
import re

from .config import settings
from .errors import UnprocessableDocument, UpstreamFailure, ConfigurationError
from .logger import get_logger
from .schemas import PageText, PageChunk

logger = get_logger(__name__)

DEFAULT_MIN_LENGTH = 800
DEFAULT_MAX_LENGTH = 1200
DEFAULT_OVERLAP = 200

_WHITESPACE_RE = re.compile(r"\s+")

def normalize_whitespace(text: str) -> str:
    return _WHITESPACE_RE.sub(" ", text or "").strip()

def _open_pdf(data: bytes) -> "fitz.Document":
    try:
        return fitz.open(stream=data, filetype="pdf")
    except Exception as e:
        raise UnprocessableDocument(f"Could not open PDF: {e}") from e

def extract_pages_text(data: bytes) -> List[PageText]:
    """
    Returns one PageText per page, 1-based and in document order.
    If the PDF has no text layer, returned texts may be empty.
    """
    out: List[PageText] = []
    doc = _open_pdf(data)
    try:
        for i, page in enumerate(doc):
            text = page.get_text("text") or ""
            out.append(PageText(page=i + 1, text=text.strip()))
    finally:
        doc.close()
    logger.info(f"Extracted {len(out)} pages")
    return out

def chunk_text(
    text: str,
    min_length: int = DEFAULT_MIN_LENGTH,
    max_length: int = DEFAULT_MAX_LENGTH,
    overlap: int = DEFAULT_OVERLAP,
) -> List[str]:
    """
    Sliding-window chunker over whitespace-normalized text.

    Each window tries to end on the last space at or before start+max_length,
    as long as that space sits at or after start+min_length; otherwise the hard
    cut is kept. The next window starts `overlap` characters before the previous
    end, so consecutive chunks share exactly `overlap` characters.
    """
    clean = normalize_whitespace(text)
    if not clean:
        return []
    if len(clean) <= max_length:
        return [clean]

    chunks: List[str] = []
    start = 0
    while start < len(clean):
        end = min(start + max_length, len(clean))
        if end < len(clean):
            space_at = clean.rfind(" ", start, end + 1)
            if space_at >= start + min_length:
                end = space_at
        chunks.append(clean[start:end])
        if end >= len(clean):
            break
        next_start = max(end - overlap, 0)
        # overlap >= window would never advance
        start = next_start if next_start > start else end
    return chunks

def chunk_pages(
    pages: List[PageText],
    min_length: int = DEFAULT_MIN_LENGTH,
    max_length: int = DEFAULT_MAX_LENGTH,
    overlap: int = DEFAULT_OVERLAP,
) -> List[PageChunk]:
    """
    From page texts -> list of PageChunk.
    We chunk *within* each page (simpler + preserves page refs).
    """
    out: List[PageChunk] = []
    for p in pages:
        for piece in chunk_text(p.text, min_length=min_length, max_length=max_length, overlap=overlap):
            out.append(PageChunk(page=p.page, content=piece))
    return out

# ------------- OCR (OpenAI Vision) -------------

def ocr_pages_with_openai(
    data: bytes,
    page_numbers: List[int],
    dpi: int = 150,
    model: Optional[str] = None,
) -> List[PageText]:
    """
    OCR specific pages from a PDF using OpenAI Vision.
    Requires OPENAI_API_KEY; backend errors surface as UpstreamFailure.
    """
    if not page_numbers:
        return []
    if not settings.openai_api_key:
        raise ConfigurationError("OPENAI_API_KEY is required for OCR")

    from openai import OpenAI, OpenAIError

    model = model or settings.ocr_model
    client = OpenAI(api_key=settings.openai_api_key)

    out: List[PageText] = []
    doc = _open_pdf(data)
    try:
        for pg_no in page_numbers:
            if pg_no < 1 or pg_no > len(doc):
                continue
            page = doc[pg_no - 1]
            zoom = float(dpi) / 72.0
            pix = page.get_pixmap(matrix=fitz.Matrix(zoom, zoom), alpha=False)
            b64 = base64.b64encode(pix.tobytes("png")).decode("utf-8")
            try:
                resp = client.chat.completions.create(
                    model=model,
                    messages=[{
                        "role": "user",
                        "content": [
                            {"type": "text", "text": "Extract all readable text from this page. Return plain UTF-8 text only."},
                            {"type": "image_url", "image_url": {"url": f"data:image/png;base64,{b64}"}}
                        ]
                    }],
                    temperature=0.0,
                )
            except OpenAIError as e:
                logger.error(f"OCR failed for page {pg_no}: {e}")
                raise UpstreamFailure(f"OCR failed: {e}") from e
            text = (resp.choices[0].message.content or "").strip()
            out.append(PageText(page=pg_no, text=text))
    finally:
        doc.close()
    logger.info(f"OCR recovered text for {len(out)} pages")
    return out
