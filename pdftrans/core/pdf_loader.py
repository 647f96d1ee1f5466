import hashlib
import logging
import threading
from pathlib import Path
from typing import List, Optional, Union

import fitz  # PyMuPDF

from ..errors import DocumentError, InvalidPageError
from ..models import RenderedPage
from .doc_parser import FitzGlyphSource

logger = logging.getLogger(__name__)

# MuPDF is not thread-safe; every PyMuPDF call in the package goes through this lock
FITZ_LOCK = threading.RLock()


class PdfDocument:
    """An immutable loaded PDF identified by the hash of its bytes."""

    def __init__(self, data: bytes, name: str = "document.pdf"):
        self.name = name
        self._data = data
        self.content_hash = hashlib.sha256(data).hexdigest()
        self._glyph_source = FitzGlyphSource()
        with FITZ_LOCK:
            try:
                doc = fitz.open(stream=data, filetype="pdf")
            except Exception as e:
                raise DocumentError(f"failed to open PDF '{name}': {e}") from e
            try:
                self.page_count = len(doc)
                metadata = doc.metadata or {}
            finally:
                doc.close()
        self.title: Optional[str] = metadata.get("title") or None
        self.author: Optional[str] = metadata.get("author") or None

    @classmethod
    def from_path(cls, path: Union[str, Path]) -> "PdfDocument":
        path = Path(path)
        try:
            data = path.read_bytes()
        except OSError as e:
            raise DocumentError(f"failed to read '{path}': {e}") from e
        return cls(data, name=path.name)

    @property
    def data(self) -> bytes:
        return self._data

    def open(self) -> fitz.Document:
        """Opens a fresh PyMuPDF handle; callers hold FITZ_LOCK and close it."""
        return fitz.open(stream=self._data, filetype="pdf")

    def check_page(self, page_index: int):
        if not 0 <= page_index < self.page_count:
            raise InvalidPageError(page_index, self.page_count)

    def render_page(self, page_index: int) -> RenderedPage:
        """Returns the glyph stream of one page."""
        self.check_page(page_index)
        with FITZ_LOCK:
            doc = self.open()
            try:
                return self._glyph_source.render_page(doc.load_page(page_index), page_index)
            finally:
                doc.close()

    def __repr__(self) -> str:
        return f"PdfDocument({self.name!r}, pages={self.page_count}, hash={self.content_hash[:12]})"


class PDFLoader:
    """Loads PDFs and resolves user page selections."""

    def load(self, pdf_path: Union[str, Path]) -> PdfDocument:
        document = PdfDocument.from_path(pdf_path)
        logger.info("Loaded '%s', %d pages", pdf_path, document.page_count)
        return document


def parse_page_range(selection: Optional[str], total_pages: int) -> List[int]:
    """Parses a 1-based inclusive selection like "1-3,5,8-" into sorted zero-based indices.

    An empty selection means every page. Open-ended ranges ("8-", "-3") run to
    the last or from the first page.

    Raises:
        ValueError: the selection is malformed or names a page outside the document.
    """
    if selection is None or not selection.strip():
        return list(range(total_pages))

    selected = set()
    for part in selection.split(","):
        part = part.strip()
        if not part:
            continue
        if "-" in part:
            start_text, end_text = (p.strip() for p in part.split("-", 1))
            start = int(start_text) if start_text else 1
            end = int(end_text) if end_text else total_pages
        else:
            start = end = int(part)
        if start < 1 or end > total_pages or start > end:
            raise ValueError(f"page range '{part}' is outside 1-{total_pages}")
        selected.update(range(start - 1, end))

    return sorted(selected)
