import logging
from pathlib import Path
from typing import Iterable, Optional, Union

import fitz  # PyMuPDF

from ..models import PageResult
from .page_renderer import PageRenderer
from .pdf_loader import FITZ_LOCK, PdfDocument

logger = logging.getLogger(__name__)


class Exporter:
    """Applies page results to a copy of the document and saves the translated PDF."""

    def __init__(self, renderer: Optional[PageRenderer] = None):
        self.renderer = renderer or PageRenderer()

    def build(self, document: PdfDocument, results: Iterable[PageResult]) -> bytes:
        """Returns the translated PDF; pages without a successful result stay as in the source."""
        with FITZ_LOCK:
            doc = document.open()
            try:
                applied = 0
                for result in results:
                    if not result.succeeded:
                        logger.warning("Page %d left untranslated: %s", result.page_index + 1, result.error)
                        continue
                    self.renderer.apply(doc.load_page(result.page_index), result.directives)
                    applied += 1
                logger.info("Applied translations to %d/%d pages of '%s'",
                            applied, document.page_count, document.name)
                return doc.tobytes(garbage=4, deflate=True)
            finally:
                doc.close()

    def save_pdf(self, document: PdfDocument, results: Iterable[PageResult], output_path: Union[str, Path]) -> Path:
        output_path = Path(output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        output_path.write_bytes(self.build(document, results))
        logger.info("Saved translated PDF to: %s", output_path)
        return output_path

    def render_page_png(self, document: PdfDocument, result: PageResult, scale: float = 2.0) -> bytes:
        """Rasterizes one translated page, e.g. for a preview."""
        with FITZ_LOCK:
            doc = document.open()
            try:
                page = doc.load_page(result.page_index)
                if result.succeeded:
                    self.renderer.apply(page, result.directives)
                pix = page.get_pixmap(matrix=fitz.Matrix(scale, scale))
                return pix.tobytes("png")
            finally:
                doc.close()
