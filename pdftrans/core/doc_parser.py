import logging
from typing import Dict, List

import fitz  # PyMuPDF

from ..errors import ExtractionError
from ..models import BoundingBox, FontDescriptor, GlyphRun, RenderedPage

logger = logging.getLogger(__name__)

# Span flag bits reported by PyMuPDF
FLAG_ITALIC = 1 << 1
FLAG_BOLD = 1 << 4


def _font_ref(name: str, size: float, flags: int) -> str:
    return f"{name}|{size:.2f}|{flags}"


def _family(name: str) -> str:
    # Subset fonts are prefixed "ABCDEF+"; style suffixes follow a dash
    name = name.split("+", 1)[-1]
    return name.split("-", 1)[0].split(",", 1)[0]


class FitzGlyphSource:
    """Reads a PyMuPDF page's text spans as a glyph-run stream with a font table."""

    def render_page(self, page: fitz.Page, page_index: int) -> RenderedPage:
        """Converts one page into a RenderedPage.

        Args:
            page: The loaded PyMuPDF page.
            page_index: Zero-based index of the page in its document.

        Returns:
            The page size, a font table keyed by font reference, and one run per span.
        """
        try:
            text_dict = page.get_text("dict")
        except Exception as e:
            raise ExtractionError(page_index, f"failed to read text layer: {e}") from e

        fonts: Dict[str, FontDescriptor] = {}
        runs: List[GlyphRun] = []

        for block in text_dict.get("blocks", []):
            if block.get("type", 0) != 0:  # image block
                continue
            for line in block.get("lines", []):
                for span in line.get("spans", []):
                    text = span.get("text", "")
                    size = float(span.get("size", 0.0))
                    if size <= 0:
                        continue
                    name = span.get("font", "") or "unknown"
                    flags = int(span.get("flags", 0))
                    ref = _font_ref(name, size, flags)
                    if ref not in fonts:
                        fonts[ref] = FontDescriptor(
                            name=name,
                            family=_family(name),
                            bold=bool(flags & FLAG_BOLD) or "bold" in name.lower(),
                            italic=bool(flags & FLAG_ITALIC) or "italic" in name.lower(),
                            size=size,
                        )
                    x0, y0, x1, y1 = span["bbox"]
                    origin = span.get("origin")
                    runs.append(GlyphRun(
                        text=text,
                        bbox=BoundingBox.from_corners(x0, y0, x1, y1),
                        font_ref=ref,
                        baseline=float(origin[1]) if origin else None,
                    ))

        rect = page.rect
        logger.debug("Page %d: read %d spans using %d fonts", page_index, len(runs), len(fonts))
        return RenderedPage(
            page_index=page_index,
            width=rect.width,
            height=rect.height,
            fonts=fonts,
            runs=runs,
        )
