import logging
from typing import List

import fitz  # PyMuPDF

from ..models import DrawDirective

logger = logging.getLogger(__name__)

WHITE = (1, 1, 1)


class PageRenderer:
    """Materializes drawing directives on a PyMuPDF page.

    Masks are applied first for the whole page so that no mask covers text
    drawn for a neighbouring block. With ``redact=True`` the source glyphs are
    removed through redaction (images are preserved); otherwise they are only
    painted over.
    """

    def __init__(self, redact: bool = True):
        self.redact = redact

    def apply(self, page: fitz.Page, directives: List[DrawDirective]) -> int:
        """Draws masks then translated lines; returns the number of lines drawn.

        Callers hold pdf_loader.FITZ_LOCK.
        """
        if not directives:
            return 0

        if self.redact:
            for directive in directives:
                page.add_redact_annot(_rect(directive.mask), fill=WHITE, cross_out=False)
            page.apply_redactions(images=fitz.PDF_REDACT_IMAGE_NONE)
        else:
            for directive in directives:
                page.draw_rect(_rect(directive.mask), color=None, fill=WHITE, overlay=True)

        drawn = 0
        for directive in directives:
            font_kwargs = {"fontname": directive.font.draw_name}
            if directive.font.font_file:
                font_kwargs["fontfile"] = directive.font.font_file
            for line in directive.lines:
                if not line.text:
                    continue
                page.insert_text(
                    fitz.Point(line.x, line.y),
                    line.text,
                    fontsize=directive.font_size,
                    color=directive.color.as_tuple(),
                    **font_kwargs,
                )
                drawn += 1

        logger.debug("Page %d: applied %d directives, %d lines", page.number, len(directives), drawn)
        return drawn


def _rect(box) -> fitz.Rect:
    return fitz.Rect(box.x, box.y, box.x1, box.y1)
