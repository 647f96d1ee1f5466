import logging
import os
from typing import Iterable, List, Optional

from pydantic import BaseModel
from reportlab.pdfbase import pdfmetrics
from reportlab.pdfbase.ttfonts import TTFont

from ..config import BUNDLED_FONT_LANGUAGES, FitSettings
from ..errors import ConfigurationError, ProtocolError, UnfittableTextError, UnsupportedLanguageError
from ..models import BoundingBox, DrawDirective, FontDescriptor, OutputFont, TextBlock, TextColor, TextLine

logger = logging.getLogger(__name__)

UNAVAILABLE_MARKER = "[translation unavailable]"
CUSTOM_FONT_NAME = "PdfTransCustom"
# Widths within this tolerance (points) count as fitting
FIT_EPSILON = 1e-6
# Smallest shrink per step, so fitting always makes progress
MIN_SHRINK = 0.02

# Base-14 Helvetica family: reportlab metrics name -> PyMuPDF drawing name
BASE14_FONTS = {
    (False, False): OutputFont(metrics_name="Helvetica", draw_name="helv"),
    (True, False): OutputFont(metrics_name="Helvetica-Bold", draw_name="hebo"),
    (False, True): OutputFont(metrics_name="Helvetica-Oblique", draw_name="heit"),
    (True, True): OutputFont(metrics_name="Helvetica-BoldOblique", draw_name="hebi"),
}

# --- Font Management ---
registered_fonts = set()


def register_font(font_name: str, font_path: str) -> str:
    """Registers a TTF font with ReportLab if not already registered."""
    if font_name in registered_fonts:
        return font_name
    if not os.path.exists(font_path):
        raise ConfigurationError(f"Font file not found at '{font_path}'")
    try:
        pdfmetrics.registerFont(TTFont(font_name, font_path))
    except Exception as e:
        raise ConfigurationError(f"Could not register font '{font_name}' from '{font_path}': {e}") from e
    registered_fonts.add(font_name)
    logger.info("Registered font '%s' from '%s'", font_name, font_path)
    return font_name


class FontRegistry:
    """Output fonts available for drawing, and the target languages they cover.

    The bundled base-14 Helvetica family covers Latin-script languages. An
    optional TrueType font extends coverage to the languages it is declared for.
    """

    def __init__(self, font_path: Optional[str] = None, font_languages: Iterable[str] = ()):
        self.custom_font: Optional[OutputFont] = None
        self.custom_languages = set(font_languages)
        if font_path:
            name = register_font(CUSTOM_FONT_NAME, font_path)
            self.custom_font = OutputFont(metrics_name=name, draw_name=name, font_file=font_path)

    @property
    def supported_languages(self) -> set:
        return set(BUNDLED_FONT_LANGUAGES) | (self.custom_languages if self.custom_font else set())

    def check_language(self, lang: str):
        if lang not in self.supported_languages:
            raise UnsupportedLanguageError(lang, self.supported_languages)

    def select(self, descriptor: FontDescriptor, target_lang: str) -> OutputFont:
        if self.custom_font and target_lang in self.custom_languages:
            return self.custom_font
        return BASE14_FONTS[(descriptor.bold, descriptor.italic)]


class TextFit(BaseModel):
    size: float
    lines: List[str]
    line_height: float
    shrink_steps: int = 0
    clipped: bool = False


def string_width(text: str, font: OutputFont, size: float) -> float:
    return pdfmetrics.stringWidth(text, font.metrics_name, size)


def wrap_text(text: str, font: OutputFont, size: float, max_width: float) -> List[str]:
    """Greedy word wrap; words wider than the line are split between characters."""
    lines: List[str] = []
    current = ""
    for word in text.split():
        candidate = f"{current} {word}" if current else word
        if string_width(candidate, font, size) <= max_width + FIT_EPSILON:
            current = candidate
            continue
        if current:
            lines.append(current)
            current = ""
        # Hard-split a word that cannot fit on a line of its own
        while string_width(word, font, size) > max_width + FIT_EPSILON and len(word) > 1:
            cut = len(word) - 1
            while cut > 1 and string_width(word[:cut], font, size) > max_width + FIT_EPSILON:
                cut -= 1
            lines.append(word[:cut])
            word = word[cut:]
        current = word
    if current or not lines:
        lines.append(current)
    return lines


class LayoutEngine:
    """Composes replacement drawing directives for translated blocks.

    Each directive masks the block's original box and draws the translation
    inside it, shrinking the font from the block's nominal size until the
    wrapped text fits the box.
    """

    def __init__(self, target_lang: str,
                 fonts: Optional[FontRegistry] = None,
                 settings: Optional[FitSettings] = None,
                 color: Optional[TextColor] = None):
        self.fonts = fonts or FontRegistry()
        # Raised here, at configuration time, rather than per block
        self.fonts.check_language(target_lang)
        self.target_lang = target_lang
        self.settings = settings or FitSettings()
        self.color = color or TextColor.from_name("dark_red")

    def lines_available(self, box_height: float, size: float) -> int:
        leading = size * self.settings.line_spacing
        return max(1, int((box_height - size + FIT_EPSILON) // leading) + 1)

    def fit_text(self, text: str, box: BoundingBox, nominal_size: float, font: OutputFont,
                 max_lines: int = 1) -> TextFit:
        """Finds the largest size (at most nominal) at which text fits the box.

        While the text overflows ``max_lines`` lines of the box width, the size
        shrinks by the overflow ratio, capped at ``max_shrink_step`` of the
        current size and floored at ``min_font_size``. Only at the floor does
        the text wrap onto as many lines as the box height holds.

        Args:
            max_lines: Lines allowed before shrinking; a block's source line
                count, so single-line labels stay on one line.

        Raises:
            UnfittableTextError: even the wrapped minimum size overflows; ``err.fit``
                holds the layout clipped to the box height.
        """
        settings = self.settings
        size = min(max(nominal_size, settings.min_font_size), settings.max_font_size)
        steps = 0
        while size > settings.min_font_size + FIT_EPSILON:
            budget = min(max(1, max_lines), self.lines_available(box.height, size))
            lines = wrap_text(text, font, size, box.width)
            if len(lines) <= budget:
                return TextFit(size=size, lines=lines, line_height=size * settings.line_spacing,
                               shrink_steps=steps)

            total_width = string_width(" ".join(text.split()), font, size)
            overflow = (box.width * budget) / total_width if total_width > 0 else 1.0
            factor = min(max(overflow, 1.0 - settings.max_shrink_step), 1.0 - MIN_SHRINK)
            size = max(size * factor, settings.min_font_size)
            steps += 1

        # At the floor: wrap into the full box height, clipping what is left over
        lines = wrap_text(text, font, size, box.width)
        capacity = self.lines_available(box.height, size)
        fit = TextFit(size=size, lines=lines[:capacity], line_height=size * settings.line_spacing,
                      shrink_steps=steps, clipped=len(lines) > capacity)
        if fit.clipped:
            raise UnfittableTextError(fit)
        return fit

    def compose_block(self, block: TextBlock, translated: str) -> DrawDirective:
        font = self.fonts.select(block.font, self.target_lang)
        try:
            fit = self.fit_text(translated, block.bbox, block.font.size, font, max_lines=block.line_count)
        except UnfittableTextError as e:
            fit = e.fit
            logger.warning("Page %d block %d: text clipped to %d lines at %.1fpt (%s)",
                           block.page_index, block.reading_order_index, len(fit.lines), fit.size, e)
        return self._directive(block, fit, font)

    def compose_failure(self, block: TextBlock) -> DrawDirective:
        """Directive showing the unavailable marker in place of a failed block."""
        font = BASE14_FONTS[(False, True)]
        try:
            fit = self.fit_text(UNAVAILABLE_MARKER, block.bbox, block.font.size, font)
        except UnfittableTextError as e:
            fit = e.fit
        return self._directive(block, fit, font, marker=True)

    def compose_page(self, blocks: List[TextBlock], translations: List[Optional[str]]) -> List[DrawDirective]:
        """One directive per block; None translations get the unavailable marker."""
        if len(blocks) != len(translations):
            raise ProtocolError(f"{len(translations)} translations for {len(blocks)} blocks")
        return [
            self.compose_block(block, text) if text is not None else self.compose_failure(block)
            for block, text in zip(blocks, translations)
        ]

    def _directive(self, block: TextBlock, fit: TextFit, font: OutputFont, marker: bool = False) -> DrawDirective:
        ascent, _descent = pdfmetrics.getAscentDescent(font.metrics_name, fit.size)
        top = block.bbox.y + ascent
        if len(fit.lines) == 1:
            # A single line keeps the source baseline so it stays aligned with its neighbours
            first_baseline = min(max(block.baseline, top), block.bbox.y1)
        else:
            first_baseline = top
        lines = [
            TextLine(text=text, x=block.bbox.x, y=first_baseline + i * fit.line_height)
            for i, text in enumerate(fit.lines)
        ]
        return DrawDirective(
            block_index=block.reading_order_index,
            mask=block.bbox.expanded(self.settings.mask_padding),
            text_box=block.bbox,
            lines=lines,
            font=font,
            font_size=fit.size,
            line_height=fit.line_height,
            color=self.color,
            shrink_steps=fit.shrink_steps,
            clipped=fit.clipped,
            marker=marker,
        )
