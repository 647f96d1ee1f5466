import logging
import re
from typing import List, Optional

from ..config import MergeSettings
from ..errors import ExtractionError
from ..models import BoundingBox, FontDescriptor, GlyphRun, RenderedPage, TextBlock

logger = logging.getLogger(__name__)

# Runs whose vertical overlap exceeds this share of the smaller height sit on the same line
SAME_LINE_OVERLAP = 0.5
# Horizontal gap (relative to font size) above which two runs on a line get a space between them
WORD_SPACE_FACTOR = 0.15
# Nominal sizes outside this range are treated as measurement noise
MIN_NOMINAL_SIZE = 4.0
MAX_NOMINAL_SIZE = 72.0


class _OpenBlock:
    """Accumulates runs while a page is being grouped."""

    def __init__(self, run: GlyphRun, font: FontDescriptor, text: str):
        self.font = font
        self.min_size = font.size
        self.bbox = run.bbox
        self.lines: List[BoundingBox] = [run.bbox]
        self.baseline = run.baseline if run.baseline is not None else _estimate_baseline(run.bbox)
        self.text = text
        self.trailing_space = run.text[-1:].isspace()

    @property
    def last_line(self) -> BoundingBox:
        return self.lines[-1]

    def append_to_line(self, run: GlyphRun, font: FontDescriptor, text: str, separator: str):
        self.text += separator + text
        self.lines[-1] = self.last_line.union(run.bbox)
        self.bbox = self.bbox.union(run.bbox)
        self.min_size = min(self.min_size, font.size)
        self.trailing_space = run.text[-1:].isspace()

    def start_line(self, run: GlyphRun, font: FontDescriptor, text: str):
        self.text = _join_lines(self.text, text)
        self.lines.append(run.bbox)
        self.bbox = self.bbox.union(run.bbox)
        self.min_size = min(self.min_size, font.size)
        self.trailing_space = run.text[-1:].isspace()


def _estimate_baseline(bbox: BoundingBox) -> float:
    # Descenders take roughly a fifth of the line box
    return bbox.y1 - bbox.height * 0.2


def _join_lines(previous: str, following: str) -> str:
    """Joins two visual lines, removing a trailing word-splitting hyphen."""
    previous = previous.rstrip()
    if previous.endswith("-") and len(previous) > 1 and previous[-2].isalpha():
        return previous[:-1] + following
    return previous + " " + following


def _normalize(text: str) -> str:
    return re.sub(r"\s+", " ", text).strip()


class TextBlockMerger:
    """Groups a page's glyph runs into paragraph-like text blocks in reading order.

    Runs merge into one block when they continue the block's last line, or when
    they start a new line whose vertical gap is below a line-height-derived
    threshold and whose horizontal range overlaps or touches the block. Merging
    is a pure transform of the rendered page.
    """

    def __init__(self, settings: Optional[MergeSettings] = None):
        self.settings = settings or MergeSettings()

    def merge(self, page: RenderedPage) -> List[TextBlock]:
        """Extracts the ordered text blocks of one rendered page.

        Raises:
            ExtractionError: a run references a font missing from the page's font table.
        """
        self._validate(page)

        runs = [run for run in page.runs if self._is_visible(run, page)]
        runs.sort(key=lambda r: (r.bbox.y, r.bbox.x))

        open_blocks: List[_OpenBlock] = []
        for run in runs:
            font = page.fonts[run.font_ref]
            text = _normalize(run.text)
            # Most recently opened blocks are the likeliest neighbours
            for block in reversed(open_blocks):
                if self._joins_line(block, run):
                    block.append_to_line(run, font, text, self._word_separator(block, run, font))
                    break
                if self._continues_block(block, run, font):
                    block.start_line(run, font, text)
                    break
            else:
                open_blocks.append(_OpenBlock(run, font, text))

        open_blocks.sort(key=lambda b: (b.bbox.y, b.bbox.x))
        blocks = []
        for block in open_blocks:
            text = _normalize(block.text)
            if not text:
                continue
            size = min(max(block.min_size, MIN_NOMINAL_SIZE), MAX_NOMINAL_SIZE)
            blocks.append(TextBlock(
                page_index=page.page_index,
                reading_order_index=len(blocks),
                bbox=block.bbox,
                baseline=block.baseline,
                line_height=sum(line.height for line in block.lines) / len(block.lines),
                line_count=len(block.lines),
                font=block.font.model_copy(update={"size": size}),
                source_text=text,
            ))

        logger.debug("Page %d: grouped %d runs into %d blocks", page.page_index, len(runs), len(blocks))
        return blocks

    def _validate(self, page: RenderedPage):
        for i, run in enumerate(page.runs):
            if run.font_ref not in page.fonts:
                raise ExtractionError(page.page_index, f"run {i} references undefined font '{run.font_ref}'")

    def _is_visible(self, run: GlyphRun, page: RenderedPage) -> bool:
        if not run.text.strip():
            return False
        if run.bbox.area <= 0:
            return False
        return run.bbox.intersects(page.bounds)

    def _joins_line(self, block: _OpenBlock, run: GlyphRun) -> bool:
        last = block.last_line
        min_height = min(last.height, run.bbox.height)
        if last.vertical_overlap(run.bbox) < min_height * SAME_LINE_OVERLAP:
            return False
        gap = run.bbox.x - last.x1
        line_height = max(last.height, run.bbox.height)
        return -min_height <= gap <= line_height * self.settings.contiguity_factor

    def _continues_block(self, block: _OpenBlock, run: GlyphRun, font: FontDescriptor) -> bool:
        last = block.last_line
        line_height = max(last.height, run.bbox.height)
        vertical_gap = run.bbox.y - last.y1
        if not (-line_height * 0.5 < vertical_gap < line_height * self.settings.gap_factor):
            return False

        # Overlapping or contiguous horizontal ranges
        if block.bbox.horizontal_overlap(run.bbox) < -line_height * self.settings.contiguity_factor:
            return False

        # Headings and captions usually change size or weight
        if abs(font.size - block.font.size) > block.font.size * self.settings.size_tolerance:
            return False
        return font.bold == block.font.bold

    def _word_separator(self, block: _OpenBlock, run: GlyphRun, font: FontDescriptor) -> str:
        if block.trailing_space or run.text[:1].isspace():
            return " "
        gap = run.bbox.x - block.last_line.x1
        return " " if gap > font.size * WORD_SPACE_FACTOR else ""
