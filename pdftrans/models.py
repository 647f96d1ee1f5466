import hashlib
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field


class BoundingBox(BaseModel):
    """Rectangle in page space: top-left origin, y grows downward, PDF points."""
    model_config = ConfigDict(frozen=True)

    x: float
    y: float
    width: float = Field(..., ge=0)
    height: float = Field(..., ge=0)

    @classmethod
    def from_corners(cls, x0: float, y0: float, x1: float, y1: float) -> "BoundingBox":
        return cls(x=x0, y=y0, width=max(0.0, x1 - x0), height=max(0.0, y1 - y0))

    @property
    def x1(self) -> float:
        return self.x + self.width

    @property
    def y1(self) -> float:
        return self.y + self.height

    @property
    def area(self) -> float:
        return self.width * self.height

    def union(self, other: "BoundingBox") -> "BoundingBox":
        return BoundingBox.from_corners(
            min(self.x, other.x), min(self.y, other.y),
            max(self.x1, other.x1), max(self.y1, other.y1),
        )

    def intersects(self, other: "BoundingBox") -> bool:
        return self.x < other.x1 and other.x < self.x1 and self.y < other.y1 and other.y < self.y1

    def horizontal_overlap(self, other: "BoundingBox") -> float:
        """Overlap of the x ranges; negative values are the gap between them."""
        return min(self.x1, other.x1) - max(self.x, other.x)

    def vertical_overlap(self, other: "BoundingBox") -> float:
        return min(self.y1, other.y1) - max(self.y, other.y)

    def expanded(self, margin: float) -> "BoundingBox":
        return BoundingBox.from_corners(self.x - margin, self.y - margin, self.x1 + margin, self.y1 + margin)


class FontDescriptor(BaseModel):
    """Font of a glyph run as reported by the rendering collaborator."""
    model_config = ConfigDict(frozen=True)

    name: str
    family: str = ""
    bold: bool = False
    italic: bool = False
    size: float = Field(..., gt=0)


class GlyphRun(BaseModel):
    """A run of glyphs sharing one font, in page coordinates."""
    text: str
    bbox: BoundingBox
    font_ref: str
    baseline: Optional[float] = None  # y of the glyph origin, if known


class RenderedPage(BaseModel):
    """Glyph stream of one page, the input to block extraction."""
    page_index: int = Field(..., ge=0)
    width: float = Field(..., gt=0)
    height: float = Field(..., gt=0)
    fonts: Dict[str, FontDescriptor] = Field(default_factory=dict)
    runs: List[GlyphRun] = Field(default_factory=list)

    @property
    def bounds(self) -> BoundingBox:
        return BoundingBox(x=0, y=0, width=self.width, height=self.height)


class TextBlock(BaseModel):
    """Paragraph-like unit of translatable content on one page."""
    model_config = ConfigDict(frozen=True)

    page_index: int
    reading_order_index: int
    bbox: BoundingBox
    baseline: float
    line_height: float
    line_count: int = 1
    font: FontDescriptor
    source_text: str = Field(..., min_length=1)

    @property
    def content_hash(self) -> str:
        digest = hashlib.sha256()
        digest.update(str(self.reading_order_index).encode("utf-8"))
        digest.update(b"\0")
        digest.update(self.source_text.encode("utf-8"))
        return digest.hexdigest()


class CacheKey(BaseModel):
    """Deterministic identity of one block translation."""
    model_config = ConfigDict(frozen=True)

    document_hash: str
    page_index: int
    block_content_hash: str
    source_lang: str
    target_lang: str
    model: str

    def encode(self) -> str:
        # NUL separators keep ("a", "bc") and ("ab", "c") apart
        combined = "\0".join([
            self.document_hash,
            str(self.page_index),
            self.block_content_hash,
            self.source_lang,
            self.target_lang,
            self.model.lower(),
        ])
        return hashlib.sha256(combined.encode("utf-8")).hexdigest()

    def __str__(self) -> str:
        return self.encode()


class CacheEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    key: str
    translated_text: str
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class BlockStatus(str, Enum):
    CACHED = "cached"
    TRANSLATED = "translated"
    FAILED = "failed"


class BlockOutcome(BaseModel):
    status: BlockStatus
    error: Optional[str] = None


class PageState(str, Enum):
    REQUESTED = "requested"
    EXTRACTING = "extracting"
    CACHE_HIT = "cache_hit"
    TRANSLATING = "translating"
    COMPOSING = "composing"
    DONE = "done"
    FAILED = "failed"
    CANCELLED = "cancelled"


class TextColor(BaseModel):
    model_config = ConfigDict(frozen=True)

    r: float = Field(..., ge=0, le=1)
    g: float = Field(..., ge=0, le=1)
    b: float = Field(..., ge=0, le=1)

    @classmethod
    def from_name(cls, name: str) -> Optional["TextColor"]:
        key = name.strip().lower().replace("-", "_")
        rgb = _NAMED_COLORS.get(key) or _NAMED_COLORS.get(key.replace("_", ""))
        return cls(r=rgb[0], g=rgb[1], b=rgb[2]) if rgb else None

    def as_tuple(self) -> Tuple[float, float, float]:
        return (self.r, self.g, self.b)


_NAMED_COLORS = {
    "dark_red": (0.8, 0.0, 0.0),
    "darkred": (0.8, 0.0, 0.0),
    "black": (0.0, 0.0, 0.0),
    "blue": (0.0, 0.0, 0.8),
    "dark_green": (0.0, 0.5, 0.0),
    "darkgreen": (0.0, 0.5, 0.0),
    "purple": (0.5, 0.0, 0.5),
}


class OutputFont(BaseModel):
    """A font the composer can measure (reportlab) and the renderer can draw (PyMuPDF)."""
    model_config = ConfigDict(frozen=True)

    metrics_name: str          # name registered with reportlab pdfmetrics
    draw_name: str             # PyMuPDF fontname
    font_file: Optional[str] = None


class TextLine(BaseModel):
    text: str
    x: float
    y: float  # baseline


class DrawDirective(BaseModel):
    """Replacement instructions for one block: mask the source glyphs, draw the new lines."""
    block_index: int
    mask: BoundingBox
    text_box: BoundingBox
    lines: List[TextLine]
    font: OutputFont
    font_size: float
    line_height: float
    color: TextColor
    shrink_steps: int = 0
    clipped: bool = False
    marker: bool = False  # the "translation unavailable" placeholder


class PageResult(BaseModel):
    """Orchestrator output for one page."""
    page_index: int
    state: PageState = PageState.REQUESTED
    blocks: List[TextBlock] = Field(default_factory=list)
    translations: List[Optional[str]] = Field(default_factory=list)
    outcomes: List[BlockOutcome] = Field(default_factory=list)
    directives: List[DrawDirective] = Field(default_factory=list)
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.state == PageState.DONE

    @property
    def cached_count(self) -> int:
        return sum(1 for o in self.outcomes if o.status == BlockStatus.CACHED)

    @property
    def failed_count(self) -> int:
        return sum(1 for o in self.outcomes if o.status == BlockStatus.FAILED)

    @property
    def clipped_count(self) -> int:
        return sum(1 for d in self.directives if d.clipped)
