import threading
from typing import Dict, List

import pytest

from pdftrans.core.cache import MemoryStore, TranslationCache
from pdftrans.core.translator import Translator
from pdftrans.models import BoundingBox, FontDescriptor, GlyphRun, RenderedPage


class FakeTranslator(Translator):
    """Dictionary-backed translator that counts its calls."""

    name = "fake"

    def __init__(self, table: Dict[str, str] = None, model: str = "fake-model", delay: float = 0.0):
        self.table = table or {}
        self._model = model
        self.delay = delay
        self.calls: List[List[str]] = []
        self._lock = threading.Lock()

    @property
    def model(self) -> str:
        return self._model

    @property
    def call_count(self) -> int:
        return len(self.calls)

    def translate(self, texts, source_lang, target_lang):
        with self._lock:
            self.calls.append(list(texts))
        if self.delay:
            threading.Event().wait(self.delay)
        return [self.table.get(text, text.upper()) for text in texts]


class FakeDocument:
    """In-memory document serving pre-built rendered pages."""

    def __init__(self, pages: List[RenderedPage], content_hash: str = "doc-hash"):
        self.pages = pages
        self.content_hash = content_hash
        self.page_count = len(pages)

    def render_page(self, page_index: int) -> RenderedPage:
        return self.pages[page_index]


FONT_REF = "Helvetica|12.00|0"


def make_page(lines, page_index: int = 0, size: float = 12.0, width: float = 612, height: float = 792,
              x: float = 72, char_width: float = 6.0) -> RenderedPage:
    """Builds a rendered page with one run per (text, y) line."""
    runs = [
        GlyphRun(
            text=text,
            bbox=BoundingBox(x=x, y=y, width=len(text) * char_width, height=size * 1.2),
            font_ref=FONT_REF,
            baseline=y + size,
        )
        for text, y in lines
    ]
    return RenderedPage(
        page_index=page_index,
        width=width,
        height=height,
        fonts={FONT_REF: FontDescriptor(name="Helvetica", family="Helvetica", size=size)},
        runs=runs,
    )


@pytest.fixture
def fake_translator():
    return FakeTranslator({"Hello": "Bonjour", "World": "Monde"})


@pytest.fixture
def memory_cache():
    return TranslationCache(MemoryStore())


@pytest.fixture
def hello_world_document():
    """One page with two well-separated single-line blocks."""
    return FakeDocument([make_page([("Hello", 100), ("World", 300)])])
