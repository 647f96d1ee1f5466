# tests/test_layout_engine.py
"""Tests for pdftrans.core.layout_engine - fitting translated text into source boxes"""

import pytest

from pdftrans.config import FitSettings
from pdftrans.core.layout_engine import (
    BASE14_FONTS,
    UNAVAILABLE_MARKER,
    FontRegistry,
    LayoutEngine,
    string_width,
    wrap_text,
)
from pdftrans.errors import ConfigurationError, ProtocolError, UnfittableTextError, UnsupportedLanguageError
from pdftrans.models import BoundingBox, FontDescriptor, TextBlock, TextColor

HELVETICA = BASE14_FONTS[(False, False)]


def _block(text="Hello", x=72, y=100, width=200, height=14.4, size=12.0, index=0, bold=False, line_count=1):
    return TextBlock(
        page_index=0,
        reading_order_index=index,
        bbox=BoundingBox(x=x, y=y, width=width, height=height),
        baseline=y + size,
        line_height=height,
        line_count=line_count,
        font=FontDescriptor(name="Helvetica", bold=bold, size=size),
        source_text=text,
    )


@pytest.fixture
def engine():
    return LayoutEngine("en", settings=FitSettings(max_shrink_step=0.1, min_font_size=5.0))


class TestWrapText:
    def test_short_text_is_one_line(self):
        assert wrap_text("Hello world", HELVETICA, 12, 500) == ["Hello world"]

    def test_wraps_at_word_boundaries(self):
        width = string_width("Hello world", HELVETICA, 12) - 1

        assert wrap_text("Hello world", HELVETICA, 12, width) == ["Hello", "world"]

    def test_overlong_word_is_split(self):
        lines = wrap_text("Supercalifragilistic", HELVETICA, 12, 30)

        assert len(lines) > 1
        assert "".join(lines) == "Supercalifragilistic"
        assert all(string_width(line, HELVETICA, 12) <= 30 for line in lines)


class TestFitText:
    """Font shrinking"""

    def test_fitting_text_keeps_nominal_size(self, engine):
        fit = engine.fit_text("Bonjour", BoundingBox(x=0, y=0, width=200, height=14.4), 12.0, HELVETICA)

        assert fit.size == 12.0
        assert fit.shrink_steps == 0
        assert fit.lines == ["Bonjour"]
        assert not fit.clipped

    def test_overflow_by_one_step_fits_after_exactly_one_shrink(self, engine):
        # Text measures box_width / (1 - max_shrink_step) at the nominal size
        box_width = string_width("Hello", HELVETICA, 10.0) * 0.9
        box = BoundingBox(x=0, y=0, width=box_width, height=10.0)

        fit = engine.fit_text("Hello", box, 10.0, HELVETICA)

        assert fit.shrink_steps == 1
        assert fit.size == pytest.approx(9.0)
        assert fit.lines == ["Hello"]

    def test_each_step_is_bounded(self, engine):
        # Far too wide: the size may shrink by at most 10% per step
        box = BoundingBox(x=0, y=0, width=100, height=12)

        fit = engine.fit_text("A considerably longer sentence", box, 12.0, HELVETICA)

        assert fit.size >= 12.0 * 0.9 ** fit.shrink_steps - 1e-6
        assert fit.shrink_steps > 1
        assert not fit.clipped
        assert fit.lines == ["A considerably longer sentence"]

    def test_tall_box_shrinks_before_wrapping(self, engine):
        box_width = string_width("Bonjour tout le monde", HELVETICA, 12.0) * 0.9
        box = BoundingBox(x=0, y=0, width=box_width, height=36)

        fit = engine.fit_text("Bonjour tout le monde", box, 12.0, HELVETICA)

        assert fit.shrink_steps == 1
        assert fit.size == pytest.approx(10.8)
        assert fit.lines == ["Bonjour tout le monde"]

    def test_multi_line_source_may_wrap_at_nominal_size(self, engine):
        box = BoundingBox(x=0, y=0, width=60, height=60)

        fit = engine.fit_text("one two three four", box, 10.0, HELVETICA, max_lines=3)

        assert len(fit.lines) > 1
        assert fit.size == 10.0
        assert fit.shrink_steps == 0

    def test_wraps_only_at_minimum_size(self, engine):
        # Wider than the box on one line even at 5pt, but fits once wrapped
        box = BoundingBox(x=0, y=0, width=30, height=60)

        fit = engine.fit_text("one two three four", box, 10.0, HELVETICA)

        assert fit.size == pytest.approx(5.0)
        assert len(fit.lines) > 1
        assert not fit.clipped
        assert " ".join(fit.lines) == "one two three four"

    def test_unfittable_text_is_clipped_at_minimum_size(self, engine):
        box = BoundingBox(x=0, y=0, width=20, height=6)

        with pytest.raises(UnfittableTextError) as exc_info:
            engine.fit_text("This will never fit in such a tiny box", box, 12.0, HELVETICA)

        fit = exc_info.value.fit
        assert fit.clipped
        assert fit.size == pytest.approx(5.0)
        assert len(fit.lines) == engine.lines_available(box.height, fit.size)

    def test_lines_available(self, engine):
        assert engine.lines_available(10, 10) == 1
        assert engine.lines_available(5, 10) == 1
        # 10 + 12 = 22 points for two lines at 1.2 leading
        assert engine.lines_available(22, 10) == 2


class TestComposeBlock:
    def test_directive_matches_block_geometry(self, engine):
        block = _block("Hello", x=72, y=100, width=200)

        directive = engine.compose_block(block, "Bonjour")

        assert directive.text_box == block.bbox
        assert directive.mask == block.bbox.expanded(engine.settings.mask_padding)
        assert [line.text for line in directive.lines] == ["Bonjour"]
        assert directive.lines[0].x == 72
        # Single line keeps the source baseline
        assert directive.lines[0].y == pytest.approx(block.baseline)
        assert directive.font_size == 12.0
        assert not directive.clipped

    def test_unfittable_block_is_clipped_not_raised(self, engine):
        block = _block("Hi", width=15, height=6, size=12)

        directive = engine.compose_block(block, "Une traduction beaucoup trop longue pour cette boite")

        assert directive.clipped
        assert directive.font_size == pytest.approx(5.0)

    def test_paragraph_keeps_its_line_count_before_shrinking(self, engine):
        block = _block("Deux lignes", width=60, height=26.4, size=10, line_count=2)

        directive = engine.compose_block(block, "one two three four")

        assert directive.font_size == 10
        assert len(directive.lines) == 2
        assert directive.lines[1].y - directive.lines[0].y == pytest.approx(12.0)

    def test_single_line_label_shrinks_instead_of_wrapping(self, engine):
        block = _block("Deux lignes", width=60, height=26.4, size=10, line_count=1)

        directive = engine.compose_block(block, "one two three four")

        assert directive.font_size < 10
        assert len(directive.lines) == 1

    def test_bold_block_uses_bold_font(self, engine):
        directive = engine.compose_block(_block(bold=True), "Titre")

        assert directive.font.metrics_name == "Helvetica-Bold"

    def test_color_is_applied(self):
        blue = TextColor.from_name("blue")
        engine = LayoutEngine("fr", color=blue)

        assert engine.compose_block(_block(), "Bonjour").color == blue


class TestComposePage:
    def test_one_directive_per_block_in_order(self, engine):
        blocks = [_block("Hello", y=100, index=0), _block("World", y=300, index=1)]

        directives = engine.compose_page(blocks, ["Bonjour", "Monde"])

        assert [d.block_index for d in directives] == [0, 1]
        assert [d.text_box for d in directives] == [b.bbox for b in blocks]
        assert [d.lines[0].text for d in directives] == ["Bonjour", "Monde"]

    def test_failed_block_gets_unavailable_marker(self, engine):
        blocks = [_block("Hello", width=300, index=0), _block("World", y=300, width=300, index=1)]

        directives = engine.compose_page(blocks, ["Bonjour", None])

        assert not directives[0].marker
        assert directives[1].marker
        assert " ".join(line.text for line in directives[1].lines) == UNAVAILABLE_MARKER
        assert directives[1].mask == blocks[1].bbox.expanded(engine.settings.mask_padding)

    def test_misaligned_translations_raise(self, engine):
        with pytest.raises(ProtocolError):
            engine.compose_page([_block()], ["a", "b"])


class TestFonts:
    def test_unsupported_target_language_is_rejected_up_front(self):
        with pytest.raises(UnsupportedLanguageError) as exc_info:
            LayoutEngine("ja")

        assert exc_info.value.lang == "ja"
        assert "en" in exc_info.value.supported

    def test_missing_font_file_is_a_configuration_error(self, tmp_path):
        with pytest.raises(ConfigurationError):
            FontRegistry(str(tmp_path / "missing.ttf"), ["ja"])

    def test_bundled_languages(self):
        registry = FontRegistry()

        assert {"en", "fr", "de"} <= registry.supported_languages
        assert registry.select(FontDescriptor(name="x", italic=True, size=10), "fr").draw_name == "heit"
