# tests/test_controller.py
"""Tests for pdftrans.controller and the command line entry point"""

from unittest.mock import MagicMock, patch

import fitz  # PyMuPDF
import pytest

import main
from pdftrans.controller import BatchController
from pdftrans.core.cache import MemoryStore, TranslationCache
from pdftrans.core.layout_engine import LayoutEngine
from pdftrans.core.page_pipeline import PagePipeline

from conftest import FakeTranslator


def _write_pdf(path, texts):
    doc = fitz.open()
    for text in texts:
        page = doc.new_page(width=612, height=792)
        page.insert_text((72, 100), text, fontsize=12)
    doc.save(str(path))
    doc.close()
    return path


@pytest.fixture
def translator():
    return FakeTranslator({"Hello": "Bonjour", "World": "Monde"})


@pytest.fixture
def pipeline(translator):
    with PagePipeline(translator, TranslationCache(MemoryStore()), LayoutEngine("fr"),
                      source_lang="en", target_lang="fr") as pipeline:
        yield pipeline


class TestBatchController:
    def test_process_file_writes_translated_pdf(self, pipeline, tmp_path):
        source = _write_pdf(tmp_path / "doc.pdf", ["Hello", "World"])
        progress = []
        controller = BatchController(pipeline, on_progress=lambda c, t, m: progress.append((c, t)))

        report = controller.process_file(source, tmp_path / "out")

        assert report.ok
        assert report.pages_processed == 2
        assert report.output_path == str(tmp_path / "out" / "doc_fr.pdf")
        assert progress[0] == (0, 3)
        assert progress[-1] == (3, 3)

        doc = fitz.open(report.output_path)
        try:
            assert "Bonjour" in doc.load_page(0).get_text()
            assert "Monde" in doc.load_page(1).get_text()
        finally:
            doc.close()

    def test_page_selection(self, pipeline, translator, tmp_path):
        source = _write_pdf(tmp_path / "doc.pdf", ["Hello", "World"])

        report = BatchController(pipeline).process_file(source, tmp_path, pages="2")

        assert report.pages_processed == 1
        assert translator.calls == [["World"]]

    def test_bad_page_selection_is_a_file_error(self, pipeline, tmp_path):
        source = _write_pdf(tmp_path / "doc.pdf", ["Hello"])

        report = BatchController(pipeline).process_file(source, tmp_path, pages="9")

        assert not report.ok
        assert "outside" in report.error
        assert report.output_path is None

    def test_batch_continues_past_failures(self, pipeline, tmp_path):
        good = _write_pdf(tmp_path / "good.pdf", ["Hello"])
        missing = tmp_path / "missing.pdf"

        summary = BatchController(pipeline).process_files([missing, good], tmp_path / "out")

        assert [r.ok for r in summary.files] == [False, True]
        assert not summary.ok
        assert "missing.pdf: FAILED" in summary.describe()

    def test_stop_on_error_ends_the_batch(self, pipeline, tmp_path):
        good = _write_pdf(tmp_path / "good.pdf", ["Hello"])

        summary = BatchController(pipeline).process_files([tmp_path / "missing.pdf", good], tmp_path,
                                                          stop_on_error=True)

        assert len(summary.files) == 1
        assert summary.stopped_early

    def test_second_run_uses_cache(self, pipeline, translator, tmp_path):
        source = _write_pdf(tmp_path / "doc.pdf", ["Hello"])
        controller = BatchController(pipeline)

        controller.process_file(source, tmp_path / "a")
        controller.process_file(source, tmp_path / "b")

        assert translator.call_count == 1


class TestMain:
    def test_configuration_error_exits_1(self, tmp_path, capsys):
        code = main.main([str(tmp_path / "x.pdf"), "--target", "ja"])

        assert code == 1
        assert "Configuration Error" in capsys.readouterr().out

    def test_runs_batch_and_reports(self, tmp_path, translator, capsys):
        source = _write_pdf(tmp_path / "doc.pdf", ["Hello"])
        pipeline = PagePipeline(translator, TranslationCache(MemoryStore()), LayoutEngine("fr"),
                                source_lang="en", target_lang="fr")

        with patch.object(main.PagePipeline, "from_settings", return_value=pipeline) as from_settings:
            code = main.main([str(source), "--target", "fr", "--output-dir", str(tmp_path / "out"),
                              "--workers", "2", "--clear-cache"])

        assert code == 0
        assert from_settings.call_args.kwargs == {"max_workers": 2, "clear_cache": True}
        assert (tmp_path / "out" / "doc_fr.pdf").exists()
        assert "doc.pdf: 1 pages, ok" in capsys.readouterr().out

    def test_failed_file_exits_1(self, tmp_path, translator):
        pipeline = PagePipeline(translator, TranslationCache(MemoryStore()), LayoutEngine("fr"),
                                source_lang="en", target_lang="fr")

        with patch.object(main.PagePipeline, "from_settings", return_value=pipeline):
            code = main.main([str(tmp_path / "missing.pdf"), "--target", "fr"])

        assert code == 1

    def test_prune_days(self, tmp_path, translator):
        cache = MagicMock()
        pipeline = PagePipeline(translator, cache, LayoutEngine("fr"), source_lang="en", target_lang="fr")

        with patch.object(main.PagePipeline, "from_settings", return_value=pipeline):
            main.main([str(tmp_path / "missing.pdf"), "--prune-days", "30"])

        assert cache.prune.call_args.args[0].days == 30

    def test_cache_is_closed_when_the_batch_raises(self, tmp_path, translator):
        store = MagicMock()
        pipeline = PagePipeline(translator, TranslationCache(store), LayoutEngine("fr"),
                                source_lang="en", target_lang="fr")

        with patch.object(main.PagePipeline, "from_settings", return_value=pipeline), \
                patch.object(main.BatchController, "process_files", side_effect=RuntimeError("boom")):
            with pytest.raises(RuntimeError):
                main.main([str(tmp_path / "doc.pdf"), "--target", "fr"])

        store.close.assert_called_once_with()
