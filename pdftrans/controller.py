import logging
from pathlib import Path
from typing import Callable, List, Optional, Sequence

from pydantic import BaseModel, Field

from .core.exporter import Exporter
from .core.page_pipeline import PagePipeline
from .core.pdf_loader import PDFLoader, parse_page_range
from .errors import DocumentError

logger = logging.getLogger(__name__)

# current_step, total_steps, status_message
ProgressCallback = Callable[[int, int, str], None]


class PageFailure(BaseModel):
    page: int  # 1-based
    error: str


class FileReport(BaseModel):
    input_path: str
    output_path: Optional[str] = None
    pages_processed: int = 0
    blocks_failed: int = 0
    blocks_clipped: int = 0
    page_failures: List[PageFailure] = Field(default_factory=list)
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None and not self.page_failures


class BatchSummary(BaseModel):
    files: List[FileReport] = Field(default_factory=list)
    stopped_early: bool = False

    @property
    def ok(self) -> bool:
        return all(report.ok for report in self.files) and not self.stopped_early

    @property
    def failed_pages(self) -> int:
        return sum(len(report.page_failures) for report in self.files)

    def describe(self) -> str:
        lines = []
        for report in self.files:
            if report.error:
                lines.append(f"{report.input_path}: FAILED ({report.error})")
                continue
            status = "ok" if report.ok else f"{len(report.page_failures)} page(s) failed"
            lines.append(f"{report.input_path}: {report.pages_processed} pages, {status}"
                         f", {report.blocks_failed} untranslated blocks, {report.blocks_clipped} clipped"
                         f" -> {report.output_path}")
            for failure in report.page_failures:
                lines.append(f"  page {failure.page}: {failure.error}")
        if self.stopped_early:
            lines.append("Stopped on first error.")
        return "\n".join(lines)


class BatchController:
    """Drives whole-file translation: load, translate selected pages, export."""

    def __init__(self, pipeline: PagePipeline,
                 exporter: Optional[Exporter] = None,
                 loader: Optional[PDFLoader] = None,
                 on_progress: Optional[ProgressCallback] = None):
        self.pipeline = pipeline
        self.exporter = exporter or Exporter()
        self.loader = loader or PDFLoader()
        self.on_progress = on_progress

    def _progress(self, current: int, total: int, message: str):
        if self.on_progress:
            self.on_progress(current, total, message)

    def output_path_for(self, pdf_path: Path, output_dir: Path) -> Path:
        return output_dir / f"{pdf_path.stem}_{self.pipeline.target_lang}.pdf"

    def process_file(self, pdf_path, output_dir, pages: Optional[str] = None,
                     force: bool = False, stop_on_error: bool = False) -> FileReport:
        """Translates one PDF and writes it to output_dir.

        Page failures are recorded in the report; the file is still written with
        the failed pages left as in the source.
        """
        pdf_path = Path(pdf_path)
        report = FileReport(input_path=str(pdf_path))
        try:
            document = self.loader.load(pdf_path)
            page_indices = parse_page_range(pages, document.page_count)
        except (DocumentError, ValueError) as e:
            report.error = str(e)
            logger.error("Skipping '%s': %s", pdf_path, e)
            return report

        total_steps = len(page_indices) + 1
        self._progress(0, total_steps, f"Translating {len(page_indices)} pages of {pdf_path.name}...")

        results = []
        for result in self.pipeline.translate_pages(document, page_indices, force=force,
                                                    stop_on_error=stop_on_error):
            results.append(result)
            if not result.succeeded:
                report.page_failures.append(PageFailure(page=result.page_index + 1, error=result.error or "failed"))
            report.blocks_failed += result.failed_count
            report.blocks_clipped += result.clipped_count
            self._progress(len(results), total_steps, f"Page {result.page_index + 1} {result.state.value}")
        report.pages_processed = len(results)

        output_path = self.output_path_for(pdf_path, Path(output_dir))
        self._progress(total_steps - 1, total_steps, f"Saving {output_path}...")
        self.exporter.save_pdf(document, results, output_path)
        report.output_path = str(output_path)
        self._progress(total_steps, total_steps, "Done")
        return report

    def process_files(self, pdf_paths: Sequence, output_dir, pages: Optional[str] = None,
                      force: bool = False, stop_on_error: bool = False) -> BatchSummary:
        """Translates several files, continuing past failures unless stop_on_error."""
        summary = BatchSummary()
        for pdf_path in pdf_paths:
            report = self.process_file(pdf_path, output_dir, pages=pages, force=force,
                                       stop_on_error=stop_on_error)
            summary.files.append(report)
            if stop_on_error and not report.ok:
                summary.stopped_early = True
                break
        return summary
