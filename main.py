import argparse
import logging
import os
import sys
from datetime import timedelta

from pydantic import ValidationError

from pdftrans.config import load_settings, validate_config
from pdftrans.controller import BatchController
from pdftrans.core.page_pipeline import PagePipeline
from pdftrans.errors import PdfTranslateError

logger = logging.getLogger("pdftrans")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Translate PDF documents while preserving their layout.")
    parser.add_argument("inputs", nargs="+", help="PDF files to translate")
    parser.add_argument("-o", "--output-dir", default="translated", help="directory for translated PDFs")
    parser.add_argument("-p", "--pages", help="1-based page selection, e.g. '1-3,5' (default: all)")
    parser.add_argument("-s", "--source", help="source language code, or 'auto'")
    parser.add_argument("-t", "--target", help="target language code")
    parser.add_argument("--clear-cache", action="store_true", help="delete all cached translations first")
    parser.add_argument("--prune-days", type=int, help="delete cached translations older than N days first")
    parser.add_argument("--force", action="store_true", help="re-translate pages even when cached")
    parser.add_argument("--stop-on-error", action="store_true", help="stop at the first failed page or file")
    parser.add_argument("--workers", type=int, default=4, help="pages translated concurrently")
    parser.add_argument("--log-level", default=os.getenv("PDFTRANS_LOG_LEVEL", "INFO"))
    return parser


def main(argv=None) -> int:
    """Batch entry point."""
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=args.log_level.upper(),
                        format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    try:
        settings = load_settings(source_lang=args.source, target_lang=args.target)
    except ValidationError as e:
        print(f"Configuration Error: {e}")
        print("Please check your .env file.")
        return 1

    problems = validate_config(settings)
    if problems:
        for problem in problems:
            print(f"Configuration Error: {problem}")
        print("Please check your .env file.")
        return 1

    try:
        pipeline = PagePipeline.from_settings(settings, max_workers=args.workers, clear_cache=args.clear_cache)
    except PdfTranslateError as e:
        print(f"Configuration Error: {e}")
        return 1

    with pipeline:
        if args.prune_days is not None:
            pipeline.cache.prune(timedelta(days=args.prune_days))

        controller = BatchController(
            pipeline,
            on_progress=lambda current, total, message: logger.info("[%d/%d] %s", current, total, message),
        )
        summary = controller.process_files(args.inputs, args.output_dir, pages=args.pages,
                                           force=args.force, stop_on_error=args.stop_on_error)

    print(summary.describe())
    return 0 if summary.ok else 1


if __name__ == "__main__":
    sys.exit(main())
