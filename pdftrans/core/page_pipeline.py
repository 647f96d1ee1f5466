import logging
import threading
from concurrent.futures import CancelledError, Future, ThreadPoolExecutor
from typing import List, Optional, Protocol, Sequence

from ..config import Settings
from ..errors import DocumentError, ExtractionError, PageCancelledError, ProtocolError
from ..models import BlockOutcome, BlockStatus, CacheKey, PageResult, PageState, RenderedPage, TextBlock
from .cache import LookupSource, TranslationCache, open_store
from .layout_engine import FontRegistry, LayoutEngine
from .text_merger import TextBlockMerger
from .translator import Translator, create_translator

logger = logging.getLogger(__name__)


class Document(Protocol):
    """What the pipeline needs from a loaded document."""

    content_hash: str
    page_count: int

    def render_page(self, page_index: int) -> RenderedPage:
        ...


class PageJob:
    """Handle on a page request running in the pipeline's worker pool."""

    def __init__(self, page_index: int, future: Future, cancel_event: threading.Event):
        self.page_index = page_index
        self._future = future
        self._cancel_event = cancel_event

    def cancel(self):
        """Abandons the request.

        A translation already in flight still finishes and fills the cache; its
        result is just not delivered to this job.
        """
        self._cancel_event.set()
        self._future.cancel()

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def done(self) -> bool:
        return self._future.done()

    def result(self, timeout: Optional[float] = None) -> PageResult:
        if self._cancel_event.is_set():
            raise PageCancelledError(self.page_index)
        try:
            return self._future.result(timeout)
        except CancelledError:
            raise PageCancelledError(self.page_index) from None


class PagePipeline:
    """Per-page extract -> cache-or-translate -> compose.

    Page requests run concurrently; all of them share one cache and one permit
    pool that bounds simultaneous calls to the translation service. Calls beyond
    the bound wait for a permit.
    """

    def __init__(self, translator: Translator, cache: TranslationCache, composer: LayoutEngine,
                 merger: Optional[TextBlockMerger] = None,
                 source_lang: str = "auto", target_lang: str = "en",
                 max_concurrent_requests: int = 4, max_workers: int = 4):
        self.translator = translator
        self.cache = cache
        self.composer = composer
        self.merger = merger or TextBlockMerger()
        self.source_lang = source_lang
        self.target_lang = target_lang
        self.max_workers = max_workers
        self._permits = threading.BoundedSemaphore(max_concurrent_requests)
        self._executor: Optional[ThreadPoolExecutor] = None
        self._executor_lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings: Settings, translator: Optional[Translator] = None,
                      cache: Optional[TranslationCache] = None, max_workers: int = 4,
                      clear_cache: bool = False) -> "PagePipeline":
        """Wires the pipeline from validated settings."""
        fonts = FontRegistry(settings.font_path, settings.font_languages)
        composer = LayoutEngine(settings.target_lang, fonts, settings.fit, settings.color())
        if cache is None:
            store = open_store(settings.cache_path, settings.memory_cache_entries, settings.memory_cache_ttl)
            cache = TranslationCache(store, clear_on_start=clear_cache)
        return cls(
            translator=translator or create_translator(settings),
            cache=cache,
            composer=composer,
            merger=TextBlockMerger(settings.merge),
            source_lang=settings.source_lang,
            target_lang=settings.target_lang,
            max_concurrent_requests=settings.max_concurrent_requests,
            max_workers=max_workers,
        )

    def cache_key(self, document: Document, block: TextBlock) -> CacheKey:
        return CacheKey(
            document_hash=document.content_hash,
            page_index=block.page_index,
            block_content_hash=block.content_hash,
            source_lang=self.source_lang,
            target_lang=self.target_lang,
            model=self.translator.model,
        )

    def run_page(self, document: Document, page_index: int, force: bool = False,
                 cancel_event: Optional[threading.Event] = None) -> PageResult:
        """Translates one page and returns its blocks, translations and directives.

        Block failures are recorded on the result; only an extraction failure
        fails the page.

        Args:
            force: Re-translate every block even when cached.
            cancel_event: When set, the page stops at the next stage boundary.

        Raises:
            PageCancelledError: cancel_event was set.
        """
        result = PageResult(page_index=page_index)

        self._advance(result, PageState.EXTRACTING, cancel_event)
        try:
            rendered = document.render_page(page_index)
            blocks = self.merger.merge(rendered)
        except (ExtractionError, DocumentError) as e:
            result.state = PageState.FAILED
            result.error = str(e)
            logger.error("Page %d failed: %s", page_index + 1, e)
            return result
        result.blocks = blocks

        if blocks:
            self._resolve_translations(document, result, force, cancel_event)

        self._advance(result, PageState.COMPOSING, cancel_event)
        result.directives = self.composer.compose_page(result.blocks, result.translations)
        result.state = PageState.DONE

        logger.info("Page %d done: %d blocks (%d cached, %d failed, %d clipped)",
                    page_index + 1, len(blocks), result.cached_count, result.failed_count, result.clipped_count)
        return result

    def _resolve_translations(self, document: Document, result: PageResult, force: bool,
                              cancel_event: Optional[threading.Event]):
        blocks = result.blocks
        keys = [self.cache_key(document, block) for block in blocks]
        block_by_key = {key.encode(): block for key, block in zip(keys, blocks)}
        result.state = PageState.CACHE_HIT

        def translate_missing(missing: List[CacheKey]) -> List[str]:
            result.state = PageState.TRANSLATING
            texts = [block_by_key[key.encode()].source_text for key in missing]
            logger.debug("Page %d: translating %d of %d blocks", result.page_index + 1, len(texts), len(blocks))
            with self._permits:
                translations = self.translator.translate(texts, self.source_lang, self.target_lang)
            if len(translations) != len(texts):
                raise ProtocolError(f"translator returned {len(translations)} segments for {len(texts)} blocks")
            return translations

        lookups = self.cache.get_or_compute_many(keys, translate_missing, refresh=force)
        self._check_cancelled(result, cancel_event)

        translations = []
        outcomes = []
        for lookup in lookups:
            if lookup.ok:
                translations.append(lookup.value)
                status = BlockStatus.CACHED if lookup.source == LookupSource.STORE else BlockStatus.TRANSLATED
                outcomes.append(BlockOutcome(status=status))
            else:
                translations.append(None)
                outcomes.append(BlockOutcome(status=BlockStatus.FAILED, error=str(lookup.error)))
        result.translations = translations
        result.outcomes = outcomes

        if result.failed_count:
            first_error = next(o.error for o in outcomes if o.status == BlockStatus.FAILED)
            logger.warning("Page %d: %d blocks could not be translated: %s",
                           result.page_index + 1, result.failed_count, first_error)

    def _advance(self, result: PageResult, state: PageState, cancel_event: Optional[threading.Event]):
        self._check_cancelled(result, cancel_event)
        logger.debug("Page %d: %s -> %s", result.page_index + 1, result.state.value, state.value)
        result.state = state

    def _check_cancelled(self, result: PageResult, cancel_event: Optional[threading.Event]):
        if cancel_event is not None and cancel_event.is_set():
            result.state = PageState.CANCELLED
            logger.info("Page %d request cancelled", result.page_index + 1)
            raise PageCancelledError(result.page_index)

    def _get_executor(self) -> ThreadPoolExecutor:
        with self._executor_lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(max_workers=self.max_workers,
                                                    thread_name_prefix="pdftrans-page")
            return self._executor

    def submit(self, document: Document, page_index: int, force: bool = False) -> PageJob:
        """Runs a page in the worker pool and returns a cancellable handle."""
        cancel_event = threading.Event()
        future = self._get_executor().submit(self.run_page, document, page_index, force, cancel_event)
        return PageJob(page_index, future, cancel_event)

    def translate_pages(self, document: Document, page_indices: Sequence[int],
                        force: bool = False, stop_on_error: bool = False) -> List[PageResult]:
        """Translates pages concurrently; results come back in the order requested.

        With stop_on_error, the first failed page cancels every later page and
        only the results up to and including the failure are returned.
        """
        jobs = [self.submit(document, index, force) for index in page_indices]
        results = []
        for i, job in enumerate(jobs):
            result = job.result()
            results.append(result)
            if stop_on_error and not result.succeeded:
                for pending in jobs[i + 1:]:
                    pending.cancel()
                logger.warning("Stopping after page %d failed", result.page_index + 1)
                break
        return results

    def shutdown(self, wait: bool = True):
        """Stops the page workers and closes the cache store."""
        with self._executor_lock:
            if self._executor is not None:
                self._executor.shutdown(wait=wait)
                self._executor = None
        self.cache.close()

    def __enter__(self) -> "PagePipeline":
        return self

    def __exit__(self, exc_type, exc, tb):
        self.shutdown()
