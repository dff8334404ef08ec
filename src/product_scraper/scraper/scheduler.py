"""Concurrency-controlled scrape pipeline and the job dispatcher.

:class:`JobScheduler` executes one job end to end:

1. Fetch the start page and read product links and the next-page link with
   the recipe's ``productLinks`` / ``nextPage`` chains.  A start page with no
   product links is treated as a single product page.
2. Cut newly discovered product URLs (up to ``maxProducts``) into batches of
   ``batchSize`` and run each batch through the concurrency gate.  Follow
   ``nextPage`` until ``maxPages`` listing pages were read or the product
   budget is spent.
3. Every request, listing pages included, holds one of ``maxConcurrent``
   slots for the whole job, sleeps the adaptive delay inside the slot, then
   fetches over httpx or through the headless browser pool.
4. After each batch: adjust the delay, report progress, then poll the
   cancellation flag and the skip rate.
5. When the queue is drained the records are deduplicated, rendered to CSV
   off the event loop and handed to the orchestrator.

Per-item failures never abort the job.  Transient errors are retried with
exponential backoff and then counted as ``network`` skips; permanent HTTP
errors and pages without product data are skipped at once.  The job fails
when the skip rate passes ``max_skip_rate``, when nothing was extracted, on
a fatal error (start page unreachable, recipe or browser failure) and when
the job-level time budget runs out.  Failed jobs keep their partial CSVs;
cancelled jobs keep nothing.

:class:`JobDispatcher` runs at most ``max_concurrent_jobs`` schedulers at
once as asyncio tasks.  Jobs waiting for a slot stay ``pending``.
"""

from __future__ import annotations

import asyncio
import logging
import time
from contextlib import AsyncExitStack, asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable

from product_scraper.api.metrics import (
    scrape_fetch_duration_seconds,
    scrape_items_skipped_total,
    scrape_products_total,
)
from product_scraper.config.settings import Settings, get_settings
from product_scraper.core.exceptions import (
    BrowserError,
    InvalidStateError,
    JobTimeoutError,
    NetworkError,
    NotFoundError,
    ParseError,
    RecipeError,
    ScraperError,
)
from product_scraper.core.logging_config import job_id_var
from product_scraper.core.schemas.jobs import Job
from product_scraper.core.schemas.recipes import Recipe
from product_scraper.scraper.config import SKIP_HTTP, SKIP_NETWORK, SKIP_PARSE
from product_scraper.scraper.csv_generator import CsvArtifacts, CsvGenerator
from product_scraper.scraper.extractor import extract_product, parse_listing
from product_scraper.scraper.http_fetcher import (
    FetchResult,
    build_client,
    fetch_url,
    raise_for_transient,
)
from product_scraper.scraper.normalizer import (
    ProductRecord,
    finalize_records,
    normalize_product,
)
from product_scraper.scraper.orchestrator import JobOrchestrator
from product_scraper.scraper.playwright_fetcher import BrowserPool, playwright_available
from product_scraper.scraper.rate_control import AdaptiveDelay, AdaptiveDelayConfig

logger = logging.getLogger(__name__)

STRATEGY_HTTP = "http"
STRATEGY_BROWSER = "browser"


class _CancelRequested(Exception):
    """Raised at a batch boundary once the orchestrator flagged the job."""


@dataclass
class WorkItem:
    """One product URL waiting for extraction.

    ``html`` is set when the page was already fetched during discovery.
    """

    url: str
    position: int
    batch_index: int
    html: str | None = None
    retries: int = 0


class JobRun:
    """Mutable state of one job execution.  Owned by a single scheduler task."""

    def __init__(
        self,
        job: Job,
        recipe: Recipe,
        orchestrator: JobOrchestrator,
        settings: Settings,
        *,
        client_factory: Callable[..., Any],
        browser_factory: Callable[[int], BrowserPool] | None,
    ) -> None:
        self.job = job
        self.recipe = recipe
        self.orchestrator = orchestrator
        self.settings = settings
        self._client_factory = client_factory
        self._browser_factory = browser_factory or BrowserPool
        self._can_escalate = browser_factory is not None or playwright_available()

        options = job.options
        self.max_products = options.max_products or settings.default_max_products
        self.max_pages = options.max_pages or settings.default_max_pages
        self.batch_size = options.batch_size or settings.default_batch_size
        self.max_concurrent = options.max_concurrent or settings.default_max_concurrent
        self.timeout_seconds = (options.timeout or settings.default_timeout_ms) / 1000.0
        self.budget_seconds = float(options.job_timeout or settings.job_timeout_seconds)
        behavior = recipe.behavior
        self.max_retries = (
            behavior.max_retries if behavior.max_retries is not None else settings.max_retries
        )
        self.strategy = STRATEGY_BROWSER if behavior.use_browser else STRATEGY_HTTP

        self.delay = AdaptiveDelay(
            options.delay if options.delay is not None else settings.default_delay_ms,
            AdaptiveDelayConfig(
                min_delay_ms=settings.min_delay_ms,
                max_delay_ms=settings.max_delay_ms,
            ),
        )
        self._gate = asyncio.Semaphore(self.max_concurrent)
        self.in_flight = 0
        self.peak_in_flight = 0

        self.records: list[ProductRecord] = []
        self.seen_urls: set[str] = set()
        self.visited_pages: set[str] = set()
        self.total: int | None = None
        self.processed = 0
        self.skipped = 0
        self.skip_reasons: dict[str, int] = {}
        self.pages_discovered = 0
        self.batches = 0
        self.escalations = 0

        self._client: Any = None
        self._pool: BrowserPool | None = None
        self._pool_lock = asyncio.Lock()
        self._escalation_failed = False

    # ------------------------------------------------------------------
    # Reporting helpers
    # ------------------------------------------------------------------

    @property
    def skip_rate(self) -> float:
        return self.skipped / self.processed if self.processed else 0.0

    def metadata(self) -> dict[str, Any]:
        """Job metadata published with every progress report."""
        return {
            "recipe": self.recipe.name,
            "strategy": self.strategy,
            "pagesDiscovered": self.pages_discovered,
            "skippedItems": self.skipped,
            "skipReasons": dict(self.skip_reasons),
            "productsExtracted": len(self.records),
            "variationsExtracted": sum(len(r.variations) for r in self.records),
            "peakInFlight": self.peak_in_flight,
            "currentDelayMs": round(self.delay.current_ms),
            "browserEscalations": self.escalations,
        }

    def _skip(self, item: WorkItem, reason: str, detail: str) -> None:
        self.skipped += 1
        self.skip_reasons[reason] = self.skip_reasons.get(reason, 0) + 1
        scrape_items_skipped_total.labels(reason=reason).inc()
        logger.info(
            "scraper: job %s skipped %s (%s): %s", self.job.id, item.url, reason, detail
        )

    # ------------------------------------------------------------------
    # Fetching
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def _slot(self) -> AsyncIterator[None]:
        async with self._gate:
            self.in_flight += 1
            self.peak_in_flight = max(self.peak_in_flight, self.in_flight)
            try:
                yield
            finally:
                self.in_flight -= 1

    async def _escalation_pool(self) -> BrowserPool | None:
        """Start the browser pool the first time a JS-only shell is met."""
        if not self._can_escalate or self._escalation_failed:
            return None
        async with self._pool_lock:
            if self._pool is None and not self._escalation_failed:
                try:
                    self._pool = await self._browser_factory(self.settings.browser_pool_size).start()
                except ScraperError as exc:
                    logger.warning(
                        "scraper: job %s browser escalation disabled: %s", self.job.id, exc
                    )
                    self._escalation_failed = True
        return self._pool

    async def _fetch_once(self, url: str) -> FetchResult:
        wait_for = self.recipe.behavior.wait_for_selectors
        if self.strategy == STRATEGY_BROWSER:
            if self._pool is None:
                raise BrowserError("Browser pool is not running")
            return await self._pool.fetch(url, timeout=self.timeout_seconds, wait_for=wait_for)

        result = await fetch_url(url, client=self._client, timeout=self.timeout_seconds)
        if result.ok and result.needs_browser:
            pool = await self._escalation_pool()
            if pool is not None:
                self.escalations += 1
                logger.info("scraper: job %s rendering %s in browser", self.job.id, url)
                rendered = await pool.fetch(url, timeout=self.timeout_seconds, wait_for=wait_for)
                if rendered.ok:
                    return rendered
        return result

    async def fetch(self, url: str, item: WorkItem | None = None) -> FetchResult:
        """Fetch *url* under the gate with delay and retries.

        Returns the final result, which may be a permanent failure.  The retry
        count is recorded on *item* when given.

        Raises:
            NetworkError: Transient failures outlasted the retry budget.
        """
        attempt = 0
        while True:
            async with self._slot():
                if self.delay.current_ms > 0:
                    await asyncio.sleep(self.delay.current_seconds)
                started = time.monotonic()
                result = await self._fetch_once(url)
                elapsed = time.monotonic() - started
            self.delay.record(elapsed, ok=not result.transient)
            scrape_fetch_duration_seconds.labels(strategy=self.strategy).observe(elapsed)

            try:
                return raise_for_transient(result)
            except NetworkError:
                if attempt >= self.max_retries:
                    raise
            backoff = self.settings.retry_backoff_seconds * 2**attempt
            attempt += 1
            if item is not None:
                item.retries = attempt
            logger.info(
                "scraper: job %s retrying %s in %.2fs (attempt %d/%d): %s",
                self.job.id,
                url,
                backoff,
                attempt,
                self.max_retries,
                result.error,
            )
            await asyncio.sleep(backoff)

    # ------------------------------------------------------------------
    # Items and batches
    # ------------------------------------------------------------------

    async def process(self, item: WorkItem) -> None:
        """Fetch, extract and normalize one product page.  Never raises for per-item trouble."""
        try:
            html, final_url = item.html, item.url
            if html is None:
                try:
                    result = await self.fetch(item.url, item)
                except NetworkError as exc:
                    self._skip(item, SKIP_NETWORK, str(exc))
                    return
                if not result.ok:
                    self._skip(item, SKIP_HTTP, result.error or "no content")
                    return
                html, final_url = result.html or "", result.final_url

            try:
                raw = extract_product(html, final_url, self.recipe)
                record = normalize_product(
                    raw,
                    self.recipe,
                    site_url=self.job.site_url,
                    position=item.position,
                    max_images=self.settings.max_images,
                )
            except ParseError as exc:
                self._skip(item, SKIP_PARSE, str(exc))
                return
            except Exception as exc:
                logger.warning(
                    "scraper: job %s could not read %s", self.job.id, item.url, exc_info=exc
                )
                self._skip(item, SKIP_PARSE, f"{type(exc).__name__}: {exc}")
                return

            self.records.append(record)
        finally:
            self.processed += 1

    async def run_batch(self, batch: list[WorkItem]) -> None:
        results = await asyncio.gather(*(self.process(item) for item in batch), return_exceptions=True)
        for result in results:
            # Only fatal errors get here; per-item ones are absorbed in process().
            if isinstance(result, BaseException):
                raise result
        self.batches += 1
        self.delay.adjust()
        await self.orchestrator.report_progress(
            self.job.id, self.processed, self.total, self.metadata()
        )
        if self.orchestrator.is_cancel_requested(self.job.id):
            raise _CancelRequested()
        self.check_skip_rate()

    def check_skip_rate(self) -> None:
        """Raise once enough items were seen and too many of them were skipped."""
        if self.processed < self.settings.skip_rate_min_sample:
            return
        if self.skip_rate > self.settings.max_skip_rate:
            raise ScraperError(
                f"Skip rate {self.skip_rate:.0%} exceeded the {self.settings.max_skip_rate:.0%} "
                f"threshold ({self.skipped} of {self.processed} items skipped)"
            )

    # ------------------------------------------------------------------
    # Discovery
    # ------------------------------------------------------------------

    async def _read_listing(self, url: str, *, first: bool) -> tuple[str, str] | None:
        try:
            result = await self.fetch(url)
        except NetworkError as exc:
            if first:
                raise NetworkError(f"Start page unreachable: {exc}", url=url) from exc
            logger.warning("scraper: job %s listing page %s failed: %s", self.job.id, url, exc)
            return None
        if not result.ok:
            if first:
                raise NetworkError(
                    f"Start page unreachable: {result.error}",
                    url=url,
                    status_code=result.status_code,
                )
            logger.warning(
                "scraper: job %s listing page %s failed: %s", self.job.id, url, result.error
            )
            return None
        return result.html or "", result.final_url

    async def crawl(self) -> None:
        """Interleave listing discovery with batch processing until a stop condition."""
        page_url: str | None = self.job.site_url
        position = 0

        while page_url and self.pages_discovered < self.max_pages:
            first = self.pages_discovered == 0
            self.visited_pages.add(page_url)
            page = await self._read_listing(page_url, first=first)
            if page is None:
                break
            html, final_url = page
            self.visited_pages.add(final_url)
            self.pages_discovered += 1
            listing = parse_listing(html, final_url, self.recipe)

            if first and not listing.product_urls:
                logger.info(
                    "scraper: job %s start page has no product links, treating it as a product",
                    self.job.id,
                )
                self.seen_urls.add(final_url)
                self.total = 1
                await self.run_batch([WorkItem(final_url, 0, 0, html=html)])
                return

            remaining = self.max_products - len(self.seen_urls)
            items: list[WorkItem] = []
            for url in listing.product_urls:
                if len(items) >= remaining:
                    break
                if url in self.seen_urls:
                    continue
                self.seen_urls.add(url)
                items.append(WorkItem(url, position, self.batches + len(items) // self.batch_size))
                position += 1
            self.total = len(self.seen_urls)
            logger.info(
                "scraper: job %s page %d: %d new product(s), %d total",
                self.job.id,
                self.pages_discovered,
                len(items),
                self.total,
            )

            for start in range(0, len(items), self.batch_size):
                await self.run_batch(items[start : start + self.batch_size])

            if len(self.seen_urls) >= self.max_products:
                break
            page_url = listing.next_page_url
            if page_url in self.visited_pages:
                break

        if self.total is None:
            self.total = len(self.seen_urls)
        self.check_skip_rate()

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def execute(self) -> None:
        """Run the pipeline inside the job budget with guaranteed resource release."""
        async with AsyncExitStack() as stack:
            self._client = await stack.enter_async_context(
                self._client_factory(self.timeout_seconds, max_connections=self.max_concurrent + 2)
            )
            stack.push_async_callback(self._close_pool)
            if self.strategy == STRATEGY_BROWSER:
                self._pool = await self._browser_factory(self.settings.browser_pool_size).start()
            try:
                await asyncio.wait_for(self.crawl(), timeout=self.budget_seconds)
            except asyncio.TimeoutError as exc:
                raise JobTimeoutError(self.job.id, self.budget_seconds) from exc

    async def _close_pool(self) -> None:
        pool, self._pool = self._pool, None
        if pool is not None:
            await pool.close()

    def render(self) -> CsvArtifacts:
        parents, variations = finalize_records(self.records)
        return CsvGenerator().generate(parents, variations)


class JobScheduler:
    """Runs jobs handed over by the dispatcher.

    Args:
        orchestrator: Owner of job state; the scheduler only reports to it.
        settings: Application settings; defaults to :func:`get_settings`.
        client_factory: Builds the job's ``httpx.AsyncClient``.
        browser_factory: Builds a :class:`BrowserPool` for a pool size.
            When given, JS-only shells escalate to it even without the
            ``playwright`` package installed.
    """

    def __init__(
        self,
        orchestrator: JobOrchestrator,
        settings: Settings | None = None,
        *,
        client_factory: Callable[..., Any] = build_client,
        browser_factory: Callable[[int], BrowserPool] | None = None,
    ) -> None:
        self._orchestrator = orchestrator
        self._settings = settings or get_settings()
        self._client_factory = client_factory
        self._browser_factory = browser_factory

    async def run(self, job_id: str) -> None:
        """Execute *job_id* to a terminal state."""
        token = job_id_var.set(job_id)
        try:
            await self._run(job_id)
        except NotFoundError:
            # Storage was cleared under the running job.
            logger.info("scraper: job %s disappeared while running", job_id)
        finally:
            job_id_var.reset(token)

    async def _run(self, job_id: str) -> None:
        orchestrator = self._orchestrator
        job = orchestrator.get_status(job_id)
        if job.is_terminal:
            logger.info("scraper: job %s already %s, not starting", job_id, job.status.value)
            return
        try:
            job = await orchestrator.mark_running(job_id)
        except InvalidStateError as exc:
            logger.info("scraper: job %s not started: %s", job_id, exc)
            return

        try:
            recipe = orchestrator.recipes.get(job.recipe_name)
        except (RecipeError, NotFoundError) as exc:
            await orchestrator.fail(job_id, f"Recipe resolution failed: {exc}")
            return

        run = JobRun(
            job,
            recipe,
            orchestrator,
            self._settings,
            client_factory=self._client_factory,
            browser_factory=self._browser_factory,
        )
        logger.info(
            "scraper: job %s started (recipe=%s strategy=%s maxConcurrent=%d batchSize=%d)",
            job_id,
            recipe.name,
            run.strategy,
            run.max_concurrent,
            run.batch_size,
        )

        try:
            await run.execute()
        except _CancelRequested:
            logger.info(
                "scraper: job %s stopping for cancellation, discarding %d record(s)",
                job_id,
                len(run.records),
            )
            await orchestrator.acknowledge_cancel(job_id, run.metadata())
            return
        except NotFoundError:
            raise
        except ScraperError as exc:
            await self._fail(run, str(exc))
            return
        except Exception as exc:
            logger.exception("scraper: job %s crashed", job_id)
            await self._fail(run, f"Internal error: {type(exc).__name__}: {exc}")
            return

        if orchestrator.is_cancel_requested(job_id):
            await orchestrator.acknowledge_cancel(job_id, run.metadata())
            return
        if not run.records:
            await orchestrator.fail(
                job_id,
                f"No products extracted ({run.skipped} of {run.processed} items skipped)",
                metadata=run.metadata(),
            )
            return

        try:
            artifacts = await asyncio.to_thread(run.render)
        except Exception as exc:
            logger.exception("scraper: job %s results could not be rendered", job_id)
            await orchestrator.fail(
                job_id, f"Internal error: {type(exc).__name__}: {exc}", metadata=run.metadata()
            )
            return
        scrape_products_total.labels(recipe=recipe.name).inc(artifacts.total_products)
        await orchestrator.complete(job_id, artifacts, run.metadata())

    async def _fail(self, run: JobRun, error: str) -> None:
        artifacts: CsvArtifacts | None = None
        if run.records:
            try:
                artifacts = await asyncio.to_thread(run.render)
            except Exception:
                logger.exception("scraper: job %s partial results could not be rendered", run.job.id)
        if artifacts is not None:
            scrape_products_total.labels(recipe=run.recipe.name).inc(artifacts.total_products)
        await self._orchestrator.fail(run.job.id, error, artifacts, run.metadata())


class JobDispatcher:
    """Bounded in-process job queue.

    Each submitted job becomes an asyncio task that waits for one of
    ``max_concurrent_jobs`` slots and then runs *runner*.

    Args:
        runner: Coroutine function executing one job (``JobScheduler.run``).
        max_concurrent_jobs: Jobs allowed to execute at once.
    """

    def __init__(
        self,
        runner: Callable[[str], Awaitable[None]],
        max_concurrent_jobs: int,
    ) -> None:
        if max_concurrent_jobs < 1:
            raise ValueError("max_concurrent_jobs must be >= 1")
        self._runner = runner
        self._slots = asyncio.Semaphore(max_concurrent_jobs)
        self._tasks: dict[str, asyncio.Task[None]] = {}
        self._waiting = 0
        self._running = 0

    @property
    def queue_length(self) -> int:
        """Jobs submitted but still waiting for a slot."""
        return self._waiting

    @property
    def running_count(self) -> int:
        return self._running

    @property
    def is_processing(self) -> bool:
        return self._running > 0

    def submit(self, job_id: str) -> asyncio.Task[None]:
        """Queue *job_id*.  Submitting a job that is already queued is a no-op."""
        existing = self._tasks.get(job_id)
        if existing is not None and not existing.done():
            return existing
        task = asyncio.create_task(self._execute(job_id), name=f"scrape-job-{job_id}")
        self._tasks[job_id] = task
        task.add_done_callback(lambda _t: self._forget(job_id, _t))
        return task

    def _forget(self, job_id: str, task: asyncio.Task[None]) -> None:
        if self._tasks.get(job_id) is task:
            del self._tasks[job_id]

    async def _execute(self, job_id: str) -> None:
        self._waiting += 1
        waiting = True
        try:
            async with self._slots:
                self._waiting -= 1
                waiting = False
                self._running += 1
                try:
                    await self._runner(job_id)
                finally:
                    self._running -= 1
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("dispatcher: job %s crashed", job_id)
        finally:
            if waiting:
                self._waiting -= 1

    async def wait(self, job_id: str | None = None) -> None:
        """Wait for one job, or for everything currently queued."""
        if job_id is not None:
            task = self._tasks.get(job_id)
            tasks = [task] if task is not None else []
        else:
            tasks = list(self._tasks.values())
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def shutdown(self) -> None:
        """Cancel every queued and running job task.

        Jobs interrupted here stay ``running`` in storage and are failed by
        :meth:`JobOrchestrator.recover` on the next start.
        """
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("dispatcher: shut down, %d task(s) cancelled", len(tasks))
