# harvester/batch.py
"""
Bounded-concurrency batch runs over categories.

A run admits one task per category. Each task waits for a semaphore slot,
checks the run's cancellation flag, runs its crawl job and reports to the
run context as one unit: completed when the job returns, failed when it
raises (the category is then marked ``error``), cancelled when it never
started because ``stop()`` was called first.

The run context is the only state shared between tasks. Its counters and
log ring are guarded by a lock, so ``get_progress()`` and ``get_logs()``
stay consistent while workers are writing.
"""
import asyncio
import logging
import threading
from collections import deque
from datetime import datetime, timezone
from typing import Awaitable, Callable, NamedTuple

from .config import get_settings
from .errors import BatchAlreadyRunningError
from .models import BatchProgress, Category, CategoryStatus

logger = logging.getLogger("harvester.batch")


class RunContext:
    """Progress counters, log ring and cancellation flag of one batch run."""

    def __init__(self, total, log_capacity=1000):
        self._lock = threading.Lock()
        self._progress = BatchProgress(total=total)
        self._logs = deque(maxlen=log_capacity)
        self._cancel = threading.Event()

    def log(self, message, worker_id=None):
        prefix = f"[WORKER {worker_id}] " if worker_id is not None else ""
        stamp = datetime.now(timezone.utc).isoformat(timespec="seconds")
        with self._lock:
            self._logs.append(f"[{stamp}] {prefix}{message}")
        logger.info("%s%s", prefix, message)

    def _finish(self, field):
        with self._lock:
            p = self._progress
            if p.completed + p.failed + p.cancelled >= p.total:
                logger.warning("Ignoring extra %s report, run already settled", field)
                return
            setattr(p, field, getattr(p, field) + 1)

    def mark_completed(self):
        self._finish("completed")

    def mark_failed(self):
        self._finish("failed")

    def mark_cancelled(self):
        self._finish("cancelled")

    def set_current(self, label):
        with self._lock:
            self._progress.current = label

    def bump(self, key, n=1):
        with self._lock:
            details = self._progress.details
            details[key] = details.get(key, 0) + n

    def snapshot(self):
        with self._lock:
            return self._progress.model_copy(deep=True)

    def logs(self, limit=None):
        with self._lock:
            lines = list(self._logs)
        return lines[-limit:] if limit else lines

    def cancel(self):
        self._cancel.set()

    @property
    def cancelled(self):
        return self._cancel.is_set()


class CategoryTask(NamedTuple):
    category: Category
    # job(ctx, worker_id); raising marks the category as failed
    job: Callable[[RunContext, int], Awaitable[object]]


class BatchOrchestrator:
    """
    Start, stop and observe batch runs over a CatalogCrawler.

    Only one run is active at a time. The ``start_*`` methods must be called
    from a running event loop; they schedule the run and return its
    ``asyncio.Task`` right away, so ``is_running()`` is already True when
    they return.
    """

    def __init__(self, crawler, store, settings=None):
        self.crawler = crawler
        self.store = store
        self.settings = settings or get_settings()
        self._ctx = None
        self._task = None
        self._running = False

    # engine

    async def run(self, tasks, concurrency, ctx=None):
        """Run ``tasks`` with at most ``concurrency`` in flight; returns the final progress."""
        ctx = ctx or RunContext(len(tasks), self.settings.log_buffer_size)
        semaphore = asyncio.Semaphore(max(1, concurrency))
        await asyncio.gather(
            *(
                self._run_task(ctx, semaphore, task, worker_id)
                for worker_id, task in enumerate(tasks, start=1)
            )
        )
        return ctx.snapshot()

    async def _run_task(self, ctx, semaphore, task, worker_id):
        category = task.category
        async with semaphore:
            if ctx.cancelled:
                ctx.mark_cancelled()
                ctx.log(f"Skipping {category.name}: batch stopped", worker_id)
                return
            ctx.set_current(category.name)
            try:
                await task.job(ctx, worker_id)
            except Exception as exc:
                ctx.mark_failed()
                ctx.log(f"Category {category.name} failed: {exc}", worker_id)
                logger.debug("Task failure for %s", category.name, exc_info=True)
                await self._mark_error(category)
            else:
                ctx.mark_completed()

    async def _mark_error(self, category):
        try:
            await self.store.update_category_status(category.id, CategoryStatus.ERROR)
        except Exception:
            logger.exception("Could not mark category %s as error", category.id)

    # control surface

    def _start(self, label, tasks, threads):
        if self.is_running():
            raise BatchAlreadyRunningError(f"A batch is already running; cannot start {label}")
        threads = threads or self.settings.batch_threads
        ctx = RunContext(len(tasks), self.settings.log_buffer_size)
        self._ctx = ctx
        self._running = True
        ctx.log(f"Starting {label} batch: {len(tasks)} categories, {threads} workers")
        self._task = asyncio.get_running_loop().create_task(self._drive(label, tasks, threads, ctx))
        return self._task

    async def _drive(self, label, tasks, threads, ctx):
        try:
            return await self.run(tasks, threads, ctx=ctx)
        finally:
            self._running = False
            p = ctx.snapshot()
            ctx.log(
                f"{label.capitalize()} batch finished: {p.completed} completed, "
                f"{p.failed} failed, {p.cancelled} cancelled of {p.total}"
            )

    def start_bestseller_batch(self, categories, threads=None, force_recrawl=False):
        """
        Resolve bestseller URLs for ``categories``.

        Categories that already have one are skipped (and count as completed)
        unless ``force_recrawl`` is set, in which case the stored URL is
        replaced. A resolved category moves to ``ready``.
        """
        force_proxy = self.settings.batch_force_proxy

        def make_job(category):
            async def job(ctx, worker_id):
                if category.bestseller_url and not force_recrawl:
                    ctx.log(f"{category.name} already has a bestseller URL, skipping", worker_id)
                    return
                await self.crawler.find_bestseller_url(
                    category,
                    ctx=ctx,
                    worker_id=worker_id,
                    force_proxy=force_proxy,
                    overwrite=force_recrawl,
                )
                await self.store.update_category_status(category.id, CategoryStatus.READY)

            return job

        tasks = [CategoryTask(c, make_job(c)) for c in categories]
        return self._start("bestseller", tasks, threads)

    def start_links_batch(self, categories, threads=None, start_page=1, end_page=5):
        if start_page < 1 or end_page < start_page:
            raise ValueError(f"Invalid page range {start_page}-{end_page}")
        force_proxy = self.settings.batch_force_proxy

        def make_job(category):
            async def job(ctx, worker_id):
                await self.crawler.crawl_links(
                    category,
                    start_page=start_page,
                    end_page=end_page,
                    ctx=ctx,
                    worker_id=worker_id,
                    force_proxy=force_proxy,
                )

            return job

        tasks = [CategoryTask(c, make_job(c)) for c in categories]
        return self._start("links", tasks, threads)

    def start_products_batch(self, categories, threads=None, batch_size=None):
        force_proxy = self.settings.batch_force_proxy
        batch_size = batch_size or self.settings.product_batch_size

        def make_job(category):
            async def job(ctx, worker_id):
                await self.crawler.crawl_products(
                    category,
                    ctx=ctx,
                    worker_id=worker_id,
                    batch_size=batch_size,
                    force_proxy=force_proxy,
                )

            return job

        tasks = [CategoryTask(c, make_job(c)) for c in categories]
        return self._start("products", tasks, threads)

    def stop(self):
        """Stop admitting new work. Returns False when nothing is running."""
        if not self.is_running():
            return False
        self._ctx.cancel()
        self._ctx.log("Stop requested, waiting for in-flight categories")
        return True

    def get_progress(self):
        return self._ctx.snapshot() if self._ctx is not None else BatchProgress()

    def get_logs(self, limit=None):
        if self._ctx is None:
            return []
        return self._ctx.logs(limit or self.settings.log_tail)

    def is_running(self):
        return self._running
