"""Performance telemetry: live job throughput, process load and advice.

``PerformanceMonitor`` only reads.  Job snapshots come from the orchestrator
(live view) or from storage (all-time aggregates); process figures come from
``psutil``.  Recommendations are advisory text and never change settings or
recipes.

Durations are reported in milliseconds and ``productsPerSecond`` as a
two-decimal string, which is what the dashboard renders.
"""

from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Any

import psutil

from product_scraper.config.settings import Settings, get_settings
from product_scraper.core.schemas.jobs import Job, JobStatus
from product_scraper.scraper.orchestrator import JobOrchestrator
from product_scraper.scraper.scheduler import JobDispatcher

logger = logging.getLogger(__name__)

#: Average skip rate over recent jobs above which a slower pace is advised.
HIGH_SKIP_RATE: float = 0.25

#: Finished jobs considered for the skip-rate rule.
RECENT_JOBS_WINDOW: int = 10


def _elapsed_ms(job: Job, now: datetime) -> float:
    if job.started_at is None:
        return 0.0
    end = job.completed_at or now
    return max(0.0, (end - job.started_at).total_seconds() * 1000.0)


def _products_of(job: Job) -> int:
    extracted = job.metadata.get("productsExtracted")
    if isinstance(extracted, int):
        return extracted
    return job.processed_products if job.status is JobStatus.COMPLETED else 0


class PerformanceMonitor:
    """Telemetry facade used by the ``/api/scrape/performance`` routes.

    Args:
        orchestrator: Source of live job snapshots and persisted history.
        dispatcher: Source of queue length and running count.
        settings: Thresholds for the recommendation rules.
    """

    def __init__(
        self,
        orchestrator: JobOrchestrator,
        dispatcher: JobDispatcher,
        settings: Settings | None = None,
    ) -> None:
        self._orchestrator = orchestrator
        self._dispatcher = dispatcher
        self._settings = settings or get_settings()
        self._process = psutil.Process()
        # Primes cpu_percent so the first live sample is not always 0.0.
        self._process.cpu_percent(interval=None)

    # ------------------------------------------------------------------
    # System load
    # ------------------------------------------------------------------

    def system_load(self) -> dict[str, Any]:
        """Memory, CPU and uptime of this process."""
        with self._process.oneshot():
            memory = self._process.memory_info()
            cpu = self._process.cpu_times()
            memory_percent = self._process.memory_percent()
            cpu_percent = self._process.cpu_percent(interval=None)
            created = self._process.create_time()
        return {
            "memoryUsage": {
                "rss": memory.rss,
                "vms": memory.vms,
                "percent": round(memory_percent, 2),
            },
            "cpuUsage": {
                "user": cpu.user,
                "system": cpu.system,
                "percent": cpu_percent,
            },
            "uptime": round(time.time() - created, 1),
        }

    # ------------------------------------------------------------------
    # Live view
    # ------------------------------------------------------------------

    def live_metrics(self) -> dict[str, Any]:
        """Snapshot of active jobs, queue state and process load."""
        now = datetime.now(timezone.utc)
        active = []
        for job in self._orchestrator.active_jobs():
            elapsed_ms = _elapsed_ms(job, now)
            rate = job.processed_products / (elapsed_ms / 1000.0) if elapsed_ms > 0 else 0.0
            active.append(
                {
                    "id": job.id,
                    "status": job.status.value,
                    "progress": job.progress,
                    "duration": round(elapsed_ms),
                    "productsPerSecond": f"{rate:.2f}",
                }
            )
        return {
            "timestamp": int(time.time() * 1000),
            "activeJobs": active,
            "queueLength": self._dispatcher.queue_length,
            "isProcessing": self._dispatcher.is_processing,
            "systemLoad": self.system_load(),
        }

    # ------------------------------------------------------------------
    # All-time aggregates
    # ------------------------------------------------------------------

    async def overall_metrics(self) -> dict[str, Any]:
        """Aggregate counters over every persisted job."""
        jobs = await self._orchestrator.storage.list_jobs()
        now = datetime.now(timezone.utc)
        finished = [job for job in jobs if job.is_terminal]
        total_products = sum(_products_of(job) for job in finished)
        total_ms = sum(_elapsed_ms(job, now) for job in finished)
        average = total_ms / total_products if total_products else 0.0
        return {
            "totalJobs": len(jobs),
            "totalProducts": total_products,
            "averageTimePerProduct": round(average, 1),
            "totalProcessingTime": round(total_ms),
            "activeJobs": self._dispatcher.running_count,
            "queuedJobs": self._dispatcher.queue_length,
            "isProcessing": self._dispatcher.is_processing,
        }

    # ------------------------------------------------------------------
    # Recommendations
    # ------------------------------------------------------------------

    async def recommendations(self) -> dict[str, Any]:
        """Rule-based tuning advice plus the defaults it refers to."""
        settings = self._settings
        overall = await self.overall_metrics()
        load = self.system_load()
        advice: list[dict[str, str]] = []

        average_seconds = overall["averageTimePerProduct"] / 1000.0
        if average_seconds > settings.slow_product_seconds:
            advice.append(
                {
                    "type": "performance",
                    "priority": "high",
                    "message": (
                        "Average processing time per product is high "
                        f"({average_seconds:.1f}s > {settings.slow_product_seconds:.0f}s)."
                    ),
                    "suggestion": "Set fastMode: true in recipe behavior or lower maxConcurrent.",
                }
            )

        active = len(self._orchestrator.active_jobs())
        if active > settings.max_recommended_concurrent_jobs:
            advice.append(
                {
                    "type": "concurrency",
                    "priority": "medium",
                    "message": f"{active} jobs are active at once; throughput per job will drop.",
                    "suggestion": "Reduce maxConcurrent in recipe behavior or stagger job submissions.",
                }
            )

        if load["memoryUsage"]["percent"] > settings.high_memory_percent:
            advice.append(
                {
                    "type": "resource",
                    "priority": "high",
                    "message": (
                        f"Process memory usage is {load['memoryUsage']['percent']:.0f}% "
                        "of system memory."
                    ),
                    "suggestion": "Lower the browser pool size or run fewer browser-based jobs.",
                }
            )

        if overall["queuedJobs"] > 0:
            advice.append(
                {
                    "type": "optimization",
                    "priority": "low",
                    "message": f"{overall['queuedJobs']} job(s) are waiting for a free slot.",
                    "suggestion": "Raise MAX_CONCURRENT_JOBS if the host has spare capacity.",
                }
            )

        skip_rate = await self._recent_skip_rate()
        if skip_rate > HIGH_SKIP_RATE:
            advice.append(
                {
                    "type": "optimization",
                    "priority": "medium",
                    "message": f"Recent jobs skipped {skip_rate:.0%} of their items.",
                    "suggestion": "Increase the delay option or check the recipe selectors.",
                }
            )

        logger.debug("telemetry: %d recommendation(s)", len(advice))
        return {
            "recommendations": advice,
            "currentSettings": {
                "defaultMaxConcurrent": settings.default_max_concurrent,
                "defaultRateLimit": settings.default_delay_ms,
                "fastModeAvailable": True,
            },
        }

    async def _recent_skip_rate(self) -> float:
        jobs = await self._orchestrator.storage.list_jobs()
        recent = [job for job in jobs if job.is_terminal and job.processed_products][
            :RECENT_JOBS_WINDOW
        ]
        processed = sum(job.processed_products for job in recent)
        skipped = sum(int(job.metadata.get("skippedItems", 0)) for job in recent)
        return skipped / processed if processed else 0.0
