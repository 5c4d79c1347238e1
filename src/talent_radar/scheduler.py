from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Iterable

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from .config import Settings
from .retry import RetryPolicy
from .task_queue import ACTIVE, COMPLETED, DELAYED, FAILED, TASK_STATES, TERMINAL_STATES, WAITING, TaskQueue
from .utils import stable_hash, utc_now

logger = logging.getLogger(__name__)

MANUAL_SCRAPE_PRIORITY = 10
SCHEDULED_SCRAPE_PRIORITY = 0
SCRAPE_RETRY = RetryPolicy.exponential(max_attempts=3, base_delay=5.0)
BATCH_RETRY = RetryPolicy.exponential(max_attempts=2, base_delay=5.0)
AI_RETRY_BASE_DELAY = 3.0
BATCH_STAGGER_SECONDS = 0.5


def new_batch_id() -> str:
    return f"batch-{uuid.uuid4().hex[:12]}"


class Scheduler:
    """Recurring triggers plus the manual scheduling and introspection surface of the queue."""

    def __init__(
        self,
        settings: Settings,
        queue: TaskQueue,
        sites: Callable[[], Iterable[str]] | None = None,
        aps: AsyncIOScheduler | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.settings = settings
        self.queue = queue
        self.sites = sites or (lambda: settings.enabled_sites)
        self.aps = aps
        self.clock = clock

    def start(self) -> None:
        if self.aps is None:
            self.aps = AsyncIOScheduler(timezone="UTC")
        self.aps.add_job(self.run_daily_scrape, CronTrigger(hour=2, minute=0), id="daily-scrape", replace_existing=True)
        self.aps.add_job(
            self.run_health_check, CronTrigger(minute=0), id="hourly-health-check", replace_existing=True
        )
        self.aps.start()
        logger.info("scheduler started: daily scrape at 02:00 UTC, hourly health check")

    def shutdown(self) -> None:
        if self.aps is not None and self.aps.running:
            self.aps.shutdown(wait=False)

    # recurring triggers

    async def run_daily_scrape(self) -> list[str]:
        if not self.settings.scraper_enabled:
            logger.info("scraper is disabled, skipping scheduled scrape")
            return []
        task_ids = [
            self.trigger_scrape(site, triggered_by="scheduler", priority=SCHEDULED_SCRAPE_PRIORITY)
            for site in self.sites()
        ]
        logger.info("scheduled daily scrape of %s site(s)", len(task_ids))
        return task_ids

    async def run_health_check(self) -> str | None:
        if not self.settings.scraper_enabled:
            logger.info("scraper is disabled, skipping scheduled health check")
            return None
        return self.queue.enqueue("health-check", {}, retry_policy=RetryPolicy.no_retry())

    # manual scheduling

    def trigger_scrape(
        self,
        site: str,
        triggered_by: str = "manual",
        include_details: bool = False,
        priority: int = MANUAL_SCRAPE_PRIORITY,
    ) -> str:
        task_id = self.queue.enqueue(
            "scrape-site",
            {"source": site, "triggered_by": triggered_by, "options": {"include_details": include_details}},
            priority=priority,
            retry_policy=SCRAPE_RETRY,
        )
        logger.info("queued scrape of %s (%s) as task %s", site, triggered_by, task_id)
        return task_id

    def schedule_ai_extraction(
        self,
        content: str,
        source_url: str,
        vacancy_id: int | None = None,
        priority: int = 5,
        max_retries: int = 3,
        delay: float = 0.0,
        batch_id: str | None = None,
        quality_threshold: float | None = None,
    ) -> str:
        payload: dict[str, Any] = {
            "vacancy_id": vacancy_id,
            "content_hash": stable_hash(content),
            "content": content,
            "source_url": source_url,
            "priority": priority,
            "retry_count": 0,
            "max_retries": max_retries,
        }
        if batch_id:
            payload["batch_id"] = batch_id
        if quality_threshold is not None:
            payload["quality_threshold"] = quality_threshold
        return self.queue.enqueue(
            "extract-ai",
            payload,
            priority=priority,
            retry_policy=RetryPolicy.exponential(max_attempts=max(max_retries, 1), base_delay=AI_RETRY_BASE_DELAY),
            delay=delay,
            batch_id=batch_id,
        )

    def schedule_batch(
        self,
        urls: list[str],
        priority: int = 3,
        max_concurrent: int = 2,
        delay_between_requests: float = 1.0,
        enable_ai_extraction: bool = True,
        quality_threshold: float = 70.0,
    ) -> str:
        batch_id = new_batch_id()
        self.queue.enqueue(
            "process-batch",
            {
                "batch_id": batch_id,
                "urls": list(urls),
                "options": {
                    "max_concurrent": max_concurrent,
                    "delay_between_requests": delay_between_requests,
                    "enable_ai_extraction": enable_ai_extraction,
                    "quality_threshold": quality_threshold,
                },
            },
            priority=priority,
            retry_policy=BATCH_RETRY,
            batch_id=batch_id,
        )
        logger.info("queued batch %s with %s url(s)", batch_id, len(urls))
        return batch_id

    def schedule_batch_ai_extraction(
        self,
        items: list[dict[str, Any]],
        priority: int = 4,
        batch_id: str | None = None,
    ) -> tuple[str, list[str]]:
        batch_id = batch_id or new_batch_id()
        task_ids = [
            self.schedule_ai_extraction(
                content=item["content"],
                source_url=item["source_url"],
                vacancy_id=item.get("vacancy_id"),
                priority=priority,
                delay=index * BATCH_STAGGER_SECONDS,
                batch_id=batch_id,
            )
            for index, item in enumerate(items)
        ]
        logger.info("queued %s extraction task(s) for batch %s", len(task_ids), batch_id)
        return batch_id, task_ids

    # introspection and control

    def batch_status(self, batch_id: str) -> dict[str, Any]:
        members = self.queue.tasks_for_batch(batch_id)
        counts = {state: 0 for state in TASK_STATES}
        for task in members:
            counts[task.state] += 1
        return {
            "batch_id": batch_id,
            "total": len(members),
            "counts": counts,
            "done": bool(members) and all(task.state in TERMINAL_STATES for task in members),
            "tasks": [task.summary() for task in members],
        }

    def queue_stats(self) -> dict[str, Any]:
        return {
            "counts": self.queue.counts(),
            "by_kind": self.queue.counts_by_kind(),
            "active": [task.summary() for task in self.queue.tasks(ACTIVE)],
            "paused": self.queue.is_paused(),
        }

    def queue_health(self) -> dict[str, Any]:
        try:
            counts = self.queue.counts()
            paused = self.queue.is_paused()
        except Exception as exc:
            logger.error("queue health check failed: %s", exc)
            return {"health_score": 0, "status": "error", "paused": True, "error": str(exc), "timestamp": self.clock()}

        total = max(counts["total"], 1)
        active_ratio = counts[ACTIVE] / total
        failed_ratio = counts[FAILED] / total
        score = 100 - failed_ratio * 50 - (30 if paused else 0) - (20 if active_ratio > 0.8 else 0)
        score = max(0.0, min(100.0, score))
        if score > 80:
            status = "healthy"
        elif score > 50:
            status = "degraded"
        else:
            status = "unhealthy"
        return {
            "health_score": round(score),
            "status": status,
            "paused": paused,
            "counts": {state: counts[state] for state in (WAITING, ACTIVE, COMPLETED, FAILED, DELAYED)},
            "timestamp": self.clock(),
        }

    def pause(self) -> None:
        self.queue.pause()
        logger.info("queue paused")

    def resume(self) -> None:
        self.queue.resume()
        logger.info("queue resumed")

    def cancel(self, task_id: str) -> bool:
        return self.queue.cancel(task_id)

    def retry_failed(self) -> int:
        retried = sum(1 for task in self.queue.tasks(FAILED) if self.queue.retry(task.id))
        logger.info("requeued %s failed task(s)", retried)
        return retried

    def clean_old_tasks(self, days: int | None = None) -> int:
        days = self.settings.task_retention_days if days is None else days
        removed = self.queue.purge(self.clock() - timedelta(days=days))
        logger.info("removed %s finished task(s) older than %s day(s)", removed, days)
        return removed
