from __future__ import annotations

import logging
from dataclasses import dataclass

import httpx

from .adapters.registry import AdapterRegistry, build_registry
from .companies import CompanyMatcher
from .config import Settings
from .db import Repository
from .duplicates import DuplicateDetector
from .extraction_client import ExtractionClient, OpenAIExtractionClient
from .handlers import TaskHandlers
from .http_client import AsyncHttpHelper
from .pipeline import AiProcessingPipeline, PipelineOptions
from .retry import RetryPolicy
from .scheduler import Scheduler
from .source_cache import CompanySourceCache
from .task_queue import InMemoryTaskQueue
from .workers import WorkerPool

logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    settings: Settings
    repo: Repository
    http: AsyncHttpHelper
    registry: AdapterRegistry
    extraction_client: ExtractionClient
    source_cache: CompanySourceCache
    duplicates: DuplicateDetector
    companies: CompanyMatcher
    pipeline: AiProcessingPipeline
    queue: InMemoryTaskQueue
    scheduler: Scheduler
    handlers: TaskHandlers
    workers: WorkerPool

    async def aclose(self) -> None:
        await self.workers.stop()
        self.scheduler.shutdown()
        await self.http.aclose()
        aclose = getattr(self.extraction_client, "aclose", None)
        if aclose is not None:
            await aclose()
        self.repo.close()


def build_runtime(
    settings: Settings,
    repo: Repository | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
    extraction_client: ExtractionClient | None = None,
) -> Runtime:
    """Wire every component from settings. Call inside a running event loop."""
    settings.validate()
    repo = repo or Repository.open(settings.db_path)
    http = AsyncHttpHelper(settings.request_timeout_seconds, settings.per_domain_rps, transport=transport)
    registry = build_registry(settings, http)
    client = extraction_client or OpenAIExtractionClient.from_settings(settings)

    source_cache = CompanySourceCache(repo, ttl=settings.source_ttl)
    duplicates = DuplicateDetector(
        repo,
        thresholds=settings.duplicate_thresholds,
        weights=settings.duplicate_weights,
        lookback_days=settings.duplicate_lookback_days,
    )
    companies = CompanyMatcher(repo, thresholds=settings.company_thresholds, weights=settings.company_weights)
    pipeline = AiProcessingPipeline(
        client,
        options=PipelineOptions(
            max_retries=settings.ai_max_retries,
            confidence_threshold=settings.ai_confidence_threshold,
            quality_threshold=settings.ai_quality_threshold,
        ),
    )

    queue = InMemoryTaskQueue(
        keep_completed=settings.keep_completed_tasks,
        keep_failed=settings.keep_failed_tasks,
        default_retry_policy=RetryPolicy(),
    )
    scheduler = Scheduler(settings, queue, sites=registry.enabled_sites)
    handlers = TaskHandlers(
        settings=settings,
        repo=repo,
        registry=registry,
        http=http,
        source_cache=source_cache,
        duplicates=duplicates,
        companies=companies,
        pipeline=pipeline,
        scheduler=scheduler,
    )
    workers = WorkerPool(
        queue,
        handlers.as_mapping(),
        concurrency=settings.worker_concurrency,
        handler_timeout=settings.handler_timeout_seconds,
    )
    logger.info(
        "runtime ready: sites=%s workers=%s extraction=%s",
        ",".join(registry.enabled_sites()),
        settings.worker_concurrency,
        "on" if client.is_configured() else "off",
    )
    return Runtime(
        settings=settings,
        repo=repo,
        http=http,
        registry=registry,
        extraction_client=client,
        source_cache=source_cache,
        duplicates=duplicates,
        companies=companies,
        pipeline=pipeline,
        queue=queue,
        scheduler=scheduler,
        handlers=handlers,
        workers=workers,
    )
