from __future__ import annotations

import asyncio
import html as html_lib
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from .cleaning import CleaningResult, HtmlCleaner
from .content import ContentExtractionResult, ContentExtractor, ExtractionOptions
from .extraction_client import ExtractionClient, VacancyExtraction
from .retry import RetryPolicy

logger = logging.getLogger(__name__)


@dataclass
class PipelineOptions:
    extraction: ExtractionOptions = field(default_factory=ExtractionOptions)
    cleaning_profile: str = "standard"
    skip_cache: bool = False
    max_retries: int = 2
    confidence_threshold: float = 50.0
    quality_threshold: float = 60.0
    perform_quality_check: bool = True


@dataclass
class PipelineMetadata:
    content_extraction: ContentExtractionResult | None = None
    cleaning: CleaningResult | None = None
    total_time_ms: float = 0.0
    extraction_time_ms: float = 0.0
    cache_hit: bool = False
    retry_count: int = 0
    quality_check_passed: bool = False
    quality_score: float = 0.0
    confidence_score: float = 0.0


@dataclass
class PipelineResult:
    success: bool
    data: VacancyExtraction | None
    cleaned_text: str
    raw_response: str
    metadata: PipelineMetadata
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    faulted: bool = False


@dataclass
class BatchItem:
    id: str
    html: str
    source_url: str
    vacancy_id: int | None = None


@dataclass
class BatchItemResult:
    id: str
    source_url: str
    result: PipelineResult | None
    error: str | None = None
    faulted: bool = False

    @property
    def success(self) -> bool:
        return self.result is not None and self.result.success


@dataclass
class BatchSummary:
    total: int
    successful: int
    failed: int
    faulted: int
    average_quality_score: float
    average_processing_time_ms: float
    cache_hit_rate: float


@dataclass
class BatchResult:
    items: list[BatchItemResult]
    summary: BatchSummary


def score_extraction(extraction: VacancyExtraction) -> tuple[float, list[str]]:
    score = 0.0
    issues: list[str] = []
    if extraction.title:
        score += 20
    if extraction.description and len(extraction.description) > 50:
        score += 20
    if extraction.requirements:
        score += 15
    if extraction.location:
        score += 10
    if extraction.experience_level:
        score += 10
    if extraction.salary_min or extraction.salary_max:
        score += 10
    if extraction.technologies:
        score += 10
    if extraction.confidence_score > 70:
        score += 5
    if extraction.confidence_score < 50:
        score -= 20
        issues.append(f"Low extraction confidence score: {extraction.confidence_score:g}")
    return score, issues


class AiProcessingPipeline:
    """HTML -> extracted text -> cleaned text -> structured vacancy -> quality gate."""

    def __init__(
        self,
        client: ExtractionClient,
        extractor: ContentExtractor | None = None,
        cleaner: HtmlCleaner | None = None,
        options: PipelineOptions | None = None,
        retry_delay: float = 1.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.client = client
        self.extractor = extractor or ContentExtractor()
        self.cleaner = cleaner or HtmlCleaner()
        self.options = options or PipelineOptions()
        self.retry_delay = retry_delay
        self.sleep = sleep
        self._processed = 0
        self._succeeded = 0

    def _retry_policy(self, opts: PipelineOptions) -> RetryPolicy:
        return RetryPolicy(max_attempts=opts.max_retries + 1, base_delay=self.retry_delay, jitter=0.1)

    async def process(self, html: str, source_url: str, options: PipelineOptions | None = None) -> PipelineResult:
        opts = options or self.options
        started = time.perf_counter()
        errors: list[str] = []
        warnings: list[str] = []
        meta = PipelineMetadata()
        cleaned_text = ""
        raw_response = ""
        extraction: VacancyExtraction | None = None

        try:
            content = self._extract_content(html, source_url, opts, errors, warnings)
            meta.content_extraction = content
            if content is not None:
                cleaned_text = self._clean(content, opts, meta, warnings)
                extraction, raw_response = await self._structured_extraction(
                    cleaned_text, source_url, opts, meta, errors, warnings
                )
                self._validate_quality(extraction, opts, meta, errors, warnings)
        except Exception as exc:
            logger.exception("pipeline fault for %s", source_url)
            errors.append(f"Pipeline fault: {type(exc).__name__}: {exc}")
            meta.total_time_ms = (time.perf_counter() - started) * 1000
            self._processed += 1
            return PipelineResult(False, None, cleaned_text, raw_response, meta, errors, warnings, faulted=True)

        meta.total_time_ms = (time.perf_counter() - started) * 1000
        success = extraction is not None and not errors
        self._processed += 1
        if success:
            self._succeeded += 1

        logger.info(
            "pipeline %s: success=%s quality=%s confidence=%s errors=%s warnings=%s",
            source_url,
            success,
            meta.quality_score,
            meta.confidence_score,
            len(errors),
            len(warnings),
        )
        return PipelineResult(
            success=success,
            data=extraction if success else None,
            cleaned_text=cleaned_text,
            raw_response=raw_response,
            metadata=meta,
            errors=errors,
            warnings=warnings,
        )

    def _extract_content(
        self,
        html: str,
        source_url: str,
        opts: PipelineOptions,
        errors: list[str],
        warnings: list[str],
    ) -> ContentExtractionResult | None:
        try:
            result = self.extractor.extract(html, source_url, opts.extraction)
        except Exception as exc:
            errors.append(f"Content extraction failed: {exc}")
            return None
        quality = self.extractor.validate_quality(result)
        if not quality.is_valid:
            warnings.append(f"Content extraction quality issues: {', '.join(quality.issues)}")
        if len(result.cleaned_content) < 50:
            warnings.append("Extracted content is very short, may impact extraction quality")
        return result

    def _clean(
        self,
        content: ContentExtractionResult,
        opts: PipelineOptions,
        meta: PipelineMetadata,
        warnings: list[str],
    ) -> str:
        try:
            cleaned = self.cleaner.clean(
                f"<div>{html_lib.escape(content.cleaned_content)}</div>",
                opts.cleaning_profile,
            )
        except Exception as exc:
            warnings.append(f"Content cleaning failed, using extracted content: {exc}")
            return content.cleaned_content
        meta.cleaning = cleaned
        warnings.extend(cleaned.warnings)
        if cleaned.applied_profile == "fallback":
            return content.cleaned_content
        if cleaned.cleaned_length < len(content.cleaned_content) * 0.5:
            warnings.append("Aggressive content cleaning may have removed important information")
        return cleaned.cleaned_text

    async def _structured_extraction(
        self,
        text: str,
        source_url: str,
        opts: PipelineOptions,
        meta: PipelineMetadata,
        errors: list[str],
        warnings: list[str],
    ) -> tuple[VacancyExtraction | None, str]:
        policy = self._retry_policy(opts)
        last_raw = ""
        attempt = 0
        while True:
            attempt += 1
            try:
                # A retry must reach the model, not replay the cached answer.
                response = await self.client.extract(text, source_url, skip_cache=opts.skip_cache or attempt > 1)
            except Exception as exc:
                if policy.should_retry(attempt):
                    warnings.append(f"Extraction attempt {attempt} failed, retrying: {exc}")
                    meta.retry_count += 1
                    await self.sleep(policy.delay_for(attempt))
                    continue
                errors.append(f"Extraction failed after {attempt} attempt(s): {exc}")
                return None, last_raw

            last_raw = response.raw_response
            meta.cache_hit = response.cache_hit
            meta.extraction_time_ms += response.latency_ms
            result = response.result
            if result is None:
                errors.append("Extraction returned no result")
                return None, last_raw

            meta.confidence_score = result.confidence_score
            if result.confidence_score < opts.confidence_threshold and policy.should_retry(attempt):
                warnings.append(f"Low confidence score ({result.confidence_score:g}), retrying")
                meta.retry_count += 1
                await self.sleep(policy.delay_for(attempt))
                continue
            return result, last_raw

    @staticmethod
    def _validate_quality(
        extraction: VacancyExtraction | None,
        opts: PipelineOptions,
        meta: PipelineMetadata,
        errors: list[str],
        warnings: list[str],
    ) -> None:
        if extraction is None:
            return
        if not opts.perform_quality_check:
            meta.quality_score = extraction.quality_score
            meta.quality_check_passed = True
            return

        score, issues = score_extraction(extraction)
        meta.quality_score = score
        meta.quality_check_passed = score >= opts.quality_threshold
        if not meta.quality_check_passed:
            errors.append(f"Quality validation failed (score: {score:g}, threshold: {opts.quality_threshold:g})")
            warnings.extend(f"Quality issue: {issue}" for issue in issues)

    async def process_batch(self, items: list[BatchItem], options: PipelineOptions | None = None) -> BatchResult:
        logger.info("starting batch pipeline run for %s item(s)", len(items))
        outcomes = await asyncio.gather(
            *(self.process(item.html, item.source_url, options) for item in items),
            return_exceptions=True,
        )

        results: list[BatchItemResult] = []
        for item, outcome in zip(items, outcomes):
            if isinstance(outcome, BaseException):
                results.append(
                    BatchItemResult(item.id, item.source_url, None, error=f"{type(outcome).__name__}: {outcome}", faulted=True)
                )
            elif outcome.faulted:
                results.append(
                    BatchItemResult(item.id, item.source_url, outcome, error="; ".join(outcome.errors), faulted=True)
                )
            elif outcome.success:
                results.append(BatchItemResult(item.id, item.source_url, outcome))
            else:
                results.append(BatchItemResult(item.id, item.source_url, outcome, error="; ".join(outcome.errors)))

        successful = [r.result for r in results if r.success]
        count = len(successful)
        summary = BatchSummary(
            total=len(items),
            successful=count,
            failed=len(items) - count,
            faulted=sum(1 for r in results if r.faulted),
            average_quality_score=sum(r.metadata.quality_score for r in successful) / count if count else 0.0,
            average_processing_time_ms=sum(r.metadata.total_time_ms for r in successful) / count if count else 0.0,
            cache_hit_rate=sum(1 for r in successful if r.metadata.cache_hit) / count if count else 0.0,
        )
        logger.info(
            "batch pipeline run finished: %s/%s successful, %s faulted",
            summary.successful,
            summary.total,
            summary.faulted,
        )
        return BatchResult(items=results, summary=summary)

    def health_status(self) -> dict[str, Any]:
        configured = self.client.is_configured()
        success_rate = self._succeeded / self._processed if self._processed else None
        if not configured:
            status = "unhealthy"
        elif success_rate is not None and self._processed >= 5 and success_rate < 0.5:
            status = "degraded"
        else:
            status = "healthy"
        return {
            "status": status,
            "extraction_configured": configured,
            "processed": self._processed,
            "succeeded": self._succeeded,
            "success_rate": success_rate,
            "cleaning_profiles": self.cleaner.available_profiles(),
        }
