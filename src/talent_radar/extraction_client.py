from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field, fields
from datetime import datetime, timedelta
from typing import Any, Callable, Protocol

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from .config import Settings
from .errors import TransientIOError
from .utils import stable_hash, utc_now

logger = logging.getLogger(__name__)

MAX_HTTP_ATTEMPTS = 3

VACANCY_PROMPT = """Extract structured job vacancy data from this content:

{content}

Source: {source_url}

Return JSON with ALL these fields (use null for missing values):
- title: string
- company: string
- location: string
- salaryMin: number (null if not specified)
- salaryMax: number (null if not specified)
- currency: string (null if not specified)
- experienceLevel: string (junior/mid/senior/lead/principal/not_specified)
- employmentType: string (full-time/part-time/contract/internship/freelance)
- workModel: string (remote/hybrid/office/not_specified)
- description: string
- requirements: array of strings
- responsibilities: array of strings
- technologies: array of strings
- benefits: array of strings
- educationLevel: string
- industry: string
- applicationDeadline: string (ISO date format)
- postedDate: string (ISO date format)
- confidenceScore: number (0-100, your confidence in extraction accuracy)
- qualityScore: number (0-100, overall quality of job posting)

RESPOND ONLY WITH VALID JSON. No explanations."""

_CAMEL_FIELDS = {
    "salaryMin": "salary_min",
    "salaryMax": "salary_max",
    "experienceLevel": "experience_level",
    "employmentType": "employment_type",
    "workModel": "work_model",
    "educationLevel": "education_level",
    "applicationDeadline": "application_deadline",
    "postedDate": "posted_date",
    "confidenceScore": "confidence_score",
    "qualityScore": "quality_score",
}


class _RetryableStatus(Exception):
    def __init__(self, status_code: int) -> None:
        super().__init__(f"extraction API answered {status_code}")
        self.status_code = status_code


@dataclass
class VacancyExtraction:
    title: str | None = None
    company: str | None = None
    location: str | None = None
    salary_min: float | None = None
    salary_max: float | None = None
    currency: str | None = None
    experience_level: str | None = None
    employment_type: str | None = None
    work_model: str | None = None
    description: str | None = None
    requirements: list[str] = field(default_factory=list)
    responsibilities: list[str] = field(default_factory=list)
    technologies: list[str] = field(default_factory=list)
    benefits: list[str] = field(default_factory=list)
    education_level: str | None = None
    industry: str | None = None
    application_deadline: str | None = None
    posted_date: str | None = None
    confidence_score: float = 0.0
    quality_score: float = 0.0

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "VacancyExtraction":
        known = {f.name for f in fields(cls)}
        values: dict[str, Any] = {}
        for key, value in data.items():
            name = _CAMEL_FIELDS.get(key, key)
            if name not in known or value is None:
                continue
            if name in {"requirements", "responsibilities", "technologies", "benefits"}:
                value = [str(v) for v in value] if isinstance(value, list) else [str(value)]
            elif name in {"confidence_score", "quality_score"}:
                try:
                    value = float(value)
                except (TypeError, ValueError):
                    value = 0.0
            values[name] = value
        return cls(**values)

    def as_dict(self) -> dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


@dataclass
class ExtractionResponse:
    result: VacancyExtraction | None
    raw_response: str
    cache_hit: bool = False
    latency_ms: float = 0.0


class ExtractionClient(Protocol):
    async def extract(self, text: str, source_url: str, skip_cache: bool = False) -> ExtractionResponse:
        ...

    def is_configured(self) -> bool:
        ...


class OpenAIExtractionClient:
    """Chat-completions client that turns cleaned vacancy text into VacancyExtraction."""

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.openai.com/v1",
        model: str = "gpt-4o-mini",
        timeout_seconds: float = 60.0,
        enable_caching: bool = True,
        cache_expiry_hours: int = 24,
        max_content_length: int = 10_000,
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.enable_caching = enable_caching
        self.cache_ttl = timedelta(hours=cache_expiry_hours)
        self.max_content_length = max_content_length
        self.clock = clock
        self._cache: dict[str, tuple[datetime, ExtractionResponse]] = {}
        self.client = httpx.AsyncClient(timeout=httpx.Timeout(timeout_seconds), transport=transport)

    @classmethod
    def from_settings(cls, settings: Settings) -> "OpenAIExtractionClient":
        return cls(
            api_key=settings.ai_api_key,
            base_url=settings.ai_base_url,
            model=settings.ai_model,
            timeout_seconds=settings.ai_timeout_seconds,
            enable_caching=settings.ai_enable_caching,
            cache_expiry_hours=settings.ai_cache_expiry_hours,
            max_content_length=settings.ai_max_content_length,
        )

    def is_configured(self) -> bool:
        return bool(self.api_key)

    async def aclose(self) -> None:
        await self.client.aclose()

    def _cache_key(self, text: str) -> str:
        return stable_hash(f"{self.model}|{text}")

    def _cached(self, key: str) -> ExtractionResponse | None:
        entry = self._cache.get(key)
        if entry is None:
            return None
        stored_at, response = entry
        if self.clock() - stored_at > self.cache_ttl:
            del self._cache[key]
            return None
        return response

    @retry(
        stop=stop_after_attempt(MAX_HTTP_ATTEMPTS),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        retry=retry_if_exception_type((httpx.TimeoutException, httpx.TransportError, _RetryableStatus)),
        reraise=True,
    )
    async def _post(self, payload: dict[str, Any]) -> dict[str, Any]:
        response = await self.client.post(
            f"{self.base_url}/chat/completions",
            headers={"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"},
            json=payload,
        )
        if response.status_code == 429 or response.status_code >= 500:
            raise _RetryableStatus(response.status_code)
        response.raise_for_status()
        return response.json()

    async def extract(self, text: str, source_url: str, skip_cache: bool = False) -> ExtractionResponse:
        if not self.is_configured():
            raise TransientIOError("extraction client has no API key configured")

        content = text[: self.max_content_length]
        key = self._cache_key(content)
        if self.enable_caching and not skip_cache:
            cached = self._cached(key)
            if cached is not None:
                logger.debug("extraction cache hit for %s", source_url)
                return ExtractionResponse(cached.result, cached.raw_response, cache_hit=True)

        payload = {
            "model": self.model,
            "temperature": 0,
            "response_format": {"type": "json_object"},
            "messages": [
                {"role": "system", "content": "You extract job vacancy data and answer with JSON only."},
                {"role": "user", "content": VACANCY_PROMPT.format(content=content, source_url=source_url)},
            ],
        }

        started = time.perf_counter()
        try:
            data = await self._post(payload)
        except (httpx.TimeoutException, httpx.TransportError, _RetryableStatus) as exc:
            raise TransientIOError(f"extraction call for {source_url} failed: {exc}") from exc
        latency_ms = (time.perf_counter() - started) * 1000

        try:
            raw = data["choices"][0]["message"]["content"] or ""
        except (KeyError, IndexError, TypeError):
            logger.error("unexpected extraction response shape for %s", source_url)
            return ExtractionResponse(None, json.dumps(data, default=str), latency_ms=latency_ms)

        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError as exc:
            logger.warning("extraction for %s returned invalid JSON: %s", source_url, exc)
            return ExtractionResponse(None, raw, latency_ms=latency_ms)
        if not isinstance(parsed, dict):
            return ExtractionResponse(None, raw, latency_ms=latency_ms)

        response = ExtractionResponse(VacancyExtraction.from_dict(parsed), raw, latency_ms=latency_ms)
        if self.enable_caching:
            self._cache[key] = (self.clock(), response)
        return response
