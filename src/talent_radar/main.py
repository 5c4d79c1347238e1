from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
from dataclasses import asdict, replace
from pathlib import Path

from .config import load_settings
from .db import recent_runs
from .runtime import build_runtime


def _print_json(payload: dict) -> None:
    print(json.dumps(payload, indent=2, sort_keys=True, default=str))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Job listing and company ingestion service")
    sub = parser.add_subparsers(dest="cmd", required=True)

    sub.add_parser("run", help="Start workers and the recurring scrape/health schedule")

    p_scrape = sub.add_parser("scrape", help="Scrape one or all enabled sites and wait for completion")
    p_scrape.add_argument("--site", default=None, help="Site key, e.g. dev.bg (default: every enabled site)")
    p_scrape.add_argument("--details", action="store_true", help="Also fetch listing detail pages")

    p_extract = sub.add_parser("extract", help="Run the extraction pipeline on a saved HTML page")
    p_extract.add_argument("html_file", help="Path to an HTML file")
    p_extract.add_argument("--url", default="", help="Source URL of the page")
    p_extract.add_argument("--profile", default="standard", help="Cleaning profile name")

    p_cleanup = sub.add_parser("cache-cleanup", help="Delete invalid or aged company source rows")
    p_cleanup.add_argument("--days", type=int, default=90, help="Age threshold in days")

    sub.add_parser("queue-health", help="Print queue health, cache stats and recent scrape runs")

    return parser


async def _run(settings) -> None:
    runtime = build_runtime(settings)
    runtime.workers.start()
    runtime.scheduler.start()
    try:
        await asyncio.Event().wait()
    finally:
        await runtime.aclose()


async def _scrape(settings, site: str | None, details: bool) -> dict:
    runtime = build_runtime(settings)
    try:
        sites = [site] if site else runtime.registry.enabled_sites()
        task_ids = [runtime.scheduler.trigger_scrape(s, triggered_by="cli", include_details=details) for s in sites]
        await runtime.workers.drain()
        tasks = [runtime.queue.get(task_id) for task_id in task_ids]
        return {
            "sites": sites,
            "tasks": [
                {**task.summary(), "result": task.result} for task in tasks if task is not None
            ],
        }
    finally:
        await runtime.aclose()


async def _extract(settings, html_file: Path, url: str, profile: str) -> dict:
    runtime = build_runtime(settings)
    try:
        options = replace(runtime.pipeline.options, cleaning_profile=profile)
        result = await runtime.pipeline.process(html_file.read_text(encoding="utf-8"), url, options)
        return {
            "success": result.success,
            "data": result.data.as_dict() if result.data else None,
            "quality_score": result.metadata.quality_score,
            "confidence_score": result.metadata.confidence_score,
            "retry_count": result.metadata.retry_count,
            "cleaned_text_length": len(result.cleaned_text),
            "errors": result.errors,
            "warnings": result.warnings,
        }
    finally:
        await runtime.aclose()


async def _cache_cleanup(settings, days: int) -> dict:
    runtime = build_runtime(settings)
    try:
        removed = await runtime.source_cache.cleanup_older_than(days)
        return {"removed": removed, "stats": await runtime.source_cache.stats()}
    finally:
        await runtime.aclose()


async def _queue_health(settings) -> dict:
    runtime = build_runtime(settings)
    try:
        return {
            "queue": runtime.scheduler.queue_health(),
            "queue_stats": runtime.scheduler.queue_stats(),
            "pipeline": runtime.pipeline.health_status(),
            "company_sources": await runtime.source_cache.stats(),
            "recent_runs": [asdict(run) for run in recent_runs(runtime.repo.conn, limit=5)],
        }
    finally:
        await runtime.aclose()


def main() -> None:
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    settings = load_settings()
    parser = build_parser()
    args = parser.parse_args()

    if args.cmd == "run":
        asyncio.run(_run(settings))
        return

    if args.cmd == "scrape":
        stats = asyncio.run(_scrape(settings, args.site, args.details))
        _print_json({"command": "scrape", **stats})
        return

    if args.cmd == "extract":
        stats = asyncio.run(_extract(settings, Path(args.html_file), args.url, args.profile))
        _print_json({"command": "extract", **stats})
        return

    if args.cmd == "cache-cleanup":
        stats = asyncio.run(_cache_cleanup(settings, args.days))
        _print_json({"command": "cache-cleanup", **stats})
        return

    if args.cmd == "queue-health":
        stats = asyncio.run(_queue_health(settings))
        _print_json({"command": "queue-health", **stats})
        return


if __name__ == "__main__":
    main()
