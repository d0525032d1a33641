from __future__ import annotations

import argparse
import json
import uuid
from pathlib import Path
from typing import Any

from citation_pipeline.citations import normalize_citation_url
from citation_pipeline.config import (
    RUN_REQUIRED_ENVS,
    Settings,
    assert_required_envs,
    load_settings,
    mask_secret,
    missing_envs,
)
from citation_pipeline.logging_setup import setup_logging
from citation_pipeline.models import Citation, CitationContext, ClientProfile, Competitor, JobStatus
from citation_pipeline.pipeline import JobProcessor, build_analyzer, build_processor, parse_payload
from citation_pipeline.storage import PipelineStore
from citation_pipeline.worker import (
    DEAD_LETTERED_META_KEY,
    ERRORS_META_KEY,
    LAST_DRAIN_META_KEY,
    PROCESSED_META_KEY,
    WORKER_STARTED_META_KEY,
    QueueWorker,
)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="citation-pipeline")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("run", help="Drain the job queue once")
    subparsers.add_parser("poll", help="Drain the job queue every POLL_INTERVAL_SECONDS")
    subparsers.add_parser("status", help="Show job counts and worker counters")
    subparsers.add_parser("healthcheck", help="Validate config and local runtime readiness")

    enqueue_parser = subparsers.add_parser("enqueue", help="Add a query job to the queue")
    enqueue_parser.add_argument("query", nargs="?", help="Query text to send to the platform")
    enqueue_parser.add_argument("--payload-file", type=Path, default=None, help="JSON file with a full payload")
    enqueue_parser.add_argument("--keyword", default="")
    enqueue_parser.add_argument("--intent", default="")
    enqueue_parser.add_argument("--platform", choices=("chatgpt", "perplexity"), default="chatgpt")
    enqueue_parser.add_argument("--brand", default="", help="Client brand name")
    enqueue_parser.add_argument("--brand-domain", default="")
    enqueue_parser.add_argument(
        "--competitor",
        action="append",
        default=[],
        metavar="NAME[=DOMAIN]",
        help="Competitor name, optionally with its domain; repeatable",
    )
    enqueue_parser.add_argument("--run-id", default=None)

    requeue_parser = subparsers.add_parser("requeue", help="Return a failed job to pending")
    requeue_parser.add_argument("job_id", type=int)

    analyze_parser = subparsers.add_parser("analyze-url", help="Analyze one URL and print the record")
    analyze_parser.add_argument("url")
    analyze_parser.add_argument("--query", default="", help="Query the page was cited for")
    analyze_parser.add_argument("--keyword", default="")
    analyze_parser.add_argument("--save", action="store_true", help="Also write the record to the store")

    return parser


def _parse_competitor(raw: str) -> Competitor:
    name, _, domain = raw.partition("=")
    return Competitor(name=name.strip(), domain=domain.strip())


def _payload_from_args(args: argparse.Namespace) -> dict[str, Any]:
    if args.payload_file is not None:
        payload = json.loads(args.payload_file.read_text(encoding="utf-8"))
    else:
        if not args.query:
            raise ValueError("enqueue needs a query or --payload-file")
        client = ClientProfile(
            name=args.brand,
            domain=args.brand_domain,
            competitors=[_parse_competitor(raw) for raw in args.competitor],
        )
        payload = {
            "query_text": args.query,
            "keyword": args.keyword,
            "intent": args.intent,
            "platform": args.platform,
            "client": client.model_dump(),
        }
    return parse_payload(payload).model_dump()


def _build_worker(settings: Settings, store: PipelineStore, processor: JobProcessor) -> QueueWorker:
    return QueueWorker(
        store,
        processor,
        batch_size=settings.batch_size,
        max_cycles=settings.max_cycles,
        stale_after_seconds=settings.stale_after_seconds,
        inter_job_delay_seconds=settings.inter_job_delay_seconds,
    )


def _cmd_run() -> int:
    settings = load_settings()
    setup_logging(settings.log_level, settings.log_file)
    assert_required_envs(RUN_REQUIRED_ENVS)

    with PipelineStore(settings.db_path) as store:
        processor = build_processor(settings, store)
        worker = _build_worker(settings, store, processor)
        try:
            result = worker.drain()
        finally:
            processor.close()

    print(
        "run summary:",
        f"cycles={result.cycles}",
        f"processed={result.processed_count}",
        f"errors={result.error_count}",
        f"dead_lettered={len(result.dead_lettered)}",
        f"reclaimed={result.reclaimed}",
    )
    if result.processed_count > 0 and result.error_count == result.processed_count:
        return 1
    return 0


def _cmd_poll() -> int:
    settings = load_settings()
    setup_logging(settings.log_level, settings.log_file)
    assert_required_envs(RUN_REQUIRED_ENVS)

    with PipelineStore(settings.db_path) as store:
        processor = build_processor(settings, store)
        worker = _build_worker(settings, store, processor)
        try:
            worker.poll_forever(settings.poll_interval_seconds)
        except KeyboardInterrupt:
            print("polling stopped")
        finally:
            processor.close()
    return 0


def _cmd_enqueue(args: argparse.Namespace) -> int:
    settings = load_settings()
    payload = _payload_from_args(args)
    run_id = args.run_id or uuid.uuid4().hex[:12]
    with PipelineStore(settings.db_path) as store:
        job = store.enqueue_job(payload, run_id=run_id, max_attempts=settings.max_attempts)
    print(f"enqueued job {job.id} (run {job.run_id}): {payload['query_text']}")
    return 0


def _cmd_status() -> int:
    settings = load_settings()
    with PipelineStore(settings.db_path) as store:
        counts = store.count_by_status()
        analyses = store.count_page_analyses()
        counters = {
            "processed": store.get_meta(PROCESSED_META_KEY) or "0",
            "errors": store.get_meta(ERRORS_META_KEY) or "0",
            "dead_lettered": store.get_meta(DEAD_LETTERED_META_KEY) or "0",
            "last_drain": store.get_meta(LAST_DRAIN_META_KEY) or "never",
            "worker_started": store.get_meta(WORKER_STARTED_META_KEY) or "never",
        }
        failed = store.list_jobs(JobStatus.FAILED, limit=10)

    print("jobs:", " ".join(f"{status}={count}" for status, count in counts.items()))
    print(f"page analyses: {analyses}")
    print("counters:", " ".join(f"{key}={value}" for key, value in counters.items()))
    for job in failed:
        print(f"- failed job {job.id} after {job.attempts} attempts: {job.last_error}")
    return 0


def _cmd_requeue(args: argparse.Namespace) -> int:
    settings = load_settings()
    with PipelineStore(settings.db_path) as store:
        job = store.requeue(args.job_id)
    print(f"job {job.id} requeued")
    return 0


def _cmd_analyze_url(args: argparse.Namespace) -> int:
    settings = load_settings()
    setup_logging(settings.log_level, settings.log_file)
    url = normalize_citation_url(args.url)
    if url is None:
        raise ValueError(f"not an analyzable http(s) URL: {args.url}")

    citation = Citation(url=url, position=1, source="manual")
    context = CitationContext(query_text=args.query or url, keyword=args.keyword)
    with PipelineStore(settings.db_path) as store:
        analyzer = build_analyzer(settings, store if args.save else None)
        try:
            analysis = analyzer.analyze(citation, context)
        finally:
            analyzer.fetcher.close()

    print(analysis.model_dump_json(indent=2))
    return 0


def _cmd_healthcheck() -> int:
    settings = load_settings()
    missing = missing_envs(RUN_REQUIRED_ENVS)
    if missing:
        print("missing required env vars:", ", ".join(missing))
        return 1

    try:
        with PipelineStore(settings.db_path):
            pass
    except Exception as exc:
        print(f"pipeline db check failed: {exc}")
        return 1

    print(f"openai key: {mask_secret(settings.openai_api_key)}")
    print(f"fetch backend: {settings.resolved_fetch_backend}")
    if settings.resolved_fetch_backend == "api" and not settings.scraping_api_key:
        print("fetch backend 'api' needs SCRAPINGBEE_API_KEY")
        return 1
    if not settings.perplexity_api_key:
        print("perplexity key not set; perplexity jobs will fail")
    print(f"search augmentation: {'enabled' if settings.search_enabled else 'disabled'}")
    print("healthcheck passed")
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    try:
        if args.command == "run":
            return _cmd_run()
        if args.command == "poll":
            return _cmd_poll()
        if args.command == "enqueue":
            return _cmd_enqueue(args)
        if args.command == "status":
            return _cmd_status()
        if args.command == "requeue":
            return _cmd_requeue(args)
        if args.command == "analyze-url":
            return _cmd_analyze_url(args)
        if args.command == "healthcheck":
            return _cmd_healthcheck()
    except ValueError as exc:
        print(exc)
        return 1

    parser.print_help()
    return 1


if __name__ == "__main__":
    raise SystemExit(main())
