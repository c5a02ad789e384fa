"""Command-line entry point: ``python -m local_search <command>``."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys

from local_search.config import configure_logging, settings
from local_search.errors import LocalSearchError
from local_search.jobs.models import FetchFileParams, FetchRepoParams, JobStatus
from local_search.retrieval.models import SearchOptions
from local_search.service import LocalSearchService

logger = logging.getLogger("local_search")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="local-search", description="Local semantic search over your documents")
    parser.add_argument("--log-level", default=settings.log_level, help="Logging level (default: %(default)s)")
    sub = parser.add_subparsers(dest="command", required=True)

    p_search = sub.add_parser("search", help="Search the index")
    p_search.add_argument("query")
    p_search.add_argument("--limit", type=int, default=settings.search_default_limit)
    p_search.add_argument("--min-score", type=float, default=0.0)
    p_search.add_argument("--domain", action="append", dest="domains", help="Restrict to a domain tag (repeatable)")

    p_file = sub.add_parser("fetch-file", help="Download a URL and index it")
    p_file.add_argument("url")
    p_file.add_argument("filename")
    p_file.add_argument("--no-overwrite", action="store_true")
    p_file.add_argument("--no-index", action="store_true", help="Save without indexing")

    p_repo = sub.add_parser("fetch-repo", help="Clone a repository and index its docs")
    p_repo.add_argument("repo_url")
    p_repo.add_argument("--branch")

    p_remove = sub.add_parser("remove", help="Remove a file from the index")
    p_remove.add_argument("file_path")

    p_watch = sub.add_parser("watch", help="Watch a folder and keep the index in sync")
    p_watch.add_argument("folder", nargs="?", default=None)
    p_watch.add_argument("--no-scan", action="store_true", help="Skip indexing files already present")

    sub.add_parser("stats", help="Show index statistics")
    return parser


async def _run_job(service: LocalSearchService, job_id: str) -> int:
    job = await service.wait_for_job(job_id)
    if job is None:
        print(f"Job {job_id} disappeared", file=sys.stderr)
        return 1
    if job.status is JobStatus.FAILED:
        print(f"Job {job_id} failed: {job.error}", file=sys.stderr)
        return 1
    print(f"Job {job_id} completed: {job.result.model_dump_json() if job.result else '{}'}")
    return 0


async def _main(args: argparse.Namespace) -> int:
    service = LocalSearchService.from_settings()
    try:
        if args.command == "search":
            response = await service.search(
                args.query,
                SearchOptions(limit=args.limit, min_score=args.min_score, domain_filter=args.domains),
            )
            for hit in response.results:
                print(f"{hit.score:.3f}  {hit}")
            print(f"{response.total_results} results in {response.search_time_ms:.1f}ms")
            if response.recommendation is not None:
                rec = response.recommendation
                print(f"Try: {rec.suggested_query!r} ({rec.strategy.value}, confidence {rec.confidence:.2f})")
            return 0

        if args.command == "fetch-file":
            params = FetchFileParams(
                url=args.url,
                filename=args.filename,
                overwrite=not args.no_overwrite,
                index_after_save=not args.no_index,
            )
            return await _run_job(service, service.fetch_file(params))

        if args.command == "fetch-repo":
            return await _run_job(service, service.fetch_repo(FetchRepoParams(repo_url=args.repo_url, branch=args.branch)))

        if args.command == "remove":
            print(f"Removed {await service.remove_file(args.file_path)} chunks")
            return 0

        if args.command == "stats":
            print((await service.index_stats()).model_dump_json(indent=2))
            return 0

        if args.command == "watch":
            watcher = await service.start_watching(args.folder, scan_existing=not args.no_scan)
            logger.info("Watching %s; press Ctrl+C to stop", watcher.root)
            try:
                await asyncio.Event().wait()
            finally:
                await service.stop_watching()
        return 0
    except LocalSearchError as exc:
        print(f"{type(exc).__name__}: {exc}", file=sys.stderr)
        return 1
    finally:
        await service.aclose()


def main(argv: list[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)
    configure_logging(args.log_level)
    try:
        return asyncio.run(_main(args))
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
