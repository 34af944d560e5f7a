"""Command-line entry point for article extraction.

Usage:
    python -m article_harvest.cli scrape https://example.com/news/story
    python -m article_harvest.cli scrape https://example.com/news/story --timeout 20
    python -m article_harvest.cli -o text scrape https://example.com/news/story
    python -m article_harvest.cli --metrics-port 9102 scrape https://example.com/news/story
"""

import argparse
import asyncio
import json
import logging
import sys

import sentry_sdk
from prometheus_client import start_http_server

from article_harvest import __version__
from article_harvest.config import settings
from article_harvest.core.exceptions import (
    CloudflareBlockError,
    DeadlineExceededError,
    HarvestError,
    InvalidInputError,
)
from article_harvest.core.logging_config import configure_logging

logger = logging.getLogger(__name__)

# Most specific class first
EXIT_CODES: list[tuple[type[HarvestError], int]] = [
    (InvalidInputError, 2),
    (CloudflareBlockError, 3),
    (DeadlineExceededError, 4),
    (HarvestError, 1),
]


def exit_code_for(error: BaseException) -> int:
    for error_type, code in EXIT_CODES:
        if isinstance(error, error_type):
            return code
    return 1


def _init_sentry():
    if not settings.SENTRY_DSN:
        return
    sentry_sdk.init(
        dsn=settings.SENTRY_DSN,
        traces_sample_rate=settings.SENTRY_TRACES_SAMPLE_RATE,
        environment=settings.SENTRY_ENVIRONMENT,
        release=f"article-harvest@{__version__}",
    )


def _print_result(result, output: str):
    if output == "text":
        print(f"--- title ---\n{result.title}\n")
        if result.description:
            print(f"--- description ---\n{result.description}\n")
        print(f"--- content ---\n{result.content}\n")
        for image in result.images:
            print(f"[image] {image.url} {image.alt}".rstrip())
        for video in result.videos:
            print(f"[video] {video.provider} {video.url}")
        print(
            f"\n(strategy={result.strategy}, tier={result.tier}, "
            f"quality={result.quality.score}, degraded={result.degraded})"
        )
    else:
        print(json.dumps(result.model_dump(), indent=2, ensure_ascii=False))


def _print_error(error: HarvestError, output: str):
    if output == "text":
        print(f"Error ({type(error).__name__}): {error}", file=sys.stderr)
    else:
        payload = {
            "error": type(error).__name__,
            "message": str(error),
            "status_code": error.status_code,
        }
        print(json.dumps(payload, indent=2, ensure_ascii=False))


async def _cmd_scrape(args) -> int:
    """Scrape a single article URL."""
    from article_harvest.services.browser import browser_pool
    from article_harvest.services.scraper import scrape

    try:
        result = await scrape(args.url, timeout_ms=int(args.timeout * 1000), request_id=args.request_id)
    except HarvestError as e:
        _print_error(e, args.output)
        return exit_code_for(e)
    finally:
        await browser_pool.shutdown()

    _print_result(result, args.output)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="article-harvest",
        description="ArticleHarvest CLI: extract article content from web pages",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    parser.add_argument(
        "-o", "--output", default="json",
        choices=["json", "text"],
        help="Output format (default: json)",
    )
    parser.add_argument(
        "--log-format", default=settings.LOG_FORMAT,
        choices=["json", "text"],
        help="Log line format on stderr",
    )
    parser.add_argument(
        "--metrics-port", type=int, default=settings.METRICS_PORT,
        help="Expose Prometheus metrics on this port (0 = disabled)",
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # --- scrape ---
    scrape_parser = subparsers.add_parser("scrape", help="Extract one article")
    scrape_parser.add_argument("url", help="Article URL")
    scrape_parser.add_argument(
        "--timeout", type=float, default=settings.DEFAULT_TIMEOUT / 1000,
        help="Overall time budget in seconds",
    )
    scrape_parser.add_argument("--request-id", default=None, help="Request ID for log correlation")
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    configure_logging(
        log_format=args.log_format,
        log_level="DEBUG" if args.verbose else settings.LOG_LEVEL,
        stream=sys.stderr,
    )
    _init_sentry()
    if args.metrics_port:
        start_http_server(args.metrics_port)
        logger.info(f"Metrics exposed on :{args.metrics_port}")

    if args.command == "scrape":
        return asyncio.run(_cmd_scrape(args))
    return 1


if __name__ == "__main__":
    sys.exit(main())
