"""Tests for the article-harvest command line."""

import json
from unittest.mock import AsyncMock, patch

from article_harvest.cli import build_parser, exit_code_for, main
from article_harvest.core.exceptions import (
    CloudflareBlockError,
    DeadlineExceededError,
    ExtractionEmptyError,
    InsufficientBudgetError,
    InvalidInputError,
)
from article_harvest.schemas.article import ExtractionResult, Image


class TestExitCodes:
    def test_mapping(self):
        assert exit_code_for(InvalidInputError("x", "empty URL")) == 2
        assert exit_code_for(CloudflareBlockError("example.com")) == 3
        assert exit_code_for(DeadlineExceededError(20, 21)) == 4
        assert exit_code_for(InsufficientBudgetError(5, 12)) == 1
        assert exit_code_for(ExtractionEmptyError("https://x/")) == 1

    def test_non_harvest_error(self):
        assert exit_code_for(RuntimeError("boom")) == 1


class TestParser:
    def test_defaults(self):
        args = build_parser().parse_args(["scrape", "https://example.com/story"])
        assert args.command == "scrape"
        assert args.url == "https://example.com/story"
        assert args.timeout == 60.0
        assert args.output == "json"
        assert args.request_id is None

    def test_options(self):
        args = build_parser().parse_args(
            ["-o", "text", "scrape", "https://example.com/story", "--timeout", "20", "--request-id", "abc"]
        )
        assert args.output == "text"
        assert args.timeout == 20.0
        assert args.request_id == "abc"


class TestMain:
    def test_no_command_prints_help(self, capsys):
        assert main([]) == 1
        assert "usage" in capsys.readouterr().out

    def test_success(self, capsys):
        result = ExtractionResult(
            title="Budget vote",
            content="The council approved the budget.",
            images=[Image(url="https://example.com/hero.jpg", alt="Council")],
            strategy="readability",
            tier="static",
        )
        with patch("article_harvest.services.scraper.scrape", AsyncMock(return_value=result)) as scrape_mock, \
                patch("article_harvest.services.browser.browser_pool.shutdown", AsyncMock()) as shutdown:
            code = main(["--metrics-port", "0", "scrape", "https://example.com/story", "--timeout", "20"])

        assert code == 0
        scrape_mock.assert_awaited_once_with("https://example.com/story", timeout_ms=20000, request_id=None)
        shutdown.assert_awaited_once()
        payload = json.loads(capsys.readouterr().out)
        assert payload["title"] == "Budget vote"
        assert payload["images"] == [{"url": "https://example.com/hero.jpg", "alt": "Council"}]

    def test_blocked_exit_code_and_error_payload(self, capsys):
        error = CloudflareBlockError("example.com", "CF_BLOCKED page")
        with patch("article_harvest.services.scraper.scrape", AsyncMock(side_effect=error)), \
                patch("article_harvest.services.browser.browser_pool.shutdown", AsyncMock()) as shutdown:
            code = main(["--metrics-port", "0", "scrape", "https://example.com/story"])

        assert code == 3
        shutdown.assert_awaited_once()
        payload = json.loads(capsys.readouterr().out)
        assert payload["error"] == "CloudflareBlockError"
        assert payload["status_code"] == 451

    def test_text_output(self, capsys):
        result = ExtractionResult(title="Budget vote", content="Body text", tier="browser", degraded=True)
        with patch("article_harvest.services.scraper.scrape", AsyncMock(return_value=result)), \
                patch("article_harvest.services.browser.browser_pool.shutdown", AsyncMock()):
            code = main(["-o", "text", "--metrics-port", "0", "scrape", "https://example.com/story"])

        assert code == 0
        out = capsys.readouterr().out
        assert "Budget vote" in out
        assert "degraded=True" in out
