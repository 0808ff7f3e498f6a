"""Keyless scraper module.

This module provides :class:`ScraperModule`, which implements the
``scraper`` protocol type for public websites that need no credentials.
"Authentication" here means presenting a believable browser identity:
a ``User-Agent`` preset (or custom string), browser-like ``Accept``
headers, and any custom headers the operator adds.

When ``respectRobotsTxt`` is on, the site's ``robots.txt`` is fetched
during authentication and kept in the record (``_robotsTxt``); requests to
disallowed paths fail with ``VALIDATION_ERROR`` and never reach the site.

Helpers :func:`extract_links` and :func:`extract_text` turn fetched HTML
into absolute links and readable text.
"""

from __future__ import annotations

import asyncio
import logging
import random
from html.parser import HTMLParser
from typing import Any, Optional
from urllib.parse import urljoin, urlsplit
from urllib.robotparser import RobotFileParser

import httpx

from handshake_engine.auth.base import ProtocolModule, field_bool, field_int, field_json
from handshake_engine.auth.redirect import url_field
from handshake_engine.client.pipeline import RetryPolicy
from handshake_engine.exceptions import HandshakeError
from handshake_engine.models import (
    AuthFlowStep,
    AuthInjection,
    CredentialRecord,
    ErrorCode,
    ExecutionContext,
    ExecutionResult,
    FieldDefinition,
    FieldKind,
    FieldOption,
    HealthCheckResult,
    ProtocolCapabilities,
    ProtocolMetadata,
    StepKind,
    TokenStatus,
    VisibilityRule,
)

logger = logging.getLogger(__name__)

ROBOTS_KEY = "_robotsTxt"

USER_AGENTS: dict[str, str] = {
    "chrome_windows": (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
    ),
    "chrome_mac": (
        "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
    ),
    "chrome_linux": (
        "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
    ),
    "firefox_windows": "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:121.0) Gecko/20100101 Firefox/121.0",
    "firefox_mac": "Mozilla/5.0 (Macintosh; Intel Mac OS X 10.15; rv:121.0) Gecko/20100101 Firefox/121.0",
    "safari_mac": (
        "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/605.1.15 "
        "(KHTML, like Gecko) Version/17.2 Safari/605.1.15"
    ),
    "edge_windows": (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36 Edg/120.0.0.0"
    ),
}

BROWSER_HEADERS = {
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,image/webp,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.5",
    "Upgrade-Insecure-Requests": "1",
}


class _LinkCollector(HTMLParser):
    def __init__(self) -> None:
        super().__init__()
        self.hrefs: list[str] = []

    def handle_starttag(self, tag: str, attrs: list[tuple[str, Optional[str]]]) -> None:
        if tag == "a":
            for name, value in attrs:
                if name == "href" and value:
                    self.hrefs.append(value)


class _TextCollector(HTMLParser):
    _SKIP = ("script", "style", "noscript")

    def __init__(self) -> None:
        super().__init__()
        self.parts: list[str] = []
        self._depth = 0

    def handle_starttag(self, tag: str, attrs: list[tuple[str, Optional[str]]]) -> None:
        if tag in self._SKIP:
            self._depth += 1

    def handle_endtag(self, tag: str) -> None:
        if tag in self._SKIP and self._depth:
            self._depth -= 1

    def handle_data(self, data: str) -> None:
        if not self._depth:
            self.parts.append(data)


def extract_links(html: str, base_url: str) -> list[str]:
    """Absolute, de-duplicated ``<a href>`` targets, skipping fragments and ``javascript:``."""
    collector = _LinkCollector()
    collector.feed(html)
    links: list[str] = []
    for href in collector.hrefs:
        if href.startswith(("#", "javascript:", "mailto:")):
            continue
        absolute = urljoin(base_url, href)
        if absolute not in links:
            links.append(absolute)
    return links


def extract_text(html: str) -> str:
    """Visible text of *html* with whitespace collapsed."""
    collector = _TextCollector()
    collector.feed(html)
    return " ".join(" ".join(collector.parts).split())


def robots_parser(robots_txt: str) -> RobotFileParser:
    parser = RobotFileParser()
    parser.parse(robots_txt.splitlines())
    return parser


class ScraperModule(ProtocolModule):
    """Fetch public web pages with a browser-like identity."""

    def metadata(self) -> ProtocolMetadata:
        return ProtocolMetadata(
            type="scraper",
            display_name="Keyless Scraper",
            description="Public websites without credentials, with browser user agents and robots.txt compliance.",
            version="1.0.0",
            capabilities=ProtocolCapabilities(),
            use_cases=["Price monitoring", "Public data collection", "Content aggregation"],
            example_platforms=["Public websites", "News sites", "Documentation portals"],
        )

    def required_fields(self) -> list[FieldDefinition]:
        return [
            url_field(
                "baseUrl",
                "Target Website",
                required=True,
                placeholder="https://example.com",
                group="target",
                order=1,
            ),
            FieldDefinition(
                id="customUserAgent",
                label="Custom User Agent",
                required=True,
                group="browser",
                order=3,
                visible_when=VisibilityRule(field="userAgent", value="custom"),
            ),
        ]

    def optional_fields(self) -> list[FieldDefinition]:
        retry = VisibilityRule(field="retryOnFailure", value=True)
        return [
            FieldDefinition(
                id="userAgent",
                label="User Agent",
                kind=FieldKind.SELECT,
                default="chrome_windows",
                options=[
                    FieldOption(value="chrome_windows", label="Chrome (Windows)"),
                    FieldOption(value="chrome_mac", label="Chrome (macOS)"),
                    FieldOption(value="chrome_linux", label="Chrome (Linux)"),
                    FieldOption(value="firefox_windows", label="Firefox (Windows)"),
                    FieldOption(value="firefox_mac", label="Firefox (macOS)"),
                    FieldOption(value="safari_mac", label="Safari (macOS)"),
                    FieldOption(value="edge_windows", label="Edge (Windows)"),
                    FieldOption(value="custom", label="Custom"),
                ],
                group="browser",
                order=2,
            ),
            FieldDefinition(
                id="rotateUserAgents",
                label="Rotate User Agents",
                kind=FieldKind.CHECKBOX,
                default=False,
                description="Pick a random browser preset for each request.",
                group="browser",
                order=4,
            ),
            FieldDefinition(
                id="respectRobotsTxt",
                label="Respect robots.txt",
                kind=FieldKind.CHECKBOX,
                default=True,
                group="rate-limiting",
                order=5,
            ),
            FieldDefinition(
                id="followRedirects",
                label="Follow Redirects",
                kind=FieldKind.CHECKBOX,
                default=True,
                group="requests",
                order=6,
            ),
            FieldDefinition(
                id="maxRedirects",
                label="Max Redirects",
                kind=FieldKind.NUMBER,
                default=5,
                min=0,
                max=20,
                group="requests",
                order=7,
            ),
            FieldDefinition(
                id="timeout",
                label="Timeout (ms)",
                kind=FieldKind.NUMBER,
                default=30000,
                min=1000,
                max=300000,
                group="requests",
                order=8,
            ),
            FieldDefinition(
                id="customHeaders",
                label="Custom Headers",
                kind=FieldKind.JSON,
                placeholder='{"Referer": "https://example.com"}',
                group="advanced",
                order=9,
            ),
            FieldDefinition(
                id="retryOnFailure",
                label="Retry on Failure",
                kind=FieldKind.CHECKBOX,
                default=True,
                group="reliability",
                order=10,
            ),
            FieldDefinition(
                id="maxRetries",
                label="Max Retries",
                kind=FieldKind.NUMBER,
                default=3,
                min=0,
                max=10,
                group="reliability",
                order=11,
                visible_when=retry,
            ),
            FieldDefinition(
                id="retryDelay",
                label="Retry Delay (ms)",
                kind=FieldKind.NUMBER,
                default=2000,
                min=100,
                max=60000,
                group="reliability",
                order=12,
                visible_when=retry,
            ),
        ]

    # ------------------------------------------------------------------ #
    # Identity
    # ------------------------------------------------------------------ #

    def user_agent(self, record: CredentialRecord) -> str:
        if field_bool(record, "rotateUserAgents", False):
            return random.choice(list(USER_AGENTS.values()))
        preset = str(self.setting(record, "userAgent"))
        if preset == "custom":
            return str(record.get("customUserAgent") or USER_AGENTS["chrome_windows"])
        return USER_AGENTS.get(preset, USER_AGENTS["chrome_windows"])

    def default_headers(self, record: CredentialRecord) -> dict[str, str]:
        return dict(BROWSER_HEADERS)

    def inject_authentication(self, context: ExecutionContext) -> AuthInjection:
        record = context.credentials
        headers = {"User-Agent": self.user_agent(record)}
        headers.update({str(k): str(v) for k, v in field_json(record, "customHeaders").items()})
        return AuthInjection(headers=headers)

    def retry_policy(self, record: CredentialRecord) -> Optional[RetryPolicy]:
        if not field_bool(record, "retryOnFailure", True):
            return RetryPolicy.disabled()
        return RetryPolicy(
            max_retries=field_int(record, "maxRetries", 3),
            retry_delay_ms=field_int(record, "retryDelay", 2000),
        )

    # ------------------------------------------------------------------ #
    # robots.txt
    # ------------------------------------------------------------------ #

    async def fetch_robots_txt(self, record: CredentialRecord) -> str:
        """Download ``/robots.txt`` for the target site.

        A missing file (any non-2xx status) means everything is allowed and
        yields an empty string.
        """
        parts = urlsplit(str(record.get("baseUrl")))
        robots_url = f"{parts.scheme}://{parts.netloc}/robots.txt"
        try:
            response = await self.pipeline.client.get(
                robots_url,
                headers={"User-Agent": self.user_agent(record)},
                timeout=self.pipeline.timeout_seconds(10000),
            )
        except httpx.HTTPError as exc:
            logger.warning("Could not fetch %s: %s", robots_url, exc)
            return ""
        if not response.is_success:
            return ""
        return response.text

    def is_allowed(self, record: CredentialRecord, url: str) -> bool:
        """Whether *url* may be fetched under the stored robots.txt rules."""
        if not field_bool(record, "respectRobotsTxt", True):
            return True
        robots_txt = record.fields.get(ROBOTS_KEY)
        if not robots_txt:
            return True
        return robots_parser(str(robots_txt)).can_fetch(self.user_agent(record), url)

    # ------------------------------------------------------------------ #
    # Flow and execution
    # ------------------------------------------------------------------ #

    async def authenticate(self, record: CredentialRecord, step: int = 1) -> AuthFlowStep:
        base_url = str(record.get("baseUrl"))
        respect = field_bool(record, "respectRobotsTxt", True)
        data: dict[str, Any] = {"base_url": base_url, "respect_robots_txt": respect}
        if respect:
            robots_txt = await self.fetch_robots_txt(record)
            record.fields[ROBOTS_KEY] = robots_txt
            parser = robots_parser(robots_txt)
            data["crawl_delay"] = parser.crawl_delay(self.user_agent(record))
            data["sitemaps"] = parser.site_maps() or []
        return AuthFlowStep(
            kind=StepKind.COMPLETE,
            title="Scraper Configured",
            description=f"Ready to scrape {urlsplit(base_url).hostname}",
            data=data,
        )

    async def execute_request(self, context: ExecutionContext) -> ExecutionResult:
        return await self._fetch(context, self.retry_policy(context.credentials))

    async def _fetch(
        self, context: ExecutionContext, retry_policy: Optional[RetryPolicy]
    ) -> ExecutionResult:
        record = context.credentials
        url = context.url or str(record.get("baseUrl", ""))
        if not url.lower().startswith(("http://", "https://")):
            url = urljoin(str(record.get("baseUrl", "")), url)
        if not self.is_allowed(record, url):
            return ExecutionResult.failure(
                f"URL blocked by robots.txt: {url}", ErrorCode.VALIDATION_ERROR, status_code=403
            )

        call = context.model_copy(
            update={
                "url": url,
                "timeout_ms": context.timeout_ms or field_int(record, "timeout", 30000),
                "follow_redirects": (
                    context.follow_redirects
                    if context.follow_redirects is not None
                    else field_bool(record, "followRedirects", True)
                ),
                "max_redirects": (
                    context.max_redirects
                    if context.max_redirects is not None
                    else field_int(record, "maxRedirects", 5)
                ),
            }
        )
        try:
            injection = self.inject_authentication(call)
        except HandshakeError as exc:
            return ExecutionResult.failure(str(exc), exc.error_code or ErrorCode.VALIDATION_ERROR)
        return await self.pipeline.execute(
            call,
            injection,
            default_headers=self.default_headers(record),
            retry_policy=retry_policy,
        )

    async def scrape_many(
        self, record: CredentialRecord, urls: list[str], concurrency: int = 1
    ) -> dict[str, ExecutionResult]:
        """GET each of *urls*, at most *concurrency* at a time."""
        semaphore = asyncio.Semaphore(max(1, concurrency))

        async def _one(url: str) -> ExecutionResult:
            async with semaphore:
                return await self.execute_request(ExecutionContext(url=url, credentials=record))

        results = await asyncio.gather(*(_one(url) for url in urls))
        return dict(zip(urls, results))

    async def health_check(self, record: CredentialRecord) -> HealthCheckResult:
        """``HEAD`` the target site once, without retries."""
        result = await self._fetch(
            ExecutionContext(
                url=str(record.get("baseUrl", "")),
                method="HEAD",
                credentials=record,
                timeout_ms=field_int(record, "timeout", 30000),
            ),
            RetryPolicy.disabled(),
        )
        return HealthCheckResult(
            healthy=result.success,
            message=(
                f"Website reachable ({result.status_code})"
                if result.success
                else result.error or f"Website returned {result.status_code}"
            ),
            latency_ms=result.duration_ms,
            token_status=TokenStatus.VALID,
            details={"status_code": result.status_code},
        )
