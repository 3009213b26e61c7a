import asyncio
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from urllib.parse import urlparse

import httpx
import tldextract
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt

from config.logging_config import get_logger
from services.audit_worker.config import settings
from services.audit_worker.crawler.urls import locale_prefix, origin_of
from services.audit_worker.errors import FailReason, RetryableStatus
from services.audit_worker.identity import build_client
from services.audit_worker.metrics import precheck_outcomes_total, precheck_retries_total

logger = get_logger(__name__)

# login-walled apps, never content sites
NON_CONTENT_HOSTS = frozenset({
    "github.com",
    "app.figma.com",
    "figma.com",
    "canva.com",
    "notion.so",
    "app.notion.so",
    "miro.com",
    "app.miro.com",
})

KNOWN_REDIRECTS = {
    "omnicom.com": "https://www.omnicomgroup.com",
    "ford.com": "https://corporate.ford.com",
}

CRITICAL_PHRASES = (
    "domain parked",
    "this domain is for sale",
    "buy this domain",
    "unsupported service",
    "not configured for this service",
)

ERROR_PHRASES = CRITICAL_PHRASES + (
    "coming soon",
    "page cannot be displayed",
    "under construction",
    "site not found",
    "error 404",
    "access denied",
)

MIN_PAGE_CHARS = 500
RETRYABLE_STATUSES = (429, 521)
ENGLISH_LOCALES = frozenset({"en", "us", "en-us", "en_us"})
ENGLISH_CANDIDATES = ("/en-us", "/en", "/us")

_extract = tldextract.TLDExtract(suffix_list_urls=())

_DOCTYPE_RE = re.compile(r"<!doctype\s+html", re.I)
_TITLE_RE = re.compile(r"<title[\s>]", re.I)
_HEAD_RE = re.compile(r"<head[\s>]", re.I)
_BODY_RE = re.compile(r"<body[\s>]", re.I)


@dataclass
class PrecheckResult:
    ok: bool
    final_url: str | None = None
    reason: str | None = None


def is_non_content_platform(url: str) -> bool:
    host = (urlparse(url).hostname or "").lower()
    if not host:
        return False
    if host in NON_CONTENT_HOSTS:
        return True
    ext = _extract(host)
    registered = f"{ext.domain}.{ext.suffix}" if ext.suffix else ext.domain
    return registered in NON_CONTENT_HOSTS or any(host.endswith("." + h) for h in NON_CONTENT_HOSTS)


def known_redirect(url: str) -> str | None:
    host = (urlparse(url).hostname or "").lower()
    return KNOWN_REDIRECTS.get(host)


def has_html_skeleton(html: str) -> bool:
    if _DOCTYPE_RE.search(html) and _TITLE_RE.search(html):
        return True
    return bool(_HEAD_RE.search(html) and _BODY_RE.search(html))


def is_empty_or_error_page(html: str) -> bool:
    """Proper HTML documents fail only on critical phrases; bare bodies fail on the broad list or size."""
    html = html or ""
    lower = html.lower()
    if has_html_skeleton(html):
        return any(p in lower for p in CRITICAL_PHRASES)
    if len(html) < MIN_PAGE_CHARS:
        return True
    return any(p in lower for p in ERROR_PHRASES)


def parse_retry_after(value: str | None, now: datetime | None = None) -> float | None:
    """Retry-After as seconds or an HTTP date; None when missing or unparseable."""
    if not value:
        return None
    value = value.strip()
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when is None:
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    now = now or datetime.now(timezone.utc)
    return max(0.0, (when - now).total_seconds())


def backoff_delay_s(attempt: int, base_ms: int, max_ms: int) -> float:
    """base * 2^(attempt-1), capped; attempt counts from 1."""
    delay_ms = base_ms * (2 ** max(0, attempt - 1))
    return min(delay_ms, max_ms) / 1000.0


class DomainPrecheckResolver:
    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        sleep=asyncio.sleep,
        max_retries: int | None = None,
        retry_base_ms: int | None = None,
        retry_max_ms: int | None = None,
    ):
        self.client = client
        self.sleep = sleep
        self.max_retries = settings.precheck_max_retries if max_retries is None else max_retries
        self.retry_base_ms = settings.precheck_retry_base_ms if retry_base_ms is None else retry_base_ms
        self.retry_max_ms = settings.precheck_retry_max_ms if retry_max_ms is None else retry_max_ms

    async def check(self, url: str) -> PrecheckResult:
        if self.client is not None:
            result = await self._check(self.client, url)
        else:
            async with build_client(settings.precheck_timeout_s) as client:
                result = await self._check(client, url)
        precheck_outcomes_total.labels(outcome="ok" if result.ok else FailReason.family(result.reason or "")).inc()
        return result

    async def _check(self, client: httpx.AsyncClient, url: str) -> PrecheckResult:
        if is_non_content_platform(url):
            return PrecheckResult(ok=False, reason=FailReason.NON_CONTENT_PLATFORM)

        redirect = known_redirect(url)
        if redirect:
            return PrecheckResult(ok=True, final_url=redirect)

        try:
            response = await self._fetch(client, url)
        except RetryableStatus as e:
            return PrecheckResult(ok=False, reason=FailReason.precheck_http(e.status_code))
        except httpx.HTTPError as e:
            return PrecheckResult(ok=False, reason=f"{FailReason.PRECHECK_ERROR}: {e.__class__.__name__}")

        if response.status_code >= 400:
            return PrecheckResult(ok=False, reason=FailReason.precheck_http(response.status_code))

        if is_empty_or_error_page(response.text or ""):
            return PrecheckResult(ok=False, reason=FailReason.EMPTY_OR_ERROR_PAGE)

        final_url = str(response.url)
        prefix = locale_prefix(urlparse(final_url).path)
        if prefix and prefix.lstrip("/") not in ENGLISH_LOCALES:
            return await self._resolve_locale(client, final_url, prefix)

        return PrecheckResult(ok=True, final_url=final_url if final_url != url else None)

    def _wait(self, retry_state) -> float:
        delay = backoff_delay_s(retry_state.attempt_number, self.retry_base_ms, self.retry_max_ms)
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        if isinstance(exc, RetryableStatus) and exc.retry_after is not None:
            delay = min(exc.retry_after, self.retry_max_ms / 1000.0)
        return delay

    async def _fetch(self, client: httpx.AsyncClient, url: str) -> httpx.Response:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_retries + 1),
            wait=self._wait,
            retry=retry_if_exception_type(RetryableStatus),
            sleep=self.sleep,
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                r = await client.get(url, follow_redirects=True)
                if r.status_code in RETRYABLE_STATUSES:
                    retry_after = parse_retry_after(r.headers.get("retry-after")) if r.status_code == 429 else None
                    precheck_retries_total.labels(status_code=str(r.status_code)).inc()
                    logger.info(
                        "Precheck got transient status",
                        extra={"url": url, "status": r.status_code, "attempt": attempt.retry_state.attempt_number},
                    )
                    raise RetryableStatus(r.status_code, retry_after)
                return r

    async def _resolve_locale(self, client: httpx.AsyncClient, final_url: str, prefix: str) -> PrecheckResult:
        origin = origin_of(final_url)
        rest = urlparse(final_url).path[len(prefix):] or "/"
        if not rest.startswith("/"):
            rest = "/" + rest

        for candidate_prefix in ENGLISH_CANDIDATES:
            candidate = f"{origin}{candidate_prefix}{rest}"
            if await self._reachable(client, candidate):
                logger.info("Precheck rewrote locale", extra={"url": final_url, "final_url": candidate})
                return PrecheckResult(ok=True, final_url=candidate)

        if await self._reachable(client, origin + "/"):
            return PrecheckResult(ok=True, final_url=origin + "/")

        return PrecheckResult(ok=False, reason=FailReason.LOCALE_UNRESOLVED)

    async def _reachable(self, client: httpx.AsyncClient, url: str) -> bool:
        try:
            r = await client.get(url, follow_redirects=True)
        except httpx.HTTPError:
            return False
        if r.status_code >= 400:
            return False
        # a redirect back into a foreign locale does not count
        landed = locale_prefix(urlparse(str(r.url)).path)
        if landed and landed.lstrip("/") not in ENGLISH_LOCALES:
            return False
        return not is_empty_or_error_page(r.text or "")
