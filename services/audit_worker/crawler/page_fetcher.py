import asyncio
import re
from dataclasses import dataclass

import httpx
from playwright.async_api import async_playwright, Error as PlaywrightError

from config.logging_config import get_logger
from services.audit_worker.config import settings
from services.audit_worker.identity import ACCEPT_LANGUAGE, BOT_HEADER_NAME, BOT_HEADER_VALUE, BOT_USER_AGENT
from services.audit_worker.metrics import browser_renders_total

logger = get_logger(__name__)

SPA_TEXT_MAX_CHARS = 200
SPA_SHELL_MAX_CHARS = 100
SPA_MAX_DIVS = 3

_SCRIPT_RE = re.compile(r"<script[^>]*>[\s\S]*?</script>", re.I)
_STYLE_RE = re.compile(r"<style[^>]*>[\s\S]*?</style>", re.I)
_COMMENT_RE = re.compile(r"<!--[\s\S]*?-->")
_HEAD_RE = re.compile(r"<head[^>]*>[\s\S]*?</head>", re.I)
_BODY_RE = re.compile(r"<body[^>]*>([\s\S]*?)</body>", re.I)
_TAG_RE = re.compile(r"<[^>]+>")
_WS_RE = re.compile(r"\s+")
_ROOT_ID_RE = re.compile(r"<div[^>]*id=[\"'](root|app|__next|__nuxt)[^>]*>", re.I)
_DIV_RE = re.compile(r"<div", re.I)
_FRAMEWORK_MARKERS = (
    re.compile(r"data-react", re.I),
    re.compile(r"ng-version|ng-app", re.I),
    re.compile(r"__NEXT_DATA__|__NUXT__|__REACT_DEVTOOLS", re.I),
    re.compile(r"vue-app|v-cloak", re.I),
)


def _body_markup(html: str) -> str:
    content = _SCRIPT_RE.sub("", html)
    content = _STYLE_RE.sub("", content)
    content = _COMMENT_RE.sub("", content)
    content = _HEAD_RE.sub("", content)
    m = _BODY_RE.search(content)
    return m.group(1) if m else content


def visible_text(html: str) -> str:
    return _WS_RE.sub(" ", _TAG_RE.sub(" ", _body_markup(html))).strip()


def is_likely_spa(html: str | None) -> bool:
    """Thin body text plus a root container, a near-empty DOM, or framework markers."""
    if not html or len(html) < SPA_SHELL_MAX_CHARS:
        return True

    body = _body_markup(html)
    text = _WS_RE.sub(" ", _TAG_RE.sub(" ", body)).strip()
    if len(text) >= SPA_TEXT_MAX_CHARS:
        return False

    has_root = bool(_ROOT_ID_RE.search(body))
    few_divs = len(_DIV_RE.findall(body)) <= SPA_MAX_DIVS
    has_markers = any(p.search(html) for p in _FRAMEWORK_MARKERS)
    return has_root or few_divs or has_markers


def compute_render_gap(static_html: str | None, rendered_html: str | None) -> float | None:
    """Whitespace-normalized static/rendered length ratio in [0, 1]; None unless both exist."""
    if not static_html or not rendered_html:
        return None
    static_len = len(_WS_RE.sub(" ", static_html))
    rendered_len = len(_WS_RE.sub(" ", rendered_html))
    if rendered_len == 0:
        return None
    return min(1.0, static_len / rendered_len)


class RenderBudget:
    """Render quota shared by every fetch in one batch pass.

    Acquire and refund never await, so the count cannot interleave on the event loop.
    """

    def __init__(self, limit: int | None = None):
        self.limit = settings.max_render_pages if limit is None else limit
        self.used = 0

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.used)

    def try_acquire(self) -> bool:
        if self.used >= self.limit:
            return False
        self.used += 1
        return True

    def refund(self) -> None:
        if self.used > 0:
            self.used -= 1


class BrowserRenderer:
    """Headless Chromium shared across renders; launched on first use."""

    def __init__(self, timeout_ms: int | None = None, session_timeout_s: float | None = None):
        self.timeout_ms = timeout_ms or settings.render_timeout_ms
        self.session_timeout_s = session_timeout_s or settings.render_session_timeout_s
        self._playwright = None
        self._browser = None
        self._lock = asyncio.Lock()

    async def _ensure_browser(self):
        async with self._lock:
            if self._browser is None:
                self._playwright = await async_playwright().start()
                self._browser = await self._playwright.chromium.launch(headless=True)
        return self._browser

    async def render(self, url: str) -> str | None:
        try:
            return await asyncio.wait_for(self._render(url), timeout=self.session_timeout_s)
        except (asyncio.TimeoutError, PlaywrightError) as e:
            logger.warning("Render failed", extra={"url": url, "error": str(e)})
            return None

    async def _render(self, url: str) -> str | None:
        browser = await self._ensure_browser()
        context = await browser.new_context(
            user_agent=BOT_USER_AGENT,
            locale="en-US",
            extra_http_headers={BOT_HEADER_NAME: BOT_HEADER_VALUE, "Accept-Language": ACCEPT_LANGUAGE},
        )
        try:
            page = await context.new_page()
            await page.goto(url, wait_until="networkidle", timeout=self.timeout_ms)
            html = await page.content()
            return html or None
        finally:
            await context.close()

    async def close(self) -> None:
        if self._browser is not None:
            await self._browser.close()
            self._browser = None
        if self._playwright is not None:
            await self._playwright.stop()
            self._playwright = None


@dataclass
class FetchResult:
    url: str
    static_html: str | None
    rendered_html: str | None = None
    render_gap_ratio: float | None = None
    is_spa: bool = False
    status_code: int | None = None
    content_type: str | None = None
    final_url: str | None = None
    error: str | None = None

    @property
    def found(self) -> bool:
        return self.static_html is not None

    @property
    def html(self) -> str | None:
        return self.rendered_html or self.static_html


class PageFetcher:
    def __init__(self, client: httpx.AsyncClient, renderer=None, max_render_index: int | None = None):
        self.client = client
        self.renderer = renderer
        self.max_render_index = settings.max_render_pages if max_render_index is None else max_render_index

    async def fetch_static(self, url: str) -> FetchResult:
        try:
            r = await self.client.get(url, follow_redirects=True, timeout=settings.static_timeout_s)
        except httpx.HTTPError as e:
            return FetchResult(url=url, static_html=None, error=e.__class__.__name__)

        content_type = r.headers.get("content-type", "")
        result = FetchResult(url=url, static_html=None, status_code=r.status_code, content_type=content_type, final_url=str(r.url))
        if r.status_code >= 400:
            result.error = f"http_{r.status_code}"
            return result
        if "text/html" not in content_type.lower():
            result.error = "not_html"
            return result
        result.static_html = r.text
        return result

    async def fetch_smart(self, url: str, page_index: int, render_budget: RenderBudget, is_homepage: bool = False) -> FetchResult:
        result = await self.fetch_static(url)
        if not result.found:
            return result

        result.is_spa = is_likely_spa(result.static_html)
        if not result.is_spa or self.renderer is None:
            return result

        if page_index >= self.max_render_index and not is_homepage:
            return result
        if not render_budget.try_acquire():
            logger.info("SPA render skipped, quota used", extra={"url": url, "used": render_budget.used})
            browser_renders_total.labels(outcome="quota").inc()
            return result

        rendered = await self.renderer.render(url)
        if rendered:
            result.rendered_html = rendered
            result.render_gap_ratio = compute_render_gap(result.static_html, rendered)
            browser_renders_total.labels(outcome="ok").inc()
        else:
            render_budget.refund()
            browser_renders_total.labels(outcome="failed").inc()
        return result
