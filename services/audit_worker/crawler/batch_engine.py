import asyncio
import time
from dataclasses import dataclass
from urllib.parse import urlparse

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError

from config.logging_config import crawl_events, get_logger
from services.audit_worker.analyzers.extract import extract_signals
from services.audit_worker.config import settings
from services.audit_worker.crawler.page_fetcher import FetchResult, PageFetcher, RenderBudget
from services.audit_worker.crawler.robots_policy import RobotsPolicyCache
from services.audit_worker.crawler.urls import crawlable_links, locale_prefix, normalize_url, root_host_of
from services.audit_worker.db import repository as repo
from services.audit_worker.db.models import AuditPage, AuditPageAnalysis, AuditStatus, SkipReason
from services.audit_worker.db.session import get_session
from services.audit_worker.errors import AuditNotFound, FailReason
from services.audit_worker.metrics import batch_pass_duration, organic_links_inserted_total, pages_processed_total

logger = get_logger(__name__)

CONTINUE = "continue"
FINALIZE = "finalize"
FAIL = "fail"

ANALYZED = "analyzed"
SKIPPED = "skipped"
DEFERRED = "deferred"
DROPPED = "dropped"


@dataclass
class Decision:
    action: str
    reason: str | None = None


@dataclass
class BatchResult:
    audit_id: str
    action: str
    status: str
    reason: str | None = None
    pages_analyzed: int = 0
    pages_discovered: int = 0
    passes: int = 0


def page_ceiling(config: dict | None) -> int:
    max_pages = (config or {}).get("max_pages") or settings.target_max_pages
    return max(1, min(settings.target_max_pages, int(max_pages)))


def decide_next(analyzed: int, queue_empty: bool, elapsed_ms: float, progressed: bool, max_pages: int, cfg=settings) -> Decision:
    """What to do after a pass: keep going, finalize, or fail."""
    if analyzed >= cfg.target_min_pages:
        return Decision(FINALIZE, "target_met")
    if analyzed >= max_pages:
        return Decision(FINALIZE, "max_pages_reached")
    if queue_empty:
        if analyzed > 0:
            return Decision(FINALIZE, "queue_empty")
        return Decision(FAIL, FailReason.NO_CRAWLABLE_PAGES)
    if elapsed_ms >= cfg.hard_time_ms and analyzed >= cfg.timeout_min_pages:
        return Decision(FINALIZE, "hard_time_reached")
    # external HTTP ceiling: finalize with what we have
    if elapsed_ms >= cfg.safety_valve_ms and analyzed >= cfg.safety_valve_min_pages:
        return Decision(FINALIZE, "safety_valve")
    if elapsed_ms >= cfg.hard_time_ms:
        return Decision(FAIL, FailReason.timeout_insufficient_pages(analyzed))
    if not progressed:
        if analyzed > 0:
            return Decision(FINALIZE, "no_progress")
        return Decision(FAIL, FailReason.NO_CRAWLABLE_PAGES)
    return Decision(CONTINUE)


def _truncate(html: str | None) -> str | None:
    if html is None:
        return None
    return html[: settings.html_max_chars]


class _PassContext:
    def __init__(self, audit, analyzed_before: int):
        self.audit_id = audit.id
        self.homepage = normalize_url(audit.root_url)
        self.root_host = root_host_of(audit.root_url)
        self.prefix = locale_prefix(urlparse(audit.root_url).path)
        self.analyzed_before = analyzed_before
        self.analyzed = 0
        self.skipped = 0
        self.started = time.monotonic()
        self.render_budget = RenderBudget()

    @property
    def analyzed_total(self) -> int:
        return self.analyzed_before + self.analyzed


class BatchContinuationEngine:
    """Drains an audit's frontier in time-boxed passes until it can be finalized or failed."""

    def __init__(
        self,
        lifecycle,
        fetcher: PageFetcher,
        robots: RobotsPolicyCache,
        sleep=asyncio.sleep,
        now=repo.utcnow,
        monotonic=time.monotonic,
    ):
        self.lifecycle = lifecycle
        self.fetcher = fetcher
        self.robots = robots
        self.sleep = sleep
        self.now = now
        self.monotonic = monotonic

    def _elapsed_ms(self, started_at) -> float:
        return (self.now() - repo.as_utc(started_at)).total_seconds() * 1000

    async def continue_audit(self, audit_id: str) -> BatchResult:
        passes = 0
        while True:
            async with get_session() as session:
                audit = await repo.get_audit(session, audit_id)
                if audit is None:
                    raise AuditNotFound()
                if audit.status != AuditStatus.RUNNING.value:
                    analyzed, discovered = await repo.audit_stats(session, audit_id)
                    return BatchResult(audit_id, "not_running", audit.status, audit.fail_reason, analyzed, discovered, passes)
                analyzed, _ = await repo.audit_stats(session, audit_id)
                max_pages = page_ceiling(audit.config_json)
                queue = await repo.load_frontier(session, audit_id, max_pages - analyzed)

            if not queue:
                if analyzed >= max_pages:
                    decision = Decision(FINALIZE, "max_pages_reached")
                elif analyzed > 0:
                    decision = Decision(FINALIZE, "queue_empty")
                else:
                    decision = Decision(FAIL, FailReason.NO_CRAWLABLE_PAGES)
                return await self._apply(audit_id, decision, passes)

            ctx = await self._run_pass(audit, queue, analyzed)
            passes += 1

            async with get_session() as session:
                analyzed, discovered = await repo.audit_stats(session, audit_id)
                queue_empty = not await repo.load_frontier(session, audit_id, 1)

            elapsed_ms = self._elapsed_ms(audit.started_at)
            crawl_events.log_batch_pass(audit_id, analyzed, discovered, int(elapsed_ms), passes)

            decision = decide_next(
                analyzed=analyzed,
                queue_empty=queue_empty,
                elapsed_ms=elapsed_ms,
                progressed=(ctx.analyzed + ctx.skipped) > 0,
                max_pages=max_pages,
            )
            if decision.action == CONTINUE:
                continue
            return await self._apply(audit_id, decision, passes)

    async def _apply(self, audit_id: str, decision: Decision, passes: int) -> BatchResult:
        if decision.action == FINALIZE:
            await self.lifecycle.finalize(audit_id, decision.reason)
        else:
            await self.lifecycle.fail(audit_id, decision.reason)

        async with get_session() as session:
            audit = await repo.get_audit(session, audit_id)
            analyzed, discovered = await repo.audit_stats(session, audit_id)
        return BatchResult(
            audit_id=audit_id,
            action=decision.action,
            status=audit.status if audit else "unknown",
            reason=decision.reason,
            pages_analyzed=analyzed,
            pages_discovered=discovered,
            passes=passes,
        )

    async def _run_pass(self, audit, queue: list[AuditPage], analyzed_before: int) -> _PassContext:
        ctx = _PassContext(audit, analyzed_before)
        ctx.started = self.monotonic()
        sem = asyncio.Semaphore(settings.concurrency)

        async def _guarded(index: int, page: AuditPage):
            async with sem:
                try:
                    outcome = await self._process_item(ctx, index, page)
                except Exception:
                    logger.exception("Page processing failed", extra={"audit_id": ctx.audit_id, "url": page.url})
                    outcome = DROPPED
                pages_processed_total.labels(outcome=outcome).inc()
                return outcome

        with batch_pass_duration.time():
            await asyncio.gather(*[_guarded(i, p) for i, p in enumerate(queue)])
        return ctx

    async def _process_item(self, ctx: _PassContext, index: int, page: AuditPage) -> str:
        if (self.monotonic() - ctx.started) * 1000 >= settings.per_request_budget_ms:
            return DEFERRED

        delay = (index % settings.concurrency) * settings.item_stagger_ms / 1000
        delay = max(delay, await self.robots.crawl_delay(page.url))
        if delay:
            await self.sleep(delay)

        if not await self.robots.is_allowed(page.url):
            await self._skip(ctx, page, SkipReason.ROBOTS_DISALLOWED.value)
            return SKIPPED

        is_homepage = page.url == ctx.homepage or urlparse(page.url).path in ("", "/")
        result = await self.fetcher.fetch_smart(page.url, index, ctx.render_budget, is_homepage=is_homepage)
        if not result.found:
            await self._skip(ctx, page, SkipReason.FETCH_FAILED.value, result.status_code)
            return SKIPPED

        if not await self._store(ctx, page, result):
            return DROPPED
        ctx.analyzed += 1

        if ctx.analyzed_total < settings.target_min_pages:
            await self._discover_from(ctx, page, result)
        return ANALYZED

    async def _skip(self, ctx: _PassContext, page: AuditPage, reason: str, status_code: int | None = None) -> None:
        crawl_events.log_page_skipped(ctx.audit_id, page.url, reason)
        async with get_session() as session:
            await repo.mark_page_skipped(session, page.id, reason, status_code)
            await session.commit()
        ctx.skipped += 1

    async def _store(self, ctx: _PassContext, page: AuditPage, result: FetchResult) -> bool:
        """Page columns and its analysis row land together or not at all."""
        signals = extract_signals(page.url, result.html or "")
        now = self.now()
        try:
            async with get_session() as session:
                async with session.begin():
                    await session.execute(
                        update(AuditPage)
                        .where(AuditPage.id == page.id)
                        .values(
                            status_code=result.status_code,
                            content_type=result.content_type,
                            html_static=_truncate(result.static_html),
                            html_rendered=_truncate(result.rendered_html),
                            fetched_at=now,
                        )
                        .execution_options(synchronize_session=False)
                    )
                    session.add(AuditPageAnalysis(
                        id=repo.new_id(),
                        page_id=page.id,
                        title=signals.title,
                        h1=signals.h1,
                        canonical=signals.canonical,
                        schema_types=signals.schema_types,
                        jsonld=signals.jsonld,
                        checks_json=[],
                        aeo_score=None,
                        geo_score=None,
                        render_gap_ratio=result.render_gap_ratio,
                        is_spa=result.is_spa,
                        analyzed_at=now,
                    ))
        except SQLAlchemyError as e:
            logger.warning("Dropped page after failed write", extra={"audit_id": ctx.audit_id, "url": page.url, "error": str(e)})
            return False
        return True

    async def _discover_from(self, ctx: _PassContext, page: AuditPage, result: FetchResult) -> None:
        base = result.final_url or page.url
        links = crawlable_links(result.html or "", base, ctx.root_host, ctx.prefix, settings.max_links_per_page)
        links = [u for u in links if u != page.url]
        if not links:
            return
        try:
            async with get_session() as session:
                inserted = await repo.insert_pages(session, ctx.audit_id, links, limit=settings.max_new_links_per_page)
                await session.commit()
        except SQLAlchemyError as e:
            logger.warning("Organic discovery insert failed", extra={"audit_id": ctx.audit_id, "url": page.url, "error": str(e)})
            return
        if inserted:
            organic_links_inserted_total.inc(inserted)
