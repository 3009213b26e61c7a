import asyncio
from datetime import timedelta

import httpx

from config.logging_config import crawl_events, get_logger
from config.redis_config import JsonCache, RedisConnectionPool
from services.audit_worker.config import settings
from services.audit_worker.crawler.batch_engine import BatchContinuationEngine, BatchResult
from services.audit_worker.crawler.discovery import URLDiscoveryEngine
from services.audit_worker.crawler.page_fetcher import BrowserRenderer, PageFetcher
from services.audit_worker.crawler.precheck import DomainPrecheckResolver
from services.audit_worker.crawler.robots_policy import RobotsPolicyCache
from services.audit_worker.crawler.urls import root_host_of
from services.audit_worker.db import repository as repo
from services.audit_worker.db.models import REASON_MAX_LENGTH, Audit, AuditStatus
from services.audit_worker.db.session import get_session
from services.audit_worker.errors import AuditNotFound, DiscoveryError, FailReason
from services.audit_worker.events.handoffs import publish_diagnostics_requested, publish_prompt_cache_requested
from services.audit_worker.identity import build_client
from services.audit_worker.industry import resolve_industry
from services.audit_worker.metrics import audits_failed_total, audits_finalized_total
from services.audit_worker.schemas.audit import CreateAuditRequest, CreateAuditResponse

logger = get_logger(__name__)

DEFAULT_MAX_PAGES = 200

FINALIZE_STUCK = "auto_finalize_stuck"
FINALIZE_PARTIAL = "auto_finalize_partial"


def compute_site_scores(avg_aeo: float | None, avg_geo: float | None, avg_gap: float | None, cfg=settings) -> tuple[float | None, float | None]:
    """Average page scores minus render-gap penalties; GEO is penalized harder and earlier than AEO."""
    aeo, geo = avg_aeo, avg_geo
    if avg_gap is not None:
        if avg_gap < cfg.gap_severe:
            if aeo is not None:
                aeo -= cfg.aeo_severe_penalty
            if geo is not None:
                geo -= cfg.geo_severe_penalty
        elif avg_gap < cfg.gap_moderate:
            if geo is not None:
                geo -= cfg.geo_moderate_penalty
    if aeo is not None:
        aeo = round(max(0.0, aeo), 2)
    if geo is not None:
        geo = round(max(0.0, geo), 2)
    return aeo, geo


class AuditLifecycleCoordinator:
    """Owns audit state transitions and the background work that drives them."""

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        precheck: DomainPrecheckResolver | None = None,
        robots: RobotsPolicyCache | None = None,
        discovery: URLDiscoveryEngine | None = None,
        fetcher: PageFetcher | None = None,
        renderer=None,
        sleep=asyncio.sleep,
        now=repo.utcnow,
    ):
        self.client = client or build_client(settings.page_timeout_s)
        self.now = now
        self.renderer = renderer if renderer is not None else BrowserRenderer()

        cache = None
        if settings.redis_url:
            cache = JsonCache(RedisConnectionPool.get_client(settings.redis_url))

        self.robots = robots or RobotsPolicyCache(self.client, cache=cache)
        self.precheck = precheck or DomainPrecheckResolver(self.client, sleep=sleep)
        self.discovery = discovery or URLDiscoveryEngine(self.client, self.robots, sleep=sleep)
        self.fetcher = fetcher or PageFetcher(self.client, renderer=self.renderer)
        self.batch = BatchContinuationEngine(self, self.fetcher, self.robots, sleep=sleep, now=now)
        self._background: set[asyncio.Task] = set()

    def spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    @property
    def pending_tasks(self) -> int:
        return len(self._background)

    async def drain(self) -> None:
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def aclose(self) -> None:
        await self.drain()
        if hasattr(self.renderer, "close"):
            await self.renderer.close()
        await self.client.aclose()

    async def create_audit(self, req: CreateAuditRequest) -> CreateAuditResponse:
        audit_id = repo.new_id()
        root_url = req.root_url
        config = dict(req.config or {})
        config["max_pages"] = req.max_pages or config.get("max_pages") or DEFAULT_MAX_PAGES
        now = self.now()

        result = await self.precheck.check(root_url)
        if not result.ok:
            async with get_session() as session:
                session.add(Audit(
                    id=audit_id,
                    project_id=req.project_id,
                    root_url=root_url,
                    site_description=req.site_description,
                    status=AuditStatus.FAILED.value,
                    created_at=now,
                    started_at=now,
                    finished_at=now,
                    fail_reason=result.reason,
                    fail_at=now,
                    config_json=config,
                ))
                await session.commit()
            crawl_events.log_precheck_failed(audit_id, root_url, result.reason)
            audits_failed_total.labels(reason=FailReason.family(result.reason or "")).inc()
            return CreateAuditResponse(audit_id=audit_id, status=AuditStatus.FAILED.value, reason=result.reason)

        if result.final_url and result.final_url != root_url:
            logger.info("Precheck redirected root", extra={"audit_id": audit_id, "url": root_url, "final_url": result.final_url})
            root_url = result.final_url

        lock = resolve_industry(root_host_of(root_url), req.site_description, override=config.get("industry"))
        async with get_session() as session:
            session.add(Audit(
                id=audit_id,
                project_id=req.project_id,
                root_url=root_url,
                site_description=req.site_description,
                status=AuditStatus.RUNNING.value,
                created_at=now,
                started_at=now,
                config_json=config,
                industry=lock.value,
                industry_source=lock.source,
                industry_confidence=lock.confidence,
            ))
            await session.commit()

        crawl_events.log_audit_created(audit_id, root_url, lock.value)
        self.spawn(self.run_discovery_and_batch(audit_id))
        return CreateAuditResponse(audit_id=audit_id, status=AuditStatus.RUNNING.value)

    async def run_discovery_and_batch(self, audit_id: str) -> BatchResult | None:
        async with get_session() as session:
            audit = await repo.get_audit(session, audit_id)
        if audit is None or audit.status != AuditStatus.RUNNING.value:
            return None

        try:
            discovered = await self.discovery.discover(audit.root_url)
        except DiscoveryError as e:
            await self.fail(audit_id, f"{FailReason.DISCOVER_ERROR}: {e}")
            return None
        except Exception as e:
            logger.exception("Discovery crashed", extra={"audit_id": audit_id})
            await self.fail(audit_id, f"{FailReason.DISCOVER_ERROR}: {e.__class__.__name__}")
            return None

        async with get_session() as session:
            inserted = await repo.insert_pages(session, audit_id, discovered.urls)
            await session.commit()
        crawl_events.log_discovery_finished(audit_id, discovered.source, len(discovered.urls), inserted)

        try:
            return await self.batch.continue_audit(audit_id)
        except Exception:
            # left running; the stuck sweep picks it up
            logger.exception("Batch processing crashed", extra={"audit_id": audit_id})
            return None

    async def continue_audit(self, audit_id: str) -> BatchResult:
        return await self.batch.continue_audit(audit_id)

    async def finalize(self, audit_id: str, reason: str = "manual", allow_from=(AuditStatus.RUNNING,)) -> bool:
        async with get_session() as session:
            audit = await repo.get_audit(session, audit_id)
            if audit is None:
                raise AuditNotFound()
            avg_aeo, avg_geo = await repo.average_page_scores(session, audit_id)
            avg_gap = await repo.average_render_gap(session, audit_id)
            aeo, geo = compute_site_scores(avg_aeo, avg_geo, avg_gap)
            now = self.now()
            changed = await repo.transition_status(
                session,
                audit_id,
                allow_from,
                status=AuditStatus.COMPLETED.value,
                aeo_score=aeo,
                geo_score=geo,
                finished_at=now,
                fail_reason=None,
                fail_at=None,
            )
            await session.commit()
            analyzed = await repo.count_analyzed(session, audit_id)

        if not changed:
            logger.info("Finalize skipped, audit not in an allowed state", extra={"audit_id": audit_id, "reason": reason})
            return False

        crawl_events.log_audit_finalized(audit_id, reason, aeo, geo, avg_gap)
        audits_finalized_total.labels(reason=reason).inc()
        self._spawn_handoffs(audit_id, audit.root_url, audit.industry, analyzed)
        return True

    async def fail(self, audit_id: str, reason: str, allow_from=(AuditStatus.RUNNING,)) -> bool:
        reason = reason[:REASON_MAX_LENGTH]
        now = self.now()
        async with get_session() as session:
            if await repo.get_audit(session, audit_id) is None:
                raise AuditNotFound()
            changed = await repo.transition_status(
                session,
                audit_id,
                allow_from,
                status=AuditStatus.FAILED.value,
                fail_reason=reason,
                fail_at=now,
                finished_at=now,
            )
            await session.commit()

        if changed:
            crawl_events.log_audit_failed(audit_id, reason)
            audits_failed_total.labels(reason=FailReason.family(reason)).inc()
        return changed

    def _spawn_handoffs(self, audit_id: str, root_url: str, industry: str | None, analyzed: int) -> None:
        self.spawn(self._contained("diagnostics", audit_id, publish_diagnostics_requested(audit_id, root_url, analyzed)))
        self.spawn(self._contained("prompt_cache", audit_id, publish_prompt_cache_requested(audit_id, root_host_of(root_url), industry)))
        self.spawn(self._contained("citations", audit_id, self._queue_citations(audit_id)))

    async def _contained(self, name: str, audit_id: str, coro) -> None:
        try:
            await coro
        except Exception as e:
            logger.warning(f"Handoff {name} failed", extra={"audit_id": audit_id, "error": str(e)})

    async def _queue_citations(self, audit_id: str) -> bool:
        async with get_session() as session:
            queued = await repo.queue_citations(session, audit_id)
            await session.commit()
        return queued

    async def sweep_stuck_audits(self) -> dict:
        now = self.now()
        cutoff = now - timedelta(minutes=settings.stuck_min_age_min)
        async with get_session() as session:
            stale = await repo.list_stale_running(session, cutoff, settings.stuck_sweep_limit)
            candidates = [(a.id, a.started_at, await repo.count_analyzed(session, a.id)) for a in stale]

        finalized = failed = left = 0
        for audit_id, started_at, analyzed in candidates:
            age_min = (now - repo.as_utc(started_at)).total_seconds() / 60
            if analyzed >= settings.stuck_finalize_min_pages:
                finalized += int(await self.finalize(audit_id, FINALIZE_STUCK))
            elif analyzed > 0 and age_min >= settings.stuck_partial_age_min:
                finalized += int(await self.finalize(audit_id, FINALIZE_PARTIAL))
            elif analyzed == 0 and age_min >= settings.stuck_min_age_min:
                failed += int(await self.fail(audit_id, FailReason.NO_PAGES_AFTER_10MIN))
            else:
                left += 1

        crawl_events.log_stuck_sweep(len(candidates), finalized, failed)
        return {"checked": len(candidates), "finalized": finalized, "failed": failed, "left_running": left}

    async def recrawl(self, audit_id: str) -> bool:
        now = self.now()
        async with get_session() as session:
            if await repo.get_audit(session, audit_id) is None:
                raise AuditNotFound()
            await repo.delete_audit_pages(session, audit_id)
            # industry columns are left as locked at creation
            changed = await repo.transition_status(
                session,
                audit_id,
                (AuditStatus.RUNNING, AuditStatus.COMPLETED, AuditStatus.FAILED),
                status=AuditStatus.RUNNING.value,
                started_at=now,
                finished_at=None,
                fail_reason=None,
                fail_at=None,
                aeo_score=None,
                geo_score=None,
                citations_status=None,
            )
            await session.commit()

        if changed:
            logger.info("Audit recrawl started", extra={"audit_id": audit_id})
            self.spawn(self.run_discovery_and_batch(audit_id))
        return changed