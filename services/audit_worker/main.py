import html
from datetime import datetime, timezone

from fastapi import Depends, FastAPI, Query
from fastapi.responses import HTMLResponse, JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from config.logging_config import get_logger, setup_logging
from config.redis_config import RedisConnectionPool, health_check
from services.audit_worker.config import settings
from services.audit_worker.db import repository as repo
from services.audit_worker.db.models import Audit, AuditStatus
from services.audit_worker.db.session import dispose_engine, get_session, init_db
from services.audit_worker.errors import AuditNotFound, FailReason
from services.audit_worker.identity import BOT_HEADER_NAME, BOT_HEADER_VALUE, BOT_NAME, BOT_TOKEN, BOT_USER_AGENT, bot_profile
from services.audit_worker.lifecycle import AuditLifecycleCoordinator
from services.audit_worker.schemas.audit import (
    AuditListResponse,
    AuditResponse,
    ContinueResponse,
    CreateAuditRequest,
    CreateAuditResponse,
    FailAuditRequest,
    LifecycleResponse,
    PageDetail,
    PageListResponse,
    PageSummary,
    SweepResponse,
)

logger = get_logger(__name__)

app = FastAPI(title="Audit Worker", version="0.1.0")

_coordinator: AuditLifecycleCoordinator | None = None


def get_coordinator() -> AuditLifecycleCoordinator:
    global _coordinator
    if _coordinator is None:
        _coordinator = AuditLifecycleCoordinator()
    return _coordinator


@app.on_event("startup")
async def _startup() -> None:
    setup_logging(service_name="audit_worker", log_to_files=not settings.is_development())
    await init_db()


@app.on_event("shutdown")
async def _shutdown() -> None:
    global _coordinator
    if _coordinator is not None:
        await _coordinator.aclose()
        _coordinator = None
    await RedisConnectionPool.close_all()
    await dispose_engine()


async def _audit_response(session, audit: Audit) -> AuditResponse:
    analyzed, discovered = await repo.audit_stats(session, audit.id)
    avg_aeo, avg_geo = await repo.average_page_scores(session, audit.id)
    return AuditResponse(
        id=audit.id,
        project_id=audit.project_id,
        root_url=audit.root_url,
        site_description=audit.site_description,
        status=audit.status,
        created_at=audit.created_at,
        started_at=audit.started_at,
        finished_at=audit.finished_at,
        fail_reason=audit.fail_reason,
        fail_at=audit.fail_at,
        aeo_score=audit.aeo_score,
        geo_score=audit.geo_score,
        citations_status=audit.citations_status,
        config=audit.config_json or {},
        industry=audit.industry,
        industry_source=audit.industry_source,
        industry_confidence=audit.industry_confidence,
        pages_analyzed=analyzed,
        pages_discovered=discovered,
        avg_aeo_score=round(avg_aeo, 2) if avg_aeo is not None else None,
        avg_geo_score=round(avg_geo, 2) if avg_geo is not None else None,
    )


async def _lifecycle_response(audit_id: str, changed: bool) -> LifecycleResponse:
    async with get_session() as session:
        audit = await repo.get_audit(session, audit_id)
        if audit is None:
            raise AuditNotFound()
        return LifecycleResponse(audit_id=audit_id, status=audit.status, changed=changed, reason=audit.fail_reason)


@app.get("/health")
async def health() -> dict:
    body = {"status": "ok", "service": "audit_worker", "ts": datetime.now(timezone.utc).isoformat()}
    if settings.redis_url:
        body["redis"] = "ok" if await health_check(settings.redis_url) else "unavailable"
    return body


@app.get("/metrics")
async def metrics() -> Response:
    """Prometheus metrics endpoint."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


@app.post("/api/audits", response_model=CreateAuditResponse)
async def create_audit(payload: CreateAuditRequest, coordinator: AuditLifecycleCoordinator = Depends(get_coordinator)) -> CreateAuditResponse:
    return await coordinator.create_audit(payload)


@app.get("/api/audits", response_model=AuditListResponse)
async def list_audits(
    status: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
) -> AuditListResponse:
    async with get_session() as session:
        audits = await repo.list_audits(session, status=status, limit=limit, offset=offset)
        items = [await _audit_response(session, a) for a in audits]
    return AuditListResponse(items=items, limit=limit, offset=offset)


@app.get("/api/audits/{audit_id}", response_model=AuditResponse)
async def get_audit(audit_id: str) -> AuditResponse:
    async with get_session() as session:
        audit = await repo.get_audit(session, audit_id)
        if audit is None:
            raise AuditNotFound()
        return await _audit_response(session, audit)


@app.get("/api/audits/{audit_id}/pages", response_model=PageListResponse)
async def list_pages(audit_id: str) -> PageListResponse:
    async with get_session() as session:
        if await repo.get_audit(session, audit_id) is None:
            raise AuditNotFound()
        rows = await repo.list_analyzed_pages(session, audit_id)

    pages = [
        PageSummary(
            id=page.id,
            url=page.url,
            status_code=page.status_code,
            content_type=page.content_type,
            title=analysis.title,
            h1=analysis.h1,
            canonical=analysis.canonical,
            schema_types=analysis.schema_types or [],
            render_gap_ratio=analysis.render_gap_ratio,
            is_spa=analysis.is_spa,
            aeo_score=analysis.aeo_score,
            geo_score=analysis.geo_score,
            fetched_at=page.fetched_at,
            analyzed_at=analysis.analyzed_at,
        )
        for page, analysis in rows
    ]
    return PageListResponse(audit_id=audit_id, pages=pages, total=len(pages))


@app.get("/api/audits/{audit_id}/pages/{page_id}", response_model=PageDetail)
async def get_page(audit_id: str, page_id: str) -> PageDetail:
    async with get_session() as session:
        row = await repo.get_analyzed_page(session, audit_id, page_id)
    if row is None:
        raise AuditNotFound("page_not_found")
    page, analysis = row
    return PageDetail(
        id=page.id,
        url=page.url,
        status_code=page.status_code,
        content_type=page.content_type,
        title=analysis.title,
        h1=analysis.h1,
        canonical=analysis.canonical,
        schema_types=analysis.schema_types or [],
        render_gap_ratio=analysis.render_gap_ratio,
        is_spa=analysis.is_spa,
        aeo_score=analysis.aeo_score,
        geo_score=analysis.geo_score,
        fetched_at=page.fetched_at,
        analyzed_at=analysis.analyzed_at,
        jsonld=analysis.jsonld or [],
        checks=analysis.checks_json or [],
        html_static=page.html_static,
        html_rendered=page.html_rendered,
    )


@app.post("/api/audits/{audit_id}/continue", response_model=ContinueResponse)
async def continue_audit(audit_id: str, coordinator: AuditLifecycleCoordinator = Depends(get_coordinator)) -> ContinueResponse:
    result = await coordinator.continue_audit(audit_id)
    return ContinueResponse(
        audit_id=result.audit_id,
        action=result.action,
        status=result.status,
        reason=result.reason,
        pages_analyzed=result.pages_analyzed,
        pages_discovered=result.pages_discovered,
        passes=result.passes,
    )


@app.post("/api/audits/{audit_id}/recrawl", response_model=LifecycleResponse)
async def recrawl_audit(audit_id: str, coordinator: AuditLifecycleCoordinator = Depends(get_coordinator)) -> LifecycleResponse:
    changed = await coordinator.recrawl(audit_id)
    return await _lifecycle_response(audit_id, changed)


@app.post("/api/audits/{audit_id}/finalize", response_model=LifecycleResponse)
async def finalize_audit(audit_id: str, coordinator: AuditLifecycleCoordinator = Depends(get_coordinator)) -> LifecycleResponse:
    changed = await coordinator.finalize(audit_id, "admin_finalize", allow_from=(AuditStatus.RUNNING, AuditStatus.FAILED))
    return await _lifecycle_response(audit_id, changed)


@app.post("/api/audits/{audit_id}/fail", response_model=LifecycleResponse)
async def fail_audit(
    audit_id: str,
    payload: FailAuditRequest | None = None,
    coordinator: AuditLifecycleCoordinator = Depends(get_coordinator),
) -> LifecycleResponse:
    reason = (payload.reason if payload else None) or FailReason.ADMIN_FAIL
    changed = await coordinator.fail(audit_id, reason, allow_from=(AuditStatus.RUNNING, AuditStatus.COMPLETED))
    return await _lifecycle_response(audit_id, changed)


@app.post("/api/admin/finalize-stuck", response_model=SweepResponse)
async def finalize_stuck(coordinator: AuditLifecycleCoordinator = Depends(get_coordinator)) -> SweepResponse:
    return SweepResponse(**await coordinator.sweep_stuck_audits())


@app.get(f"/.well-known/{BOT_TOKEN}.json")
async def bot_identity() -> dict:
    return bot_profile()


@app.get("/bot", response_class=HTMLResponse)
async def bot_page() -> str:
    ua = html.escape(BOT_USER_AGENT)
    name = html.escape(BOT_NAME)
    return f"""<!doctype html>
<html lang="en">
<head><meta charset="utf-8"><title>{name}</title></head>
<body>
<h1>{name}</h1>
<p>{name} fetches public pages to measure how well a site can be read and cited by AI answer engines.</p>
<h2>Identification</h2>
<ul>
<li>User-Agent: <code>{ua}</code></li>
<li>Header: <code>{html.escape(BOT_HEADER_NAME)}: {html.escape(BOT_HEADER_VALUE)}</code></li>
<li>Contact: {html.escape(settings.bot_contact)}</li>
</ul>
<h2>robots.txt</h2>
<p>Rules under <code>User-agent: {name}</code> are applied first, then <code>User-agent: *</code>. Crawl-delay is honoured.</p>
<p>To opt out, add:</p>
<pre>User-agent: {name}
Disallow: /</pre>
</body>
</html>"""


@app.exception_handler(AuditNotFound)
async def not_found_handler(_, exc: AuditNotFound):
    return JSONResponse(status_code=404, content={"detail": exc.detail})


@app.exception_handler(ValueError)
async def value_error_handler(_, exc: ValueError):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(Exception)
async def unhandled_error_handler(request, exc: Exception):
    logger.error("Unhandled error", extra={"path": request.url.path, "error": str(exc)}, exc_info=exc)
    return JSONResponse(status_code=500, content={"detail": "internal_error"})


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("services.audit_worker.main:app", host="0.0.0.0", port=settings.port, reload=False)
