import asyncio
from datetime import timedelta

import httpx
import pytest
import respx
from sqlalchemy import func, select

from services.audit_worker import lifecycle
from services.audit_worker.db import repository as repo
from services.audit_worker.db.models import REASON_MAX_LENGTH, Audit, AuditPage, AuditPageAnalysis, AuditStatus
from services.audit_worker.db.session import get_session
from services.audit_worker.lifecycle import AuditLifecycleCoordinator, compute_site_scores
from services.audit_worker.schemas.audit import CreateAuditRequest


class NullRenderer:
    async def render(self, url):
        return None

    async def close(self):
        pass


async def _no_sleep(_):
    return None


def _coordinator(client):
    return AuditLifecycleCoordinator(client=client, renderer=NullRenderer(), sleep=_no_sleep)


async def _audit(status=AuditStatus.RUNNING, age_min=0, industry=None, industry_source=None):
    audit_id = repo.new_id()
    started = repo.utcnow() - timedelta(minutes=age_min)
    async with get_session() as session:
        session.add(Audit(
            id=audit_id,
            root_url="https://acme.com/",
            status=status.value,
            created_at=started,
            started_at=started,
            config_json={"max_pages": 200},
            industry=industry,
            industry_source=industry_source,
        ))
        await session.commit()
    return audit_id


async def _analyzed_pages(audit_id, n, aeo=None, geo=None, gap=None):
    now = repo.utcnow()
    async with get_session() as session:
        for i in range(n):
            page_id = repo.new_id()
            session.add(AuditPage(id=page_id, audit_id=audit_id, url=f"https://acme.com/p{i}", discovered_at=now, fetched_at=now))
            session.add(AuditPageAnalysis(
                id=repo.new_id(),
                page_id=page_id,
                schema_types=[],
                jsonld=[],
                checks_json=[],
                aeo_score=aeo,
                geo_score=geo,
                render_gap_ratio=gap,
                is_spa=False,
                analyzed_at=now,
            ))
        await session.commit()


def test_site_scores_penalize_render_gap():
    assert compute_site_scores(80.0, 70.0, 0.9) == (80.0, 70.0)
    assert compute_site_scores(80.0, 70.0, 0.4) == (80.0, 65.0)
    assert compute_site_scores(80.0, 70.0, 0.2) == (75.0, 60.0)
    assert compute_site_scores(80.0, 70.0, None) == (80.0, 70.0)


def test_site_scores_floor_and_missing():
    assert compute_site_scores(3.0, 4.0, 0.1) == (0.0, 0.0)
    assert compute_site_scores(None, None, 0.1) == (None, None)


def test_site_scores_never_improve_with_worse_gap():
    gaps = [0.95, 0.6, 0.49, 0.31, 0.29, 0.05]
    scores = [compute_site_scores(70.0, 70.0, g) for g in gaps]
    for (aeo_a, geo_a), (aeo_b, geo_b) in zip(scores, scores[1:]):
        assert aeo_b <= aeo_a
        assert geo_b <= geo_a


@pytest.mark.asyncio
async def test_concurrent_page_inserts_keep_one_row(db):
    audit_id = await _audit()

    async def _insert():
        async with get_session() as session:
            created = await repo.insert_page_if_absent(session, audit_id, "https://acme.com/faq")
            await session.commit()
            return created

    results = await asyncio.gather(*[_insert() for _ in range(4)])
    async with get_session() as session:
        count = await repo.count_discovered(session, audit_id)
    assert count == 1
    assert sorted(results) == [False, False, False, True]


@pytest.mark.asyncio
async def test_finalize_is_compare_and_set(db):
    audit_id = await _audit()
    await _analyzed_pages(audit_id, 3, aeo=80.0, geo=70.0, gap=0.2)
    async with httpx.AsyncClient() as client:
        coordinator = _coordinator(client)
        first, second = await asyncio.gather(
            coordinator.finalize(audit_id, "target_met"),
            coordinator.finalize(audit_id, "target_met"),
        )
        await coordinator.drain()

    assert sorted([first, second]) == [False, True]
    async with get_session() as session:
        audit = await repo.get_audit(session, audit_id)
    assert audit.status == AuditStatus.COMPLETED.value
    assert (audit.aeo_score, audit.geo_score) == (75.0, 60.0)
    assert audit.citations_status == "queued"


@pytest.mark.asyncio
async def test_fail_only_from_allowed_states(db):
    audit_id = await _audit(status=AuditStatus.COMPLETED)
    async with httpx.AsyncClient() as client:
        coordinator = _coordinator(client)
        assert await coordinator.fail(audit_id, "late_failure") is False
        assert await coordinator.fail(audit_id, "admin_fail", allow_from=(AuditStatus.COMPLETED,)) is True

    async with get_session() as session:
        audit = await repo.get_audit(session, audit_id)
    assert audit.status == AuditStatus.FAILED.value
    assert audit.fail_reason == "admin_fail"


@pytest.mark.asyncio
async def test_long_fail_reason_fits_its_column(db):
    audit_id = await _audit()
    reason = "discover_error: no urls found, final origin https://" + "x" * 400 + ".com"
    async with httpx.AsyncClient() as client:
        assert await _coordinator(client).fail(audit_id, reason) is True

    async with get_session() as session:
        audit = await repo.get_audit(session, audit_id)
    assert len(audit.fail_reason) == REASON_MAX_LENGTH
    assert audit.fail_reason == reason[:REASON_MAX_LENGTH]


@pytest.mark.asyncio
async def test_failing_handoff_does_not_affect_completion(db, monkeypatch):
    async def _broken(*args, **kwargs):
        raise RuntimeError("queue down")

    monkeypatch.setattr(lifecycle, "publish_diagnostics_requested", _broken)
    audit_id = await _audit()
    await _analyzed_pages(audit_id, 2)

    async with httpx.AsyncClient() as client:
        coordinator = _coordinator(client)
        assert await coordinator.finalize(audit_id, "queue_empty") is True
        await coordinator.drain()

    async with get_session() as session:
        audit = await repo.get_audit(session, audit_id)
    assert audit.status == AuditStatus.COMPLETED.value
    assert audit.citations_status == "queued"
    assert audit.aeo_score is None


@pytest.mark.asyncio
async def test_sweep_stuck_audits(db):
    stuck = await _audit(age_min=15)
    await _analyzed_pages(stuck, 25)
    partial = await _audit(age_min=35)
    await _analyzed_pages(partial, 5)
    young_partial = await _audit(age_min=15)
    await _analyzed_pages(young_partial, 5)
    empty = await _audit(age_min=15)
    fresh = await _audit(age_min=2)

    async with httpx.AsyncClient() as client:
        coordinator = _coordinator(client)
        summary = await coordinator.sweep_stuck_audits()
        await coordinator.drain()

    assert summary == {"checked": 4, "finalized": 2, "failed": 1, "left_running": 1}
    async with get_session() as session:
        statuses = {a: (await repo.get_audit(session, a)) for a in (stuck, partial, young_partial, empty, fresh)}
    assert statuses[stuck].status == AuditStatus.COMPLETED.value
    assert statuses[partial].status == AuditStatus.COMPLETED.value
    assert statuses[young_partial].status == AuditStatus.RUNNING.value
    assert statuses[empty].status == AuditStatus.FAILED.value
    assert statuses[empty].fail_reason == "timeout_no_pages_after_10min"
    assert statuses[fresh].status == AuditStatus.RUNNING.value


@pytest.mark.asyncio
async def test_recrawl_resets_pages_and_keeps_industry(db):
    audit_id = await _audit(status=AuditStatus.COMPLETED, industry="retail", industry_source="override")
    await _analyzed_pages(audit_id, 3)

    with respx.mock:
        respx.route().respond(500)
        async with httpx.AsyncClient() as client:
            coordinator = _coordinator(client)
            assert await coordinator.recrawl(audit_id) is True
            assert coordinator.pending_tasks == 1
            await coordinator.drain()

    async with get_session() as session:
        audit = await repo.get_audit(session, audit_id)
        analyses = (await session.execute(select(func.count(AuditPageAnalysis.id)))).scalar_one()
    assert audit.status == AuditStatus.FAILED.value
    assert audit.fail_reason.startswith("discover_error")
    assert (audit.industry, audit.industry_source) == ("retail", "override")
    assert analyses == 0


@pytest.mark.asyncio
async def test_create_audit_fails_fast_on_precheck(db):
    with respx.mock:
        respx.get("https://acme.com/").respond(503)
        async with httpx.AsyncClient() as client:
            coordinator = _coordinator(client)
            response = await coordinator.create_audit(CreateAuditRequest(url="acme.com/"))

    assert response.status == AuditStatus.FAILED.value
    assert response.reason == "precheck_failed_http_503"
    assert coordinator.pending_tasks == 0
    async with get_session() as session:
        audit = await repo.get_audit(session, response.audit_id)
        pages = await repo.count_discovered(session, response.audit_id)
    assert audit.fail_reason == "precheck_failed_http_503"
    assert pages == 0
