import httpx
import pytest
import respx
from sqlalchemy import select

from services.audit_worker.config import settings
from services.audit_worker.crawler.batch_engine import CONTINUE, FAIL, FINALIZE, decide_next, page_ceiling
from services.audit_worker.db import repository as repo
from services.audit_worker.db.models import Audit, AuditPage, AuditStatus
from services.audit_worker.db.session import get_session
from services.audit_worker.lifecycle import AuditLifecycleCoordinator

PAGE = (
    "<!doctype html><html><head><title>{title}</title>"
    '<script type="application/ld+json">{{"@type": "Organization"}}</script></head>'
    "<body><h1>{title}</h1>" + "<p>Plain static content about the product and its features.</p>" * 6 + "</body></html>"
)


def test_page_ceiling():
    assert page_ceiling({"max_pages": 200}) == settings.target_max_pages
    assert page_ceiling({"max_pages": 5}) == 5
    assert page_ceiling({}) == settings.target_max_pages
    assert page_ceiling(None) == settings.target_max_pages


def test_target_met_finalizes():
    d = decide_next(analyzed=40, queue_empty=False, elapsed_ms=1000, progressed=True, max_pages=60)
    assert (d.action, d.reason) == (FINALIZE, "target_met")


def test_max_pages_finalizes_small_audits():
    d = decide_next(analyzed=5, queue_empty=False, elapsed_ms=1000, progressed=True, max_pages=5)
    assert (d.action, d.reason) == (FINALIZE, "max_pages_reached")


def test_safety_valve_finalizes_with_enough_pages():
    d = decide_next(analyzed=16, queue_empty=False, elapsed_ms=21_000, progressed=True, max_pages=60)
    assert (d.action, d.reason) == (FINALIZE, "safety_valve")


def test_safety_valve_needs_minimum_pages():
    d = decide_next(analyzed=10, queue_empty=False, elapsed_ms=21_000, progressed=True, max_pages=60)
    assert d.action == CONTINUE


def test_hard_time_with_too_few_pages_fails():
    d = decide_next(analyzed=10, queue_empty=False, elapsed_ms=26_000, progressed=True, max_pages=60)
    assert (d.action, d.reason) == (FAIL, "timeout_insufficient_pages_10")


def test_hard_time_with_enough_pages_finalizes():
    d = decide_next(analyzed=25, queue_empty=False, elapsed_ms=26_000, progressed=True, max_pages=60)
    assert (d.action, d.reason) == (FINALIZE, "hard_time_reached")


def test_empty_queue():
    assert decide_next(3, True, 100, True, 60).action == FINALIZE
    d = decide_next(0, True, 100, False, 60)
    assert (d.action, d.reason) == (FAIL, "no_crawlable_pages_found")


def test_no_progress_stops_the_loop():
    assert decide_next(3, False, 100, False, 60).reason == "no_progress"
    assert decide_next(0, False, 100, False, 60).action == FAIL


async def _no_sleep(_):
    return None


class NullRenderer:
    async def render(self, url):
        return None

    async def close(self):
        pass


async def _seed_audit(urls, max_pages=200):
    audit_id = repo.new_id()
    now = repo.utcnow()
    async with get_session() as session:
        session.add(Audit(
            id=audit_id,
            root_url="https://acme.com/",
            status=AuditStatus.RUNNING.value,
            created_at=now,
            started_at=now,
            config_json={"max_pages": max_pages},
        ))
        await session.flush()
        await repo.insert_pages(session, audit_id, urls)
        await session.commit()
    return audit_id


@pytest.mark.asyncio
async def test_batch_marks_skips_and_finalizes_on_empty_queue(db):
    audit_id = await _seed_audit([
        "https://acme.com/",
        "https://acme.com/private",
        "https://acme.com/gone",
    ])
    with respx.mock:
        respx.get("https://acme.com/robots.txt").respond(200, text="User-agent: *\nDisallow: /private\n")
        respx.get("https://acme.com/").respond(200, html=PAGE.format(title="Acme"))
        respx.get("https://acme.com/gone").respond(404, html="gone")
        private = respx.get("https://acme.com/private").respond(200, html=PAGE.format(title="Private"))

        async with httpx.AsyncClient() as client:
            coordinator = AuditLifecycleCoordinator(client=client, renderer=NullRenderer(), sleep=_no_sleep)
            result = await coordinator.continue_audit(audit_id)
            await coordinator.drain()

    assert private.call_count == 0
    assert result.action == FINALIZE
    assert result.reason == "queue_empty"
    assert result.pages_analyzed == 1

    async with get_session() as session:
        pages = {p.url: p for p in (await session.execute(select(AuditPage).where(AuditPage.audit_id == audit_id))).scalars()}
        audit = await repo.get_audit(session, audit_id)
        rows = await repo.list_analyzed_pages(session, audit_id)

    assert pages["https://acme.com/private"].skip_reason == "robots_disallowed"
    assert pages["https://acme.com/gone"].skip_reason == "fetch_failed"
    assert pages["https://acme.com/gone"].status_code == 404
    assert audit.status == AuditStatus.COMPLETED.value
    assert audit.citations_status == "queued"
    _, analysis = rows[0]
    assert analysis.title == "Acme"
    assert analysis.schema_types == ["Organization"]
    assert analysis.checks_json == []


@pytest.mark.asyncio
async def test_batch_respects_max_pages(db):
    urls = [f"https://acme.com/p{i}" for i in range(6)]
    audit_id = await _seed_audit(urls, max_pages=3)
    with respx.mock:
        respx.route(host="acme.com", path="/robots.txt").respond(404)
        respx.route(host="acme.com").respond(200, html=PAGE.format(title="Page"))

        async with httpx.AsyncClient() as client:
            coordinator = AuditLifecycleCoordinator(client=client, renderer=NullRenderer(), sleep=_no_sleep)
            result = await coordinator.continue_audit(audit_id)
            await coordinator.drain()

    assert result.action == FINALIZE
    assert result.reason == "max_pages_reached"
    assert result.pages_analyzed == 3


@pytest.mark.asyncio
async def test_continue_on_finished_audit_is_a_no_op(db):
    audit_id = await _seed_audit(["https://acme.com/"])
    async with get_session() as session:
        await repo.transition_status(session, audit_id, [AuditStatus.RUNNING], status=AuditStatus.FAILED.value)
        await session.commit()

    async with httpx.AsyncClient() as client:
        coordinator = AuditLifecycleCoordinator(client=client, renderer=NullRenderer(), sleep=_no_sleep)
        result = await coordinator.continue_audit(audit_id)

    assert result.action == "not_running"
    assert result.status == AuditStatus.FAILED.value


class SteppingClock:
    def __init__(self, step):
        self.step = step
        self.value = 0.0

    def __call__(self):
        self.value += self.step
        return self.value


@pytest.mark.asyncio
async def test_items_past_the_pass_budget_wait_for_the_next_pass(db):
    urls = [f"https://acme.com/p{i}" for i in range(5)]
    audit_id = await _seed_audit(urls)
    with respx.mock:
        respx.route(host="acme.com", path="/robots.txt").respond(404)
        respx.route(host="acme.com").respond(200, html=PAGE.format(title="Page"))

        async with httpx.AsyncClient() as client:
            coordinator = AuditLifecycleCoordinator(client=client, renderer=NullRenderer(), sleep=_no_sleep)
            # every clock read advances 10s against a 22s pass budget
            coordinator.batch.monotonic = SteppingClock(10.0)
            per_pass = []
            run_pass = coordinator.batch._run_pass

            async def _recording_pass(*args):
                ctx = await run_pass(*args)
                per_pass.append(ctx.analyzed)
                return ctx

            coordinator.batch._run_pass = _recording_pass
            result = await coordinator.continue_audit(audit_id)
            await coordinator.drain()

    assert per_pass == [2, 2, 1]
    assert result.action == FINALIZE
    assert result.reason == "queue_empty"
    assert (result.pages_analyzed, result.passes) == (5, 3)

    async with get_session() as session:
        pages = (await session.execute(select(AuditPage).where(AuditPage.audit_id == audit_id))).scalars().all()
    assert all(p.fetched_at is not None and p.skip_reason is None for p in pages)


def _linked_site(request: httpx.Request) -> httpx.Response:
    if request.url.path == "/robots.txt":
        return httpx.Response(404)
    if request.url.path == "/":
        links = "".join(f'<a href="/p{i}">Widget {i}</a>' for i in range(1, 46))
        return httpx.Response(200, html=f"<html><head><title>Home</title></head><body>{links}</body></html>")
    return httpx.Response(200, html=PAGE.format(title="Widget"))


@pytest.mark.asyncio
async def test_organic_discovery_counts_only_new_rows(db):
    seeded = ["https://acme.com/"] + [f"https://acme.com/p{i}" for i in range(1, 6)]
    audit_id = await _seed_audit(seeded)
    with respx.mock:
        respx.route(host="acme.com").mock(side_effect=_linked_site)

        async with httpx.AsyncClient() as client:
            coordinator = AuditLifecycleCoordinator(client=client, renderer=NullRenderer(), sleep=_no_sleep)
            result = await coordinator.continue_audit(audit_id)
            await coordinator.drain()

    assert result.reason == "queue_empty"
    assert result.pages_discovered == len(seeded) + settings.max_new_links_per_page
    assert result.pages_analyzed == result.pages_discovered

    async with get_session() as session:
        urls = set((await session.execute(select(AuditPage.url).where(AuditPage.audit_id == audit_id))).scalars())
    assert "https://acme.com/p25" in urls
    assert "https://acme.com/p26" not in urls


@pytest.mark.asyncio
async def test_organic_discovery_stops_at_target(db, monkeypatch):
    monkeypatch.setattr(settings, "target_min_pages", 1)
    audit_id = await _seed_audit(["https://acme.com/"])
    with respx.mock:
        respx.route(host="acme.com").mock(side_effect=_linked_site)

        async with httpx.AsyncClient() as client:
            coordinator = AuditLifecycleCoordinator(client=client, renderer=NullRenderer(), sleep=_no_sleep)
            result = await coordinator.continue_audit(audit_id)
            await coordinator.drain()

    assert (result.action, result.reason) == (FINALIZE, "target_met")
    assert (result.pages_analyzed, result.pages_discovered) == (1, 1)
