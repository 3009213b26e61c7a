import httpx
import pytest
import pytest_asyncio
import respx

from services.audit_worker.identity import BOT_TOKEN
from services.audit_worker.lifecycle import AuditLifecycleCoordinator
from services.audit_worker.main import app, get_coordinator

PARKED = (
    "<!DOCTYPE html><html><head><title>parked.example</title></head>"
    "<body><h1>Buy this domain</h1><p>This domain is for sale.</p></body></html>"
)
LINK_COUNT = 65


def _html(title, body):
    return f"<!DOCTYPE html><html><head><title>{title}</title></head><body><h1>{title}</h1>{body}</body></html>"


def _site(request: httpx.Request) -> httpx.Response:
    path = request.url.path
    if path == "/":
        links = "".join(f'<p><a href="/p{i}">Product line number {i}</a></p>' for i in range(1, LINK_COUNT + 1))
        return httpx.Response(200, html=_html("Widgets Inc", links))
    if path.startswith("/p") and path[2:].isdigit():
        body = "<p>Detailed description of this widget, its materials and how to order it.</p>" * 5
        return httpx.Response(200, html=_html(f"Widget {path[2:]}", body))
    return httpx.Response(404, text="not found")


class NullRenderer:
    async def render(self, url):
        return None

    async def close(self):
        pass


async def _no_sleep(_):
    return None


@pytest_asyncio.fixture
async def api(db):
    outbound = httpx.AsyncClient()
    coordinator = AuditLifecycleCoordinator(client=outbound, renderer=NullRenderer(), sleep=_no_sleep)
    app.dependency_overrides[get_coordinator] = lambda: coordinator
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as client:
        yield client, coordinator
    await coordinator.aclose()
    app.dependency_overrides.clear()


@pytest.mark.asyncio
async def test_health_and_bot_identity(api):
    client, _ = api
    assert (await client.get("/health")).json()["status"] == "ok"

    profile = (await client.get(f"/.well-known/{BOT_TOKEN}.json")).json()
    assert profile["name"] == "AnswerAuditBot"
    assert profile["identifying_header"] == {"X-AnswerAudit-Bot": "audit"}

    page = await client.get("/bot")
    assert page.status_code == 200
    assert "Disallow: /" in page.text

    metrics = await client.get("/metrics")
    assert metrics.status_code == 200
    assert metrics.headers["content-type"].startswith("text/plain")
    assert "audit_organic_links_inserted_total" in metrics.text


@pytest.mark.asyncio
async def test_unknown_audit_is_404(api):
    client, _ = api
    r = await client.get("/api/audits/does-not-exist")
    assert r.status_code == 404
    assert r.json() == {"detail": "audit_not_found"}


@pytest.mark.asyncio
async def test_create_requires_url(api):
    client, _ = api
    r = await client.post("/api/audits", json={"site_description": "no url"})
    assert r.status_code == 422


@pytest.mark.asyncio
async def test_parked_domain_fails_immediately(api):
    client, coordinator = api
    with respx.mock:
        respx.get("https://parked.example/").respond(200, html=PARKED)
        r = await client.post("/api/audits", json={"url": "parked.example/"})

    assert r.status_code == 200
    body = r.json()
    assert body["status"] == "failed"
    assert body["reason"] == "domain_error_or_empty_page"
    assert coordinator.pending_tasks == 0

    audit = (await client.get(f"/api/audits/{body['audit_id']}")).json()
    assert audit["status"] == "failed"
    assert audit["pages_discovered"] == 0
    assert audit["pages_analyzed"] == 0


@pytest.mark.asyncio
async def test_link_harvest_audit_completes_within_target(api):
    client, coordinator = api
    with respx.mock:
        respx.route(host="widgets.example").mock(side_effect=_site)
        r = await client.post("/api/audits", json={"url": "https://widgets.example/", "max_pages": 200})
        assert r.json()["status"] == "running"
        await coordinator.drain()

    audit_id = r.json()["audit_id"]
    audit = (await client.get(f"/api/audits/{audit_id}")).json()
    assert audit["status"] == "completed"
    assert 40 <= audit["pages_analyzed"] <= 60
    assert audit["industry"] == "generic"
    assert audit["citations_status"] == "queued"

    pages = (await client.get(f"/api/audits/{audit_id}/pages")).json()
    assert pages["total"] == audit["pages_analyzed"]
    urls = {p["url"] for p in pages["pages"]}
    assert "https://widgets.example/" in urls

    home = next(p for p in pages["pages"] if p["url"] == "https://widgets.example/")
    detail = (await client.get(f"/api/audits/{audit_id}/pages/{home['id']}")).json()
    assert detail["title"] == "Widgets Inc"
    assert detail["html_static"].startswith("<!DOCTYPE html>")

    again = (await client.post(f"/api/audits/{audit_id}/continue")).json()
    assert again["action"] == "not_running"


@pytest.mark.asyncio
async def test_admin_fail_and_finalize(api):
    client, coordinator = api
    with respx.mock:
        respx.route(host="widgets.example").mock(side_effect=_site)
        audit_id = (await client.post("/api/audits", json={"url": "https://widgets.example/"})).json()["audit_id"]
        await coordinator.drain()

    too_long = await client.post(f"/api/audits/{audit_id}/fail", json={"reason": "x" * 256})
    assert too_long.status_code == 422

    failed = (await client.post(f"/api/audits/{audit_id}/fail", json={"reason": "bad_data"})).json()
    assert (failed["status"], failed["changed"], failed["reason"]) == ("failed", True, "bad_data")

    finalized = (await client.post(f"/api/audits/{audit_id}/finalize")).json()
    assert (finalized["status"], finalized["changed"]) == ("completed", True)

    repeat = (await client.post(f"/api/audits/{audit_id}/finalize")).json()
    assert repeat["changed"] is False

    sweep = (await client.post("/api/admin/finalize-stuck")).json()
    assert sweep == {"checked": 0, "finalized": 0, "failed": 0, "left_running": 0}
