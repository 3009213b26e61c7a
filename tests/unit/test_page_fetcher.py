import httpx
import pytest
import respx

from services.audit_worker.crawler.page_fetcher import (
    PageFetcher,
    RenderBudget,
    compute_render_gap,
    is_likely_spa,
    visible_text,
)


SPA_SHELL = (
    "<!doctype html><html><head><title>App</title>"
    "<script>window.__NEXT_DATA__ = {}</script></head>"
    "<body><div id=\"__next\"></div><script src=\"/app.js\"></script></body></html>"
)
CONTENT_PAGE = (
    "<!doctype html><html><head><title>Docs</title></head><body>"
    + "".join(f"<div><p>Paragraph {i} explains how the product works in plain words.</p></div>" for i in range(12))
    + "</body></html>"
)


class FakeRenderer:
    def __init__(self, html=None):
        self.html = html
        self.calls = []

    async def render(self, url):
        self.calls.append(url)
        return self.html


def test_render_gap_ratio():
    assert compute_render_gap("a" * 10, "b" * 100) == pytest.approx(0.1)
    assert compute_render_gap("a" * 100, "b" * 50) == 1.0
    assert compute_render_gap(None, "b" * 100) is None
    assert compute_render_gap("a" * 10, None) is None


def test_spa_detection():
    assert is_likely_spa(SPA_SHELL) is True
    assert is_likely_spa(CONTENT_PAGE) is False
    assert is_likely_spa("") is True
    assert is_likely_spa(None) is True


def test_visible_text_ignores_scripts_and_head():
    text = visible_text("<html><head><title>T</title></head><body><script>var x=1</script><p>Hello  world</p></body></html>")
    assert text == "Hello world"


def test_render_budget_refund():
    budget = RenderBudget(limit=2)
    assert budget.try_acquire() is True
    assert budget.try_acquire() is True
    assert budget.try_acquire() is False
    budget.refund()
    assert budget.remaining == 1
    assert budget.try_acquire() is True


@pytest.mark.asyncio
async def test_fetch_static_rejects_errors_and_non_html():
    with respx.mock:
        respx.get("https://x.com/missing").respond(404, text="nope", headers={"content-type": "text/html"})
        respx.get("https://x.com/file.pdf").respond(200, content=b"%PDF", headers={"content-type": "application/pdf"})
        async with httpx.AsyncClient() as client:
            fetcher = PageFetcher(client)
            missing = await fetcher.fetch_static("https://x.com/missing")
            pdf = await fetcher.fetch_static("https://x.com/file.pdf")
    assert missing.found is False
    assert missing.status_code == 404
    assert pdf.found is False
    assert pdf.error == "not_html"


@pytest.mark.asyncio
async def test_fetch_smart_renders_spa_and_records_gap():
    rendered = "<html><body>" + "x" * (len(SPA_SHELL) * 4) + "</body></html>"
    renderer = FakeRenderer(html=rendered)
    with respx.mock:
        respx.get("https://x.com/").respond(200, text=SPA_SHELL, headers={"content-type": "text/html; charset=utf-8"})
        async with httpx.AsyncClient() as client:
            fetcher = PageFetcher(client, renderer=renderer)
            budget = RenderBudget(limit=1)
            result = await fetcher.fetch_smart("https://x.com/", 0, budget, is_homepage=True)
    assert result.is_spa is True
    assert result.rendered_html == rendered
    assert result.html == rendered
    assert 0 < result.render_gap_ratio < 0.5
    assert budget.remaining == 0


@pytest.mark.asyncio
async def test_fetch_smart_refunds_budget_when_render_fails():
    renderer = FakeRenderer(html=None)
    with respx.mock:
        respx.get("https://x.com/app").respond(200, text=SPA_SHELL, headers={"content-type": "text/html"})
        async with httpx.AsyncClient() as client:
            fetcher = PageFetcher(client, renderer=renderer)
            budget = RenderBudget(limit=1)
            result = await fetcher.fetch_smart("https://x.com/app", 0, budget)
    assert result.found is True
    assert result.rendered_html is None
    assert result.html == SPA_SHELL
    assert budget.remaining == 1
    assert renderer.calls == ["https://x.com/app"]


@pytest.mark.asyncio
async def test_fetch_smart_skips_render_past_index_and_for_content_pages():
    renderer = FakeRenderer(html="<html><body>rendered</body></html>")
    with respx.mock:
        respx.get("https://x.com/late").respond(200, text=SPA_SHELL, headers={"content-type": "text/html"})
        respx.get("https://x.com/docs").respond(200, text=CONTENT_PAGE, headers={"content-type": "text/html"})
        async with httpx.AsyncClient() as client:
            fetcher = PageFetcher(client, renderer=renderer, max_render_index=3)
            budget = RenderBudget(limit=5)
            late = await fetcher.fetch_smart("https://x.com/late", 7, budget)
            docs = await fetcher.fetch_smart("https://x.com/docs", 0, budget)
    assert late.rendered_html is None
    assert docs.is_spa is False
    assert docs.rendered_html is None
    assert renderer.calls == []
