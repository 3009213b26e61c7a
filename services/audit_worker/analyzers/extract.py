import json
import re
from dataclasses import dataclass, field
from urllib.parse import urljoin

from bs4 import BeautifulSoup

from services.audit_worker.db.models import URL_MAX_LENGTH


@dataclass
class PageSignals:
    title: str | None
    h1: str | None
    canonical: str | None
    jsonld: list = field(default_factory=list)
    schema_types: list[str] = field(default_factory=list)


def _jsonld_blocks(soup: BeautifulSoup) -> list:
    blocks = []
    for s in soup.find_all("script", attrs={"type": re.compile(r"application/ld\+json", re.I)}):
        txt = (s.string or s.get_text() or "").strip()
        if not txt:
            continue
        try:
            blocks.append(json.loads(txt))
        except ValueError:
            continue
    return blocks


def schema_types_of(blocks: list) -> list[str]:
    """@type values across JSON-LD blocks, arrays and @graph members included, first-seen order."""
    found: list[str] = []

    def _walk(node):
        if isinstance(node, list):
            for n in node:
                _walk(n)
            return
        if not isinstance(node, dict):
            return
        t = node.get("@type")
        for v in (t if isinstance(t, list) else [t]):
            if isinstance(v, str) and v and v not in found:
                found.append(v)
        if "@graph" in node:
            _walk(node["@graph"])

    _walk(blocks)
    return found


def extract_signals(url: str, html: str) -> PageSignals:
    soup = BeautifulSoup(html or "", "lxml")
    title = soup.title.get_text(strip=True) if soup.title and soup.title.get_text(strip=True) else None
    h1 = None
    h = soup.find("h1")
    if h and h.get_text(strip=True):
        h1 = h.get_text(strip=True)

    canonical = url
    link = soup.find("link", rel=lambda v: v and "canonical" in ([x.lower() for x in v] if isinstance(v, list) else [v.lower()]))
    if link and link.get("href"):
        canonical = urljoin(url, link["href"].strip())[:URL_MAX_LENGTH]

    blocks = _jsonld_blocks(soup)
    return PageSignals(title=title, h1=h1, canonical=canonical, jsonld=blocks, schema_types=schema_types_of(blocks))
