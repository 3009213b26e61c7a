import re
from urllib.parse import parse_qsl, urldefrag, urljoin, urlparse, urlunparse

from bs4 import BeautifulSoup

LOCALE_PREFIX_RE = re.compile(r"^/([a-z]{2}(?:[-_][a-z]{2})?)(?=/|$)", re.I)
FOREIGN_LOCALE_RE = re.compile(r"^/[a-z]{2}[-_][a-z]{2}(?=/|$)", re.I)
LOCALE_QUERY_KEYS = {"lang", "locale", "country", "region"}
ALWAYS_CRAWL_KEYWORDS = ("faq", "help", "support", "contact", "about")
PRIORITY_KEYWORDS = ("faq", "help", "support")
MAX_DEPTH_AFTER_PREFIX = 2

_SKIP_SCHEMES = ("mailto:", "tel:", "javascript:", "data:")


def strip_www(host: str) -> str:
    host = (host or "").lower()
    return host[4:] if host.startswith("www.") else host


def normalize_url(href: str | None, base: str | None = None) -> str | None:
    """Absolute http(s) URL with lowercase host, no fragment or query, no trailing slash except root."""
    if not href:
        return None
    href = href.strip()
    if not href or href.lower().startswith(_SKIP_SCHEMES):
        return None
    u = urljoin(base, href) if base else href
    u, _ = urldefrag(u)
    p = urlparse(u)
    if p.scheme not in ("http", "https") or not p.netloc:
        return None
    path = p.path or "/"
    if len(path) > 1:
        path = path.rstrip("/") or "/"
    return urlunparse((p.scheme.lower(), p.netloc.lower(), path, "", "", ""))


def origin_of(url: str) -> str:
    p = urlparse(url)
    return f"{p.scheme}://{p.netloc.lower()}"


def root_host_of(url: str) -> str:
    return strip_www(urlparse(url).hostname or "")


def locale_prefix(path: str) -> str | None:
    """`/xx` or `/xx-yy` at the very start of a path, lowercased, else None."""
    m = LOCALE_PREFIX_RE.match(path or "")
    if not m:
        return None
    return "/" + m.group(1).lower()


def should_crawl_url(url: str, root_host: str, prefix: str | None = None) -> bool:
    try:
        p = urlparse(url)
    except ValueError:
        return False

    if strip_www(p.hostname or "") != root_host:
        return False

    path = (p.path or "/").lower()
    if prefix:
        if path != prefix and not path.startswith(prefix + "/"):
            return False
    elif FOREIGN_LOCALE_RE.match(path):
        return False

    for key, _ in parse_qsl(p.query, keep_blank_values=True):
        if key.lower() in LOCALE_QUERY_KEYS:
            return False

    rest = path[len(prefix):] if prefix else path
    segments = [s for s in rest.split("/") if s]
    if not segments:
        return True

    if any(k in rest for k in ALWAYS_CRAWL_KEYWORDS):
        return True

    return len(segments) <= MAX_DEPTH_AFTER_PREFIX


def _sort_key(url: str, homepage: str | None):
    if homepage and url == homepage:
        return (0, 0, 0, url)
    path = urlparse(url).path.lower()
    priority = 0 if any(k in path for k in PRIORITY_KEYWORDS) else 1
    return (1, priority, len(url), url)


def sort_urls(urls, homepage: str | None = None) -> list[str]:
    """Homepage first, then FAQ/help-like paths, then shorter URLs."""
    return sorted(dict.fromkeys(urls), key=lambda u: _sort_key(u, homepage))


def extract_hrefs(html: str, limit: int | None = None) -> list[str]:
    soup = BeautifulSoup(html, "lxml")
    hrefs: list[str] = []
    for a in soup.find_all("a", href=True):
        href = a.get("href")
        if href:
            hrefs.append(href)
            if limit is not None and len(hrefs) >= limit:
                break
    return hrefs


def crawlable_links(html: str, base_url: str, root_host: str, prefix: str | None, limit: int) -> list[str]:
    """Outbound links filtered by crawl policy, normalized and deduped, in page order."""
    out: list[str] = []
    seen: set[str] = set()
    for href in extract_hrefs(html, limit=limit):
        absolute, _ = urldefrag(urljoin(base_url, href.strip()))
        if not absolute.lower().startswith(("http://", "https://")):
            continue
        # locale query parameters are checked before normalization drops them
        if not should_crawl_url(absolute, root_host, prefix):
            continue
        nu = normalize_url(absolute)
        if nu and nu not in seen:
            seen.add(nu)
            out.append(nu)
    return out
