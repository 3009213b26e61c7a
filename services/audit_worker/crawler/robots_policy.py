import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from urllib.parse import urlparse

import httpx

from config.logging_config import get_logger
from config.redis_config import JsonCache
from services.audit_worker.config import settings
from services.audit_worker.identity import BOT_TOKEN

logger = get_logger(__name__)

GROUP_BOT = "bot"
GROUP_STAR = "star"


@dataclass
class RobotsPolicy:
    fetched_at: str
    group: str | None = None
    allow: list[str] = field(default_factory=list)
    disallow: list[str] = field(default_factory=list)
    crawl_delay: float | None = None
    sitemaps: list[str] = field(default_factory=list)

    @classmethod
    def allow_all(cls) -> "RobotsPolicy":
        return cls(fetched_at=datetime.now(timezone.utc).isoformat())

    @classmethod
    def from_dict(cls, data: dict) -> "RobotsPolicy":
        return cls(
            fetched_at=data.get("fetched_at") or "",
            group=data.get("group"),
            allow=list(data.get("allow") or []),
            disallow=list(data.get("disallow") or []),
            crawl_delay=data.get("crawl_delay"),
            sitemaps=list(data.get("sitemaps") or []),
        )

    def to_dict(self) -> dict:
        return asdict(self)


def _directive(line: str) -> tuple[str, str] | None:
    line = line.split("#", 1)[0].strip()
    if not line or ":" not in line:
        return None
    key, value = line.split(":", 1)
    return key.strip().lower(), value.strip()


def parse_robots(text: str, bot_token: str = BOT_TOKEN) -> RobotsPolicy:
    """Collect the exact-bot group (or `*` when the bot is not named) from a robots.txt body."""
    groups: list[tuple[list[str], list[tuple[str, str]]]] = []
    agents: list[str] = []
    rules: list[tuple[str, str]] = []
    sitemaps: list[str] = []
    in_rules = False

    for raw in (text or "").splitlines():
        d = _directive(raw)
        if d is None:
            continue
        key, value = d
        if key == "user-agent":
            if in_rules:
                groups.append((agents, rules))
                agents, rules, in_rules = [], [], False
            agents.append(value.lower())
        elif key in ("allow", "disallow", "crawl-delay"):
            in_rules = True
            if agents:
                rules.append((key, value))
        elif key == "sitemap" and value:
            sitemaps.append(value)
    if agents:
        groups.append((agents, rules))

    bot = bot_token.lower()
    matched = [r for a, r in groups if bot in a]
    group = GROUP_BOT if matched else None
    if not matched:
        matched = [r for a, r in groups if "*" in a]
        group = GROUP_STAR if matched else None

    policy = RobotsPolicy(fetched_at=datetime.now(timezone.utc).isoformat(), group=group, sitemaps=sitemaps)
    for rule_set in matched:
        for key, value in rule_set:
            if key == "allow" and value:
                policy.allow.append(value)
            elif key == "disallow" and value:
                policy.disallow.append(value)
            elif key == "crawl-delay":
                try:
                    policy.crawl_delay = float(value)
                except ValueError:
                    continue
    return policy


def is_allowed(policy: RobotsPolicy | None, path: str) -> bool:
    """Longest matching disallow wins unless a strictly longer allow also matches."""
    if policy is None:
        return True
    path = path or "/"
    disallowed = [d for d in policy.disallow if path.startswith(d)]
    if not disallowed:
        return True
    longest = max(disallowed, key=len)
    return any(path.startswith(a) and len(a) > len(longest) for a in policy.allow)


def robots_key(url: str) -> str:
    p = urlparse(url)
    return f"robots:{p.scheme}://{p.netloc.lower()}"


class RobotsPolicyCache:
    """Per-origin robots.txt rules, cached in redis when available and in-process otherwise."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        cache: JsonCache | None = None,
        ttl_s: int | None = None,
        timeout_s: float | None = None,
    ):
        self.client = client
        self.cache = cache
        self.ttl_s = ttl_s if ttl_s is not None else settings.robots_ttl_s
        self.timeout_s = timeout_s if timeout_s is not None else settings.robots_timeout_s
        self._local: dict[str, tuple[float, RobotsPolicy]] = {}

    async def get_policy(self, url: str) -> RobotsPolicy:
        key = robots_key(url)

        hit = self._local.get(key)
        if hit and hit[0] > time.monotonic():
            return hit[1]

        if self.cache is not None:
            cached = await self.cache.get(key)
            if cached:
                policy = RobotsPolicy.from_dict(cached)
                self._remember(key, policy)
                return policy

        policy, cacheable = await self._fetch(url)
        if cacheable:
            self._remember(key, policy)
            if self.cache is not None:
                await self.cache.set(key, policy.to_dict(), ttl=self.ttl_s)
        return policy

    async def is_allowed(self, url: str) -> bool:
        policy = await self.get_policy(url)
        return is_allowed(policy, urlparse(url).path or "/")

    async def crawl_delay(self, url: str, cap_s: float | None = None) -> float:
        policy = await self.get_policy(url)
        delay = policy.crawl_delay or 0.0
        cap = cap_s if cap_s is not None else settings.max_crawl_delay_s
        return max(0.0, min(delay, cap))

    def _remember(self, key: str, policy: RobotsPolicy) -> None:
        self._local[key] = (time.monotonic() + self.ttl_s, policy)

    async def _fetch(self, url: str) -> tuple[RobotsPolicy, bool]:
        p = urlparse(url)
        robots_url = f"{p.scheme}://{p.netloc}/robots.txt"
        try:
            r = await self.client.get(robots_url, timeout=self.timeout_s)
        except httpx.HTTPError as e:
            logger.info("robots.txt unreachable, allowing", extra={"url": robots_url, "error": str(e)})
            return RobotsPolicy.allow_all(), False

        if r.status_code >= 500:
            logger.info("robots.txt server error, allowing", extra={"url": robots_url, "status": r.status_code})
            return RobotsPolicy.allow_all(), False
        if r.status_code >= 400:
            return RobotsPolicy.allow_all(), True
        return parse_robots(r.text or ""), True
