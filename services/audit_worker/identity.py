"""Public identity of the crawler.

Every outbound request made by the audit worker goes through ``build_client`` or
``bot_headers`` so the user-agent, identifying header and language preference
never differ between call sites.
"""
import httpx

from services.audit_worker.config import settings

BOT_NAME = "AnswerAuditBot"
BOT_VERSION = "1.0"
BOT_TOKEN = BOT_NAME.lower()
BOT_USER_AGENT = f"{BOT_NAME}/{BOT_VERSION} (+{settings.bot_info_url}; {settings.bot_contact})"
BOT_HEADER_NAME = "X-AnswerAudit-Bot"
BOT_HEADER_VALUE = "audit"
ACCEPT_LANGUAGE = "en-US,en;q=0.9"


def bot_headers() -> dict[str, str]:
    return {
        "User-Agent": BOT_USER_AGENT,
        BOT_HEADER_NAME: BOT_HEADER_VALUE,
        "Accept-Language": ACCEPT_LANGUAGE,
    }


def build_client(timeout_s: float, follow_redirects: bool = True) -> httpx.AsyncClient:
    return httpx.AsyncClient(headers=bot_headers(), timeout=timeout_s, follow_redirects=follow_redirects)


def bot_profile() -> dict:
    return {
        "name": BOT_NAME,
        "version": BOT_VERSION,
        "user_agent": BOT_USER_AGENT,
        "identifying_header": {BOT_HEADER_NAME: BOT_HEADER_VALUE},
        "accept_language": ACCEPT_LANGUAGE,
        "website": settings.bot_info_url,
        "contact": settings.bot_contact,
        "respect_robots_txt": True,
        "honors_crawl_delay": True,
        "robots_groups": [f"User-agent: {BOT_NAME}", "User-agent: *"],
        "opt_out": {
            "via_robots": [
                {"group": f"User-agent: {BOT_NAME}", "rule": "Disallow: /"},
                {"group": "User-agent: *", "rule": "Disallow: /"},
            ]
        },
    }
