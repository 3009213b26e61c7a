"""Industry lock for an audit.

The industry is resolved once, before the audit row exists, and stored alongside
its source and confidence. Nothing in the crawl path writes it again; a recrawl
keeps the original value.
"""
import re
from dataclasses import dataclass

from config.logging_config import get_logger
from services.audit_worker.crawler.urls import strip_www

logger = get_logger(__name__)

DEFAULT_INDUSTRY = "generic"
HEURISTIC_MIN_SCORE = 0.5

SOURCE_OVERRIDE = "override"
SOURCE_DOMAIN_RULES = "domain_rules"
SOURCE_HEURISTICS = "heuristics"
SOURCE_DEFAULT = "default"

DOMAIN_RULES = {
    "toyota.com": "automotive_oem",
    "ford.com": "automotive_oem",
    "corporate.ford.com": "automotive_oem",
    "bestbuy.com": "retail",
    "target.com": "retail",
    "chase.com": "financial_services",
    "americanexpress.com": "financial_services",
    "mayoclinic.org": "healthcare_provider",
    "pfizer.com": "pharmaceutical",
    "delta.com": "travel_air",
    "united.com": "travel_air",
    "marriott.com": "travel_hotels",
    "omnicomgroup.com": "marketing_agency",
}

# (industry, trigger pattern, scoring pattern, divisor, base)
HEURISTICS = (
    ("automotive_oem", r"\b(build & price|msrp|dealer|warranty|trim|towing|cargo|suv)\b", r"\b(build|msrp|dealer|trim)", 10, 0.3),
    ("retail", r"\b(shipping|returns|cart|checkout|in stock|store locator|shop)\b", r"\b(shipping|returns|cart|checkout|shop)", 8, 0.2),
    ("financial_services", r"\b(apr|rates|mortgage|loan|insurance|banking|atm)\b", r"\b(apr|rates|loan|mortgage|insurance)", 8, 0.2),
    ("healthcare_provider", r"\b(appointments|doctors|patient|hospital|clinic)\b", r"\b(appointments|doctors|patient|clinic)", 8, 0.2),
    ("pharmaceutical", r"\b(fda approved|prescription|clinical trial|medication|vaccine|pharma\w*)\b", r"\b(prescription|vaccine|clinical|pharma)", 6, 0.3),
    ("travel_air", r"\b(flights?|baggage|fare|airline)\b", r"\b(flight|baggage|fare|airline)", 8, 0.2),
    ("travel_hotels", r"\b(hotels?|vacation|resort|attractions|tourism|destination)\b", r"\b(hotel|vacation|resort|tourism)", 6, 0.35),
    ("saas_b2b", r"\b(saas|platform|api|integrations|pricing|free trial|dashboard)\b", r"\b(saas|api|integrations|trial)", 6, 0.25),
)


@dataclass
class IndustryLock:
    value: str
    source: str
    confidence: float | None = None


def heuristic_votes(text: str) -> list[tuple[str, float]]:
    text = (text or "").lower()
    votes = []
    for key, trigger, scoring, divisor, base in HEURISTICS:
        if not re.search(trigger, text):
            continue
        hits = len(re.findall(scoring, text))
        votes.append((key, min(1.0, hits / divisor + base)))
    return sorted(votes, key=lambda v: v[1], reverse=True)


def resolve_industry(root_url_host: str, site_description: str | None = None, override: str | None = None) -> IndustryLock:
    """override, then domain rules, then keyword heuristics, then the default."""
    if override:
        return IndustryLock(value=override, source=SOURCE_OVERRIDE, confidence=1.0)

    domain = strip_www(root_url_host)
    by_domain = DOMAIN_RULES.get(domain)
    if by_domain:
        return IndustryLock(value=by_domain, source=SOURCE_DOMAIN_RULES, confidence=1.0)

    text = " ".join(filter(None, [re.sub(r"[.\-]", " ", domain), site_description]))
    votes = heuristic_votes(text)
    if votes and votes[0][1] >= HEURISTIC_MIN_SCORE:
        key, score = votes[0]
        logger.info("Industry from heuristics", extra={"domain": domain, "industry": key, "score": round(score, 3)})
        return IndustryLock(value=key, source=SOURCE_HEURISTICS, confidence=round(score, 3))

    return IndustryLock(
        value=DEFAULT_INDUSTRY,
        source=SOURCE_DEFAULT,
        confidence=round(votes[0][1], 3) if votes else None,
    )
