from datetime import datetime
from pydantic import BaseModel, Field, model_validator

from services.audit_worker.db.models import REASON_MAX_LENGTH


class CreateAuditRequest(BaseModel):
    project_id: str | None = None
    url: str | None = None
    root_url: str | None = None
    site_description: str | None = None
    max_pages: int | None = Field(default=None, ge=1, le=1000)
    config: dict = Field(default_factory=dict)

    @model_validator(mode="after")
    def _require_url(self) -> "CreateAuditRequest":
        target = (self.root_url or self.url or "").strip()
        if not target:
            raise ValueError("url or root_url is required")
        if not target.lower().startswith(("http://", "https://")):
            target = "https://" + target
        self.root_url = target
        return self


class CreateAuditResponse(BaseModel):
    audit_id: str
    status: str
    reason: str | None = None


class FailAuditRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=REASON_MAX_LENGTH)


class AuditResponse(BaseModel):
    id: str
    project_id: str | None = None
    root_url: str
    site_description: str | None = None
    status: str
    created_at: datetime
    started_at: datetime
    finished_at: datetime | None = None
    fail_reason: str | None = None
    fail_at: datetime | None = None
    aeo_score: float | None = None
    geo_score: float | None = None
    citations_status: str | None = None
    config: dict = Field(default_factory=dict)
    industry: str | None = None
    industry_source: str | None = None
    industry_confidence: float | None = None
    pages_analyzed: int = 0
    pages_discovered: int = 0
    avg_aeo_score: float | None = None
    avg_geo_score: float | None = None


class AuditListResponse(BaseModel):
    items: list[AuditResponse]
    limit: int
    offset: int


class PageSummary(BaseModel):
    id: str
    url: str
    status_code: int | None = None
    content_type: str | None = None
    title: str | None = None
    h1: str | None = None
    canonical: str | None = None
    schema_types: list = Field(default_factory=list)
    render_gap_ratio: float | None = None
    is_spa: bool = False
    aeo_score: float | None = None
    geo_score: float | None = None
    fetched_at: datetime | None = None
    analyzed_at: datetime | None = None


class PageDetail(PageSummary):
    jsonld: list = Field(default_factory=list)
    checks: list = Field(default_factory=list)
    html_static: str | None = None
    html_rendered: str | None = None


class PageListResponse(BaseModel):
    audit_id: str
    pages: list[PageSummary]
    total: int


class ContinueResponse(BaseModel):
    audit_id: str
    action: str
    status: str
    reason: str | None = None
    pages_analyzed: int = 0
    pages_discovered: int = 0
    passes: int = 0


class LifecycleResponse(BaseModel):
    audit_id: str
    status: str
    changed: bool
    reason: str | None = None


class SweepResponse(BaseModel):
    checked: int
    finalized: int
    failed: int
    left_running: int
