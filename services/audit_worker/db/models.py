from datetime import datetime
from enum import Enum

from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy import JSON, Boolean, DateTime, Float, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import JSONB

JsonType = JSON().with_variant(JSONB(), "postgresql")

URL_MAX_LENGTH = 2048
REASON_MAX_LENGTH = 255


class AuditStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class CitationsStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class SkipReason(str, Enum):
    ROBOTS_DISALLOWED = "robots_disallowed"
    FETCH_FAILED = "fetch_failed"


class Base(DeclarativeBase):
    pass


class Audit(Base):
    __tablename__ = "audits"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    project_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    root_url: Mapped[str] = mapped_column(String(URL_MAX_LENGTH), nullable=False)
    site_description: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default=AuditStatus.RUNNING.value)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    fail_reason: Mapped[str | None] = mapped_column(String(REASON_MAX_LENGTH), nullable=True)
    fail_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    aeo_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    geo_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    citations_status: Mapped[str | None] = mapped_column(String(32), nullable=True)

    config_json: Mapped[dict] = mapped_column(JsonType, nullable=False, default=dict)

    # write-once: set when the row is inserted
    industry: Mapped[str | None] = mapped_column(String(64), nullable=True)
    industry_source: Mapped[str | None] = mapped_column(String(32), nullable=True)
    industry_confidence: Mapped[float | None] = mapped_column(Float, nullable=True)

    pages: Mapped[list["AuditPage"]] = relationship(back_populates="audit", cascade="all, delete-orphan", passive_deletes=True)

    __table_args__ = (
        Index("idx_audits_status_started", "status", "started_at"),
    )


class AuditPage(Base):
    __tablename__ = "audit_pages"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    audit_id: Mapped[str] = mapped_column(String(64), ForeignKey("audits.id", ondelete="CASCADE"), nullable=False)
    url: Mapped[str] = mapped_column(String(URL_MAX_LENGTH), nullable=False)
    status_code: Mapped[int | None] = mapped_column(Integer, nullable=True)
    content_type: Mapped[str | None] = mapped_column(String(255), nullable=True)
    html_static: Mapped[str | None] = mapped_column(Text, nullable=True)
    html_rendered: Mapped[str | None] = mapped_column(Text, nullable=True)
    skip_reason: Mapped[str | None] = mapped_column(String(64), nullable=True)
    discovered_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    fetched_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    audit: Mapped[Audit] = relationship(back_populates="pages")
    analysis: Mapped["AuditPageAnalysis | None"] = relationship(back_populates="page", cascade="all, delete-orphan", passive_deletes=True)

    __table_args__ = (
        UniqueConstraint("audit_id", "url", name="uq_audit_pages_audit_url"),
        Index("idx_audit_pages_audit_id", "audit_id"),
    )


class AuditPageAnalysis(Base):
    __tablename__ = "audit_page_analysis"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    page_id: Mapped[str] = mapped_column(String(64), ForeignKey("audit_pages.id", ondelete="CASCADE"), nullable=False, unique=True)
    title: Mapped[str | None] = mapped_column(Text, nullable=True)
    h1: Mapped[str | None] = mapped_column(Text, nullable=True)
    canonical: Mapped[str | None] = mapped_column(String(URL_MAX_LENGTH), nullable=True)
    schema_types: Mapped[list] = mapped_column(JsonType, nullable=False, default=list)
    jsonld: Mapped[list] = mapped_column(JsonType, nullable=False, default=list)
    checks_json: Mapped[list] = mapped_column(JsonType, nullable=False, default=list)
    aeo_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    geo_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    render_gap_ratio: Mapped[float | None] = mapped_column(Float, nullable=True)
    is_spa: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    analyzed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    page: Mapped[AuditPage] = relationship(back_populates="analysis")
