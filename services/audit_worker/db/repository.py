import uuid
from datetime import datetime, timezone
from typing import Iterable

from sqlalchemy import delete, func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from services.audit_worker.db.models import Audit, AuditPage, AuditPageAnalysis, AuditStatus, CitationsStatus


def new_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    # sqlite hands back naive datetimes
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _insert_for(session: AsyncSession):
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        return pg_insert
    if dialect == "sqlite":
        return sqlite_insert
    raise RuntimeError(f"conditional insert not supported on {dialect}")


async def get_audit(session: AsyncSession, audit_id: str) -> Audit | None:
    res = await session.execute(select(Audit).where(Audit.id == audit_id))
    return res.scalar_one_or_none()


async def list_audits(session: AsyncSession, status: str | None = None, limit: int = 50, offset: int = 0) -> list[Audit]:
    stmt = select(Audit).order_by(Audit.created_at.desc()).limit(limit).offset(offset)
    if status:
        stmt = stmt.where(Audit.status == status)
    res = await session.execute(stmt)
    return list(res.scalars().all())


async def insert_page_if_absent(session: AsyncSession, audit_id: str, url: str) -> bool:
    """INSERT ... ON CONFLICT (audit_id, url) DO NOTHING; True when a row was created."""
    insert = _insert_for(session)
    stmt = (
        insert(AuditPage)
        .values(id=new_id(), audit_id=audit_id, url=url, discovered_at=utcnow())
        .on_conflict_do_nothing(index_elements=["audit_id", "url"])
        .returning(AuditPage.id)
    )
    res = await session.execute(stmt)
    return res.scalar_one_or_none() is not None


async def insert_pages(session: AsyncSession, audit_id: str, urls: Iterable[str], limit: int | None = None) -> int:
    inserted = 0
    for url in urls:
        if limit is not None and inserted >= limit:
            break
        if await insert_page_if_absent(session, audit_id, url):
            inserted += 1
    return inserted


async def load_frontier(session: AsyncSession, audit_id: str, limit: int) -> list[AuditPage]:
    """Discovered pages with no analysis and no skip marker, oldest first."""
    if limit <= 0:
        return []
    stmt = (
        select(AuditPage)
        .outerjoin(AuditPageAnalysis, AuditPageAnalysis.page_id == AuditPage.id)
        .where(
            AuditPage.audit_id == audit_id,
            AuditPageAnalysis.id.is_(None),
            AuditPage.skip_reason.is_(None),
        )
        .order_by(AuditPage.discovered_at, AuditPage.url)
        .limit(limit)
    )
    res = await session.execute(stmt)
    return list(res.scalars().all())


async def count_analyzed(session: AsyncSession, audit_id: str) -> int:
    stmt = (
        select(func.count(AuditPageAnalysis.id))
        .join(AuditPage, AuditPage.id == AuditPageAnalysis.page_id)
        .where(AuditPage.audit_id == audit_id)
    )
    return int((await session.execute(stmt)).scalar_one())


async def count_discovered(session: AsyncSession, audit_id: str) -> int:
    stmt = select(func.count(AuditPage.id)).where(AuditPage.audit_id == audit_id)
    return int((await session.execute(stmt)).scalar_one())


async def audit_stats(session: AsyncSession, audit_id: str) -> tuple[int, int]:
    return await count_analyzed(session, audit_id), await count_discovered(session, audit_id)


async def average_render_gap(session: AsyncSession, audit_id: str) -> float | None:
    stmt = (
        select(func.avg(AuditPageAnalysis.render_gap_ratio))
        .join(AuditPage, AuditPage.id == AuditPageAnalysis.page_id)
        .where(AuditPage.audit_id == audit_id, AuditPageAnalysis.render_gap_ratio.is_not(None))
    )
    value = (await session.execute(stmt)).scalar_one_or_none()
    return float(value) if value is not None else None


async def average_page_scores(session: AsyncSession, audit_id: str) -> tuple[float | None, float | None]:
    stmt = (
        select(func.avg(AuditPageAnalysis.aeo_score), func.avg(AuditPageAnalysis.geo_score))
        .join(AuditPage, AuditPage.id == AuditPageAnalysis.page_id)
        .where(AuditPage.audit_id == audit_id)
    )
    aeo, geo = (await session.execute(stmt)).one()
    return (
        float(aeo) if aeo is not None else None,
        float(geo) if geo is not None else None,
    )


async def transition_status(session: AsyncSession, audit_id: str, allowed_from: Iterable[str], **values) -> bool:
    """Compare-and-set on audits.status; False when another writer got there first."""
    allowed = [s.value if isinstance(s, AuditStatus) else s for s in allowed_from]
    stmt = (
        update(Audit)
        .where(Audit.id == audit_id, Audit.status.in_(allowed))
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    res = await session.execute(stmt)
    return res.rowcount == 1


async def queue_citations(session: AsyncSession, audit_id: str) -> bool:
    stmt = (
        update(Audit)
        .where(Audit.id == audit_id, Audit.citations_status.is_(None))
        .values(citations_status=CitationsStatus.QUEUED.value)
        .execution_options(synchronize_session=False)
    )
    res = await session.execute(stmt)
    return res.rowcount == 1


async def mark_page_skipped(session: AsyncSession, page_id: str, reason: str, status_code: int | None = None) -> None:
    await session.execute(
        update(AuditPage)
        .where(AuditPage.id == page_id)
        .values(skip_reason=reason, status_code=status_code, fetched_at=utcnow())
        .execution_options(synchronize_session=False)
    )


async def delete_audit_pages(session: AsyncSession, audit_id: str) -> None:
    page_ids = select(AuditPage.id).where(AuditPage.audit_id == audit_id)
    await session.execute(delete(AuditPageAnalysis).where(AuditPageAnalysis.page_id.in_(page_ids)))
    await session.execute(delete(AuditPage).where(AuditPage.audit_id == audit_id))


async def list_stale_running(session: AsyncSession, started_before: datetime, limit: int) -> list[Audit]:
    stmt = (
        select(Audit)
        .where(Audit.status == AuditStatus.RUNNING.value, Audit.started_at < started_before)
        .order_by(Audit.started_at)
        .limit(limit)
    )
    res = await session.execute(stmt)
    return list(res.scalars().all())


async def list_analyzed_pages(session: AsyncSession, audit_id: str) -> list[tuple[AuditPage, AuditPageAnalysis]]:
    stmt = (
        select(AuditPage, AuditPageAnalysis)
        .join(AuditPageAnalysis, AuditPageAnalysis.page_id == AuditPage.id)
        .where(AuditPage.audit_id == audit_id)
        .order_by(AuditPageAnalysis.analyzed_at, AuditPage.url)
    )
    res = await session.execute(stmt)
    return [(page, analysis) for page, analysis in res.all()]


async def get_analyzed_page(session: AsyncSession, audit_id: str, page_id: str) -> tuple[AuditPage, AuditPageAnalysis] | None:
    stmt = (
        select(AuditPage, AuditPageAnalysis)
        .join(AuditPageAnalysis, AuditPageAnalysis.page_id == AuditPage.id)
        .where(AuditPage.audit_id == audit_id, AuditPage.id == page_id)
    )
    row = (await session.execute(stmt)).first()
    if row is None:
        return None
    return row[0], row[1]
