from services.audit_worker.db.models import (
    Audit,
    AuditPage,
    AuditPageAnalysis,
    AuditStatus,
    Base,
    CitationsStatus,
    SkipReason,
)
from services.audit_worker.db.session import dispose_engine, get_session, init_db

__all__ = [
    "Audit",
    "AuditPage",
    "AuditPageAnalysis",
    "AuditStatus",
    "Base",
    "CitationsStatus",
    "SkipReason",
    "dispose_engine",
    "get_session",
    "init_db",
]
