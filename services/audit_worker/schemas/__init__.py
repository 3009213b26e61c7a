from services.audit_worker.schemas.audit import (
    AuditListResponse,
    AuditResponse,
    ContinueResponse,
    CreateAuditRequest,
    CreateAuditResponse,
    FailAuditRequest,
    LifecycleResponse,
    PageDetail,
    PageListResponse,
    PageSummary,
    SweepResponse,
)

__all__ = [
    "AuditListResponse",
    "AuditResponse",
    "ContinueResponse",
    "CreateAuditRequest",
    "CreateAuditResponse",
    "FailAuditRequest",
    "LifecycleResponse",
    "PageDetail",
    "PageListResponse",
    "PageSummary",
    "SweepResponse",
]
