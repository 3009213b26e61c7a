from services.audit_worker.events.handoffs import (
    DiagnosticsRequestedEvent,
    PromptCacheRequestedEvent,
    publish_diagnostics_requested,
    publish_prompt_cache_requested,
)

__all__ = [
    "DiagnosticsRequestedEvent",
    "PromptCacheRequestedEvent",
    "publish_diagnostics_requested",
    "publish_prompt_cache_requested",
]
