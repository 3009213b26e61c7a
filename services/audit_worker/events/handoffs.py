import json
from datetime import datetime, timezone

import aio_pika
from pydantic import BaseModel

from config.logging_config import get_logger
from services.audit_worker.config import settings

logger = get_logger(__name__)

EXCHANGE_NAME = "audit.events"
DIAGNOSTICS_ROUTING_KEY = "audit.diagnostics.requested"
PROMPT_CACHE_ROUTING_KEY = "audit.prompt_cache.requested"


class DiagnosticsRequestedEvent(BaseModel):
    event_name: str = "DiagnosticsRequested"
    audit_id: str
    root_url: str
    pages_analyzed: int
    produced_at: str

    @classmethod
    def build(cls, audit_id: str, root_url: str, pages_analyzed: int) -> "DiagnosticsRequestedEvent":
        return cls(audit_id=audit_id, root_url=root_url, pages_analyzed=pages_analyzed, produced_at=datetime.now(timezone.utc).isoformat())

    def to_bytes(self) -> bytes:
        return json.dumps(self.model_dump(), ensure_ascii=False).encode("utf-8")


class PromptCacheRequestedEvent(BaseModel):
    event_name: str = "PromptCacheRequested"
    audit_id: str
    domain: str
    industry: str | None = None
    produced_at: str

    @classmethod
    def build(cls, audit_id: str, domain: str, industry: str | None) -> "PromptCacheRequestedEvent":
        return cls(audit_id=audit_id, domain=domain, industry=industry, produced_at=datetime.now(timezone.utc).isoformat())

    def to_bytes(self) -> bytes:
        return json.dumps(self.model_dump(), ensure_ascii=False).encode("utf-8")


async def _publish(body: bytes, routing_key: str) -> bool:
    if not settings.rabbitmq_url:
        logger.info("RabbitMQ not configured, event not published", extra={"routing_key": routing_key})
        return False
    conn = await aio_pika.connect_robust(settings.rabbitmq_url)
    async with conn:
        ch = await conn.channel()
        ex = await ch.declare_exchange(EXCHANGE_NAME, aio_pika.ExchangeType.TOPIC, durable=True)
        msg = aio_pika.Message(body=body, content_type="application/json", delivery_mode=aio_pika.DeliveryMode.PERSISTENT)
        await ex.publish(msg, routing_key=routing_key)
    return True


async def publish_diagnostics_requested(audit_id: str, root_url: str, pages_analyzed: int) -> bool:
    ev = DiagnosticsRequestedEvent.build(audit_id=audit_id, root_url=root_url, pages_analyzed=pages_analyzed)
    return await _publish(ev.to_bytes(), DIAGNOSTICS_ROUTING_KEY)


async def publish_prompt_cache_requested(audit_id: str, domain: str, industry: str | None) -> bool:
    ev = PromptCacheRequestedEvent.build(audit_id=audit_id, domain=domain, industry=industry)
    return await _publish(ev.to_bytes(), PROMPT_CACHE_ROUTING_KEY)
