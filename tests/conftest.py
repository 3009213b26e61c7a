import pytest
import pytest_asyncio

from services.audit_worker.config import settings
from services.audit_worker.db.session import dispose_engine, init_db


@pytest.fixture(autouse=True)
def _isolated_settings(monkeypatch):
    monkeypatch.setattr(settings, "item_stagger_ms", 0)
    monkeypatch.setattr(settings, "redis_url", None)
    monkeypatch.setattr(settings, "rabbitmq_url", None)


@pytest_asyncio.fixture
async def db(tmp_path, monkeypatch):
    monkeypatch.setattr(settings, "database_url", f"sqlite+aiosqlite:///{tmp_path / 'audit.db'}")
    await dispose_engine()
    await init_db()
    yield
    await dispose_engine()

