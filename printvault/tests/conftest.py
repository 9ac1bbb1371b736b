from __future__ import annotations

import os
import tempfile

# Point settings at throwaway storage before any printvault module builds its engine.
_TMP_ROOT = tempfile.mkdtemp(prefix="printvault-tests-")
os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{_TMP_ROOT}/printvault.db")
os.environ["TASK_EXECUTION_MODE"] = "inline"
os.environ["OBJECT_STORE_BACKEND"] = "local"
os.environ["OBJECT_STORE_LOCAL_DIR"] = os.path.join(_TMP_ROOT, "objects")
os.environ["RASTERIZER_BACKEND"] = "blank"
os.environ["RENDER_BACKOFF_S"] = "0"
os.environ["MERGE_BACKOFF_S"] = "0"
os.environ["EXT_RETRY_BACKOFF_MS"] = "1"

import pytest  # noqa: E402

from printvault.core.config import get_settings  # noqa: E402
from printvault.domain.models import Base  # noqa: E402
from printvault.persistence.db import engine  # noqa: E402
from printvault.providers.storage.factory import get_object_store  # noqa: E402
from printvault.services import telemetry  # noqa: E402
from printvault.services.queue import get_task_queue  # noqa: E402


@pytest.fixture(autouse=True)
async def reset_database() -> None:
    # Every test starts from empty tables.
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield
    # Dispose the async engine to prevent cross-loop connection reuse between tests.
    await engine.dispose()


@pytest.fixture(autouse=True)
def reset_process_state() -> None:
    get_task_queue.cache_clear()
    get_object_store.cache_clear()
    telemetry.reset()
    yield
    get_settings.cache_clear()
    get_task_queue.cache_clear()
    get_object_store.cache_clear()


@pytest.fixture
def offline_enabled(monkeypatch) -> None:
    monkeypatch.setenv("OFFLINE_TOKENS_ENABLED", "true")
    get_settings.cache_clear()
