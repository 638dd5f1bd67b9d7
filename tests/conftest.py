import asyncio
from typing import List, Optional
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio

from indexer.oracle import SearchHit
from indexer.sqlite_adapter import SQLiteAdapter
from server.caching import CacheManager, SuggestionCache
from services.shared.models import ContextEvent


class FakeOracle:
    """Search oracle returning canned hits; can fail or stall on demand."""

    def __init__(self, hits: Optional[List[SearchHit]] = None, error: Optional[Exception] = None,
                 delay: float = 0.0):
        self.hits = hits or []
        self.error = error
        self.delay = delay
        self.queries: List[str] = []

    async def search(self, query_terms: str, limit: int = 10) -> List[SearchHit]:
        self.queries.append(query_terms)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        return self.hits[:limit]


def fake_websocket():
    ws = AsyncMock()
    ws.send_json = AsyncMock()
    ws.close = AsyncMock()
    return ws


def sent_types(ws) -> List[str]:
    return [call.args[0]["type"] for call in ws.send_json.await_args_list]


async def drain(iterations: int = 20):
    """Let sender tasks and workers run."""
    for _ in range(iterations):
        await asyncio.sleep(0)


@pytest.fixture
def kubectl_event():
    return ContextEvent(type="command_execution", subject_id="alice",
                        commands=["kubectl get pods"], timestamp=1700000000000)


@pytest.fixture
def docker_failure_event():
    return ContextEvent(
        type="log_update",
        subject_id="alice",
        logFile="/var/log/docker.log",
        entries=[{"message": "docker build failed: no space left on device"}]
    )


@pytest_asyncio.fixture
async def store(tmp_path):
    adapter = SQLiteAdapter(str(tmp_path / "contextdocs.db"))
    await adapter.initialize()
    yield adapter
    await adapter.close()


@pytest.fixture
def suggestion_cache():
    return SuggestionCache(CacheManager(max_memory_cache_size=100))
