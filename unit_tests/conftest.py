"""Shared pytest fixtures for unit tests."""

from datetime import datetime, timezone
from fnmatch import fnmatchcase
from typing import Any, Callable
from pathlib import Path
import sys

import pytest

# Ensure project root is importable when tests run from repository root.
PROJECT_ROOT = Path(__file__).resolve().parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from implementation.classes.schemas import CopilotItem


class FakePipeline:
    """Queues commands and applies them on execute(), like a MULTI/EXEC pipeline."""

    def __init__(self, client: "FakeRedis") -> None:
        self._client = client
        self._commands: list[tuple[str, tuple, dict]] = []

    def __getattr__(self, name: str):
        def _queue(*args, **kwargs):
            self._commands.append((name, args, kwargs))
            return self
        return _queue

    async def execute(self) -> list:
        results = []
        for name, args, kwargs in self._commands:
            results.append(await getattr(self._client, name)(*args, **kwargs))
        self._commands.clear()
        return results


class FakeRedis:
    """
    In-memory stand-in for the subset of redis.asyncio.Redis the caches use.

    Time only moves through advance(); keys whose TTL has run out are dropped
    at that point, as Redis would expire them.
    """

    def __init__(self) -> None:
        self.strings: dict[str, str] = {}
        self.sets: dict[str, set[str]] = {}
        self.ttls: dict[str, int] = {}
        self.clock: float = 0.0
        self._deadlines: dict[str, float] = {}

    def advance(self, seconds: float) -> None:
        self.clock += seconds
        for key, deadline in list(self._deadlines.items()):
            if deadline <= self.clock:
                self.strings.pop(key, None)
                self.sets.pop(key, None)
                self.ttls.pop(key, None)
                del self._deadlines[key]

    def _set_ttl(self, key: str, seconds: int) -> None:
        self.ttls[key] = seconds
        self._deadlines[key] = self.clock + seconds

    async def ping(self) -> bool:
        return True

    async def get(self, key: str):
        return self.strings.get(key)

    async def set(self, key: str, value: str, ex: int | None = None) -> bool:
        self.strings[key] = value
        if ex is not None:
            self._set_ttl(key, ex)
        return True

    async def sadd(self, key: str, *members: str) -> int:
        bucket = self.sets.setdefault(key, set())
        added = [member for member in members if member not in bucket]
        bucket.update(added)
        return len(added)

    async def sismember(self, key: str, member: str) -> bool:
        return member in self.sets.get(key, set())

    async def expire(self, key: str, seconds: int) -> bool:
        if key not in self.strings and key not in self.sets:
            return False
        self._set_ttl(key, seconds)
        return True

    async def ttl(self, key: str) -> int:
        if key not in self.strings and key not in self.sets:
            return -2
        if key not in self._deadlines:
            return -1
        return int(self._deadlines[key] - self.clock)

    async def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            if self.strings.pop(key, None) is not None or self.sets.pop(key, None) is not None:
                removed += 1
            self.ttls.pop(key, None)
            self._deadlines.pop(key, None)
        return removed

    async def scan_iter(self, match: str = "*", count: int | None = None):
        for key in list(self.strings) + list(self.sets):
            if fnmatchcase(key, match):
                yield key

    def pipeline(self, transaction: bool = True) -> FakePipeline:
        return FakePipeline(self)


@pytest.fixture
def fake_redis(mocker) -> FakeRedis:
    """Patch every Redis-backed module to share one in-memory client."""
    client = FakeRedis()
    for module in ("db.redis", "db.listing_cache", "db.view_guard"):
        mocker.patch(f"{module}.get_redis_client", return_value=client)
    return client


@pytest.fixture
def copilot_item_factory() -> Callable[..., CopilotItem]:
    """Return a factory that builds a valid CopilotItem with optional overrides."""

    def _factory(**overrides: Any) -> CopilotItem:
        base_data: dict[str, Any] = {
            "item_id": 20001,
            "uploader_id": "u-owner",
            "title": "1-7 low rarity clear",
            "details": "Only three-star operators.",
            "stage_name": "main_01-07",
            "operator_names": ["Myrtle", "Kroos"],
            "content": '{"stage_name": "main_01-07"}',
            "views": 100,
            "like_count": 8,
            "dislike_count": 2,
            "rating_level": 8,
            "rating_ratio": 0.8,
            "hot_score": 0.0,
            "upload_time": datetime(2026, 10, 1, tzinfo=timezone.utc),
            "deleted": False,
            "notification": False,
        }
        base_data.update(overrides)
        return CopilotItem(**base_data)

    return _factory
