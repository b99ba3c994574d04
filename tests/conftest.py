"""
Shared pytest fixtures used across the modular test suite.
"""

from __future__ import annotations

import asyncio
from collections import Counter
from datetime import datetime, timedelta, timezone
from itertools import count
from typing import Callable, Dict, Iterable, List, Optional, Set

import pytest
import pytest_asyncio

from ivt_detection.core.exceptions import StoreError
from ivt_detection.core.models import (
    AnalyzerConfig,
    Impression,
    ImpressionUpdate,
    IPFrequencyRecord,
)
from ivt_detection.store import EventStore, SQLiteEventStore

# Mid-day, so "today" comfortably contains the default impression timestamps.
FIXED_NOW = datetime(2026, 10, 18, 12, 0, tzinfo=timezone.utc)

MOBILE_UA = (
    "Mozilla/5.0 (iPhone; CPU iPhone OS 17_0 like Mac OS X) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/17.0 Mobile/15E148 Safari/604.1"
)

# Auto-assigned ids start high so they never collide with explicit start_ids.
_ids = count(100_000)


def make_impression(**overrides) -> Impression:
    """A clean impression that triggers no rule unless overridden."""
    impression_id = overrides.pop("id", None) or next(_ids)
    fields = {
        "id": impression_id,
        "timestamp": FIXED_NOW - timedelta(hours=1),
        "pub_id": "pub-001",
        "bundle": "com.acme.puzzle",
        # Distinct per impression so frequency rules stay quiet by default.
        "ifa": f"6d9f0a4e-8c1b-4a7e-9f3e-{impression_id:012x}",
        "ip": "81.2.69.160",
        "user_agent": MOBILE_UA,
        "device_make": "Apple",
        "device_model": "iPhone14,2",
        "os": "iOS",
        "os_version": "17.0",
        "creative_id": "cr-100",
    }
    fields.update(overrides)
    return Impression(**fields)


def make_impressions(n: int, start_id: int = 1, **overrides) -> List[Impression]:
    return [make_impression(id=start_id + i, **overrides) for i in range(n)]


class FakeEventStore(EventStore):
    """
    In-memory EventStore with failure injection and call recording.

    Mirrors the real stores' filter semantics: fetch always returns the
    first ``limit`` rows with ``analyzed_at`` unset, ordered by id.
    """

    def __init__(self, impressions: Iterable[Impression] = ()) -> None:
        self.rows: Dict[int, Impression] = {}
        self.ip_records: Dict[str, IPFrequencyRecord] = {}
        self.fetch_calls: List[int] = []
        self.upsert_calls: List[List[IPFrequencyRecord]] = []
        self.fail_update_ids: Set[int] = set()
        self.fetch_error: Optional[Exception] = None
        self.fetch_error_after: int = 0
        self.frequency_error: Optional[Exception] = None
        self.upsert_error: Optional[Exception] = None
        self.after_fetch: Optional[Callable[[], None]] = None
        self.fetch_gate: Optional[asyncio.Event] = None
        self.in_flight = 0
        self.max_in_flight = 0
        self.add(*impressions)

    def add(self, *impressions: Impression) -> None:
        for imp in impressions:
            self.rows[imp.id] = imp

    def _in_window(self, start: datetime, end: datetime) -> List[Impression]:
        return [r for r in self.rows.values() if start <= r.timestamp < end]

    async def fetch_unanalyzed(self, limit: int) -> List[Impression]:
        self.fetch_calls.append(limit)
        if self.fetch_gate is not None:
            await self.fetch_gate.wait()
        if self.fetch_error is not None and len(self.fetch_calls) > self.fetch_error_after:
            raise self.fetch_error
        pending = sorted(
            (r for r in self.rows.values() if r.analyzed_at is None), key=lambda r: r.id
        )
        if self.after_fetch is not None:
            self.after_fetch()
        return pending[:limit]

    async def ifa_frequency(self, start, end, min_count=0):
        if self.frequency_error is not None:
            raise self.frequency_error
        counts = Counter(r.ifa for r in self._in_window(start, end) if r.ifa)
        return {k: v for k, v in counts.items() if v > min_count}

    async def ip_frequency(self, start, end, min_count=0):
        if self.frequency_error is not None:
            raise self.frequency_error
        counts = Counter(r.ip for r in self._in_window(start, end) if r.ip)
        return {k: v for k, v in counts.items() if v > min_count}

    async def update_impression(self, update: ImpressionUpdate) -> None:
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(0)
            if update.id in self.fail_update_ids:
                raise StoreError(f"update rejected for {update.id}")
            self.rows[update.id] = self.rows[update.id].model_copy(
                update=update.model_dump(exclude={"id"})
            )
        finally:
            self.in_flight -= 1

    async def upsert_ip_frequency(self, records) -> None:
        self.upsert_calls.append(list(records))
        if self.upsert_error is not None:
            raise self.upsert_error
        for r in records:
            self.ip_records[r.ip] = r


@pytest.fixture
def config() -> AnalyzerConfig:
    """Small pages and chunks so pagination is exercised with few rows."""
    return AnalyzerConfig(
        page_size=10,
        update_chunk_size=4,
        max_concurrent_updates=2,
    )


@pytest_asyncio.fixture
async def sqlite_store(tmp_path):
    store = SQLiteEventStore(tmp_path / "ivt.db")
    yield store
    await store.close()
