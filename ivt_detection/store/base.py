from __future__ import annotations

from datetime import datetime
from typing import Dict, List, Sequence

from ..core.models import Impression, ImpressionUpdate, IPFrequencyRecord


class EventStore:
    """
    Backing store for impression events. Subclass and implement the
    fetch / aggregate / write methods.

    Every failure surfaces as ``StoreError`` (or ``StoreUnavailableError``)
    so the analyzer never depends on a particular backend's exceptions.
    """

    async def fetch_unanalyzed(self, limit: int) -> List[Impression]:
        """
        Return up to ``limit`` impressions with ``analyzed_at IS NULL``,
        ordered by id ascending, always starting from the first match.
        """
        raise NotImplementedError

    async def ifa_frequency(
        self, start: datetime, end: datetime, min_count: int = 0
    ) -> Dict[str, int]:
        """Count impressions per non-empty IFA in ``[start, end)`` with count > min_count."""
        raise NotImplementedError

    async def ip_frequency(
        self, start: datetime, end: datetime, min_count: int = 0
    ) -> Dict[str, int]:
        """Count impressions per non-null IP in ``[start, end)`` with count > min_count."""
        raise NotImplementedError

    async def update_impression(self, update: ImpressionUpdate) -> None:
        raise NotImplementedError

    async def upsert_ip_frequency(self, records: Sequence[IPFrequencyRecord]) -> None:
        """Insert-or-replace records keyed by IP."""
        raise NotImplementedError

    # Run lease. Stores without shared-lease support always grant it.

    async def acquire_run_lease(self, owner: str, ttl_seconds: float) -> bool:
        return True

    async def release_run_lease(self, owner: str) -> None:
        return None

    async def close(self) -> None:
        return None

    async def __aenter__(self) -> "EventStore":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()
