from __future__ import annotations

import logging
from collections import defaultdict
from datetime import datetime
from typing import Dict, Iterable, List, Set

from ..core.exceptions import StoreError
from ..core.models import Impression, IPFrequencyRecord
from ..core.rules import IP_FREQUENCY_THRESHOLD, clean_ip
from ..store.base import EventStore

logger = logging.getLogger(__name__)


class IPStatsAccumulator:
    """Running per-IP impression count, distinct bundles and distinct devices for one run."""

    def __init__(self) -> None:
        self.counts: Dict[str, int] = defaultdict(int)
        self.bundles: Dict[str, Set[str]] = defaultdict(set)
        self.devices: Dict[str, Set[str]] = defaultdict(set)

    def observe(self, impression: Impression) -> None:
        ip = clean_ip(impression.ip)
        if not ip:
            return
        self.counts[ip] += 1
        if impression.bundle:
            self.bundles[ip].add(impression.bundle)
        if impression.device_key:
            self.devices[ip].add(impression.device_key)

    def observe_all(self, impressions: Iterable[Impression]) -> None:
        for impression in impressions:
            self.observe(impression)

    def flagged(self, threshold: int, now: datetime) -> List[IPFrequencyRecord]:
        """Records for every IP whose run count exceeds ``threshold``."""
        return [
            IPFrequencyRecord(
                ip=ip,
                impression_count=count,
                unique_bundles=len(self.bundles.get(ip, ())),
                unique_devices=len(self.devices.get(ip, ())),
                is_flagged=True,
                updated_at=now,
            )
            for ip, count in self.counts.items()
            if count > threshold
        ]

    def __len__(self) -> int:
        return len(self.counts)


class IPFrequencyUpdater:
    """
    Upserts the IPs that exceeded the frequency threshold during a run.

    Quiet IPs are never written and previously flagged rows are never
    deleted. A failing chunk is logged and the remaining chunks still run.
    """

    def __init__(
        self,
        store: EventStore,
        threshold: int = IP_FREQUENCY_THRESHOLD,
        chunk_size: int = 500,
    ) -> None:
        self._store = store
        self._threshold = threshold
        self._chunk_size = chunk_size

    async def update(self, stats: IPStatsAccumulator, now: datetime) -> int:
        """Returns the number of records successfully upserted."""
        records = stats.flagged(self._threshold, now)
        written = 0
        for i in range(0, len(records), self._chunk_size):
            chunk = records[i:i + self._chunk_size]
            try:
                await self._store.upsert_ip_frequency(chunk)
            except StoreError as exc:
                logger.error("[IPFrequency] Upsert of %d records failed: %s", len(chunk), exc)
                continue
            written += len(chunk)
        return written
