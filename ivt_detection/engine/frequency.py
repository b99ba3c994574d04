from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Dict, Tuple

from ..core.exceptions import StoreError
from ..core.models import AnalyzerConfig, FrequencyContext
from ..core.rules import clean_ip
from ..store.base import EventStore

logger = logging.getLogger(__name__)


def utc_day_window(now: datetime) -> Tuple[datetime, datetime]:
    """Return ``[today 00:00 UTC, tomorrow 00:00 UTC)`` for the given instant."""
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    now = now.astimezone(timezone.utc)
    start = now.replace(hour=0, minute=0, second=0, microsecond=0)
    return start, start + timedelta(days=1)


class FrequencyContextBuilder:
    """
    Builds the per-run FrequencyContext from the store's aggregate queries.

    Fails open: if either aggregation errors, that map is left empty and
    the corresponding frequency rule simply never triggers for the run.
    """

    def __init__(self, store: EventStore, config: AnalyzerConfig = AnalyzerConfig()) -> None:
        self._store = store
        self._config = config

    async def build(self, now: datetime) -> FrequencyContext:
        start, end = utc_day_window(now)

        try:
            ifa_counts = await self._store.ifa_frequency(
                start, end, self._config.ifa_prefilter_count
            )
        except StoreError as exc:
            logger.warning("[FrequencyContext] IFA frequency unavailable: %s", exc)
            ifa_counts = {}

        try:
            # Unfiltered: "x" and "x/32" rows only reach the prefilter once merged.
            raw_ip_counts = await self._store.ip_frequency(start, end)
        except StoreError as exc:
            logger.warning("[FrequencyContext] IP frequency unavailable: %s", exc)
            raw_ip_counts = {}

        context = FrequencyContext(
            ifa_counts=dict(ifa_counts),
            ip_counts=_merge_clean_ips(raw_ip_counts, self._config.ip_prefilter_count),
            window_start=start,
            window_end=end,
        )
        logger.info(
            "[FrequencyContext] %d IFAs, %d IPs for %s",
            len(context.ifa_counts), len(context.ip_counts), start.date().isoformat(),
        )
        return context


def _merge_clean_ips(counts: Dict[str, int], min_count: int = 0) -> Dict[str, int]:
    # "1.2.3.4" and "1.2.3.4/32" are the same address.
    merged: Dict[str, int] = {}
    for ip, count in counts.items():
        key = clean_ip(ip)
        if key:
            merged[key] = merged.get(key, 0) + count
    return {ip: n for ip, n in merged.items() if n > min_count}
