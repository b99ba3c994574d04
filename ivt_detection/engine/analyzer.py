from __future__ import annotations

import asyncio
import logging
import time
import uuid
from datetime import datetime
from typing import Callable, List, Optional, Sequence, Set

from ..core.exceptions import AnalysisInProgressError, StoreError
from ..core.models import AnalyzerConfig, ImpressionUpdate, RunSummary, utcnow
from ..core.rules import RuleEngine
from ..store.base import EventStore
from .frequency import FrequencyContextBuilder
from .ip_stats import IPFrequencyUpdater, IPStatsAccumulator

logger = logging.getLogger(__name__)


class IVTAnalyzer:
    """
    Batch driver: classifies every not-yet-analyzed impression in the store.

    Responsibilities
    ----------------
    1. Build the same-day FrequencyContext once, before the page loop.
    2. Fetch pages of ``analyzed_at IS NULL`` rows ordered by id. Every fetch
       starts from the first match: rows written back drop out of the filter,
       so the filter itself advances. Never page by a row-count offset.
    3. Evaluate each impression with RuleEngine and write results back in
       chunks, each chunk fanned out in bounded-concurrency sub-batches.
    4. Accumulate per-IP statistics across pages and upsert the flagged IPs
       at the end of the run.

    Only one run at a time: a second concurrent ``run()`` raises
    AnalysisInProgressError, as does a store lease held by another process.
    The lease is renewed before each later page, so a long run keeps it;
    losing it ends the run with ``lease_lost``. ``cancel()`` stops the run
    before the next page fetch.
    """

    def __init__(
        self,
        store: EventStore,
        config: AnalyzerConfig = AnalyzerConfig(),
        clock: Callable[[], datetime] = utcnow,
        lease_owner: Optional[str] = None,
        lease_ttl_seconds: float = 3600.0,
    ) -> None:
        self._store = store
        self._config = config
        self._clock = clock
        self._lease_owner = lease_owner or f"ivt-analyzer-{uuid.uuid4()}"
        self._lease_ttl = lease_ttl_seconds

        self._rules = RuleEngine(
            ifa_frequency_threshold=config.ifa_frequency_threshold,
            ip_frequency_threshold=config.ip_frequency_threshold,
            suspicious_score_threshold=config.suspicious_score_threshold,
        )
        self._frequency = FrequencyContextBuilder(store, config)
        self._ip_updater = IPFrequencyUpdater(
            store,
            threshold=config.ip_frequency_threshold,
            chunk_size=config.update_chunk_size,
        )

        self._run_lock = asyncio.Lock()
        self._cancel_event = asyncio.Event()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._run_lock.locked()

    def cancel(self) -> None:
        """Ask the current run to stop before its next page fetch."""
        self._cancel_event.set()

    async def run(self) -> RunSummary:
        """Analyze all currently unanalyzed impressions and return a run summary."""
        if self._run_lock.locked():
            raise AnalysisInProgressError("An IVT analysis run is already in progress")

        async with self._run_lock:
            if not await self._store.acquire_run_lease(self._lease_owner, self._lease_ttl):
                raise AnalysisInProgressError("IVT run lease is held by another process")
            self._cancel_event.clear()
            try:
                return await self._run()
            finally:
                try:
                    await self._store.release_run_lease(self._lease_owner)
                except StoreError as exc:
                    logger.error("[IVTAnalyzer] Could not release run lease: %s", exc)

    # ------------------------------------------------------------------
    # Page loop
    # ------------------------------------------------------------------

    async def _run(self) -> RunSummary:
        started = time.monotonic()
        summary = RunSummary()
        page_size = self._config.page_size

        context = await self._frequency.build(self._clock())
        stats = IPStatsAccumulator()

        while True:
            if self._cancel_event.is_set():
                summary.cancelled = True
                logger.warning(
                    "[IVTAnalyzer] Cancelled after %d batches", summary.batches_processed
                )
                break

            # Renewed before every page after the first.
            if summary.batches_processed and not await self._renew_lease():
                summary.lease_lost = True
                break

            try:
                page = await self._store.fetch_unanalyzed(page_size)
            except StoreError as exc:
                summary.fetch_failed = True
                logger.error("[IVTAnalyzer] Fetch error: %s", exc)
                break

            if not page:
                break

            analyzed_at = self._clock()
            updates: List[ImpressionUpdate] = []
            for impression in page:
                verdict = self._rules.evaluate(impression, context)
                updates.append(
                    ImpressionUpdate(
                        id=impression.id,
                        is_suspicious=verdict.is_suspicious,
                        ivt_reasons=verdict.reasons,
                        ivt_score=verdict.stored_score,
                        analyzed_at=analyzed_at,
                    )
                )

            failed = await self._write_updates(updates)

            # Failed rows stay unanalyzed and may come back in a later page;
            # count them only once they are actually written.
            for impression, update in zip(page, updates):
                if impression.id in failed:
                    continue
                summary.analyzed_count += 1
                if update.is_suspicious:
                    summary.suspicious_count += 1
                stats.observe(impression)

            summary.write_errors += len(failed)
            summary.batches_processed += 1

            if failed:
                logger.warning(
                    "[IVTAnalyzer] Batch %d: %d update errors",
                    summary.batches_processed, len(failed),
                )
            logger.info(
                "[IVTAnalyzer] Batch %d: processed %d impressions (%d suspicious so far)",
                summary.batches_processed, len(page), summary.suspicious_count,
            )

            if len(failed) == len(page):
                logger.warning(
                    "[IVTAnalyzer] No rows written in batch %d; stopping to avoid refetching it",
                    summary.batches_processed,
                )
                break

            if len(page) < page_size:
                break

        summary.flagged_ips = await self._ip_updater.update(stats, self._clock())
        summary.duration_ms = int((time.monotonic() - started) * 1000)

        logger.info(
            "[IVTAnalyzer] Complete: %d analyzed, %d suspicious, %d batches in %dms",
            summary.analyzed_count, summary.suspicious_count,
            summary.batches_processed, summary.duration_ms,
        )
        return summary

    async def _renew_lease(self) -> bool:
        try:
            renewed = await self._store.acquire_run_lease(self._lease_owner, self._lease_ttl)
        except StoreError as exc:
            logger.error("[IVTAnalyzer] Lease renewal failed: %s", exc)
            return False
        if not renewed:
            logger.warning("[IVTAnalyzer] Run lease taken over by another process; stopping")
        return renewed

    # ------------------------------------------------------------------
    # Write-back
    # ------------------------------------------------------------------

    async def _write_updates(self, updates: Sequence[ImpressionUpdate]) -> Set[int]:
        """
        Write updates in chunks of ``update_chunk_size``, each chunk split into
        sub-batches of at most ``max_concurrent_updates`` simultaneous writes.

        Uses return_exceptions=True so one failed row never cancels its
        siblings. Returns the ids whose write failed.
        """
        failed: Set[int] = set()
        chunk_size = self._config.update_chunk_size
        concurrency = self._config.max_concurrent_updates

        for i in range(0, len(updates), chunk_size):
            chunk = updates[i:i + chunk_size]
            for j in range(0, len(chunk), concurrency):
                batch = chunk[j:j + concurrency]
                results = await asyncio.gather(
                    *(self._store.update_impression(u) for u in batch),
                    return_exceptions=True,
                )
                for update, result in zip(batch, results):
                    if isinstance(result, BaseException):
                        failed.add(update.id)
                        logger.error(
                            "[IVTAnalyzer] Update error for impression %d: %s",
                            update.id, result,
                        )
        return failed
