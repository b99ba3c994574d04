"""On-demand / scheduled IVT analysis runner.

Usage:
    ivt-analyze                                   # one run against ./ivt.db
    ivt-analyze --db-path /data/ivt.db --interval 3600
    SUPABASE_URL=... SUPABASE_SERVICE_ROLE_KEY=... ivt-analyze --backend postgrest
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import signal
from typing import List, Optional, Sequence

from ..core.exceptions import IVTError
from ..core.models import AnalyzerConfig, PostgrestSettings, RunSummary
from ..engine import IVTAnalyzer
from ..store import EventStore, PostgrestEventStore, SQLiteEventStore

logger = logging.getLogger(__name__)


async def run_once(analyzer: IVTAnalyzer) -> RunSummary:
    """Single on-demand run; prints the summary as JSON."""
    summary = await analyzer.run()
    print(summary.model_dump_json())
    return summary


async def run_scheduled(
    analyzer: IVTAnalyzer,
    interval_seconds: float,
    iterations: Optional[int] = None,
    stop: Optional[asyncio.Event] = None,
) -> List[RunSummary]:
    """
    Run the analyzer every ``interval_seconds`` until ``iterations`` runs have
    been attempted or ``stop`` is set. A failed run is logged and the schedule
    continues.
    """
    stop = stop or asyncio.Event()
    summaries: List[RunSummary] = []
    attempted = 0

    while not stop.is_set() and (iterations is None or attempted < iterations):
        attempted += 1
        try:
            summaries.append(await run_once(analyzer))
        except IVTError as exc:
            logger.error("[Runner] Run %d failed: %s", attempted, exc)

        if iterations is not None and attempted >= iterations:
            break
        try:
            await asyncio.wait_for(stop.wait(), timeout=interval_seconds)
        except asyncio.TimeoutError:
            pass

    return summaries


def build_store(args: argparse.Namespace) -> EventStore:
    if args.backend == "postgrest":
        settings = PostgrestSettings(
            url=os.environ["SUPABASE_URL"],
            service_key=os.environ["SUPABASE_SERVICE_ROLE_KEY"],
        )
        return PostgrestEventStore(settings)
    return SQLiteEventStore(args.db_path)


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Invalid traffic (IVT) batch analyzer")
    parser.add_argument("--backend", choices=("sqlite", "postgrest"), default="sqlite")
    parser.add_argument("--db-path", default="ivt.db")
    parser.add_argument("--interval", type=float, default=None,
                        help="Seconds between runs; omit for a single run")
    parser.add_argument("--iterations", type=int, default=None)
    parser.add_argument("--page-size", type=int, default=AnalyzerConfig().page_size)
    parser.add_argument("--log-level", default="INFO")
    return parser.parse_args(argv)


async def main(argv: Optional[Sequence[str]] = None) -> List[RunSummary]:
    args = parse_args(argv)
    logging.basicConfig(
        level=args.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )

    store = build_store(args)
    analyzer = IVTAnalyzer(store, AnalyzerConfig(page_size=args.page_size))
    stop = asyncio.Event()

    def _shutdown() -> None:
        logger.info("[Runner] Shutdown requested; stopping after the current page")
        stop.set()
        analyzer.cancel()

    loop = asyncio.get_running_loop()
    handled = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _shutdown)
            handled.append(sig)
        except (NotImplementedError, RuntimeError):
            pass  # not supported on this platform / thread

    try:
        if args.interval is None:
            return [await run_once(analyzer)]
        return await run_scheduled(analyzer, args.interval, args.iterations, stop)
    finally:
        for sig in handled:
            loop.remove_signal_handler(sig)
        await store.close()


def run_main() -> None:
    """Synchronous entry point for the console script."""
    asyncio.run(main())  # pragma: no cover - exercised by console script


if __name__ == "__main__":  # pragma: no cover
    run_main()
