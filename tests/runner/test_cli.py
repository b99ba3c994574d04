"""Tests for the on-demand / scheduled runner (ivt_detection.runner.cli)."""

from __future__ import annotations

import asyncio
import json
import logging
from unittest.mock import AsyncMock

import pytest

from ivt_detection.core.exceptions import AnalysisInProgressError
from ivt_detection.core.models import RunSummary
from ivt_detection.engine import IVTAnalyzer
from ivt_detection.runner.cli import build_store, main, parse_args, run_once, run_scheduled
from ivt_detection.store import PostgrestEventStore, SQLiteEventStore
from ..conftest import FIXED_NOW, FakeEventStore, make_impressions


@pytest.fixture
def analyzer(config) -> IVTAnalyzer:
    store = FakeEventStore(make_impressions(3, user_agent="python-requests/2.31"))
    return IVTAnalyzer(store, config, clock=lambda: FIXED_NOW)


class TestParseArgs:
    def test_defaults(self):
        args = parse_args([])
        assert args.backend == "sqlite"
        assert args.db_path == "ivt.db"
        assert args.interval is None
        assert args.iterations is None
        assert args.page_size == 5000

    def test_scheduled_options(self):
        args = parse_args(["--interval", "3600", "--iterations", "4", "--page-size", "200"])
        assert args.interval == 3600.0
        assert args.iterations == 4
        assert args.page_size == 200

    def test_unknown_backend_rejected(self):
        with pytest.raises(SystemExit):
            parse_args(["--backend", "mysql"])


@pytest.mark.asyncio
class TestBuildStore:
    async def test_sqlite_backend(self, tmp_path):
        store = build_store(parse_args(["--db-path", str(tmp_path / "a.db")]))
        try:
            assert isinstance(store, SQLiteEventStore)
        finally:
            await store.close()

    async def test_postgrest_backend_reads_environment(self, monkeypatch):
        monkeypatch.setenv("SUPABASE_URL", "https://demo.supabase.co/")
        monkeypatch.setenv("SUPABASE_SERVICE_ROLE_KEY", "service-key")
        store = build_store(parse_args(["--backend", "postgrest"]))
        try:
            assert isinstance(store, PostgrestEventStore)
            assert store._settings.url == "https://demo.supabase.co"
        finally:
            await store.close()


@pytest.mark.asyncio
class TestRunners:
    async def test_run_once_prints_summary(self, analyzer, capsys):
        summary = await run_once(analyzer)

        printed = json.loads(capsys.readouterr().out)
        assert printed == summary.model_dump()
        assert printed["analyzed_count"] == 3
        assert printed["suspicious_count"] == 3

    async def test_scheduled_runs_requested_iterations(self, analyzer):
        summaries = await run_scheduled(analyzer, interval_seconds=0, iterations=2)

        assert len(summaries) == 2
        assert summaries[0].analyzed_count == 3
        # Second pass finds nothing left to analyze.
        assert summaries[1].analyzed_count == 0

    async def test_failed_run_is_logged_and_schedule_continues(self, analyzer, caplog):
        analyzer.run = AsyncMock(side_effect=[AnalysisInProgressError("busy"), RunSummary()])

        with caplog.at_level(logging.ERROR, logger="ivt_detection.runner.cli"):
            summaries = await run_scheduled(analyzer, interval_seconds=0, iterations=2)

        assert summaries == [RunSummary()]
        assert "Run 1 failed" in caplog.text

    async def test_stop_event_ends_schedule(self, analyzer):
        stop = asyncio.Event()
        stop.set()
        assert await run_scheduled(analyzer, interval_seconds=60, stop=stop) == []

    async def test_stop_during_wait_ends_schedule(self, config):
        store = FakeEventStore(make_impressions(3))
        analyzer = IVTAnalyzer(store, config, clock=lambda: FIXED_NOW)
        stop = asyncio.Event()
        task = asyncio.create_task(run_scheduled(analyzer, interval_seconds=60, stop=stop))
        while not store.fetch_calls or analyzer.is_running:
            await asyncio.sleep(0)
        stop.set()
        summaries = await asyncio.wait_for(task, timeout=5)
        assert len(summaries) == 1


@pytest.mark.asyncio
async def test_main_single_run_against_sqlite(tmp_path, capsys):
    db_path = tmp_path / "ivt.db"
    seed = SQLiteEventStore(db_path)
    await seed.insert_impressions([
        {"timestamp": FIXED_NOW, "ifa": "00000000-0000-0000-0000-000000000000", "user_agent": "curl/8.4.0"},
        {
            "timestamp": FIXED_NOW,
            "ifa": "6d9f0a4e-8c1b-4a7e-9f3e-2b1c0d5e7a91",
            "ip": "81.2.69.160",
            "bundle": "com.acme.puzzle",
            "user_agent": "Mozilla/5.0 (Linux; Android 14)",
        },
    ])
    await seed.close()

    summaries = await main(["--db-path", str(db_path), "--log-level", "warning"])

    assert len(summaries) == 1
    assert summaries[0].analyzed_count == 2
    assert summaries[0].suspicious_count == 1
    assert json.loads(capsys.readouterr().out)["analyzed_count"] == 2
