"""Tests for the frequency context builder (ivt_detection.engine.frequency)."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from ivt_detection.core.exceptions import StoreError, StoreUnavailableError
from ivt_detection.core.models import AnalyzerConfig
from ivt_detection.engine.frequency import FrequencyContextBuilder, utc_day_window
from ..conftest import FIXED_NOW, FakeEventStore, make_impressions

NO_PREFILTER = AnalyzerConfig(ifa_prefilter_count=0, ip_prefilter_count=0)


class TestUtcDayWindow:
    def test_window_spans_the_utc_day(self):
        start, end = utc_day_window(FIXED_NOW)
        assert start == datetime(2026, 10, 18, tzinfo=timezone.utc)
        assert end == datetime(2026, 10, 19, tzinfo=timezone.utc)

    def test_naive_datetime_taken_as_utc(self):
        start, _ = utc_day_window(datetime(2026, 10, 18, 23, 59))
        assert start == datetime(2026, 10, 18, tzinfo=timezone.utc)

    def test_other_timezones_converted_first(self):
        # 23:30 at UTC-5 is already 04:30 the next day in UTC.
        local = datetime(2026, 10, 18, 23, 30, tzinfo=timezone(timedelta(hours=-5)))
        start, end = utc_day_window(local)
        assert start == datetime(2026, 10, 19, tzinfo=timezone.utc)
        assert end - start == timedelta(days=1)


@pytest.mark.asyncio
class TestFrequencyContextBuilder:
    async def test_counts_only_todays_events(self):
        store = FakeEventStore(
            make_impressions(3, start_id=1, ifa="dev-aaaa-1234", ip="81.2.69.160")
            + make_impressions(
                4, start_id=10, ifa="dev-aaaa-1234", ip="81.2.69.160",
                timestamp=FIXED_NOW - timedelta(days=1),
            )
        )
        ctx = await FrequencyContextBuilder(store, NO_PREFILTER).build(FIXED_NOW)
        assert ctx.ifa_counts == {"dev-aaaa-1234": 3}
        assert ctx.ip_counts == {"81.2.69.160": 3}
        assert ctx.window_start == datetime(2026, 10, 18, tzinfo=timezone.utc)

    async def test_midnight_belongs_to_the_new_day(self):
        midnight = datetime(2026, 10, 18, tzinfo=timezone.utc)
        store = FakeEventStore(
            make_impressions(1, start_id=1, ifa="dev-x-1234", timestamp=midnight)
            + make_impressions(1, start_id=2, ifa="dev-x-1234", timestamp=midnight - timedelta(microseconds=1))
        )
        ctx = await FrequencyContextBuilder(store, NO_PREFILTER).build(FIXED_NOW)
        assert ctx.ifa_counts == {"dev-x-1234": 1}

    async def test_prefilter_passed_to_store(self):
        store = FakeEventStore(
            make_impressions(3, start_id=1, ifa="busy-device-1")
            + make_impressions(1, start_id=10, ifa="quiet-device-1")
        )
        cfg = AnalyzerConfig(ifa_prefilter_count=2, ip_prefilter_count=0)
        ctx = await FrequencyContextBuilder(store, cfg).build(FIXED_NOW)
        assert ctx.ifa_counts == {"busy-device-1": 3}

    async def test_cidr_variants_are_merged(self):
        store = FakeEventStore(
            make_impressions(2, start_id=1, ip="203.0.113.5")
            + make_impressions(3, start_id=10, ip="203.0.113.5/32")
        )
        ctx = await FrequencyContextBuilder(store, NO_PREFILTER).build(FIXED_NOW)
        assert ctx.ip_counts == {"203.0.113.5": 5}

    async def test_ip_prefilter_applies_to_merged_counts(self):
        store = FakeEventStore(
            make_impressions(100, start_id=1, ip="198.51.100.7")
            + make_impressions(101, start_id=1000, ip="198.51.100.7/32")
            + make_impressions(60, start_id=2000, ip="198.51.100.8")
            + make_impressions(60, start_id=3000, ip="198.51.100.8/32")
        )
        ctx = await FrequencyContextBuilder(store, AnalyzerConfig()).build(FIXED_NOW)
        # Each spelling of .8 sits under the prefilter of 100 on its own.
        assert ctx.ip_counts == {"198.51.100.7": 201, "198.51.100.8": 120}

    async def test_ip_prefilter_drops_quiet_addresses(self):
        store = FakeEventStore(
            make_impressions(3, start_id=1, ip="5.5.5.5")
            + make_impressions(1, start_id=10, ip="6.6.6.6/32")
        )
        cfg = AnalyzerConfig(ip_prefilter_count=2)
        ctx = await FrequencyContextBuilder(store, cfg).build(FIXED_NOW)
        assert ctx.ip_counts == {"5.5.5.5": 3}

    async def test_failure_degrades_to_empty_maps(self):
        store = FakeEventStore(make_impressions(5, start_id=1))
        store.frequency_error = StoreUnavailableError("get_ifa_frequency missing")
        ctx = await FrequencyContextBuilder(store, NO_PREFILTER).build(FIXED_NOW)
        assert ctx.ifa_counts == {}
        assert ctx.ip_counts == {}

    async def test_queries_fail_independently(self):
        store = FakeEventStore(make_impressions(2, start_id=1, ip="81.2.69.160"))

        async def broken_ifa(*args, **kwargs):
            raise StoreError("timeout")

        store.ifa_frequency = broken_ifa
        ctx = await FrequencyContextBuilder(store, NO_PREFILTER).build(FIXED_NOW)
        assert ctx.ifa_counts == {}
        assert ctx.ip_counts == {"81.2.69.160": 2}
