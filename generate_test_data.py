#!/usr/bin/env python3
"""
generate_test_data.py: scenario-based integration harness.

Seeds a SQLite event store with four traffic scenarios, runs IVTAnalyzer
once over it and prints the run summary and the flagged IP table:

  Scenario 1 (Benign)         real app, real phones, residential IPs.
                              Rules: silent.

  Scenario 2 (Bot farm)       headless browser UAs from a cloud IP block.
                              Rules: bot_user_agent + datacenter_ip.

  Scenario 3 (Device farm)    one IFA and one IP replayed 250 times today.
                              Rules: high_freq_ifa + high_freq_ip.

  Scenario 4 (Spoofed device) iPhones reporting Android.
                              Rules: device_os_mismatch.

Usage:
    python generate_test_data.py                 # throwaway database
    IVT_DB_PATH=ivt.db python generate_test_data.py
"""
from __future__ import annotations

import asyncio
import logging
import os
import tempfile
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List

from ivt_detection import IVTAnalyzer, SQLiteEventStore

_SEP = "─" * 67

MOBILE_UA = (
    "Mozilla/5.0 (Linux; Android 13; SM-S911B) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Mobile Safari/537.36"
)
HEADLESS_UA = (
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) HeadlessChrome/120.0.0.0 Safari/537.36"
)

# ── Scenario builders ─────────────────────────────────────────────────────────


def _impression(now: datetime, minutes_ago: int, **fields: Any) -> Dict[str, Any]:
    base = {
        "timestamp": now - timedelta(minutes=minutes_ago),
        "pub_id": "pub-001",
        "bundle": "com.acme.puzzle",
        "ifa": str(uuid.uuid4()),
        "ip": "81.2.69.160",
        "user_agent": MOBILE_UA,
        "device_make": "Samsung",
        "device_model": "SM-S911B",
        "os": "Android",
        "os_version": "13",
        "creative_id": "cr-100",
    }
    base.update(fields)
    return base


def scenario_benign(now: datetime) -> List[Dict[str, Any]]:
    return [
        _impression(now, i, ip=f"81.2.69.{100 + i}")
        for i in range(20)
    ]


def scenario_bot_farm(now: datetime) -> List[Dict[str, Any]]:
    return [
        _impression(now, i, ip=f"34.102.7.{i}/32", user_agent=HEADLESS_UA)
        for i in range(15)
    ]


def scenario_device_farm(now: datetime) -> List[Dict[str, Any]]:
    ifa = "6d9f0a4e-8c1b-4a7e-9f3e-2b1c0d5e7a91"
    bundles = ["com.acme.puzzle", "com.acme.racer", "com.acme.chess"]
    return [
        _impression(
            now, i % 60,
            ifa=ifa,
            ip="77.88.21.11",
            bundle=bundles[i % len(bundles)],
        )
        for i in range(250)
    ]


def scenario_spoofed_device(now: datetime) -> List[Dict[str, Any]]:
    return [
        _impression(
            now, i,
            ip="81.2.70.5",
            device_make="Apple",
            device_model="iPhone14,2",
            os="Android",
        )
        for i in range(10)
    ]


# ── Entry point ───────────────────────────────────────────────────────────────


async def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(message)s")

    db_path = os.environ.get("IVT_DB_PATH") or str(
        Path(tempfile.mkdtemp(prefix="ivt-")) / "ivt.db"
    )
    # Mid-day keeps every seeded event inside today's UTC window.
    now = datetime.now(timezone.utc).replace(hour=12, minute=0, second=0, microsecond=0)

    scenarios = {
        "Benign": scenario_benign(now),
        "Bot farm": scenario_bot_farm(now),
        "Device farm": scenario_device_farm(now),
        "Spoofed device": scenario_spoofed_device(now),
    }

    print("=" * 67)
    print("  IVT Detection - Test Data Generator")
    print("=" * 67)
    print(f"  Database : {db_path}")

    async with SQLiteEventStore(db_path) as store:
        for name, rows in scenarios.items():
            await store.insert_impressions(rows)
            print(f"  Seeded   : {len(rows):>4} × {name}")
        print(_SEP)

        summary = await IVTAnalyzer(store).run()
        print(f"  Analyzed   : {summary.analyzed_count}")
        print(f"  Suspicious : {summary.suspicious_count}")
        print(f"  Batches    : {summary.batches_processed}")
        print(f"  Duration   : {summary.duration_ms} ms")
        print(_SEP)

        records = await store.ip_frequency_records()
        if records:
            print("  Flagged IPs:")
            for r in records:
                print(
                    f"    {r.ip:<16} impressions={r.impression_count:<5} "
                    f"bundles={r.unique_bundles:<3} devices={r.unique_devices}"
                )
        else:
            print("  Flagged IPs: none")

    print("=" * 67)
    print("  Done.")
    print("=" * 67)


if __name__ == "__main__":
    asyncio.run(main())
