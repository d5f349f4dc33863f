#!/usr/bin/env python3
"""Run one synchronization against NTP pools and print the true time.

Usage examples:
  - python scripts/sync_once.py
  - python scripts/sync_once.py --pool time.google.com --pool 0.pool.ntp.org
  - python scripts/sync_once.py --cached   (only read the stored calibration)
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

# Allow running from a checkout without installing
ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from truesync.config.settings import settings  # noqa: E402
from truesync.errors import MissingCalibrationError, NetworkFailureError  # noqa: E402
from truesync.ntp.service import TimeSyncService  # noqa: E402
from truesync.utils.logging_config import setup_logging  # noqa: E402


def main() -> int:
    parser = argparse.ArgumentParser(description="Synchronize against NTP pools once")
    parser.add_argument(
        "--pool",
        action="append",
        default=None,
        help="NTP pool hostname (repeatable; default: TRUESYNC_NTP_POOL_HOSTS)",
    )
    parser.add_argument(
        "--no-probe",
        action="store_true",
        help="Skip the TCP reachability probe on resolved addresses",
    )
    parser.add_argument(
        "--cached",
        action="store_true",
        help="Do not query the network; report the stored calibration only",
    )
    parser.add_argument("--log-level", default=settings.LOG_LEVEL)
    args = parser.parse_args()

    setup_logging(args.log_level, component="sync_once")
    if args.no_probe:
        settings.PROBE_ENABLED = False

    service = TimeSyncService.from_settings(settings)
    try:
        if not args.cached:
            result = service.sync(
                args.pool,
                listener=lambda m: print(f"running median: offset={m.reference_offset_millis} ms "
                                         f"rtt={m.round_trip_delay_millis} ms"),
            )
            print(f"consensus: offset={result.reference_offset_millis} ms rtt={result.round_trip_delay_millis} ms")
        print(f"true time: {service.true_datetime_now().isoformat()}")
    except MissingCalibrationError as e:
        print(f"no calibration: {e}", file=sys.stderr)
        return 1
    except NetworkFailureError as e:
        print(f"sync failed: {e}", file=sys.stderr)
        return 2
    finally:
        service.cache.close()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
