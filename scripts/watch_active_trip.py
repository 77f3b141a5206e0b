"""Restore the stored session and print the active trip as it changes."""

from __future__ import annotations

import argparse
import time

from ridein.app import build_runtime
from ridein.config import load_config
from ridein.logger import configure_logging
from ridein.models import Trip
from ridein.session.manager import AuthState


def _describe(trip: Trip | None) -> dict:
    if trip is None:
        return {"trip": None}
    return {
        "trip": trip.id,
        "status": trip.status.value,
        "bids": len(trip.bids),
        "driver_id": trip.driver_id,
        "final_price": trip.final_price,
    }


def main() -> int:
    parser = argparse.ArgumentParser()
    parser.add_argument(
        "--config",
        default="config/config.yaml",
        help="Path to the YAML config",
    )
    args = parser.parse_args()

    config = load_config(args.config)
    logger = configure_logging(config.log)
    runtime = build_runtime(config)

    state = runtime.session.boot()
    if state != AuthState.AUTHENTICATED or runtime.session.user is None:
        logger.error("No usable stored session at %s; log in first", config.session.store_path)
        runtime.close()
        return 1

    machine = runtime.trip_machine(
        runtime.session.user,
        on_change=lambda trip: print("trip_update", _describe(trip), flush=True),
        on_completed=lambda trip: print("trip_completed", _describe(trip), flush=True),
    )
    machine.start()
    try:
        while runtime.session.state != AuthState.UNAUTHENTICATED:
            time.sleep(1)
    except KeyboardInterrupt:
        pass
    finally:
        machine.teardown()
        runtime.close()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
