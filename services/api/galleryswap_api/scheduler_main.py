from __future__ import annotations

import argparse
import signal
import time
from datetime import UTC, date, datetime, timedelta

import orjson

from galleryswap_api.catalog import get_catalog_client
from galleryswap_api.core.config import Settings
from galleryswap_api.db import SessionLocal
from galleryswap_api.eventlog import log
from galleryswap_api.locks import advisory_lock
from galleryswap_api.scheduler import rotate_due_experiments
from galleryswap_api.statistics import rollup_daily_statistics


def rollup_due(now: datetime, *, last_rollup: date | None, hour_utc: int) -> date | None:
    """The day to roll up on this tick, or None.

    Yesterday (UTC) once per day, on the first tick at or after ``hour_utc``.
    """
    if now.hour < int(hour_utc):
        return None
    target = now.date() - timedelta(days=1)
    if last_rollup is not None and last_rollup >= target:
        return None
    return target


def run_once(
    *, now: datetime | None = None, last_rollup: date | None = None
) -> dict[str, object]:
    settings = Settings()
    now_dt = now or datetime.now(UTC)
    out: dict[str, object] = {"ok": True, "at": now_dt.isoformat()}

    with SessionLocal() as session:
        with advisory_lock(session, name="scheduler:rotation") as acquired:
            if acquired:
                summary = rotate_due_experiments(
                    session,
                    get_catalog_client(),
                    now=now_dt,
                    limit=int(settings.scheduler_batch_limit),
                )
                out["rotation"] = {
                    "processed": summary.processed,
                    "rotated": summary.rotated,
                    "failed": summary.failed,
                    "skipped": summary.skipped,
                }
            else:
                out["rotation"] = {"skipped": "lock_busy"}

    day = rollup_due(now_dt, last_rollup=last_rollup, hour_utc=settings.stats_rollup_hour_utc)
    if day is not None:
        try:
            with SessionLocal() as session:
                res = rollup_daily_statistics(session, day=day)
            out["rollup"] = {"date": day.isoformat(), "experiments": res.experiments, "rows": res.rows}
        except Exception as exc:  # noqa: BLE001
            log("scheduler", "rollup failed", level="error", date=day.isoformat(), error=str(exc)[:400])
            out["rollup"] = {"date": day.isoformat(), "error": str(exc)[:400]}
    return out


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        description="GallerySwap scheduler (rotation ticks + daily statistics rollup)."
    )
    parser.add_argument("--once", action="store_true", help="Run once and exit.")
    args = parser.parse_args(argv)

    settings = Settings()
    if not bool(settings.scheduler_enabled):
        print("[scheduler] disabled (GALLERYSWAP_SCHEDULER_ENABLED=false)")
        return 0

    stop = {"flag": False}

    def _handle(_sig, _frame) -> None:  # noqa: ANN001
        stop["flag"] = True

    signal.signal(signal.SIGTERM, _handle)
    signal.signal(signal.SIGINT, _handle)

    interval_sec = max(60, int(settings.scheduler_interval_minutes) * 60)
    last_rollup: date | None = None

    while True:
        res = run_once(last_rollup=last_rollup)
        rollup = res.get("rollup")
        if isinstance(rollup, dict) and "error" not in rollup:
            last_rollup = date.fromisoformat(str(rollup["date"]))
        print(f"[scheduler] ok: {orjson.dumps(res).decode('utf-8')}", flush=True)
        if args.once or stop["flag"]:
            return 0
        time.sleep(interval_sec)


if __name__ == "__main__":
    raise SystemExit(main())
