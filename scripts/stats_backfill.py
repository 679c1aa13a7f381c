from __future__ import annotations

import argparse
from datetime import UTC, date, datetime, timedelta

from galleryswap_api.db import SessionLocal
from galleryswap_api.statistics import rollup_daily_statistics


def _parse_days(range_raw: str | None, days_raw: int | None) -> int:
    if range_raw:
        raw = str(range_raw).strip().lower()
        if raw.endswith("d"):
            raw = raw[:-1]
        try:
            return max(1, min(365, int(raw)))
        except ValueError:
            return 7
    if days_raw is not None:
        return max(1, min(365, int(days_raw)))
    return 7


def backfill_days(*, end: date, days: int) -> list[date]:
    """``days`` consecutive dates ending at ``end`` (inclusive), oldest first."""
    return [end - timedelta(days=offset) for offset in range(days - 1, -1, -1)]


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        description="Recompute daily_statistics from interaction_events for a date range."
    )
    parser.add_argument(
        "--range", dest="range", default=None, help="e.g. 7d, 30d (default 7d)"
    )
    parser.add_argument(
        "--days", dest="days", type=int, default=None, help="alias for --range (integer days)"
    )
    parser.add_argument(
        "--end",
        default=None,
        help="last day to recompute, YYYY-MM-DD (default: yesterday UTC)",
    )
    parser.add_argument(
        "--experiment", action="append", default=None, help="limit to experiment id(s)"
    )
    args = parser.parse_args(argv)

    days = _parse_days(args.range, args.days)
    end = (
        date.fromisoformat(args.end)
        if args.end
        else datetime.now(UTC).date() - timedelta(days=1)
    )
    rows = 0
    with SessionLocal() as session:
        for day in backfill_days(end=end, days=days):
            res = rollup_daily_statistics(session, day=day, experiment_ids=args.experiment)
            rows += res.rows

    first = backfill_days(end=end, days=days)[0]
    print(f"[stats_backfill] ok (days={days}, {first.isoformat()}..{end.isoformat()}, rows={rows})")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
