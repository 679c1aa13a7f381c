from __future__ import annotations

import csv
import hashlib
import io
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import UTC, date, datetime, timedelta
from typing import Any, Iterable

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from galleryswap_api.eventlog import log
from galleryswap_api.locks import advisory_lock, lock_name
from galleryswap_api.models import CASES, DailyStatistic, Experiment, InteractionEvent
from galleryswap_api.rotation import load_media_ids


CSV_COLUMNS: list[str] = [
    "date",
    "experiment_id",
    "product_id",
    "case",
    "variant_id",
    "impressions",
    "add_to_carts",
    "ctr",
    "orders",
    "conversion_rate",
    "revenue",
    "media_ids",
]


@dataclass(frozen=True)
class RecomputeResult:
    experiment_id: str
    date: date
    rows: int
    skipped: bool = False


@dataclass
class RollupResult:
    date: date
    experiments: int = 0
    rows: int = 0
    skipped: list[str] = field(default_factory=list)


def _date_bounds(*, day: date) -> tuple[datetime, datetime]:
    start = datetime(day.year, day.month, day.day, tzinfo=UTC)
    return start, start + timedelta(days=1)


def _stat_id(*, experiment_id: str, day: date, case: str, variant_id: str) -> str:
    # Deterministic ids keep repeated recomputes byte-identical.
    raw = f"{experiment_id}|{day.isoformat()}|{case}|{variant_id}".encode("utf-8")
    return f"ds_{hashlib.sha256(raw).hexdigest()[:32]}"


def ratio(numerator: float, denominator: float) -> float:
    if float(denominator) <= 0:
        return 0.0
    return float(numerator) / float(denominator)


def recompute_daily_statistics(
    session: Session, *, experiment_id: str, day: date
) -> RecomputeResult:
    """Replace every DailyStatistic row for (experiment, day) from the event log."""
    with advisory_lock(
        session, name=lock_name("daily_stats", experiment_id, day.isoformat())
    ) as acquired:
        if not acquired:
            return RecomputeResult(
                experiment_id=str(experiment_id), date=day, rows=0, skipped=True
            )

        experiment = session.get(Experiment, str(experiment_id))
        by_variant = bool(
            experiment is not None and str(experiment.variant_scope) == "VARIANT"
        )
        start_dt, end_dt = _date_bounds(day=day)

        grouped = session.execute(
            select(
                InteractionEvent.observed_case,
                InteractionEvent.variant_id,
                InteractionEvent.event_type,
                func.count(InteractionEvent.id),
                func.coalesce(func.sum(InteractionEvent.revenue), 0.0),
            )
            .where(InteractionEvent.experiment_id == str(experiment_id))
            .where(InteractionEvent.observed_case.is_not(None))
            .where(InteractionEvent.created_at >= start_dt)
            .where(InteractionEvent.created_at < end_dt)
            .group_by(
                InteractionEvent.observed_case,
                InteractionEvent.variant_id,
                InteractionEvent.event_type,
            )
        ).all()

        totals: dict[tuple[str, str], dict[str, Any]] = defaultdict(
            lambda: {"impressions": 0, "add_to_carts": 0, "orders": 0, "revenue": 0.0}
        )
        variant_keys: set[str] = {""} if not by_variant else set()
        for case, variant_id, event_type, count, revenue in grouped:
            variant_key = str(variant_id or "") if by_variant else ""
            variant_keys.add(variant_key)
            bucket = totals[(str(case), variant_key)]
            if event_type == "IMPRESSION":
                bucket["impressions"] += int(count or 0)
            elif event_type == "ADD_TO_CART":
                bucket["add_to_carts"] += int(count or 0)
            elif event_type == "PURCHASE":
                bucket["orders"] += int(count or 0)
                bucket["revenue"] += float(revenue or 0.0)

        session.execute(
            delete(DailyStatistic)
            .where(DailyStatistic.experiment_id == str(experiment_id))
            .where(DailyStatistic.date == day)
            .execution_options(synchronize_session="fetch")
        )
        written = 0
        for variant_key in sorted(variant_keys):
            for case in CASES:
                bucket = totals[(case, variant_key)]
                session.add(
                    DailyStatistic(
                        id=_stat_id(
                            experiment_id=str(experiment_id),
                            day=day,
                            case=case,
                            variant_id=variant_key,
                        ),
                        experiment_id=str(experiment_id),
                        date=day,
                        observed_case=case,
                        variant_id=variant_key,
                        impressions=int(bucket["impressions"]),
                        add_to_carts=int(bucket["add_to_carts"]),
                        orders=int(bucket["orders"]),
                        revenue=round(float(bucket["revenue"]), 2),
                    )
                )
                written += 1
        session.commit()
        return RecomputeResult(experiment_id=str(experiment_id), date=day, rows=written)


def rollup_daily_statistics(
    session: Session, *, day: date, experiment_ids: Iterable[str] | None = None
) -> RollupResult:
    if experiment_ids is None:
        start_dt, end_dt = _date_bounds(day=day)
        with_events = session.scalars(
            select(InteractionEvent.experiment_id)
            .where(InteractionEvent.experiment_id.is_not(None))
            .where(InteractionEvent.created_at >= start_dt)
            .where(InteractionEvent.created_at < end_dt)
            .distinct()
        ).all()
        active = session.scalars(
            select(Experiment.id).where(Experiment.status == "ACTIVE")
        ).all()
        ids = sorted({str(x) for x in [*with_events, *active] if x})
    else:
        ids = sorted({str(x) for x in experiment_ids if x})

    result = RollupResult(date=day)
    for experiment_id in ids:
        res = recompute_daily_statistics(session, experiment_id=experiment_id, day=day)
        if res.skipped:
            result.skipped.append(experiment_id)
            continue
        result.experiments += 1
        result.rows += res.rows
    log(
        "statistics",
        "rollup complete",
        date=day.isoformat(),
        experiments=result.experiments,
        rows=result.rows,
        skipped=len(result.skipped),
    )
    return result


def load_daily_statistics(
    session: Session,
    *,
    experiment_id: str,
    start: date | None = None,
    end: date | None = None,
) -> list[DailyStatistic]:
    q = select(DailyStatistic).where(DailyStatistic.experiment_id == str(experiment_id))
    if start is not None:
        q = q.where(DailyStatistic.date >= start)
    if end is not None:
        q = q.where(DailyStatistic.date <= end)
    return list(
        session.scalars(
            q.order_by(
                DailyStatistic.date.asc(),
                DailyStatistic.variant_id.asc(),
                DailyStatistic.observed_case.asc(),
            )
        ).all()
    )


def statistic_to_dict(row: DailyStatistic) -> dict[str, Any]:
    return {
        "date": row.date.isoformat(),
        "case": str(row.observed_case),
        "variant_id": str(row.variant_id or "") or None,
        "impressions": int(row.impressions or 0),
        "add_to_carts": int(row.add_to_carts or 0),
        "orders": int(row.orders or 0),
        "revenue": float(row.revenue or 0.0),
        "ctr": row.ctr,
        "conversion_rate": row.conversion_rate,
    }


def summarize_experiment(
    session: Session,
    *,
    experiment_id: str,
    start: date | None = None,
    end: date | None = None,
) -> dict[str, Any]:
    rows = load_daily_statistics(
        session, experiment_id=experiment_id, start=start, end=end
    )
    totals: dict[str, dict[str, Any]] = {
        case: {"impressions": 0, "add_to_carts": 0, "orders": 0, "revenue": 0.0}
        for case in CASES
    }
    days: set[date] = set()
    for r in rows:
        days.add(r.date)
        t = totals.setdefault(
            str(r.observed_case),
            {"impressions": 0, "add_to_carts": 0, "orders": 0, "revenue": 0.0},
        )
        t["impressions"] += int(r.impressions or 0)
        t["add_to_carts"] += int(r.add_to_carts or 0)
        t["orders"] += int(r.orders or 0)
        t["revenue"] += float(r.revenue or 0.0)

    for t in totals.values():
        t["revenue"] = round(float(t["revenue"]), 2)
        t["ctr"] = ratio(t["add_to_carts"], t["impressions"])
        t["conversion_rate"] = ratio(t["orders"], t["impressions"])

    base_ctr = float(totals["BASE"]["ctr"])
    test_ctr = float(totals["TEST"]["ctr"])
    lift = ((test_ctr - base_ctr) / base_ctr) if base_ctr > 0 else None
    return {
        "experiment_id": str(experiment_id),
        "start": start.isoformat() if start else None,
        "end": end.isoformat() if end else None,
        "days": len(days),
        "cases": totals,
        "ctr_lift": lift,
        "daily": [statistic_to_dict(r) for r in rows],
    }


def export_daily_csv(
    rows: Iterable[DailyStatistic], *, experiment: Experiment | None = None
) -> str:
    media_by_case: dict[str, str] = {}
    product_id = ""
    if experiment is not None:
        product_id = str(experiment.product_id)
        media_by_case = {
            "BASE": "|".join(load_media_ids(experiment.base_media_json)),
            "TEST": "|".join(load_media_ids(experiment.test_media_json)),
        }

    buf = io.StringIO()
    writer = csv.DictWriter(buf, fieldnames=CSV_COLUMNS, lineterminator="\n")
    writer.writeheader()
    for r in rows:
        writer.writerow(
            {
                "date": r.date.isoformat(),
                "experiment_id": str(r.experiment_id),
                "product_id": product_id,
                "case": str(r.observed_case),
                "variant_id": str(r.variant_id or ""),
                "impressions": int(r.impressions or 0),
                "add_to_carts": int(r.add_to_carts or 0),
                "ctr": f"{r.ctr:.4f}",
                "orders": int(r.orders or 0),
                "conversion_rate": f"{r.conversion_rate:.4f}",
                "revenue": f"{float(r.revenue or 0.0):.2f}",
                "media_ids": media_by_case.get(str(r.observed_case), ""),
            }
        )
    return buf.getvalue()
