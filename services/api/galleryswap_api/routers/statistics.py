from __future__ import annotations

from dataclasses import asdict
from datetime import UTC, date, datetime, timedelta
from typing import Any, Literal

from fastapi import APIRouter, HTTPException, Query, Response
from sqlalchemy.orm import Session

from galleryswap_api.deps import AdminOnly, CronOnly, DBSession
from galleryswap_api.models import Experiment
from galleryswap_api.statistics import (
    export_daily_csv,
    load_daily_statistics,
    rollup_daily_statistics,
    summarize_experiment,
)

router = APIRouter(prefix="/api/statistics", tags=["statistics"])


@router.post("/rollup")
def rollup(
    day: date | None = Query(default=None, alias="date"),
    _auth: str = CronOnly,
    db: Session = DBSession,
) -> dict[str, Any]:
    # Default: yesterday (UTC), the last complete day.
    target = day or (datetime.now(UTC).date() - timedelta(days=1))
    result = rollup_daily_statistics(db, day=target)
    out = asdict(result)
    out["date"] = target.isoformat()
    return out


@router.get("/{experiment_id}", dependencies=[AdminOnly])
def experiment_statistics(
    experiment_id: str,
    start: date | None = None,
    end: date | None = None,
    format: Literal["json", "csv"] = "json",
    db: Session = DBSession,
) -> Any:
    if start and end and start > end:
        raise HTTPException(status_code=400, detail="start_after_end")
    experiment = db.get(Experiment, experiment_id)
    if experiment is None:
        raise HTTPException(status_code=404, detail="experiment_not_found")

    if format == "csv":
        rows = load_daily_statistics(
            db, experiment_id=experiment_id, start=start, end=end
        )
        return Response(
            content=export_daily_csv(rows, experiment=experiment),
            media_type="text/csv",
            headers={
                "Content-Disposition": f'attachment; filename="{experiment_id}_daily.csv"'
            },
        )
    return summarize_experiment(db, experiment_id=experiment_id, start=start, end=end)
