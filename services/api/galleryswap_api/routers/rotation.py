from __future__ import annotations

from dataclasses import asdict
from datetime import datetime
from typing import Any, Literal

import orjson
from fastapi import APIRouter, HTTPException, Query
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.orm import Session

from galleryswap_api.catalog import CatalogClient
from galleryswap_api.core.config import Settings
from galleryswap_api.deps import AdminOnly, Catalog, CronOnly, DBSession
from galleryswap_api.locks import advisory_lock
from galleryswap_api.rotation import InvalidTransition
from galleryswap_api.scheduler import (
    ExperimentNotFound,
    StaleExperiment,
    rotate_due_experiments,
    rotation_history,
    override_case,
)

router = APIRouter(prefix="/api/rotation", tags=["rotation"])


class OverrideRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    experiment_id: str = Field(..., alias="experimentId", min_length=1, max_length=128)
    force_case: Literal["BASE", "TEST"] = Field(..., alias="forceCase")


class RotationEventOut(BaseModel):
    id: str
    from_case: str
    to_case: str
    triggered_by: str
    success: bool
    duration_ms: int
    error: str | None = None
    meta: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime


def _run(db: Session, catalog: CatalogClient) -> dict[str, Any]:
    settings = Settings()
    with advisory_lock(db, name="rotation:run") as acquired:
        if not acquired:
            return {
                "processed": 0,
                "rotated": 0,
                "failed": 0,
                "skipped": 0,
                "results": [],
                "locked": True,
            }
        summary = rotate_due_experiments(
            db, catalog, limit=int(settings.scheduler_batch_limit)
        )
    return summary.to_dict()


@router.post("/run")
def run_post(
    _auth: str = CronOnly,
    db: Session = DBSession,
    catalog: CatalogClient = Catalog,
) -> dict[str, Any]:
    return _run(db, catalog)


@router.get("/run")
def run_get(
    _auth: str = CronOnly,
    db: Session = DBSession,
    catalog: CatalogClient = Catalog,
) -> dict[str, Any]:
    # Hosted cron providers can only issue GETs.
    return _run(db, catalog)


@router.post("/override", dependencies=[AdminOnly])
def override(
    req: OverrideRequest,
    db: Session = DBSession,
    catalog: CatalogClient = Catalog,
) -> dict[str, Any]:
    try:
        outcome = override_case(
            db, catalog, experiment_id=req.experiment_id, force_case=req.force_case
        )
    except ExperimentNotFound as exc:
        raise HTTPException(status_code=404, detail="experiment_not_found") from exc
    except InvalidTransition as exc:
        raise HTTPException(
            status_code=409, detail={"error": "invalid_transition", "status": exc.status}
        ) from exc
    except StaleExperiment as exc:
        raise HTTPException(
            status_code=409,
            detail={"error": "concurrent_update", "experiment_id": exc.experiment_id},
        ) from exc
    if outcome.status != "rotated":
        raise HTTPException(
            status_code=502,
            detail={"error": "rotation_failed", "reason": outcome.error},
        )
    return asdict(outcome)


@router.get(
    "/{experiment_id}/history",
    response_model=list[RotationEventOut],
    dependencies=[AdminOnly],
)
def history(
    experiment_id: str,
    limit: int = Query(default=50, ge=1, le=500),
    db: Session = DBSession,
) -> list[RotationEventOut]:
    return [
        RotationEventOut(
            id=ev.id,
            from_case=ev.from_case,
            to_case=ev.to_case,
            triggered_by=ev.triggered_by,
            success=bool(ev.success),
            duration_ms=int(ev.duration_ms or 0),
            error=ev.error,
            meta=orjson.loads(ev.meta_json or "{}"),
            created_at=ev.created_at,
        )
        for ev in rotation_history(db, experiment_id=experiment_id, limit=limit)
    ]
