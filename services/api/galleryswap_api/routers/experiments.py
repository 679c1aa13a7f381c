from __future__ import annotations

from dataclasses import asdict
from datetime import datetime
from typing import Any

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel
from sqlalchemy.orm import Session

from galleryswap_api.catalog import CatalogClient
from galleryswap_api.deps import AdminOnly, Catalog, DBSession
from galleryswap_api.models import Experiment
from galleryswap_api.rotation import InvalidTransition
from galleryswap_api.scheduler import (
    ExperimentNotFound,
    StaleExperiment,
    activate_experiment,
    complete_experiment,
    pause_experiment,
)

router = APIRouter(
    prefix="/api/experiments", tags=["experiments"], dependencies=[AdminOnly]
)


class ExperimentOut(BaseModel):
    id: str
    product_id: str
    status: str
    current_case: str
    last_rotated_at: datetime | None = None
    next_rotation_at: datetime | None = None
    needs_attention: bool = False
    attention_reason: str | None = None


def _out(row: Experiment) -> ExperimentOut:
    return ExperimentOut(
        id=row.id,
        product_id=row.product_id,
        status=row.status,
        current_case=row.current_case,
        last_rotated_at=row.last_rotated_at,
        next_rotation_at=row.next_rotation_at,
        needs_attention=bool(row.needs_attention),
        attention_reason=row.attention_reason,
    )


def _conflict(exc: InvalidTransition) -> HTTPException:
    return HTTPException(
        status_code=409,
        detail={"error": "invalid_transition", "action": exc.action, "status": exc.status},
    )


def _busy(exc: StaleExperiment) -> HTTPException:
    return HTTPException(
        status_code=409,
        detail={"error": "concurrent_update", "experiment_id": exc.experiment_id},
    )


@router.post("/{experiment_id}/activate", response_model=ExperimentOut)
def activate(experiment_id: str, db: Session = DBSession) -> ExperimentOut:
    try:
        return _out(activate_experiment(db, experiment_id=experiment_id))
    except ExperimentNotFound as exc:
        raise HTTPException(status_code=404, detail="experiment_not_found") from exc
    except InvalidTransition as exc:
        raise _conflict(exc) from exc
    except StaleExperiment as exc:
        raise _busy(exc) from exc


@router.post("/{experiment_id}/pause", response_model=ExperimentOut)
def pause(experiment_id: str, db: Session = DBSession) -> ExperimentOut:
    try:
        return _out(pause_experiment(db, experiment_id=experiment_id))
    except ExperimentNotFound as exc:
        raise HTTPException(status_code=404, detail="experiment_not_found") from exc
    except InvalidTransition as exc:
        raise _conflict(exc) from exc
    except StaleExperiment as exc:
        raise _busy(exc) from exc


@router.post("/{experiment_id}/complete")
def complete(
    experiment_id: str,
    db: Session = DBSession,
    catalog: CatalogClient = Catalog,
) -> dict[str, Any]:
    try:
        outcome = complete_experiment(db, catalog, experiment_id=experiment_id)
    except ExperimentNotFound as exc:
        raise HTTPException(status_code=404, detail="experiment_not_found") from exc
    except InvalidTransition as exc:
        raise _conflict(exc) from exc
    except StaleExperiment as exc:
        raise _busy(exc) from exc
    row = db.get(Experiment, experiment_id, populate_existing=True)
    return {
        "experiment": _out(row).model_dump(mode="json") if row else None,
        "rotation": asdict(outcome),
    }
