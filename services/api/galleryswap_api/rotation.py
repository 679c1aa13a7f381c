"""Experiment lifecycle and rotation decisions.

Pure: no session, no catalog, no clock. Callers pass ``now`` and persist the
returned state themselves (see ``galleryswap_api.scheduler``).
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

import orjson

from galleryswap_api.models import Experiment


class InvalidTransition(ValueError):
    def __init__(self, *, experiment_id: str, status: str, action: str) -> None:
        super().__init__(f"cannot {action} experiment {experiment_id} in status {status}")
        self.experiment_id = experiment_id
        self.status = status
        self.action = action


@dataclass(frozen=True)
class ExperimentState:
    id: str
    product_id: str
    status: str
    current_case: str
    rotation_interval: timedelta
    last_rotated_at: datetime | None
    next_rotation_at: datetime | None
    base_media: tuple[str, ...] = ()
    test_media: tuple[str, ...] = ()


def as_aware_utc(dt: datetime | None) -> datetime | None:
    if dt is None:
        return None
    if getattr(dt, "tzinfo", None) is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def load_media_ids(raw: str | None) -> tuple[str, ...]:
    try:
        obj: Any = orjson.loads(raw or "[]")
    except orjson.JSONDecodeError:
        return ()
    if not isinstance(obj, list):
        return ()
    return tuple(str(x).strip() for x in obj if str(x or "").strip())


def state_from_row(row: Experiment) -> ExperimentState:
    return ExperimentState(
        id=str(row.id),
        product_id=str(row.product_id),
        status=str(row.status or "DRAFT"),
        current_case=str(row.current_case or "BASE"),
        rotation_interval=timedelta(seconds=int(row.rotation_interval_sec or 0)),
        last_rotated_at=as_aware_utc(row.last_rotated_at),
        next_rotation_at=as_aware_utc(row.next_rotation_at),
        base_media=load_media_ids(row.base_media_json),
        test_media=load_media_ids(row.test_media_json),
    )


def state_values(state: ExperimentState) -> dict[str, Any]:
    """Lifecycle columns for an UPDATE of the experiments row."""
    return {
        "status": state.status,
        "current_case": state.current_case,
        "last_rotated_at": state.last_rotated_at,
        "next_rotation_at": state.next_rotation_at,
    }


def opposite_case(case: str) -> str:
    return "TEST" if str(case) == "BASE" else "BASE"


def next_case(state: ExperimentState) -> str:
    return opposite_case(state.current_case)


def media_for_case(state: ExperimentState, case: str) -> tuple[str, ...]:
    return state.base_media if str(case) == "BASE" else state.test_media


def is_due(state: ExperimentState, now: datetime) -> bool:
    if state.status != "ACTIVE":
        return False
    nxt = as_aware_utc(state.next_rotation_at)
    if nxt is None:
        return False
    return as_aware_utc(now) >= nxt


def apply(
    state: ExperimentState, now: datetime, *, target_case: str | None = None
) -> ExperimentState:
    """Flip (or force) the live case and restart the clock from ``now``.

    Automatic rotation and manual override both land here, so downstream
    consumers cannot tell them apart. A missed window is never caught up:
    the next rotation is always ``now + interval``.
    """
    if state.status not in {"ACTIVE", "PAUSED"}:
        raise InvalidTransition(
            experiment_id=state.id, status=state.status, action="rotate"
        )
    case = str(target_case) if target_case else next_case(state)
    if case not in {"BASE", "TEST"}:
        raise ValueError(f"unknown case {target_case!r}")
    now_utc = as_aware_utc(now)
    return dataclasses.replace(
        state,
        current_case=case,
        last_rotated_at=now_utc,
        next_rotation_at=(now_utc + state.rotation_interval)
        if state.status == "ACTIVE"
        else None,
    )


def force_case(state: ExperimentState, case: str, now: datetime) -> ExperimentState:
    return apply(state, now, target_case=case)


def activate(state: ExperimentState, now: datetime) -> ExperimentState:
    if state.status not in {"DRAFT", "PAUSED"}:
        raise InvalidTransition(
            experiment_id=state.id, status=state.status, action="activate"
        )
    now_utc = as_aware_utc(now)
    return dataclasses.replace(
        state, status="ACTIVE", next_rotation_at=now_utc + state.rotation_interval
    )


def pause(state: ExperimentState) -> ExperimentState:
    if state.status != "ACTIVE":
        raise InvalidTransition(
            experiment_id=state.id, status=state.status, action="pause"
        )
    return dataclasses.replace(state, status="PAUSED", next_rotation_at=None)


def complete(state: ExperimentState, now: datetime) -> ExperimentState:
    if state.status == "COMPLETED":
        raise InvalidTransition(
            experiment_id=state.id, status=state.status, action="complete"
        )
    return dataclasses.replace(
        state,
        status="COMPLETED",
        current_case="BASE",
        last_rotated_at=as_aware_utc(now),
        next_rotation_at=None,
    )


def validate_rotation(
    state: ExperimentState, *, require_active: bool = True
) -> list[str]:
    errors: list[str] = []
    if require_active and state.status != "ACTIVE":
        errors.append(f"status is {state.status}, must be ACTIVE")
    if not state.base_media:
        errors.append("no BASE media")
    if not state.test_media:
        errors.append("no TEST media")
    if state.rotation_interval.total_seconds() <= 0:
        errors.append("rotation interval must be positive")
    return errors
