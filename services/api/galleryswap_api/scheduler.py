from __future__ import annotations

import time
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any, Callable, Literal, TypeVar
from uuid import uuid4

import orjson
from sqlalchemy import desc, select, update
from sqlalchemy.orm import Session

from galleryswap_api.catalog import CatalogClient
from galleryswap_api.eventlog import log
from galleryswap_api.media_assignment import (
    AssignmentReport,
    MediaAssignmentError,
    assign_media,
)
from galleryswap_api.models import Experiment, RotationEvent, VariantOverride
from galleryswap_api.rotation import (
    ExperimentState,
    InvalidTransition,
    activate,
    apply,
    as_aware_utc,
    complete,
    force_case as forced_state,
    media_for_case,
    pause,
    state_from_row,
    state_values,
    validate_rotation,
)


OutcomeStatus = Literal["rotated", "failed", "skipped"]
T = TypeVar("T")


class ExperimentNotFound(LookupError):
    def __init__(self, experiment_id: str) -> None:
        super().__init__(f"experiment not found: {experiment_id}")
        self.experiment_id = experiment_id


@dataclass
class RotationOutcome:
    experiment_id: str
    product_id: str | None
    status: OutcomeStatus
    from_case: str | None = None
    to_case: str | None = None
    error: str | None = None
    hero_failed: list[str] = field(default_factory=list)


@dataclass
class RotationSummary:
    processed: int = 0
    rotated: int = 0
    failed: int = 0
    skipped: int = 0
    results: list[RotationOutcome] = field(default_factory=list)

    def add(self, outcome: RotationOutcome) -> None:
        self.processed += 1
        if outcome.status == "rotated":
            self.rotated += 1
        elif outcome.status == "failed":
            self.failed += 1
        else:
            self.skipped += 1
        self.results.append(outcome)

    def to_dict(self) -> dict[str, Any]:
        return {
            "processed": self.processed,
            "rotated": self.rotated,
            "failed": self.failed,
            "skipped": self.skipped,
            "results": [asdict(r) for r in self.results],
        }


_LIFECYCLE_ATTEMPTS = 3


class StaleExperiment(RuntimeError):
    """The row's ``version`` moved between our read and our write."""

    def __init__(self, experiment_id: str) -> None:
        super().__init__(f"experiment changed concurrently: {experiment_id}")
        self.experiment_id = experiment_id


def _now(now: datetime | None) -> datetime:
    return as_aware_utc(now) or datetime.now(UTC)


def _get_experiment(session: Session, experiment_id: str) -> Experiment:
    row = session.get(Experiment, str(experiment_id), populate_existing=True)
    if row is None:
        raise ExperimentNotFound(str(experiment_id))
    return row


def _persist_state(
    session: Session,
    *,
    experiment_id: str,
    seen_version: int,
    state: ExperimentState,
    now: datetime,
    **extra: Any,
) -> None:
    """Write lifecycle columns iff nobody else wrote since ``seen_version``."""
    res = session.execute(
        update(Experiment)
        .where(Experiment.id == str(experiment_id))
        .where(Experiment.version == int(seen_version))
        .values(
            **state_values(state),
            **extra,
            version=Experiment.version + 1,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    if int(res.rowcount or 0) != 1:
        session.rollback()
        raise StaleExperiment(str(experiment_id))


def _retry_stale(
    session: Session, experiment_id: str, step: Callable[[Experiment], T]
) -> T:
    attempt = 1
    while True:
        row = _get_experiment(session, experiment_id)
        try:
            return step(row)
        except StaleExperiment:
            if attempt >= _LIFECYCLE_ATTEMPTS:
                raise
            log(
                "scheduler",
                "lifecycle write lost, retrying",
                level="warning",
                experiment_id=experiment_id,
                attempt=attempt,
            )
            attempt += 1


def hero_targets(overrides: list[VariantOverride], case: str) -> dict[str, str]:
    out: dict[str, str] = {}
    for ov in overrides:
        media_id = ov.base_hero_media_id if case == "BASE" else ov.test_hero_media_id
        if media_id:
            out[str(ov.variant_id)] = str(media_id)
    return out


def _rotation_problems(
    row: Experiment, state: ExperimentState, *, require_active: bool
) -> list[str]:
    problems = validate_rotation(state, require_active=require_active)
    known = set(state.base_media) | set(state.test_media)
    for ov in row.variant_overrides:
        for media_id in (ov.base_hero_media_id, ov.test_hero_media_id):
            if media_id and media_id not in known:
                problems.append(
                    f"variant {ov.variant_id} hero {media_id} is not experiment media"
                )
    return problems


def _record_event(
    session: Session,
    *,
    experiment_id: str,
    from_case: str,
    to_case: str,
    triggered_by: str,
    success: bool,
    started: float,
    now: datetime,
    error: str | None = None,
    meta: dict[str, Any] | None = None,
) -> RotationEvent:
    ev = RotationEvent(
        id=f"rot_{uuid4().hex}",
        experiment_id=str(experiment_id),
        from_case=str(from_case),
        to_case=str(to_case),
        triggered_by=str(triggered_by),
        success=bool(success),
        duration_ms=int(max(0.0, (time.perf_counter() - started) * 1000.0)),
        error=(str(error)[:2000] if error else None),
        meta_json=orjson.dumps(meta or {}).decode("utf-8"),
        created_at=now,
    )
    session.add(ev)
    return ev


def _mark_attention(row: Experiment, reason: str | None, *, now: datetime) -> None:
    row.needs_attention = bool(reason)
    row.attention_reason = str(reason)[:2000] if reason else None
    row.updated_at = now


def _apply_hero_report(
    row: Experiment, report: AssignmentReport, *, now: datetime
) -> None:
    failed = {f.variant_id: f.error for f in report.failed}
    for ov in row.variant_overrides:
        vid = str(ov.variant_id)
        if vid in failed:
            ov.hero_error = str(failed[vid])[:2000]
            ov.hero_failed_at = now
        elif vid in report.succeeded:
            ov.hero_error = None
            ov.hero_failed_at = None


def _assign_case(
    catalog: CatalogClient,
    row: Experiment,
    state: ExperimentState,
    *,
    sleep: Callable[[float], None],
) -> AssignmentReport:
    return assign_media(
        catalog,
        product_id=str(row.product_id),
        media_ids=list(media_for_case(state, state.current_case)),
        heroes=hero_targets(list(row.variant_overrides), state.current_case),
        sleep=sleep,
    )


@dataclass
class _Convergence:
    session: Session
    row: Experiment
    seen_version: int
    before: ExperimentState
    after: ExperimentState
    now: datetime
    triggered_by: str
    persist_on_failure: bool
    started: float = field(default_factory=time.perf_counter)

    def outcome(self) -> RotationOutcome:
        return RotationOutcome(
            experiment_id=str(self.row.id),
            product_id=str(self.row.product_id),
            status="failed",
            from_case=self.before.current_case,
            to_case=self.after.current_case,
        )

    def event(
        self, *, success: bool, error: str | None, report: AssignmentReport | None
    ) -> None:
        _record_event(
            self.session,
            experiment_id=self.row.id,
            from_case=self.before.current_case,
            to_case=self.after.current_case,
            triggered_by=self.triggered_by,
            success=success,
            started=self.started,
            now=self.now,
            error=error,
            meta={"report": report.to_dict() if report else None},
        )

    def failed(self, error: str, *, report: AssignmentReport | None) -> RotationOutcome:
        outcome = self.outcome()
        outcome.error = error
        if self.persist_on_failure:
            _persist_state(
                self.session,
                experiment_id=self.row.id,
                seen_version=self.seen_version,
                state=self.after,
                now=self.now,
                needs_attention=True,
                attention_reason=error[:2000],
            )
        else:
            _mark_attention(self.row, error, now=self.now)
        self.event(success=False, error=error, report=report)
        self.session.commit()
        log(
            "scheduler",
            "rotation failed",
            level="error",
            experiment_id=outcome.experiment_id,
            triggered_by=self.triggered_by,
            error=error,
        )
        return outcome

    def converged(self, report: AssignmentReport) -> RotationOutcome:
        outcome = self.outcome()
        outcome.hero_failed = [f.variant_id for f in report.failed]
        hero_reason = (
            f"hero_failed: {','.join(outcome.hero_failed)}"
            if outcome.hero_failed
            else None
        )
        _persist_state(
            self.session,
            experiment_id=self.row.id,
            seen_version=self.seen_version,
            state=self.after,
            now=self.now,
            needs_attention=bool(hero_reason),
            attention_reason=hero_reason,
        )
        _apply_hero_report(self.row, report, now=self.now)
        self.event(success=True, error=None, report=report)
        self.session.commit()
        outcome.status = "rotated"
        log(
            "scheduler",
            "rotated",
            experiment_id=outcome.experiment_id,
            to_case=self.after.current_case,
            triggered_by=self.triggered_by,
            hero_failed=",".join(outcome.hero_failed) or None,
        )
        return outcome


def _converge(
    session: Session,
    catalog: CatalogClient,
    row: Experiment,
    *,
    before: ExperimentState,
    after: ExperimentState,
    now: datetime,
    triggered_by: str,
    sleep: Callable[[float], None],
    require_active: bool,
    check_rotation: bool = True,
    persist_on_failure: bool = False,
) -> RotationOutcome:
    """Push ``after`` to the catalog, then persist it against the row version
    read with ``row``. Raises StaleExperiment when another writer got there first."""
    run = _Convergence(
        session=session,
        row=row,
        seen_version=int(row.version or 0),
        before=before,
        after=after,
        now=now,
        triggered_by=triggered_by,
        persist_on_failure=persist_on_failure,
    )
    if check_rotation:
        problems = _rotation_problems(row, before, require_active=require_active)
        if problems:
            return run.failed("; ".join(problems), report=None)
    try:
        report = _assign_case(catalog, row, after, sleep=sleep)
    except MediaAssignmentError as exc:
        return run.failed(str(exc), report=exc.report)
    except Exception as exc:  # noqa: BLE001
        return run.failed(f"unexpected: {str(exc)[:400]}", report=None)
    return run.converged(report)


def _restore_live_case(
    session: Session,
    catalog: CatalogClient,
    *,
    experiment_id: str,
    before: ExperimentState,
    attempted: ExperimentState,
    now: datetime,
    sleep: Callable[[float], None],
) -> RotationOutcome:
    """A lifecycle write landed while our catalog write was in flight. Its
    state stands; put the catalog back on the case it committed."""
    started = time.perf_counter()
    row = _get_experiment(session, experiment_id)
    live = state_from_row(row)
    restore_error: str | None = None
    try:
        _assign_case(catalog, row, live, sleep=sleep)
    except MediaAssignmentError as exc:
        restore_error = str(exc)
        _mark_attention(row, restore_error, now=now)
    _record_event(
        session,
        experiment_id=row.id,
        from_case=before.current_case,
        to_case=attempted.current_case,
        triggered_by="CRON",
        success=False,
        started=started,
        now=now,
        error="superseded",
        meta={
            "live_status": live.status,
            "live_case": live.current_case,
            "restore_error": restore_error,
        },
    )
    session.commit()
    log(
        "scheduler",
        "rotation superseded",
        level="warning",
        experiment_id=row.id,
        live_status=live.status,
        live_case=live.current_case,
        restore_error=restore_error,
    )
    return RotationOutcome(
        experiment_id=str(row.id),
        product_id=str(row.product_id),
        status="skipped",
        from_case=before.current_case,
        to_case=attempted.current_case,
        error="superseded",
    )


def list_due_experiments(
    session: Session, *, now: datetime, limit: int = 200
) -> list[tuple[str, datetime, int]]:
    rows = session.execute(
        select(
            Experiment.id, Experiment.next_rotation_at, Experiment.rotation_interval_sec
        )
        .where(Experiment.status == "ACTIVE")
        .where(Experiment.next_rotation_at.is_not(None))
        .where(Experiment.next_rotation_at <= now)
        .order_by(Experiment.next_rotation_at.asc(), Experiment.id.asc())
        .limit(max(1, int(limit)))
    ).all()
    return [(str(eid), nxt, int(interval or 0)) for (eid, nxt, interval) in rows]


def claim_experiment(
    session: Session,
    *,
    experiment_id: str,
    seen_next_rotation_at: datetime,
    claim_until: datetime,
    now: datetime,
) -> bool:
    """Advance ``next_rotation_at`` iff it still holds the value we read.

    One conditional UPDATE; losing invocations match zero rows. The claim
    bumps ``version`` too, so a lifecycle write racing it cannot land on
    stale data.
    """
    res = session.execute(
        update(Experiment)
        .where(Experiment.id == str(experiment_id))
        .where(Experiment.status == "ACTIVE")
        .where(Experiment.next_rotation_at == seen_next_rotation_at)
        .values(
            next_rotation_at=claim_until,
            version=Experiment.version + 1,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    session.commit()
    return int(res.rowcount or 0) == 1


def rotate_due_experiments(
    session: Session,
    catalog: CatalogClient,
    *,
    now: datetime | None = None,
    limit: int = 200,
    sleep: Callable[[float], None] = time.sleep,
) -> RotationSummary:
    now_dt = _now(now)
    summary = RotationSummary()
    for experiment_id, seen, interval_sec in list_due_experiments(
        session, now=now_dt, limit=limit
    ):
        try:
            claimed = claim_experiment(
                session,
                experiment_id=experiment_id,
                seen_next_rotation_at=seen,
                claim_until=now_dt + timedelta(seconds=max(1, interval_sec)),
                now=now_dt,
            )
            if not claimed:
                summary.add(
                    RotationOutcome(
                        experiment_id=experiment_id,
                        product_id=None,
                        status="skipped",
                        error="claim_lost",
                    )
                )
                continue
            row = _get_experiment(session, experiment_id)
            before = state_from_row(row)
            after = apply(before, now_dt)
            try:
                outcome = _converge(
                    session,
                    catalog,
                    row,
                    before=before,
                    after=after,
                    now=now_dt,
                    triggered_by="CRON",
                    sleep=sleep,
                    require_active=True,
                )
            except StaleExperiment:
                outcome = _restore_live_case(
                    session,
                    catalog,
                    experiment_id=experiment_id,
                    before=before,
                    attempted=after,
                    now=now_dt,
                    sleep=sleep,
                )
            summary.add(outcome)
        except Exception as exc:  # noqa: BLE001
            session.rollback()
            log(
                "scheduler",
                "rotation crashed",
                level="error",
                experiment_id=experiment_id,
                error=str(exc)[:400],
            )
            summary.add(
                RotationOutcome(
                    experiment_id=experiment_id,
                    product_id=None,
                    status="failed",
                    error=str(exc)[:400],
                )
            )
    log(
        "scheduler",
        "run complete",
        processed=summary.processed,
        rotated=summary.rotated,
        failed=summary.failed,
        skipped=summary.skipped,
    )
    return summary


def override_case(
    session: Session,
    catalog: CatalogClient,
    *,
    experiment_id: str,
    force_case: str,
    now: datetime | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> RotationOutcome:
    now_dt = _now(now)

    def _step(row: Experiment) -> RotationOutcome:
        before = state_from_row(row)
        return _converge(
            session,
            catalog,
            row,
            before=before,
            after=forced_state(before, force_case, now_dt),
            now=now_dt,
            triggered_by="MANUAL",
            sleep=sleep,
            require_active=False,
        )

    return _retry_stale(session, experiment_id, _step)


def complete_experiment(
    session: Session,
    catalog: CatalogClient,
    *,
    experiment_id: str,
    now: datetime | None = None,
    triggered_by: str = "SYSTEM",
    sleep: Callable[[float], None] = time.sleep,
) -> RotationOutcome:
    """Terminal transition. BASE media is restored; the experiment completes
    even when the catalog write fails (flagged for attention)."""
    now_dt = _now(now)

    def _step(row: Experiment) -> RotationOutcome:
        before = state_from_row(row)
        return _converge(
            session,
            catalog,
            row,
            before=before,
            after=complete(before, now_dt),
            now=now_dt,
            triggered_by=triggered_by,
            sleep=sleep,
            require_active=False,
            check_rotation=False,
            persist_on_failure=True,
        )

    return _retry_stale(session, experiment_id, _step)


def _transition(
    session: Session,
    *,
    experiment_id: str,
    now: datetime,
    change: Callable[[ExperimentState], ExperimentState],
) -> Experiment:
    def _step(row: Experiment) -> Experiment:
        _persist_state(
            session,
            experiment_id=row.id,
            seen_version=int(row.version or 0),
            state=change(state_from_row(row)),
            now=now,
        )
        session.commit()
        return row

    return _retry_stale(session, experiment_id, _step)


def activate_experiment(
    session: Session, *, experiment_id: str, now: datetime | None = None
) -> Experiment:
    now_dt = _now(now)
    row = _transition(
        session,
        experiment_id=experiment_id,
        now=now_dt,
        change=lambda state: activate(state, now_dt),
    )
    log("scheduler", "activated", experiment_id=row.id)
    return row


def resume_experiment(
    session: Session, *, experiment_id: str, now: datetime | None = None
) -> Experiment:
    now_dt = _now(now)

    def _resume(state: ExperimentState) -> ExperimentState:
        if state.status != "PAUSED":
            raise InvalidTransition(
                experiment_id=state.id, status=state.status, action="resume"
            )
        return activate(state, now_dt)

    row = _transition(
        session, experiment_id=experiment_id, now=now_dt, change=_resume
    )
    log("scheduler", "resumed", experiment_id=row.id)
    return row


def pause_experiment(
    session: Session, *, experiment_id: str, now: datetime | None = None
) -> Experiment:
    row = _transition(
        session, experiment_id=experiment_id, now=_now(now), change=pause
    )
    log("scheduler", "paused", experiment_id=row.id)
    return row



def rotation_history(
    session: Session, *, experiment_id: str, limit: int = 50
) -> list[RotationEvent]:
    limit = max(1, min(500, int(limit)))
    return list(
        session.scalars(
            select(RotationEvent)
            .where(RotationEvent.experiment_id == str(experiment_id))
            .order_by(desc(RotationEvent.created_at), desc(RotationEvent.id))
            .limit(limit)
        ).all()
    )
