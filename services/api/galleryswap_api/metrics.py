from __future__ import annotations

from collections import Counter
from threading import Lock
from typing import Iterable

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from galleryswap_api.models import Experiment, InteractionEvent, RotationEvent


_HTTP_LOCK = Lock()
_HTTP_REQUESTS: Counter[tuple[str, str, str]] = Counter()
_HTTP_LATENCY_BUCKETS_S: tuple[float, ...] = (0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0)
_HTTP_LATENCY_BINS: dict[tuple[str, str], list[int]] = {}
_HTTP_LATENCY_SUM_S: dict[tuple[str, str], float] = {}


def reset_http_metrics() -> None:
    with _HTTP_LOCK:
        _HTTP_REQUESTS.clear()
        _HTTP_LATENCY_BINS.clear()
        _HTTP_LATENCY_SUM_S.clear()


def observe_http_request(
    *,
    path: str,
    method: str,
    status: str,
    duration_ms: float | None = None,
) -> None:
    key = (str(path), str(method), str(status))
    latency_key = (str(path), str(method))
    with _HTTP_LOCK:
        _HTTP_REQUESTS[key] += 1

        if duration_ms is not None:
            dur_s = max(0.0, float(duration_ms) / 1000.0)
            bins = _HTTP_LATENCY_BINS.setdefault(
                latency_key, [0] * (len(_HTTP_LATENCY_BUCKETS_S) + 1)
            )
            idx = next(
                (i for i, edge in enumerate(_HTTP_LATENCY_BUCKETS_S) if dur_s <= edge),
                len(_HTTP_LATENCY_BUCKETS_S),
            )
            bins[idx] += 1
            _HTTP_LATENCY_SUM_S[latency_key] = _HTTP_LATENCY_SUM_S.get(latency_key, 0.0) + dur_s


def _fmt_labels(**labels: str) -> str:
    def esc(value: str) -> str:
        return str(value).replace("\\", "\\\\").replace("\n", "\\n").replace('"', '\\"')

    parts = [f'{k}="{esc(v)}"' for k, v in labels.items()]
    return "{" + ",".join(parts) + "}" if parts else ""


def _render(
    *, name: str, kind: str, help_text: str, rows: Iterable[tuple[dict[str, str], int]]
) -> str:
    lines = [f"# HELP {name} {help_text}", f"# TYPE {name} {kind}"]
    for labels, value in rows:
        lines.append(f"{name}{_fmt_labels(**labels)} {int(value)}")
    return "\n".join(lines) + "\n"


def _render_latency() -> str:
    name = "galleryswap_http_request_duration_seconds"
    lines = [
        f"# HELP {name} HTTP request duration by route template and method (in-process).",
        f"# TYPE {name} histogram",
    ]
    with _HTTP_LOCK:
        snapshot = sorted(
            (key, list(bins), _HTTP_LATENCY_SUM_S.get(key, 0.0))
            for key, bins in _HTTP_LATENCY_BINS.items()
        )
    for (path, method), bins, sum_s in snapshot:
        cumulative = 0
        for i, edge in enumerate(_HTTP_LATENCY_BUCKETS_S):
            cumulative += bins[i]
            lines.append(
                f"{name}_bucket{_fmt_labels(path=path, method=method, le=str(edge))} {cumulative}"
            )
        cumulative += bins[-1]
        lines.append(f"{name}_bucket{_fmt_labels(path=path, method=method, le='+Inf')} {cumulative}")
        lines.append(f"{name}_sum{_fmt_labels(path=path, method=method)} {sum_s:.6f}")
        lines.append(f"{name}_count{_fmt_labels(path=path, method=method)} {cumulative}")
    return "\n".join(lines) + "\n"


def render_prometheus_metrics(*, db: Session) -> str:
    out: list[str] = []

    with _HTTP_LOCK:
        http_rows = sorted(_HTTP_REQUESTS.items())
    out.append(
        _render(
            name="galleryswap_http_requests_total",
            kind="counter",
            help_text="Total HTTP requests processed by this API process.",
            rows=[({"path": p, "method": m, "status": s}, c) for (p, m, s), c in http_rows],
        )
    )
    out.append(_render_latency())

    exp_rows = db.execute(
        select(Experiment.status, func.count(Experiment.id)).group_by(Experiment.status)
    ).all()
    out.append(
        _render(
            name="galleryswap_experiments",
            kind="gauge",
            help_text="Experiments by lifecycle status.",
            rows=[({"status": str(status)}, int(cnt or 0)) for status, cnt in exp_rows],
        )
    )

    attention = db.scalar(
        select(func.count(Experiment.id)).where(Experiment.needs_attention.is_(True))
    )
    out.append(
        _render(
            name="galleryswap_experiments_needing_attention",
            kind="gauge",
            help_text="Experiments flagged after a failed or partial rotation.",
            rows=[({}, int(attention or 0))],
        )
    )

    rot_rows = db.execute(
        select(RotationEvent.triggered_by, RotationEvent.success, func.count(RotationEvent.id))
        .group_by(RotationEvent.triggered_by, RotationEvent.success)
    ).all()
    out.append(
        _render(
            name="galleryswap_rotations_total",
            kind="counter",
            help_text="Rotation attempts by trigger and outcome.",
            rows=[
                ({"triggered_by": str(trig), "success": "true" if ok else "false"}, int(cnt or 0))
                for trig, ok, cnt in rot_rows
            ],
        )
    )

    ev_rows = db.execute(
        select(
            InteractionEvent.event_type,
            InteractionEvent.observed_case,
            func.count(InteractionEvent.id),
        ).group_by(InteractionEvent.event_type, InteractionEvent.observed_case)
    ).all()
    out.append(
        _render(
            name="galleryswap_interaction_events_total",
            kind="counter",
            help_text="Storefront interaction events by type and observed case.",
            rows=[
                ({"type": str(t), "case": str(case or "none")}, int(cnt or 0))
                for t, case, cnt in ev_rows
            ],
        )
    )

    return "\n".join(out)
