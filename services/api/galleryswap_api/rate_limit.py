from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from threading import Lock
from typing import Any

from fastapi import HTTPException, Request

from galleryswap_api.core.config import Settings
from galleryswap_api.eventlog import ip_hash_from_request


@dataclass
class _Window:
    minute_start: int
    minute_count: int
    hour_start: int
    hour_count: int


_LOCK = Lock()
_STATE: dict[tuple[str, str], _Window] = {}


def reset_rate_limits() -> None:
    with _LOCK:
        _STATE.clear()


def _epoch_seconds(now: datetime) -> int:
    if getattr(now, "tzinfo", None) is None:
        now = now.replace(tzinfo=UTC)
    return int(now.timestamp())


def _limited(action: str, retry_after: int, extra_detail: dict[str, Any] | None) -> HTTPException:
    return HTTPException(
        status_code=429,
        detail={
            "error": "rate_limited",
            "action": action,
            "retry_after_sec": retry_after,
            **(extra_detail or {}),
        },
        headers={"Retry-After": str(int(retry_after))},
    )


def check_rate_limit(
    *,
    subject: str,
    action: str,
    per_minute: int,
    per_hour: int,
    now: datetime | None = None,
    extra_detail: dict[str, Any] | None = None,
) -> None:
    """Fixed-window counter per (subject, action); raises 429 with Retry-After.

    In-memory and per-process.
    """
    if not Settings().rate_limit_enabled:
        return
    if per_minute <= 0 and per_hour <= 0:
        return

    now_s = _epoch_seconds(now or datetime.now(UTC))
    minute_bucket = now_s // 60
    hour_bucket = now_s // 3600
    key = (str(subject or "anon"), str(action))

    with _LOCK:
        w = _STATE.get(key) or _Window(minute_bucket, 0, hour_bucket, 0)
        if w.minute_start != minute_bucket:
            w.minute_start, w.minute_count = minute_bucket, 0
        if w.hour_start != hour_bucket:
            w.hour_start, w.hour_count = hour_bucket, 0

        if per_minute > 0 and w.minute_count >= int(per_minute):
            raise _limited(action, max(1, 60 - (now_s % 60)), extra_detail)
        if per_hour > 0 and w.hour_count >= int(per_hour):
            raise _limited(action, max(1, 3600 - (now_s % 3600)), extra_detail)

        w.minute_count += 1
        w.hour_count += 1
        _STATE[key] = w


def check_rate_limit_dual(
    *,
    subject: str | None,
    request: Request | None,
    action: str,
    per_minute_subject: int,
    per_hour_subject: int,
    per_minute_ip: int,
    per_hour_ip: int,
    now: datetime | None = None,
    extra_detail: dict[str, Any] | None = None,
) -> None:
    """Limit by storefront session (when known) and by hashed client ip."""
    if subject:
        check_rate_limit(
            subject=f"session:{subject[:128]}",
            action=action,
            per_minute=int(per_minute_subject),
            per_hour=int(per_hour_subject),
            now=now,
            extra_detail=extra_detail,
        )

    ip_hash = ip_hash_from_request(request)
    if not ip_hash:
        return
    check_rate_limit(
        subject=f"ip:{ip_hash[:48]}",
        action=action,
        per_minute=int(per_minute_ip),
        per_hour=int(per_hour_ip),
        now=now,
        extra_detail={**(extra_detail or {}), "scope": "ip"},
    )
