from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest
from fastapi import HTTPException

from galleryswap_api.rate_limit import check_rate_limit, check_rate_limit_dual


class _DummyClient:
    host = "203.0.113.10"


class _DummyRequest:
    client = _DummyClient()


def test_rate_limit_dual_enforces_ip_scope_across_sessions() -> None:
    now = datetime(2026, 1, 1, tzinfo=UTC)
    action = "test_rate_limit_dual_ip_scope"

    check_rate_limit_dual(
        subject="session_a",
        request=_DummyRequest(),  # type: ignore[arg-type]
        action=action,
        per_minute_subject=999,
        per_hour_subject=999,
        per_minute_ip=1,
        per_hour_ip=999,
        now=now,
    )

    try:
        check_rate_limit_dual(
            subject="session_b",
            request=_DummyRequest(),  # type: ignore[arg-type]
            action=action,
            per_minute_subject=999,
            per_hour_subject=999,
            per_minute_ip=1,
            per_hour_ip=999,
            now=now,
        )
    except HTTPException as exc:
        assert exc.status_code == 429
        assert isinstance(exc.detail, dict)
        assert exc.detail.get("retry_after_sec")
        assert exc.detail.get("scope") == "ip"
        assert (exc.headers or {}).get("Retry-After")
    else:
        raise AssertionError("expected ip-based rate limit to trigger")


def test_session_scope_limits_one_session_only() -> None:
    now = datetime(2026, 1, 1, 0, 0, 30, tzinfo=UTC)
    action = "test_rate_limit_session_scope"
    kwargs = dict(
        request=None,
        action=action,
        per_minute_subject=2,
        per_hour_subject=999,
        per_minute_ip=999,
        per_hour_ip=999,
        now=now,
    )

    check_rate_limit_dual(subject="session_x", **kwargs)
    check_rate_limit_dual(subject="session_x", **kwargs)
    with pytest.raises(HTTPException) as excinfo:
        check_rate_limit_dual(subject="session_x", **kwargs)
    assert excinfo.value.status_code == 429
    assert excinfo.value.detail["action"] == action
    assert excinfo.value.detail["retry_after_sec"] == 30
    assert "scope" not in excinfo.value.detail

    check_rate_limit_dual(subject="session_y", **kwargs)


def test_minute_window_resets() -> None:
    start = datetime(2026, 1, 2, 10, 0, 0, tzinfo=UTC)
    action = "test_rate_limit_window_reset"

    check_rate_limit(subject="s", action=action, per_minute=1, per_hour=10, now=start)
    with pytest.raises(HTTPException):
        check_rate_limit(subject="s", action=action, per_minute=1, per_hour=10, now=start)
    check_rate_limit(
        subject="s", action=action, per_minute=1, per_hour=10, now=start + timedelta(minutes=1)
    )


def test_zero_limits_disable_checks() -> None:
    now = datetime(2026, 1, 3, tzinfo=UTC)
    for _ in range(5):
        check_rate_limit(subject="s", action="test_rate_limit_off", per_minute=0, per_hour=0, now=now)
