from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest


def _state(**overrides):
    from galleryswap_api.rotation import ExperimentState

    base = dict(
        id="exp_state",
        product_id="gid://shopify/Product/1",
        status="ACTIVE",
        current_case="BASE",
        rotation_interval=timedelta(hours=6),
        last_rotated_at=None,
        next_rotation_at=datetime(2026, 3, 1, 6, 0, tzinfo=UTC),
        base_media=("b1", "b2"),
        test_media=("t1", "t2"),
    )
    base.update(overrides)
    return ExperimentState(**base)


def test_repeated_rotation_alternates_and_reschedules() -> None:
    from galleryswap_api.rotation import apply

    state = _state()
    now = datetime(2026, 3, 1, 6, 0, tzinfo=UTC)
    seen: list[str] = []
    for i in range(6):
        state = apply(state, now)
        seen.append(state.current_case)
        assert state.last_rotated_at == now
        assert state.next_rotation_at == now + timedelta(hours=6)
        assert state.next_rotation_at >= state.last_rotated_at + state.rotation_interval
        now = now + timedelta(hours=6, minutes=i)

    assert seen == ["TEST", "BASE", "TEST", "BASE", "TEST", "BASE"]


def test_apply_is_pure() -> None:
    from galleryswap_api.rotation import apply

    state = _state()
    now = datetime(2026, 3, 1, 7, 0, tzinfo=UTC)
    a = apply(state, now)
    b = apply(state, now)
    assert a == b
    assert state.current_case == "BASE"
    assert state.last_rotated_at is None


def test_missed_window_rotates_once_from_now() -> None:
    from galleryswap_api.rotation import apply

    state = _state(next_rotation_at=datetime(2026, 3, 1, 6, 0, tzinfo=UTC))
    late = datetime(2026, 3, 4, 9, 30, tzinfo=UTC)
    out = apply(state, late)
    assert out.current_case == "TEST"
    assert out.next_rotation_at == late + timedelta(hours=6)


def test_naive_now_is_treated_as_utc() -> None:
    from galleryswap_api.rotation import apply

    out = apply(_state(), datetime(2026, 3, 1, 6, 0))
    assert out.last_rotated_at == datetime(2026, 3, 1, 6, 0, tzinfo=UTC)


def test_force_same_case_still_resets_clock() -> None:
    from galleryswap_api.rotation import force_case

    now = datetime(2026, 3, 1, 2, 0, tzinfo=UTC)
    out = force_case(_state(current_case="TEST"), "TEST", now)
    assert out.current_case == "TEST"
    assert out.last_rotated_at == now
    assert out.next_rotation_at == now + timedelta(hours=6)


def test_manual_apply_while_paused_keeps_clock_stopped() -> None:
    from galleryswap_api.rotation import apply

    out = apply(_state(status="PAUSED", next_rotation_at=None), datetime(2026, 3, 1, tzinfo=UTC))
    assert out.current_case == "TEST"
    assert out.status == "PAUSED"
    assert out.next_rotation_at is None


@pytest.mark.parametrize("status", ["DRAFT", "COMPLETED"])
def test_apply_rejects_inactive_lifecycle(status: str) -> None:
    from galleryswap_api.rotation import InvalidTransition, apply

    with pytest.raises(InvalidTransition):
        apply(_state(status=status, next_rotation_at=None), datetime(2026, 3, 1, tzinfo=UTC))


def test_lifecycle_transitions() -> None:
    from galleryswap_api.rotation import InvalidTransition, activate, complete, pause

    now = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)
    draft = _state(status="DRAFT", next_rotation_at=None)

    active = activate(draft, now)
    assert active.status == "ACTIVE"
    assert active.next_rotation_at == now + timedelta(hours=6)

    paused = pause(active)
    assert paused.status == "PAUSED"
    assert paused.next_rotation_at is None
    assert paused.current_case == active.current_case

    with pytest.raises(InvalidTransition):
        pause(paused)

    resumed = activate(paused, now + timedelta(days=1))
    assert resumed.next_rotation_at == now + timedelta(days=1, hours=6)

    done = complete(_state(current_case="TEST"), now)
    assert done.status == "COMPLETED"
    assert done.current_case == "BASE"
    assert done.next_rotation_at is None
    with pytest.raises(InvalidTransition):
        complete(done, now)
    with pytest.raises(InvalidTransition):
        activate(done, now)


def test_is_due() -> None:
    from galleryswap_api.rotation import is_due

    state = _state(next_rotation_at=datetime(2026, 3, 1, 6, 0, tzinfo=UTC))
    assert is_due(state, datetime(2026, 3, 1, 6, 0, tzinfo=UTC)) is True
    assert is_due(state, datetime(2026, 3, 1, 5, 59, tzinfo=UTC)) is False
    assert is_due(_state(status="PAUSED", next_rotation_at=None), datetime(2030, 1, 1, tzinfo=UTC)) is False


def test_validate_rotation_reports_problems() -> None:
    from galleryswap_api.rotation import validate_rotation

    assert validate_rotation(_state()) == []
    problems = validate_rotation(_state(status="PAUSED", test_media=()))
    assert any("ACTIVE" in p for p in problems)
    assert "no TEST media" in problems
    assert validate_rotation(_state(status="PAUSED"), require_active=False) == []
