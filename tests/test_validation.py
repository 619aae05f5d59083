from __future__ import annotations

import logging
from datetime import timedelta

import numpy as np

from mau_estimator.errors import (
    FORMAT_VIOLATION,
    FRESHNESS_VIOLATION,
    OUTLIER_FLAG,
    RANGE_VIOLATION,
    REFERENTIAL_VIOLATION,
)
from mau_estimator.validation import (
    PUBLISHED,
    PUBLISHED_WITH_WARNINGS,
    REJECTED,
    check_format,
    check_freshness,
    check_outliers,
    check_range,
    check_referential,
    is_outlier,
    resolve_status,
    run_quality_gate,
)

from .conftest import NOW


def _row(country="US", title="T1", est=50_000.0, moe=0.004, year=2026) -> dict:
    return {
        "country_code": country,
        "title_id": title,
        "year": year,
        "final_mau_estimate": est,
        "margin_of_error": moe,
    }


def _snapshot() -> dict:
    return {
        "activity": [],
        "users": {"u1": "US", "u2": "DE"},
        "titles": {"T1": {"name": "One", "genre": "rpg"}, "T2": {"name": "Two", "genre": "rpg"}},
        "install_base": {("US", 2026): 1_000_000, ("DE", 2026): 10},
    }


def test_range_check_flags_estimates_above_install_base_and_negative_margins() -> None:
    found = check_range(
        [_row(), _row(country="DE", est=11.0), _row(title="T2", moe=-0.1), _row(year=2025)],
        _snapshot()["install_base"],
    )
    assert [v["kind"] for v in found] == [RANGE_VIOLATION] * 3
    assert "DE/T1" in found[0]["detail"]
    assert "negative margin" in found[1]["detail"]
    assert "2025" in found[2]["detail"]


def test_referential_check_requires_known_titles_and_countries() -> None:
    found = check_referential([_row(), _row(title="T9"), _row(country="FR")], _snapshot())
    assert all(v["kind"] == REFERENTIAL_VIOLATION for v in found)
    details = " ".join(v["detail"] for v in found)
    assert "US/T9: title has no title record" in details
    assert "FR/T1: country has no user record" in details
    assert "FR/T1: country has no install base record" in details
    assert len(found) == 3


def test_freshness_rejects_stale_activity() -> None:
    stale = [{"user_id": "u1", "title_id": "T1", "timestamp": NOW - timedelta(hours=3)}]
    found = check_freshness(stale, NOW, timedelta(hours=1))
    assert len(found) == 1
    assert found[0]["kind"] == FRESHNESS_VIOLATION

    fresh = [{"user_id": "u1", "title_id": "T1", "timestamp": NOW - timedelta(minutes=10)}]
    assert check_freshness(fresh, NOW, timedelta(hours=1)) == []
    assert check_freshness([], NOW)[0]["kind"] == FRESHNESS_VIOLATION


def test_format_check_covers_codes_identifiers_and_duplicates() -> None:
    snapshot = _snapshot()
    snapshot["users"]["u3"] = "usa"
    activity = [
        {"user_id": "u1", "title_id": "T1", "timestamp": NOW},
        {"user_id": "bad id!", "title_id": "T1", "timestamp": NOW},
        {"user_id": "u2", "title_id": "T 2", "timestamp": NOW},
    ]
    found = check_format([_row(), _row()], snapshot, activity)
    assert all(v["kind"] == FORMAT_VIOLATION for v in found)
    details = [v["detail"] for v in found]
    assert details[0].startswith("country_code 'usa'")
    assert details[1].startswith("user_id 'bad id!'")
    assert details[2].startswith("title_id 'T 2'")
    assert details[3] == "duplicate output row for US/T1"


def test_outlier_needs_history() -> None:
    assert is_outlier(1_000.0, []) is False
    assert is_outlier(1_000.0, [10.0, 11.0]) is False


def test_outlier_iqr_fences_with_short_history() -> None:
    history = [100.0, 110.0, 99.0, 105.0, 100.0, 108.0]
    assert is_outlier(110.0, history) is False
    assert is_outlier(300.0, history) is True
    assert is_outlier(10.0, history) is True


def test_outlier_sigma_bound_with_long_history() -> None:
    rng = np.random.default_rng(5)
    values = [10_000.0]
    for change in rng.normal(0.01, 0.02, size=60):
        values.append(values[-1] * (1 + change))
    assert is_outlier(values[-1] * 1.01, values, sigma=3) is False
    assert is_outlier(values[-1] * 2.0, values, sigma=3) is True


def test_outlier_verdict_is_plain_bool_for_numpy_history() -> None:
    history = list(np.linspace(100.0, 200.0, 40))
    assert isinstance(history[-1], np.floating)
    steady = is_outlier(history[-1] * 1.01, history)
    jump = is_outlier(history[-1] * 3.0, history)
    assert type(steady) is bool and steady is False
    assert type(jump) is bool and jump is True


def test_outlier_check_logs_when_history_is_too_short(caplog) -> None:
    with caplog.at_level(logging.DEBUG, logger="mau_estimator.validation"):
        assert is_outlier(10_000.0, [100.0, 101.0, 102.0, 103.0]) is False
    assert "Outlier check skipped: 3 historic changes" in caplog.text


def test_check_outliers_flags_only_known_series() -> None:
    history = {("US", "T1"): [100.0, 110.0, 99.0, 105.0, 100.0, 108.0]}
    found = check_outliers([_row(est=1_000.0), _row(title="T2", est=1_000.0)], history)
    assert len(found) == 1
    assert found[0]["kind"] == OUTLIER_FLAG
    assert found[0]["detail"].startswith("US/T1")


def test_quality_gate_collects_everything_in_order() -> None:
    snapshot = _snapshot()
    stale = [{"user_id": "u1", "title_id": "T1", "timestamp": NOW - timedelta(hours=3)}]
    history = {("US", "T1"): [100.0, 110.0, 99.0, 105.0, 100.0, 108.0]}
    found = run_quality_gate(
        [_row(est=2_000_000.0), _row(country="DE", title="T9", est=5.0)],
        snapshot,
        stale,
        NOW,
        timedelta(hours=1),
        history,
    )
    kinds = [v["kind"] for v in found]
    assert kinds == [RANGE_VIOLATION, REFERENTIAL_VIOLATION, FRESHNESS_VIOLATION, OUTLIER_FLAG]


def test_resolve_status() -> None:
    assert resolve_status([]) == PUBLISHED
    assert resolve_status([{"kind": OUTLIER_FLAG, "detail": ""}]) == PUBLISHED_WITH_WARNINGS
    assert resolve_status([{"kind": "NoObservedActivity", "detail": ""}]) == PUBLISHED_WITH_WARNINGS
    assert resolve_status([{"kind": OUTLIER_FLAG, "detail": ""}, {"kind": FORMAT_VIOLATION, "detail": ""}]) == REJECTED
    assert resolve_status([], fatal=True) == REJECTED
