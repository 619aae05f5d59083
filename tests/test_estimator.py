from __future__ import annotations

import math

import numpy as np
import pytest

from mau_estimator.errors import NO_OBSERVED_ACTIVITY, InvariantViolation, NoObservedActivity
from mau_estimator.estimator import (
    annotate_margins,
    apply_reweighting,
    check_systemic_corruption,
    estimate_total,
    margin_of_error,
    round_half_up,
    scale_country,
    scaling_factor,
    scaling_factors,
    titles_by_country,
    wald_margin,
)


def test_scaling_factor_and_estimate_for_us_example() -> None:
    assert scaling_factor(1_000_000, 10_000) == 100.0
    rows = scale_country("US", 1_000_000, 10_000, {"T1": 500}, year=2026)
    assert rows == [{
        "country_code": "US",
        "title_id": "T1",
        "year": 2026,
        "install_base": 1_000_000,
        "sample_size": 10_000,
        "sample_distinct_users": 500,
        "scaling_factor": 100.0,
        "final_mau_estimate": 50_000.0,
        "mau_estimate_rounded": 50_000,
    }]


def test_scaling_factor_undefined_without_observed_users() -> None:
    with pytest.raises(NoObservedActivity):
        scaling_factor(1_000, 0)
    with pytest.raises(NoObservedActivity):
        estimate_total(1, 0, 1_000)


def test_scaling_factors_exclude_countries_without_activity() -> None:
    factors, warnings = scaling_factors({"US": 10}, {"US": 1_000, "DE": 500})
    assert factors == {"US": 100.0}
    assert len(warnings) == 1
    assert warnings[0]["kind"] == NO_OBSERVED_ACTIVITY
    assert "DE" in warnings[0]["detail"]


def test_margin_of_error_for_five_percent_share() -> None:
    moe = margin_of_error(500, 10_000, z=1.96)
    assert moe == pytest.approx(1.96 * math.sqrt(0.05 * 0.95 / 10_000))
    assert moe == pytest.approx(0.00427, abs=1e-5)


def test_margin_of_error_decreases_with_sample_size() -> None:
    rng = np.random.default_rng(11)
    for p_hat in rng.uniform(0.001, 0.999, size=50):
        sizes = np.sort(rng.choice(np.arange(1, 1_000_000), size=20, replace=False))
        margins = wald_margin(p_hat, sizes, 1.96)
        assert np.all(np.diff(margins) < 0)


def test_margin_of_error_rejects_corrupt_counts() -> None:
    with pytest.raises(InvariantViolation):
        margin_of_error(11, 10)
    with pytest.raises(InvariantViolation):
        margin_of_error(-1, 10)
    with pytest.raises(NoObservedActivity):
        margin_of_error(0, 0)


def test_margin_is_zero_at_the_boundaries() -> None:
    assert margin_of_error(0, 100) == 0.0
    assert margin_of_error(100, 100) == 0.0


def test_estimates_stay_within_install_base() -> None:
    rng = np.random.default_rng(3)
    for _ in range(2_000):
        install_base = int(rng.integers(0, 1_000_000_000))
        sample_size = int(rng.integers(1, 5_000_000))
        sample_mau = int(rng.integers(0, sample_size + 1))
        est = estimate_total(sample_mau, sample_size, install_base)
        assert 0 <= est <= install_base
        assert estimate_total(sample_size, sample_size, install_base) == install_base


def test_round_half_up() -> None:
    assert round_half_up(2.5) == 3
    assert round_half_up(3.5) == 4
    assert round_half_up(2.49) == 2


def test_annotate_margins_drops_rows_with_impossible_proportion() -> None:
    rows = scale_country("US", 1_000, 100, {"T1": 50, "T2": 150}, year=2026)
    annotated, invalid = annotate_margins(rows, z=1.96)

    assert [r["title_id"] for r in annotated] == ["T1"]
    t1 = annotated[0]
    assert t1["margin_of_error"] == pytest.approx(1.96 * math.sqrt(0.25 / 100))
    assert t1["mau_margin_of_error"] == pytest.approx(t1["margin_of_error"] * 1_000)
    assert len(invalid) == 1
    assert invalid[0]["kind"] == "InvariantViolation"
    assert "T2" in invalid[0]["detail"]


def test_annotate_margins_empty() -> None:
    assert annotate_margins([]) == ([], [])


def test_systemic_corruption_threshold() -> None:
    check_systemic_corruption(1, 100, max_fraction=0.05)
    check_systemic_corruption(0, 0)
    with pytest.raises(InvariantViolation):
        check_systemic_corruption(6, 100, max_fraction=0.05)


def test_titles_by_country_groups_counts() -> None:
    grouped = titles_by_country({("US", "T1"): 3, ("US", "T2"): 1, ("DE", "T1"): 2})
    assert grouped == {"US": {"T1": 3, "T2": 1}, "DE": {"T1": 2}}


def test_reweighting_hook_is_optional() -> None:
    counts = {("US", "T1"): 10}
    assert apply_reweighting(counts, []) is counts

    def halve(title_counts, strata):
        return {k: v / 2 for k, v in title_counts.items()}

    assert apply_reweighting(counts, [], halve) == {("US", "T1"): 5.0}
    assert counts == {("US", "T1"): 10}
