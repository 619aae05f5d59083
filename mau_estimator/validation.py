"""Quality gate: invariant checks over a run's inputs and outputs before publication."""

import logging
from datetime import datetime, timedelta

import numpy as np

from . import config
from .errors import (
    FORMAT_VIOLATION,
    FRESHNESS_VIOLATION,
    OUTLIER_FLAG,
    RANGE_VIOLATION,
    REFERENTIAL_VIOLATION,
    REJECTING_KINDS,
    violation,
)

logger = logging.getLogger(__name__)

PUBLISHED = "Published"
PUBLISHED_WITH_WARNINGS = "PublishedWithWarnings"
REJECTED = "Rejected"


def check_range(estimates: list[dict], install_base: dict[tuple, int]) -> list[dict]:
    """0 <= final_mau_estimate <= install_base(country, year) and margin_of_error >= 0."""
    found = []
    for row in estimates:
        key = (row["country_code"], row["year"])
        cap = install_base.get(key)
        est = row["final_mau_estimate"]
        label = f"{row['country_code']}/{row['title_id']}"
        if cap is None:
            found.append(violation(RANGE_VIOLATION, f"{label}: no install base for year {row['year']}"))
        elif not 0 <= est <= cap:
            found.append(violation(RANGE_VIOLATION, f"{label}: estimate {est:.3f} outside [0, {cap}]"))
        if not row["margin_of_error"] >= 0:
            found.append(violation(RANGE_VIOLATION, f"{label}: negative margin of error {row['margin_of_error']}"))
    return found


def check_referential(estimates: list[dict], snapshot: dict) -> list[dict]:
    """Every output country and title must trace back to input records."""
    user_countries = set(snapshot["users"].values())
    base_countries = {c for (c, _y) in snapshot["install_base"]}
    titles = snapshot["titles"]

    found = []
    for row in estimates:
        c, t = row["country_code"], row["title_id"]
        if c not in user_countries:
            found.append(violation(REFERENTIAL_VIOLATION, f"{c}/{t}: country has no user record"))
        if c not in base_countries:
            found.append(violation(REFERENTIAL_VIOLATION, f"{c}/{t}: country has no install base record"))
        if t not in titles:
            found.append(violation(REFERENTIAL_VIOLATION, f"{c}/{t}: title has no title record"))
    return found


def check_freshness(window_activity: list[dict], now: datetime, staleness_bound: timedelta = config.STALENESS_BOUND) -> list[dict]:
    if not window_activity:
        return [violation(FRESHNESS_VIOLATION, "no activity records in the window")]
    latest = max(r["timestamp"] for r in window_activity)
    age = now - latest
    if age > staleness_bound:
        return [violation(
            FRESHNESS_VIOLATION,
            f"latest activity at {latest.isoformat()} is {age} old (bound {staleness_bound})",
        )]
    return []


def check_format(estimates: list[dict], snapshot: dict, window_activity: list[dict]) -> list[dict]:
    """Country codes, identifiers and (country, title) uniqueness."""
    found = []

    bad_countries = {c for c in snapshot["users"].values() if not config.COUNTRY_CODE_PATTERN.match(str(c))}
    bad_countries |= {r["country_code"] for r in estimates
                      if not config.COUNTRY_CODE_PATTERN.match(str(r["country_code"]))}
    for c in sorted(bad_countries, key=str):
        found.append(violation(FORMAT_VIOLATION, f"country_code {c!r} is not ISO-3166 alpha-2"))

    bad_users = set()
    bad_titles = set()
    for r in window_activity:
        if not config.IDENTIFIER_PATTERN.match(str(r["user_id"])):
            bad_users.add(str(r["user_id"]))
        if not config.IDENTIFIER_PATTERN.match(str(r["title_id"])):
            bad_titles.add(str(r["title_id"]))
    for u in sorted(bad_users):
        found.append(violation(FORMAT_VIOLATION, f"user_id {u!r} does not match identifier pattern"))
    for t in sorted(bad_titles):
        found.append(violation(FORMAT_VIOLATION, f"title_id {t!r} does not match identifier pattern"))

    seen = set()
    for row in estimates:
        key = (row["country_code"], row["title_id"])
        if key in seen:
            found.append(violation(FORMAT_VIOLATION, f"duplicate output row for {key[0]}/{key[1]}"))
        seen.add(key)
    return found


def relative_changes(values: list[float]) -> list[float]:
    return [(b - a) / a for a, b in zip(values, values[1:]) if a > 0]


def is_outlier(value: float, history: list[float], sigma: float = config.OUTLIER_THRESHOLD_SIGMA) -> bool:
    """
    Compare the relative change from the last historic value against the
    distribution of past relative changes: mean +/- sigma*std with at least
    MIN_SIGMA_HISTORY changes, Tukey IQR fences with at least MIN_IQR_HISTORY.
    Quartiles of fewer than MIN_IQR_HISTORY changes carry no signal, so such
    series are never flagged.
    """
    if not history or history[-1] <= 0:
        return False
    changes = np.array(relative_changes(history))
    change = (value - history[-1]) / history[-1]

    if len(changes) >= config.MIN_SIGMA_HISTORY:
        mean = float(changes.mean())
        std = float(changes.std())
        if std == 0:
            return bool(not np.isclose(change, mean))
        return bool(abs(change - mean) > sigma * std)

    if len(changes) >= config.MIN_IQR_HISTORY:
        q1, q3 = np.percentile(changes, [25, 75])
        spread = config.IQR_MULTIPLIER * (q3 - q1)
        lo, hi = q1 - spread, q3 + spread
        return bool((change < lo and not np.isclose(change, lo)) or (change > hi and not np.isclose(change, hi)))

    logger.debug(f"Outlier check skipped: {len(changes)} historic changes < {config.MIN_IQR_HISTORY}")
    return False


def check_outliers(estimates: list[dict], history: dict[tuple, list[float]], sigma: float = config.OUTLIER_THRESHOLD_SIGMA) -> list[dict]:
    found = []
    for row in estimates:
        key = (row["country_code"], row["title_id"])
        past = history.get(key, [])
        if is_outlier(row["final_mau_estimate"], past, sigma):
            found.append(violation(
                OUTLIER_FLAG,
                f"{key[0]}/{key[1]}: estimate {row['final_mau_estimate']:.1f} vs previous {past[-1]:.1f}",
            ))
    return found


def run_quality_gate(
    estimates: list[dict],
    snapshot: dict,
    window_activity: list[dict],
    now: datetime,
    staleness_bound: timedelta = config.STALENESS_BOUND,
    history: dict[tuple, list[float]] = None,
    sigma: float = config.OUTLIER_THRESHOLD_SIGMA,
) -> list[dict]:
    """Run every check in order and collect all findings; nothing short-circuits."""
    checks = [
        ("range", lambda: check_range(estimates, snapshot["install_base"])),
        ("referential", lambda: check_referential(estimates, snapshot)),
        ("freshness", lambda: check_freshness(window_activity, now, staleness_bound)),
        ("format", lambda: check_format(estimates, snapshot, window_activity)),
        ("outlier", lambda: check_outliers(estimates, history or {}, sigma)),
    ]
    findings = []
    for name, check in checks:
        found = check()
        if found:
            logger.warning(f"Quality gate {name} check: {len(found)} finding(s)")
        findings.extend(found)
    return findings


def resolve_status(violations: list[dict], fatal: bool = False) -> str:
    if fatal or any(v["kind"] in REJECTING_KINDS for v in violations):
        return REJECTED
    if violations:
        return PUBLISHED_WITH_WARNINGS
    return PUBLISHED
