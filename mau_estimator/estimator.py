"""Statistical estimation: scaling factors, MAU extrapolation, Wald margin of error."""

import logging
import math
from typing import Callable, Optional

import numpy as np

from . import config
from .errors import InvariantViolation, NoObservedActivity, violation

logger = logging.getLogger(__name__)

Reweighting = Callable[[dict, list], dict]


def scaling_factor(install_base: int, observed_users: int) -> float:
    """install_base / distinct users observed in the country."""
    if observed_users <= 0:
        raise NoObservedActivity("no distinct users observed, scaling factor undefined")
    return install_base / observed_users


def estimate_total(sample_mau: int, sample_size: int, install_base: int) -> float:
    """Expansion estimator: MAU_hat = install_base * (sample_mau / sample_size)."""
    if sample_size <= 0:
        raise NoObservedActivity("sample size is zero, estimate undefined")
    # Multiply first: the product is an exact integer, so the result never exceeds install_base
    return install_base * sample_mau / sample_size


def wald_margin(p_hat, sample_size, z: float = config.CONFIDENCE_Z):
    """Normal-approximation half-width: z * sqrt(p(1-p)/n). Works on scalars or arrays."""
    p_hat = np.asarray(p_hat, dtype=float)
    return z * np.sqrt(p_hat * (1.0 - p_hat) / sample_size)


def margin_of_error(sample_mau: int, sample_size: int, z: float = config.CONFIDENCE_Z) -> float:
    if sample_size <= 0:
        raise NoObservedActivity("sample size is zero, margin of error undefined")
    if sample_mau < 0 or sample_mau > sample_size:
        raise InvariantViolation(
            f"sample_mau={sample_mau} outside [0, sample_size={sample_size}]"
        )
    return float(wald_margin(sample_mau / sample_size, sample_size, z))


def round_half_up(x: float) -> int:
    return int(math.floor(x + 0.5))


def scaling_factors(country_users: dict[str, int], base_by_country: dict[str, int]) -> tuple[dict[str, float], list[dict]]:
    """Scaling factor per country; countries with no observed users are excluded with a warning."""
    factors = {}
    warnings = []
    for country in sorted(base_by_country):
        try:
            factors[country] = scaling_factor(base_by_country[country], country_users.get(country, 0))
        except NoObservedActivity as e:
            detail = f"country {country}: {e.detail}, excluded"
            logger.warning(detail)
            warnings.append(violation(e.kind, detail))
    return factors, warnings


def scale_country(
    country: str,
    install_base: int,
    sample_size: int,
    title_users: dict[str, int],
    year: Optional[int] = None,
) -> list[dict]:
    """Raw MAU estimate for every title observed in one country, sorted by title."""
    factor = scaling_factor(install_base, sample_size)
    rows = []
    for title_id in sorted(title_users):
        sample_mau = title_users[title_id]
        final = estimate_total(sample_mau, sample_size, install_base)
        rows.append({
            "country_code": country,
            "title_id": title_id,
            "year": year,
            "install_base": install_base,
            "sample_size": sample_size,
            "sample_distinct_users": sample_mau,
            "scaling_factor": factor,
            "final_mau_estimate": final,
            "mau_estimate_rounded": round_half_up(final),
        })
    return rows


def annotate_margins(rows: list[dict], z: float = config.CONFIDENCE_Z) -> tuple[list[dict], list[dict]]:
    """
    Attach margin_of_error (sample proportion) and mau_margin_of_error (population scale).
    Rows whose sample proportion leaves [0, 1] are dropped and reported as
    InvariantViolation entries instead.
    """
    if not rows:
        return [], []
    k = np.array([r["sample_distinct_users"] for r in rows], dtype=float)
    n = np.array([r["sample_size"] for r in rows], dtype=float)
    if np.any(n <= 0):
        raise NoObservedActivity("sample size is zero, margin of error undefined")
    ok = (k >= 0) & (k <= n)
    margins = np.zeros_like(k)
    margins[ok] = wald_margin(k[ok] / n[ok], n[ok], z)

    annotated = []
    invalid = []
    for i, row in enumerate(rows):
        if not ok[i]:
            detail = (f"country {row['country_code']} title {row['title_id']}: "
                      f"sample_mau={row['sample_distinct_users']} outside [0, sample_size={row['sample_size']}]")
            logger.error(detail)
            invalid.append(violation(InvariantViolation.kind, detail))
            continue
        moe = float(margins[i])
        annotated.append({
            **row,
            "margin_of_error": moe,
            "mau_margin_of_error": moe * row["install_base"],
        })
    return annotated, invalid


def check_systemic_corruption(n_invalid: int, n_total: int, max_fraction: float = config.MAX_INVARIANT_VIOLATION_FRACTION):
    """Escalate per-row invariant violations to a fatal condition past max_fraction."""
    if n_total == 0 or n_invalid == 0:
        return
    fraction = n_invalid / n_total
    if fraction > max_fraction:
        raise InvariantViolation(
            f"{n_invalid}/{n_total} rows ({fraction:.1%}) violate 0 <= p_hat <= 1, "
            f"above the {max_fraction:.1%} limit: snapshot looks corrupt"
        )


def titles_by_country(title_counts: dict[tuple, int]) -> dict[str, dict[str, int]]:
    grouped: dict[str, dict[str, int]] = {}
    for (country, title_id), n in title_counts.items():
        grouped.setdefault(country, {})[title_id] = n
    return grouped


def apply_reweighting(title_counts: dict[tuple, int], strata: list[dict], reweight: Optional[Reweighting] = None) -> dict[tuple, int]:
    """Run an optional re-weighting strategy over (country, title) sample counts before scaling."""
    if reweight is None:
        return title_counts
    adjusted = reweight(dict(title_counts), strata)
    logger.info(f"Applied re-weighting strategy {getattr(reweight, '__name__', repr(reweight))}")
    return adjusted
