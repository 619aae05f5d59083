"""Stratification of activity snapshots by (country, genre) with proportional allocation."""

import logging
import math
from datetime import datetime

from . import config
from .errors import NO_INSTALL_BASE_DATA, NoInstallBaseData, violation

logger = logging.getLogger(__name__)


def filter_window(activity: list[dict], window_start: datetime, window_end: datetime) -> list[dict]:
    """Keep records inside [window_start, window_end), dropping the offline sentinel."""
    return [
        r for r in activity
        if r["title_id"] != config.OFFLINE_TITLE and window_start <= r["timestamp"] < window_end
    ]


def attribute_activity(activity: list[dict], users: dict[str, str], titles: dict[str, dict]) -> tuple[list[dict], int]:
    """
    Join activity with user countries and title genres.
    Rows whose user has no known country are dropped and counted.
    Unknown titles are kept with genre None so the quality gate can see them.
    """
    rows = []
    dropped = 0
    for r in activity:
        country = users.get(r["user_id"])
        if country is None:
            dropped += 1
            continue
        title = titles.get(r["title_id"])
        rows.append({
            "user_id": r["user_id"],
            "title_id": r["title_id"],
            "country_code": country,
            "genre": title.get("genre") if title else None,
        })
    if dropped:
        logger.warning(f"Dropped {dropped} activity rows from users with no known country")
    return rows, dropped


def count_distinct_users(rows: list[dict]) -> dict:
    """Distinct users per country, per (country, title) and per (country, genre)."""
    by_country: dict[str, set] = {}
    by_title: dict[tuple, set] = {}
    by_genre: dict[tuple, set] = {}
    for r in rows:
        c = r["country_code"]
        by_country.setdefault(c, set()).add(r["user_id"])
        by_title.setdefault((c, r["title_id"]), set()).add(r["user_id"])
        if r["genre"] is not None:
            by_genre.setdefault((c, r["genre"]), set()).add(r["user_id"])

    return {
        "country": {k: len(v) for k, v in by_country.items()},
        "title": {k: len(v) for k, v in by_title.items()},
        "genre": {k: len(v) for k, v in by_genre.items()},
    }


def install_base_for_year(install_base: dict[tuple, int], year: int) -> dict[str, int]:
    return {country: int(n) for (country, y), n in install_base.items() if y == year}


def largest_remainder_allocation(weights: dict, total_n: int) -> dict:
    """
    Allocate total_n units proportional to weights so the parts sum to total_n exactly.
    Floors first, then hands leftover units to the largest fractional remainders;
    equal remainders go to the larger weight, then to the smaller key.
    """
    weight_sum = float(sum(weights.values()))
    if total_n <= 0 or weight_sum <= 0:
        return {k: 0 for k in weights}

    quotas = {k: total_n * (w / weight_sum) for k, w in weights.items()}
    allocation = {k: int(math.floor(q)) for k, q in quotas.items()}
    leftover = total_n - sum(allocation.values())

    order = sorted(quotas, key=lambda k: (-(quotas[k] - allocation[k]), -weights[k], str(k)))
    for k in order[:leftover]:
        allocation[k] += 1
    return allocation


def country_shares(base_by_country: dict[str, int], observed_countries=()) -> tuple[dict[str, float], list[dict]]:
    """
    target_share(c) = install_base(c) / sum(install_base).
    Countries with no (or zero) install base are excluded with a warning.
    """
    warnings = []
    for country in sorted(set(observed_countries) - set(base_by_country)):
        detail = f"country {country}: no install base record, excluded"
        logger.warning(detail)
        warnings.append(violation(NO_INSTALL_BASE_DATA, detail))

    usable = {}
    for country in sorted(base_by_country):
        n = base_by_country[country]
        if n <= 0:
            detail = f"country {country}: install base is {n}, excluded"
            logger.warning(detail)
            warnings.append(violation(NO_INSTALL_BASE_DATA, detail))
        else:
            usable[country] = n

    total = sum(usable.values())
    if total == 0:
        raise NoInstallBaseData("total install base across all countries is zero", warnings=warnings)

    return {c: n / total for c, n in usable.items()}, warnings


def genre_strata(
    country: str,
    country_target: int,
    country_users: int,
    genre_users: dict[str, int],
    min_genre_sample: int = config.MIN_GENRE_SAMPLE,
) -> list[dict]:
    """Build the (country, genre) strata of one country with their target sample sizes."""
    strata = []
    eligible = {}
    for genre in sorted(genre_users):
        n = genre_users[genre]
        share = n / country_users if country_users > 0 else 0.0
        insufficient = n < min_genre_sample
        if insufficient:
            logger.warning(f"Stratum {country}/{genre}: {n} users < {min_genre_sample}, insufficient sample")
        else:
            eligible[genre] = share
        strata.append({
            "country_code": country,
            "genre": genre,
            "observed_distinct_users": n,
            "observed_share": share,
            "insufficient_sample": insufficient,
            "target_sample_size": 0,
        })

    # Players of several genres push shares past 1; never allocate more than the country has
    genre_total = int(round(min(1.0, sum(eligible.values())) * country_target))
    allocation = largest_remainder_allocation(eligible, genre_total)
    for s in strata:
        s["target_sample_size"] = allocation.get(s["genre"], 0)
    return strata


def stratify(
    rows: list[dict],
    install_base: dict[tuple, int],
    year: int,
    total_study_sample_size: int,
    min_genre_sample: int = config.MIN_GENRE_SAMPLE,
) -> dict:
    """
    Partition attributed activity into (country, genre) strata and compute
    proportional sample allocations. Raises NoInstallBaseData when no country
    has a usable install base for the year.
    """
    counts = count_distinct_users(rows)
    base_by_country = install_base_for_year(install_base, year)
    shares, warnings = country_shares(base_by_country, counts["country"].keys())
    country_targets = largest_remainder_allocation(shares, total_study_sample_size)

    genres_by_country: dict[str, dict[str, int]] = {}
    for (country, genre), n in counts["genre"].items():
        genres_by_country.setdefault(country, {})[genre] = n

    strata = []
    for country in sorted(shares):
        strata.extend(genre_strata(
            country,
            country_targets[country],
            counts["country"].get(country, 0),
            genres_by_country.get(country, {}),
            min_genre_sample,
        ))

    logger.info(f"Stratified {len(rows):,} rows into {len(strata)} strata across {len(shares)} countries")
    return {
        "year": year,
        "install_base": {c: base_by_country[c] for c in shares},
        "country_shares": shares,
        "country_targets": country_targets,
        "strata": strata,
        "counts": counts,
        "warnings": warnings,
    }
