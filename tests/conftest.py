from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from mau_estimator.config import EstimatorConfig

NOW = datetime(2026, 10, 17, 12, 0, tzinfo=timezone.utc)


def make_snapshot(
    players: dict[str, dict[str, int]],
    install_base: dict[tuple, int],
    genres: dict[str, str] | None = None,
    now: datetime = NOW,
    latest_age: timedelta = timedelta(minutes=5),
) -> dict:
    """players: {country: {title_id: n_users}}; every generated user plays exactly one title."""
    genres = genres or {}
    users: dict[str, str] = {}
    titles: dict[str, dict] = {}
    activity: list[dict] = []
    ts = now - latest_age
    for country, by_title in players.items():
        for title_id, n in by_title.items():
            titles.setdefault(title_id, {"name": f"Title {title_id}", "genre": genres.get(title_id, "action")})
            for i in range(n):
                user_id = f"{country.lower()}-{title_id.lower()}-{i:05d}"
                users[user_id] = country
                activity.append({"user_id": user_id, "title_id": title_id, "timestamp": ts - timedelta(days=i % 20)})
    return {"activity": activity, "users": users, "titles": titles, "install_base": install_base}


@pytest.fixture
def scenario_a_snapshot() -> dict:
    # US: 1,000,000 install base, 10,000 observed users, 500 of them on T1
    snapshot = make_snapshot(
        {"US": {"T1": 500, "T2": 9_500}},
        {("US", 2026): 1_000_000},
        genres={"T1": "shooter", "T2": "puzzle"},
    )
    # Sessions with no title being played; excluded from every count
    snapshot["activity"].append({"user_id": "us-t1-00000", "title_id": "offline", "timestamp": NOW - timedelta(minutes=1)})
    return snapshot


@pytest.fixture
def cfg() -> EstimatorConfig:
    return EstimatorConfig(total_study_sample_size=1_000)
