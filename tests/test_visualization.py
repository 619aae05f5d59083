from __future__ import annotations

from pathlib import Path

from mau_estimator.main import run_estimation
from mau_estimator.visualization import generate_all_figures

from .conftest import NOW


def test_generate_all_figures_for_a_run(tmp_path, scenario_a_snapshot, cfg) -> None:
    results = run_estimation(scenario_a_snapshot, cfg, now=NOW)
    paths = generate_all_figures(results, str(tmp_path / "figures"))

    names = sorted(Path(p).name for p in paths)
    assert names == [
        "fig1_top_titles_US.png",
        "fig2_country_allocation.png",
        "fig3_stratum_heatmap.png",
        "fig4_margin_vs_proportion.png",
    ]
    assert all(Path(p).exists() for p in paths)


def test_rejected_run_skips_estimate_figures(tmp_path) -> None:
    results = {"manifest": {"status": "Rejected"}, "estimates": [], "allocation": {}}
    assert generate_all_figures(results, str(tmp_path)) == []
