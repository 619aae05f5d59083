"""Main orchestration: one MAU estimation run over an activity snapshot.

A run moves strictly forward through
  Collecting -> Stratifying -> Scaling -> IntervalEstimating -> QualityGating
and ends Published, PublishedWithWarnings or Rejected. Every run yields a
manifest, including rejected ones; a rejected run never hands out estimates.
Per-country work fans out over a thread pool; the quality gate waits for all
countries before it runs.
"""

import argparse
import logging
import os
import sys
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict
from datetime import datetime, timedelta, timezone

from tqdm import tqdm

from . import config, database
from .config import EstimatorConfig
from .errors import EstimationTimeout, InvariantViolation, NoInstallBaseData
from .estimator import (
    annotate_margins,
    apply_reweighting,
    check_systemic_corruption,
    scale_country,
    scaling_factors,
    titles_by_country,
)
from .sampler import attribute_activity, filter_window, stratify
from .utils import format_large_number, save_results_to_json, setup_logging
from .validation import REJECTED, resolve_status, run_quality_gate

logger = logging.getLogger(__name__)

COLLECTING = "Collecting"
STRATIFYING = "Stratifying"
SCALING = "Scaling"
INTERVAL_ESTIMATING = "IntervalEstimating"
QUALITY_GATING = "QualityGating"

RUN_STATES = [COLLECTING, STRATIFYING, SCALING, INTERVAL_ESTIMATING, QUALITY_GATING]


class RunTracker:
    """Forward-only state tracking plus the run's time budget."""

    def __init__(self, run_id: str, time_budget_seconds: float = None, clock=time.monotonic):
        self.run_id = run_id
        self.states: list[str] = []
        self._budget = time_budget_seconds
        self._clock = clock
        self._started = clock()

    @property
    def state(self) -> str:
        return self.states[-1] if self.states else None

    def advance(self, state: str):
        if self.state is not None and RUN_STATES.index(state) <= RUN_STATES.index(self.state):
            raise RuntimeError(f"Run {self.run_id}: illegal transition {self.state} -> {state}")
        self.check_budget()
        logger.info(f"Run {self.run_id}: {self.state or 'start'} -> {state}")
        self.states.append(state)

    def check_budget(self):
        if self._budget is None:
            return
        elapsed = self._clock() - self._started
        if elapsed > self._budget:
            raise EstimationTimeout(
                f"run exceeded its {self._budget:.1f}s time budget during {self.state} ({elapsed:.1f}s)"
            )


def _map_countries(fn, countries: list[str], cfg: EstimatorConfig, tracker: RunTracker, desc: str) -> dict:
    """Apply fn to every country, serially or on a thread pool; results keyed by country."""
    results = {}
    pbar = tqdm(total=len(countries), desc=desc, unit="countries", disable=not cfg.show_progress)
    if cfg.max_workers > 1:
        with ThreadPoolExecutor(max_workers=cfg.max_workers) as pool:
            futures = {country: pool.submit(fn, country) for country in countries}
            for country, future in futures.items():
                results[country] = future.result()
                pbar.update(1)
                tracker.check_budget()
    else:
        for country in countries:
            results[country] = fn(country)
            pbar.update(1)
            tracker.check_budget()
    pbar.close()
    return results


def run_estimation(
    snapshot: dict,
    cfg: EstimatorConfig,
    now: datetime = None,
    history: dict[tuple, list[float]] = None,
    run_id: str = None,
    reweight=None,
) -> dict:
    """
    Estimate per (country, title) MAU from one snapshot.
    Returns {"manifest", "estimates", "allocation"}; estimates is empty when Rejected.
    """
    if now is None:
        now = datetime.now(timezone.utc)
    window_end = now
    window_start = now - cfg.lookback_window
    year = window_end.year
    if run_id is None:
        run_id = f"run_{window_end:%Y%m%dT%H%M%SZ}_{uuid.uuid4().hex[:8]}"

    tracker = RunTracker(run_id, cfg.time_budget_seconds)
    violations: list[dict] = []
    estimates: list[dict] = []
    fatal = False
    allocation = {}

    try:
        # ── Collecting ──
        tracker.advance(COLLECTING)
        window_activity = [r for r in snapshot["activity"] if window_start <= r["timestamp"] < window_end]
        active = filter_window(window_activity, window_start, window_end)
        rows, _ = attribute_activity(active, snapshot["users"], snapshot["titles"])
        logger.info(f"Collected {len(window_activity):,} records in window, {len(rows):,} attributed and active")

        # ── Stratifying ──
        tracker.advance(STRATIFYING)
        strat = stratify(rows, snapshot["install_base"], year, cfg.total_study_sample_size, cfg.min_genre_sample)
        violations.extend(strat["warnings"])
        allocation = {
            "country_shares": strat["country_shares"],
            "country_targets": strat["country_targets"],
            "strata": strat["strata"],
        }
        for country, target in strat["country_targets"].items():
            logger.info(f"  {country}: share {strat['country_shares'][country]:.2%}, target sample {target:,}")

        # ── Scaling ──
        tracker.advance(SCALING)
        title_counts = apply_reweighting(strat["counts"]["title"], strat["strata"], reweight)
        factors, warnings = scaling_factors(strat["counts"]["country"], strat["install_base"])
        violations.extend(warnings)
        allocation["scaling_factors"] = factors
        by_country = titles_by_country(title_counts)

        def _scale(country):
            return scale_country(
                country,
                strat["install_base"][country],
                strat["counts"]["country"][country],
                by_country.get(country, {}),
                year,
            )

        scaled = _map_countries(_scale, sorted(factors), cfg, tracker, "Scaling")

        # ── IntervalEstimating ──
        tracker.advance(INTERVAL_ESTIMATING)
        annotated = _map_countries(
            lambda c: annotate_margins(scaled[c], cfg.confidence_z), sorted(scaled), cfg, tracker, "Intervals"
        )
        n_total = 0
        n_invalid = 0
        for country in sorted(annotated):
            country_rows, invalid = annotated[country]
            estimates.extend(country_rows)
            violations.extend(invalid)
            n_total += len(country_rows) + len(invalid)
            n_invalid += len(invalid)
        check_systemic_corruption(n_invalid, n_total, cfg.max_invariant_violation_fraction)

        # ── QualityGating ──
        tracker.advance(QUALITY_GATING)
        violations.extend(run_quality_gate(
            estimates,
            snapshot,
            window_activity,
            now,
            cfg.staleness_bound,
            history,
            cfg.outlier_threshold_sigma,
        ))
    except (NoInstallBaseData, InvariantViolation, EstimationTimeout) as e:
        logger.error(f"Run {run_id} aborted in {tracker.state}: {e.kind}: {e.detail}")
        violations.extend(e.warnings)
        violations.append(e.as_violation())
        fatal = True

    status = resolve_status(violations, fatal=fatal)
    if status == REJECTED:
        estimates = []
    tracker.states.append(status)

    manifest = {
        "run_id": run_id,
        "window_start": window_start,
        "window_end": window_end,
        "status": status,
        "violations": violations,
        "states": list(tracker.states),
    }
    logger.info(f"Run {run_id} finished {status}: {len(estimates)} estimates, {len(violations)} violation(s)")
    return {"manifest": manifest, "estimates": estimates, "allocation": allocation}


def log_summary(results: dict, top_n: int = 10):
    manifest = results["manifest"]
    logger.info("=" * 60)
    logger.info(f"RUN {manifest['run_id']}: {manifest['status']}")
    logger.info("=" * 60)
    for v in manifest["violations"]:
        logger.info(f"  [{v['kind']}] {v['detail']}")

    ranked = sorted(results["estimates"], key=lambda r: -r["final_mau_estimate"])[:top_n]
    if ranked:
        logger.info(f"{'Country':<8} {'Title':<20} {'MAU':>10} {'± MAU':>10}")
        logger.info("-" * 52)
    for r in ranked:
        logger.info(f"{r['country_code']:<8} {r['title_id']:<20} "
                    f"{format_large_number(r['final_mau_estimate']):>10} "
                    f"{format_large_number(r['mau_margin_of_error']):>10}")


def _parse_now(value: str) -> datetime:
    ts = datetime.fromisoformat(value)
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Stratified-sampling MAU estimator")
    parser.add_argument("--db", default=config.DATA_DB_PATH, help="SQLite snapshot database")
    parser.add_argument("--total-sample-size", type=int, required=True,
                        help="Total study sample size to allocate across countries")
    parser.add_argument("--lookback-days", type=int, default=config.LOOKBACK_WINDOW_DAYS)
    parser.add_argument("--confidence-z", type=float, default=config.CONFIDENCE_Z)
    parser.add_argument("--min-genre-sample", type=int, default=config.MIN_GENRE_SAMPLE)
    parser.add_argument("--staleness-minutes", type=float,
                        default=config.STALENESS_BOUND.total_seconds() / 60)
    parser.add_argument("--outlier-sigma", type=float, default=config.OUTLIER_THRESHOLD_SIGMA)
    parser.add_argument("--time-budget", type=float, default=None, help="Seconds before the run times out")
    parser.add_argument("--workers", type=int, default=1, help="Per-country worker threads")
    parser.add_argument("--now", type=_parse_now, default=None,
                        help="End of the lookback window (ISO-8601, default: current UTC time)")
    parser.add_argument("--output-dir", default=config.DATA_OUTPUT_DIR)
    parser.add_argument("--figures", action="store_true", help="Also write diagnostic figures")
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging()

    cfg = EstimatorConfig(
        total_study_sample_size=args.total_sample_size,
        lookback_window_days=args.lookback_days,
        confidence_z=args.confidence_z,
        min_genre_sample=args.min_genre_sample,
        staleness_bound=timedelta(minutes=args.staleness_minutes),
        outlier_threshold_sigma=args.outlier_sigma,
        time_budget_seconds=args.time_budget,
        max_workers=args.workers,
        show_progress=True,
    )
    now = args.now or datetime.now(timezone.utc)

    db_conn = database.get_connection(args.db)
    database.create_tables(db_conn)
    snapshot = database.load_snapshot(db_conn, now - cfg.lookback_window, now)
    history = database.get_estimate_history(db_conn)

    results = run_estimation(snapshot, cfg, now=now, history=history)
    database.save_run(db_conn, results["manifest"], results["estimates"], asdict(cfg))
    db_conn.close()

    log_summary(results)
    out_path = os.path.join(args.output_dir, f"{results['manifest']['run_id']}.json")
    save_results_to_json(results, out_path)
    logger.info(f"Saved results to {out_path}")

    if args.figures:
        from .visualization import generate_all_figures

        for p in generate_all_figures(results, os.path.join(args.output_dir, "figures")):
            logger.info(f"  Generated: {p}")

    return 1 if results["manifest"]["status"] == REJECTED else 0


if __name__ == "__main__":
    sys.exit(main())
