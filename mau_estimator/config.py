"""Configuration constants and run options for MAU estimation."""

import re
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from .errors import ConfigError

# Sentinel title_id meaning "online but not playing anything"
OFFLINE_TITLE = "offline"

LOOKBACK_WINDOW_DAYS = 30
CONFIDENCE_Z = 1.96  # 95% two-sided
MIN_GENRE_SAMPLE = 30
STALENESS_BOUND = timedelta(hours=1)

# --- Outlier detection against previous runs ---
OUTLIER_THRESHOLD_SIGMA = 3.0
IQR_MULTIPLIER = 1.5
MIN_SIGMA_HISTORY = 30  # below this, fall back to IQR fences
MIN_IQR_HISTORY = 4  # below this, no outlier check at all
HISTORY_RUNS = 90

# More than this share of rows failing p_hat in [0, 1] means the snapshot is corrupt
MAX_INVARIANT_VIOLATION_FRACTION = 0.05

# --- Identifier formats ---
COUNTRY_CODE_PATTERN = re.compile(r"^[A-Z]{2}$")
IDENTIFIER_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.:-]{0,63}$")

# Database paths
DATA_DB_PATH = "activity_snapshot.db"

# Output paths
OUTPUT_DIR = "output"
FIGURES_DIR = "output/figures"
DATA_OUTPUT_DIR = "output/data"


@dataclass(frozen=True)
class EstimatorConfig:
    total_study_sample_size: int
    lookback_window_days: int = LOOKBACK_WINDOW_DAYS
    confidence_z: float = CONFIDENCE_Z
    min_genre_sample: int = MIN_GENRE_SAMPLE
    staleness_bound: timedelta = STALENESS_BOUND
    outlier_threshold_sigma: float = OUTLIER_THRESHOLD_SIGMA
    max_invariant_violation_fraction: float = MAX_INVARIANT_VIOLATION_FRACTION
    time_budget_seconds: Optional[float] = None
    max_workers: int = 1
    show_progress: bool = False

    def __post_init__(self) -> None:
        if int(self.total_study_sample_size) <= 0:
            raise ConfigError("total_study_sample_size must be a positive integer")
        if int(self.lookback_window_days) <= 0:
            raise ConfigError("lookback_window_days must be > 0")
        if float(self.confidence_z) <= 0:
            raise ConfigError("confidence_z must be > 0")
        if int(self.min_genre_sample) < 0:
            raise ConfigError("min_genre_sample must be >= 0")
        if self.staleness_bound < timedelta(0):
            raise ConfigError("staleness_bound must be non-negative")
        if float(self.outlier_threshold_sigma) <= 0:
            raise ConfigError("outlier_threshold_sigma must be > 0")
        if not 0 <= float(self.max_invariant_violation_fraction) <= 1:
            raise ConfigError("max_invariant_violation_fraction must be within [0, 1]")
        if self.time_budget_seconds is not None and float(self.time_budget_seconds) <= 0:
            raise ConfigError("time_budget_seconds must be > 0 when set")
        if int(self.max_workers) < 1:
            raise ConfigError("max_workers must be >= 1")

    @property
    def lookback_window(self) -> timedelta:
        return timedelta(days=int(self.lookback_window_days))
