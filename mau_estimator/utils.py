"""Utility functions."""

import json
import logging
import os
import sys
from datetime import datetime, timedelta


def setup_logging(level=logging.INFO, log_file: str = "mau_estimator.log"):
    handlers = [logging.StreamHandler(sys.stdout)]
    if log_file:
        handlers.append(logging.FileHandler(log_file, mode="a"))
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        handlers=handlers,
    )


def format_large_number(n: float) -> str:
    if abs(n) >= 1e9:
        return f"{n/1e9:.2f}B"
    if abs(n) >= 1e6:
        return f"{n/1e6:.2f}M"
    if abs(n) >= 1e3:
        return f"{n/1e3:.1f}K"
    return f"{n:.0f}"


def _serialize(obj):
    if hasattr(obj, "tolist"):
        return obj.tolist()
    if isinstance(obj, datetime):
        return obj.isoformat()
    if isinstance(obj, timedelta):
        return obj.total_seconds()
    raise TypeError(f"Cannot serialize {type(obj)}")


def dumps_estimates(estimates: list[dict]) -> str:
    """Canonical JSON for an estimate table; identical tables give identical bytes."""
    return json.dumps(estimates, sort_keys=True, separators=(",", ":"), default=_serialize)


def save_results_to_json(results: dict, filepath: str):
    dirname = os.path.dirname(filepath)
    if dirname:
        os.makedirs(dirname, exist_ok=True)
    with open(filepath, "w") as f:
        json.dump(results, f, indent=2, default=_serialize)


def load_results_from_json(filepath: str) -> dict:
    with open(filepath, "r") as f:
        return json.load(f)
