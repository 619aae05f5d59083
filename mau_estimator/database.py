"""Database operations: read-only activity snapshots and estimation run history."""

import json
import sqlite3
from datetime import datetime, timezone

from . import config
from .validation import REJECTED


def get_connection(db_path: str = None) -> sqlite3.Connection:
    if db_path is None:
        db_path = config.DATA_DB_PATH
    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA synchronous=NORMAL")
    return conn


def create_tables(conn: sqlite3.Connection):
    conn.executescript("""
        -- Snapshot tables, filled by the extraction layer
        CREATE TABLE IF NOT EXISTS users (
            user_id TEXT PRIMARY KEY,
            country_code TEXT NOT NULL,
            created_at TEXT
        );

        CREATE TABLE IF NOT EXISTS titles (
            title_id TEXT PRIMARY KEY,
            name TEXT UNIQUE NOT NULL,
            genre TEXT,
            release_date TEXT
        );

        CREATE TABLE IF NOT EXISTS activity (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id TEXT NOT NULL,
            title_id TEXT NOT NULL,
            timestamp TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_activity_timestamp ON activity(timestamp);

        CREATE TABLE IF NOT EXISTS install_base (
            country_code TEXT NOT NULL,
            year INTEGER NOT NULL,
            install_base INTEGER NOT NULL CHECK (install_base >= 0),
            PRIMARY KEY (country_code, year)
        );

        -- Estimator output
        CREATE TABLE IF NOT EXISTS estimation_runs (
            id TEXT PRIMARY KEY,
            window_start TIMESTAMP NOT NULL,
            window_end TIMESTAMP NOT NULL,
            status TEXT NOT NULL,
            completed_at TIMESTAMP,
            config TEXT
        );

        CREATE TABLE IF NOT EXISTS estimates (
            run_id TEXT NOT NULL,
            country_code TEXT NOT NULL,
            title_id TEXT NOT NULL,
            year INTEGER,
            install_base INTEGER,
            sample_size INTEGER,
            sample_distinct_users REAL,
            scaling_factor REAL,
            final_mau_estimate REAL,
            mau_estimate_rounded INTEGER,
            margin_of_error REAL,
            mau_margin_of_error REAL,
            FOREIGN KEY (run_id) REFERENCES estimation_runs(id),
            UNIQUE(run_id, country_code, title_id)
        );

        CREATE INDEX IF NOT EXISTS idx_estimates_key ON estimates(country_code, title_id);

        CREATE TABLE IF NOT EXISTS violations (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            run_id TEXT NOT NULL,
            seq INTEGER NOT NULL,
            kind TEXT NOT NULL,
            detail TEXT,
            FOREIGN KEY (run_id) REFERENCES estimation_runs(id)
        );

        CREATE INDEX IF NOT EXISTS idx_violations_run ON violations(run_id);
    """)
    conn.commit()


def _to_iso(ts) -> str:
    """Canonical UTC form, so stored timestamps compare correctly as text."""
    if not isinstance(ts, datetime):
        ts = _parse_ts(str(ts))
    elif ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _parse_ts(value: str) -> datetime:
    ts = datetime.fromisoformat(value)
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


# ─── Snapshot tables ──────────────────────────────────────────────────────────

def insert_users_batch(conn: sqlite3.Connection, records: list[dict]):
    conn.executemany("""
        INSERT OR REPLACE INTO users (user_id, country_code, created_at)
        VALUES (:user_id, :country_code, :created_at)
    """, [{"created_at": None, **r} for r in records])
    conn.commit()


def insert_titles_batch(conn: sqlite3.Connection, records: list[dict]):
    conn.executemany("""
        INSERT OR REPLACE INTO titles (title_id, name, genre, release_date)
        VALUES (:title_id, :name, :genre, :release_date)
    """, [{"release_date": None, **r} for r in records])
    conn.commit()


def insert_activity_batch(conn: sqlite3.Connection, records: list[dict]):
    """Timestamps are stored as UTC; naive values are taken to be UTC already."""
    conn.executemany("""
        INSERT INTO activity (user_id, title_id, timestamp)
        VALUES (:user_id, :title_id, :timestamp)
    """, [{**r, "timestamp": _to_iso(r["timestamp"])} for r in records])
    conn.commit()


def insert_install_base_batch(conn: sqlite3.Connection, records: list[dict]):
    conn.executemany("""
        INSERT OR REPLACE INTO install_base (country_code, year, install_base)
        VALUES (:country_code, :year, :install_base)
    """, records)
    conn.commit()


def load_snapshot(conn: sqlite3.Connection, window_start: datetime, window_end: datetime) -> dict:
    """
    Read the four inputs of a run. Activity is restricted to [window_start, window_end)
    and returned ordered by timestamp. Timestamps must be stored as ISO-8601 UTC.
    """
    activity = [
        {"user_id": r["user_id"], "title_id": r["title_id"], "timestamp": _parse_ts(r["timestamp"])}
        for r in conn.execute(
            "SELECT user_id, title_id, timestamp FROM activity "
            "WHERE timestamp >= ? AND timestamp < ? ORDER BY timestamp, id",
            (_to_iso(window_start), _to_iso(window_end)),
        ).fetchall()
    ]
    users = {
        r["user_id"]: r["country_code"]
        for r in conn.execute("SELECT user_id, country_code FROM users").fetchall()
    }
    titles = {
        r["title_id"]: {"name": r["name"], "genre": r["genre"]}
        for r in conn.execute("SELECT title_id, name, genre FROM titles").fetchall()
    }
    install_base = {
        (r["country_code"], r["year"]): r["install_base"]
        for r in conn.execute("SELECT country_code, year, install_base FROM install_base").fetchall()
    }
    return {"activity": activity, "users": users, "titles": titles, "install_base": install_base}


# ─── Run output ───────────────────────────────────────────────────────────────

def save_run(conn: sqlite3.Connection, manifest: dict, estimates: list[dict], run_config: dict = None):
    """Persist a manifest with its violations; estimate rows only for publishable runs."""
    run_id = manifest["run_id"]
    conn.execute("""
        INSERT OR REPLACE INTO estimation_runs (id, window_start, window_end, status, completed_at, config)
        VALUES (?, ?, ?, ?, ?, ?)
    """, (
        run_id,
        _to_iso(manifest["window_start"]),
        _to_iso(manifest["window_end"]),
        manifest["status"],
        datetime.now(timezone.utc).isoformat(),
        json.dumps(run_config, default=str) if run_config is not None else None,
    ))
    conn.execute("DELETE FROM violations WHERE run_id = ?", (run_id,))
    conn.executemany("""
        INSERT INTO violations (run_id, seq, kind, detail) VALUES (?, ?, ?, ?)
    """, [(run_id, i, v["kind"], v["detail"]) for i, v in enumerate(manifest["violations"])])

    conn.execute("DELETE FROM estimates WHERE run_id = ?", (run_id,))
    if manifest["status"] != REJECTED:
        conn.executemany("""
            INSERT INTO estimates
                (run_id, country_code, title_id, year, install_base, sample_size,
                 sample_distinct_users, scaling_factor, final_mau_estimate,
                 mau_estimate_rounded, margin_of_error, mau_margin_of_error)
            VALUES
                (:run_id, :country_code, :title_id, :year, :install_base, :sample_size,
                 :sample_distinct_users, :scaling_factor, :final_mau_estimate,
                 :mau_estimate_rounded, :margin_of_error, :mau_margin_of_error)
        """, [{**row, "run_id": run_id} for row in estimates])
    conn.commit()


def get_run(conn: sqlite3.Connection, run_id: str) -> dict:
    row = conn.execute("SELECT * FROM estimation_runs WHERE id = ?", (run_id,)).fetchone()
    if row is None:
        return None
    run = dict(row)
    run["violations"] = [
        {"kind": v["kind"], "detail": v["detail"]}
        for v in conn.execute(
            "SELECT kind, detail FROM violations WHERE run_id = ? ORDER BY seq", (run_id,)
        ).fetchall()
    ]
    return run


def get_estimates_by_run(conn: sqlite3.Connection, run_id: str) -> list[dict]:
    rows = conn.execute(
        "SELECT * FROM estimates WHERE run_id = ? ORDER BY country_code, title_id", (run_id,)
    ).fetchall()
    return [dict(r) for r in rows]


def get_estimate_history(conn: sqlite3.Connection, limit: int = config.HISTORY_RUNS) -> dict[tuple, list[float]]:
    """final_mau_estimate per (country, title) over the last `limit` published runs, oldest first."""
    rows = conn.execute("""
        SELECT e.country_code, e.title_id, e.final_mau_estimate
        FROM estimates e
        JOIN (
            SELECT id, window_end FROM estimation_runs
            WHERE status != ?
            ORDER BY window_end DESC
            LIMIT ?
        ) r ON r.id = e.run_id
        ORDER BY r.window_end ASC
    """, (REJECTED, limit)).fetchall()

    history: dict[tuple, list[float]] = {}
    for r in rows:
        history.setdefault((r["country_code"], r["title_id"]), []).append(r["final_mau_estimate"])
    return history
