"""SQLite-backed key-value store for candidates, matches, settings and progress."""

from __future__ import annotations

import json
import sqlite3
from datetime import UTC, datetime
from pathlib import Path
from threading import RLock
from typing import Any

from .config_loader import get_sweep_config
from .dedup_cache import matched_entry_key

DEFAULT_DB_PATH = "data/subwatch_state.db"

KEY_CANDIDATES = "candidates"
KEY_MATCHED = "matched"
KEY_FILTER_EXPRESSION = "filter_expression"
KEY_INCLUDE_FAILING = "include_failing"
KEY_CONCURRENCY_LIMIT = "concurrency_limit"
KEY_PROGRESS = "progress"
KEY_MONITOR_STATE = "monitor_state"

MONITOR_ON = "on"
MONITOR_OFF = "off"

_MISSING = object()


def _repo_root() -> Path:
    return Path(__file__).resolve().parents[3]


def _utc_now_iso() -> str:
    return datetime.now(tz=UTC).isoformat()


def _resolve_db_path(path: str | None) -> Path:
    candidate = Path(path or DEFAULT_DB_PATH)
    if not candidate.is_absolute():
        candidate = _repo_root() / candidate
    return candidate.resolve()


def resolve_state_db_path(path: str | None) -> Path:
    return _resolve_db_path(path)


def _state_db_path_from_config() -> Path:
    try:
        sweep = get_sweep_config()
    except Exception:
        sweep = {}
    raw = sweep.get("state_db_path")
    return _resolve_db_path(raw if isinstance(raw, str) and raw.strip() else None)


class StateStore:
    """Persist the durable state the sweep reads at start and writes while running."""

    def __init__(self, db_path: str | Path | None = None) -> None:
        if db_path is None:
            self._db_path = _state_db_path_from_config()
        else:
            self._db_path = _resolve_db_path(str(db_path))
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = RLock()
        self.ensure_schema()

    @property
    def db_path(self) -> Path:
        return self._db_path

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path, timeout=5.0)
        conn.row_factory = sqlite3.Row
        return conn

    def ensure_schema(self) -> None:
        with self._connect() as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS kv_state (
                    key TEXT PRIMARY KEY,
                    value_json TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );
                """
            )

    def get(self, key: str, default: Any = None) -> Any:
        with self._connect() as conn:
            row = conn.execute("SELECT value_json FROM kv_state WHERE key = ?;", (key,)).fetchone()
        if row is None:
            return default
        try:
            return json.loads(row["value_json"])
        except json.JSONDecodeError:
            return default

    def set(self, key: str, value: Any) -> None:
        payload = json.dumps(value, ensure_ascii=False)
        with self._lock, self._connect() as conn:
            conn.execute(
                """
                INSERT INTO kv_state(key, value_json, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET value_json = excluded.value_json, updated_at = excluded.updated_at;
                """,
                (key, payload, _utc_now_iso()),
            )

    def remove(self, key: str) -> bool:
        with self._lock, self._connect() as conn:
            cur = conn.execute("DELETE FROM kv_state WHERE key = ?;", (key,))
            return cur.rowcount > 0

    def has(self, key: str) -> bool:
        return self.get(key, _MISSING) is not _MISSING

    # Candidates

    def load_candidates(self) -> list[dict[str, Any]]:
        value = self.get(KEY_CANDIDATES, [])
        return [item for item in value if isinstance(item, dict)] if isinstance(value, list) else []

    def replace_candidates(self, entries: list[dict[str, Any]]) -> dict[str, Any]:
        clean = [dict(item) for item in entries if isinstance(item, dict)]
        self.set(KEY_CANDIDATES, clean)
        return {"ok": True, "count": len(clean), "dropped": len(entries) - len(clean)}

    # Matched records

    def load_matched(self) -> list[dict[str, Any]]:
        value = self.get(KEY_MATCHED, [])
        return [item for item in value if isinstance(item, dict)] if isinstance(value, list) else []

    def record_match(self, entry: dict[str, Any]) -> dict[str, Any]:
        """Merge `entry` into the matched list, keyed by its target URL."""
        key = matched_entry_key(entry)
        if key is None:
            return {"ok": False, "error": "matched entry requires a target url"}
        with self._lock:
            existing = self.load_matched()
            merged: dict[str, dict[str, Any]] = {}
            unkeyed: list[dict[str, Any]] = []
            for item in existing:
                item_key = matched_entry_key(item)
                if item_key is None:
                    unkeyed.append(item)
                else:
                    merged[item_key] = item
            replaced = key in merged
            merged[key] = dict(entry)
            self.set(KEY_MATCHED, unkeyed + list(merged.values()))
        return {"ok": True, "key": key, "replaced": replaced, "count": len(unkeyed) + len(merged)}

    def clear_matched(self) -> int:
        with self._lock:
            removed = len(self.load_matched())
            self.remove(KEY_MATCHED)
        return removed

    # Operator settings

    def get_filter_expression(self, default: str = "all") -> str:
        value = self.get(KEY_FILTER_EXPRESSION)
        return value if isinstance(value, str) else default

    def get_include_failing(self, default: bool = False) -> bool:
        value = self.get(KEY_INCLUDE_FAILING)
        return value if isinstance(value, bool) else default

    def get_concurrency_limit(self, default: int = 5) -> int:
        value = self.get(KEY_CONCURRENCY_LIMIT)
        if isinstance(value, int) and not isinstance(value, bool) and value >= 1:
            return value
        return default

    def update_settings(
        self,
        *,
        filter_expression: str | None = None,
        include_failing: bool | None = None,
        concurrency_limit: int | None = None,
    ) -> dict[str, Any]:
        if concurrency_limit is not None and (not isinstance(concurrency_limit, int) or concurrency_limit < 1):
            return {"ok": False, "error": "concurrency_limit must be >= 1"}
        if filter_expression is not None:
            self.set(KEY_FILTER_EXPRESSION, str(filter_expression))
        if include_failing is not None:
            self.set(KEY_INCLUDE_FAILING, bool(include_failing))
        if concurrency_limit is not None:
            self.set(KEY_CONCURRENCY_LIMIT, int(concurrency_limit))
        return {"ok": True, "settings": self.settings_snapshot()}

    def settings_snapshot(self) -> dict[str, Any]:
        return {
            "filter_expression": self.get(KEY_FILTER_EXPRESSION),
            "include_failing": self.get(KEY_INCLUDE_FAILING),
            "concurrency_limit": self.get(KEY_CONCURRENCY_LIMIT),
        }

    # Progress and monitor status

    def save_progress(self, *, current: int, total: int) -> None:
        self.set(KEY_PROGRESS, {"current": int(current), "total": int(total)})

    def load_progress(self) -> dict[str, int] | None:
        value = self.get(KEY_PROGRESS)
        return value if isinstance(value, dict) else None

    def clear_progress(self) -> None:
        self.remove(KEY_PROGRESS)

    def set_monitor_state(self, state: str) -> None:
        self.set(KEY_MONITOR_STATE, state)

    def get_monitor_state(self) -> str:
        value = self.get(KEY_MONITOR_STATE)
        return value if isinstance(value, str) else MONITOR_OFF
