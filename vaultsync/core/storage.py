from __future__ import annotations

import json
import os
import sqlite3
from dataclasses import dataclass
from typing import Any

from vaultsync.core.settings import Settings


SCHEMA_SQL = """
PRAGMA journal_mode=WAL;

CREATE TABLE IF NOT EXISTS app_settings (
  key TEXT PRIMARY KEY,
  value TEXT NOT NULL,
  updated_at TEXT DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS sync_runs (
  id TEXT PRIMARY KEY,
  status TEXT NOT NULL,
  manual INTEGER DEFAULT 1,
  items_created INTEGER DEFAULT 0,
  items_updated INTEGER DEFAULT 0,
  items_unchanged INTEGER DEFAULT 0,
  items_failed INTEGER DEFAULT 0,
  warnings_json TEXT,
  started_at TEXT DEFAULT (datetime('now')),
  finished_at TEXT,
  error TEXT
);

CREATE INDEX IF NOT EXISTS idx_sync_runs_started_at ON sync_runs(started_at);
"""


@dataclass
class SettingsStore:
    conn: sqlite3.Connection

    def init(self) -> None:
        self.conn.executescript(SCHEMA_SQL)
        self.conn.commit()

    # ==================== Settings ====================

    def get_setting(self, key: str, default: str | None = None) -> str | None:
        """Get a setting value by key."""
        cur = self.conn.execute(
            "SELECT value FROM app_settings WHERE key = ?",
            (key,)
        )
        row = cur.fetchone()
        return row[0] if row else default

    def set_setting(self, key: str, value: str) -> None:
        """Set a setting value (upsert)."""
        self.conn.execute(
            """
            INSERT INTO app_settings (key, value, updated_at)
            VALUES (?, ?, datetime('now'))
            ON CONFLICT(key) DO UPDATE SET
                value = excluded.value,
                updated_at = datetime('now')
            """,
            (key, value)
        )
        self.conn.commit()

    # ==================== Sync runs ====================

    def save_run(self, run: dict[str, Any]) -> None:
        """Insert or update a sync run record (as produced by SyncJob.to_dict)."""
        self.conn.execute(
            """
            INSERT INTO sync_runs (
                id, status, manual, items_created, items_updated,
                items_unchanged, items_failed, warnings_json, started_at,
                finished_at, error
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                status = excluded.status,
                items_created = excluded.items_created,
                items_updated = excluded.items_updated,
                items_unchanged = excluded.items_unchanged,
                items_failed = excluded.items_failed,
                warnings_json = excluded.warnings_json,
                finished_at = excluded.finished_at,
                error = excluded.error
            """,
            (
                run["id"],
                run["status"],
                1 if run.get("manual", True) else 0,
                run.get("items_created", 0),
                run.get("items_updated", 0),
                run.get("items_unchanged", 0),
                run.get("items_failed", 0),
                json.dumps(run.get("warnings", [])),
                run.get("started_at"),
                run.get("finished_at"),
                run.get("error"),
            ),
        )
        self.conn.commit()

    def list_runs(self, limit: int = 20) -> list[dict[str, Any]]:
        """Most recent sync runs first."""
        cur = self.conn.execute(
            """
            SELECT id, status, manual, items_created, items_updated,
                   items_unchanged, items_failed, warnings_json, started_at,
                   finished_at, error
            FROM sync_runs
            ORDER BY started_at DESC
            LIMIT ?
            """,
            (limit,)
        )
        runs = []
        for row in cur.fetchall():
            runs.append({
                "id": row[0],
                "status": row[1],
                "manual": bool(row[2]),
                "items_created": row[3],
                "items_updated": row[4],
                "items_unchanged": row[5],
                "items_failed": row[6],
                "warnings": json.loads(row[7]) if row[7] else [],
                "started_at": row[8],
                "finished_at": row[9],
                "error": row[10],
            })
        return runs


def init_db(settings: Settings | None = None) -> SettingsStore:
    """Open the settings DB, creating its directory and schema."""
    s = settings or Settings.from_env()
    db_dir = os.path.dirname(s.db_path)
    if db_dir:
        os.makedirs(db_dir, exist_ok=True)

    conn = sqlite3.connect(s.db_path, check_same_thread=False)
    conn.row_factory = sqlite3.Row

    store = SettingsStore(conn=conn)
    store.init()
    return store
