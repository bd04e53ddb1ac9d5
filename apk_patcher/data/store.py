"""Local data store: SQLite at ~/.apk-patcher/data.db."""

from __future__ import annotations

import json
import os
import sqlite3
import uuid
from datetime import datetime
from pathlib import Path
from typing import Optional

from apk_patcher.core.models import PatchingReport
from apk_patcher.core.report import report_to_dict

APP_DIR = os.path.join(str(Path.home()), ".apk-patcher")

_DEFAULT_DB_PATH = os.path.join(APP_DIR, "data.db")

_SCHEMA = """\
CREATE TABLE IF NOT EXISTS config (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS runs (
    id TEXT PRIMARY KEY,
    created_at TEXT NOT NULL,
    input_path TEXT NOT NULL,
    output_path TEXT,
    package_name TEXT,
    package_version TEXT,
    success INTEGER NOT NULL,
    applied_count INTEGER DEFAULT 0,
    failed_count INTEGER DEFAULT 0,
    report TEXT NOT NULL
);

INSERT OR IGNORE INTO config (key, value) VALUES ('signer', 'apk-patcher');
INSERT OR IGNORE INTO config (key, value) VALUES ('keystore-entry-alias', 'apk-patcher key');
INSERT OR IGNORE INTO config (key, value) VALUES ('purge', 'false');
"""


class DataStore:
    """Local SQLite data store."""

    def __init__(self, db_path: Optional[str] = None):
        self.db_path = db_path or _DEFAULT_DB_PATH
        os.makedirs(os.path.dirname(self.db_path), exist_ok=True)
        self._conn: Optional[sqlite3.Connection] = None
        self._init_db()

    def _get_conn(self) -> sqlite3.Connection:
        if self._conn is None:
            self._conn = sqlite3.connect(self.db_path)
            self._conn.row_factory = sqlite3.Row
        return self._conn

    def _init_db(self) -> None:
        conn = self._get_conn()
        conn.executescript(_SCHEMA)
        conn.commit()

    def close(self) -> None:
        if self._conn:
            self._conn.close()
            self._conn = None

    # ── Config ───────────────────────────────────────────────────────

    def get_config(self, key: str) -> Optional[str]:
        conn = self._get_conn()
        row = conn.execute(
            "SELECT value FROM config WHERE key = ?", (key,)
        ).fetchone()
        return row["value"] if row else None

    def set_config(self, key: str, value: str) -> None:
        conn = self._get_conn()
        conn.execute(
            "INSERT OR REPLACE INTO config (key, value) VALUES (?, ?)",
            (key, value),
        )
        conn.commit()

    def unset_config(self, key: str) -> None:
        conn = self._get_conn()
        conn.execute("DELETE FROM config WHERE key = ?", (key,))
        conn.commit()

    # ── Runs ─────────────────────────────────────────────────────────

    def record_run(
        self,
        report: PatchingReport,
        input_path: str,
        output_path: Optional[str] = None,
    ) -> str:
        run_id = str(uuid.uuid4())
        conn = self._get_conn()
        conn.execute(
            """INSERT INTO runs
               (id, created_at, input_path, output_path, package_name,
                package_version, success, applied_count, failed_count, report)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                run_id,
                datetime.now().isoformat(),
                input_path,
                output_path,
                report.package_name,
                report.package_version,
                1 if report.success else 0,
                len(report.applied_patches),
                len(report.failed_patches),
                json.dumps(report_to_dict(report)),
            ),
        )
        conn.commit()
        return run_id

    def get_runs(self, limit: int = 20) -> list[dict]:
        conn = self._get_conn()
        rows = conn.execute(
            "SELECT * FROM runs ORDER BY created_at DESC LIMIT ?", (limit,)
        ).fetchall()
        result = []
        for row in rows:
            d = dict(row)
            d["success"] = bool(d["success"])
            d["report"] = json.loads(d["report"])
            result.append(d)
        return result
