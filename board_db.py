"""SQLite storage for the board.

- WAL journal, foreign_keys=ON, autocommit connections (isolation_level=None)
  with explicit transaction statements
- every write runs inside ``Database.transaction()``: BEGIN IMMEDIATE takes the
  single writer lock up front, so concurrent mutations queue instead of
  interleaving their shift and placement writes
- the schema is applied idempotently by ``ensure_schema()``
"""
from __future__ import annotations

import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterable, Iterator

from errors import StoreFailure

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS projects (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    name        TEXT NOT NULL,
    description TEXT,
    start_date  TEXT,
    end_date    TEXT,
    created_at  TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%f', 'now'))
);

CREATE TABLE IF NOT EXISTS stages (
    id           INTEGER PRIMARY KEY AUTOINCREMENT,
    project_id   INTEGER NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
    name         TEXT NOT NULL,
    position     INTEGER NOT NULL,
    is_completed INTEGER NOT NULL DEFAULT 0,
    is_pending   INTEGER NOT NULL DEFAULT 0,
    task_limit   INTEGER,
    created_at   TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%f', 'now'))
);

CREATE INDEX IF NOT EXISTS ix_stages_project_position ON stages(project_id, position);

CREATE TABLE IF NOT EXISTS tasks (
    id             INTEGER PRIMARY KEY AUTOINCREMENT,
    project_id     INTEGER NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
    status_id      INTEGER NOT NULL REFERENCES stages(id) ON DELETE CASCADE,
    parent_task_id INTEGER REFERENCES tasks(id) ON DELETE CASCADE,
    title          TEXT NOT NULL,
    description    TEXT NOT NULL DEFAULT '',
    is_priority    INTEGER NOT NULL DEFAULT 0,
    position       INTEGER,
    created_at     TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%f', 'now')),
    updated_at     TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%f', 'now'))
);

CREATE INDEX IF NOT EXISTS ix_tasks_status_position ON tasks(status_id, position);
CREATE INDEX IF NOT EXISTS ix_tasks_project ON tasks(project_id);
CREATE INDEX IF NOT EXISTS ix_tasks_parent ON tasks(parent_task_id);
"""

# SQL expression for the current UTC time, matching the column defaults
NOW_SQL = "strftime('%Y-%m-%dT%H:%M:%f', 'now')"


def row_to_dict(row: sqlite3.Row | None, flags: Iterable[str] = ()) -> dict | None:
    """Convert a row to a plain dict, turning 0/1 flag columns into booleans."""
    if row is None:
        return None
    record = dict(row)
    for name in flags:
        if name in record:
            record[name] = bool(record[name])
    return record


class Database:
    def __init__(self, path: Path | str, busy_timeout: float = 5.0) -> None:
        self.path = Path(path)
        self.busy_timeout = busy_timeout

    def connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(
            self.path,
            isolation_level=None,
            timeout=self.busy_timeout,
            check_same_thread=False,
        )
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys=ON;")
        return conn

    def ensure_schema(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        conn = self.connect()
        try:
            conn.execute("PRAGMA journal_mode=WAL;")
            conn.executescript(SCHEMA)
        finally:
            conn.close()
        logger.info("SQLite schema ready at %s", self.path)

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run the enclosed writes as one unit: commit on success, roll back on any error.

        A ``sqlite3.Error`` is reported as ``StoreFailure`` after the rollback;
        board errors raised by the caller propagate unchanged.
        """
        conn = self.connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        except sqlite3.Error as exc:
            logger.error("Transaction on %s rolled back: %s", self.path, exc)
            raise StoreFailure("The store rejected the operation; nothing was changed") from exc
        finally:
            conn.close()

    @contextmanager
    def reader(self) -> Iterator[sqlite3.Connection]:
        conn = self.connect()
        try:
            yield conn
        except sqlite3.Error as exc:
            logger.error("Read from %s failed: %s", self.path, exc)
            raise StoreFailure("The store could not be read") from exc
        finally:
            conn.close()
