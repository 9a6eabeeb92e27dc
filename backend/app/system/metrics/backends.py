# backend/app/system/metrics/backends.py
from __future__ import annotations

import bisect
import json
import logging
import os
import sqlite3
import tempfile
import threading
from datetime import date
from pathlib import Path
from typing import Any, Dict, List, Protocol

log = logging.getLogger("nexa.metrics")

# Errors a backend may raise that the store treats as persistence failures.
PERSISTENCE_ERRORS = (OSError, sqlite3.Error, ValueError, TypeError)

Entry = Dict[str, Any]


def _entry_ts(entry: Entry) -> int:
    try:
        return int(entry.get("timestamp", 0))
    except (TypeError, ValueError):
        return 0


class PartitionBackend(Protocol):
    """Day-partitioned append log. Implementations are synchronous and run off the event loop."""

    def load(self, day: date) -> List[Entry]: ...

    def append(self, day: date, entry: Entry, limit: int) -> int: ...

    def days(self) -> List[date]: ...

    def delete(self, day: date) -> bool: ...


class JsonFileBackend:
    """
    One JSON array per UTC day: <directory>/metrics-YYYY-MM-DD.json.
    Writes go to a temp file in the same directory and are renamed into place.
    """

    PREFIX = "metrics-"
    SUFFIX = ".json"

    def __init__(self, directory: str | Path) -> None:
        self.directory = Path(directory)

    def _path(self, day: date) -> Path:
        return self.directory / f"{self.PREFIX}{day.isoformat()}{self.SUFFIX}"

    def load(self, day: date) -> List[Entry]:
        path = self._path(day)
        if not path.exists():
            return []
        data = json.loads(path.read_text(encoding="utf-8"))
        if not isinstance(data, list):
            raise ValueError(f"{path.name} does not hold a JSON array")
        return [e for e in data if isinstance(e, dict)]

    def append(self, day: date, entry: Entry, limit: int) -> int:
        self.directory.mkdir(parents=True, exist_ok=True)
        try:
            entries = self.load(day)
        except ValueError:
            # unreadable partition; start over rather than failing every append for the day
            log.exception("discarding corrupt metrics partition %s", day.isoformat())
            entries = []

        bisect.insort_right(entries, entry, key=_entry_ts)
        if len(entries) > limit:
            del entries[: len(entries) - limit]

        self._write_atomic(self._path(day), entries)
        return len(entries)

    def _write_atomic(self, path: Path, entries: List[Entry]) -> None:
        fd, tmp = tempfile.mkstemp(dir=str(path.parent), prefix=".metrics-", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(entries, fh, separators=(",", ":"))
            os.replace(tmp, path)
        except BaseException:
            try:
                os.unlink(tmp)
            except OSError:
                pass
            raise

    def days(self) -> List[date]:
        if not self.directory.exists():
            return []
        out: List[date] = []
        for p in self.directory.glob(f"{self.PREFIX}*{self.SUFFIX}"):
            stem = p.name[len(self.PREFIX): -len(self.SUFFIX)]
            try:
                out.append(date.fromisoformat(stem))
            except ValueError:
                continue
        return sorted(out)

    def delete(self, day: date) -> bool:
        try:
            self._path(day).unlink()
        except FileNotFoundError:
            return False
        return True


DDL = """
CREATE TABLE IF NOT EXISTS metrics_history (
  seq INTEGER PRIMARY KEY AUTOINCREMENT,
  day TEXT NOT NULL,
  ts INTEGER NOT NULL,
  snapshot_json TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_metrics_history_day_ts ON metrics_history(day, ts, seq);
"""


class SqliteBackend:
    """Single-table SQLite store; a partition is the set of rows sharing a `day`."""

    def __init__(self, path: str | Path) -> None:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        self.path = path
        self.conn = sqlite3.connect(str(path), check_same_thread=False)
        self.conn.execute("PRAGMA journal_mode=WAL;")
        self.conn.execute("PRAGMA synchronous=NORMAL;")
        self.conn.executescript(DDL)
        self.conn.commit()
        self._lock = threading.Lock()

    def close(self) -> None:
        with self._lock:
            self.conn.close()

    def load(self, day: date) -> List[Entry]:
        with self._lock:
            rows = self.conn.execute(
                "SELECT snapshot_json FROM metrics_history WHERE day = ? ORDER BY ts ASC, seq ASC",
                (day.isoformat(),),
            ).fetchall()
        out: List[Entry] = []
        for (raw,) in rows:
            try:
                out.append(json.loads(raw))
            except ValueError:
                continue
        return out

    def append(self, day: date, entry: Entry, limit: int) -> int:
        key = day.isoformat()
        with self._lock, self.conn:
            self.conn.execute(
                "INSERT INTO metrics_history(day, ts, snapshot_json) VALUES (?, ?, ?)",
                (key, _entry_ts(entry), json.dumps(entry, separators=(",", ":"))),
            )
            count = self.conn.execute(
                "SELECT COUNT(*) FROM metrics_history WHERE day = ?", (key,)
            ).fetchone()[0]
            if count > limit:
                self.conn.execute(
                    """
                    DELETE FROM metrics_history WHERE seq IN (
                      SELECT seq FROM metrics_history WHERE day = ?
                      ORDER BY ts ASC, seq ASC LIMIT ?
                    )
                    """,
                    (key, count - limit),
                )
                count = limit
        return int(count)

    def days(self) -> List[date]:
        with self._lock:
            rows = self.conn.execute("SELECT DISTINCT day FROM metrics_history").fetchall()
        out: List[date] = []
        for (raw,) in rows:
            try:
                out.append(date.fromisoformat(raw))
            except ValueError:
                continue
        return sorted(out)

    def delete(self, day: date) -> bool:
        with self._lock, self.conn:
            cur = self.conn.execute("DELETE FROM metrics_history WHERE day = ?", (day.isoformat(),))
        return cur.rowcount > 0
