import json
import logging
import os
import sqlite3
import threading
from pathlib import Path
from typing import Iterable, Iterator, List

from .config import CrawlConfig
from .types import JobRecord, JobSink, PersistenceError, StartupError


logger = logging.getLogger(__name__)

_COLUMNS = (
    "title",
    "location",
    "salary",
    "date_posted",
    "due_date",
    "email_address",
    "application_link",
)


class SqliteJobStore:
    def __init__(self, db_path: str):
        self.db_path = db_path
        path = Path(db_path)
        if db_path != ":memory:" and path.parent:
            path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.execute("PRAGMA journal_mode=WAL;")
        self._conn.execute("PRAGMA synchronous=NORMAL;")

    def ensure_schema(self) -> None:
        with self._conn:
            self._conn.execute(
                "CREATE TABLE IF NOT EXISTS jobs ("
                " id INTEGER PRIMARY KEY AUTOINCREMENT,"
                " title TEXT NOT NULL CHECK (title <> ''),"
                " location TEXT,"
                " salary TEXT,"
                " date_posted TEXT,"
                " due_date TEXT,"
                " email_address TEXT,"
                " application_link TEXT NOT NULL CHECK (application_link <> ''),"
                " page_url TEXT,"
                " crawled_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP)"
            )
            self._conn.execute("CREATE INDEX IF NOT EXISTS idx_jobs_page ON jobs(page_url)")

    def append(self, records: Iterable[JobRecord], page_url: str = "") -> int:
        rows = [record.as_row() + (page_url,) for record in records]
        if not rows:
            return 0
        placeholders = ", ".join("?" for _ in range(len(_COLUMNS) + 1))
        try:
            # One transaction per batch: either every row lands or none do.
            with self._conn:
                self._conn.executemany(
                    f"INSERT INTO jobs({', '.join(_COLUMNS)}, page_url) VALUES ({placeholders})",
                    rows,
                )
        except sqlite3.Error as exc:
            raise PersistenceError(f"failed to store {len(rows)} jobs from {page_url or '?'}: {exc}") from exc
        return len(rows)

    def count(self) -> int:
        cur = self._conn.execute("SELECT COUNT(*) FROM jobs")
        return cur.fetchone()[0]

    def iter_records(self, batch_size: int = 1000) -> Iterator[JobRecord]:
        cur = self._conn.cursor()
        cur.execute(f"SELECT {', '.join(_COLUMNS)} FROM jobs ORDER BY id")
        try:
            while True:
                rows = cur.fetchmany(batch_size)
                if not rows:
                    break
                for row in rows:
                    yield JobRecord(*(value or "" for value in row))
        finally:
            cur.close()

    def close(self) -> None:
        self._conn.close()


class JsonlJobSink:
    def __init__(self, output_path: str) -> None:
        self.output_path = output_path
        out_path = Path(self.output_path)
        if out_path.parent:
            out_path.parent.mkdir(parents=True, exist_ok=True)
        self._fh = None

    def ensure_schema(self) -> None:
        if self._fh is None:
            # Unbuffered, so a failed batch leaves nothing pending in a buffer.
            self._fh = Path(self.output_path).open("ab", buffering=0)

    def append(self, records: Iterable[JobRecord], page_url: str = "") -> int:
        lines = []
        for record in records:
            row = record.as_dict()
            row["page_url"] = page_url
            lines.append(json.dumps(row, ensure_ascii=False) + "\n")
        if not lines:
            return 0
        data = memoryview("".join(lines).encode("utf-8"))
        start = self._fh.seek(0, os.SEEK_END)
        try:
            while data:
                written = self._fh.write(data)
                data = data[written:]
        except (OSError, ValueError) as exc:
            # Drop any partial batch so readers never see a torn line.
            self._fh.truncate(start)
            raise PersistenceError(f"failed to write {len(lines)} jobs to {self.output_path}: {exc}") from exc
        return len(lines)

    def close(self) -> None:
        if self._fh is not None and not self._fh.closed:
            self._fh.close()


class PersistenceCoordinator:
    """Sole owner of the run's sink; serializes every write through one lock."""

    def __init__(self, sink: JobSink):
        self._sink = sink
        self._lock = threading.Lock()
        self._closed = False
        self.persisted = 0
        self.rejected = 0
        self.failed_batches = 0
        try:
            self._sink.ensure_schema()
        except (sqlite3.Error, OSError) as exc:
            self._sink.close()
            raise StartupError(f"cannot prepare sink: {exc}") from exc

    def _valid(self, records: Iterable[JobRecord], page_url: str) -> List[JobRecord]:
        valid = []
        for record in records:
            missing = record.missing_required()
            if missing:
                logger.warning("Skipping job on %s missing %s", page_url or "?", ", ".join(missing))
                continue
            valid.append(record)
        return valid

    def append_records(self, records: Iterable[JobRecord], page_url: str = "") -> int:
        records = list(records)
        valid = self._valid(records, page_url)
        with self._lock:
            self.rejected += len(records) - len(valid)
            if self._closed:
                raise PersistenceError("sink is closed")
            if not valid:
                return 0
            try:
                written = self._sink.append(valid, page_url)
            except PersistenceError:
                self.failed_batches += 1
                logger.error("Persistence failed for %d jobs from %s", len(valid), page_url or "?")
                raise
            self.persisted += written
            return written

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._sink.close()
        logger.info("Sink closed after %d jobs (%d rejected, %d failed batches)",
                    self.persisted, self.rejected, self.failed_batches)


def open_sink(config: CrawlConfig) -> JobSink:
    try:
        if config.jsonl_path:
            return JsonlJobSink(config.jsonl_path)
        return SqliteJobStore(config.sqlite_path)
    except (sqlite3.Error, OSError) as exc:
        raise StartupError(f"cannot open sink: {exc}") from exc
