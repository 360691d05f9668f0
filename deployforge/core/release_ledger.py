"""Append-only, hash-chained Release Ledger backed by SQLite.

Design:
- Append-only: ``append()`` is the only write; no update, no delete.
- Hash-chained per target: each record carries the hash of the previous
  record for the same target key.
- ``history()`` is lazy and restartable: each iteration pages through the
  table newest-first.
- WAL journal mode for concurrent readers; writes serialize on a lock so
  unrelated targets can append from different threads.
"""

from __future__ import annotations

import sqlite3
import threading
from collections.abc import Iterator
from pathlib import Path

from deployforge.core.hasher import compute_record_hash
from deployforge.errors import LedgerIntegrityError
from deployforge.models.deployments import DeploymentStatus
from deployforge.models.ledger import ReleaseRecord


# ---------------------------------------------------------------------------
# DDL
# ---------------------------------------------------------------------------

_CREATE_LEDGER = """
CREATE TABLE IF NOT EXISTS release_ledger (
    id                   INTEGER PRIMARY KEY AUTOINCREMENT,
    record_id            TEXT NOT NULL UNIQUE,
    target_key           TEXT NOT NULL,
    kind                 TEXT NOT NULL,
    request_id           TEXT NOT NULL,
    status               TEXT NOT NULL,
    final_state          TEXT NOT NULL,
    version              INTEGER,
    previous_version     INTEGER,
    attempted_version    INTEGER,
    artifact_hash        TEXT NOT NULL DEFAULT '',
    stored_reference     TEXT NOT NULL DEFAULT '',
    values_hash          TEXT NOT NULL DEFAULT '',
    error                TEXT,
    error_kind           TEXT,
    actor                TEXT NOT NULL DEFAULT '',
    duration_seconds     REAL NOT NULL DEFAULT 0,
    timestamp_utc        TEXT NOT NULL,
    previous_record_hash TEXT NOT NULL DEFAULT '',
    record_hash          TEXT NOT NULL UNIQUE
);
"""

_CREATE_IDX_TARGET = """
CREATE INDEX IF NOT EXISTS idx_target_key ON release_ledger(target_key, id);
"""

_COLUMNS = (
    "record_id", "target_key", "kind", "request_id", "status", "final_state",
    "version", "previous_version", "attempted_version", "artifact_hash",
    "stored_reference", "values_hash", "error", "error_kind", "actor",
    "duration_seconds", "timestamp_utc", "previous_record_hash", "record_hash",
)

_SELECT = f"SELECT id, {', '.join(_COLUMNS)} FROM release_ledger"

# Statuses after which the record's version is what is running.
_RUNNING_STATUSES = (DeploymentStatus.SUCCEEDED.value, DeploymentStatus.ROLLED_BACK.value)


class ReleaseHistory:
    """Lazy, finite, restartable newest-first view of one target's records."""

    def __init__(self, ledger: ReleaseLedger, target_key: str, page_size: int = 50) -> None:
        self._ledger = ledger
        self.target_key = target_key
        self._page_size = page_size

    def __iter__(self) -> Iterator[ReleaseRecord]:
        before_id: int | None = None
        while True:
            rows = self._ledger._page(self.target_key, before_id, self._page_size)
            if not rows:
                return
            for row in rows:
                yield ReleaseLedger._row_to_record(row)
            before_id = rows[-1][0]


class ReleaseLedger:
    """Append-only Release Ledger.

    Parameters
    ----------
    db_path:
        Path to the SQLite database file.  Created if it does not exist.
    """

    def __init__(self, db_path: Path) -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._write_lock = threading.Lock()
        self._init_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self._db_path), check_same_thread=False, timeout=30)
        conn.execute("PRAGMA journal_mode=WAL")
        return conn

    def _init_schema(self) -> None:
        with self._connect() as conn:
            conn.execute(_CREATE_LEDGER)
            conn.execute(_CREATE_IDX_TARGET)
            conn.commit()

    # ------------------------------------------------------------------
    # Core: append-only write
    # ------------------------------------------------------------------

    def append(self, record: ReleaseRecord) -> ReleaseRecord:
        """Append a record, sealing it into the target's hash chain.

        Returns the record with ``previous_record_hash`` and ``record_hash``
        set.  This is the ONLY write method.
        """
        with self._write_lock, self._connect() as conn:
            row = conn.execute(
                "SELECT record_hash FROM release_ledger WHERE target_key = ? "
                "ORDER BY id DESC LIMIT 1",
                (record.target_key,),
            ).fetchone()
            previous_hash = row[0] if row else ""

            record_dict = record.model_dump(mode="json")
            record_dict["previous_record_hash"] = previous_hash
            record_dict["record_hash"] = ""
            sealed = record.model_copy(
                update={
                    "previous_record_hash": previous_hash,
                    "record_hash": compute_record_hash(record_dict),
                }
            )
            conn.execute(
                f"INSERT INTO release_ledger ({', '.join(_COLUMNS)}) "
                f"VALUES ({', '.join('?' for _ in _COLUMNS)})",
                self._record_to_row(sealed),
            )
            conn.commit()
        return sealed

    # ------------------------------------------------------------------
    # Query methods (read-only)
    # ------------------------------------------------------------------

    def history(self, target_key: str) -> ReleaseHistory:
        """Return the target's records, newest first."""
        return ReleaseHistory(self, target_key)

    def latest(self, target_key: str) -> ReleaseRecord | None:
        """Return the most recent record for a target, or None."""
        rows = self._page(target_key, None, 1)
        return self._row_to_record(rows[0]) if rows else None

    def running_version(self, target_key: str) -> int | None:
        """Version currently running according to the ledger.

        This is the version of the newest succeeded or rolled-back record;
        failed attempts are skipped since they do not establish a known
        running version.
        """
        for record in self.history(target_key):
            if record.status.value in _RUNNING_STATUSES and record.version is not None:
                return record.version
        return None

    def targets(self) -> list[str]:
        """Return all target keys with at least one record."""
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT target_key, MAX(id) AS last_id FROM release_ledger "
                "GROUP BY target_key ORDER BY last_id DESC"
            ).fetchall()
        return [row[0] for row in rows]

    def _page(self, target_key: str, before_id: int | None, limit: int) -> list[tuple]:
        with self._connect() as conn:
            if before_id is None:
                return conn.execute(
                    f"{_SELECT} WHERE target_key = ? ORDER BY id DESC LIMIT ?",
                    (target_key, limit),
                ).fetchall()
            return conn.execute(
                f"{_SELECT} WHERE target_key = ? AND id < ? ORDER BY id DESC LIMIT ?",
                (target_key, before_id, limit),
            ).fetchall()

    # ------------------------------------------------------------------
    # Chain verification
    # ------------------------------------------------------------------

    def verify_chain(self, target_key: str) -> bool:
        """Verify the hash chain for a target, oldest record first.

        Returns True if valid; raises ``LedgerIntegrityError`` otherwise.
        """
        records = list(self.history(target_key))
        records.reverse()
        prev_hash = ""
        for record in records:
            if record.previous_record_hash != prev_hash:
                raise LedgerIntegrityError(
                    f"Chain broken at record {record.record_id}: "
                    f"expected previous_hash={prev_hash!r}, "
                    f"got {record.previous_record_hash!r}"
                )
            expected = compute_record_hash(record.model_dump(mode="json"))
            if record.record_hash != expected:
                raise LedgerIntegrityError(
                    f"Tampered record {record.record_id}: "
                    f"expected hash={expected!r}, got {record.record_hash!r}"
                )
            prev_hash = record.record_hash
        return True

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _record_to_row(record: ReleaseRecord) -> tuple:
        return (
            record.record_id,
            record.target_key,
            record.kind.value,
            record.request_id,
            record.status.value,
            record.final_state,
            record.version,
            record.previous_version,
            record.attempted_version,
            record.artifact_hash,
            record.stored_reference,
            record.values_hash,
            record.error,
            record.error_kind,
            record.actor,
            record.duration_seconds,
            record.timestamp_utc.isoformat(),
            record.previous_record_hash,
            record.record_hash,
        )

    @staticmethod
    def _row_to_record(row: tuple) -> ReleaseRecord:
        return ReleaseRecord(**dict(zip(_COLUMNS, row[1:])))
