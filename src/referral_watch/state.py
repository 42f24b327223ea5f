from __future__ import annotations

import logging
import shutil
import sqlite3
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, Optional

from .models import CandidateReferral, NotificationRecord, ReferralRecord


logger = logging.getLogger(__name__)

_REFERRAL_COLUMNS = (
    "id, member_name, member_id, service_name, region_name, county, plan, "
    "preferred_start_date, status, request_on, source, notified, created_at"
)


@dataclass(frozen=True)
class RunRecord:
    id: int
    started_at: str
    finished_at: Optional[str]
    ok: Optional[bool]
    message: Optional[str]
    candidates: Optional[int]
    new_records: Optional[int]


class StateStore:
    """
    Durable store for referrals, their notification audit trail, backup codes and the run ledger.

    `referrals` is UNIQUE on (member_id, request_on): inserting the same natural key twice is a
    no-op, which is what makes a re-run of an interrupted cycle safe.
    `notifications` is append-only (no update/delete methods exist).

    The connection is shared between the worker thread and the control surface, so every
    statement runs under one lock.
    """

    def __init__(self, db_path: str) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._backup_path = self.db_path.with_name(self.db_path.name + ".bak")
        self._lock = threading.RLock()

        # Self-heal on corrupted/missing DB: restore from backup when possible.
        self._conn = self._open_or_restore()
        self._conn.execute("PRAGMA journal_mode=WAL;")
        self._ensure_schema()

        # Ensure we have *some* backup available for next time.
        self._maybe_backup(if_missing=True)

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(self.db_path, check_same_thread=False)

    def _open_or_restore(self) -> sqlite3.Connection:
        """
        Open the state DB. If it looks corrupted, move it aside and restore from the last-known-good backup.

        Losing this DB means already-notified referrals newer than the watermark could be notified again
        after a restart, so restoring is preferred over starting fresh.
        """
        if self.db_path.exists():
            try:
                conn = self._connect()
                if self._connection_is_healthy(conn):
                    return conn
                conn.close()
                raise sqlite3.DatabaseError("SQLite quick_check failed")
            except Exception as e:
                logger.warning("State DB appears corrupted/unreadable; attempting restore from backup. (%s)", e)
                self._quarantine_db_files()

                if self._backup_path.exists():
                    try:
                        shutil.copy2(self._backup_path, self.db_path)
                        conn = self._connect()
                        if self._connection_is_healthy(conn):
                            logger.warning("Restored state DB from backup: %s", self._backup_path)
                            return conn
                        conn.close()
                    except Exception:
                        logger.warning("Failed to restore state DB from backup; creating a fresh DB.", exc_info=True)
                else:
                    logger.warning("No state DB backup found; creating a fresh DB.")

        # Fresh DB (either first run or restore failed).
        return self._connect()

    def _connection_is_healthy(self, conn: sqlite3.Connection) -> bool:
        try:
            # Touch schema_version to fail fast on "file is not a database".
            _ = conn.execute("PRAGMA schema_version;").fetchone()
            row = conn.execute("PRAGMA quick_check;").fetchone()
            return bool(row and row[0] == "ok")
        except Exception:
            return False

    def _quarantine_db_files(self) -> None:
        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
        for p in (self.db_path, Path(str(self.db_path) + "-wal"), Path(str(self.db_path) + "-shm")):
            try:
                if p.exists():
                    p.replace(p.with_name(p.name + f".corrupt-{stamp}"))
            except Exception:
                logger.debug("Failed to quarantine path=%s", p, exc_info=True)

    def _maybe_backup(self, *, if_missing: bool) -> None:
        if if_missing and self._backup_path.exists():
            return

        try:
            self.backup()
        except Exception:
            logger.debug("Failed to write state DB backup.", exc_info=True)

    def backup(self) -> None:
        """
        Write/refresh a last-known-good backup of the state DB at `<db_path>.bak`.
        """
        out = self._backup_path
        out.parent.mkdir(parents=True, exist_ok=True)
        tmp = out.with_name(out.name + ".tmp")
        if tmp.exists():
            tmp.unlink()

        # Use SQLite online backup API for a consistent snapshot.
        dst = sqlite3.connect(tmp)
        try:
            with self._lock:
                self._conn.backup(dst)
            dst.commit()
        finally:
            dst.close()

        tmp.replace(out)

    def _ensure_schema(self) -> None:
        with self._lock:
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS referrals (
                  id INTEGER PRIMARY KEY AUTOINCREMENT,
                  member_name TEXT NOT NULL DEFAULT '',
                  member_id TEXT NOT NULL,
                  service_name TEXT NOT NULL DEFAULT '',
                  region_name TEXT NOT NULL DEFAULT '',
                  county TEXT NOT NULL DEFAULT '',
                  plan TEXT NOT NULL DEFAULT '',
                  preferred_start_date TEXT NOT NULL DEFAULT '',
                  status TEXT NOT NULL DEFAULT '',
                  request_on TEXT NOT NULL,
                  source TEXT NOT NULL DEFAULT 'api',
                  notified INTEGER NOT NULL DEFAULT 0,
                  created_at TEXT NOT NULL,
                  UNIQUE (member_id, request_on)
                );
                """
            )
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS notifications (
                  id INTEGER PRIMARY KEY AUTOINCREMENT,
                  referral_id INTEGER NOT NULL REFERENCES referrals(id),
                  member_name TEXT NOT NULL,
                  member_id TEXT NOT NULL,
                  message TEXT NOT NULL,
                  created_at TEXT NOT NULL
                );
                """
            )
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS backup_codes (
                  code TEXT PRIMARY KEY,
                  is_used INTEGER NOT NULL DEFAULT 0,
                  created_at TEXT NOT NULL,
                  used_at TEXT
                );
                """
            )
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS runs (
                  id INTEGER PRIMARY KEY AUTOINCREMENT,
                  started_at TEXT NOT NULL,
                  finished_at TEXT,
                  ok INTEGER,
                  message TEXT,
                  candidates INTEGER,
                  new_records INTEGER
                );
                """
            )
            self._conn.commit()

    # --- referrals ---------------------------------------------------------------------------

    def _row_to_referral(self, row: tuple) -> ReferralRecord:
        keys = [c.strip() for c in _REFERRAL_COLUMNS.split(",")]
        data = dict(zip(keys, row))
        data["notified"] = bool(data["notified"])
        return ReferralRecord.model_validate(data)

    def find_referral(self, member_id: str, request_on: str) -> Optional[ReferralRecord]:
        with self._lock:
            row = self._conn.execute(
                f"SELECT {_REFERRAL_COLUMNS} FROM referrals WHERE member_id = ? AND request_on = ? LIMIT 1;",
                (member_id, request_on),
            ).fetchone()
        return self._row_to_referral(row) if row else None

    def get_referral(self, referral_id: int) -> Optional[ReferralRecord]:
        with self._lock:
            row = self._conn.execute(
                f"SELECT {_REFERRAL_COLUMNS} FROM referrals WHERE id = ?;",
                (referral_id,),
            ).fetchone()
        return self._row_to_referral(row) if row else None

    def insert_referral(self, candidate: CandidateReferral, *, source: str = "api") -> Optional[ReferralRecord]:
        """
        Insert a referral with `notified=false`.

        Returns the stored record, or None when the natural key already exists (another path or an
        earlier interrupted cycle got there first).
        """
        now = datetime.now(timezone.utc).isoformat()
        with self._lock:
            cur = self._conn.execute(
                """
                INSERT INTO referrals(
                  member_name, member_id, service_name, region_name, county, plan,
                  preferred_start_date, status, request_on, source, notified, created_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 0, ?)
                ON CONFLICT(member_id, request_on) DO NOTHING;
                """,
                (
                    candidate.member_name,
                    candidate.member_id,
                    candidate.service_name,
                    candidate.region_name,
                    candidate.county,
                    candidate.plan,
                    candidate.preferred_start_date,
                    candidate.status,
                    candidate.request_on,
                    source,
                    now,
                ),
            )
            self._conn.commit()
            if cur.rowcount <= 0:
                return None
            referral_id = int(cur.lastrowid)
        return self.get_referral(referral_id)

    def mark_notified(self, referral_id: int) -> None:
        with self._lock:
            self._conn.execute("UPDATE referrals SET notified = 1 WHERE id = ?;", (referral_id,))
            self._conn.commit()

    def list_referrals(self, *, notified: Optional[bool] = None) -> list[ReferralRecord]:
        sql = f"SELECT {_REFERRAL_COLUMNS} FROM referrals"
        params: tuple = ()
        if notified is not None:
            sql += " WHERE notified = ?"
            params = (1 if notified else 0,)
        with self._lock:
            rows = self._conn.execute(sql + " ORDER BY id;", params).fetchall()
        return [self._row_to_referral(r) for r in rows]

    def count_referrals(self) -> int:
        with self._lock:
            row = self._conn.execute("SELECT COUNT(*) FROM referrals;").fetchone()
        return int(row[0])

    # --- notifications (append-only) --------------------------------------------------------

    def add_notification(self, referral: ReferralRecord, message: str) -> NotificationRecord:
        now = datetime.now(timezone.utc).isoformat()
        with self._lock:
            cur = self._conn.execute(
                """
                INSERT INTO notifications(referral_id, member_name, member_id, message, created_at)
                VALUES (?, ?, ?, ?, ?);
                """,
                (referral.id, referral.member_name, referral.member_id, message, now),
            )
            self._conn.commit()
            notification_id = int(cur.lastrowid)
        return NotificationRecord(
            id=notification_id,
            referral_id=referral.id,
            member_name=referral.member_name,
            member_id=referral.member_id,
            message=message,
            created_at=datetime.fromisoformat(now),
        )

    def list_notifications(self, referral_id: Optional[int] = None) -> list[NotificationRecord]:
        sql = "SELECT id, referral_id, member_name, member_id, message, created_at FROM notifications"
        params: tuple = ()
        if referral_id is not None:
            sql += " WHERE referral_id = ?"
            params = (referral_id,)
        with self._lock:
            rows = self._conn.execute(sql + " ORDER BY id;", params).fetchall()
        return [
            NotificationRecord(
                id=r[0], referral_id=r[1], member_name=r[2], member_id=r[3], message=r[4], created_at=r[5]
            )
            for r in rows
        ]

    # --- backup codes ------------------------------------------------------------------------

    def add_backup_codes(self, codes: Iterable[str]) -> int:
        """Store one-time backup codes; already-known codes are ignored. Returns how many were added."""
        now = datetime.now(timezone.utc).isoformat()
        added = 0
        with self._lock:
            for raw in codes:
                code = (raw or "").strip()
                if not code:
                    continue
                cur = self._conn.execute(
                    "INSERT INTO backup_codes(code, is_used, created_at) VALUES (?, 0, ?) ON CONFLICT(code) DO NOTHING;",
                    (code, now),
                )
                added += max(cur.rowcount, 0)
            self._conn.commit()
        return added

    def next_backup_code(self) -> Optional[str]:
        with self._lock:
            row = self._conn.execute(
                "SELECT code FROM backup_codes WHERE is_used = 0 ORDER BY created_at, rowid LIMIT 1;"
            ).fetchone()
        return row[0] if row else None

    def mark_backup_code_used(self, code: str) -> None:
        now = datetime.now(timezone.utc).isoformat()
        with self._lock:
            self._conn.execute(
                "UPDATE backup_codes SET is_used = 1, used_at = ? WHERE code = ?;",
                (now, code),
            )
            self._conn.commit()

    def count_unused_backup_codes(self) -> int:
        with self._lock:
            row = self._conn.execute("SELECT COUNT(*) FROM backup_codes WHERE is_used = 0;").fetchone()
        return int(row[0])

    # --- run ledger --------------------------------------------------------------------------

    def record_run_start(self) -> int:
        now = datetime.now(timezone.utc).isoformat()
        with self._lock:
            cur = self._conn.execute("INSERT INTO runs(started_at) VALUES (?);", (now,))
            self._conn.commit()
        return int(cur.lastrowid)

    def record_run_finish(
        self,
        run_id: int,
        *,
        ok: bool,
        message: Optional[str] = None,
        candidates: Optional[int] = None,
        new_records: Optional[int] = None,
    ) -> None:
        now = datetime.now(timezone.utc).isoformat()
        with self._lock:
            self._conn.execute(
                "UPDATE runs SET finished_at = ?, ok = ?, message = ?, candidates = ?, new_records = ? WHERE id = ?;",
                (now, 1 if ok else 0, message, candidates, new_records, run_id),
            )
            self._conn.commit()

        # Only refresh backups after a cycle that persisted something (avoid snapshotting every 3 minutes).
        if ok and new_records:
            self._maybe_backup(if_missing=False)

    def last_runs(self, limit: int = 10) -> list[RunRecord]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT id, started_at, finished_at, ok, message, candidates, new_records "
                "FROM runs ORDER BY id DESC LIMIT ?;",
                (limit,),
            ).fetchall()
        return [
            RunRecord(
                id=r[0],
                started_at=r[1],
                finished_at=r[2],
                ok=None if r[3] is None else bool(r[3]),
                message=r[4],
                candidates=r[5],
                new_records=r[6],
            )
            for r in rows
        ]
