"""SQLite-backed state store: analysis records, claim locks, cursor tracking.

Uses WAL mode + NORMAL synchronous for write throughput while retaining
crash safety.  One connection is shared by every batch worker; all access
goes through ``self._lock`` so the connection is never used by two threads
at once.

Records are stored as JSON (``AnalysisRecord.to_dict()``) with a few
indexed columns (status, total cost, timestamps) for listing and pruning.
"""

from __future__ import annotations

import json
import logging
import os
import sqlite3
import threading
import time
from dataclasses import dataclass
from typing import Iterable, List, Optional, Set

from .common_types import AnalysisRecord, AnalysisStatus, utcnow
from .costs import verify_costs

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS kv (
  k TEXT PRIMARY KEY,
  v TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS analyses (
  news_id TEXT PRIMARY KEY,
  status TEXT NOT NULL,
  total_cost TEXT NOT NULL,
  payload TEXT NOT NULL,
  created_ts REAL NOT NULL,
  updated_ts REAL NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_analyses_status ON analyses(status, updated_ts);
CREATE INDEX IF NOT EXISTS idx_analyses_created ON analyses(created_ts);

CREATE TABLE IF NOT EXISTS claims (
  news_id TEXT PRIMARY KEY,
  owner TEXT NOT NULL,
  claimed_ts REAL NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_claims_ts ON claims(claimed_ts);
"""


@dataclass(frozen=True)
class ClaimResult:
    """Outcome of ``try_claim``.  Exactly one of the flags is True."""

    claimed: bool = False
    already_exists: bool = False
    in_flight: bool = False
    existing_record: Optional[AnalysisRecord] = None
    holder: Optional[str] = None
    retry_after_s: float = 0.0


class SqliteStore:
    """Analysis records + claim locks + key-value store backed by SQLite."""

    def __init__(self, path: str, *, claim_ttl_s: float = 600.0) -> None:
        if path != ":memory:":
            parent = os.path.dirname(os.path.abspath(path))
            os.makedirs(parent, exist_ok=True)
        self.path = path
        self.claim_ttl_s = claim_ttl_s
        self._lock = threading.RLock()
        self.conn = sqlite3.connect(path, isolation_level=None, check_same_thread=False)
        self.conn.execute("PRAGMA journal_mode=WAL;")
        self.conn.execute("PRAGMA synchronous=NORMAL;")
        self.conn.execute("PRAGMA busy_timeout=5000;")
        self.conn.executescript(SCHEMA)

    # ── Key-value ───────────────────────────────────────────────

    def get_kv(self, k: str) -> Optional[str]:
        with self._lock:
            row = self.conn.execute("SELECT v FROM kv WHERE k=?", (k,)).fetchone()
        return row[0] if row else None

    def set_kv(self, k: str, v: str) -> None:
        with self._lock:
            self.conn.execute(
                "INSERT INTO kv(k,v) VALUES(?,?) ON CONFLICT(k) DO UPDATE SET v=excluded.v",
                (k, v),
            )

    # ── Claims ──────────────────────────────────────────────────

    def try_claim(
        self, news_id: str, owner: str, *, now: float | None = None, replace: bool = False,
    ) -> ClaimResult:
        """Atomically check for an existing record and take the claim.

        Runs inside one IMMEDIATE transaction so two workers can never both
        see "no record, no claim" for the same id.  A claim older than
        ``claim_ttl_s`` is considered abandoned and is taken over.  With
        ``replace=True`` an existing record does not stop the claim (used
        when re-analysing a stored item).
        """
        now = time.time() if now is None else now
        with self._lock:
            self.conn.execute("BEGIN IMMEDIATE")
            try:
                row = self.conn.execute(
                    "SELECT payload FROM analyses WHERE news_id=?", (news_id,)
                ).fetchone()
                if row is not None and not replace:
                    self.conn.execute("COMMIT")
                    return ClaimResult(
                        already_exists=True,
                        existing_record=AnalysisRecord.from_dict(json.loads(row[0])),
                    )
                claim = self.conn.execute(
                    "SELECT owner, claimed_ts FROM claims WHERE news_id=?", (news_id,)
                ).fetchone()
                if claim is not None and claim[0] != owner:
                    age = now - claim[1]
                    if age < self.claim_ttl_s:
                        self.conn.execute("COMMIT")
                        return ClaimResult(
                            in_flight=True,
                            holder=claim[0],
                            retry_after_s=max(0.0, self.claim_ttl_s - age),
                        )
                    logger.warning(
                        "Taking over stale claim on %s held by %s (%.0fs old)",
                        news_id, claim[0], age,
                    )
                self.conn.execute(
                    "INSERT INTO claims(news_id, owner, claimed_ts) VALUES(?,?,?) "
                    "ON CONFLICT(news_id) DO UPDATE SET owner=excluded.owner, "
                    "claimed_ts=excluded.claimed_ts",
                    (news_id, owner, now),
                )
                self.conn.execute("COMMIT")
            except BaseException:
                self.conn.execute("ROLLBACK")
                raise
        return ClaimResult(claimed=True, holder=owner)

    def release_claim(self, news_id: str, owner: str) -> None:
        """Drop *owner*'s claim on *news_id* (no-op if held by someone else)."""
        with self._lock:
            self.conn.execute(
                "DELETE FROM claims WHERE news_id=? AND owner=?", (news_id, owner)
            )

    # ── Records ─────────────────────────────────────────────────

    def upsert(self, record: AnalysisRecord) -> bool:
        """Insert or replace the record for ``record.news_id``.

        Returns True if a new row was inserted, False if an existing row
        was updated.  Refuses records whose cost total diverges from the
        sum of their lines.
        """
        verify_costs(record.costs)
        record.updated_at = utcnow()
        payload = json.dumps(record.to_dict(), ensure_ascii=False)
        created_ts = record.created_at.timestamp()
        updated_ts = record.updated_at.timestamp()
        with self._lock:
            self.conn.execute("BEGIN IMMEDIATE")
            try:
                existed = self.conn.execute(
                    "SELECT 1 FROM analyses WHERE news_id=?", (record.news_id,)
                ).fetchone() is not None
                self.conn.execute(
                    "INSERT INTO analyses(news_id, status, total_cost, payload, created_ts, updated_ts) "
                    "VALUES(?,?,?,?,?,?) "
                    "ON CONFLICT(news_id) DO UPDATE SET status=excluded.status, "
                    "total_cost=excluded.total_cost, payload=excluded.payload, "
                    "updated_ts=excluded.updated_ts",
                    (
                        record.news_id,
                        record.status.value,
                        str(record.costs.total),
                        payload,
                        created_ts,
                        updated_ts,
                    ),
                )
                self.conn.execute("DELETE FROM claims WHERE news_id=?", (record.news_id,))
                self.conn.execute("COMMIT")
            except BaseException:
                self.conn.execute("ROLLBACK")
                raise
        return not existed

    def get(self, news_id: str) -> Optional[AnalysisRecord]:
        with self._lock:
            row = self.conn.execute(
                "SELECT payload FROM analyses WHERE news_id=?", (news_id,)
            ).fetchone()
        return AnalysisRecord.from_dict(json.loads(row[0])) if row else None

    def exists(self, news_id: str) -> bool:
        with self._lock:
            row = self.conn.execute(
                "SELECT 1 FROM analyses WHERE news_id=?", (news_id,)
            ).fetchone()
        return row is not None

    def existing_ids(self, ids: Iterable[str]) -> Set[str]:
        """Return the subset of *ids* that already have a stored record."""
        wanted = list(dict.fromkeys(ids))
        found: Set[str] = set()
        with self._lock:
            # SQLite caps bound parameters; chunk well below the limit.
            for i in range(0, len(wanted), 500):
                chunk = wanted[i:i + 500]
                marks = ",".join("?" * len(chunk))
                rows = self.conn.execute(
                    f"SELECT news_id FROM analyses WHERE news_id IN ({marks})", chunk
                ).fetchall()
                found.update(r[0] for r in rows)
        return found

    def list_by_status(self, status: AnalysisStatus, limit: int = 50) -> List[AnalysisRecord]:
        """Most recently updated records with *status*."""
        with self._lock:
            rows = self.conn.execute(
                "SELECT payload FROM analyses WHERE status=? ORDER BY updated_ts DESC LIMIT ?",
                (status.value, int(limit)),
            ).fetchall()
        return [AnalysisRecord.from_dict(json.loads(r[0])) for r in rows]

    def delete(self, news_id: str) -> bool:
        with self._lock:
            cur = self.conn.execute("DELETE FROM analyses WHERE news_id=?", (news_id,))
        return cur.rowcount > 0

    def count(self) -> int:
        with self._lock:
            return int(self.conn.execute("SELECT COUNT(*) FROM analyses").fetchone()[0])

    # ── Maintenance ─────────────────────────────────────────────

    def prune_records(self, max_records: int) -> int:
        """Keep only the newest *max_records* analyses; return rows deleted."""
        if max_records <= 0:
            return 0
        with self._lock:
            cur = self.conn.execute(
                "DELETE FROM analyses WHERE news_id IN ("
                "  SELECT news_id FROM analyses ORDER BY created_ts DESC LIMIT -1 OFFSET ?"
                ")",
                (int(max_records),),
            )
        if cur.rowcount:
            logger.info("Pruned %d old analyses (keeping %d)", cur.rowcount, max_records)
        return cur.rowcount

    def prune_claims(self, *, now: float | None = None) -> int:
        """Delete claims older than the TTL; return rows deleted."""
        cutoff = (time.time() if now is None else now) - self.claim_ttl_s
        with self._lock:
            cur = self.conn.execute("DELETE FROM claims WHERE claimed_ts < ?", (cutoff,))
        return cur.rowcount

    def close(self) -> None:
        with self._lock:
            self.conn.close()
