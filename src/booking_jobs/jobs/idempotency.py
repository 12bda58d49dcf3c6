from __future__ import annotations

import sqlite3
import time
from contextlib import closing, suppress
from pathlib import Path

from booking_jobs.utils.log import logger

CLAIMED = "claimed"
APPLIED = "applied"

_SCHEMA = """
CREATE TABLE IF NOT EXISTS idempotency_keys (
  scope TEXT NOT NULL,
  key TEXT NOT NULL,
  status TEXT NOT NULL,
  job_id TEXT,
  claimed_at REAL NOT NULL,
  applied_at REAL,
  UNIQUE(scope, key)
);
CREATE INDEX IF NOT EXISTS idx_idempotency_applied_at ON idempotency_keys(status, applied_at);
"""


class IdempotencyGuard:
    """
    "Has this natural key been applied?" backed by a UNIQUE(scope, key) row.

    A claim is a plain INSERT: either this caller created the row, or the
    constraint fired and somebody else holds/applied the key. SQLite serializes
    writers across threads and processes, so two concurrent claims can never
    both succeed.

    Lifecycle of a key: claim() -> complete() on success, or release() on
    failure so a redelivery can claim it again. The job that holds a claim can
    claim it again (a redelivery after its consumer crashed). A claim older
    than `claim_ttl_sec` belongs to a holder that died and may be taken over.
    """

    def __init__(self, db_path: Path, *, claim_ttl_sec: int = 900, busy_timeout_s: float = 5.0) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.claim_ttl_sec = max(1, int(claim_ttl_sec))
        self.busy_timeout_s = max(0.1, float(busy_timeout_s))
        with closing(self._conn()) as con:
            with suppress(sqlite3.DatabaseError):
                con.execute("PRAGMA journal_mode=WAL;")
            con.executescript(_SCHEMA)
            con.commit()

    def _conn(self) -> sqlite3.Connection:
        # Open/close per operation (safe across threads and worker processes).
        con = sqlite3.connect(str(self.db_path), timeout=self.busy_timeout_s)
        con.row_factory = sqlite3.Row
        return con

    def claim(self, scope: str, key: str, *, job_id: str | None = None) -> bool:
        scope, key = str(scope), str(key)
        if not key:
            raise ValueError("idempotency key must be non-empty")
        now = time.time()
        with closing(self._conn()) as con:
            try:
                with con:
                    con.execute(
                        "INSERT INTO idempotency_keys(scope, key, status, job_id, claimed_at)"
                        " VALUES (?, ?, ?, ?, ?)",
                        (scope, key, CLAIMED, job_id, now),
                    )
                return True
            except sqlite3.IntegrityError:
                pass
            if job_id is not None:
                # Redelivery of the job that already holds the claim.
                with con:
                    cur = con.execute(
                        "UPDATE idempotency_keys SET claimed_at = ?"
                        " WHERE scope = ? AND key = ? AND status = ? AND job_id = ?",
                        (now, scope, key, CLAIMED, job_id),
                    )
                if cur.rowcount == 1:
                    logger.info("idempotency_claim_reentered", scope=scope, key=key, job_id=job_id)
                    return True
            # Take over a claim whose holder died mid-job.
            with con:
                cur = con.execute(
                    "UPDATE idempotency_keys SET job_id = ?, claimed_at = ?"
                    " WHERE scope = ? AND key = ? AND status = ? AND claimed_at < ?",
                    (job_id, now, scope, key, CLAIMED, now - self.claim_ttl_sec),
                )
            if cur.rowcount == 1:
                logger.warning("idempotency_stale_claim_taken", scope=scope, key=key, job_id=job_id)
                return True
        return False

    def complete(self, scope: str, key: str) -> None:
        with closing(self._conn()) as con, con:
            con.execute(
                "UPDATE idempotency_keys SET status = ?, applied_at = ? WHERE scope = ? AND key = ?",
                (APPLIED, time.time(), str(scope), str(key)),
            )

    def release(self, scope: str, key: str, *, job_id: str | None = None) -> None:
        """
        Drop an un-applied claim. Applied keys are never released.
        """
        sql = "DELETE FROM idempotency_keys WHERE scope = ? AND key = ? AND status = ?"
        args: tuple = (str(scope), str(key), CLAIMED)
        if job_id is not None:
            sql += " AND job_id = ?"
            args = args + (job_id,)
        with closing(self._conn()) as con, con:
            con.execute(sql, args)

    def state(self, scope: str, key: str) -> str | None:
        with closing(self._conn()) as con:
            row = con.execute(
                "SELECT status FROM idempotency_keys WHERE scope = ? AND key = ?",
                (str(scope), str(key)),
            ).fetchone()
        return str(row["status"]) if row is not None else None

    def purge(self, *, older_than_sec: int) -> int:
        """
        Forget applied keys older than `older_than_sec`. Returns rows deleted.
        """
        cutoff = time.time() - max(0, int(older_than_sec))
        with closing(self._conn()) as con, con:
            cur = con.execute(
                "DELETE FROM idempotency_keys WHERE status = ? AND applied_at < ?",
                (APPLIED, cutoff),
            )
        n = int(cur.rowcount or 0)
        if n:
            logger.info("idempotency_purged", rows=n)
        return n
