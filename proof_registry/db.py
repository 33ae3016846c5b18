"""
Database module for the proof registry.

SQLite implementation of the authoritative datastore: proofs, snapshot
metadata, the batch cursor, the archive outbox and the recovery audit
tables. Uses thread-local connections and proper indexing for performance.
"""

import json
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from .errors import ConcurrencyConflict
from .util import utc_now_iso

SNAPSHOT_META_FIELDS = (
    "object_store_url",
    "archive_txid",
    "archive_jsonl_txid",
    "archive_url",
    "integrity_verified",
    "published_at",
)

OUTBOX_FIELDS = (
    "status",
    "attempts",
    "last_error",
    "next_attempt_at",
    "manifest_txid",
    "jsonl_txid",
)


def _date_clause(column: str, audit_date: str):
    """Exact audit timestamp or a YYYY-MM-DD day."""
    if len(audit_date) == 10:
        return f"{column} LIKE ?", (audit_date + "%",)
    return f"{column} = ?", (audit_date,)


class SqliteDatastore:
    """Authoritative datastore backed by a single SQLite file."""

    def __init__(self, db_path: str = "data/proof_registry.db"):
        self.db_path = Path(db_path)
        # Thread-local storage for connection pooling
        self._local = threading.local()

    def _get_connection(self) -> sqlite3.Connection:
        """
        Get a thread-local database connection.
        Connections are reused within the same thread for performance.
        """
        conn = getattr(self._local, 'conn', None)
        if conn is None:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(str(self.db_path), check_same_thread=False, timeout=5.0)
            conn.execute("PRAGMA journal_mode=WAL;")
            conn.execute("PRAGMA synchronous=NORMAL;")
            conn.execute("PRAGMA cache_size=10000;")  # ~10MB cache
            conn.execute("PRAGMA temp_store=MEMORY;")
            conn.row_factory = sqlite3.Row
            self._local.conn = conn
        return conn

    @contextmanager
    def _transaction(self):
        """
        Context manager for database transactions.
        Automatically commits on success, rolls back on failure.
        """
        conn = self._get_connection()
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise

    def init_db(self) -> None:
        """
        Initialize database schema with proper indexes.
        Safe to call multiple times (uses IF NOT EXISTS).
        """
        with self._transaction() as conn:
            conn.execute("""
            CREATE TABLE IF NOT EXISTS proofs (
                id TEXT PRIMARY KEY,
                hash TEXT NOT NULL,
                subject_type TEXT NOT NULL,
                subject_namespace TEXT NOT NULL,
                subject_id TEXT NOT NULL,
                metadata_json TEXT NOT NULL,
                signed_at TEXT NOT NULL,
                signer_fingerprint TEXT NOT NULL,
                schema_version INTEGER NOT NULL,
                signature TEXT NOT NULL,
                proof_json TEXT NOT NULL,
                batch INTEGER,
                created_at TEXT NOT NULL
            );""")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_proofs_hash ON proofs(hash);")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_proofs_batch ON proofs(batch);")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_proofs_created ON proofs(created_at);")

            conn.execute("""
            CREATE TABLE IF NOT EXISTS snapshot_meta (
                batch INTEGER PRIMARY KEY,
                count INTEGER NOT NULL,
                merkle_root TEXT NOT NULL,
                first_proof_id TEXT NOT NULL,
                last_proof_id TEXT NOT NULL,
                object_store_url TEXT,
                archive_txid TEXT,
                archive_jsonl_txid TEXT,
                archive_url TEXT,
                integrity_verified INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL,
                published_at TEXT
            );""")

            # Single row; version is the optimistic concurrency token
            conn.execute("""
            CREATE TABLE IF NOT EXISTS batch_cursor (
                id INTEGER PRIMARY KEY CHECK (id = 1),
                next_batch INTEGER NOT NULL,
                last_proof_id TEXT,
                version INTEGER NOT NULL
            );""")
            conn.execute(
                "INSERT OR IGNORE INTO batch_cursor(id, next_batch, last_proof_id, version) "
                "VALUES(1, 1, NULL, 0)"
            )

            conn.execute("""
            CREATE TABLE IF NOT EXISTS archive_outbox (
                batch INTEGER PRIMARY KEY,
                status TEXT NOT NULL DEFAULT 'pending',
                attempts INTEGER NOT NULL DEFAULT 0,
                last_error TEXT,
                next_attempt_at INTEGER NOT NULL DEFAULT 0,
                manifest_txid TEXT,
                jsonl_txid TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );""")
            conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_archive_outbox_due
            ON archive_outbox(status, next_attempt_at);""")

            conn.execute("""
            CREATE TABLE IF NOT EXISTS audit_cursor (
                id INTEGER PRIMARY KEY CHECK (id = 1),
                last_proof_id TEXT
            );""")
            conn.execute("INSERT OR IGNORE INTO audit_cursor(id, last_proof_id) VALUES(1, NULL)")

            conn.execute("""
            CREATE TABLE IF NOT EXISTS recovery_audit_logs (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                audit_date TEXT NOT NULL,
                enhanced INTEGER NOT NULL,
                total_audited INTEGER NOT NULL,
                successful_recoveries INTEGER NOT NULL,
                failed_recoveries INTEGER NOT NULL,
                hash_mismatches INTEGER NOT NULL,
                signature_failures INTEGER NOT NULL,
                summary_json TEXT NOT NULL
            );""")
            conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_recovery_audit_logs_date
            ON recovery_audit_logs(audit_date);""")

            conn.execute("""
            CREATE TABLE IF NOT EXISTS recovery_audit_results (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                audit_date TEXT NOT NULL,
                proof_id TEXT NOT NULL,
                original_hash TEXT NOT NULL,
                recovered_hash TEXT,
                hash_match INTEGER NOT NULL,
                signature_valid INTEGER NOT NULL,
                source TEXT,
                recovered_at TEXT NOT NULL,
                recovery_time_ms REAL NOT NULL,
                errors_json TEXT NOT NULL,
                warnings_json TEXT NOT NULL,
                integrity_score REAL
            );""")
            conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_recovery_audit_results_date
            ON recovery_audit_results(audit_date);""")

            conn.execute("""
            CREATE TABLE IF NOT EXISTS recovery_audit_cross_mirror (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                audit_date TEXT NOT NULL,
                proof_id TEXT NOT NULL,
                sources_json TEXT NOT NULL,
                consistent INTEGER NOT NULL,
                consensus_hash TEXT,
                integrity_score REAL NOT NULL,
                discrepancies_json TEXT NOT NULL
            );""")
            conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_recovery_audit_cross_mirror_date
            ON recovery_audit_cross_mirror(audit_date);""")

    # ============================================================
    # Proofs
    # ============================================================

    def insert_proof(self, proof: Dict[str, Any], proof_json: str) -> None:
        """Store an issued proof. Proofs are never updated after this."""
        subject = proof["subject"]
        with self._transaction() as conn:
            conn.execute(
                "INSERT INTO proofs(id, hash, subject_type, subject_namespace, subject_id, "
                "metadata_json, signed_at, signer_fingerprint, schema_version, signature, "
                "proof_json, batch, created_at) VALUES(?,?,?,?,?,?,?,?,?,?,?,NULL,?)",
                (
                    proof["id"], proof["hash"], subject["type"], subject["namespace"],
                    subject["id"], json.dumps(proof.get("metadata") or {}, sort_keys=True),
                    proof["signed_at"], proof["signer_fingerprint"], proof["schema_version"],
                    proof["signature"], proof_json, utc_now_iso(),
                )
            )

    def get_proof_by_id(self, proof_id: str) -> Optional[Dict[str, Any]]:
        conn = self._get_connection()
        cur = conn.execute("SELECT * FROM proofs WHERE id=?", (proof_id,))
        row = cur.fetchone()
        return dict(row) if row else None

    def get_proof_by_hash(self, file_hash: str) -> Optional[Dict[str, Any]]:
        """Most recently issued proof for a file hash."""
        conn = self._get_connection()
        cur = conn.execute(
            "SELECT * FROM proofs WHERE hash=? ORDER BY id DESC LIMIT 1", (file_hash,)
        )
        row = cur.fetchone()
        return dict(row) if row else None

    def list_unbatched_proofs(self, limit: int) -> List[Dict[str, Any]]:
        """Un-batched proofs ordered by id."""
        conn = self._get_connection()
        cur = conn.execute(
            "SELECT id, hash, proof_json FROM proofs WHERE batch IS NULL ORDER BY id ASC LIMIT ?",
            (limit,)
        )
        return [dict(row) for row in cur.fetchall()]

    def list_proofs_in_batch(self, batch: int) -> List[Dict[str, Any]]:
        conn = self._get_connection()
        cur = conn.execute(
            "SELECT id, hash, proof_json FROM proofs WHERE batch=? ORDER BY id ASC", (batch,)
        )
        return [dict(row) for row in cur.fetchall()]

    def list_proofs_after(self, after_id: Optional[str], limit: int) -> List[Dict[str, Any]]:
        """Proofs ordered by id, strictly after a cursor."""
        conn = self._get_connection()
        if after_id:
            cur = conn.execute(
                "SELECT id, hash, batch FROM proofs WHERE id > ? ORDER BY id ASC LIMIT ?",
                (after_id, limit)
            )
        else:
            cur = conn.execute(
                "SELECT id, hash, batch FROM proofs ORDER BY id ASC LIMIT ?", (limit,)
            )
        return [dict(row) for row in cur.fetchall()]

    def count_proofs(self) -> int:
        conn = self._get_connection()
        return conn.execute("SELECT COUNT(*) AS cnt FROM proofs").fetchone()['cnt']

    def count_unbatched_proofs(self) -> int:
        conn = self._get_connection()
        cur = conn.execute("SELECT COUNT(*) AS cnt FROM proofs WHERE batch IS NULL")
        return cur.fetchone()['cnt']

    def count_proofs_since(self, timestamp: str) -> int:
        conn = self._get_connection()
        cur = conn.execute("SELECT COUNT(*) AS cnt FROM proofs WHERE created_at > ?", (timestamp,))
        return cur.fetchone()['cnt']

    # ============================================================
    # Snapshot batching
    # ============================================================

    def get_batch_cursor(self) -> Dict[str, Any]:
        conn = self._get_connection()
        cur = conn.execute("SELECT next_batch, last_proof_id, version FROM batch_cursor WHERE id=1")
        return dict(cur.fetchone())

    def commit_snapshot(
        self,
        expected_version: int,
        meta: Dict[str, Any],
        proof_ids: List[str]
    ) -> None:
        """
        Persist a batch atomically.

        Advances the cursor only if its version is unchanged, records the
        batch, assigns exactly the selected proofs and enqueues archive
        publication. No I/O beyond SQLite happens while the write lock is
        held; artifacts are uploaded before this is called and
        `meta["object_store_url"]` points at them.

        Raises:
            ConcurrencyConflict: if another writer advanced the cursor first
        """
        batch = meta["batch"]
        now = utc_now_iso()
        try:
            with self._transaction() as conn:
                cur = conn.execute(
                    "UPDATE batch_cursor SET next_batch=?, last_proof_id=?, version=version+1 "
                    "WHERE id=1 AND version=? AND next_batch=?",
                    (batch + 1, meta["last_proof_id"], expected_version, batch)
                )
                if cur.rowcount != 1:
                    raise ConcurrencyConflict(f"batch cursor moved before batch {batch} was committed")

                url = meta.get("object_store_url")
                conn.execute(
                    "INSERT INTO snapshot_meta(batch, count, merkle_root, first_proof_id, "
                    "last_proof_id, object_store_url, integrity_verified, created_at, published_at) "
                    "VALUES(?,?,?,?,?,?,0,?,?)",
                    (batch, meta["count"], meta["merkle_root"], meta["first_proof_id"],
                     meta["last_proof_id"], url, now, now if url else None)
                )

                cur = conn.executemany(
                    "UPDATE proofs SET batch=? WHERE id=? AND batch IS NULL",
                    [(batch, pid) for pid in proof_ids]
                )
                if cur.rowcount != len(proof_ids):
                    raise ConcurrencyConflict(f"proofs for batch {batch} were claimed concurrently")

                conn.execute(
                    "INSERT INTO archive_outbox(batch, status, attempts, next_attempt_at, "
                    "created_at, updated_at) VALUES(?, 'pending', 0, 0, ?, ?)",
                    (batch, now, now)
                )
        except sqlite3.IntegrityError as e:
            raise ConcurrencyConflict(f"batch {batch} already exists") from e
        except sqlite3.OperationalError as e:
            if "locked" in str(e) or "busy" in str(e):
                raise ConcurrencyConflict(f"datastore busy while committing batch {batch}") from e
            raise

    def get_snapshot_meta(self, batch: int) -> Optional[Dict[str, Any]]:
        conn = self._get_connection()
        cur = conn.execute("SELECT * FROM snapshot_meta WHERE batch=?", (batch,))
        row = cur.fetchone()
        return _snapshot_row(row) if row else None

    def list_snapshot_meta(self, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        """Snapshot rows, newest batch first."""
        conn = self._get_connection()
        sql = "SELECT * FROM snapshot_meta ORDER BY batch DESC"
        params: tuple = ()
        if limit is not None:
            sql += " LIMIT ?"
            params = (limit,)
        return [_snapshot_row(row) for row in conn.execute(sql, params).fetchall()]

    def list_unverified_snapshots(self, limit: int) -> List[Dict[str, Any]]:
        conn = self._get_connection()
        cur = conn.execute(
            "SELECT * FROM snapshot_meta WHERE integrity_verified=0 ORDER BY batch ASC LIMIT ?",
            (limit,)
        )
        return [_snapshot_row(row) for row in cur.fetchall()]

    def update_snapshot_meta(self, batch: int, **fields: Any) -> bool:
        """Update mutable snapshot columns. Returns False if the batch is unknown."""
        unknown = set(fields) - set(SNAPSHOT_META_FIELDS)
        if unknown:
            raise ValueError(f"not updatable: {sorted(unknown)}")
        if not fields:
            return False
        if "integrity_verified" in fields:
            fields["integrity_verified"] = 1 if fields["integrity_verified"] else 0
        assignments = ", ".join(f"{name}=?" for name in fields)
        with self._transaction() as conn:
            cur = conn.execute(
                f"UPDATE snapshot_meta SET {assignments} WHERE batch=?",
                (*fields.values(), batch)
            )
            return cur.rowcount == 1

    def delete_snapshot_meta(self, batches: Iterable[int]) -> int:
        batches = list(batches)
        if not batches:
            return 0
        with self._transaction() as conn:
            conn.executemany("DELETE FROM archive_outbox WHERE batch=?", [(b,) for b in batches])
            cur = conn.executemany("DELETE FROM snapshot_meta WHERE batch=?", [(b,) for b in batches])
            return cur.rowcount

    # ============================================================
    # Archive outbox
    # ============================================================

    def get_outbox_entry(self, batch: int) -> Optional[Dict[str, Any]]:
        conn = self._get_connection()
        row = conn.execute("SELECT * FROM archive_outbox WHERE batch=?", (batch,)).fetchone()
        return dict(row) if row else None

    def list_due_outbox(self, now_epoch: int, limit: int) -> List[Dict[str, Any]]:
        """Entries not yet published whose back-off has expired, oldest batch first."""
        conn = self._get_connection()
        cur = conn.execute(
            "SELECT * FROM archive_outbox WHERE status != 'published' AND next_attempt_at <= ? "
            "ORDER BY batch ASC LIMIT ?",
            (now_epoch, limit)
        )
        return [dict(row) for row in cur.fetchall()]

    def update_outbox_entry(self, batch: int, **fields: Any) -> None:
        unknown = set(fields) - set(OUTBOX_FIELDS)
        if unknown:
            raise ValueError(f"not updatable: {sorted(unknown)}")
        fields["updated_at"] = utc_now_iso()
        assignments = ", ".join(f"{name}=?" for name in fields)
        with self._transaction() as conn:
            conn.execute(
                f"UPDATE archive_outbox SET {assignments} WHERE batch=?",
                (*fields.values(), batch)
            )

    # ============================================================
    # Recovery audit
    # ============================================================

    def get_audit_cursor(self) -> Optional[str]:
        conn = self._get_connection()
        row = conn.execute("SELECT last_proof_id FROM audit_cursor WHERE id=1").fetchone()
        return row['last_proof_id'] if row else None

    def set_audit_cursor(self, last_proof_id: Optional[str]) -> None:
        with self._transaction() as conn:
            conn.execute("UPDATE audit_cursor SET last_proof_id=? WHERE id=1", (last_proof_id,))

    def insert_audit_run(
        self,
        summary: Dict[str, Any],
        results: List[Dict[str, Any]],
        cross_mirror: List[Dict[str, Any]]
    ) -> None:
        """Append one audit run and its per-proof rows in a single transaction."""
        audit_date = summary["audit_date"]
        with self._transaction() as conn:
            conn.execute(
                "INSERT INTO recovery_audit_logs(audit_date, enhanced, total_audited, "
                "successful_recoveries, failed_recoveries, hash_mismatches, "
                "signature_failures, summary_json) VALUES(?,?,?,?,?,?,?,?)",
                (audit_date, 1 if summary["enhanced"] else 0, summary["total_audited"],
                 summary["successful_recoveries"], summary["failed_recoveries"],
                 summary["hash_mismatches"], summary["signature_failures"],
                 json.dumps(summary, sort_keys=True))
            )
            conn.executemany(
                "INSERT INTO recovery_audit_results(audit_date, proof_id, original_hash, "
                "recovered_hash, hash_match, signature_valid, source, recovered_at, "
                "recovery_time_ms, errors_json, warnings_json, integrity_score) "
                "VALUES(?,?,?,?,?,?,?,?,?,?,?,?)",
                [
                    (audit_date, r["proof_id"], r["original_hash"], r.get("recovered_hash"),
                     1 if r["hash_match"] else 0, 1 if r["signature_valid"] else 0,
                     r.get("source"), r["recovered_at"], r["recovery_time_ms"],
                     json.dumps(r.get("errors", [])), json.dumps(r.get("warnings", [])),
                     r.get("integrity_score"))
                    for r in results
                ]
            )
            conn.executemany(
                "INSERT INTO recovery_audit_cross_mirror(audit_date, proof_id, sources_json, "
                "consistent, consensus_hash, integrity_score, discrepancies_json) "
                "VALUES(?,?,?,?,?,?,?)",
                [
                    (audit_date, c["proof_id"], json.dumps(c["sources"]),
                     1 if c["consistent"] else 0, c.get("consensus_hash"),
                     c["integrity_score"], json.dumps(c["discrepancies"]))
                    for c in cross_mirror
                ]
            )

    def get_last_audit(self) -> Optional[Dict[str, Any]]:
        conn = self._get_connection()
        row = conn.execute(
            "SELECT summary_json FROM recovery_audit_logs ORDER BY seq DESC LIMIT 1"
        ).fetchone()
        return json.loads(row['summary_json']) if row else None

    def list_audit_runs(self, limit: int = 10) -> List[Dict[str, Any]]:
        conn = self._get_connection()
        cur = conn.execute(
            "SELECT summary_json FROM recovery_audit_logs ORDER BY seq DESC LIMIT ?", (limit,)
        )
        return [json.loads(row['summary_json']) for row in cur.fetchall()]

    def list_audit_results(self, audit_date: str) -> List[Dict[str, Any]]:
        clause, params = _date_clause("audit_date", audit_date)
        conn = self._get_connection()
        cur = conn.execute(
            f"SELECT * FROM recovery_audit_results WHERE {clause} ORDER BY seq ASC", params
        )
        out = []
        for row in cur.fetchall():
            item = dict(row)
            item["hash_match"] = bool(item["hash_match"])
            item["signature_valid"] = bool(item["signature_valid"])
            item["errors"] = json.loads(item.pop("errors_json"))
            item["warnings"] = json.loads(item.pop("warnings_json"))
            item.pop("seq", None)
            out.append(item)
        return out

    def list_cross_mirror(self, audit_date: str) -> List[Dict[str, Any]]:
        clause, params = _date_clause("audit_date", audit_date)
        conn = self._get_connection()
        cur = conn.execute(
            f"SELECT * FROM recovery_audit_cross_mirror WHERE {clause} ORDER BY seq ASC", params
        )
        out = []
        for row in cur.fetchall():
            item = dict(row)
            item["consistent"] = bool(item["consistent"])
            item["sources"] = json.loads(item.pop("sources_json"))
            item["discrepancies"] = json.loads(item.pop("discrepancies_json"))
            item.pop("seq", None)
            out.append(item)
        return out

    # ============================================================
    # Metrics and Health
    # ============================================================

    def get_db_stats(self) -> Dict[str, int]:
        """Get database statistics for monitoring."""
        conn = self._get_connection()
        stats = {}
        for table in ['proofs', 'snapshot_meta', 'archive_outbox',
                      'recovery_audit_logs', 'recovery_audit_results']:
            cur = conn.execute(f"SELECT COUNT(*) as cnt FROM {table}")
            stats[f"{table}_count"] = cur.fetchone()['cnt']
        return stats

    # ============================================================
    # Test Support: Database Reset
    # ============================================================

    def reset(self) -> None:
        """
        Reset the database for test isolation.
        Clears all tables but preserves schema.
        """
        with self._transaction() as conn:
            for table in ['proofs', 'snapshot_meta', 'archive_outbox', 'recovery_audit_logs',
                          'recovery_audit_results', 'recovery_audit_cross_mirror']:
                conn.execute(f"DELETE FROM {table}")
            conn.execute("UPDATE batch_cursor SET next_batch=1, last_proof_id=NULL, version=0")
            conn.execute("UPDATE audit_cursor SET last_proof_id=NULL")

    def close_connection(self) -> None:
        """Close the thread-local connection (for cleanup)."""
        conn = getattr(self._local, 'conn', None)
        if conn is not None:
            conn.close()
            self._local.conn = None


def _snapshot_row(row: sqlite3.Row) -> Dict[str, Any]:
    item = dict(row)
    item["integrity_verified"] = bool(item["integrity_verified"])
    return item
