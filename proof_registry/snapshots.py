"""
Snapshot batcher.

Groups un-batched proofs into fixed-size batches, uploads each batch's
artifacts to the primary object store under root-addressed keys, then
commits the batch with an optimistic check-and-advance of the batch cursor.
A batcher that loses the race leaves only unreferenced artifacts behind.
"""

import logging
import time
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional

from .errors import ConcurrencyConflict, InvalidInputError, NotFoundError
from .logging_config import audit_log
from .publisher import MirrorPublisher
from .util import parse_iso

logger = logging.getLogger(__name__)

AUTOMATION_DISABLED = "Snapshot automation is disabled"
NO_SNAPSHOT_NEEDED = "No snapshot needed at this time"
SNAPSHOT_IN_PROGRESS = "Concurrent snapshot in progress; no batch created"


@dataclass
class SnapshotResult:
    success: bool
    batch: Optional[int] = None
    count: Optional[int] = None
    merkle_root: Optional[str] = None
    error: Optional[str] = None
    retry_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def validate_batch_number(batch: Any) -> int:
    if isinstance(batch, bool):
        raise InvalidInputError("batch must be an integer")
    if not isinstance(batch, int):
        try:
            batch = int(batch)
        except (TypeError, ValueError) as e:
            raise InvalidInputError("batch must be an integer") from e
    if batch <= 0:
        raise InvalidInputError("batch must be a positive integer")
    return batch


class SnapshotBatcher:
    def __init__(
        self,
        datastore,
        publisher: MirrorPublisher,
        batch_size: int = 1000,
        enabled: bool = True,
        retry_attempts: int = 3,
        retry_delay_seconds: float = 0.05
    ):
        if batch_size <= 0:
            raise ValueError("batch_size must be positive")
        self._datastore = datastore
        self._publisher = publisher
        self.batch_size = batch_size
        self.enabled = enabled
        self._retry_attempts = retry_attempts
        self._retry_delay = retry_delay_seconds

    def check_and_create_snapshot(self) -> SnapshotResult:
        """
        Create at most one batch if enough proofs are waiting.

        A lost cursor race is retried; if the winner already consumed the
        pending proofs this returns a successful no-op. Any other failure
        rolls back the whole batch and leaves the proofs un-batched.
        """
        if not self.enabled:
            return SnapshotResult(success=False, error=AUTOMATION_DISABLED)

        retries = 0
        last_error: Optional[str] = None
        while True:
            cursor = self._datastore.get_batch_cursor()
            rows = self._datastore.list_unbatched_proofs(self.batch_size)
            if len(rows) < self.batch_size:
                audit_log.snapshot_skipped(NO_SNAPSHOT_NEEDED, pending=len(rows))
                return SnapshotResult(success=True, error=NO_SNAPSHOT_NEEDED, retry_count=retries)

            batch = cursor["next_batch"]
            try:
                artifacts = self._publisher.build_artifacts(batch, rows)
                manifest = artifacts.manifest
                url = self._publisher.publish_snapshot_to_object_store(artifacts)
                self._datastore.commit_snapshot(
                    cursor["version"],
                    {
                        "batch": batch,
                        "count": manifest["count"],
                        "merkle_root": manifest["merkle_root"],
                        "first_proof_id": manifest["first_proof_id"],
                        "last_proof_id": manifest["last_proof_id"],
                        "object_store_url": url,
                    },
                    [row["id"] for row in rows],
                )
            except ConcurrencyConflict as e:
                last_error = str(e)
                logger.info("snapshot cursor conflict", extra={"extra_fields": {"batch": batch}})
            except Exception as e:
                last_error = str(e)
                logger.error(
                    "snapshot creation failed",
                    exc_info=True,
                    extra={"extra_fields": {"batch": batch, "attempt": retries + 1}},
                )
            else:
                audit_log.snapshot_created(batch, manifest["count"], manifest["merkle_root"])
                return SnapshotResult(
                    success=True,
                    batch=batch,
                    count=manifest["count"],
                    merkle_root=manifest["merkle_root"],
                    retry_count=retries,
                )

            retries += 1
            if retries > self._retry_attempts:
                break
            time.sleep(self._retry_delay * retries)

        if last_error and self._datastore.count_unbatched_proofs() < self.batch_size:
            return SnapshotResult(success=True, error=SNAPSHOT_IN_PROGRESS, retry_count=retries)
        return SnapshotResult(success=False, error=last_error, retry_count=retries)

    def get_snapshot_status(self) -> Dict[str, Any]:
        total = self._datastore.count_proofs()
        pending = self._datastore.count_unbatched_proofs()
        latest = self._datastore.list_snapshot_meta(limit=1)
        return {
            "total_proofs": total,
            "last_batch": latest[0] if latest else None,
            "proofs_since_last_batch": pending,
            "next_snapshot_at": total - pending + self.batch_size,
            "is_snapshot_due": pending >= self.batch_size,
            "automation_enabled": self.enabled,
            "batch_size": self.batch_size,
        }

    def list_snapshots(self, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        return self._datastore.list_snapshot_meta(limit=limit)

    def get_snapshot(self, batch: Any) -> Dict[str, Any]:
        batch = validate_batch_number(batch)
        meta = self._datastore.get_snapshot_meta(batch)
        if meta is None:
            raise NotFoundError(f"snapshot batch {batch} not found")
        return meta

    def get_snapshot_statistics(self) -> Dict[str, Any]:
        snapshots = sorted(self._datastore.list_snapshot_meta(), key=lambda s: s["batch"])
        total = len(snapshots)
        proofs = sum(s["count"] for s in snapshots)
        stats: Dict[str, Any] = {
            "total_snapshots": total,
            "total_proofs_in_snapshots": proofs,
            "average_proofs_per_snapshot": round(proofs / total, 2) if total else 0,
            "archived_snapshots": sum(1 for s in snapshots if s.get("archive_txid")),
            "verified_snapshots": sum(1 for s in snapshots if s["integrity_verified"]),
            "first_snapshot_date": snapshots[0]["created_at"] if snapshots else None,
            "last_snapshot_date": snapshots[-1]["created_at"] if snapshots else None,
            "average_days_between_snapshots": None,
        }
        if total > 1:
            first = parse_iso(snapshots[0]["created_at"])
            last = parse_iso(snapshots[-1]["created_at"])
            days = (last - first).total_seconds() / 86400
            stats["average_days_between_snapshots"] = round(days / (total - 1), 4)
        return stats

    def cleanup_old_snapshots(self, keep_last: int = 10) -> Dict[str, Any]:
        """Delete snapshot metadata beyond the keep_last most recent batches."""
        if keep_last < 1:
            raise InvalidInputError("keep_last must be at least 1")
        snapshots = self._datastore.list_snapshot_meta()
        doomed = [s["batch"] for s in snapshots[keep_last:]]
        try:
            self._datastore.delete_snapshot_meta(doomed)
        except Exception as e:
            logger.error("snapshot cleanup failed", exc_info=True)
            return {"deleted_batches": [], "error": str(e)}
        if doomed:
            logger.info(
                "old snapshots removed",
                extra={"extra_fields": {"deleted_batches": doomed, "keep_last": keep_last}},
            )
        return {"deleted_batches": doomed, "error": None}

    def verify_snapshot_integrity(self, batch: Any) -> Dict[str, Any]:
        batch = validate_batch_number(batch)
        return self._publisher.verify_snapshot_integrity(batch).to_dict()

    def verify_all_snapshots_integrity(self) -> Dict[str, Any]:
        results = [
            self._publisher.verify_snapshot_integrity(s["batch"]).to_dict()
            for s in self._datastore.list_snapshot_meta()
        ]
        passed = sum(1 for r in results if r["confirmed"])
        return {
            "total": len(results),
            "verified": passed,
            "failed": len(results) - passed,
            "results": results,
        }
