"""
Recovery audit engine.

Re-fetches a bounded window of proofs from every configured source,
re-verifies what it recovers and records the outcome. The enhanced mode
also compares sources against each other for every proof.

Audits never modify proofs. They append audit rows and mark confirmed
snapshot batches as integrity-verified.
"""

import logging
import re
import statistics
import time
from collections import Counter
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from .errors import InvalidInputError, SourceUnavailableError
from .logging_config import audit_log
from .proofs import check_proof_signature, parse_proof_bytes
from .sources import LookupKey, ProofSource, fetch_with_timeout
from .util import format_iso_ms, parse_iso, utc_now

logger = logging.getLogger(__name__)

_AUDIT_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}(T[0-9:.]+Z)?$")


@dataclass
class SourceRecovery:
    source: str
    hash: Optional[str]
    signature_valid: bool
    recovered_at: str
    recovery_time_ms: float
    errors: List[str] = field(default_factory=list)

    @property
    def responded(self) -> bool:
        return self.hash is not None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class CrossMirrorValidation:
    proof_id: str
    sources: List[Dict[str, Any]]
    consistent: bool
    consensus_hash: Optional[str]
    integrity_score: float
    discrepancies: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class AuditSummary:
    audit_date: str
    enhanced: bool
    total_audited: int = 0
    successful_recoveries: int = 0
    failed_recoveries: int = 0
    hash_mismatches: int = 0
    signature_failures: int = 0
    cross_mirror_inconsistencies: int = 0
    integrity_score: Optional[float] = None
    average_recovery_time_ms: float = 0.0
    source_breakdown: Dict[str, int] = field(default_factory=dict)
    performance_metrics: Dict[str, Any] = field(default_factory=dict)
    snapshots_verified: List[int] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def build_cross_mirror_validation(
    proof_id: str,
    recoveries: List[SourceRecovery]
) -> CrossMirrorValidation:
    """
    Compare what each source returned for one proof.

    consistent: at least one source responded, and every responding source
    agrees on the hash with a valid signature.
    consensus_hash: the hash held by a strict majority of queried sources,
    so two disagreeing sources have no consensus.
    """
    responding = [r for r in recoveries if r.responded]
    hashes = {r.hash for r in responding}
    consistent = bool(responding) and len(hashes) == 1 and all(r.signature_valid for r in responding)

    consensus_hash = None
    integrity_score = 0.0
    if recoveries:
        votes = Counter(r.hash for r in responding)
        if votes:
            top_hash, top_count = votes.most_common(1)[0]
            if top_count * 2 > len(recoveries):
                consensus_hash = top_hash
                integrity_score = round(top_count / len(recoveries), 4)

    discrepancies = []
    for i, first in enumerate(responding):
        for second in responding[i + 1:]:
            if first.hash != second.hash:
                discrepancies.append({
                    "source1": first.source, "source2": second.source,
                    "field": "hash", "value1": first.hash, "value2": second.hash,
                })
            if first.signature_valid != second.signature_valid:
                discrepancies.append({
                    "source1": first.source, "source2": second.source,
                    "field": "signature_valid",
                    "value1": first.signature_valid, "value2": second.signature_valid,
                })

    return CrossMirrorValidation(
        proof_id=proof_id,
        sources=[r.to_dict() for r in recoveries],
        consistent=consistent,
        consensus_hash=consensus_hash,
        integrity_score=integrity_score,
        discrepancies=discrepancies,
    )


class RecoveryAuditEngine:
    def __init__(
        self,
        datastore,
        sources: List[ProofSource],
        trust_store_loader: Callable[[], Dict[str, Any]],
        publisher=None,
        batch_size: int = 1000,
        max_errors: int = 100,
        timeout_seconds: float = 5.0,
        interval_hours: float = 24.0,
        proof_threshold: int = 10000,
        performance_threshold_ms: float = 5000.0,
        integrity_threshold: float = 0.95,
        snapshot_limit: int = 10,
        clock: Callable[[], datetime] = utc_now
    ):
        self._datastore = datastore
        self.sources = list(sources)
        self._trust_store = trust_store_loader
        self._publisher = publisher
        self.batch_size = batch_size
        self.max_errors = max_errors
        self._timeout = timeout_seconds
        self.interval_hours = interval_hours
        self.proof_threshold = proof_threshold
        self.performance_threshold_ms = performance_threshold_ms
        self.integrity_threshold = integrity_threshold
        self.snapshot_limit = snapshot_limit
        self._clock = clock

    # ============================================================
    # Per-proof recovery
    # ============================================================

    def _recover(self, source: ProofSource, proof_id: str, original_hash: str) -> SourceRecovery:
        started = time.perf_counter()
        recovered_at = format_iso_ms(self._clock())
        errors: List[str] = []
        recovered_hash = None
        signature_valid = False
        try:
            raw = fetch_with_timeout(source, LookupKey.for_id(proof_id), self._timeout)
        except SourceUnavailableError as e:
            raw = None
            errors.append(f"{source.name}: {e.reason}")
        else:
            if raw is None:
                errors.append(f"{source.name}: proof not found")

        if raw is not None:
            try:
                doc = parse_proof_bytes(raw)
            except (ValueError, UnicodeDecodeError):
                errors.append(f"{source.name}: malformed proof document")
            else:
                recovered_hash = doc.get("hash") if isinstance(doc.get("hash"), str) else ""
                if doc.get("id") != proof_id:
                    errors.append(f"{source.name}: recovered document has id {doc.get('id')!r}")
                if recovered_hash != original_hash:
                    errors.append(
                        f"{source.name}: hash mismatch (expected {original_hash}, found {recovered_hash})"
                    )
                signature_valid, reason = check_proof_signature(doc, self._trust_store())
                if not signature_valid:
                    errors.append(f"{source.name}: signature invalid: {reason}")

        return SourceRecovery(
            source=source.name,
            hash=recovered_hash,
            signature_valid=signature_valid,
            recovered_at=recovered_at,
            recovery_time_ms=round((time.perf_counter() - started) * 1000, 2),
            errors=errors,
        )

    def _audit_proof(
        self,
        proof: Dict[str, Any],
        enhanced: bool
    ) -> Tuple[Dict[str, Any], SourceRecovery, Optional[CrossMirrorValidation]]:
        proof_id = proof["id"]
        original_hash = proof["hash"]

        recoveries: List[SourceRecovery] = []
        for source in self.sources:
            recovery = self._recover(source, proof_id, original_hash)
            recoveries.append(recovery)
            if not enhanced and recovery.hash == original_hash and recovery.signature_valid:
                break

        succeeded = [r for r in recoveries if r.hash == original_hash and r.signature_valid]
        if succeeded:
            chosen = succeeded[0]
        else:
            responded = [r for r in recoveries if r.responded]
            chosen = responded[0] if responded else recoveries[0]

        cross = build_cross_mirror_validation(proof_id, recoveries) if enhanced else None

        errors = [e for r in recoveries for e in r.errors]
        warnings: List[str] = []
        if enhanced and chosen.recovery_time_ms > self.performance_threshold_ms:
            warnings.append(
                f"slow recovery from {chosen.source}: {chosen.recovery_time_ms}ms "
                f"exceeds {self.performance_threshold_ms}ms"
            )

        result = {
            "proof_id": proof_id,
            "original_hash": original_hash,
            "recovered_hash": chosen.hash,
            "hash_match": chosen.hash == original_hash,
            "signature_valid": chosen.signature_valid,
            "source": chosen.source if chosen.responded else None,
            "recovered_at": chosen.recovered_at,
            "recovery_time_ms": chosen.recovery_time_ms,
            "errors": errors,
            "warnings": warnings,
            "integrity_score": cross.integrity_score if cross else None,
        }
        return result, chosen, cross

    # ============================================================
    # Audit run
    # ============================================================

    def _select_window(self) -> List[Dict[str, Any]]:
        cursor = self._datastore.get_audit_cursor()
        proofs = self._datastore.list_proofs_after(cursor, self.batch_size)
        if cursor and len(proofs) < self.batch_size:
            wrapped = self._datastore.list_proofs_after(None, self.batch_size - len(proofs))
            proofs.extend(p for p in wrapped if p["id"] <= cursor)
        return proofs

    def run_recovery_audit(self, enhanced: bool = False) -> AuditSummary:
        """
        Audit the next window of proofs.

        A recovery succeeds when at least one source returns the proof with
        the authoritative hash and a valid signature.
        """
        started = time.perf_counter()
        summary = AuditSummary(audit_date=format_iso_ms(self._clock()), enhanced=enhanced)
        results: List[Dict[str, Any]] = []
        cross_rows: List[Dict[str, Any]] = []
        times: List[float] = []
        scores: List[float] = []
        breakdown: Counter = Counter()
        last_audited: Optional[str] = None

        for proof in self._select_window():
            if len(summary.errors) >= self.max_errors:
                summary.warnings.append(
                    f"stopped after {summary.total_audited} proofs: max errors ({self.max_errors}) reached"
                )
                break

            result, chosen, cross = self._audit_proof(proof, enhanced)
            results.append(result)
            summary.total_audited += 1
            last_audited = proof["id"]
            times.append(chosen.recovery_time_ms)
            summary.warnings.extend(f"{proof['id']}: {w}" for w in result["warnings"])

            if result["hash_match"] and result["signature_valid"]:
                summary.successful_recoveries += 1
                breakdown[result["source"]] += 1
            else:
                summary.failed_recoveries += 1
                summary.errors.extend(f"{proof['id']}: {e}" for e in result["errors"])
                if chosen.responded and not result["hash_match"]:
                    summary.hash_mismatches += 1
                    audit_log.integrity_violation(
                        "hash_mismatch", proof_id=proof["id"], source=chosen.source,
                        expected=result["original_hash"], found=result["recovered_hash"],
                    )
                if chosen.responded and not result["signature_valid"]:
                    summary.signature_failures += 1
                    audit_log.integrity_violation(
                        "signature_invalid", proof_id=proof["id"], source=chosen.source,
                    )
                if not chosen.responded:
                    audit_log.integrity_violation(
                        "unrecoverable", severity="critical", proof_id=proof["id"],
                    )

            if cross is not None:
                cross_rows.append(cross.to_dict())
                scores.append(cross.integrity_score)
                if not cross.consistent:
                    summary.cross_mirror_inconsistencies += 1
                    audit_log.integrity_violation(
                        "cross_mirror_inconsistency", severity="medium",
                        proof_id=proof["id"], discrepancies=cross.discrepancies,
                    )

        summary.source_breakdown = dict(breakdown)
        if times:
            summary.average_recovery_time_ms = round(sum(times) / len(times), 2)

        if enhanced:
            if scores:
                summary.integrity_score = round(sum(scores) / len(scores), 4)
                if summary.integrity_score < self.integrity_threshold:
                    summary.warnings.append(
                        f"integrity score {summary.integrity_score} below threshold "
                        f"{self.integrity_threshold}"
                    )
            summary.performance_metrics = {
                "average_recovery_time_ms": summary.average_recovery_time_ms,
                "fastest_recovery_ms": min(times) if times else None,
                "slowest_recovery_ms": max(times) if times else None,
                "median_recovery_ms": statistics.median(times) if times else None,
                "total_duration_ms": round((time.perf_counter() - started) * 1000, 2),
            }

        self._verify_snapshots(summary)
        self._persist(summary, results, cross_rows, last_audited)

        audit_log.recovery_audit_completed(
            summary.audit_date,
            enhanced,
            total_audited=summary.total_audited,
            successful_recoveries=summary.successful_recoveries,
            failed_recoveries=summary.failed_recoveries,
            hash_mismatches=summary.hash_mismatches,
            signature_failures=summary.signature_failures,
        )
        return summary

    def _verify_snapshots(self, summary: AuditSummary) -> None:
        if self._publisher is None:
            return
        for meta in self._datastore.list_unverified_snapshots(self.snapshot_limit):
            batch = meta["batch"]
            try:
                check = self._publisher.verify_snapshot_integrity(batch)
            except Exception as e:
                summary.warnings.append(f"snapshot {batch}: integrity check failed ({e})")
                continue
            if check.confirmed:
                self._datastore.update_snapshot_meta(batch, integrity_verified=True)
                summary.snapshots_verified.append(batch)
            else:
                summary.warnings.extend(f"snapshot {batch}: {e}" for e in check.errors)
                if not check.hash_match or check.archive_integrity is False:
                    audit_log.integrity_violation(
                        "snapshot_mismatch", batch=batch, errors=check.errors,
                    )

    def _persist(
        self,
        summary: AuditSummary,
        results: List[Dict[str, Any]],
        cross_rows: List[Dict[str, Any]],
        last_audited: Optional[str]
    ) -> None:
        try:
            self._datastore.insert_audit_run(summary.to_dict(), results, cross_rows)
            if last_audited is not None:
                self._datastore.set_audit_cursor(last_audited)
        except Exception as e:
            logger.error(
                "failed to store recovery audit results",
                exc_info=True,
                extra={"extra_fields": {"audit_date": summary.audit_date}},
            )
            summary.errors.append(f"audit persistence failed: {e}")

    # ============================================================
    # Scheduling and history
    # ============================================================

    def should_run_recovery_audit(self) -> Dict[str, Any]:
        last = self._datastore.get_last_audit()
        if last is None:
            return {
                "should_run": True,
                "reason": "No previous audit found",
                "last_audit_date": None,
                "proof_count_since_last_audit": self._datastore.count_proofs(),
            }

        last_date = last["audit_date"]
        count = self._datastore.count_proofs_since(last_date)
        hours = (self._clock() - parse_iso(last_date)).total_seconds() / 3600
        decision = {
            "should_run": False,
            "reason": "Audit not due",
            "last_audit_date": last_date,
            "proof_count_since_last_audit": count,
        }
        if hours >= self.interval_hours:
            decision.update(
                should_run=True,
                reason=f"{hours:.1f} hours since last audit (interval {self.interval_hours}h)",
            )
        elif count >= self.proof_threshold:
            decision.update(
                should_run=True,
                reason=f"{count} proofs issued since last audit (threshold {self.proof_threshold})",
            )
        return decision

    def run_recovery_audit_if_needed(self, enhanced: bool = True) -> Dict[str, Any]:
        decision = self.should_run_recovery_audit()
        if not decision["should_run"]:
            return {"ran": False, "decision": decision, "summary": None}
        summary = self.run_recovery_audit(enhanced=enhanced)
        return {"ran": True, "decision": decision, "summary": summary.to_dict()}

    def get_recovery_audit_history(self, limit: int = 10) -> List[Dict[str, Any]]:
        return self._datastore.list_audit_runs(limit)

    def get_recovery_audit_results(self, audit_date: str) -> List[Dict[str, Any]]:
        return self._datastore.list_audit_results(_validate_audit_date(audit_date))

    def get_cross_mirror_validation_results(self, audit_date: str) -> List[Dict[str, Any]]:
        """Cross-mirror rows for an exact audit timestamp or a YYYY-MM-DD day."""
        return self._datastore.list_cross_mirror(_validate_audit_date(audit_date))


def _validate_audit_date(audit_date: str) -> str:
    if not isinstance(audit_date, str) or not _AUDIT_DATE_RE.match(audit_date):
        raise InvalidInputError("audit date must be YYYY-MM-DD or an ISO-8601 UTC timestamp")
    return audit_date
