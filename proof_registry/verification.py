"""
Verification cascade.

Looks a file hash up in each source in priority order and returns on the
first source whose proof passes every check. Failures from every source
attempted are kept so callers can tell "not found anywhere" apart from
"found but invalid".
"""

import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, BinaryIO, Callable, Dict, List, Optional, Tuple

from .errors import SourceUnavailableError
from .logging_config import audit_log
from .proofs import SCHEMA_VERSION, check_proof_signature, parse_proof_bytes, validate_file_hash
from .sources import LookupKey, ProofSource, fetch_with_timeout
from .util import hash_stream, parse_iso, utc_now


@dataclass
class VerificationResult:
    valid: bool
    signer: Optional[str]
    issued_at: Optional[str]
    latency_ms: float
    errors: List[str] = field(default_factory=list)
    source: Optional[str] = None
    proof_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class VerificationCascade:
    def __init__(
        self,
        sources: List[ProofSource],
        trust_store_loader: Callable[[], Dict[str, Any]],
        timeout_seconds: float = 5.0,
        tolerance_seconds: int = 86400,
        max_clock_skew_seconds: int = 300,
        clock: Callable[[], datetime] = utc_now
    ):
        self.sources = list(sources)
        self._trust_store = trust_store_loader
        self._timeout = timeout_seconds
        self._tolerance = tolerance_seconds
        self._max_skew = max_clock_skew_seconds
        self._clock = clock

    def check_proof(self, doc: Dict[str, Any], expected_hash: str, now: datetime) -> List[str]:
        """All reasons a recovered proof fails verification; empty when valid."""
        reasons = []
        found = doc.get("hash")
        if found != expected_hash:
            reasons.append(f"hash mismatch (expected {expected_hash}, found {found})")
        if doc.get("schema_version") != SCHEMA_VERSION:
            reasons.append(f"unsupported schema_version {doc.get('schema_version')!r}")

        ok, reason = check_proof_signature(doc, self._trust_store())
        if not ok:
            reasons.append(f"signature invalid: {reason}")

        try:
            signed_at = parse_iso(doc.get("signed_at"))
        except (TypeError, ValueError):
            reasons.append("malformed signed_at timestamp")
        else:
            age = (now - signed_at).total_seconds()
            if age < -self._max_skew:
                reasons.append(
                    f"signed_at is {-age:.0f}s in the future, beyond the "
                    f"{self._max_skew}s clock skew tolerance"
                )
            elif self._tolerance and age > self._tolerance:
                reasons.append(
                    f"proof is stale: signed {age:.0f}s ago, tolerance is {self._tolerance}s"
                )
        return reasons

    def _attempt(
        self,
        source: ProofSource,
        file_hash: str,
        now: datetime
    ) -> Tuple[Optional[Dict[str, Any]], List[str]]:
        try:
            raw = fetch_with_timeout(source, LookupKey.for_hash(file_hash), self._timeout)
        except SourceUnavailableError as e:
            return None, [f"{source.name}: {e.reason}"]
        if raw is None:
            return None, [f"{source.name}: proof not found"]
        try:
            doc = parse_proof_bytes(raw)
        except (ValueError, UnicodeDecodeError):
            return None, [f"{source.name}: malformed proof document"]

        reasons = self.check_proof(doc, file_hash, now)
        if reasons:
            return None, [f"{source.name}: {r}" for r in reasons]
        return doc, []

    def verify_by_hash(self, file_hash: str, concurrent: bool = False) -> VerificationResult:
        """
        Verify a file hash against the registry.

        Args:
            file_hash: 64 lowercase hex characters
            concurrent: query every source at once; first success wins

        Raises:
            InvalidInputError: malformed hash
        """
        file_hash = validate_file_hash(file_hash)
        started = time.perf_counter()
        now = self._clock()
        errors: List[str] = []
        winner: Optional[Tuple[str, Dict[str, Any]]] = None

        if concurrent and self.sources:
            pool = ThreadPoolExecutor(
                max_workers=len(self.sources), thread_name_prefix="verify-cascade"
            )
            try:
                futures = {
                    pool.submit(self._attempt, source, file_hash, now): source
                    for source in self.sources
                }
                for future in as_completed(futures):
                    doc, errs = future.result()
                    errors.extend(errs)
                    if doc is not None:
                        winner = (futures[future].name, doc)
                        break
            finally:
                pool.shutdown(wait=False)
        else:
            for source in self.sources:
                doc, errs = self._attempt(source, file_hash, now)
                errors.extend(errs)
                if doc is not None:
                    winner = (source.name, doc)
                    break

        latency_ms = round((time.perf_counter() - started) * 1000, 2)
        if winner is None:
            result = VerificationResult(
                valid=False, signer=None, issued_at=None, latency_ms=latency_ms, errors=errors
            )
        else:
            source_name, doc = winner
            result = VerificationResult(
                valid=True,
                signer=doc["signer_fingerprint"],
                issued_at=doc["signed_at"],
                latency_ms=latency_ms,
                errors=errors,
                source=source_name,
                proof_id=doc.get("id"),
            )

        audit_log.verification_result(
            file_hash, result.valid, result.source, latency_ms, result.errors
        )
        return result

    def verify_by_file(self, stream: BinaryIO, concurrent: bool = False) -> VerificationResult:
        """Hash an uploaded file and verify the digest."""
        return self.verify_by_hash(hash_stream(stream), concurrent=concurrent)
