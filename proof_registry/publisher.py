"""
Mirror publisher.

Writes snapshot artifacts to the primary object store before the batch is
committed, and publishes them to the permanent archive from a deferred,
retryable outbox job.

Artifacts per batch:
    snapshots/<batch>/<root>.manifest.json    signed manifest
    snapshots/<batch>/<root>.hashes.txt       one leaf digest per line
    snapshots/<batch>/<root>.proofs.jsonl.gz  one canonical proof per line
"""

import gzip
import json
import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from .canonicalization import canonicalize
from .errors import ArchivePublishError, NotFoundError
from .keys import KeyProvider, check_signature
from .logging_config import audit_log
from .merkle import merkle_root
from .proofs import parse_proof_bytes, proof_digest
from .storage import (
    ArchiveStore,
    ObjectStore,
    hashes_key,
    manifest_key,
    proof_hash_key,
    proof_key,
    proofs_jsonl_key,
)
from .util import now_epoch, sha256_hex

logger = logging.getLogger(__name__)

MANIFEST_SCHEMA_VERSION = 1
ARCHIVE_SCHEMA_TAG = "proof.v1"
ARCHIVE_TYPE_TAG = "registry-snapshot"


@dataclass
class SnapshotArtifacts:
    batch: int
    manifest: Dict[str, Any]
    manifest_bytes: bytes
    hashes_bytes: bytes
    proofs_jsonl_gz: bytes
    documents: List[Tuple[str, str, bytes]] = field(default_factory=list)


@dataclass
class ArchivePublishResult:
    batch: int
    manifest_tx_id: str
    jsonl_tx_id: str
    manifest_url: str
    jsonl_url: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class MirrorIntegrityCheck:
    batch: int
    object_store_integrity: bool
    archive_integrity: Optional[bool]
    hash_match: bool
    signature_valid: bool
    errors: List[str] = field(default_factory=list)

    @property
    def confirmed(self) -> bool:
        return (
            self.hash_match
            and self.signature_valid
            and self.object_store_integrity
            and self.archive_integrity is not False
        )

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["confirmed"] = self.confirmed
        return data


def manifest_body(manifest: Dict[str, Any]) -> Dict[str, Any]:
    body = dict(manifest)
    body.pop("signature", None)
    return body


def verify_manifest(
    manifest: Dict[str, Any],
    trust_store: Dict[str, Any]
) -> Tuple[bool, Optional[str]]:
    """
    Check a manifest's schema, signature, count and Merkle root.

    Returns:
        (True, None) when valid, otherwise (False, reason). Never raises.
    """
    if not isinstance(manifest, dict):
        return False, "manifest is not an object"
    if manifest.get("schema_version") != MANIFEST_SCHEMA_VERSION:
        return False, f"unsupported manifest schema_version {manifest.get('schema_version')!r}"

    try:
        payload = canonicalize(manifest_body(manifest))
    except ValueError as e:
        return False, f"manifest not canonicalizable: {e}"
    ok, reason = check_signature(
        trust_store, payload, manifest.get("signature", ""), manifest.get("signer_fingerprint", "")
    )
    if not ok:
        return False, f"manifest signature invalid: {reason}"

    hashes = manifest.get("proof_hashes")
    if not isinstance(hashes, list) or not hashes:
        return False, "manifest has no proof hashes"
    if manifest.get("count") != len(hashes):
        return False, "manifest count does not match proof hashes"
    if merkle_root(hashes) != manifest.get("merkle_root"):
        return False, "manifest merkle root does not match proof hashes"
    return True, None


class MirrorPublisher:
    def __init__(
        self,
        datastore,
        keys: KeyProvider,
        object_store: ObjectStore,
        archive: Optional[ArchiveStore] = None,
        local_registry: Optional[ObjectStore] = None,
        app_name: str = "proof-registry",
        backoff_seconds: int = 60,
        max_backoff_seconds: int = 86400
    ):
        self._datastore = datastore
        self._keys = keys
        self._object_store = object_store
        self._archive = archive
        self._local_registry = local_registry
        self._app_name = app_name
        self._backoff = backoff_seconds
        self._max_backoff = max_backoff_seconds

    @property
    def archive_enabled(self) -> bool:
        return self._archive is not None

    # ============================================================
    # Manifest and artifacts
    # ============================================================

    def build_artifacts(self, batch: int, rows: List[Dict[str, Any]]) -> SnapshotArtifacts:
        """
        Build the signed manifest and listings for id-ordered proof rows.

        Raises:
            ValueError: if rows is empty
        """
        if not rows:
            raise ValueError("cannot build a snapshot with no proofs")

        documents = []
        leaves = []
        lines = []
        for row in rows:
            doc = parse_proof_bytes(row["proof_json"].encode("utf-8"))
            raw = canonicalize(doc)
            leaves.append(proof_digest(doc))
            lines.append(raw)
            documents.append((doc["id"], doc["hash"], raw))

        hashes_bytes = ("\n".join(leaves) + "\n").encode("utf-8")
        jsonl = b"\n".join(lines) + b"\n"

        manifest = {
            "schema_version": MANIFEST_SCHEMA_VERSION,
            "batch": batch,
            "count": len(leaves),
            "merkle_root": merkle_root(leaves),
            "proof_hashes": leaves,
            "first_proof_id": rows[0]["id"],
            "last_proof_id": rows[-1]["id"],
            "hashes_sha256": sha256_hex(hashes_bytes),
            "proofs_sha256": sha256_hex(jsonl),
            "signer_fingerprint": self._keys.get_fingerprint(),
        }
        _, sig_b64 = self._keys.sign_proof_payload(canonicalize(manifest))
        manifest["signature"] = sig_b64

        return SnapshotArtifacts(
            batch=batch,
            manifest=manifest,
            manifest_bytes=canonicalize(manifest),
            hashes_bytes=hashes_bytes,
            proofs_jsonl_gz=gzip.compress(jsonl, mtime=0),
            documents=documents,
        )

    def verify_manifest(self, manifest: Dict[str, Any]) -> Tuple[bool, Optional[str]]:
        return verify_manifest(manifest, self._keys.get_trust_store())

    def publish_snapshot_to_object_store(self, artifacts: SnapshotArtifacts) -> str:
        """
        Write batch artifacts to the primary object store.

        Runs before the batch is committed and outside any datastore
        transaction. The manifest is written last so its presence marks a
        complete snapshot. Returns the manifest URL. Object store errors
        propagate.
        """
        batch = artifacts.batch
        root = artifacts.manifest["merkle_root"]
        self._object_store.put_object(
            hashes_key(batch, root), artifacts.hashes_bytes, "text/plain", immutable=True
        )
        self._object_store.put_object(
            proofs_jsonl_key(batch, root), artifacts.proofs_jsonl_gz, "application/gzip",
            immutable=True,
        )
        for proof_id, file_hash, raw in artifacts.documents:
            if self._object_store.get_object(proof_key(proof_id)) is None:
                self._object_store.put_object(proof_key(proof_id), raw, immutable=True)
                self._object_store.put_object(proof_hash_key(file_hash), raw)

        if self._local_registry is not None:
            try:
                self._local_registry.put_object(manifest_key(batch, root), artifacts.manifest_bytes)
                self._local_registry.put_object(
                    hashes_key(batch, root), artifacts.hashes_bytes, "text/plain"
                )
            except OSError as e:
                logger.warning(
                    "local registry snapshot write failed",
                    extra={"extra_fields": {"batch": batch, "error": str(e)}},
                )

        return self._object_store.put_object(
            manifest_key(batch, root), artifacts.manifest_bytes, immutable=True
        )

    # ============================================================
    # Archive publication
    # ============================================================

    def _tags(self, batch: int, artifact: str, **extra: str) -> Dict[str, str]:
        tags = {
            "App": self._app_name,
            "Type": ARCHIVE_TYPE_TAG,
            "Batch": str(batch),
            "Artifact": artifact,
        }
        tags.update(extra)
        return tags

    def _require_archive(self) -> ArchiveStore:
        if self._archive is None:
            raise ArchivePublishError("archive publication is not configured")
        return self._archive

    def is_snapshot_published(self, batch: int) -> bool:
        return self._require_archive().is_published(self._tags(batch, "manifest"))

    def _load_verified_artifacts(self, batch: int) -> Tuple[Dict[str, Any], bytes, bytes]:
        meta = self._datastore.get_snapshot_meta(batch)
        if meta is None:
            raise NotFoundError(f"snapshot batch {batch} not found")

        root = meta["merkle_root"]
        manifest_bytes = self._object_store.get_object(manifest_key(batch, root))
        jsonl_gz = self._object_store.get_object(proofs_jsonl_key(batch, root))
        if manifest_bytes is None or jsonl_gz is None:
            raise ArchivePublishError(f"snapshot {batch} artifacts missing from object store")

        manifest = json.loads(manifest_bytes.decode("utf-8"))
        ok, reason = self.verify_manifest(manifest)
        if not ok:
            raise ArchivePublishError(f"snapshot {batch}: {reason}")
        if manifest["merkle_root"] != meta["merkle_root"]:
            raise ArchivePublishError(f"snapshot {batch}: manifest root differs from datastore")
        if sha256_hex(gzip.decompress(jsonl_gz)) != manifest.get("proofs_sha256"):
            raise ArchivePublishError(f"snapshot {batch}: proof listing digest mismatch")
        return manifest, manifest_bytes, jsonl_gz

    def publish_snapshot_to_archive(self, batch: int) -> ArchivePublishResult:
        """
        Publish a batch's proof listing and manifest to the archive.

        Existing transactions for the batch are reused instead of
        publishing the same bytes twice.

        Raises:
            NotFoundError: unknown batch
            ArchivePublishError: artifacts missing or invalid, or upload rejected
        """
        archive = self._require_archive()
        manifest, manifest_bytes, jsonl_gz = self._load_verified_artifacts(batch)
        root = manifest["merkle_root"]

        common = {"MerkleRoot": root, "Schema": ARCHIVE_SCHEMA_TAG}
        manifest_tags = self._tags(batch, "manifest", **common)
        jsonl_tags = self._tags(batch, "proofs-jsonl", **common)

        existing_manifest = archive.find_transactions(manifest_tags)
        existing_jsonl = archive.find_transactions(jsonl_tags)
        if existing_manifest and existing_jsonl:
            manifest_tx, jsonl_tx = existing_manifest[0], existing_jsonl[0]
            logger.info(
                "snapshot already archived",
                extra={"extra_fields": {"batch": batch, "manifest_tx_id": manifest_tx}},
            )
        else:
            jsonl_tx = archive.publish_transaction(
                jsonl_gz, {**jsonl_tags, "Content-Type": "application/gzip"}
            )
            manifest_tx = archive.publish_transaction(
                manifest_bytes,
                {**manifest_tags, "Content-Type": "application/json", "RelatedTxId": jsonl_tx},
            )

        return ArchivePublishResult(
            batch=batch,
            manifest_tx_id=manifest_tx,
            jsonl_tx_id=jsonl_tx,
            manifest_url=archive.url_for(manifest_tx),
            jsonl_url=archive.url_for(jsonl_tx),
        )

    def _confirm(self, result: ArchivePublishResult) -> bool:
        """Fetch both transactions back and compare with the object-store copies."""
        archive = self._require_archive()
        batch = result.batch
        archived_manifest = archive.fetch_by_tx_id(result.manifest_tx_id)
        archived_jsonl = archive.fetch_by_tx_id(result.jsonl_tx_id)
        if archived_manifest is None or archived_jsonl is None:
            return False

        meta = self._datastore.get_snapshot_meta(batch)
        if meta is None:
            raise NotFoundError(f"snapshot batch {batch} not found")
        root = meta["merkle_root"]
        stored_manifest = self._object_store.get_object(manifest_key(batch, root))
        stored_jsonl = self._object_store.get_object(proofs_jsonl_key(batch, root))
        if sha256_hex(archived_manifest) != sha256_hex(stored_manifest or b""):
            raise ArchivePublishError(f"archived manifest for batch {batch} differs from object store")
        if sha256_hex(archived_jsonl) != sha256_hex(stored_jsonl or b""):
            raise ArchivePublishError(f"archived proof listing for batch {batch} differs from object store")
        return True

    def _next_attempt(self, attempts: int) -> int:
        delay = min(self._backoff * (2 ** max(attempts - 1, 0)), self._max_backoff)
        return now_epoch() + delay

    def process_archive_queue(self, limit: int = 10) -> Dict[str, Any]:
        """
        Background job: publish due outbox entries and confirm them.

        Entries move pending -> submitted -> published. A submitted entry is
        confirmed on a later run once the archive serves its data. Failures
        keep the entry pending with exponential back-off.
        """
        self._require_archive()
        summary: Dict[str, Any] = {
            "processed": 0, "published": 0, "submitted": 0, "failed": 0, "results": [],
        }

        for entry in self._datastore.list_due_outbox(now_epoch(), limit):
            batch = entry["batch"]
            attempts = entry["attempts"] + 1
            summary["processed"] += 1
            try:
                if entry["status"] == "submitted" and entry["manifest_txid"] and entry["jsonl_txid"]:
                    archive = self._require_archive()
                    result = ArchivePublishResult(
                        batch=batch,
                        manifest_tx_id=entry["manifest_txid"],
                        jsonl_tx_id=entry["jsonl_txid"],
                        manifest_url=archive.url_for(entry["manifest_txid"]),
                        jsonl_url=archive.url_for(entry["jsonl_txid"]),
                    )
                else:
                    result = self.publish_snapshot_to_archive(batch)
                    self._datastore.update_outbox_entry(
                        batch,
                        status="submitted",
                        manifest_txid=result.manifest_tx_id,
                        jsonl_txid=result.jsonl_tx_id,
                    )

                if self._confirm(result):
                    self._datastore.update_snapshot_meta(
                        batch,
                        archive_txid=result.manifest_tx_id,
                        archive_jsonl_txid=result.jsonl_tx_id,
                        archive_url=result.manifest_url,
                    )
                    self._datastore.update_outbox_entry(
                        batch, status="published", attempts=attempts, last_error=None
                    )
                    audit_log.archive_published(batch, result.manifest_tx_id, result.jsonl_tx_id)
                    summary["published"] += 1
                    summary["results"].append({"status": "published", **result.to_dict()})
                else:
                    self._datastore.update_outbox_entry(
                        batch,
                        status="submitted",
                        attempts=attempts,
                        next_attempt_at=self._next_attempt(attempts),
                    )
                    summary["submitted"] += 1
                    summary["results"].append({"status": "submitted", **result.to_dict()})
            except Exception as e:
                self._datastore.update_outbox_entry(
                    batch,
                    status="pending",
                    attempts=attempts,
                    last_error=str(e),
                    next_attempt_at=self._next_attempt(attempts),
                )
                audit_log.archive_publish_failed(batch, attempts, str(e))
                summary["failed"] += 1
                summary["results"].append({"status": "failed", "batch": batch, "error": str(e)})

        return summary

    # ============================================================
    # Integrity
    # ============================================================

    def verify_snapshot_integrity(self, batch: int) -> MirrorIntegrityCheck:
        """
        Recompute a batch's Merkle root from the datastore and compare it
        with the recorded metadata, the object-store manifest and, once
        archived, the archive manifest.

        Raises:
            NotFoundError: unknown batch
        """
        meta = self._datastore.get_snapshot_meta(batch)
        if meta is None:
            raise NotFoundError(f"snapshot batch {batch} not found")

        errors: List[str] = []
        rows = self._datastore.list_proofs_in_batch(batch)
        recomputed = None
        if rows:
            recomputed = merkle_root([
                proof_digest(parse_proof_bytes(r["proof_json"].encode("utf-8"))) for r in rows
            ])
        hash_match = recomputed == meta["merkle_root"] and len(rows) == meta["count"]
        if not hash_match:
            errors.append(
                f"datastore: recomputed root {recomputed} over {len(rows)} proofs "
                f"does not match recorded root {meta['merkle_root']} over {meta['count']}"
            )

        signature_valid = False
        object_store_integrity = False
        try:
            raw = self._object_store.get_object(manifest_key(batch, meta["merkle_root"]))
        except Exception as e:
            raw = None
            errors.append(f"object_store: unavailable ({e})")
        else:
            if raw is None:
                errors.append("object_store: manifest missing")
        if raw is not None:
            manifest = json.loads(raw.decode("utf-8"))
            signature_valid, reason = self.verify_manifest(manifest)
            if not signature_valid:
                errors.append(f"object_store: {reason}")
            object_store_integrity = (
                signature_valid and manifest.get("merkle_root") == meta["merkle_root"]
            )
            if signature_valid and not object_store_integrity:
                errors.append("object_store: manifest root differs from recorded root")

        archive_integrity: Optional[bool] = None
        if meta.get("archive_txid") and self._archive is not None:
            archive_integrity = False
            try:
                archived = self._archive.fetch_by_tx_id(meta["archive_txid"])
            except Exception as e:
                archived = None
                errors.append(f"archive: unavailable ({e})")
            else:
                if archived is None:
                    errors.append("archive: manifest not retrievable")
            if archived is not None:
                archived_manifest = json.loads(archived.decode("utf-8"))
                ok, reason = self.verify_manifest(archived_manifest)
                archive_integrity = ok and archived_manifest.get("merkle_root") == meta["merkle_root"]
                if not archive_integrity:
                    errors.append(f"archive: {reason or 'manifest root differs from recorded root'}")

        return MirrorIntegrityCheck(
            batch=batch,
            object_store_integrity=object_store_integrity,
            archive_integrity=archive_integrity,
            hash_match=hash_match,
            signature_valid=signature_valid,
            errors=errors,
        )
