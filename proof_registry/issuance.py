"""
Proof issuance.

Signs a proof, stores it in the authoritative datastore and mirrors the
document to the primary object store and the local registry.
"""

import json
import logging
from typing import Any, BinaryIO, Dict, List, Optional

from .canonicalization import canonicalize
from .errors import InvalidInputError, SigningKeyError
from .keys import KeyProvider
from .logging_config import audit_log
from .proofs import (
    SCHEMA_VERSION,
    SignedProof,
    proof_body_for_signing,
    validate_file_hash,
    validate_metadata,
    validate_subject,
)
from .storage import ObjectStore, proof_hash_key, proof_key
from .util import hash_stream, is_valid_proof_id, new_proof_id, utc_now_iso

logger = logging.getLogger(__name__)


class ProofIssuer:
    def __init__(
        self,
        datastore,
        keys: KeyProvider,
        mirrors: Optional[List[ObjectStore]] = None
    ):
        self._datastore = datastore
        self._keys = keys
        self._mirrors = [m for m in (mirrors or []) if m is not None]

    def create_proof(
        self,
        file_hash: str,
        subject: Dict[str, Any],
        metadata: Optional[Dict[str, Any]] = None
    ) -> SignedProof:
        """
        Issue a signed proof for a file hash.

        Raises:
            InvalidInputError: malformed hash, subject or metadata
            SigningKeyError: the active key cannot sign
        """
        file_hash = validate_file_hash(file_hash)
        subject = validate_subject(subject)
        metadata = validate_metadata(metadata)

        fingerprint = self._keys.get_fingerprint()
        body = {
            "id": new_proof_id(),
            "hash": file_hash,
            "subject": subject,
            "metadata": metadata,
            "signed_at": utc_now_iso(),
            "signer_fingerprint": fingerprint,
            "schema_version": SCHEMA_VERSION,
        }
        payload = canonicalize(proof_body_for_signing(body))
        try:
            signer, sig_b64 = self._keys.sign_proof_payload(payload)
        except SigningKeyError:
            raise
        except Exception as e:
            raise SigningKeyError(f"signing failed: {e}") from e
        if signer != fingerprint:
            raise SigningKeyError("signer fingerprint changed during issuance")

        proof = SignedProof.from_dict({**body, "signature": sig_b64})
        document = proof.to_json_bytes()

        self._datastore.insert_proof(proof.to_dict(), document.decode("utf-8"))
        self._mirror(proof, document)

        audit_log.proof_issued(proof.id, proof.hash, fingerprint)
        return proof

    def create_proof_from_stream(
        self,
        stream: BinaryIO,
        subject: Dict[str, Any],
        metadata: Optional[Dict[str, Any]] = None
    ) -> SignedProof:
        return self.create_proof(hash_stream(stream), subject, metadata)

    def get_proof(self, proof_id: str) -> Optional[Dict[str, Any]]:
        if not is_valid_proof_id(proof_id):
            raise InvalidInputError("proof id must be a 26-character ULID")
        row = self._datastore.get_proof_by_id(proof_id)
        if row is None:
            return None
        return SignedProof.from_dict(json.loads(row["proof_json"])).to_dict()

    def _mirror(self, proof: SignedProof, document: bytes) -> None:
        # Best effort: snapshot publication re-mirrors every batched proof
        for store in self._mirrors:
            try:
                store.put_object(proof_key(proof.id), document, immutable=True)
                store.put_object(proof_hash_key(proof.hash), document)
            except Exception as e:
                logger.warning(
                    "proof mirror write failed",
                    extra={"extra_fields": {"proof_id": proof.id, "error": str(e)}},
                )
