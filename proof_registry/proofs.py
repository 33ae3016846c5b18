"""
Proof document model.

A proof binds a file hash to a subject, a signing time and an Ed25519
signature over the canonical form of every other field.
"""

import json
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple

from .canonicalization import canonicalize
from .errors import InvalidInputError
from .keys import check_signature
from .util import is_valid_hash, sha256_hex

SCHEMA_VERSION = 1
SUBJECT_FIELDS = ("type", "namespace", "id")


@dataclass
class SignedProof:
    id: str
    hash: str
    subject: Dict[str, str]
    signed_at: str
    signer_fingerprint: str
    signature: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    schema_version: int = SCHEMA_VERSION

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "hash": self.hash,
            "subject": dict(self.subject),
            "metadata": dict(self.metadata),
            "signed_at": self.signed_at,
            "signer_fingerprint": self.signer_fingerprint,
            "schema_version": self.schema_version,
            "signature": self.signature,
        }

    def to_json_bytes(self) -> bytes:
        return canonicalize(self.to_dict())

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SignedProof":
        return cls(
            id=data["id"],
            hash=data["hash"],
            subject=data["subject"],
            metadata=data.get("metadata") or {},
            signed_at=data["signed_at"],
            signer_fingerprint=data["signer_fingerprint"],
            schema_version=data.get("schema_version", SCHEMA_VERSION),
            signature=data["signature"],
        )


def proof_body_for_signing(proof: Dict[str, Any]) -> Dict[str, Any]:
    """Proof minus its signature."""
    body = dict(proof)
    body.pop("signature", None)
    return body


def proof_digest(proof: Dict[str, Any]) -> str:
    """SHA-256 of the canonical signing payload; the Merkle leaf for a proof."""
    return sha256_hex(canonicalize(proof_body_for_signing(proof)))


def parse_proof_bytes(raw: bytes) -> Dict[str, Any]:
    """
    Decode a stored proof document.

    Raises:
        ValueError: if the bytes are not a JSON object
    """
    doc = json.loads(raw.decode("utf-8") if isinstance(raw, bytes) else raw)
    if not isinstance(doc, dict):
        raise ValueError("proof document is not a JSON object")
    return doc


def check_proof_signature(
    proof: Dict[str, Any],
    trust_store: Dict[str, Any]
) -> Tuple[bool, Optional[str]]:
    """Verify a proof's signature against the trust store. Never raises."""
    try:
        payload = canonicalize(proof_body_for_signing(proof))
    except ValueError as e:
        return False, f"proof not canonicalizable: {e}"
    return check_signature(
        trust_store,
        payload,
        proof.get("signature", ""),
        proof.get("signer_fingerprint", ""),
    )


def validate_file_hash(value: Any) -> str:
    """Return the hash if well formed, else raise InvalidInputError."""
    if not isinstance(value, str) or not value:
        raise InvalidInputError("hash is required")
    if len(value) != 64:
        raise InvalidInputError(f"hash must be 64 hex characters, got {len(value)}")
    if not is_valid_hash(value):
        raise InvalidInputError("hash must be lowercase hexadecimal")
    return value


def validate_subject(subject: Any) -> Dict[str, str]:
    if not isinstance(subject, dict):
        raise InvalidInputError("subject must be an object")
    for name in SUBJECT_FIELDS:
        value = subject.get(name)
        if not isinstance(value, str) or not value.strip():
            raise InvalidInputError(f"subject.{name} must be a non-empty string")
    return {name: subject[name] for name in SUBJECT_FIELDS}


def validate_metadata(metadata: Any) -> Dict[str, Any]:
    if metadata is None:
        return {}
    if not isinstance(metadata, dict):
        raise InvalidInputError("metadata must be an object")
    try:
        canonicalize(metadata)
    except ValueError as e:
        raise InvalidInputError(f"metadata is not valid JSON: {e}") from e
    return dict(metadata)
