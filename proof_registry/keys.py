"""
Key management module for the proof registry.

Provides Ed25519 signing providers (file-based keys and AWS KMS), the
fingerprint-addressed trust store, and signature checks that never raise.
"""

import json
import os
import threading
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional, Tuple

from nacl.exceptions import BadSignatureError
from nacl.signing import SigningKey, VerifyKey

from .errors import SigningKeyError
from .util import b64d, b64e, sha256_hex

# Active key plus the previous key during a rotation window
MAX_TRUSTED_KEYS = 2

# DER SubjectPublicKeyInfo prefix for Ed25519 keys returned by KMS
_ED25519_SPKI_PREFIX_LEN = 12


def fingerprint_for(public_key: bytes) -> str:
    """Lowercase hex SHA-256 of the raw 32-byte public key."""
    return sha256_hex(bytes(public_key))


class _TrustStoreFile:
    """Trust store JSON reloaded when its modification time changes."""

    def __init__(self, path: str):
        self._path = path
        self._lock = threading.RLock()
        self._cache: Optional[Dict[str, Any]] = None
        self._mtime: float = 0

    def load(self) -> Dict[str, Any]:
        with self._lock:
            try:
                mtime = os.path.getmtime(self._path)
                if self._cache is None or mtime > self._mtime:
                    with open(self._path, "r", encoding="utf-8") as f:
                        self._cache = json.load(f)
                    self._mtime = mtime
            except FileNotFoundError:
                if self._cache is None:
                    raise
            return self._cache


class KeyProvider(ABC):
    """Abstract interface for proof signing and trust store retrieval."""

    @abstractmethod
    def sign_proof_payload(self, payload: bytes) -> Tuple[str, str]:
        """
        Sign a payload and return (fingerprint, signature_b64).

        Args:
            payload: The canonical JSON bytes to sign

        Returns:
            Tuple of (signer_fingerprint, base64_encoded_signature)
        """

    @abstractmethod
    def get_trust_store(self) -> Dict[str, Any]:
        """
        Get the trust store containing public keys.

        Returns:
            Dict with proof_signing_keys mapping fingerprint to public key b64
        """

    @abstractmethod
    def get_fingerprint(self) -> str:
        """Fingerprint of the active signing key."""


class FileKeyProvider(KeyProvider):
    """
    File-based key provider using an Ed25519 key stored in a JSON file.

    Thread-safe with cached trust store loading.
    """

    def __init__(self, signing_key_path: str, trust_store_path: str):
        try:
            with open(signing_key_path, "r", encoding="utf-8") as f:
                raw = json.load(f)
            self._sk = SigningKey(b64d(raw["private_key_b64"]))
        except FileNotFoundError as e:
            raise SigningKeyError(f"signing key not found: {signing_key_path}") from e
        except (KeyError, ValueError, TypeError) as e:
            raise SigningKeyError(f"signing key unreadable: {signing_key_path}") from e

        self._fingerprint = fingerprint_for(bytes(self._sk.verify_key))
        self._trust = _TrustStoreFile(trust_store_path)

    def sign_proof_payload(self, payload: bytes) -> Tuple[str, str]:
        sig = self._sk.sign(payload).signature
        return self._fingerprint, b64e(sig)

    def get_trust_store(self) -> Dict[str, Any]:
        return self._trust.load()

    def get_fingerprint(self) -> str:
        return self._fingerprint


class AwsKmsEd25519Provider(KeyProvider):
    """
    AWS KMS signing provider using Ed25519 keys.

    Requires a SIGN_VERIFY KMS key with ED25519 support.
    Uses KMS Sign API with SigningAlgorithm ED25519_SHA_512 and MessageType RAW.

    Docs: https://docs.aws.amazon.com/kms/latest/APIReference/API_Sign.html
    """

    def __init__(
        self,
        kms_key_id: str,
        trust_store_path: str,
        region: Optional[str] = None,
        client=None
    ):
        self._kms_key_id = kms_key_id
        self._region = region
        self._client = client
        self._fingerprint: Optional[str] = None
        self._lock = threading.RLock()
        self._trust = _TrustStoreFile(trust_store_path)

    def _get_client(self):
        """Lazy-load boto3 client."""
        if self._client is None:
            import boto3
            self._client = boto3.client("kms", region_name=self._region)
        return self._client

    def sign_proof_payload(self, payload: bytes) -> Tuple[str, str]:
        client = self._get_client()
        resp = client.sign(
            KeyId=self._kms_key_id,
            Message=payload,
            MessageType="RAW",
            SigningAlgorithm="ED25519_SHA_512"
        )
        return self.get_fingerprint(), b64e(resp["Signature"])

    def get_trust_store(self) -> Dict[str, Any]:
        return self._trust.load()

    def get_fingerprint(self) -> str:
        with self._lock:
            if self._fingerprint is None:
                resp = self._get_client().get_public_key(KeyId=self._kms_key_id)
                der = resp["PublicKey"]
                self._fingerprint = fingerprint_for(der[_ED25519_SPKI_PREFIX_LEN:])
            return self._fingerprint


def trusted_keys(trust_store: Dict[str, Any]) -> Dict[str, str]:
    """
    Return the fingerprint -> public key mapping of a trust store.

    Raises:
        SigningKeyError: if more keys are trusted than a rotation window allows
    """
    keys = trust_store.get("proof_signing_keys", {}) or {}
    if len(keys) > MAX_TRUSTED_KEYS:
        raise SigningKeyError(
            f"trust store lists {len(keys)} keys; at most {MAX_TRUSTED_KEYS} may be active"
        )
    return dict(keys)


def check_signature(
    trust_store: Dict[str, Any],
    payload: bytes,
    signature_b64: str,
    fingerprint: str
) -> Tuple[bool, Optional[str]]:
    """
    Verify an Ed25519 signature against the key selected by fingerprint.

    Returns:
        (True, None) when valid, otherwise (False, reason). Never raises.
    """
    try:
        keys = trusted_keys(trust_store)
    except SigningKeyError as e:
        return False, str(e)

    public_key_b64 = keys.get(fingerprint) if isinstance(fingerprint, str) else None
    if not public_key_b64:
        return False, "unknown signer fingerprint"

    try:
        sig = b64d(signature_b64)
    except (ValueError, TypeError, AttributeError):
        return False, "malformed signature encoding"

    try:
        vk = VerifyKey(b64d(public_key_b64))
    except Exception:
        return False, "malformed public key"

    try:
        vk.verify(payload, sig)
        return True, None
    except BadSignatureError:
        return False, "signature mismatch"
    except Exception:
        return False, "malformed signature encoding"


def verify_signature(
    trust_store: Dict[str, Any],
    payload: bytes,
    signature_b64: str,
    fingerprint: str
) -> bool:
    """True if the signature is valid under the fingerprinted key."""
    ok, _ = check_signature(trust_store, payload, signature_b64, fingerprint)
    return ok


def generate_signing_key(
    signing_key_path: str,
    trust_store_path: str,
    rotate: bool = False
) -> str:
    """
    Generate a new Ed25519 signing key and publish its public key.

    With rotate=True the previously active key stays trusted alongside the
    new one; any older key is dropped. Returns the new fingerprint.
    """
    sk = SigningKey.generate()
    pub = bytes(sk.verify_key)
    fp = fingerprint_for(pub)

    trust: Dict[str, Any] = {"trust_store_id": "proof-registry", "proof_signing_keys": {}}
    if rotate and os.path.exists(trust_store_path):
        with open(trust_store_path, "r", encoding="utf-8") as f:
            trust = json.load(f)
        previous = trust.get("active_fingerprint")
        old_keys = trust.get("proof_signing_keys", {})
        trust["proof_signing_keys"] = (
            {previous: old_keys[previous]} if previous in old_keys else {}
        )

    trust["proof_signing_keys"][fp] = b64e(pub)
    trust["active_fingerprint"] = fp

    for path in (signing_key_path, trust_store_path):
        parent = os.path.dirname(path)
        if parent:
            os.makedirs(parent, exist_ok=True)

    with open(signing_key_path, "w", encoding="utf-8") as f:
        json.dump({"fingerprint": fp, "private_key_b64": b64e(bytes(sk))}, f, indent=2)
    with open(trust_store_path, "w", encoding="utf-8") as f:
        json.dump(trust, f, indent=2)

    return fp


def get_key_provider(
    signer_type: str = "file",
    signing_key_path: str = "secrets/proof_signing_key.json",
    trust_store_path: str = "trust/trust_store.json",
    kms_key_id: Optional[str] = None,
    kms_region: Optional[str] = None
) -> KeyProvider:
    """
    Factory function to create the appropriate key provider.

    Args:
        signer_type: "file" or "aws_kms"
        signing_key_path: Path to signing key JSON (for file provider)
        trust_store_path: Path to trust store JSON
        kms_key_id: AWS KMS key ID (for KMS provider)
        kms_region: AWS region (for KMS provider)

    Raises:
        SigningKeyError: if the configured key cannot be loaded
    """
    if signer_type == "aws_kms":
        if not kms_key_id:
            raise SigningKeyError("AWS_KMS_KEY_ID required for aws_kms signer")
        return AwsKmsEd25519Provider(
            kms_key_id=kms_key_id,
            trust_store_path=trust_store_path,
            region=kms_region
        )

    return FileKeyProvider(
        signing_key_path=signing_key_path,
        trust_store_path=trust_store_path
    )
