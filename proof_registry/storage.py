"""
Mirror backends: the primary object store and the permanent archive.

Object store: S3 (production) or a directory tree (local registry, dev).
Archive: an Arweave-compatible HTTP gateway or a content-addressed,
write-once directory.
"""

import json
import os
import threading
from pathlib import Path
from typing import Dict, List, Optional

from .canonicalization import canonicalize
from .errors import ArchivePublishError, InvalidInputError
from .util import b64url_encode, sha256_hex

IMMUTABLE_CACHE_CONTROL = "public, max-age=31536000, immutable"
MUTABLE_CACHE_CONTROL = "no-cache"


# ============================================================
# Key layout
# ============================================================

def proof_key(proof_id: str) -> str:
    return f"proofs/{proof_id}.json"


def proof_hash_key(file_hash: str) -> str:
    return f"proofs/by-hash/{file_hash}.json"


# Snapshot artifacts are keyed by batch and Merkle root; committed keys are never rewritten.

def manifest_key(batch: int, root: str) -> str:
    return f"snapshots/{batch}/{root}.manifest.json"


def hashes_key(batch: int, root: str) -> str:
    return f"snapshots/{batch}/{root}.hashes.txt"


def proofs_jsonl_key(batch: int, root: str) -> str:
    return f"snapshots/{batch}/{root}.proofs.jsonl.gz"


# ============================================================
# Object store
# ============================================================

class ObjectStore:
    def put_object(
        self,
        key: str,
        data: bytes,
        content_type: str = "application/json",
        immutable: bool = False
    ) -> str:
        """
        Store bytes under key and return the object's URL.

        `immutable` marks keys that are written once and never rewritten,
        so they may be cached indefinitely.
        """
        raise NotImplementedError

    def get_object(self, key: str) -> Optional[bytes]:
        """Return the object's bytes, or None if it does not exist."""
        raise NotImplementedError

    def url_for(self, key: str) -> str:
        raise NotImplementedError


class FilesystemObjectStore(ObjectStore):
    """Objects as files under a root directory."""

    def __init__(self, root: str):
        self.root = Path(root)

    def _path(self, key: str) -> Path:
        if key.startswith("/") or ".." in key.split("/"):
            raise InvalidInputError(f"invalid object key: {key}")
        return self.root / key

    def put_object(
        self,
        key: str,
        data: bytes,
        content_type: str = "application/json",
        immutable: bool = False
    ) -> str:
        path = self._path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_name(path.name + ".tmp")
        tmp.write_bytes(data)
        os.replace(tmp, path)
        return self.url_for(key)

    def get_object(self, key: str) -> Optional[bytes]:
        path = self._path(key)
        try:
            return path.read_bytes()
        except FileNotFoundError:
            return None

    def url_for(self, key: str) -> str:
        return self._path(key).resolve().as_uri()


class S3ObjectStore(ObjectStore):
    """
    Amazon S3 object store.

    Write-once keys carry an immutable Cache-Control header; keys that can
    be rewritten are served with no-cache.
    Connect and read timeouts are bounded so a slow bucket counts as a
    source failure rather than a hung request.
    """

    def __init__(
        self,
        bucket: str,
        prefix: str = "",
        region: Optional[str] = None,
        timeout_seconds: float = 5.0,
        client=None
    ):
        self.bucket = bucket
        self.prefix = prefix.strip("/") + "/" if prefix.strip("/") else ""
        self._region = region
        self._timeout = timeout_seconds
        self._client = client

    def _get_client(self):
        """Lazy-load boto3 client."""
        if self._client is None:
            import boto3
            from botocore.config import Config
            self._client = boto3.client(
                "s3",
                region_name=self._region,
                config=Config(
                    connect_timeout=self._timeout,
                    read_timeout=self._timeout,
                    retries={"max_attempts": 2},
                ),
            )
        return self._client

    def put_object(
        self,
        key: str,
        data: bytes,
        content_type: str = "application/json",
        immutable: bool = False
    ) -> str:
        self._get_client().put_object(
            Bucket=self.bucket,
            Key=self.prefix + key,
            Body=data,
            ContentType=content_type,
            CacheControl=IMMUTABLE_CACHE_CONTROL if immutable else MUTABLE_CACHE_CONTROL,
        )
        return self.url_for(key)

    def get_object(self, key: str) -> Optional[bytes]:
        from botocore.exceptions import ClientError

        try:
            resp = self._get_client().get_object(Bucket=self.bucket, Key=self.prefix + key)
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code", "")
            if code in ("NoSuchKey", "404", "NotFound"):
                return None
            raise
        return resp["Body"].read()

    def url_for(self, key: str) -> str:
        return f"s3://{self.bucket}/{self.prefix}{key}"


# ============================================================
# Permanent archive
# ============================================================

class ArchiveStore:
    def publish_transaction(self, data: bytes, tags: Dict[str, str]) -> str:
        """Publish bytes with tags and return the transaction id."""
        raise NotImplementedError

    def find_transactions(self, tags: Dict[str, str]) -> List[str]:
        """Transaction ids whose tags include all of the given ones."""
        raise NotImplementedError

    def is_published(self, tags: Dict[str, str]) -> bool:
        return bool(self.find_transactions(tags))

    def fetch_by_tx_id(self, tx_id: str) -> Optional[bytes]:
        """Transaction data, or None if the archive does not serve it (yet)."""
        raise NotImplementedError

    def url_for(self, tx_id: str) -> str:
        raise NotImplementedError


class FilesystemArchiveStore(ArchiveStore):
    """
    Content-addressed, write-once archive in a directory.

    Transaction ids are 43-character base64url digests of data and tags,
    so republishing identical bytes yields the same transaction.
    """

    def __init__(self, root: str):
        self.root = Path(root)
        self._lock = threading.Lock()

    def _data_path(self, tx_id: str) -> Path:
        return self.root / f"{tx_id}.bin"

    def _tags_path(self, tx_id: str) -> Path:
        return self.root / f"{tx_id}.tags.json"

    def publish_transaction(self, data: bytes, tags: Dict[str, str]) -> str:
        digest = bytes.fromhex(sha256_hex(data + canonicalize(tags)))
        tx_id = b64url_encode(digest)
        with self._lock:
            self.root.mkdir(parents=True, exist_ok=True)
            if not self._data_path(tx_id).exists():
                self._data_path(tx_id).write_bytes(data)
                self._tags_path(tx_id).write_text(json.dumps(tags, sort_keys=True), encoding="utf-8")
        return tx_id

    def find_transactions(self, tags: Dict[str, str]) -> List[str]:
        if not self.root.exists():
            return []
        found = []
        for path in sorted(self.root.glob("*.tags.json")):
            stored = json.loads(path.read_text(encoding="utf-8"))
            if all(stored.get(k) == v for k, v in tags.items()):
                found.append(path.name[:-len(".tags.json")])
        return found

    def fetch_by_tx_id(self, tx_id: str) -> Optional[bytes]:
        if "/" in tx_id or tx_id.startswith("."):
            return None
        try:
            return self._data_path(tx_id).read_bytes()
        except FileNotFoundError:
            return None

    def url_for(self, tx_id: str) -> str:
        return self._data_path(tx_id).resolve().as_uri()


class HttpArchiveStore(ArchiveStore):
    """
    Arweave-compatible archive reached over HTTP.

    Uploads go to a bundler endpoint that returns the transaction id.
    Tag lookups use the gateway's GraphQL endpoint and data is read back
    from {gateway}/{tx_id}.
    """

    GRAPHQL_QUERY = (
        "query($tags: [TagFilter!]) {"
        " transactions(tags: $tags, first: 10) { edges { node { id } } } }"
    )

    def __init__(
        self,
        gateway_url: str,
        upload_url: str,
        api_key: str = "",
        timeout_seconds: float = 30.0,
        session=None
    ):
        import requests

        self.gateway_url = gateway_url.rstrip("/")
        self.upload_url = upload_url
        self._api_key = api_key
        self._timeout = timeout_seconds
        self._session = session or requests.Session()

    def publish_transaction(self, data: bytes, tags: Dict[str, str]) -> str:
        import requests

        headers = {
            "Content-Type": tags.get("Content-Type", "application/octet-stream"),
            "X-Tags": json.dumps([{"name": k, "value": v} for k, v in tags.items()]),
        }
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        try:
            r = self._session.post(self.upload_url, data=data, headers=headers, timeout=self._timeout)
            r.raise_for_status()
            tx_id = r.json().get("id")
        except (requests.RequestException, ValueError) as e:
            raise ArchivePublishError(f"archive upload failed: {e}") from e
        if not tx_id:
            raise ArchivePublishError("archive upload returned no transaction id")
        return tx_id

    def find_transactions(self, tags: Dict[str, str]) -> List[str]:
        variables = {"tags": [{"name": k, "values": [v]} for k, v in tags.items()]}
        r = self._session.post(
            f"{self.gateway_url}/graphql",
            json={"query": self.GRAPHQL_QUERY, "variables": variables},
            timeout=self._timeout,
        )
        r.raise_for_status()
        edges = r.json().get("data", {}).get("transactions", {}).get("edges", [])
        return [edge["node"]["id"] for edge in edges]

    def fetch_by_tx_id(self, tx_id: str) -> Optional[bytes]:
        r = self._session.get(self.url_for(tx_id), timeout=self._timeout)
        if r.status_code == 404:
            return None
        r.raise_for_status()
        return r.content

    def url_for(self, tx_id: str) -> str:
        return f"{self.gateway_url}/{tx_id}"


# ============================================================
# Factories
# ============================================================

def get_object_store(settings) -> ObjectStore:
    if settings.object_store_backend == "s3":
        if not settings.s3_bucket:
            raise ValueError("REGISTRY_S3_BUCKET required for s3 object store")
        return S3ObjectStore(
            bucket=settings.s3_bucket,
            prefix=settings.s3_prefix,
            region=settings.aws_region,
            timeout_seconds=settings.source_timeout_seconds,
        )
    return FilesystemObjectStore(settings.object_store_dir)


def get_local_registry(settings) -> Optional[ObjectStore]:
    if not settings.local_registry_dir:
        return None
    return FilesystemObjectStore(settings.local_registry_dir)


def get_archive_store(settings) -> Optional[ArchiveStore]:
    backend = settings.archive_backend
    if backend == "http":
        if not settings.archive_upload_url:
            raise ValueError("ARCHIVE_UPLOAD_URL required for http archive")
        return HttpArchiveStore(
            gateway_url=settings.archive_gateway_url,
            upload_url=settings.archive_upload_url,
            api_key=settings.archive_api_key,
            timeout_seconds=settings.archive_timeout_seconds,
        )
    if backend == "filesystem":
        return FilesystemArchiveStore(settings.archive_dir)
    return None
