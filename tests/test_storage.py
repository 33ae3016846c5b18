import io
import json

import pytest
import requests
from botocore.exceptions import ClientError

from proof_registry.errors import ArchivePublishError, InvalidInputError
from proof_registry.registry import build_registry
from proof_registry.storage import (
    IMMUTABLE_CACHE_CONTROL,
    MUTABLE_CACHE_CONTROL,
    FilesystemArchiveStore,
    FilesystemObjectStore,
    HttpArchiveStore,
    S3ObjectStore,
    manifest_key,
    proof_hash_key,
    proof_key,
)
from proof_registry.util import sha256_hex


class FakeS3:
    def __init__(self):
        self.objects = {}
        self.put_calls = []

    def put_object(self, **kwargs):
        self.put_calls.append(kwargs)
        self.objects[(kwargs["Bucket"], kwargs["Key"])] = kwargs["Body"]

    def get_object(self, Bucket, Key):
        if Key.endswith("forbidden.json"):
            raise ClientError({"Error": {"Code": "AccessDenied", "Message": "denied"}}, "GetObject")
        if (Bucket, Key) not in self.objects:
            raise ClientError({"Error": {"Code": "NoSuchKey", "Message": "missing"}}, "GetObject")
        return {"Body": io.BytesIO(self.objects[(Bucket, Key)])}


class FakeResponse:
    def __init__(self, status_code=200, payload=None, content=b""):
        self.status_code = status_code
        self._payload = payload
        self.content = content

    def json(self):
        if self._payload is None:
            raise ValueError("no json")
        return self._payload

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")


class FakeSession:
    def __init__(self, responses):
        self.responses = list(responses)
        self.calls = []

    def post(self, url, **kwargs):
        self.calls.append(("POST", url, kwargs))
        return self.responses.pop(0)

    def get(self, url, **kwargs):
        self.calls.append(("GET", url, kwargs))
        return self.responses.pop(0)


def test_filesystem_object_store_roundtrip(tmp_path):
    store = FilesystemObjectStore(str(tmp_path))
    url = store.put_object("proofs/abc.json", b"{}")

    assert url.startswith("file://")
    assert store.get_object("proofs/abc.json") == b"{}"
    assert store.get_object("proofs/missing.json") is None


@pytest.mark.parametrize("key", ["../escape.json", "/etc/passwd", "proofs/../../x"])
def test_filesystem_object_store_rejects_escaping_keys(tmp_path, key):
    store = FilesystemObjectStore(str(tmp_path))
    with pytest.raises(InvalidInputError):
        store.put_object(key, b"x")


def test_s3_put_is_immutable_and_prefixed():
    s3 = FakeS3()
    store = S3ObjectStore("proof-bucket", prefix="/registry/", client=s3)
    url = store.put_object("snapshots/1.hashes.txt", b"aa\n", "text/plain", immutable=True)

    call = s3.put_calls[0]
    assert call["Key"] == "registry/snapshots/1.hashes.txt"
    assert call["CacheControl"] == IMMUTABLE_CACHE_CONTROL
    assert call["ContentType"] == "text/plain"
    assert url == "s3://proof-bucket/registry/snapshots/1.hashes.txt"
    assert store.get_object("snapshots/1.hashes.txt") == b"aa\n"


def test_s3_rewritable_keys_are_not_cached_forever():
    s3 = FakeS3()
    store = S3ObjectStore("proof-bucket", client=s3)
    store.put_object("proofs/by-hash/ab.json", b"{}")

    assert s3.put_calls[0]["CacheControl"] == MUTABLE_CACHE_CONTROL


def test_issuance_and_snapshot_cache_headers(settings):
    s3 = FakeS3()
    reg = build_registry(settings, object_store=S3ObjectStore("proof-bucket", client=s3))
    try:
        subject = {"type": "document", "namespace": "acme", "id": "cache"}
        proofs = [reg.issuer.create_proof(sha256_hex(f"cache-{i}"), subject) for i in range(4)]
        reissued = reg.issuer.create_proof(proofs[0].hash, subject)
        result = reg.batcher.check_and_create_snapshot()
    finally:
        reg.datastore.close_connection()

    headers = {call["Key"]: call["CacheControl"] for call in s3.put_calls}
    assert headers[proof_key(proofs[0].id)] == IMMUTABLE_CACHE_CONTROL
    assert headers[proof_key(reissued.id)] == IMMUTABLE_CACHE_CONTROL
    assert headers[proof_hash_key(proofs[0].hash)] == MUTABLE_CACHE_CONTROL
    assert headers[manifest_key(1, result.merkle_root)] == IMMUTABLE_CACHE_CONTROL
    assert json.loads(s3.objects[("proof-bucket", proof_hash_key(proofs[0].hash))])["id"] == reissued.id


def test_s3_missing_key_is_none_other_errors_raise():
    store = S3ObjectStore("proof-bucket", client=FakeS3())
    assert store.get_object("proofs/missing.json") is None
    with pytest.raises(ClientError):
        store.get_object("proofs/forbidden.json")


def test_filesystem_archive_is_content_addressed(tmp_path):
    archive = FilesystemArchiveStore(str(tmp_path))
    tags = {"App": "proof-registry", "Batch": "1", "Artifact": "manifest"}

    tx = archive.publish_transaction(b"manifest", tags)
    assert len(tx) == 43
    assert archive.publish_transaction(b"manifest", tags) == tx
    assert archive.publish_transaction(b"manifest", {**tags, "Batch": "2"}) != tx
    assert archive.fetch_by_tx_id(tx) == b"manifest"
    assert archive.fetch_by_tx_id("unknown") is None


def test_filesystem_archive_finds_by_tag_subset(tmp_path):
    archive = FilesystemArchiveStore(str(tmp_path))
    tx = archive.publish_transaction(b"data", {"App": "proof-registry", "Batch": "3", "Extra": "x"})

    assert archive.find_transactions({"Batch": "3"}) == [tx]
    assert archive.is_published({"App": "proof-registry", "Batch": "3"})
    assert archive.find_transactions({"Batch": "4"}) == []


def test_http_archive_upload_sends_tags():
    session = FakeSession([FakeResponse(payload={"id": "tx-123"})])
    archive = HttpArchiveStore(
        "https://gateway.example/", "https://upload.example/tx", api_key="k", session=session
    )
    tx = archive.publish_transaction(b"data", {"App": "proof-registry", "Content-Type": "application/json"})

    assert tx == "tx-123"
    _, url, kwargs = session.calls[0]
    assert url == "https://upload.example/tx"
    assert kwargs["headers"]["Authorization"] == "Bearer k"
    assert kwargs["headers"]["Content-Type"] == "application/json"
    assert {"name": "App", "value": "proof-registry"} in json.loads(kwargs["headers"]["X-Tags"])


@pytest.mark.parametrize("response", [
    FakeResponse(status_code=503),
    FakeResponse(payload={}),
    FakeResponse(payload=None),
])
def test_http_archive_upload_failures(response):
    archive = HttpArchiveStore("https://gw", "https://up", session=FakeSession([response]))
    with pytest.raises(ArchivePublishError):
        archive.publish_transaction(b"data", {"App": "proof-registry"})


def test_http_archive_graphql_lookup():
    payload = {"data": {"transactions": {"edges": [{"node": {"id": "tx-a"}}, {"node": {"id": "tx-b"}}]}}}
    session = FakeSession([FakeResponse(payload=payload)])
    archive = HttpArchiveStore("https://gw", "https://up", session=session)

    assert archive.find_transactions({"Batch": "1"}) == ["tx-a", "tx-b"]
    _, url, kwargs = session.calls[0]
    assert url == "https://gw/graphql"
    assert kwargs["json"]["variables"] == {"tags": [{"name": "Batch", "values": ["1"]}]}


def test_http_archive_fetch():
    session = FakeSession([FakeResponse(content=b"payload"), FakeResponse(status_code=404)])
    archive = HttpArchiveStore("https://gw", "https://up", session=session)

    assert archive.fetch_by_tx_id("tx-a") == b"payload"
    assert archive.fetch_by_tx_id("tx-b") is None
    assert session.calls[0][1] == "https://gw/tx-a"
