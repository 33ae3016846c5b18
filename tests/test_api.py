from proof_registry.util import sha256_hex

EMPTY_SHA256 = "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"
SUBJECT = {"type": "document", "namespace": "acme", "id": "contract-42"}


def create(client, file_hash, metadata=None):
    return client.post("/proof/create", json={
        "hash": file_hash, "subject": SUBJECT, "metadata": metadata or {}
    })


def fill_batch(client, n=4):
    for i in range(n):
        assert create(client, sha256_hex(f"api-{i}")).status_code == 200


# TV-01: Health reports the active signer
def test_tv01_health(client, registry):
    r = client.get("/health")
    assert r.status_code == 200
    body = r.json()
    assert body["status"] == "ok"
    assert body["signer"] == registry.keys.get_fingerprint()
    assert body["archive_enabled"] is True


# TV-02: Issue then fetch a proof
def test_tv02_issue_and_fetch(client):
    r = create(client, EMPTY_SHA256, {"filename": "empty.txt"})
    assert r.status_code == 200
    proof = r.json()
    assert proof["hash"] == EMPTY_SHA256
    assert proof["subject"] == SUBJECT
    assert proof["schema_version"] == 1
    assert len(proof["id"]) == 26

    fetched = client.get(f"/proof/{proof['id']}")
    assert fetched.status_code == 200
    assert fetched.json() == proof


# TV-03: Malformed hash -> 400 with reason
def test_tv03_malformed_hash(client):
    r = create(client, "ABC")
    assert r.status_code == 400
    assert r.json()["detail"] == "hash must be 64 hex characters, got 3"

    r = create(client, "F" * 64)
    assert r.status_code == 400
    assert r.json()["detail"] == "hash must be lowercase hexadecimal"


# TV-04: Missing subject field -> 422 from request validation
def test_tv04_missing_subject(client):
    r = client.post("/proof/create", json={"hash": EMPTY_SHA256, "subject": {"type": "x"}})
    assert r.status_code == 422


# TV-05: Unknown and malformed proof ids
def test_tv05_unknown_proof(client):
    assert client.get("/proof/01ARZ3NDEKTSV4RRFFQ69G5FAV").status_code == 404
    assert client.get("/proof/not-a-ulid").status_code == 400


# TV-06: Verify by query, body and upload
def test_tv06_verify_paths(client, registry):
    content = b"signed board minutes\n"
    create(client, sha256_hex(content))

    r = client.get("/verify", params={"hash": sha256_hex(content)})
    assert r.status_code == 200
    body = r.json()
    assert body["valid"] is True
    assert body["signer"] == registry.keys.get_fingerprint()
    assert body["errors"] == []

    r = client.post("/verify", json={"hash": sha256_hex(content)})
    assert r.json()["valid"] is True

    r = client.get("/verify", params={"hash": sha256_hex(content), "concurrent": "true"})
    assert r.json()["valid"] is True

    r = client.post("/verify/file", files={"file": ("minutes.txt", content, "text/plain")})
    assert r.status_code == 200
    assert r.json()["valid"] is True


# TV-07: Unknown hash -> valid=false with per-source errors
def test_tv07_verify_unknown(client):
    r = client.get("/verify", params={"hash": sha256_hex("nothing")})
    assert r.status_code == 200
    body = r.json()
    assert body["valid"] is False
    assert len(body["errors"]) == 3


# TV-08: Verify with malformed hash -> 400
def test_tv08_verify_malformed(client):
    assert client.get("/verify", params={"hash": "xyz"}).status_code == 400


# TV-09: Snapshot job below threshold is a no-op
def test_tv09_snapshot_noop(client):
    create(client, EMPTY_SHA256)
    r = client.post("/jobs/registry-snapshot")
    assert r.status_code == 200
    assert r.json()["batch"] is None
    assert r.json()["success"] is True


# TV-10: Snapshot, status and integrity endpoints
def test_tv10_snapshot_flow(client):
    fill_batch(client)
    r = client.post("/jobs/registry-snapshot")
    body = r.json()
    assert body["batch"] == 1
    assert body["count"] == 4

    snaps = client.get("/snapshots").json()
    assert [s["batch"] for s in snaps] == [1]

    status = client.get("/snapshots/status").json()
    assert status["total_proofs"] == 4
    assert status["proofs_since_last_batch"] == 0

    stats = client.get("/snapshots/statistics").json()
    assert stats["total_snapshots"] == 1

    integrity = client.get("/integrity/snapshot/1").json()
    assert integrity["snapshot"]["merkle_root"] == body["merkle_root"]
    assert integrity["integrity"]["confirmed"] is True


# TV-11: Integrity lookups reject bad and unknown batches
def test_tv11_integrity_bad_batch(client):
    assert client.get("/integrity/snapshot/0").status_code == 400
    assert client.get("/integrity/snapshot/99").status_code == 404


# TV-12: Archive job publishes pending snapshots
def test_tv12_archive_job(client):
    fill_batch(client)
    client.post("/jobs/registry-snapshot")
    r = client.post("/jobs/registry-archive")
    assert r.status_code == 200
    assert r.json()["published"] == 1
    assert client.get("/snapshots").json()[0]["archive_txid"]


# TV-13: Forced recovery audit and its history
def test_tv13_recovery_audit(client):
    fill_batch(client)
    r = client.post("/jobs/recovery-audit", params={"force": "true"})
    assert r.status_code == 200
    summary = r.json()["summary"]
    assert summary["total_audited"] == 4
    assert summary["successful_recoveries"] == 4
    assert summary["enhanced"] is True

    history = client.get("/recovery-audit/history").json()
    assert history[0]["audit_date"] == summary["audit_date"]

    results = client.get(f"/recovery-audit/results/{summary['audit_date']}").json()
    assert len(results) == 4
    cross = client.get(f"/recovery-audit/cross-mirror/{summary['audit_date'][:10]}").json()
    assert len(cross) == 4
    assert all(row["consistent"] for row in cross)

    assert client.get("/recovery-audit/results/not-a-date").status_code == 400


# TV-14: Scheduled audit runs once, then waits
def test_tv14_audit_if_needed(client):
    create(client, EMPTY_SHA256)
    first = client.post("/jobs/recovery-audit").json()
    assert first["ran"] is True
    second = client.post("/jobs/recovery-audit").json()
    assert second["ran"] is False
    assert second["decision"]["reason"] == "Audit not due"


# TV-15: Cleanup job keeps the newest snapshots
def test_tv15_snapshot_cleanup(client):
    for batch in range(2):
        for i in range(4):
            create(client, sha256_hex(f"cleanup-{batch}-{i}"))
        client.post("/jobs/registry-snapshot")
    r = client.post("/jobs/snapshot-cleanup", params={"keep": 1})
    assert r.json() == {"deleted_batches": [1], "error": None}


# TV-16: Request id is echoed back
def test_tv16_request_id(client):
    r = client.get("/health", headers={"X-Request-ID": "req-123"})
    assert r.headers["X-Request-ID"] == "req-123"
    assert client.get("/health").headers["X-Request-ID"]
