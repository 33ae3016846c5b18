import json

import pytest

from proof_registry.cli import main
from proof_registry.storage import manifest_key
from proof_registry.util import sha256_hex

HASH = sha256_hex("cli document")


@pytest.fixture
def env(tmp_path, monkeypatch):
    monkeypatch.setenv("REGISTRY_DB_PATH", str(tmp_path / "registry.db"))
    monkeypatch.setenv("SIGNING_KEY_PATH", str(tmp_path / "secrets" / "key.json"))
    monkeypatch.setenv("TRUST_STORE_PATH", str(tmp_path / "trust" / "trust_store.json"))
    monkeypatch.setenv("OBJECT_STORE_DIR", str(tmp_path / "object_store"))
    monkeypatch.setenv("LOCAL_REGISTRY_DIR", str(tmp_path / "local"))
    monkeypatch.setenv("ARCHIVE_BACKEND", "filesystem")
    monkeypatch.setenv("ARCHIVE_DIR", str(tmp_path / "archive"))
    monkeypatch.setenv("SNAPSHOT_BATCH_SIZE", "2")
    return tmp_path


def run(capsys, *argv):
    code = main(list(argv))
    out = capsys.readouterr().out
    return code, out


def issue(capsys, file_hash):
    code, out = run(capsys, "issue", "--hash", file_hash, "--type", "document",
                    "--namespace", "acme", "--id", "cli-1")
    assert code == 0
    return json.loads(out)


def test_keygen_then_issue_and_verify(env, capsys):
    code, out = run(capsys, "keygen")
    assert code == 0
    fingerprint = json.loads(out)["fingerprint"]

    proof = issue(capsys, HASH)
    assert proof["hash"] == HASH
    assert proof["signer_fingerprint"] == fingerprint

    code, out = run(capsys, "verify", "--hash", HASH)
    assert code == 0
    assert json.loads(out)["valid"] is True

    code, out = run(capsys, "verify", "--hash", sha256_hex("unknown"))
    assert code == 1
    assert json.loads(out)["valid"] is False


def test_issue_from_file(env, capsys, tmp_path):
    run(capsys, "keygen")
    path = tmp_path / "report.pdf"
    path.write_bytes(b"%PDF-1.7 quarterly report")

    code, out = run(capsys, "issue", "--file", str(path), "--type", "document",
                    "--namespace", "acme", "--id", "report")
    assert code == 0
    assert json.loads(out)["hash"] == sha256_hex(b"%PDF-1.7 quarterly report")

    code, _ = run(capsys, "verify", "--file", str(path), "--concurrent")
    assert code == 0


def test_invalid_hash_exits_with_error(env, capsys):
    run(capsys, "keygen")
    code, _ = run(capsys, "issue", "--hash", "nothex", "--type", "d", "--namespace", "n", "--id", "i")
    assert code == 2


def test_missing_key_exits_with_error(env, capsys):
    code, _ = run(capsys, "status")
    assert code == 2


def test_snapshot_archive_audit_and_manifest(env, capsys):
    run(capsys, "keygen")
    issue(capsys, sha256_hex("a"))
    issue(capsys, sha256_hex("b"))

    code, out = run(capsys, "snapshot")
    assert code == 0
    snapshot = json.loads(out)
    assert snapshot["batch"] == 1

    code, out = run(capsys, "archive")
    assert code == 0
    assert json.loads(out)["published"] == 1

    code, out = run(capsys, "audit", "--force", "--enhanced")
    assert code == 0
    assert json.loads(out)["successful_recoveries"] == 2

    code, out = run(capsys, "status")
    assert code == 0
    assert json.loads(out)["statistics"]["archived_snapshots"] == 1

    manifest_path = env / "object_store" / manifest_key(1, snapshot["merkle_root"])
    code, out = run(capsys, "verify-manifest", "--manifest", str(manifest_path))
    assert code == 0
    assert out.startswith("VALID: batch 1")


def test_verify_manifest_detects_tampering(env, capsys, tmp_path):
    run(capsys, "keygen")
    issue(capsys, sha256_hex("a"))
    issue(capsys, sha256_hex("b"))
    _, out = run(capsys, "snapshot")
    root = json.loads(out)["merkle_root"]

    manifest = json.loads((env / "object_store" / manifest_key(1, root)).read_text(encoding="utf-8"))
    manifest["merkle_root"] = "00" * 64
    forged = tmp_path / "forged.json"
    forged.write_text(json.dumps(manifest), encoding="utf-8")

    code, out = run(capsys, "verify-manifest", "--manifest", str(forged))
    assert code == 1
    assert out.startswith("INVALID")


def test_archive_disabled(env, capsys, monkeypatch):
    run(capsys, "keygen")
    monkeypatch.setenv("ARCHIVE_BACKEND", "none")
    code, _ = run(capsys, "archive")
    assert code == 1
