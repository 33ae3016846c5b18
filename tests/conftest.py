import dataclasses

import pytest
from fastapi.testclient import TestClient

from proof_registry.config import RegistrySettings
from proof_registry.keys import generate_signing_key
from proof_registry.main import app, set_registry
from proof_registry.registry import build_registry
from proof_registry.util import sha256_hex

SUBJECT = {"type": "document", "namespace": "acme", "id": "contract-42"}


@pytest.fixture
def settings(tmp_path):
    s = RegistrySettings(
        db_path=str(tmp_path / "data" / "registry.db"),
        signing_key_path=str(tmp_path / "secrets" / "proof_signing_key.json"),
        trust_store_path=str(tmp_path / "trust" / "trust_store.json"),
        object_store_dir=str(tmp_path / "object_store"),
        local_registry_dir=str(tmp_path / "local_registry"),
        archive_backend="filesystem",
        archive_dir=str(tmp_path / "archive"),
        snapshot_batch_size=4,
        snapshot_retry_delay_seconds=0,
        audit_batch_size=50,
    )
    generate_signing_key(s.signing_key_path, s.trust_store_path)
    return s


@pytest.fixture
def registry(settings):
    reg = build_registry(settings)
    yield reg
    reg.datastore.close_connection()


@pytest.fixture
def make_registry(settings):
    """Build a registry with settings overrides."""
    built = []

    def _make(**overrides):
        reg = build_registry(dataclasses.replace(settings, **overrides))
        built.append(reg)
        return reg

    yield _make
    for reg in built:
        reg.datastore.close_connection()


@pytest.fixture
def issue():
    """Issue n proofs with distinct hashes; returns them in issuance order."""
    def _issue(registry, n=1, prefix="file"):
        return [
            registry.issuer.create_proof(sha256_hex(f"{prefix}-{i}"), SUBJECT, {"seq": i})
            for i in range(n)
        ]
    return _issue


@pytest.fixture
def client(registry):
    set_registry(registry)
    with TestClient(app) as c:
        yield c
    set_registry(None)
