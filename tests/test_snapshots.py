import gzip
import json
import threading
import time

import pytest

from proof_registry.errors import InvalidInputError, NotFoundError
from proof_registry.publisher import MirrorPublisher
from proof_registry.snapshots import (
    AUTOMATION_DISABLED,
    NO_SNAPSHOT_NEEDED,
    SnapshotBatcher,
    validate_batch_number,
)
from proof_registry.storage import (
    FilesystemObjectStore,
    hashes_key,
    manifest_key,
    proof_key,
    proofs_jsonl_key,
)
from proof_registry.util import HEX64_RE


class FailingSnapshotStore(FilesystemObjectStore):
    """Accepts proof documents but refuses snapshot artifacts."""

    def put_object(self, key, data, content_type="application/json", immutable=False):
        if key.startswith("snapshots/"):
            raise OSError("object store write refused")
        return super().put_object(key, data, content_type, immutable)


class GatedSnapshotStore(FilesystemObjectStore):
    """Holds the first snapshot upload open until the test releases it."""

    def __init__(self, root):
        super().__init__(root)
        self.uploading = threading.Event()
        self.release = threading.Event()

    def put_object(self, key, data, content_type="application/json", immutable=False):
        if key.startswith("snapshots/") and not self.uploading.is_set():
            self.uploading.set()
            self.release.wait(10)
        return super().put_object(key, data, content_type, immutable)


class RacingPublisher(MirrorPublisher):
    """Lets a rival batcher commit between cursor read and compare-and-swap."""

    def __init__(self, *args, rival=None, **kwargs):
        super().__init__(*args, **kwargs)
        self.rival = rival
        self.raced = False

    def build_artifacts(self, batch, rows):
        if not self.raced:
            self.raced = True
            self.rival.check_and_create_snapshot()
        return super().build_artifacts(batch, rows)


def test_no_snapshot_below_batch_size(registry, issue):
    issue(registry, 3)
    result = registry.batcher.check_and_create_snapshot()

    assert result.success is True
    assert result.batch is None
    assert result.error == NO_SNAPSHOT_NEEDED
    assert registry.datastore.list_snapshot_meta() == []


def test_disabled_automation(registry, issue):
    issue(registry, 4)
    batcher = SnapshotBatcher(registry.datastore, registry.publisher, batch_size=4, enabled=False)
    result = batcher.check_and_create_snapshot()

    assert result.success is False
    assert result.error == AUTOMATION_DISABLED
    assert registry.datastore.count_unbatched_proofs() == 4


def test_full_batch_commits_everything(registry, issue):
    proofs = issue(registry, 4)
    result = registry.batcher.check_and_create_snapshot()

    assert result.success is True
    assert result.batch == 1
    assert result.count == 4
    assert HEX64_RE.match(result.merkle_root)

    ds = registry.datastore
    assert ds.count_unbatched_proofs() == 0
    assert [r["id"] for r in ds.list_proofs_in_batch(1)] == sorted(p.id for p in proofs)

    meta = ds.get_snapshot_meta(1)
    assert meta["merkle_root"] == result.merkle_root
    assert meta["integrity_verified"] is False
    assert meta["first_proof_id"] == min(p.id for p in proofs)
    assert meta["last_proof_id"] == max(p.id for p in proofs)
    assert meta["object_store_url"]
    assert meta["archive_txid"] is None

    assert ds.get_batch_cursor()["next_batch"] == 2
    assert ds.get_outbox_entry(1)["status"] == "pending"

    store = registry.object_store
    root = result.merkle_root
    assert meta["object_store_url"].endswith(manifest_key(1, root))
    manifest = json.loads(store.get_object(manifest_key(1, root)))
    assert manifest["merkle_root"] == root
    hashes = store.get_object(hashes_key(1, root)).decode("utf-8").split()
    assert hashes == manifest["proof_hashes"]
    lines = gzip.decompress(store.get_object(proofs_jsonl_key(1, root))).splitlines()
    assert [json.loads(line)["id"] for line in lines] == sorted(p.id for p in proofs)


def test_snapshot_is_idempotent(registry, issue):
    issue(registry, 4)
    first = registry.batcher.check_and_create_snapshot()
    second = registry.batcher.check_and_create_snapshot()

    assert first.batch == 1
    assert second.success is True
    assert second.batch is None
    assert len(registry.datastore.list_snapshot_meta()) == 1


def test_batches_are_sequential_and_disjoint(registry, issue):
    issue(registry, 9)
    results = [registry.batcher.check_and_create_snapshot() for _ in range(3)]

    assert [r.batch for r in results] == [1, 2, None]
    first = {r["id"] for r in registry.datastore.list_proofs_in_batch(1)}
    second = {r["id"] for r in registry.datastore.list_proofs_in_batch(2)}
    assert len(first) == len(second) == 4
    assert not first & second
    assert max(first) < min(second)
    assert registry.datastore.count_unbatched_proofs() == 1


def test_lost_race_is_a_successful_noop(registry, issue):
    issue(registry, 4)
    loser = SnapshotBatcher(
        registry.datastore,
        RacingPublisher(
            registry.datastore, registry.keys, registry.object_store, rival=registry.batcher
        ),
        batch_size=4,
        retry_delay_seconds=0,
    )
    result = loser.check_and_create_snapshot()

    assert result.success is True
    assert result.batch is None
    assert result.retry_count == 1
    snapshots = registry.datastore.list_snapshot_meta()
    assert [s["batch"] for s in snapshots] == [1]
    assert snapshots[0]["count"] == 4
    committed = registry.object_store.get_object(manifest_key(1, snapshots[0]["merkle_root"]))
    assert registry.publisher.verify_manifest(json.loads(committed)) == (True, None)


def test_lost_race_leaves_committed_artifacts_untouched(registry, issue):
    issue(registry, 5)
    loser = SnapshotBatcher(
        registry.datastore,
        RacingPublisher(
            registry.datastore, registry.keys, registry.object_store, rival=registry.batcher
        ),
        batch_size=5,
        retry_delay_seconds=0,
    )
    result = loser.check_and_create_snapshot()

    assert result.success is True
    assert result.batch is None
    meta = registry.datastore.get_snapshot_meta(1)
    assert meta["count"] == 4

    store = registry.object_store
    committed = json.loads(store.get_object(manifest_key(1, meta["merkle_root"])))
    assert committed["count"] == 4
    assert registry.publisher.verify_snapshot_integrity(1).confirmed
    orphans = [p for p in (store.root / "snapshots" / "1").glob("*.manifest.json")
               if p.name != f"{meta['merkle_root']}.manifest.json"]
    assert len(orphans) == 1
    assert json.loads(orphans[0].read_bytes())["count"] == 5


def test_stale_cursor_version_conflicts(registry, issue):
    from proof_registry.errors import ConcurrencyConflict

    issue(registry, 8)
    ds = registry.datastore
    stale = ds.get_batch_cursor()
    registry.batcher.check_and_create_snapshot()

    rows = ds.list_unbatched_proofs(4)
    with pytest.raises(ConcurrencyConflict):
        ds.commit_snapshot(
            stale["version"],
            {"batch": stale["next_batch"], "count": 4, "merkle_root": "00" * 32,
             "first_proof_id": rows[0]["id"], "last_proof_id": rows[-1]["id"]},
            [r["id"] for r in rows],
        )
    assert ds.count_unbatched_proofs() == 4


def test_publish_failure_rolls_back_batch(registry, issue, tmp_path):
    issue(registry, 4)
    publisher = MirrorPublisher(
        registry.datastore, registry.keys, FailingSnapshotStore(str(tmp_path / "broken"))
    )
    batcher = SnapshotBatcher(
        registry.datastore, publisher, batch_size=4, retry_attempts=1, retry_delay_seconds=0
    )
    version_before = registry.datastore.get_batch_cursor()["version"]
    result = batcher.check_and_create_snapshot()

    assert result.success is False
    assert "refused" in result.error
    ds = registry.datastore
    assert ds.list_snapshot_meta() == []
    assert ds.count_unbatched_proofs() == 4
    assert ds.get_batch_cursor()["version"] == version_before
    assert ds.get_outbox_entry(1) is None


def test_snapshot_republishes_missing_proof_objects(registry, issue, tmp_path):
    proofs = issue(registry, 4)
    fresh = FilesystemObjectStore(str(tmp_path / "fresh"))
    batcher = SnapshotBatcher(
        registry.datastore,
        MirrorPublisher(registry.datastore, registry.keys, fresh),
        batch_size=4,
    )
    assert batcher.check_and_create_snapshot().batch == 1
    for proof in proofs:
        assert json.loads(fresh.get_object(proof_key(proof.id)))["hash"] == proof.hash


def test_status(registry, issue):
    issue(registry, 5)
    registry.batcher.check_and_create_snapshot()
    status = registry.batcher.get_snapshot_status()

    assert status["total_proofs"] == 5
    assert status["proofs_since_last_batch"] == 1
    assert status["is_snapshot_due"] is False
    assert status["next_snapshot_at"] == 8
    assert status["last_batch"]["batch"] == 1


def test_statistics(registry, issue):
    assert registry.batcher.get_snapshot_statistics()["total_snapshots"] == 0

    issue(registry, 8)
    registry.batcher.check_and_create_snapshot()
    registry.batcher.check_and_create_snapshot()
    stats = registry.batcher.get_snapshot_statistics()

    assert stats["total_snapshots"] == 2
    assert stats["total_proofs_in_snapshots"] == 8
    assert stats["average_proofs_per_snapshot"] == 4
    assert stats["verified_snapshots"] == 0
    assert stats["average_days_between_snapshots"] is not None


def test_cleanup_keeps_most_recent(registry, issue):
    issue(registry, 12)
    for _ in range(3):
        registry.batcher.check_and_create_snapshot()

    outcome = registry.batcher.cleanup_old_snapshots(keep_last=1)
    assert outcome == {"deleted_batches": [2, 1], "error": None}
    assert [s["batch"] for s in registry.batcher.list_snapshots()] == [3]
    assert registry.datastore.get_outbox_entry(1) is None

    with pytest.raises(InvalidInputError):
        registry.batcher.cleanup_old_snapshots(keep_last=0)


def test_get_snapshot_validates_batch(registry, issue):
    with pytest.raises(InvalidInputError):
        registry.batcher.get_snapshot(0)
    with pytest.raises(NotFoundError):
        registry.batcher.get_snapshot(99)

    issue(registry, 4)
    registry.batcher.check_and_create_snapshot()
    assert registry.batcher.get_snapshot("1")["count"] == 4


@pytest.mark.parametrize("bad", [0, -3, True, "abc", None, 1.5j])
def test_validate_batch_number_rejects(bad):
    with pytest.raises(InvalidInputError):
        validate_batch_number(bad)


def test_thousand_proof_batch(make_registry, issue):
    reg = make_registry(snapshot_batch_size=1000)
    issue(reg, 999)
    assert reg.batcher.check_and_create_snapshot().batch is None

    issue(reg, 1, prefix="last")
    result = reg.batcher.check_and_create_snapshot()

    assert result.success is True
    assert result.batch == 1
    assert result.count == 1000
    assert HEX64_RE.match(result.merkle_root)
    assert reg.datastore.get_snapshot_meta(1)["integrity_verified"] is False
    assert reg.batcher.verify_snapshot_integrity(1)["confirmed"] is True


def test_issuance_proceeds_while_snapshot_uploads(registry, issue, tmp_path):
    issue(registry, 4)
    store = GatedSnapshotStore(str(tmp_path / "gated"))
    batcher = SnapshotBatcher(
        registry.datastore,
        MirrorPublisher(registry.datastore, registry.keys, store),
        batch_size=4,
    )
    outcome = {}

    def run_snapshot():
        try:
            outcome["result"] = batcher.check_and_create_snapshot()
        finally:
            registry.datastore.close_connection()

    worker = threading.Thread(target=run_snapshot)
    worker.start()
    try:
        assert store.uploading.wait(5)
        started = time.perf_counter()
        late = issue(registry, 1, prefix="mid-snapshot")[0]
        issue_seconds = time.perf_counter() - started
    finally:
        store.release.set()
        worker.join(10)

    assert issue_seconds < 2
    result = outcome["result"]
    assert result.success is True
    assert result.batch == 1
    assert result.count == 4
    assert registry.datastore.get_proof_by_id(late.id)["batch"] is None
    assert registry.datastore.count_unbatched_proofs() == 1


def test_failed_commit_leaves_proofs_unbatched(registry, issue, monkeypatch):
    from proof_registry.errors import ConcurrencyConflict

    issue(registry, 4)

    def refuse(*args, **kwargs):
        raise ConcurrencyConflict("batch cursor moved before batch 1 was committed")

    monkeypatch.setattr(registry.datastore, "commit_snapshot", refuse)
    result = registry.batcher.check_and_create_snapshot()

    assert result.success is False
    assert result.retry_count == 4
    assert registry.datastore.list_snapshot_meta() == []
    assert registry.datastore.count_unbatched_proofs() == 4
