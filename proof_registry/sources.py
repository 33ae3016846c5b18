"""
Proof sources for the verification cascade and the recovery audit.

Every backend is reduced to one capability, fetch(LookupKey) -> bytes|None,
so the cascade and audit loops iterate a list of sources without knowing
which backend each one is.
"""

import gzip
import logging
import threading
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Dict, Optional

from .errors import SourceUnavailableError
from .proofs import parse_proof_bytes
from .storage import ArchiveStore, ObjectStore, proof_hash_key, proof_key

logger = logging.getLogger(__name__)

# Hung fetches beyond this many per source fail fast instead of queueing
MAX_FETCHES_IN_FLIGHT = 32

_gates: Dict[str, threading.BoundedSemaphore] = {}
_gates_lock = threading.Lock()


@dataclass(frozen=True)
class LookupKey:
    by: str  # "id" | "hash"
    value: str

    @classmethod
    def for_id(cls, proof_id: str) -> "LookupKey":
        return cls("id", proof_id)

    @classmethod
    def for_hash(cls, file_hash: str) -> "LookupKey":
        return cls("hash", file_hash)


class ProofSource:
    name = "source"

    def fetch(self, key: LookupKey) -> Optional[bytes]:
        """Return the stored proof document, or None if this source lacks it."""
        raise NotImplementedError

    def release_thread_resources(self) -> None:
        """Called on the fetching thread once its fetch has finished."""


class ObjectStoreSource(ProofSource):
    """Per-proof objects mirrored to an object store or the local registry."""

    def __init__(self, name: str, store: ObjectStore):
        self.name = name
        self._store = store

    def fetch(self, key: LookupKey) -> Optional[bytes]:
        if key.by == "id":
            return self._store.get_object(proof_key(key.value))
        return self._store.get_object(proof_hash_key(key.value))


class DatastoreSource(ProofSource):
    """The signed document exactly as stored at issuance."""

    name = "datastore"

    def __init__(self, datastore):
        self._datastore = datastore

    def fetch(self, key: LookupKey) -> Optional[bytes]:
        if key.by == "id":
            row = self._datastore.get_proof_by_id(key.value)
        else:
            row = self._datastore.get_proof_by_hash(key.value)
        return row["proof_json"].encode("utf-8") if row else None

    def release_thread_resources(self) -> None:
        self._datastore.close_connection()


class ArchiveSource(ProofSource):
    """
    Proofs recovered from the archived proof listing of their batch.

    Only proofs whose batch has a confirmed archive transaction are
    recoverable. Decompressed listings are cached by transaction id.
    """

    name = "archive"

    def __init__(self, datastore, archive: ArchiveStore, cache_size: int = 4):
        self._datastore = datastore
        self._archive = archive
        self._cache_size = cache_size
        self._cache: "OrderedDict[str, Dict[str, bytes]]" = OrderedDict()
        self._lock = threading.Lock()

    def _listing(self, tx_id: str) -> Optional[Dict[str, bytes]]:
        with self._lock:
            if tx_id in self._cache:
                self._cache.move_to_end(tx_id)
                return self._cache[tx_id]

        raw = self._archive.fetch_by_tx_id(tx_id)
        if raw is None:
            return None
        by_id: Dict[str, bytes] = {}
        for line in gzip.decompress(raw).splitlines():
            if not line.strip():
                continue
            doc = parse_proof_bytes(line)
            by_id[doc.get("id", "")] = line

        with self._lock:
            self._cache[tx_id] = by_id
            while len(self._cache) > self._cache_size:
                self._cache.popitem(last=False)
        return by_id

    def fetch(self, key: LookupKey) -> Optional[bytes]:
        if key.by == "id":
            row = self._datastore.get_proof_by_id(key.value)
        else:
            row = self._datastore.get_proof_by_hash(key.value)
        if not row or row.get("batch") is None:
            return None
        meta = self._datastore.get_snapshot_meta(row["batch"])
        if not meta or not meta.get("archive_jsonl_txid"):
            return None
        listing = self._listing(meta["archive_jsonl_txid"])
        if listing is None:
            return None
        return listing.get(row["id"])

    def release_thread_resources(self) -> None:
        self._datastore.close_connection()


def _gate_for(name: str) -> threading.BoundedSemaphore:
    with _gates_lock:
        gate = _gates.get(name)
        if gate is None:
            gate = _gates[name] = threading.BoundedSemaphore(MAX_FETCHES_IN_FLIGHT)
        return gate


def fetch_with_timeout(source: ProofSource, key: LookupKey, timeout: float) -> Optional[bytes]:
    """
    Run source.fetch on its own thread and wait at most `timeout` seconds.

    The wait starts when the fetch starts, and each source has its own
    in-flight limit, so a hung backend cannot delay fetches from another.
    A fetch that outlives its timeout keeps its slot until the backend's
    own client timeout ends it.

    Raises:
        SourceUnavailableError: on timeout, saturation or any backend exception
    """
    gate = _gate_for(source.name)
    if not gate.acquire(blocking=False):
        raise SourceUnavailableError(
            source.name, f"{MAX_FETCHES_IN_FLIGHT} fetches already in flight"
        )

    outcome: Dict[str, Any] = {}

    def _run():
        try:
            outcome["data"] = source.fetch(key)
        except Exception as e:
            outcome["error"] = e
        finally:
            try:
                source.release_thread_resources()
            finally:
                gate.release()

    worker = threading.Thread(target=_run, name=f"proof-source-{source.name}", daemon=True)
    worker.start()
    worker.join(timeout)

    if worker.is_alive():
        raise SourceUnavailableError(source.name, f"timed out after {timeout}s")
    error = outcome.get("error")
    if error is not None:
        logger.debug("source fetch failed", exc_info=error,
                     extra={"extra_fields": {"source": source.name, "lookup": key.by}})
        raise SourceUnavailableError(
            source.name, f"unavailable ({type(error).__name__}: {error})"
        ) from error
    return outcome.get("data")


def build_sources(names, datastore, object_store, local_registry=None, archive=None):
    """Instantiate the named sources in order, skipping unconfigured ones."""
    available = {
        "datastore": lambda: DatastoreSource(datastore),
        "object_store": lambda: ObjectStoreSource("object_store", object_store) if object_store else None,
        "local": lambda: ObjectStoreSource("local", local_registry) if local_registry else None,
        "archive": lambda: ArchiveSource(datastore, archive) if archive else None,
    }
    sources = []
    for name in names:
        factory = available.get(name)
        if factory is None:
            raise ValueError(f"unknown proof source: {name}")
        source = factory()
        if source is not None:
            sources.append(source)
    return sources
