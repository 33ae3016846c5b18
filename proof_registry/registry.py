"""
Wiring for the registry services.

Builds the datastore, key provider, mirrors and domain services from a
RegistrySettings instance. The HTTP app and the CLI share this.
"""

from dataclasses import dataclass
from typing import Optional

from .audit import RecoveryAuditEngine
from .config import RegistrySettings
from .db import SqliteDatastore
from .issuance import ProofIssuer
from .keys import KeyProvider, get_key_provider, trusted_keys
from .publisher import MirrorPublisher
from .snapshots import SnapshotBatcher
from .sources import build_sources
from .storage import (
    ArchiveStore,
    ObjectStore,
    get_archive_store,
    get_local_registry,
    get_object_store,
)
from .verification import VerificationCascade


@dataclass
class Registry:
    settings: RegistrySettings
    datastore: SqliteDatastore
    keys: KeyProvider
    object_store: ObjectStore
    local_registry: Optional[ObjectStore]
    archive: Optional[ArchiveStore]
    issuer: ProofIssuer
    publisher: MirrorPublisher
    batcher: SnapshotBatcher
    cascade: VerificationCascade
    auditor: RecoveryAuditEngine


def build_registry(
    settings: RegistrySettings,
    keys: Optional[KeyProvider] = None,
    object_store: Optional[ObjectStore] = None,
    archive: Optional[ArchiveStore] = None
) -> Registry:
    """
    Assemble a registry. Explicit backends override the configured ones.

    Raises:
        SigningKeyError: no usable signing key or an invalid trust store
    """
    datastore = SqliteDatastore(settings.db_path)
    datastore.init_db()

    if keys is None:
        keys = get_key_provider(
            signer_type=settings.signer_type,
            signing_key_path=settings.signing_key_path,
            trust_store_path=settings.trust_store_path,
            kms_key_id=settings.aws_kms_key_id,
            kms_region=settings.aws_region,
        )
    trusted_keys(keys.get_trust_store())

    if object_store is None:
        object_store = get_object_store(settings)
    local_registry = get_local_registry(settings)
    if archive is None:
        archive = get_archive_store(settings)

    issuer = ProofIssuer(datastore, keys, mirrors=[object_store, local_registry])
    publisher = MirrorPublisher(
        datastore,
        keys,
        object_store,
        archive=archive,
        local_registry=local_registry,
        app_name=settings.archive_app_name,
        backoff_seconds=settings.archive_backoff_seconds,
        max_backoff_seconds=settings.archive_max_backoff_seconds,
    )
    batcher = SnapshotBatcher(
        datastore,
        publisher,
        batch_size=settings.snapshot_batch_size,
        enabled=settings.snapshot_automation_enabled,
        retry_attempts=settings.snapshot_retry_attempts,
        retry_delay_seconds=settings.snapshot_retry_delay_seconds,
    )
    cascade = VerificationCascade(
        build_sources(
            settings.verification_sources, datastore, object_store, local_registry, archive
        ),
        keys.get_trust_store,
        timeout_seconds=settings.source_timeout_seconds,
        tolerance_seconds=settings.verification_timestamp_tolerance_seconds,
        max_clock_skew_seconds=settings.max_clock_skew_seconds,
    )
    auditor = RecoveryAuditEngine(
        datastore,
        build_sources(settings.audit_sources, datastore, object_store, local_registry, archive),
        keys.get_trust_store,
        publisher=publisher,
        batch_size=settings.audit_batch_size,
        max_errors=settings.audit_max_errors,
        timeout_seconds=settings.source_timeout_seconds,
        interval_hours=settings.audit_interval_hours,
        proof_threshold=settings.audit_proof_threshold,
        performance_threshold_ms=settings.audit_performance_threshold_ms,
        integrity_threshold=settings.audit_integrity_threshold,
        snapshot_limit=settings.audit_snapshot_limit,
    )

    return Registry(
        settings=settings,
        datastore=datastore,
        keys=keys,
        object_store=object_store,
        local_registry=local_registry,
        archive=archive,
        issuer=issuer,
        publisher=publisher,
        batcher=batcher,
        cascade=cascade,
        auditor=auditor,
    )
