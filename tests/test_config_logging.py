import json
import logging

from proof_registry.config import load_settings, validate_settings
from proof_registry.logging_config import (
    RegistryAuditLogger,
    StructuredFormatter,
    get_request_id,
    set_request_id,
)


def test_defaults(monkeypatch):
    for name in ("SNAPSHOT_BATCH_SIZE", "VERIFICATION_SOURCES", "SNAPSHOT_AUTOMATION_ENABLED"):
        monkeypatch.delenv(name, raising=False)
    settings = load_settings()

    assert settings.snapshot_batch_size == 1000
    assert settings.snapshot_automation_enabled is True
    assert settings.verification_sources == ["object_store", "datastore", "local"]
    assert settings.verification_timestamp_tolerance_seconds == 86400


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("SNAPSHOT_BATCH_SIZE", "250")
    monkeypatch.setenv("SNAPSHOT_AUTOMATION_ENABLED", "false")
    monkeypatch.setenv("VERIFICATION_SOURCES", "datastore, local")
    monkeypatch.setenv("RECOVERY_AUDIT_MAX_ERRORS", "7")
    settings = load_settings()

    assert settings.snapshot_batch_size == 250
    assert settings.snapshot_automation_enabled is False
    assert settings.verification_sources == ["datastore", "local"]
    assert settings.audit_max_errors == 7


def test_validate_settings(settings):
    checks = validate_settings(settings)
    assert all(checks.values())


class _Capture(logging.Handler):
    def __init__(self):
        super().__init__()
        self.records = []

    def emit(self, record):
        self.records.append(record)


def test_audit_events_are_structured():
    handler = _Capture()
    audit = RegistryAuditLogger("proof_registry.audit.test")
    audit._logger.addHandler(handler)
    try:
        set_request_id("req-42")
        audit.snapshot_created(3, 1000, "ab" * 32)
    finally:
        audit._logger.removeHandler(handler)

    record = handler.records[0]
    line = json.loads(StructuredFormatter().format(record))
    assert line["event_type"] == "SNAPSHOT_CREATED"
    assert line["batch"] == 3
    assert line["count"] == 1000
    assert line["request_id"] == "req-42"
    assert get_request_id() == "req-42"


def test_integrity_violation_severity_maps_to_level():
    handler = _Capture()
    audit = RegistryAuditLogger("proof_registry.audit.severity")
    audit._logger.addHandler(handler)
    try:
        audit.integrity_violation("unrecoverable", severity="critical", proof_id="p1")
        audit.integrity_violation("cross_mirror_inconsistency", severity="medium", proof_id="p2")
    finally:
        audit._logger.removeHandler(handler)

    assert [r.levelno for r in handler.records] == [logging.CRITICAL, logging.WARNING]
    assert handler.records[0].extra_fields["violation"] == "unrecoverable"
