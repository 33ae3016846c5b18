"""
Configuration module for the proof registry.

Centralizes all configuration with environment variable support and
validation. Values are read when load_settings() is called so that jobs
and tests can run with different environments in one process.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_list(name: str, default: List[str]) -> List[str]:
    raw = os.getenv(name)
    if not raw:
        return list(default)
    return [item.strip() for item in raw.split(",") if item.strip()]


@dataclass
class RegistrySettings:
    # ============================================================
    # Environment
    # ============================================================
    env: str = "dev"  # dev|stage|prod
    db_path: str = "data/proof_registry.db"

    # ============================================================
    # Signing
    # ============================================================
    signer_type: str = "file"
    signing_key_path: str = "secrets/proof_signing_key.json"
    trust_store_path: str = "trust/trust_store.json"
    aws_kms_key_id: str = ""
    aws_region: Optional[str] = None

    # ============================================================
    # Mirrors
    # ============================================================
    object_store_backend: str = "filesystem"  # filesystem|s3
    object_store_dir: str = "data/object_store"
    s3_bucket: str = ""
    s3_prefix: str = ""
    local_registry_dir: Optional[str] = "data/registry"
    archive_backend: str = "filesystem"  # none|filesystem|http
    archive_dir: str = "data/archive"
    archive_gateway_url: str = "https://arweave.net"
    archive_upload_url: str = ""
    archive_api_key: str = ""
    archive_app_name: str = "proof-registry"
    archive_timeout_seconds: float = 30.0
    archive_backoff_seconds: int = 60
    archive_max_backoff_seconds: int = 86400

    # ============================================================
    # Snapshots
    # ============================================================
    snapshot_batch_size: int = 1000
    snapshot_automation_enabled: bool = True
    snapshot_retry_attempts: int = 3
    snapshot_retry_delay_seconds: float = 0.05
    snapshot_keep_last: int = 10

    # ============================================================
    # Verification
    # ============================================================
    source_timeout_seconds: float = 5.0
    verification_timestamp_tolerance_seconds: int = 86400
    max_clock_skew_seconds: int = 300
    verification_sources: List[str] = field(
        default_factory=lambda: ["object_store", "datastore", "local"]
    )

    # ============================================================
    # Recovery audit
    # ============================================================
    audit_batch_size: int = 1000
    audit_max_errors: int = 100
    audit_sources: List[str] = field(
        default_factory=lambda: ["datastore", "object_store"]
    )
    audit_interval_hours: float = 24.0
    audit_proof_threshold: int = 10000
    audit_performance_threshold_ms: float = 5000.0
    audit_integrity_threshold: float = 0.95
    audit_snapshot_limit: int = 10

    # ============================================================
    # Logging
    # ============================================================
    log_level: str = "INFO"
    log_json: bool = True
    log_file: Optional[str] = None


def load_settings() -> RegistrySettings:
    """Build settings from the current environment."""
    return RegistrySettings(
        env=os.getenv("REGISTRY_ENV", "dev"),
        db_path=os.getenv("REGISTRY_DB_PATH", "data/proof_registry.db"),
        signer_type=os.getenv("REGISTRY_SIGNER", "file"),
        signing_key_path=os.getenv("SIGNING_KEY_PATH", "secrets/proof_signing_key.json"),
        trust_store_path=os.getenv("TRUST_STORE_PATH", "trust/trust_store.json"),
        aws_kms_key_id=os.getenv("AWS_KMS_KEY_ID", ""),
        aws_region=os.getenv("AWS_REGION") or None,
        object_store_backend=os.getenv("OBJECT_STORE_BACKEND", "filesystem"),
        object_store_dir=os.getenv("OBJECT_STORE_DIR", "data/object_store"),
        s3_bucket=os.getenv("REGISTRY_S3_BUCKET", ""),
        s3_prefix=os.getenv("REGISTRY_S3_PREFIX", ""),
        local_registry_dir=os.getenv("LOCAL_REGISTRY_DIR", "data/registry") or None,
        archive_backend=os.getenv("ARCHIVE_BACKEND", "filesystem"),
        archive_dir=os.getenv("ARCHIVE_DIR", "data/archive"),
        archive_gateway_url=os.getenv("ARCHIVE_GATEWAY_URL", "https://arweave.net"),
        archive_upload_url=os.getenv("ARCHIVE_UPLOAD_URL", ""),
        archive_api_key=os.getenv("ARCHIVE_API_KEY", ""),
        archive_app_name=os.getenv("ARCHIVE_APP_NAME", "proof-registry"),
        archive_timeout_seconds=float(os.getenv("ARCHIVE_TIMEOUT_SECONDS", "30")),
        archive_backoff_seconds=int(os.getenv("ARCHIVE_BACKOFF_SECONDS", "60")),
        archive_max_backoff_seconds=int(os.getenv("ARCHIVE_MAX_BACKOFF_SECONDS", "86400")),
        snapshot_batch_size=int(os.getenv("SNAPSHOT_BATCH_SIZE", "1000")),
        snapshot_automation_enabled=_env_bool("SNAPSHOT_AUTOMATION_ENABLED", True),
        snapshot_retry_attempts=int(os.getenv("SNAPSHOT_RETRY_ATTEMPTS", "3")),
        snapshot_retry_delay_seconds=float(os.getenv("SNAPSHOT_RETRY_DELAY_SECONDS", "0.05")),
        snapshot_keep_last=int(os.getenv("SNAPSHOT_KEEP_LAST", "10")),
        source_timeout_seconds=float(os.getenv("SOURCE_TIMEOUT_SECONDS", "5")),
        verification_timestamp_tolerance_seconds=int(
            os.getenv("VERIFICATION_TIMESTAMP_TOLERANCE_SECONDS", "86400")
        ),
        max_clock_skew_seconds=int(os.getenv("MAX_CLOCK_SKEW_SECONDS", "300")),
        verification_sources=_env_list(
            "VERIFICATION_SOURCES", ["object_store", "datastore", "local"]
        ),
        audit_batch_size=int(os.getenv("RECOVERY_AUDIT_BATCH_SIZE", "1000")),
        audit_max_errors=int(os.getenv("RECOVERY_AUDIT_MAX_ERRORS", "100")),
        audit_sources=_env_list("RECOVERY_AUDIT_SOURCES", ["datastore", "object_store"]),
        audit_interval_hours=float(os.getenv("RECOVERY_AUDIT_INTERVAL_HOURS", "24")),
        audit_proof_threshold=int(os.getenv("RECOVERY_AUDIT_PROOF_THRESHOLD", "10000")),
        audit_performance_threshold_ms=float(
            os.getenv("RECOVERY_AUDIT_PERFORMANCE_THRESHOLD_MS", "5000")
        ),
        audit_integrity_threshold=float(os.getenv("RECOVERY_AUDIT_INTEGRITY_THRESHOLD", "0.95")),
        audit_snapshot_limit=int(os.getenv("RECOVERY_AUDIT_SNAPSHOT_LIMIT", "10")),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        log_json=_env_bool("LOG_JSON", True),
        log_file=os.getenv("LOG_FILE") or None,
    )


# ============================================================
# Validation
# ============================================================

def validate_settings(settings: RegistrySettings) -> Dict[str, bool]:
    """
    Validate that required configuration is present.
    Returns dict of check name -> ok.
    """
    checks = {
        "trust_store": Path(settings.trust_store_path).exists(),
        "batch_size": settings.snapshot_batch_size > 0,
        "audit_batch_size": settings.audit_batch_size > 0,
    }
    if settings.signer_type == "file":
        checks["signing_key"] = Path(settings.signing_key_path).exists()
    else:
        checks["kms_key_id"] = bool(settings.aws_kms_key_id)
    if settings.object_store_backend == "s3":
        checks["s3_bucket"] = bool(settings.s3_bucket)
    if settings.archive_backend == "http":
        checks["archive_upload_url"] = bool(settings.archive_upload_url)
    return checks


# ============================================================
# Feature Flags
# ============================================================

def is_production(settings: Optional[RegistrySettings] = None) -> bool:
    """Check if running in production mode."""
    env = settings.env if settings else os.getenv("REGISTRY_ENV", "dev")
    return env == "prod"


def is_debug() -> bool:
    """Check if debug mode is enabled."""
    return os.getenv("REGISTRY_DEBUG", "").lower() in ("1", "true", "yes")
