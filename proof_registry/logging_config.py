"""
Logging configuration for the proof registry.

Provides structured JSON logging for audit trails and debugging.
"""

import json
import logging
import sys
import time
import uuid
from contextvars import ContextVar
from typing import Any, Dict, List, Optional

# Context variable for request ID tracking
request_id_var: ContextVar[str] = ContextVar('request_id', default='')


class StructuredFormatter(logging.Formatter):
    """
    JSON formatter for structured logging.

    Outputs logs in a consistent JSON format suitable for
    log aggregation systems like ELK, Splunk, or CloudWatch.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data: Dict[str, Any] = {
            "timestamp": time.strftime('%Y-%m-%dT%H:%M:%SZ', time.gmtime(record.created)),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        request_id = request_id_var.get()
        if request_id:
            log_data["request_id"] = request_id

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        if hasattr(record, 'extra_fields'):
            log_data.update(record.extra_fields)

        return json.dumps(log_data, default=str)


class RegistryAuditLogger:
    """
    Specialized logger for registry audit events.

    Records issuance, verification outcomes, snapshot and archive
    lifecycle, and integrity violations.
    """

    def __init__(self, name: str = "proof_registry.audit"):
        self._logger = logging.getLogger(name)

    def _log(self, level: int, event_type: str, **kwargs) -> None:
        extra = {
            "event_type": event_type,
            "request_id": request_id_var.get(),
            **kwargs
        }

        record = self._logger.makeRecord(
            self._logger.name,
            level,
            "",
            0,
            f"{event_type}: {kwargs.get('message', '')}",
            (),
            None
        )
        record.extra_fields = extra
        self._logger.handle(record)

    def proof_issued(self, proof_id: str, file_hash: str, signer: str) -> None:
        self._log(
            logging.INFO,
            "PROOF_ISSUED",
            proof_id=proof_id,
            file_hash=file_hash,
            signer=signer,
            message=f"Proof {proof_id} issued"
        )

    def verification_result(
        self,
        file_hash: str,
        valid: bool,
        source: Optional[str],
        latency_ms: float,
        errors: Optional[List[str]] = None
    ) -> None:
        """Log the outcome of a verification cascade."""
        self._log(
            logging.INFO if valid else logging.WARNING,
            "VERIFICATION_RESULT",
            file_hash=file_hash,
            valid=valid,
            source=source,
            latency_ms=latency_ms,
            errors=errors or [],
            message=f"Verification {'succeeded' if valid else 'failed'} for {file_hash}"
        )

    def snapshot_created(self, batch: int, count: int, merkle_root: str) -> None:
        self._log(
            logging.INFO,
            "SNAPSHOT_CREATED",
            batch=batch,
            count=count,
            merkle_root=merkle_root,
            message=f"Snapshot batch {batch} created with {count} proofs"
        )

    def snapshot_skipped(self, reason: str, **details) -> None:
        self._log(
            logging.INFO,
            "SNAPSHOT_SKIPPED",
            reason=reason,
            **details,
            message=f"Snapshot skipped: {reason}"
        )

    def archive_published(self, batch: int, manifest_tx_id: str, jsonl_tx_id: str) -> None:
        self._log(
            logging.INFO,
            "ARCHIVE_PUBLISHED",
            batch=batch,
            manifest_tx_id=manifest_tx_id,
            jsonl_tx_id=jsonl_tx_id,
            message=f"Snapshot batch {batch} published to archive"
        )

    def archive_publish_failed(self, batch: int, attempts: int, error: str) -> None:
        self._log(
            logging.ERROR,
            "ARCHIVE_PUBLISH_FAILED",
            batch=batch,
            attempts=attempts,
            error=error,
            message=f"Archive publication failed for batch {batch}: {error}"
        )

    def recovery_audit_completed(self, audit_date: str, enhanced: bool, **summary) -> None:
        failed = summary.get("failed_recoveries", 0)
        self._log(
            logging.INFO if not failed else logging.WARNING,
            "RECOVERY_AUDIT_COMPLETED",
            audit_date=audit_date,
            enhanced=enhanced,
            **summary,
            message=f"Recovery audit {audit_date} completed"
        )

    def integrity_violation(self, kind: str, severity: str = "high", **details) -> None:
        """Log a signature failure, hash mismatch or mirror inconsistency."""
        level = {
            "low": logging.INFO,
            "medium": logging.WARNING,
            "high": logging.ERROR,
            "critical": logging.CRITICAL
        }.get(severity, logging.WARNING)

        self._log(
            level,
            "INTEGRITY_VIOLATION",
            violation=kind,
            severity=severity,
            **details,
            message=f"Integrity violation: {kind}"
        )


def configure_logging(
    level: str = "INFO",
    json_format: bool = True,
    log_file: Optional[str] = None
) -> None:
    """
    Configure logging for the application.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_format: Use JSON formatting (recommended for production)
        log_file: Optional file path for log output
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    if json_format:
        formatter = StructuredFormatter()
    else:
        formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        )

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)


def set_request_id(request_id: Optional[str] = None) -> str:
    """
    Set the request ID for the current context.

    Args:
        request_id: Request ID to set, or None to generate one

    Returns:
        The request ID that was set
    """
    if request_id is None:
        request_id = str(uuid.uuid4())
    request_id_var.set(request_id)
    return request_id


def get_request_id() -> str:
    """Get the current request ID."""
    return request_id_var.get()


# Global audit logger instance
audit_log = RegistryAuditLogger()
