from typing import Optional

from fastapi import FastAPI, File, HTTPException, Request, UploadFile
from fastapi.responses import JSONResponse

from .config import load_settings
from .errors import ArchivePublishError, InvalidInputError, NotFoundError
from .logging_config import configure_logging, set_request_id
from .models import CreateProofRequest, VerifyRequest
from .registry import Registry, build_registry

app = FastAPI(title="Proof Registry")

REGISTRY: Optional[Registry] = None


def set_registry(registry: Optional[Registry]) -> None:
    global REGISTRY
    REGISTRY = registry


def get_registry() -> Registry:
    if REGISTRY is None:
        raise HTTPException(503, "REGISTRY_NOT_READY")
    return REGISTRY


@app.on_event("startup")
def _startup():
    # Tests install their own registry before the client starts
    if REGISTRY is not None:
        return
    settings = load_settings()
    configure_logging(settings.log_level, settings.log_json, settings.log_file)
    set_registry(build_registry(settings))


@app.middleware("http")
async def _request_id(request: Request, call_next):
    rid = set_request_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = rid
    return response


@app.exception_handler(InvalidInputError)
async def _invalid_input(request: Request, exc: InvalidInputError):
    return JSONResponse(status_code=400, content={"detail": exc.reason})


@app.exception_handler(NotFoundError)
async def _not_found(request: Request, exc: NotFoundError):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(ArchivePublishError)
async def _archive_error(request: Request, exc: ArchivePublishError):
    return JSONResponse(status_code=502, content={"detail": str(exc)})


@app.get("/health")
def health():
    reg = get_registry()
    return {
        "status": "ok",
        "signer": reg.keys.get_fingerprint(),
        "archive_enabled": reg.publisher.archive_enabled,
        "db": reg.datastore.get_db_stats(),
    }


@app.post("/proof/create")
def create_proof(req: CreateProofRequest):
    reg = get_registry()
    proof = reg.issuer.create_proof(req.hash, req.subject.model_dump(), req.metadata)
    return proof.to_dict()


@app.get("/proof/{proof_id}")
def get_proof(proof_id: str):
    proof = get_registry().issuer.get_proof(proof_id)
    if proof is None:
        raise HTTPException(404, "NOT_FOUND")
    return proof


@app.get("/verify")
def verify_by_query(hash: str, concurrent: bool = False):
    return get_registry().cascade.verify_by_hash(hash, concurrent=concurrent).to_dict()


@app.post("/verify")
def verify_by_body(req: VerifyRequest):
    return get_registry().cascade.verify_by_hash(req.hash).to_dict()


@app.post("/verify/file")
def verify_by_file(file: UploadFile = File(...)):
    return get_registry().cascade.verify_by_file(file.file).to_dict()


@app.get("/snapshots")
def list_snapshots(limit: int = 50):
    return get_registry().batcher.list_snapshots(limit=limit)


@app.get("/snapshots/status")
def snapshot_status():
    return get_registry().batcher.get_snapshot_status()


@app.get("/snapshots/statistics")
def snapshot_statistics():
    return get_registry().batcher.get_snapshot_statistics()


@app.get("/integrity/snapshot/{batch}")
def snapshot_integrity(batch: int):
    reg = get_registry()
    meta = reg.batcher.get_snapshot(batch)
    return {"snapshot": meta, "integrity": reg.batcher.verify_snapshot_integrity(batch)}


@app.post("/jobs/registry-snapshot")
def job_registry_snapshot():
    return get_registry().batcher.check_and_create_snapshot().to_dict()


@app.post("/jobs/registry-archive")
def job_registry_archive(limit: int = 10):
    reg = get_registry()
    if not reg.publisher.archive_enabled:
        raise HTTPException(409, "ARCHIVE_NOT_CONFIGURED")
    return reg.publisher.process_archive_queue(limit=limit)


@app.post("/jobs/recovery-audit")
def job_recovery_audit(enhanced: bool = True, force: bool = False):
    auditor = get_registry().auditor
    if force:
        return {"ran": True, "decision": None,
                "summary": auditor.run_recovery_audit(enhanced=enhanced).to_dict()}
    return auditor.run_recovery_audit_if_needed(enhanced=enhanced)


@app.post("/jobs/snapshot-cleanup")
def job_snapshot_cleanup(keep: Optional[int] = None):
    reg = get_registry()
    keep_last = keep if keep is not None else reg.settings.snapshot_keep_last
    return reg.batcher.cleanup_old_snapshots(keep_last=keep_last)


@app.get("/recovery-audit/history")
def recovery_audit_history(limit: int = 10):
    return get_registry().auditor.get_recovery_audit_history(limit)


@app.get("/recovery-audit/results/{audit_date}")
def recovery_audit_results(audit_date: str):
    return get_registry().auditor.get_recovery_audit_results(audit_date)


@app.get("/recovery-audit/cross-mirror/{audit_date}")
def recovery_audit_cross_mirror(audit_date: str):
    return get_registry().auditor.get_cross_mirror_validation_results(audit_date)
