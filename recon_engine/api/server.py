"""
FastAPI Server for the reconciliation engine.

Provides REST API endpoints for previewing, executing and retrying bulk
user imports, browsing and rolling back the import history, and managing
scheduled imports.
"""

import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import uvicorn
from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from ..config import EngineSettings, load_settings
from ..engine.errors import ScheduleNotFoundError, ScheduleStoreError, ScheduleValidationError
from ..models import (
    Actor,
    AuditLogEntry,
    CriticalError,
    ErrorReport,
    ExecutionResult,
    FixMap,
    ImportRunSummary,
    ImportStatistics,
    PreviewSummary,
    RecoverableError,
    RetryResult,
    RollbackResult,
    ScheduledImportConfig,
    UpsertOptions,
)
from ..notifications.notifier import build_notifier
from ..scheduler.scheduler import ImportScheduler
from ..scheduler.store import ScheduleStore
from ..service import ReconciliationService

logger = logging.getLogger(__name__)

API_VERSION = "1.0.0"
API_ACTOR = Actor(user_id="api", user_name="API User")


# Pydantic models for API requests
class ImportRequest(BaseModel):
    """Upload of a user file for preview or execution."""
    content: str = Field(..., description="File contents (CSV or JSON array)")
    file_name: str = Field("upload.csv", description="Original file name")
    options: UpsertOptions = Field(default_factory=UpsertOptions)
    actor: Optional[Actor] = Field(None, description="Operator the operation is recorded against")


class RetryRequest(BaseModel):
    """Retry of the rows that failed recoverably in an earlier execution."""
    content: str = Field(..., description="The originally uploaded file contents")
    file_name: str = "upload.csv"
    recoverable_errors: List[RecoverableError]
    fixes: Optional[FixMap] = Field(None, description="Fixes per row; proposed fixes are used when omitted")
    options: UpsertOptions = Field(default_factory=UpsertOptions)
    actor: Optional[Actor] = None
    retry_of: Optional[str] = Field(None, description="Audit entry ID of the original execution")


class ErrorReportRequest(BaseModel):
    recoverable_errors: List[RecoverableError] = Field(default_factory=list)
    critical_errors: List[CriticalError] = Field(default_factory=list)


class RollbackRequest(BaseModel):
    actor: Optional[Actor] = None


# Global components (initialized on startup)
settings: Optional[EngineSettings] = None
service: Optional[ReconciliationService] = None
scheduler: Optional[ImportScheduler] = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    global settings, service, scheduler

    logger.info("Initializing reconciliation API server components")

    settings = load_settings(os.environ.get("RECON_CONFIG"))
    service = ReconciliationService.from_settings(settings)
    scheduler = ImportScheduler(
        ScheduleStore(settings.schedules_path),
        service,
        notifier=build_notifier(settings.notification_webhook_url),
        interval_seconds=settings.scheduler_interval_seconds,
    )
    if settings.run_scheduler:
        scheduler.start()

    logger.info("Reconciliation API server components initialized")

    yield

    logger.info("Shutting down reconciliation API server")
    if scheduler.running:
        scheduler.stop(wait=False)


app = FastAPI(
    title="Reconciliation Engine API",
    description="Bulk identity reconciliation - preview, execute, retry and roll back user imports",
    version=API_VERSION,
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(ScheduleStoreError)
async def schedule_store_error_handler(request: Request, exc: ScheduleStoreError) -> JSONResponse:
    """Schedule storage failures are reported as an unavailable dependency."""
    return JSONResponse(status_code=503, content={"detail": str(exc)})


def _service() -> ReconciliationService:
    if not service:
        raise HTTPException(status_code=503, detail="Reconciliation service not available")
    return service


def _scheduler() -> ImportScheduler:
    if not scheduler:
        raise HTTPException(status_code=503, detail="Scheduler not available")
    return scheduler


@app.get("/")
async def root():
    """Root endpoint."""
    return {"message": "Reconciliation Engine API", "version": API_VERSION, "status": "running"}


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "components": {
            "service": service is not None,
            "scheduler": scheduler is not None,
            "scheduler_running": bool(scheduler and scheduler.running),
        }
    }


@app.post("/imports/preview", response_model=PreviewSummary)
def preview_import(request: ImportRequest):
    """Validate an upload against the directory without changing anything."""
    return _service().preview(
        request.content,
        file_name=request.file_name,
        options=request.options,
        actor=request.actor,
    )


@app.post("/imports/execute", response_model=ExecutionResult)
def execute_import(request: ImportRequest):
    """
    Execute an import.

    Row failures are reported in the result body; the request itself only
    fails when the service is unavailable.
    """
    return _service().execute(
        request.content,
        options=request.options,
        actor=request.actor or API_ACTOR,
        file_name=request.file_name,
    )


@app.post("/imports/retry", response_model=RetryResult)
def retry_import(request: RetryRequest):
    """Re-run the rows of recoverable errors after applying fixes."""
    return _service().retry(
        request.content,
        request.recoverable_errors,
        fixes=request.fixes,
        options=request.options,
        actor=request.actor or API_ACTOR,
        file_name=request.file_name,
        retry_of=request.retry_of,
    )


@app.post("/imports/fixes", response_model=FixMap)
async def propose_fixes(recoverable_errors: List[RecoverableError]):
    """Automatic fixes for a set of recoverable errors, keyed by row."""
    return _service().propose_fixes(recoverable_errors)


@app.post("/imports/error-report", response_model=ErrorReport)
async def error_report(request: ErrorReportRequest):
    """Categorized error report with recommended actions."""
    result = ExecutionResult(
        success=False,
        recoverable_errors=request.recoverable_errors,
        critical_errors=request.critical_errors,
    )
    return _service().error_report(result)


@app.get("/imports/history", response_model=List[AuditLogEntry])
def get_history(
    limit: Optional[int] = Query(None, ge=0, description="Maximum number of entries (0 for all)"),
    include_previews: bool = Query(False, description="Include preview entries"),
):
    """Import history, newest first."""
    return _service().get_history(limit=limit, include_previews=include_previews)


@app.get("/imports/statistics", response_model=ImportStatistics)
def get_statistics():
    """Aggregate import statistics."""
    return _service().statistics()


@app.post("/imports/{audit_log_id}/rollback", response_model=RollbackResult)
def rollback_import(audit_log_id: str, request: Optional[RollbackRequest] = None):
    """Reverse a completed execution within the rollback window."""
    actor = request.actor if request and request.actor else API_ACTOR
    result = _service().rollback(audit_log_id, actor=actor)
    if not result.success and result.audit_log_id is None and "not found" in (result.error or ""):
        raise HTTPException(status_code=404, detail=result.error)
    return result


@app.get("/schedules", response_model=List[ScheduledImportConfig])
def list_schedules():
    return _scheduler().list_schedules()


@app.post("/schedules", response_model=ScheduledImportConfig, status_code=201)
def create_schedule(config: ScheduledImportConfig):
    return _scheduler().create_schedule(config)


@app.get("/schedules/{config_id}", response_model=ScheduledImportConfig)
def get_schedule(config_id: str):
    try:
        return _scheduler().get_schedule(config_id)
    except ScheduleNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e)) from e


@app.put("/schedules/{config_id}", response_model=ScheduledImportConfig)
def update_schedule(config_id: str, changes: Dict[str, Any]):
    try:
        return _scheduler().update_schedule(config_id, changes)
    except ScheduleNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    except ScheduleValidationError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e


@app.delete("/schedules/{config_id}", status_code=204)
def delete_schedule(config_id: str):
    try:
        _scheduler().delete_schedule(config_id)
    except ScheduleNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e)) from e


@app.post("/schedules/{config_id}/toggle", response_model=ScheduledImportConfig)
def toggle_schedule(config_id: str):
    try:
        return _scheduler().toggle_enabled(config_id)
    except ScheduleNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e)) from e


@app.post("/schedules/{config_id}/run", response_model=ImportRunSummary)
def run_schedule(config_id: str):
    """Run a scheduled import now."""
    try:
        summary = _scheduler().execute_now(config_id)
    except ScheduleNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    except ScheduleValidationError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e

    if summary is None:
        raise HTTPException(status_code=409, detail=f"Schedule {config_id} is already running")
    return summary


def start_server(host: str = "0.0.0.0", port: int = 8000, reload: bool = False):
    """Start the FastAPI server."""
    uvicorn.run(
        "recon_engine.api.server:app",
        host=host,
        port=port,
        reload=reload,
        log_level="info"
    )


if __name__ == "__main__":
    start_server()
