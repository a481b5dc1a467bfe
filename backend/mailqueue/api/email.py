"""Email queue trigger endpoints: webhook processor, monitor, backup reaper"""
import logging
import uuid
from typing import List

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from mailqueue.core.security import require_service_token
from mailqueue.db.email_queue import get_health_history
from mailqueue.db.session import get_db
from mailqueue.schemas.email import (
    BackupRetryResponse, BatchProcessResponse, EmailQueueHealthResponse, MonitorReport,
    WebhookRequest, WebhookResponse
)
from mailqueue.services.email_processor import process_due_emails, process_email
from mailqueue.services.recovery import NeverAttemptedSweep, StalenessSweep
from mailqueue.utils.timeutils import utcnow

router = APIRouter(prefix="/api/email", tags=["email"], dependencies=[Depends(require_service_token)])
logger = logging.getLogger("email")


def _error_response(message: str) -> JSONResponse:
    return JSONResponse(
        status_code=500,
        content={"success": False, "error": message, "timestamp": utcnow().isoformat()},
    )


@router.post("/queue/webhook")
def email_queue_webhook(payload: WebhookRequest, db: Session = Depends(get_db)):
    """Process one queued email, or a batch of due emails"""
    request_id = str(uuid.uuid4())
    logger.info(f"[{request_id}] Webhook request: {payload.model_dump(exclude_none=True)}")

    if payload.email_id:
        result = process_email(db, payload.email_id, reserved_retry_count=payload.retry_count)
        response = WebhookResponse(
            success=result.success,
            error=result.error,
            status=result.status,
            skipped=result.skipped,
            request_id=request_id,
        )
        return JSONResponse(
            status_code=200 if result.success else 500,
            content=response.model_dump(mode="json", by_alias=True, exclude_none=True),
        )

    if payload.process_all or payload.scheduled:
        batch = process_due_emails(db)
        logger.info(
            f"[{request_id}] Batch complete: {batch.processed} processed, "
            f"{batch.succeeded} succeeded, {batch.failed} failed"
        )
        response = BatchProcessResponse(
            success=True,
            processed=batch.processed,
            succeeded=batch.succeeded,
            failed=batch.failed,
            request_id=request_id,
        )
        return response.model_dump(mode="json", by_alias=True)

    raise HTTPException(400, "Invalid request: missing email_id or process_all parameter")


@router.post("/monitor", response_model=MonitorReport)
def email_monitor(db: Session = Depends(get_db)):
    """Sweep stuck emails and report queue health"""
    try:
        return StalenessSweep(db).run()
    except Exception as e:
        logger.error(f"Critical error in email monitor: {e}", exc_info=True)
        return _error_response(str(e))


@router.post("/backup-retry", response_model=BackupRetryResponse)
def email_backup_retry(db: Session = Depends(get_db)):
    """Recover emails whose immediate trigger never fired"""
    try:
        return NeverAttemptedSweep(db).run()
    except Exception as e:
        logger.error(f"Error in backup retry processor: {e}", exc_info=True)
        return _error_response(str(e))


@router.get("/queue/health", response_model=List[EmailQueueHealthResponse])
def email_queue_health(limit: int = Query(100, ge=1, le=1000), db: Session = Depends(get_db)):
    """Most recent monitor health snapshots, newest first"""
    return get_health_history(db, limit=limit)
