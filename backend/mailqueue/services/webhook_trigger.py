"""Ways a sweep can re-trigger the queue webhook for one email"""
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

import httpx
from sqlalchemy.orm import Session

from mailqueue.core.config import settings
from mailqueue.db.session import SessionLocal
from mailqueue.services.email_processor import process_email
from mailqueue.services.email_service import send_email
from mailqueue.utils.timeutils import utcnow

logger = logging.getLogger("email")


@dataclass
class TriggerResult:
    """What a sweep learns from one trigger call.

    ``reached`` is False when the processor could not be invoked at all
    (connection error, timeout); ``success`` is the processor's own verdict.
    """
    success: bool
    reached: bool = True
    error: Optional[str] = None
    status_code: Optional[int] = None


class WebhookTrigger(ABC):
    @abstractmethod
    def trigger(self, email_id: str, retry_count: Optional[int] = None, manual_trigger: bool = False) -> TriggerResult:
        ...


class HttpWebhookTrigger(WebhookTrigger):
    """POSTs to the deployed webhook endpoint with the service credential"""

    def __init__(self, url: str, token: str, timeout: float = 30.0, client: Optional[httpx.Client] = None):
        self.url = url
        self.token = token
        self.timeout = timeout
        self.client = client

    def trigger(self, email_id: str, retry_count: Optional[int] = None, manual_trigger: bool = False) -> TriggerResult:
        payload = {"email_id": email_id, "manual_trigger": manual_trigger}
        if retry_count is not None:
            payload["retry_count"] = retry_count
        headers = {"Authorization": f"Bearer {self.token}"}

        try:
            if self.client is not None:
                response = self.client.post(self.url, json=payload, headers=headers, timeout=self.timeout)
            else:
                with httpx.Client(timeout=self.timeout) as client:
                    response = client.post(self.url, json=payload, headers=headers)
        except httpx.HTTPError as e:
            logger.warning(f"Webhook call for email {email_id} did not complete: {e}")
            return TriggerResult(success=False, reached=False, error=str(e))

        try:
            body = response.json()
        except ValueError:
            body = {}

        success = response.is_success and body.get("success") is True
        if not success:
            logger.warning(f"Webhook call failed for email {email_id}: {response.status_code}")
        return TriggerResult(
            success=success,
            error=body.get("error") if not success else None,
            status_code=response.status_code,
        )


class LocalWebhookTrigger(WebhookTrigger):
    """Runs the processor in-process.

    Uses the given session if provided, otherwise opens (and closes) its own.
    """

    def __init__(
        self,
        db: Optional[Session] = None,
        sender: Callable = send_email,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.sender = sender
        self.clock = clock

    def trigger(self, email_id: str, retry_count: Optional[int] = None, manual_trigger: bool = False) -> TriggerResult:
        db = self.db
        should_close = False
        if db is None:
            db = SessionLocal()
            should_close = True

        try:
            result = process_email(
                db, email_id, now=self.clock(), sender=self.sender, reserved_retry_count=retry_count
            )
            return TriggerResult(success=result.success, error=result.error)
        except Exception as e:
            logger.error(f"In-process trigger for email {email_id} failed: {e}", exc_info=True)
            return TriggerResult(success=False, reached=False, error=str(e))
        finally:
            if should_close:
                db.close()


def get_webhook_trigger(
    db: Optional[Session] = None,
    sender: Callable = send_email,
    clock: Callable[[], datetime] = utcnow,
) -> WebhookTrigger:
    """HTTP trigger when EMAIL_WEBHOOK_URL is configured, in-process otherwise"""
    if settings.EMAIL_WEBHOOK_URL:
        return HttpWebhookTrigger(
            settings.EMAIL_WEBHOOK_URL,
            settings.SERVICE_ROLE_KEY,
            timeout=settings.WEBHOOK_TIMEOUT_SECONDS,
        )
    return LocalWebhookTrigger(db=db, sender=sender, clock=clock)
