"""Email service - Resend transactional email sender"""
import logging
from dataclasses import dataclass
from typing import List, Optional

import resend
from resend.exceptions import (
    ApplicationError,
    InvalidApiKeyError,
    MissingApiKeyError,
    MissingRequiredFieldsError,
    RateLimitError,
    ResendError,
    ValidationError,
)

from mailqueue.core.config import settings

logger = logging.getLogger("email")

# Resend test email addresses for safe testing
# See: https://resend.com/docs/dashboard/emails/send-test-emails
RESEND_TEST_DELIVERED = "delivered@resend.dev"
RESEND_TEST_BOUNCED = "bounced@resend.dev"


class EmailError(Exception):
    """Base class for sender failures"""
    kind = "error"
    transient = False


class EmailConfigurationError(EmailError):
    """The sender cannot run at all (no provider credential)"""
    kind = "configuration"


class EmailDeliveryError(EmailError):
    """The provider call was made (or attempted) and did not deliver.

    ``transient`` is informational: every delivery error consumes a retry
    and follows the same backoff schedule.
    """
    kind = "delivery"

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.code = code

    def __str__(self):
        return f"{self.kind}: {self.message}"


class EmailNetworkError(EmailDeliveryError):
    kind = "network"
    transient = True


class EmailAuthError(EmailDeliveryError):
    kind = "auth"


class EmailAddressError(EmailDeliveryError):
    kind = "invalid_address"


class EmailRateLimitedError(EmailDeliveryError):
    kind = "rate_limited"
    transient = True


class EmailRejectedError(EmailDeliveryError):
    kind = "rejected"


class EmailProviderError(EmailDeliveryError):
    kind = "provider"
    transient = True


@dataclass
class SendResult:
    """Successful provider response"""
    message_id: str
    recipients: List[str]


def validate_email_config() -> tuple[bool, str]:
    """
    Validate email service configuration.

    Returns:
        tuple: (is_valid, error_message)
    """
    if not settings.RESEND_API_KEY:
        return False, "RESEND_API_KEY is not set in environment variables"
    return True, ""


def ensure_email_configured() -> None:
    """Raise EmailConfigurationError unless a provider credential is set"""
    is_valid, error = validate_email_config()
    if not is_valid:
        raise EmailConfigurationError(error)


def parse_recipients(recipient_email: Optional[str]) -> List[str]:
    """Split a comma-separated recipient field, dropping blanks"""
    if not recipient_email:
        return []
    return [address.strip() for address in recipient_email.split(",") if address.strip()]


def classify_resend_error(exc: ResendError) -> EmailDeliveryError:
    """Map a Resend SDK error onto the delivery error taxonomy"""
    message = getattr(exc, "message", None) or str(exc)
    code = str(getattr(exc, "code", "") or "")
    error_type = getattr(exc, "error_type", "") or ""

    if error_type == "HttpClientError":
        # Timeouts and connection failures surface here from the HTTP client
        return EmailNetworkError(message, code)
    if isinstance(exc, (MissingApiKeyError, InvalidApiKeyError)) or code in ("401", "403"):
        return EmailAuthError(message, code)
    if isinstance(exc, RateLimitError) or code == "429":
        return EmailRateLimitedError(message, code)
    if isinstance(exc, (ValidationError, MissingRequiredFieldsError)) or code in ("400", "422"):
        lowered = message.lower()
        if "email" in lowered or "`to`" in lowered or "recipient" in lowered:
            return EmailAddressError(message, code)
        return EmailRejectedError(message, code)
    if isinstance(exc, ApplicationError) or code.startswith("5"):
        return EmailProviderError(message, code)
    return EmailRejectedError(message, code)


def _response_id(response) -> Optional[str]:
    # Resend returns a dict with 'id'; older clients returned objects
    if isinstance(response, dict):
        return response.get("id")
    return getattr(response, "id", None)


def send_email(email) -> SendResult:
    """
    Send one queued email via the Resend API.

    Makes exactly one provider call. No retries happen here.

    Args:
        email: EmailQueueItem (anything with recipient_email, subject, body)

    Returns:
        SendResult with the provider message id

    Raises:
        EmailConfigurationError: RESEND_API_KEY is not configured
        EmailDeliveryError: the provider did not accept the message
    """
    ensure_email_configured()

    recipients = parse_recipients(email.recipient_email)
    if not recipients:
        raise EmailAddressError("No valid recipient address")
    invalid = [address for address in recipients if "@" not in address]
    if invalid:
        raise EmailAddressError(f"Malformed recipient address: {', '.join(invalid)}")

    resend.api_key = settings.RESEND_API_KEY
    resend.default_http_client = resend.RequestsClient(timeout=settings.RESEND_TIMEOUT_SECONDS)

    logger.info(f"Sending email {email.id} to {len(recipients)} recipient(s) (retry: {email.retry_count or 0})")
    try:
        response = resend.Emails.send({
            "from": settings.RESEND_FROM_EMAIL,
            "to": recipients,
            "subject": email.subject,
            "html": email.body,
        })
    except ResendError as exc:
        error = classify_resend_error(exc)
        logger.error(f"Resend error for email {email.id}: {error}")
        raise error from exc

    message_id = _response_id(response)
    if not message_id:
        logger.error(f"Email send returned invalid response for {email.id}: {response!r}")
        raise EmailRejectedError("No Resend ID returned")

    logger.info(f"Email {email.id} accepted by Resend (id: {message_id})")
    return SendResult(message_id=message_id, recipients=recipients)
