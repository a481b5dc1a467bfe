"""Sender adapter tests"""
from types import SimpleNamespace
from unittest.mock import Mock, patch

import pytest
from resend.exceptions import (
    ApplicationError, InvalidApiKeyError, RateLimitError, ResendError, ValidationError
)

from mailqueue.core.config import settings
from mailqueue.services.email_service import (
    EmailAddressError, EmailAuthError, EmailConfigurationError, EmailNetworkError,
    EmailProviderError, EmailRateLimitedError, EmailRejectedError,
    classify_resend_error, parse_recipients, send_email, validate_email_config
)

from conftest import RESEND_TEST_BOUNCED, RESEND_TEST_DELIVERED


def queued(recipient_email=RESEND_TEST_DELIVERED):
    return SimpleNamespace(
        id="email-1",
        recipient_email=recipient_email,
        subject="Inspection results",
        body="<p>Passed</p>",
        retry_count=0,
    )


@pytest.mark.critical
class TestSendEmail:

    def test_sends_one_request_with_queue_content(self, mock_email_service):
        result = send_email(queued())

        assert result.message_id == "email_test123"
        mock_email_service.Emails.send.assert_called_once()
        params = mock_email_service.Emails.send.call_args[0][0]
        assert params["to"] == [RESEND_TEST_DELIVERED]
        assert params["subject"] == "Inspection results"
        assert params["html"] == "<p>Passed</p>"
        assert params["from"]

    def test_comma_separated_recipients(self, mock_email_service):
        result = send_email(queued(f"{RESEND_TEST_DELIVERED}, {RESEND_TEST_BOUNCED} ,"))

        assert result.recipients == [RESEND_TEST_DELIVERED, RESEND_TEST_BOUNCED]
        params = mock_email_service.Emails.send.call_args[0][0]
        assert params["to"] == [RESEND_TEST_DELIVERED, RESEND_TEST_BOUNCED]

    def test_missing_api_key_fails_fast(self, mock_email_service):
        with patch.object(settings, "RESEND_API_KEY", ""):
            assert validate_email_config()[0] is False
            with pytest.raises(EmailConfigurationError):
                send_email(queued())
        mock_email_service.Emails.send.assert_not_called()

    def test_empty_recipient_list_never_reaches_provider(self, mock_email_service):
        with pytest.raises(EmailAddressError):
            send_email(queued(" , "))
        mock_email_service.Emails.send.assert_not_called()

    def test_malformed_address_rejected_locally(self, mock_email_service):
        with pytest.raises(EmailAddressError):
            send_email(queued("not-an-address"))
        mock_email_service.Emails.send.assert_not_called()

    def test_response_without_id_is_rejection(self, mock_email_service):
        mock_email_service.Emails.send = Mock(return_value={})
        with pytest.raises(EmailRejectedError):
            send_email(queued())

    def test_provider_error_is_classified(self, mock_email_service):
        mock_email_service.Emails.send = Mock(side_effect=ResendError(
            code=500, error_type="HttpClientError",
            message="Request failed: Read timed out", suggested_action=""
        ))
        with pytest.raises(EmailNetworkError) as exc_info:
            send_email(queued())
        assert "timed out" in str(exc_info.value)


class TestClassification:

    def test_network(self):
        error = classify_resend_error(ResendError(
            code=500, error_type="HttpClientError", message="Connection refused", suggested_action=""
        ))
        assert isinstance(error, EmailNetworkError)
        assert error.transient

    def test_auth(self):
        error = classify_resend_error(InvalidApiKeyError(message="API key is invalid", error_type="invalid_api_key", code=403))
        assert isinstance(error, EmailAuthError)

    def test_rate_limit(self):
        error = classify_resend_error(RateLimitError(message="Too many requests", error_type="rate_limit_exceeded", code=429))
        assert isinstance(error, EmailRateLimitedError)

    def test_invalid_address(self):
        error = classify_resend_error(ValidationError(
            message="Invalid `to` field. The email address needs to follow the `email@example.com` format.",
            error_type="validation_error", code=422
        ))
        assert isinstance(error, EmailAddressError)

    def test_other_validation_is_rejection(self):
        error = classify_resend_error(ValidationError(
            message="The domain is not verified", error_type="validation_error", code=422
        ))
        assert isinstance(error, EmailRejectedError)
        assert not error.transient

    def test_server_error(self):
        error = classify_resend_error(ApplicationError(message="", error_type="application_error", code=500))
        assert isinstance(error, EmailProviderError)


def test_parse_recipients():
    assert parse_recipients(None) == []
    assert parse_recipients("a@example.com,,b@example.com ") == ["a@example.com", "b@example.com"]
