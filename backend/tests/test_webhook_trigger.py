"""Webhook trigger adapters"""
import json
from datetime import timedelta
from unittest.mock import patch

import httpx

from mailqueue.core.config import settings
from mailqueue.models import EmailStatus
from mailqueue.services.webhook_trigger import HttpWebhookTrigger, LocalWebhookTrigger, get_webhook_trigger

from conftest import TestSessionLocal

WEBHOOK_URL = "https://mail.example.test/api/email/queue/webhook"


def make_trigger(handler):
    client = httpx.Client(transport=httpx.MockTransport(handler))
    return HttpWebhookTrigger(WEBHOOK_URL, "secret-token", timeout=5, client=client)


class TestHttpWebhookTrigger:

    def test_posts_email_id_with_bearer_token(self):
        seen = {}

        def handler(request):
            seen["auth"] = request.headers["Authorization"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"success": True, "requestId": "abc"})

        result = make_trigger(handler).trigger("email-1", retry_count=2)

        assert result.success is True
        assert result.reached is True
        assert result.status_code == 200
        assert seen["auth"] == "Bearer secret-token"
        assert seen["body"] == {"email_id": "email-1", "manual_trigger": False, "retry_count": 2}

    def test_manual_trigger_omits_retry_count(self):
        seen = {}

        def handler(request):
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"success": True})

        make_trigger(handler).trigger("email-1", manual_trigger=True)

        assert seen["body"] == {"email_id": "email-1", "manual_trigger": True}

    def test_processor_failure_is_reported(self):
        def handler(request):
            return httpx.Response(500, json={"success": False, "error": "network: timed out"})

        result = make_trigger(handler).trigger("email-1")

        assert result.success is False
        assert result.reached is True
        assert result.status_code == 500
        assert result.error == "network: timed out"

    def test_success_flag_required(self):
        def handler(request):
            return httpx.Response(200, json={"success": False, "error": "nope"})

        assert make_trigger(handler).trigger("email-1").success is False

    def test_non_json_response(self):
        def handler(request):
            return httpx.Response(502, text="Bad Gateway")

        result = make_trigger(handler).trigger("email-1")

        assert result.success is False
        assert result.reached is True
        assert result.status_code == 502

    def test_connection_error_means_not_reached(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        result = make_trigger(handler).trigger("email-1")

        assert result.success is False
        assert result.reached is False
        assert "connection refused" in result.error


class TestLocalWebhookTrigger:

    def test_processes_with_given_session(self, db_session, make_email, fake_sender, now):
        email = make_email(created_at=now - timedelta(minutes=1))

        result = LocalWebhookTrigger(db=db_session, sender=fake_sender, clock=lambda: now).trigger(email.id)

        assert result.success is True
        db_session.refresh(email)
        assert email.status == EmailStatus.SENT.value

    def test_opens_own_session(self, db_session, make_email, fake_sender, now):
        email = make_email(created_at=now - timedelta(minutes=1))

        with patch("mailqueue.services.webhook_trigger.SessionLocal", TestSessionLocal):
            result = LocalWebhookTrigger(sender=fake_sender, clock=lambda: now).trigger(email.id)

        assert result.success is True
        assert fake_sender.calls == [email.id]
        db_session.refresh(email)
        assert email.status == EmailStatus.SENT.value

    def test_failed_delivery_is_reached_but_unsuccessful(self, db_session, make_email, failing_sender, now):
        email = make_email(created_at=now - timedelta(minutes=1))

        result = LocalWebhookTrigger(db=db_session, sender=failing_sender, clock=lambda: now).trigger(email.id)

        assert result.success is False
        assert result.reached is True
        assert "timed out" in result.error


class TestGetWebhookTrigger:

    def test_http_when_url_configured(self):
        with patch.object(settings, "EMAIL_WEBHOOK_URL", WEBHOOK_URL):
            trigger = get_webhook_trigger()

        assert isinstance(trigger, HttpWebhookTrigger)
        assert trigger.url == WEBHOOK_URL
        assert trigger.token == settings.SERVICE_ROLE_KEY

    def test_in_process_otherwise(self, db_session):
        trigger = get_webhook_trigger(db=db_session)

        assert isinstance(trigger, LocalWebhookTrigger)
        assert trigger.db is db_session
