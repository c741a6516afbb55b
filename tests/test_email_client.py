import json

import httpx
import pytest

from polly.services.notifications.email_client import (
    ConsoleEmailClient,
    ResendEmailClient,
    get_email_client,
    is_valid_email,
)
from polly.utils.errors import PermanentDeliveryError, TransientDeliveryError


def resend_client(handler) -> ResendEmailClient:
    return ResendEmailClient(
        api_key="re_test",
        api_url="https://api.resend.test/emails",
        from_email="notifications@polly.test",
        from_name="Polly",
        timeout=5,
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )


class TestResendEmailClient:
    """Mapping of provider responses to delivery outcomes."""

    @pytest.mark.asyncio
    async def test_successful_send_returns_message_id(self):
        captured = {}

        def handler(request: httpx.Request) -> httpx.Response:
            captured["auth"] = request.headers["Authorization"]
            captured["body"] = json.loads(request.content)
            return httpx.Response(200, json={"id": "email_123"})

        client = resend_client(handler)
        message_id = await client.send(
            "user@example.com", "Hello", "<p>Hi</p>", tags={"poll_id": "p1"}
        )

        assert message_id == "email_123"
        assert captured["auth"] == "Bearer re_test"
        assert captured["body"] == {
            "from": "Polly <notifications@polly.test>",
            "to": ["user@example.com"],
            "subject": "Hello",
            "html": "<p>Hi</p>",
            "tags": [{"name": "poll_id", "value": "p1"}],
        }

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status_code", [429, 500, 503])
    async def test_retryable_statuses_are_transient(self, status_code):
        client = resend_client(lambda request: httpx.Response(status_code, text="busy"))

        with pytest.raises(TransientDeliveryError):
            await client.send("user@example.com", "Hello", "<p>Hi</p>")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status_code", [400, 401, 422])
    async def test_rejections_are_permanent(self, status_code):
        client = resend_client(
            lambda request: httpx.Response(status_code, json={"message": "bad"})
        )

        with pytest.raises(PermanentDeliveryError) as exc_info:
            await client.send("user@example.com", "Hello", "<p>Hi</p>")

        assert str(status_code) in exc_info.value.message

    @pytest.mark.asyncio
    async def test_timeout_is_transient(self):
        def handler(request):
            raise httpx.ReadTimeout("too slow", request=request)

        with pytest.raises(TransientDeliveryError):
            await resend_client(handler).send("user@example.com", "Hello", "<p>Hi</p>")

    @pytest.mark.asyncio
    async def test_connection_error_is_transient(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(TransientDeliveryError):
            await resend_client(handler).send("user@example.com", "Hello", "<p>Hi</p>")

    @pytest.mark.asyncio
    async def test_missing_message_id_is_permanent(self):
        client = resend_client(lambda request: httpx.Response(200, json={}))

        with pytest.raises(PermanentDeliveryError):
            await client.send("user@example.com", "Hello", "<p>Hi</p>")

    @pytest.mark.asyncio
    async def test_invalid_address_is_rejected_before_request(self):
        calls = []
        client = resend_client(lambda request: calls.append(request))

        with pytest.raises(PermanentDeliveryError) as exc_info:
            await client.send("not-an-address", "Hello", "<p>Hi</p>")

        assert exc_info.value.error_code == "INVALID_RECIPIENT"
        assert calls == []


class TestConsoleEmailClient:
    """Development client."""

    @pytest.mark.asyncio
    async def test_records_outbox(self):
        client = ConsoleEmailClient()

        message_id = await client.send("user@example.com", "Hello", "<p>Hi</p>")

        assert message_id.startswith("console-")
        assert client.outbox[0]["to"] == "user@example.com"


def test_email_validation():
    assert is_valid_email("user@example.com")
    assert not is_valid_email("user@example")
    assert not is_valid_email("user @example.com")
    assert not is_valid_email(None)


def test_get_email_client_uses_configured_provider(monkeypatch):
    monkeypatch.setattr(
        "polly.services.notifications.email_client.settings.EMAIL_PROVIDER", "resend"
    )
    assert isinstance(get_email_client(), ResendEmailClient)

    monkeypatch.setattr(
        "polly.services.notifications.email_client.settings.EMAIL_PROVIDER", "console"
    )
    assert isinstance(get_email_client(), ConsoleEmailClient)
