import json

import httpx
import pytest
from conftest import utc

from app.models.domain.call_domain import CallTarget
from app.services.calls.call_prompts import build_call_spec
from app.services.calls.vapi_client import VapiClient, build_call_payload


def make_target(**overrides) -> CallTarget:
    fields = {
        "id": 7,
        "name": "Dana",
        "phone": "+15555550123",
        "timezone": "America/New_York",
        "goals": "Speak up in meetings",
        "payment_state": "Paid",
        "phone_validated": True,
        "call_state": "active",
        "welcome_call_done": True,
        "last_call_date": None,
    }
    fields.update(overrides)
    return CallTarget(**fields)


def make_client(settings, handler, **overrides) -> VapiClient:
    config = settings.model_copy(update=overrides)
    transport = httpx.MockTransport(handler)
    client = httpx.AsyncClient(base_url="https://vapi.test", transport=transport)
    return VapiClient(config, client=client, retry_delays=(0, 0, 0))


@pytest.fixture
def daily_spec(test_settings):
    return build_call_spec(make_target(), "daily", now=utc(2024, 6, 3, 11, 5), config=test_settings)


class TestBuildCallPayload:
    def test_inline_assistant_without_assistant_id(self, test_settings, daily_spec):
        payload = build_call_payload(daily_spec, test_settings)

        assert "assistantId" not in payload
        assert payload["phoneNumberId"] == "phone-123"
        assert payload["customer"] == {"number": "+15555550123", "name": "Dana"}
        assistant = payload["assistant"]
        assert assistant["maxDurationSeconds"] == 150
        assert assistant["serverUrl"] == "http://localhost:8000/webhooks/calls"
        assert assistant["metadata"] == {"customer_id": 7, "call_type": "daily"}
        assert assistant["model"]["messages"][0]["role"] == "system"

    def test_assistant_id_sends_overrides(self, test_settings, daily_spec):
        config = test_settings.model_copy(update={"VAPI_ASSISTANT_ID": "asst-1"})

        payload = build_call_payload(daily_spec, config)

        assert payload["assistantId"] == "asst-1"
        assert "assistant" not in payload
        assert payload["assistantOverrides"]["firstMessage"] == daily_spec.first_message


class TestPlaceCall:
    @pytest.mark.asyncio
    async def test_accepted_call_returns_provider_id(self, test_settings, daily_spec):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(201, json={"id": "vapi-call-1"})

        client = make_client(test_settings, handler)

        result = await client.place_call(daily_spec)

        assert result.accepted is True
        assert result.provider_call_id == "vapi-call-1"
        assert seen[0].url.path == "/call"
        assert seen[0].headers["Authorization"] == "Bearer test-key"
        assert json.loads(seen[0].content)["customer"]["number"] == "+15555550123"

    @pytest.mark.asyncio
    async def test_server_errors_are_retried(self, test_settings, daily_spec):
        responses = iter(
            [httpx.Response(503, json={"message": "busy"}), httpx.Response(201, json={"id": "c-2"})]
        )
        client = make_client(test_settings, lambda request: next(responses))

        result = await client.place_call(daily_spec)

        assert result.provider_call_id == "c-2"

    @pytest.mark.asyncio
    async def test_persistent_server_error_is_transient(self, test_settings, daily_spec):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(502, text="bad gateway")

        client = make_client(test_settings, handler)

        result = await client.place_call(daily_spec)

        assert result.outcome == "transient_failure"
        assert result.status_code == 502
        assert len(calls) == 4

    @pytest.mark.asyncio
    async def test_client_error_is_permanent_and_not_retried(self, test_settings, daily_spec):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(400, json={"message": "customer.number must be E.164"})

        client = make_client(test_settings, handler)

        result = await client.place_call(daily_spec)

        assert result.outcome == "permanent_failure"
        assert "E.164" in result.error
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_network_error_is_transient(self, test_settings, daily_spec):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        client = make_client(test_settings, handler)

        result = await client.place_call(daily_spec)

        assert result.outcome == "transient_failure"
        assert "Network error" in result.error

    @pytest.mark.asyncio
    async def test_response_without_id_is_a_failure(self, test_settings, daily_spec):
        client = make_client(test_settings, lambda request: httpx.Response(201, json={}))

        result = await client.place_call(daily_spec)

        assert result.accepted is False

    @pytest.mark.asyncio
    async def test_missing_api_key_fails_without_request(self, test_settings, daily_spec):
        def handler(request):
            raise AssertionError("no request expected")

        client = make_client(test_settings, handler, VAPI_API_KEY=None)

        result = await client.place_call(daily_spec)

        assert result.outcome == "permanent_failure"
        assert "VAPI_API_KEY" in result.error
