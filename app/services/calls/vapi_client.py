"""
Vapi outbound call adapter.

Turns a CallSpec into a Vapi ``POST /call`` request and reports the result as
a PlaceCallResult. Transient HTTP trouble (429, 5xx, network) gets a few
quick retries here; anything still failing goes back to the queue's own
backoff ladder.
"""

import asyncio
from collections.abc import Sequence
from typing import Any

import httpx

from app.config import Settings, settings
from app.infrastructure.observability.logging import get_logger, mask_phone
from app.models.domain.call_domain import CallSpec, PlaceCallResult

logger = get_logger(__name__)

RETRY_STATUS_CODES = {429, 500, 502, 503, 504}
RETRY_DELAYS_SECONDS: tuple[float, ...] = (1.0, 5.0, 15.0)


class VapiCallError(Exception):
    """Error returned by (or while reaching) the Vapi API."""

    def __init__(self, message: str, status_code: int | None = None, recoverable: bool = True):
        super().__init__(message)
        self.status_code = status_code
        self.recoverable = recoverable


def build_call_payload(spec: CallSpec, config: Settings = settings) -> dict[str, Any]:
    """Vapi request body: assistant id + overrides when configured, inline otherwise."""
    model = {
        "provider": spec.model.provider,
        "model": spec.model.model,
        "messages": [{"role": "system", "content": spec.model.system_prompt}],
        "temperature": spec.model.temperature,
    }
    payload: dict[str, Any] = {
        "phoneNumberId": config.VAPI_PHONE_NUMBER_ID,
        "customer": {"number": spec.phone, "name": spec.customer_name},
    }

    if config.VAPI_ASSISTANT_ID:
        payload["assistantId"] = config.VAPI_ASSISTANT_ID
        payload["assistantOverrides"] = {
            "model": model,
            "firstMessage": spec.first_message,
            "maxDurationSeconds": spec.max_duration_seconds,
            "silenceTimeoutSeconds": spec.silence_timeout_seconds,
            "serverUrl": spec.callback_url,
            "metadata": spec.metadata,
        }
    else:
        payload["assistant"] = {
            "model": model,
            "voice": {"provider": spec.voice.provider, "voiceId": spec.voice.voice_id},
            "firstMessage": spec.first_message,
            "maxDurationSeconds": spec.max_duration_seconds,
            "silenceTimeoutSeconds": spec.silence_timeout_seconds,
            "recordingEnabled": True,
            "serverUrl": spec.callback_url,
            "metadata": spec.metadata,
        }

    return payload


class VapiClient:
    """Thin async client for placing outbound calls through Vapi."""

    def __init__(
        self,
        config: Settings = settings,
        client: httpx.AsyncClient | None = None,
        retry_delays: Sequence[float] = RETRY_DELAYS_SECONDS,
    ):
        self.config = config
        self.retry_delays = tuple(retry_delays)
        self._client = client or self._create_client()

    def _create_client(self) -> httpx.AsyncClient:
        timeout = httpx.Timeout(self.config.VAPI_REQUEST_TIMEOUT_SECONDS)
        limits = httpx.Limits(max_keepalive_connections=10, max_connections=20)
        return httpx.AsyncClient(
            base_url=self.config.VAPI_BASE_URL, timeout=timeout, limits=limits
        )

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()

    def _get_auth_headers(self) -> dict:
        return {
            "Authorization": f"Bearer {self.config.VAPI_API_KEY}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    async def _request_with_retry(self, method: str, url: str, **kwargs) -> httpx.Response:
        """Execute an HTTP request, retrying 429/5xx and network errors."""
        max_attempts = len(self.retry_delays) + 1
        for attempt in range(1, max_attempts + 1):
            try:
                response = await self._client.request(method, url, **kwargs)
                if response.status_code in RETRY_STATUS_CODES and attempt < max_attempts:
                    delay = self.retry_delays[attempt - 1]
                    logger.warning(
                        "Vapi API error, retrying",
                        attempt=attempt,
                        status_code=response.status_code,
                        backoff_seconds=delay,
                    )
                    await asyncio.sleep(delay)
                    continue
                return response
            except httpx.RequestError as e:
                if attempt >= max_attempts:
                    raise
                delay = self.retry_delays[attempt - 1]
                logger.warning(
                    "Vapi request error, retrying",
                    attempt=attempt,
                    error=str(e),
                    backoff_seconds=delay,
                )
                await asyncio.sleep(delay)
        raise RuntimeError("Vapi retry loop exhausted")

    def _handle_api_response(self, response: httpx.Response) -> str:
        """
        Return the provider call id from a response.

        Raises:
            VapiCallError: non-2xx status or a body without a call id
        """
        if response.is_success:
            try:
                data = response.json() if response.text else {}
            except ValueError as e:
                raise VapiCallError(f"Invalid response format: {e}", response.status_code) from e

            call_id = data.get("id") if isinstance(data, dict) else None
            if not call_id:
                raise VapiCallError("Vapi response missing call id", response.status_code)
            return call_id

        try:
            body = response.json()
            message = body.get("message") or body.get("error") or response.text
        except ValueError:
            message = response.text or response.reason_phrase

        recoverable = response.status_code in RETRY_STATUS_CODES or response.status_code >= 500
        raise VapiCallError(
            f"Vapi API error {response.status_code}: {message}",
            status_code=response.status_code,
            recoverable=recoverable,
        )

    async def place_call(self, spec: CallSpec) -> PlaceCallResult:
        """
        Ask Vapi to dial ``spec.phone``.

        Acceptance only means Vapi took the request; the outcome arrives
        later on the webhook. Never raises.
        """
        if not self.config.VAPI_API_KEY:
            return PlaceCallResult.permanent("VAPI_API_KEY not configured")
        if not self.config.VAPI_PHONE_NUMBER_ID:
            return PlaceCallResult.permanent("VAPI_PHONE_NUMBER_ID not configured")

        payload = build_call_payload(spec, self.config)
        log_context = {
            "customer_id": spec.customer_id,
            "call_kind": spec.kind,
            "phone": mask_phone(spec.phone),
            "method": "assistant-id" if self.config.VAPI_ASSISTANT_ID else "inline",
        }

        try:
            response = await self._request_with_retry(
                "POST", "/call", json=payload, headers=self._get_auth_headers()
            )
            call_id = self._handle_api_response(response)

        except httpx.RequestError as e:
            logger.error("Vapi network error", error=str(e), **log_context)
            return PlaceCallResult.transient(f"Network error: {e}")

        except VapiCallError as e:
            logger.error(
                "Vapi call request failed",
                error=str(e),
                status_code=e.status_code,
                recoverable=e.recoverable,
                **log_context,
            )
            if e.recoverable:
                return PlaceCallResult.transient(str(e), e.status_code)
            return PlaceCallResult.permanent(str(e), e.status_code)

        logger.info("Vapi call initiated", provider_call_id=call_id, **log_context)
        return PlaceCallResult.ok(call_id, response.status_code)


# Singleton instance for application use
vapi_client = VapiClient()
