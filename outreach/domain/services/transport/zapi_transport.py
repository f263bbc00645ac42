"""
Z-API Transport - BaseTransport over the Z-API HTTP gateway.

Endpoints used:
- POST {base}/instances/{instance}/token/{token}/send-text
- GET  {base}/instances/{instance}/token/{token}/status

No internal retries: a failed send is reported back to the queue, which owns
the retry budget and the backoff.
"""
from __future__ import annotations

from typing import Any, Optional

import httpx

from outreach.core.circuit_breaker import CircuitBreaker
from outreach.core.config import Settings
from outreach.core.exceptions import CircuitBreakerOpenError, TransportError
from outreach.core.logging import get_logger
from outreach.core.validation import PhoneNumberValidator, ValidationPatterns
from outreach.domain.services.transport.base_transport import (
    BaseTransport,
    Connectivity,
    SendResult,
)

logger = get_logger(__name__)


class ZApiTransport(BaseTransport):
    """Z-API WhatsApp gateway"""

    def __init__(self, settings: Settings, circuit_breaker: CircuitBreaker) -> None:
        self._circuit_breaker = circuit_breaker
        self._base_url = settings.GATEWAY_BASE_URL
        self._instance_id = settings.GATEWAY_INSTANCE_ID
        self._token = settings.GATEWAY_TOKEN
        self._client_token = settings.GATEWAY_CLIENT_TOKEN
        self._timeout = settings.GATEWAY_TIMEOUT_SECONDS
        self._country_code = settings.DEFAULT_COUNTRY_CODE

    @property
    def provider_name(self) -> str:
        return "zapi"

    @property
    def circuit_breaker(self) -> CircuitBreaker:
        return self._circuit_breaker

    def _url(self, endpoint: str) -> str:
        return f"{self._base_url}/instances/{self._instance_id}/token/{self._token}/{endpoint}"

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._client_token:
            headers["Client-Token"] = self._client_token
        return headers

    def normalize_contact(self, raw: str) -> str:
        return PhoneNumberValidator.normalize(raw, self._country_code)

    @staticmethod
    def _parse_json(operation: str, response: httpx.Response) -> dict[str, Any]:
        """Non-JSON or non-object bodies are failures"""
        try:
            data = response.json()
        except ValueError:
            raise TransportError.from_response(
                operation, response, message=f"{operation} returned a non-JSON body"
            )
        if not isinstance(data, dict):
            raise TransportError.from_response(
                operation, response, message=f"{operation} returned an unexpected body"
            )
        return data

    async def _post_send_text(self, contact: str, body: str) -> str:
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            response = await client.post(
                self._url("send-text"),
                json={"phone": contact, "message": body},
                headers=self._headers(),
            )

        if not 200 <= response.status_code < 300:
            raise TransportError.from_response("send-text", response)

        data = self._parse_json("send-text", response)
        external_id: Optional[str] = data.get("messageId") or data.get("zaapId") or data.get("id")
        if not external_id:
            raise TransportError.from_response(
                "send-text",
                response,
                message=data.get("error") or "send-text response carried no message id",
            )
        return str(external_id)

    async def send(self, contact: str, body: str) -> SendResult:
        """Send text through the gateway with circuit breaker protection. Never raises."""
        normalized = self.normalize_contact(contact)
        masked = PhoneNumberValidator.mask(normalized)
        if not ValidationPatterns.CONTACT_DIGITS.match(normalized):
            return SendResult(accepted=False, error=f"invalid contact: {masked}")

        try:
            external_id = await self._circuit_breaker.execute(
                self._post_send_text, normalized, body
            )
        except CircuitBreakerOpenError as exc:
            logger.warning(
                "Gateway circuit open, send skipped",
                extra_data={"phone": masked, "retry_after": exc.details.get("retry_after_seconds")},
            )
            return SendResult(accepted=False, error=exc.message)
        except httpx.TimeoutException:
            logger.warning(
                "Gateway send timed out",
                extra_data={"phone": masked, "timeout_seconds": self._timeout},
            )
            return SendResult(accepted=False, error=f"gateway timeout after {self._timeout}s")
        except httpx.RequestError as exc:
            logger.warning(
                "Gateway network error",
                extra_data={"phone": masked, "error": str(exc)},
            )
            return SendResult(accepted=False, error=f"gateway network error: {exc}")
        except TransportError as exc:
            logger.warning(
                "Gateway rejected send",
                extra_data={"phone": masked, **exc.details},
            )
            return SendResult(accepted=False, error=exc.message)

        logger.info(
            "Message accepted by gateway",
            extra_data={"phone": masked, "external_id": external_id},
        )
        return SendResult(accepted=True, external_id=external_id)

    async def get_connectivity(self) -> Connectivity:
        """Query the instance status endpoint. Never raises."""
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await client.get(self._url("status"), headers=self._headers())
            if response.status_code != 200:
                raise TransportError.from_response("status", response)
            data = self._parse_json("status", response)
        except httpx.TimeoutException:
            return Connectivity(connected=False, error=f"gateway timeout after {self._timeout}s")
        except httpx.RequestError as exc:
            return Connectivity(connected=False, error=f"gateway unreachable: {exc}")
        except TransportError as exc:
            logger.warning("Gateway status check failed", extra_data=exc.details)
            return Connectivity(connected=False, error=exc.message)

        connected = bool(data.get("connected"))
        error = data.get("error") if not connected else None
        return Connectivity(
            connected=connected,
            identity=data.get("phone") or self._instance_id or None,
            error=error or (None if connected else "session disconnected"),
        )
