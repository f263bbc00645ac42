"""
Tests for the gateway transport layer.

Covers:
- BaseTransport - abstract interface
- ZApiTransport - send-text, status probe, circuit breaker
- create_transport - provider selection
"""
import pytest
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
from httpx import Response

from outreach.core.circuit_breaker import CircuitBreaker, CircuitBreakerConfig, CircuitState
from outreach.domain.services.transport import BaseTransport, create_transport
from outreach.domain.services.transport.zapi_transport import ZApiTransport


def _response(status_code: int = 200, body=None, text: str = "") -> MagicMock:
    response = MagicMock(spec=Response)
    response.status_code = status_code
    response.text = text
    if isinstance(body, Exception):
        response.json.side_effect = body
    else:
        response.json.return_value = body
    return response


def _mock_client(mock_client_cls, **methods) -> AsyncMock:
    instance = AsyncMock()
    for name, value in methods.items():
        setattr(instance, name, value)
    instance.__aenter__ = AsyncMock(return_value=instance)
    instance.__aexit__ = AsyncMock(return_value=None)
    mock_client_cls.return_value = instance
    return instance


class TestBaseTransportInterface:
    @pytest.mark.unit
    def test_cannot_instantiate_abstract_transport(self) -> None:
        with pytest.raises(TypeError):
            BaseTransport()  # type: ignore[abstract]

    @pytest.mark.unit
    def test_concrete_transport_must_implement_all_methods(self) -> None:
        class IncompleteTransport(BaseTransport):
            async def send(self, contact, body):
                return None

        with pytest.raises(TypeError):
            IncompleteTransport()  # type: ignore[abstract]


class TestZApiSend:
    def _make_transport(self, test_settings, failure_threshold: int = 5) -> tuple[ZApiTransport, CircuitBreaker]:
        cb = CircuitBreaker("test_gateway", CircuitBreakerConfig(failure_threshold=failure_threshold))
        return ZApiTransport(test_settings, circuit_breaker=cb), cb

    @pytest.mark.unit
    async def test_send_success(self, test_settings) -> None:
        transport, _ = self._make_transport(test_settings)

        with patch("httpx.AsyncClient") as mock_client:
            instance = _mock_client(mock_client, post=AsyncMock(
                return_value=_response(200, {"zaapId": "z-1", "messageId": "m-1"})
            ))

            result = await transport.send("(11) 99999-9999", "Olá")

        assert result.accepted is True
        assert result.external_id == "m-1"
        instance.post.assert_called_once()
        url = instance.post.call_args[0][0]
        assert url == "https://api.z-api.io/instances/test-instance/token/test-token/send-text"
        assert instance.post.call_args[1]["json"] == {"phone": "5511999999999", "message": "Olá"}

    @pytest.mark.unit
    async def test_client_token_header(self, test_settings) -> None:
        settings = test_settings.model_copy(update={"GATEWAY_CLIENT_TOKEN": "secret"})
        transport = ZApiTransport(settings, circuit_breaker=CircuitBreaker("test_gateway"))

        with patch("httpx.AsyncClient") as mock_client:
            instance = _mock_client(mock_client, post=AsyncMock(return_value=_response(200, {"messageId": "m-1"})))
            await transport.send("5511999999999", "Olá")

        assert instance.post.call_args[1]["headers"]["Client-Token"] == "secret"

    @pytest.mark.unit
    async def test_invalid_contact_never_calls_gateway(self, test_settings) -> None:
        transport, _ = self._make_transport(test_settings)

        with patch("httpx.AsyncClient") as mock_client:
            result = await transport.send("123", "Olá")

        assert result.accepted is False
        assert result.error.startswith("invalid contact")
        mock_client.assert_not_called()

    @pytest.mark.unit
    @pytest.mark.parametrize("response,error_fragment", [
        (_response(500, {"error": "boom"}, text="boom"), "returned status 500"),
        (_response(200, ValueError("no json")), "non-JSON"),
        (_response(200, ["not", "an", "object"]), "unexpected body"),
        (_response(200, {"error": "phone not registered"}), "phone not registered"),
    ])
    async def test_gateway_failures_reported(self, test_settings, response, error_fragment) -> None:
        transport, _ = self._make_transport(test_settings)

        with patch("httpx.AsyncClient") as mock_client:
            _mock_client(mock_client, post=AsyncMock(return_value=response))
            result = await transport.send("5511999999999", "Olá")

        assert result.accepted is False
        assert result.external_id is None
        assert error_fragment in result.error

    @pytest.mark.unit
    async def test_timeout_reported(self, test_settings) -> None:
        transport, _ = self._make_transport(test_settings)

        with patch("httpx.AsyncClient") as mock_client:
            _mock_client(mock_client, post=AsyncMock(side_effect=httpx.ReadTimeout("slow")))
            result = await transport.send("5511999999999", "Olá")

        assert result.accepted is False
        assert result.error == "gateway timeout after 15.0s"

    @pytest.mark.unit
    async def test_network_error_reported(self, test_settings) -> None:
        transport, _ = self._make_transport(test_settings)

        with patch("httpx.AsyncClient") as mock_client:
            _mock_client(mock_client, post=AsyncMock(side_effect=httpx.ConnectError("refused")))
            result = await transport.send("5511999999999", "Olá")

        assert result.accepted is False
        assert result.error.startswith("gateway network error")

    @pytest.mark.unit
    async def test_circuit_opens_after_repeated_failures(self, test_settings) -> None:
        transport, cb = self._make_transport(test_settings, failure_threshold=2)

        with patch("httpx.AsyncClient") as mock_client:
            instance = _mock_client(mock_client, post=AsyncMock(return_value=_response(503, {})))
            await transport.send("5511999999999", "Olá")
            await transport.send("5511999999999", "Olá")
            result = await transport.send("5511999999999", "Olá")

        assert cb.state == CircuitState.OPEN
        assert instance.post.call_count == 2
        assert result.accepted is False


class TestZApiConnectivity:
    @pytest.mark.unit
    async def test_connected(self, test_settings) -> None:
        transport = ZApiTransport(test_settings, circuit_breaker=CircuitBreaker("test_gateway"))

        with patch("httpx.AsyncClient") as mock_client:
            instance = _mock_client(mock_client, get=AsyncMock(
                return_value=_response(200, {"connected": True, "smartphoneConnected": True})
            ))
            connectivity = await transport.get_connectivity()

        assert connectivity.connected is True
        assert connectivity.error is None
        assert instance.get.call_args[0][0].endswith("/status")

    @pytest.mark.unit
    async def test_disconnected(self, test_settings) -> None:
        transport = ZApiTransport(test_settings, circuit_breaker=CircuitBreaker("test_gateway"))

        with patch("httpx.AsyncClient") as mock_client:
            _mock_client(mock_client, get=AsyncMock(
                return_value=_response(200, {"connected": False, "error": "You are not connected."})
            ))
            connectivity = await transport.get_connectivity()

        assert connectivity.connected is False
        assert connectivity.error == "You are not connected."

    @pytest.mark.unit
    async def test_unreachable_gateway_is_disconnected(self, test_settings) -> None:
        transport = ZApiTransport(test_settings, circuit_breaker=CircuitBreaker("test_gateway"))

        with patch("httpx.AsyncClient") as mock_client:
            _mock_client(mock_client, get=AsyncMock(side_effect=httpx.ConnectError("refused")))
            connectivity = await transport.get_connectivity()

        assert connectivity.connected is False
        assert "unreachable" in connectivity.error

    @pytest.mark.unit
    async def test_http_error_is_disconnected(self, test_settings) -> None:
        transport = ZApiTransport(test_settings, circuit_breaker=CircuitBreaker("test_gateway"))

        with patch("httpx.AsyncClient") as mock_client:
            _mock_client(mock_client, get=AsyncMock(return_value=_response(401, {})))
            connectivity = await transport.get_connectivity()

        assert connectivity.connected is False
        assert "401" in connectivity.error


class TestTransportFactory:
    @pytest.mark.unit
    def test_creates_zapi_transport(self, test_settings) -> None:
        transport = create_transport(test_settings)

        assert isinstance(transport, ZApiTransport)
        assert transport.provider_name == "zapi"

    @pytest.mark.unit
    def test_normalize_contact(self, test_settings) -> None:
        transport = create_transport(test_settings)

        assert transport.normalize_contact("(11) 99999-8888") == "5511999998888"
        assert transport.normalize_contact("011999998888") == "5511999998888"
