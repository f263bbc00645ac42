"""
Transport Factory - builds the configured gateway transport.
"""
from __future__ import annotations

from outreach.core.circuit_breaker import gateway_circuit_breaker
from outreach.core.config import Settings
from outreach.core.logging import get_logger
from outreach.domain.services.transport.base_transport import BaseTransport

logger = get_logger(__name__)


def create_transport(settings: Settings) -> BaseTransport:
    """Transport for GATEWAY_PROVIDER, with its own circuit breaker."""
    circuit_breaker = gateway_circuit_breaker(settings)

    if settings.GATEWAY_PROVIDER == "zapi":
        from outreach.domain.services.transport.zapi_transport import ZApiTransport

        transport = ZApiTransport(settings, circuit_breaker=circuit_breaker)
    else:
        raise ValueError(f"Unknown gateway provider: {settings.GATEWAY_PROVIDER}")

    logger.info(
        "Gateway transport initialized",
        extra_data={"provider": transport.provider_name},
    )
    return transport
