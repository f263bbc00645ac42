"""
Gateway transport abstraction layer.

Lets the pipeline switch gateways without touching queue or monitor logic.
"""
from outreach.domain.services.transport.base_transport import (
    BaseTransport,
    Connectivity,
    SendResult,
)
from outreach.domain.services.transport.transport_factory import create_transport

__all__ = [
    "BaseTransport",
    "Connectivity",
    "SendResult",
    "create_transport",
]
