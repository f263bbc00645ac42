"""
Base interface for the messaging gateway transport.

Every gateway adapter implements this. The queue and the health monitor only
depend on the interface, never on a concrete gateway.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional


@dataclass
class SendResult:
    """Outcome of one send. ``accepted`` means the gateway took the message."""

    accepted: bool
    external_id: Optional[str] = None
    error: Optional[str] = None


@dataclass
class Connectivity:
    """Gateway session state. ``connected=False`` also covers "unreachable"."""

    connected: bool
    identity: Optional[str] = None
    error: Optional[str] = None


class BaseTransport(ABC):
    """
    Uniform interface for sending WhatsApp text messages.

    Implementations are responsible for:
    - normalizing the contact before every call
    - an explicit per-call timeout
    - circuit breaking
    - never raising: every failure is reported in the returned value
    """

    @abstractmethod
    async def send(self, contact: str, body: str) -> SendResult:
        """
        Send one text message.

        Args:
            contact: phone number in any format; normalized by the transport.
            body: final message text, sent as-is.

        Returns:
            SendResult with the gateway message id on acceptance.
        """

    @abstractmethod
    async def get_connectivity(self) -> Connectivity:
        """Report whether the gateway session is connected."""

    @abstractmethod
    def normalize_contact(self, raw: str) -> str:
        """
        Normalize a phone number to the gateway's digits format.

        For example, with country code 55:
        - "(11) 99999-8888" -> "5511999998888"
        - "011999998888" -> "5511999998888"
        """

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Provider name for logs and diagnostics."""
