"""
Test doubles shared by the test modules: a hand-driven clock and a scripted
gateway transport.
"""
from datetime import datetime, timedelta
from typing import Optional

from outreach.core.validation import PhoneNumberValidator
from outreach.db.models.queued_message import QueuedMessage
from outreach.domain.services.transport.base_transport import (
    BaseTransport,
    Connectivity,
    SendResult,
)

# Wednesday 2026-10-14 13:00 UTC = 10:00 in Sao Paulo, inside business hours
BUSINESS_MORNING = datetime(2026, 10, 14, 13, 0, 0)

CONTACT = "5511999999999"


class FakeClock:
    """Naive-UTC clock the tests move by hand"""

    def __init__(self, now: datetime = BUSINESS_MORNING):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now

    def set(self, moment: datetime) -> None:
        self.now = moment


class FakeTransport(BaseTransport):
    """Records sends; outcomes are scripted through ``results`` or ``fail_with``"""

    def __init__(self, country_code: str = "55"):
        self.country_code = country_code
        self.sent: list[tuple[str, str]] = []
        self.results: list[SendResult] = []
        self.fail_with: Optional[str] = None
        self.connected = True
        self.connectivity_error: Optional[str] = None
        self._counter = 0

    @property
    def provider_name(self) -> str:
        return "fake"

    def normalize_contact(self, raw: str) -> str:
        return PhoneNumberValidator.normalize(raw, self.country_code)

    async def send(self, contact: str, body: str) -> SendResult:
        self.sent.append((self.normalize_contact(contact), body))
        if self.results:
            return self.results.pop(0)
        if self.fail_with:
            return SendResult(accepted=False, error=self.fail_with)
        self._counter += 1
        return SendResult(accepted=True, external_id=f"ext-{self._counter}")

    async def get_connectivity(self) -> Connectivity:
        if self.connected:
            return Connectivity(connected=True, identity="5511900000000")
        return Connectivity(connected=False, error=self.connectivity_error or "session disconnected")


async def load_job(session_factory, job_id: int) -> QueuedMessage:
    async with session_factory() as session:
        return await session.get(QueuedMessage, job_id)
