"""SMS port — abstract interface for the external SMS gateway.

Core modules depend on this protocol, never on a specific provider.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol


class GatewayError(Exception):
    """Raised when the SMS provider rejects or fails a single send."""

    def __init__(self, message: str, code: str | int | None = None) -> None:
        super().__init__(message)
        self.code = code


@dataclass
class SmsReceipt:
    id: str
    status: str
    to: str = ""


class SmsPort(Protocol):
    """Abstract SMS interface used by core modules."""

    async def send(self, phone_number: str, body: str) -> SmsReceipt: ...
