"""Twilio SMS adapter — implements SmsPort over Twilio's REST API.

Each send is a single attempt. Provider rejections (for example an
unverified recipient on a trial account) surface as GatewayError so the
caller can record a per-recipient failure and carry on.
"""

from __future__ import annotations

import logging

import httpx

from carealert.ports.sms_port import GatewayError, SmsReceipt

logger = logging.getLogger(__name__)

_MESSAGES_URL = "https://api.twilio.com/2010-04-01/Accounts/{sid}/Messages.json"


def to_e164(phone_number: str) -> str:
    """Prefix '+' when missing; the provider only accepts E.164."""
    number = phone_number.strip()
    return number if number.startswith("+") else f"+{number}"


class TwilioSmsGateway:
    """Twilio implementation of SmsPort."""

    def __init__(
        self,
        account_sid: str,
        auth_token: str,
        from_number: str,
        timeout: float = 10.0,
    ) -> None:
        self._sid = account_sid
        self._token = auth_token
        self._from = from_number
        self._timeout = timeout

    async def send(self, phone_number: str, body: str) -> SmsReceipt:
        if not phone_number or not body:
            raise GatewayError("Recipient and message are required")

        to = to_e164(phone_number)
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                resp = await client.post(
                    _MESSAGES_URL.format(sid=self._sid),
                    data={"To": to, "From": self._from, "Body": body},
                    auth=(self._sid, self._token),
                )
        except httpx.HTTPError as exc:
            raise GatewayError(f"SMS transport error for {to}: {exc}") from exc

        try:
            data = resp.json()
        except ValueError:
            data = {}

        if resp.status_code >= 400:
            message = data.get("message") or f"HTTP {resp.status_code}"
            raise GatewayError(message, code=data.get("code"))

        receipt = SmsReceipt(
            id=data.get("sid", ""),
            status=data.get("status", "queued"),
            to=data.get("to", to),
        )
        logger.info("SMS accepted for %s (sid=%s, status=%s)", to, receipt.id, receipt.status)
        return receipt


def create_sms_gateway(settings=None) -> TwilioSmsGateway | None:
    """Build the gateway from settings, or None when Twilio is not configured."""
    if settings is None:
        from carealert.config import settings

    if not settings.sms_configured:
        logger.warning(
            "Twilio credentials not configured (TWILIO_SID, TWILIO_AUTH_TOKEN, TWILIO_FROM); "
            "SMS fan-out disabled"
        )
        return None

    return TwilioSmsGateway(
        account_sid=settings.TWILIO_SID,
        auth_token=settings.TWILIO_AUTH_TOKEN,
        from_number=settings.TWILIO_FROM,
        timeout=settings.TWILIO_TIMEOUT_SECONDS,
    )
