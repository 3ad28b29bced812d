from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol

import httpx

from ..config import Settings
from ..core.errors import DeliveryError

TWILIO_API_BASE = "https://api.twilio.com/2010-04-01"


@dataclass
class SmsMessage:
    to: str
    body: str


class SmsTransport(Protocol):
    async def send(self, message: SmsMessage) -> Dict[str, Any]:
        """Deliver the message and return the provider response, or raise."""
        ...


class TwilioSmsTransport:
    def __init__(
        self,
        account_sid: str,
        auth_token: str,
        from_number: str,
        *,
        base_url: str = TWILIO_API_BASE,
        timeout: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.account_sid = account_sid
        self.auth_token = auth_token
        self.from_number = from_number
        self.base_url = base_url
        self.timeout = timeout
        self._transport = transport

    @property
    def messages_url(self) -> str:
        return f"{self.base_url}/Accounts/{self.account_sid}/Messages.json"

    async def send(self, message: SmsMessage) -> Dict[str, Any]:
        async with httpx.AsyncClient(
            timeout=self.timeout,
            auth=(self.account_sid, self.auth_token),
            transport=self._transport,
        ) as client:
            resp = await client.post(
                self.messages_url,
                data={"To": message.to, "From": self.from_number, "Body": message.body},
            )

        try:
            payload = resp.json()
        except ValueError:
            payload = {"body": resp.text}

        if resp.status_code >= 400:
            detail = payload.get("message") if isinstance(payload, dict) else None
            raise DeliveryError(
                f"Twilio returned HTTP {resp.status_code}: {detail or resp.reason_phrase}",
                provider_response=payload,
            )
        return payload


def build_sms_transport(settings: Settings) -> Optional[TwilioSmsTransport]:
    """Return a Twilio transport, or None when credentials are missing."""
    if not (settings.twilio_account_sid and settings.twilio_auth_token):
        return None
    return TwilioSmsTransport(
        settings.twilio_account_sid,
        settings.twilio_auth_token,
        settings.twilio_from_number or "",
    )
