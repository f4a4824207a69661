from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Literal

import httpx

from clinic_claims.core.settings import get_settings

logger = logging.getLogger(__name__)


class MessageDeliveryError(RuntimeError):
    pass


@dataclass(frozen=True)
class TelnyxMessageResult:
    message_id: str
    status: str | None = None


def to_e164(phone: str, country_code: str) -> str:
    digits = "".join(ch for ch in phone if ch.isdigit())
    if phone.strip().startswith("+"):
        return f"+{digits}"
    if digits.startswith("0"):
        return f"+{country_code}{digits[1:]}"
    return f"+{digits}"


class TelnyxClient:
    def __init__(
        self,
        api_key: str | None = None,
        messaging_profile_id: str | None = None,
        from_number: str | None = None,
        base_url: str | None = None,
        mode: Literal["mock", "live"] | None = None,
    ) -> None:
        settings = get_settings()
        self.mode = mode or settings.messaging_mode
        self.api_key = api_key or settings.telnyx_api_key
        self.messaging_profile_id = messaging_profile_id or settings.telnyx_messaging_profile_id
        self.from_number = from_number or settings.telnyx_phone_number
        self.base_url = base_url or settings.telnyx_base_url
        self.country_code = settings.sms_default_country_code

    def send_sms(self, to: str, text: str) -> TelnyxMessageResult:
        if self.mode == "mock" or not self.api_key:
            stamp = int(datetime.now(timezone.utc).timestamp())
            return TelnyxMessageResult(message_id=f"mock-sms-{stamp}", status="mock")

        payload: dict[str, object] = {"to": to_e164(to, self.country_code), "text": text}
        if self.from_number:
            payload["from"] = self.from_number
        if self.messaging_profile_id:
            payload["messaging_profile_id"] = self.messaging_profile_id

        url = f"{self.base_url.rstrip('/')}/messages"
        headers = {"Authorization": f"Bearer {self.api_key}"}
        try:
            with httpx.Client(timeout=15.0) as client:
                resp = client.post(url, json=payload, headers=headers)
                resp.raise_for_status()
                data = resp.json().get("data", {})
        except httpx.HTTPError as exc:
            raise MessageDeliveryError("SMS provider request failed.") from exc
        message_id = data.get("id") or data.get("message_id") or ""
        status = data.get("status")
        logger.info("Telnyx accepted message %s (%s)", message_id, status)
        return TelnyxMessageResult(message_id=message_id, status=status)

    def send(self, phone: str, message: str) -> TelnyxMessageResult:
        return self.send_sms(phone, message)
