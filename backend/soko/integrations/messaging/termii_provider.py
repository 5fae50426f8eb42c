from __future__ import annotations

import requests

from soko.integrations.common import IntegrationResult
from soko.integrations.messaging.base import MessagingProvider, WHATSAPP


TERMII_BASE = "https://api.ng.termii.com/api"


def _error_code(status: int, detail: str) -> str:
    if status in (401, 403):
        return "TERMII_AUTH_FAILED"
    if status == 429:
        return "TERMII_RATE_LIMITED"
    if status in (400, 422):
        return "TERMII_INVALID_SENDER" if "sender" in (detail or "").lower() else "TERMII_INVALID_RECIPIENT"
    return "TERMII_PROVIDER_DOWN"


class TermiiMessagingProvider(MessagingProvider):
    name = "termii"

    def __init__(self, *, api_key: str, sender_id: str, whatsapp_sender: str = ""):
        self.api_key = api_key
        self.sender_id = sender_id
        self.whatsapp_sender = whatsapp_sender or sender_id

    def send(self, *, channel: str, to: str, message: str, reference: str = "") -> IntegrationResult:
        is_wa = channel == WHATSAPP
        payload = {
            "to": (to or "").strip(),
            "from": self.whatsapp_sender if is_wa else self.sender_id,
            "sms": message,
            "type": "plain",
            "channel": "whatsapp" if is_wa else "generic",
            "api_key": self.api_key,
        }
        if reference:
            payload["custom_uid"] = reference[:48]
        try:
            r = requests.post(f"{TERMII_BASE}/sms/send", json=payload, timeout=12)
            data = r.json() if r.content else {}
        except requests.Timeout:
            return IntegrationResult(ok=False, code="TERMII_PROVIDER_DOWN", message="timeout")
        except Exception as e:
            return IntegrationResult(ok=False, code="TERMII_PROVIDER_DOWN", message=str(e)[:200])
        raw = data if isinstance(data, dict) else {"payload": data}
        if 200 <= r.status_code < 300:
            return IntegrationResult(ok=True, code="OK", message="sent", raw=raw)
        detail = str(raw.get("message") or raw.get("error") or "")
        return IntegrationResult(
            ok=False,
            code=_error_code(r.status_code, detail),
            message=(detail or f"http_{r.status_code}")[:200],
            raw=raw,
        )
