from __future__ import annotations

from soko.integrations.common import IntegrationResult


SMS = "sms"
WHATSAPP = "whatsapp"
CHANNELS = (SMS, WHATSAPP)


class MessagingProvider:
    name = "unknown"

    def send(self, *, channel: str, to: str, message: str, reference: str = "") -> IntegrationResult:
        raise NotImplementedError
