from __future__ import annotations

import os

from soko.integrations.common import IntegrationResult
from soko.integrations.messaging.base import MessagingProvider


class MockMessagingProvider(MessagingProvider):
    name = "mock"

    def __init__(self):
        self.sent: list[dict] = []

    def _force_failure(self, message: str) -> bool:
        return "[fail]" in (message or "").lower() or (os.getenv("MOCK_NOTIFY_FORCE_FAIL") or "").strip() == "1"

    def send(self, *, channel: str, to: str, message: str, reference: str = "") -> IntegrationResult:
        if self._force_failure(message):
            return IntegrationResult(ok=False, code="PROVIDER_DOWN", message="mock forced failure")
        self.sent.append({"channel": channel, "to": to, "message": message, "reference": reference})
        return IntegrationResult(ok=True, code="OK", message="mock_sent", raw={"to": to, "reference": reference})
