from __future__ import annotations

import os

from soko.integrations.common import IntegrationDisabledError, IntegrationMisconfiguredError
from soko.integrations.messaging.base import MessagingProvider
from soko.integrations.messaging.mock_provider import MockMessagingProvider
from soko.integrations.messaging.termii_provider import TermiiMessagingProvider


def _value(config, key: str) -> str:
    return (config.get(key) or os.getenv(key) or "").strip()


def build_messaging_provider(config) -> MessagingProvider:
    provider = (config.get("MESSAGING_PROVIDER") or "mock").strip().lower()
    if provider in ("", "disabled", "none"):
        raise IntegrationDisabledError("INTEGRATION_DISABLED:messaging")
    if provider == "mock":
        return MockMessagingProvider()
    if provider != "termii":
        raise IntegrationMisconfiguredError(f"INTEGRATION_MISCONFIGURED:messaging_provider={provider}")

    missing = [key for key in ("TERMII_API_KEY", "TERMII_SENDER_ID") if not _value(config, key)]
    if missing:
        raise IntegrationMisconfiguredError(f"INTEGRATION_MISCONFIGURED:missing {', '.join(missing)}")
    return TermiiMessagingProvider(
        api_key=_value(config, "TERMII_API_KEY"),
        sender_id=_value(config, "TERMII_SENDER_ID"),
        whatsapp_sender=_value(config, "TERMII_WHATSAPP_SENDER"),
    )


def messaging_health(config) -> dict:
    provider = (config.get("MESSAGING_PROVIDER") or "mock").strip().lower()
    missing = []
    if provider == "termii":
        missing = [key for key in ("TERMII_API_KEY", "TERMII_SENDER_ID") if not _value(config, key)]
    if provider in ("", "disabled", "none"):
        status = "disabled"
    elif missing:
        status = "misconfigured"
    else:
        status = "configured"
    return {"status": status, "provider": provider, "missing": missing}
