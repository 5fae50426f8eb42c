from __future__ import annotations

from decimal import Decimal

import requests

from soko.integrations.common import IntegrationResult
from soko.integrations.payments.base import PaymentsProvider


PAYSTACK_BASE = "https://api.paystack.co"


def _minor_units(amount: Decimal) -> int:
    return int((Decimal(str(amount)) * 100).to_integral_value())


class PaystackPaymentsProvider(PaymentsProvider):
    name = "paystack"

    def __init__(self, secret_key: str, *, recipient_lookup=None):
        self.secret_key = secret_key
        # vendor_id -> Paystack transfer recipient code
        self.recipient_lookup = recipient_lookup

    def _headers(self) -> dict:
        return {
            "Authorization": f"Bearer {self.secret_key}",
            "Content-Type": "application/json",
        }

    def _post(self, path: str, payload: dict) -> IntegrationResult:
        try:
            r = requests.post(f"{PAYSTACK_BASE}{path}", headers=self._headers(), json=payload, timeout=25)
            j = r.json() if r.content else {}
        except requests.Timeout:
            return IntegrationResult(ok=False, code="GATEWAY_TIMEOUT", message="timeout")
        except Exception as e:
            return IntegrationResult(ok=False, code="GATEWAY_DOWN", message=str(e)[:200])
        if r.status_code < 200 or r.status_code >= 300 or j.get("status") is not True:
            msg = (j.get("message") or f"HTTP {r.status_code}").strip()
            return IntegrationResult(ok=False, code="PAYSTACK_REJECTED", message=msg[:200], raw=j if isinstance(j, dict) else None)
        return IntegrationResult(ok=True, code="OK", message="accepted", raw=j if isinstance(j, dict) else {"payload": j})

    def refund(self, *, order_id: int, amount: Decimal, reference: str) -> IntegrationResult:
        payload = {
            "transaction": reference,
            "amount": _minor_units(amount),
            "merchant_note": f"Refund for order {order_id}",
        }
        return self._post("/refund", payload)

    def transfer(self, *, vendor_id: int, amount: Decimal, reference: str) -> IntegrationResult:
        recipient = self.recipient_lookup(vendor_id) if self.recipient_lookup else None
        if not recipient:
            return IntegrationResult(ok=False, code="RECIPIENT_MISSING", message=f"no transfer recipient for vendor {vendor_id}")
        payload = {
            "source": "balance",
            "amount": _minor_units(amount),
            "recipient": recipient,
            "reference": reference,
            "reason": "Marketplace payout",
        }
        return self._post("/transfer", payload)
