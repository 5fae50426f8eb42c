from __future__ import annotations

import os
from decimal import Decimal

from soko.integrations.common import IntegrationResult
from soko.integrations.payments.base import PaymentsProvider


class MockPaymentsProvider(PaymentsProvider):
    name = "mock"

    def _force_failure(self) -> bool:
        return (os.getenv("MOCK_PAYMENTS_FORCE_FAIL") or "").strip() == "1"

    def refund(self, *, order_id: int, amount: Decimal, reference: str) -> IntegrationResult:
        if self._force_failure():
            return IntegrationResult(ok=False, code="GATEWAY_DOWN", message="mock forced failure")
        return IntegrationResult(
            ok=True,
            code="OK",
            message="mock_refunded",
            raw={"order_id": order_id, "amount": str(amount), "reference": reference},
        )

    def transfer(self, *, vendor_id: int, amount: Decimal, reference: str) -> IntegrationResult:
        if self._force_failure():
            return IntegrationResult(ok=False, code="GATEWAY_DOWN", message="mock forced failure")
        return IntegrationResult(
            ok=True,
            code="OK",
            message="mock_transferred",
            raw={"vendor_id": vendor_id, "amount": str(amount), "reference": f"mock-{reference}"},
        )
