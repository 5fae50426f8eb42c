from __future__ import annotations

from decimal import Decimal

from soko.integrations.common import IntegrationResult


class PaymentsProvider:
    """Money-out side of the gateway. Capture happens upstream."""

    name = "unknown"

    def refund(self, *, order_id: int, amount: Decimal, reference: str) -> IntegrationResult:
        raise NotImplementedError

    def transfer(self, *, vendor_id: int, amount: Decimal, reference: str) -> IntegrationResult:
        raise NotImplementedError
