from soko.models.user import User
from soko.models.order import Order, OrderItem, OrderEvent, OrderStatus, DeliveryMode
from soko.models.escrow_transaction import EscrowTransaction
from soko.models.escrow_transition import EscrowTransition
from soko.models.delivery_code import DeliveryCode
from soko.models.dispute import Dispute, DisputeStatus, DisputeReason
from soko.models.payout import Payout, PayoutStatus, PayoutTrigger
from soko.models.payment import Payment, PaymentStatus
from soko.models.reconciliation_item import ReconciliationItem
from soko.models.notification import Notification
from soko.models.platform_event import PlatformEvent
from soko.models.job_run import JobRun

__all__ = [
    "User",
    "Order",
    "OrderItem",
    "OrderEvent",
    "OrderStatus",
    "DeliveryMode",
    "EscrowTransaction",
    "EscrowTransition",
    "DeliveryCode",
    "Dispute",
    "DisputeStatus",
    "DisputeReason",
    "Payout",
    "PayoutStatus",
    "PayoutTrigger",
    "Payment",
    "PaymentStatus",
    "ReconciliationItem",
    "Notification",
    "PlatformEvent",
    "JobRun",
]
