from settlement.models.transaction import Transaction, TransactionStatus, TransactionSource
from settlement.models.sub_account import SubAccount
from settlement.models.notification import Notification, NotificationPreference, PAYMENT_RECEIVED
from settlement.models.webhook_event import WebhookEvent

__all__ = [
    "Transaction",
    "TransactionStatus",
    "TransactionSource",
    "SubAccount",
    "Notification",
    "NotificationPreference",
    "PAYMENT_RECEIVED",
    "WebhookEvent",
]
