from .orders import Order, OrderItem, OrderNote
from .audit import VerificationAuditEntry, RecoveryLog
from .security import SecurityEvent, UserOrderCounter, SubmissionFingerprint
from .marketplace import MarketplaceAccount, BusinessPaymentMethod

__all__ = [
    'Order', 'OrderItem', 'OrderNote',
    'VerificationAuditEntry', 'RecoveryLog',
    'SecurityEvent', 'UserOrderCounter', 'SubmissionFingerprint',
    'MarketplaceAccount', 'BusinessPaymentMethod',
]
