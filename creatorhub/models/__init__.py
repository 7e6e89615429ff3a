from .user import User
from .creator import Creator
from .commission import CommissionType, CommissionRequest, CommissionRevision
from .membership_tier import MembershipTier
from .subscription import UserSubscription
from .billing_customer import BillingCustomer
from .billing_event import BillingEventLog
from .payment_method import PaymentMethodCache
from .reconciliation import ReconciliationMismatchLog

__all__ = [
    "User",
    "Creator",
    "CommissionType",
    "CommissionRequest",
    "CommissionRevision",
    "MembershipTier",
    "UserSubscription",
    "BillingCustomer",
    "BillingEventLog",
    "PaymentMethodCache",
    "ReconciliationMismatchLog",
]
