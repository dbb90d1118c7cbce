from enum import Enum


class UserRole(str, Enum):
    ADMIN = "admin"
    INSTRUCTOR = "instructor"
    AFFILIATE = "affiliate"
    STUDENT = "student"
    SYSTEM = "system"  # house accounts (platform, affiliate reserve)


COMMISSION_EARNING_ROLES = frozenset(
    {UserRole.AFFILIATE.value, UserRole.INSTRUCTOR.value, UserRole.ADMIN.value}
)


class PaymentMethod(str, Enum):
    GATEWAY = "razorpay"
    WALLET = "wallet"


class OrderStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"
    PARTIALLY_REFUNDED = "partially_refunded"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class CommissionStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    PAID = "paid"
    REJECTED = "rejected"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    HOLD = "hold"
    UNDER_REVIEW = "under_review"


class WithdrawalStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    PROCESSING = "processing"
    COMPLETED = "completed"
    REJECTED = "rejected"
    CANCELLED = "cancelled"
    FAILED = "failed"
    UNDER_REVIEW = "under_review"


class WithdrawalMethod(str, Enum):
    BANK_TRANSFER = "bank_transfer"
    UPI = "upi"
    PAYPAL = "paypal"


class EntryDirection(str, Enum):
    CREDIT = "credit"
    DEBIT = "debit"


class EntryStatus(str, Enum):
    PENDING = "pending"      # reservation, not part of the posted balance
    COMPLETED = "completed"
    REVERSED = "reversed"    # posted, then offset by a compensating entry


class EntryCategory(str, Enum):
    COURSE_PURCHASE = "course-purchase"
    COURSE_EARNING = "course-earning"
    PLATFORM_FEE = "platform-fee"
    COMMISSION_PAYOUT = "commission-payout"
    TOPUP = "topup"
    WITHDRAWAL_RESERVE = "withdrawal-reserve"
    WITHDRAWAL_SETTLE = "withdrawal-settle"
    WITHDRAWAL_RELEASE = "withdrawal-release"
    REFUND = "refund"
    ADMIN_ADJUSTMENT = "admin-adjustment"
    TRANSFER = "transfer"


class TopupStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class EnrollmentStatus(str, Enum):
    ACTIVE = "active"
    REVOKED = "revoked"


# ==============================
# Allowed transitions
# ==============================

ORDER_FLOWS: dict[str, set[str]] = {
    OrderStatus.PENDING.value: {
        OrderStatus.PROCESSING.value,
        OrderStatus.COMPLETED.value,
        OrderStatus.FAILED.value,
        OrderStatus.CANCELLED.value,
        OrderStatus.EXPIRED.value,
    },
    OrderStatus.PROCESSING.value: {
        OrderStatus.COMPLETED.value,
        OrderStatus.FAILED.value,
        OrderStatus.CANCELLED.value,
        OrderStatus.EXPIRED.value,
    },
    OrderStatus.COMPLETED.value: {
        OrderStatus.REFUNDED.value,
        OrderStatus.PARTIALLY_REFUNDED.value,
    },
    OrderStatus.FAILED.value: set(),
    OrderStatus.REFUNDED.value: set(),
    OrderStatus.PARTIALLY_REFUNDED.value: set(),
    OrderStatus.CANCELLED.value: set(),
    OrderStatus.EXPIRED.value: set(),
}

COMMISSION_FLOWS: dict[str, set[str]] = {
    CommissionStatus.PENDING.value: {
        CommissionStatus.APPROVED.value,
        CommissionStatus.REJECTED.value,
        CommissionStatus.CANCELLED.value,
        CommissionStatus.HOLD.value,
        CommissionStatus.UNDER_REVIEW.value,
        CommissionStatus.EXPIRED.value,
    },
    CommissionStatus.APPROVED.value: {
        CommissionStatus.PAID.value,
        CommissionStatus.REJECTED.value,
        CommissionStatus.CANCELLED.value,
        CommissionStatus.HOLD.value,
    },
    CommissionStatus.HOLD.value: {
        CommissionStatus.APPROVED.value,
        CommissionStatus.REJECTED.value,
        CommissionStatus.CANCELLED.value,
    },
    CommissionStatus.UNDER_REVIEW.value: {
        CommissionStatus.APPROVED.value,
        CommissionStatus.REJECTED.value,
        CommissionStatus.CANCELLED.value,
    },
    # paid commissions can only be clawed back (refund), never re-opened
    CommissionStatus.PAID.value: {CommissionStatus.REJECTED.value},
    CommissionStatus.REJECTED.value: set(),
    CommissionStatus.CANCELLED.value: set(),
    CommissionStatus.EXPIRED.value: set(),
}

WITHDRAWAL_FLOWS: dict[str, set[str]] = {
    WithdrawalStatus.PENDING.value: {
        WithdrawalStatus.APPROVED.value,
        WithdrawalStatus.REJECTED.value,
        WithdrawalStatus.CANCELLED.value,
        WithdrawalStatus.UNDER_REVIEW.value,
    },
    WithdrawalStatus.APPROVED.value: {
        WithdrawalStatus.PROCESSING.value,
        WithdrawalStatus.REJECTED.value,
        WithdrawalStatus.UNDER_REVIEW.value,
    },
    WithdrawalStatus.UNDER_REVIEW.value: {
        WithdrawalStatus.APPROVED.value,
        WithdrawalStatus.REJECTED.value,
    },
    WithdrawalStatus.PROCESSING.value: {
        WithdrawalStatus.COMPLETED.value,
        WithdrawalStatus.FAILED.value,
    },
    WithdrawalStatus.COMPLETED.value: set(),
    WithdrawalStatus.REJECTED.value: set(),
    WithdrawalStatus.CANCELLED.value: set(),
    WithdrawalStatus.FAILED.value: set(),
}


def can_transition(flows: dict[str, set[str]], current: str, target: str) -> bool:
    return target in flows.get(current, set())
