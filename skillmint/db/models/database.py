import datetime
import decimal
import uuid
from typing import Any, List, Optional

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKeyConstraint,
    Index,
    Integer,
    Numeric,
    PrimaryKeyConstraint,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from skillmint.libs.formats.datetime import now


class Base(DeclarativeBase):
    pass


class User(Base):
    __tablename__ = 'user'
    __table_args__ = (
        CheckConstraint("role IN ('admin', 'instructor', 'affiliate', 'student', 'system')", name='user_role_check'),
        ForeignKeyConstraint(['referred_by_id'], ['user.id'], ondelete='SET NULL', name='user_referred_by_fkey'),
        PrimaryKeyConstraint('id', name='user_pkey'),
        UniqueConstraint('email', name='user_email_key'),
        UniqueConstraint('referral_code', name='user_referral_code_key'),
        Index('idx_user_referred_by', 'referred_by_id'),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    fullname: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    role: Mapped[str] = mapped_column(String(20), nullable=False, default='student')
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    referral_code: Mapped[Optional[str]] = mapped_column(String(20), comment='Immutable once issued')
    referred_by_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, comment='Direct referrer, set once')
    referred_at: Mapped[Optional[datetime.datetime]] = mapped_column(DateTime)
    needs_recovery: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, comment='Negative balance after a commission clawback')
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime, nullable=False, default=now)
    updated_at: Mapped[datetime.datetime] = mapped_column(DateTime, nullable=False, default=now, onupdate=now)

    wallet: Mapped[Optional['Wallets']] = relationship('Wallets', back_populates='user', uselist=False)


class Courses(Base):
    __tablename__ = 'courses'
    __table_args__ = (
        CheckConstraint('price >= 0', name='courses_price_check'),
        CheckConstraint('commission_rate IS NULL OR (commission_rate >= 0 AND commission_rate <= 50)', name='courses_commission_rate_check'),
        ForeignKeyConstraint(['instructor_id'], ['user.id'], name='courses_user_fk'),
        PrimaryKeyConstraint('id', name='courses_pkey'),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    instructor_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    title: Mapped[str] = mapped_column(Text, nullable=False)
    price: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0, comment='Minor units')
    discounted_price: Mapped[Optional[int]] = mapped_column(BigInteger, comment='Minor units, used when > 0')
    currency: Mapped[str] = mapped_column(String(10), nullable=False, default='INR')
    commission_rate: Mapped[Optional[decimal.Decimal]] = mapped_column(Numeric(5, 2), comment='Level-1 percent; NULL falls back to policy')
    is_published: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    total_enrolls: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime, nullable=False, default=now)

    @property
    def effective_price(self) -> int:
        if self.discounted_price and self.discounted_price > 0:
            return self.discounted_price
        return self.price


class Orders(Base):
    __tablename__ = 'orders'
    __table_args__ = (
        CheckConstraint('final_amount >= 0', name='orders_final_amount_check'),
        CheckConstraint('final_amount = gross_amount - discount', name='orders_amount_balance_check'),
        CheckConstraint("payment_method IN ('razorpay', 'wallet')", name='orders_payment_method_check'),
        CheckConstraint("status IN ('pending', 'processing', 'completed', 'failed', 'refunded', 'partially_refunded', 'cancelled', 'expired')", name='orders_status_check'),
        ForeignKeyConstraint(['buyer_id'], ['user.id'], name='orders_buyer_fk'),
        ForeignKeyConstraint(['course_id'], ['courses.id'], name='orders_course_fk'),
        ForeignKeyConstraint(['referrer_id'], ['user.id'], ondelete='SET NULL', name='orders_referrer_fk'),
        PrimaryKeyConstraint('id', name='orders_pkey'),
        UniqueConstraint('gateway_order_id', name='orders_gateway_order_id_key'),
        UniqueConstraint('gateway_payment_id', name='orders_gateway_payment_id_key'),
        Index('idx_orders_buyer_course', 'buyer_id', 'course_id'),
        Index('idx_orders_status_created', 'status', 'created_at'),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    buyer_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    course_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    gross_amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    discount: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    final_amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(10), nullable=False, default='INR')
    referrer_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, comment='Resolved from the referral code at creation, frozen')
    referral_code: Mapped[Optional[str]] = mapped_column(String(20))
    payment_method: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(String(30), nullable=False, default='pending')
    # policy values frozen at creation
    platform_fee_rate: Mapped[decimal.Decimal] = mapped_column(Numeric(5, 4), nullable=False)
    commission_rate: Mapped[Optional[decimal.Decimal]] = mapped_column(Numeric(5, 2), comment='Course level-1 percent, NULL = tier or policy default')
    reserve_rate: Mapped[decimal.Decimal] = mapped_column(Numeric(5, 2), nullable=False, comment='Percent withheld from the instructor for commissions')
    # routing amounts, filled on completion
    instructor_share: Mapped[Optional[int]] = mapped_column(BigInteger)
    platform_share: Mapped[Optional[int]] = mapped_column(BigInteger)
    commission_share: Mapped[Optional[int]] = mapped_column(BigInteger)
    gateway_order_id: Mapped[Optional[str]] = mapped_column(String(64))
    gateway_payment_id: Mapped[Optional[str]] = mapped_column(String(64))
    gateway_signature: Mapped[Optional[str]] = mapped_column(String(128))
    reserve_entry_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, comment='Pending debit for wallet orders')
    refund_amount: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    refund_reason: Mapped[Optional[str]] = mapped_column(Text)
    failure_reason: Mapped[Optional[str]] = mapped_column(Text)
    status_history: Mapped[List[Any]] = mapped_column(JSON, nullable=False, default=list)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime, nullable=False, default=now)
    updated_at: Mapped[datetime.datetime] = mapped_column(DateTime, nullable=False, default=now, onupdate=now)
    completed_at: Mapped[Optional[datetime.datetime]] = mapped_column(DateTime)
    refunded_at: Mapped[Optional[datetime.datetime]] = mapped_column(DateTime)
    cancelled_at: Mapped[Optional[datetime.datetime]] = mapped_column(DateTime)


class CourseEnrollments(Base):
    __tablename__ = 'course_enrollments'
    __table_args__ = (
        ForeignKeyConstraint(['course_id'], ['courses.id'], name='course_enrollments_course_fk'),
        ForeignKeyConstraint(['order_id'], ['orders.id'], name='course_enrollments_order_fk'),
        ForeignKeyConstraint(['user_id'], ['user.id'], name='course_enrollments_user_fk'),
        PrimaryKeyConstraint('id', name='course_enrollments_pkey'),
        UniqueConstraint('order_id', name='course_enrollments_order_id_key'),
        Index('idx_course_enrollments_user_course', 'user_id', 'course_id'),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    course_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    order_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default='active')
    enrolled_at: Mapped[datetime.datetime] = mapped_column(DateTime, nullable=False, default=now)
    revoked_at: Mapped[Optional[datetime.datetime]] = mapped_column(DateTime)


class Commissions(Base):
    __tablename__ = 'commissions'
    __table_args__ = (
        CheckConstraint('level IN (1, 2, 3)', name='commissions_level_check'),
        CheckConstraint('amount >= 0', name='commissions_amount_check'),
        CheckConstraint("status IN ('pending', 'approved', 'paid', 'rejected', 'cancelled', 'expired', 'hold', 'under_review')", name='commissions_status_check'),
        ForeignKeyConstraint(['affiliate_id'], ['user.id'], name='commissions_affiliate_fk'),
        ForeignKeyConstraint(['order_id'], ['orders.id'], name='commissions_order_fk'),
        PrimaryKeyConstraint('id', name='commissions_pkey'),
        UniqueConstraint('order_id', 'level', name='commissions_order_level_key'),
        Index('idx_commissions_affiliate_status', 'affiliate_id', 'status'),
        Index('idx_commissions_status_hold', 'status', 'hold_until'),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    affiliate_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    referred_user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    order_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    course_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    level: Mapped[int] = mapped_column(Integer, nullable=False)
    percentage: Mapped[decimal.Decimal] = mapped_column(Numeric(5, 2), nullable=False)
    order_amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(10), nullable=False, default='INR')
    status: Mapped[str] = mapped_column(String(20), nullable=False, default='pending')
    hold_period: Mapped[str] = mapped_column(String(20), nullable=False, default='standard')
    hold_until: Mapped[datetime.datetime] = mapped_column(DateTime, nullable=False)
    is_flagged: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    payout_entry_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid)
    notes: Mapped[Optional[str]] = mapped_column(Text)
    status_history: Mapped[List[Any]] = mapped_column(JSON, nullable=False, default=list)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime, nullable=False, default=now)
    updated_at: Mapped[datetime.datetime] = mapped_column(DateTime, nullable=False, default=now, onupdate=now)
    approved_at: Mapped[Optional[datetime.datetime]] = mapped_column(DateTime)
    paid_at: Mapped[Optional[datetime.datetime]] = mapped_column(DateTime)


class Wallets(Base):
    """Cached balance view. Written only by the ledger, rebuilt by reconcile."""

    __tablename__ = 'wallets'
    __table_args__ = (
        ForeignKeyConstraint(['user_id'], ['user.id'], ondelete='CASCADE', name='wallets_user_id_fkey'),
        PrimaryKeyConstraint('id', name='wallets_pkey'),
        UniqueConstraint('user_id', name='wallets_user_id_key'),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    balance: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0, comment='Posted credits minus posted debits')
    reserved: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0, comment='Pending debits')
    total_earned: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    total_withdrawn: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    currency: Mapped[str] = mapped_column(String(10), nullable=False, default='INR')
    is_locked: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, comment='Frozen by an admin')
    last_seq: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    last_transaction_at: Mapped[Optional[datetime.datetime]] = mapped_column(DateTime)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime, nullable=False, default=now)
    updated_at: Mapped[datetime.datetime] = mapped_column(DateTime, nullable=False, default=now, onupdate=now)

    user: Mapped['User'] = relationship('User', back_populates='wallet')

    @property
    def available(self) -> int:
        return self.balance - self.reserved


class LedgerEntries(Base):
    __tablename__ = 'ledger_entries'
    __table_args__ = (
        CheckConstraint('amount > 0', name='ledger_entries_amount_check'),
        CheckConstraint("direction IN ('credit', 'debit')", name='ledger_entries_direction_check'),
        CheckConstraint("status IN ('pending', 'completed', 'reversed')", name='ledger_entries_status_check'),
        ForeignKeyConstraint(['owner_id'], ['user.id'], name='ledger_entries_owner_fk'),
        ForeignKeyConstraint(['reversal_of_id'], ['ledger_entries.id'], name='ledger_entries_reversal_of_fk'),
        PrimaryKeyConstraint('id', name='ledger_entries_pkey'),
        UniqueConstraint('owner_id', 'seq', name='ledger_entries_owner_seq_key'),
        UniqueConstraint('owner_id', 'idempotency_key', name='ledger_entries_owner_idempotency_key'),
        Index('idx_ledger_entries_reference', 'reference'),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    owner_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    seq: Mapped[int] = mapped_column(BigInteger, nullable=False)
    direction: Mapped[str] = mapped_column(String(10), nullable=False)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(10), nullable=False, default='INR')
    category: Mapped[str] = mapped_column(String(30), nullable=False)
    reference: Mapped[Optional[str]] = mapped_column(String(100))
    idempotency_key: Mapped[str] = mapped_column(String(150), nullable=False)
    balance_after: Mapped[int] = mapped_column(BigInteger, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default='completed')
    reversal_of_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid)
    description: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime, nullable=False, default=now)
    updated_at: Mapped[datetime.datetime] = mapped_column(DateTime, nullable=False, default=now, onupdate=now)


class WithdrawalRequests(Base):
    __tablename__ = 'withdrawal_requests'
    __table_args__ = (
        CheckConstraint('amount > 0', name='withdrawal_requests_amount_check'),
        CheckConstraint("status IN ('pending', 'approved', 'processing', 'completed', 'rejected', 'cancelled', 'failed', 'under_review')", name='withdrawal_requests_status_check'),
        ForeignKeyConstraint(['user_id'], ['user.id'], name='withdrawal_requests_user_fk'),
        PrimaryKeyConstraint('id', name='withdrawal_requests_pkey'),
        UniqueConstraint('external_reference', name='withdrawal_requests_external_reference_key'),
        Index('idx_withdrawal_requests_user_status', 'user_id', 'status'),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    processing_fee: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    net_amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(10), nullable=False, default='INR')
    method: Mapped[str] = mapped_column(String(30), nullable=False)
    account_details: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default='pending')
    is_flagged: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    review_notes: Mapped[List[Any]] = mapped_column(JSON, nullable=False, default=list)
    reserve_entry_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid)
    external_reference: Mapped[Optional[str]] = mapped_column(String(100))
    payout_id: Mapped[Optional[str]] = mapped_column(String(64), comment='Payout id on the rail, when initiated through the gateway')
    reviewed_by: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid)
    failure_reason: Mapped[Optional[str]] = mapped_column(Text)
    requested_at: Mapped[datetime.datetime] = mapped_column(DateTime, nullable=False, default=now)
    approved_at: Mapped[Optional[datetime.datetime]] = mapped_column(DateTime)
    rejected_at: Mapped[Optional[datetime.datetime]] = mapped_column(DateTime)
    processed_at: Mapped[Optional[datetime.datetime]] = mapped_column(DateTime)
    completed_at: Mapped[Optional[datetime.datetime]] = mapped_column(DateTime)
    updated_at: Mapped[datetime.datetime] = mapped_column(DateTime, nullable=False, default=now, onupdate=now)


class WalletTopups(Base):
    __tablename__ = 'wallet_topups'
    __table_args__ = (
        CheckConstraint('amount > 0', name='wallet_topups_amount_check'),
        ForeignKeyConstraint(['user_id'], ['user.id'], name='wallet_topups_user_fk'),
        PrimaryKeyConstraint('id', name='wallet_topups_pkey'),
        UniqueConstraint('gateway_order_id', name='wallet_topups_gateway_order_id_key'),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(10), nullable=False, default='INR')
    status: Mapped[str] = mapped_column(String(20), nullable=False, default='pending')
    gateway_order_id: Mapped[Optional[str]] = mapped_column(String(64))
    gateway_payment_id: Mapped[Optional[str]] = mapped_column(String(64))
    entry_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime, nullable=False, default=now)
    completed_at: Mapped[Optional[datetime.datetime]] = mapped_column(DateTime)


class WebhookEvents(Base):
    __tablename__ = 'webhook_events'
    __table_args__ = (
        PrimaryKeyConstraint('id', name='webhook_events_pkey'),
        UniqueConstraint('event', 'payment_id', name='webhook_events_event_payment_key'),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    event: Mapped[str] = mapped_column(String(50), nullable=False)
    payment_id: Mapped[str] = mapped_column(String(64), nullable=False)
    payload: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    received_at: Mapped[datetime.datetime] = mapped_column(DateTime, nullable=False, default=now)


class PlatformSettings(Base):
    __tablename__ = 'platform_settings'
    __table_args__ = (
        PrimaryKeyConstraint('id', name='platform_settings_pkey'),
        {'comment': 'Single row holding the monetary policy'}
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, default=1)
    policy: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    updated_by: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid)
    updated_at: Mapped[datetime.datetime] = mapped_column(DateTime, nullable=False, default=now)
