import os

# settings are read once at import time
os.environ.setdefault("DATABASE_ASYNC_URL", "sqlite+aiosqlite://")
os.environ.setdefault("SECRET_KEY", "test-secret-key-for-jwt-signing-0123456789")
os.environ.setdefault("RAZORPAY_KEY_ID", "rzp_test_key")
os.environ.setdefault("RAZORPAY_KEY_SECRET", "rzp_test_secret")
os.environ.setdefault("RAZORPAY_WEBHOOK_SECRET", "rzp_webhook_secret")
os.environ.setdefault("SCHEDULER_ENABLED", "false")
os.environ.setdefault("RATE_LIMIT_PER_MINUTE", "0")
os.environ.setdefault("MAIL_SERVER", "")

import uuid
from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from skillmint.core.enum import EntryCategory, PaymentMethod, UserRole
from skillmint.core.leases import LeaseManager
from skillmint.core.policy import PolicyService
from skillmint.core.security import hmac_sha256_hex
from skillmint.core.settings import settings
from skillmint.db.models.database import Base, Courses, User
from skillmint.libs.formats.datetime import now as get_now
from skillmint.services.shares.ledger import LedgerService, get_system_accounts
from skillmint.services.shares.mailer import MailerService
from skillmint.services.shares.payment import PaymentService
from skillmint.services.shares.razorpay_service import RazorpayError


# ==============================
# Fakes
# ==============================


class FakeGateway:
    """Stands in for RazorpayService; records calls, fails on demand."""

    key_id = "rzp_test_key"

    def __init__(self):
        self.orders: list[dict] = []
        self.refunds: list[dict] = []
        self.payouts: list[dict] = []
        self.fail_with: RazorpayError | None = None

    def fail(self, transient: bool, status_code: int | None = None):
        self.fail_with = RazorpayError("gateway down", transient=transient, status_code=status_code)

    def _check(self):
        if self.fail_with is not None:
            raise self.fail_with

    async def create_order(self, *, amount, currency="INR", receipt, notes=None):
        self._check()
        order = {
            "id": f"order_{uuid.uuid4().hex[:14]}",
            "amount": amount,
            "currency": currency,
            "receipt": receipt,
            "notes": notes or {},
        }
        self.orders.append(order)
        return order

    async def fetch_payment(self, payment_id):
        self._check()
        return {"id": payment_id, "status": "captured"}

    async def refund_payment(self, payment_id, amount, notes=None):
        self._check()
        refund = {"id": f"rfnd_{uuid.uuid4().hex[:14]}", "payment_id": payment_id, "amount": amount}
        self.refunds.append(refund)
        return refund

    async def create_payout(self, **kwargs):
        self._check()
        payout = {"id": f"pout_{uuid.uuid4().hex[:14]}", **kwargs}
        self.payouts.append(payout)
        return payout


class RecordingMailer(MailerService):
    def __init__(self):
        super().__init__()
        self.sent: list[tuple[str, list[str]]] = []

    async def send_safe(self, subject, recipients, body):
        self.sent.append((subject, recipients))
        return True


# ==============================
# Seeding helpers
# ==============================


def payment_signature(gateway_order_id: str, payment_id: str) -> str:
    return hmac_sha256_hex(settings.RAZORPAY_KEY_SECRET, f"{gateway_order_id}|{payment_id}")


class Seed:
    def __init__(self, db: AsyncSession, leases: LeaseManager):
        self.db = db
        self.leases = leases

    async def user(
        self,
        name: str = "Buyer",
        role: str = UserRole.STUDENT.value,
        referred_by: User | None = None,
        age_days: int = 90,
        **extra,
    ) -> User:
        fields = {
            "id": uuid.uuid4(),
            "fullname": name,
            "email": f"{name.lower().replace(' ', '.')}.{uuid.uuid4().hex[:6]}@example.com",
            "role": role,
            "is_active": True,
            "referred_by_id": referred_by.id if referred_by else None,
            "created_at": get_now() - timedelta(days=age_days),
        }
        fields.update(extra)
        user = User(**fields)
        self.db.add(user)
        await self.db.commit()
        return user

    async def affiliate(self, name: str, referred_by: User | None = None, **extra) -> User:
        code = extra.pop("referral_code", None) or f"{name[:3].upper()}{uuid.uuid4().hex[:6].upper()}"
        return await self.user(
            name, role=UserRole.AFFILIATE.value, referred_by=referred_by, referral_code=code, **extra
        )

    async def admin(self) -> User:
        return await self.user("Admin", role=UserRole.ADMIN.value)

    async def course(
        self,
        instructor: User,
        price: int = 100_000,
        discounted_price: int | None = None,
        commission_rate: str | None = None,
    ) -> Courses:
        course = Courses(
            id=uuid.uuid4(),
            instructor_id=instructor.id,
            title="Async Python in Production",
            price=price,
            discounted_price=discounted_price,
            currency="INR",
            commission_rate=Decimal(commission_rate) if commission_rate is not None else None,
            is_published=True,
        )
        self.db.add(course)
        await self.db.commit()
        return course

    async def fund(self, user: User, amount: int):
        ledger = LedgerService(self.db, self.leases)
        entry = await ledger.credit(
            user.id, amount, EntryCategory.TOPUP.value, "seed", f"seed:{uuid.uuid4()}"
        )
        await self.db.commit()
        return entry


# ==============================
# Fixtures
# ==============================


@pytest.fixture
async def engine(tmp_path):
    # a file database so separate sessions see each other's commits
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'skillmint.db'}",
        connect_args={"timeout": 30},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def leases():
    return LeaseManager()


@pytest.fixture
def policy():
    return PolicyService()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def mailer():
    return RecordingMailer()


@pytest.fixture
async def system(session):
    accounts = await get_system_accounts(session)
    await session.commit()
    return accounts


@pytest.fixture
async def seed(session, leases, system):
    return Seed(session, leases)


@pytest.fixture
def payments(session, leases, policy, gateway, mailer):
    return PaymentService(session, leases, policy, gateway, mailer)


@pytest.fixture
def checkout(payments):
    """Create a gateway order and confirm it with a valid signature."""

    async def run(buyer: User, course: Courses, referral_code: str | None = None):
        created = await payments.create_order_async(
            buyer, course.id, PaymentMethod.GATEWAY.value, referral_code
        )
        order = created["order"]
        payment_id = f"pay_{uuid.uuid4().hex[:14]}"
        return await payments.confirm_gateway_payment_async(
            order.id,
            payment_id,
            payment_signature(order.gateway_order_id, payment_id),
            actor=buyer,
        )

    return run


@pytest.fixture
def balance(session, leases):
    ledger = LedgerService(session, leases)

    async def read(user_id) -> int:
        return (await ledger.balance(user_id))["total"]

    return read
