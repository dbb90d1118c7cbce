import httpx
from apscheduler.jobstores.base import ConflictingIdError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from loguru import logger

from skillmint.core.leases import LeaseManager
from skillmint.core.policy import PolicyService
from skillmint.db.session import AsyncSessionLocal
from skillmint.services.shares.commission import CommissionService
from skillmint.services.shares.mailer import MailerService
from skillmint.services.shares.payment import PaymentService
from skillmint.services.shares.razorpay_service import RazorpayService
from skillmint.services.shares.withdraw import WithdrawService

scheduler = AsyncIOScheduler()


# ================================
# JOB 1: Commission release sweep
# ================================
async def commission_release_job(leases: LeaseManager, policy: PolicyService):
    logger.info("🔎 Running commission release sweep...")

    async with AsyncSessionLocal() as session:
        service = CommissionService(session, leases, policy)
        try:
            result = await service.release_due()
            logger.success(f"✔ Commission release result: {result}")
        except Exception as e:
            logger.error(f"❌ Commission release job error: {e}")


# ================================
# JOB 2: Commission expiry (pending + approved-unpaid)
# ================================
async def commission_expiry_job(leases: LeaseManager, policy: PolicyService):
    logger.info("🔎 Running commission expiry sweep...")

    async with AsyncSessionLocal() as session:
        service = CommissionService(session, leases, policy)
        try:
            result = await service.expire_stale()
            logger.success(f"✔ Commission expiry result: {result}")
        except Exception as e:
            logger.error(f"❌ Commission expiry job error: {e}")


# ================================
# JOB 3: Pending order auto-cancel
# ================================
async def order_expiry_job(
    http_client: httpx.AsyncClient,
    leases: LeaseManager,
    policy: PolicyService,
    mailer: MailerService,
):
    logger.info("🔎 Running order expiry sweep...")

    async with AsyncSessionLocal() as session:
        service = PaymentService(session, leases, policy, RazorpayService(http=http_client), mailer)
        try:
            result = await service.expire_stale_orders()
            logger.success(f"✔ Order expiry result: {result}")
        except Exception as e:
            logger.error(f"❌ Order expiry job error: {e}")


# ================================
# JOB 4: Withdrawal auto-approval
# ================================
async def withdrawal_auto_approve_job(
    http_client: httpx.AsyncClient,
    leases: LeaseManager,
    policy: PolicyService,
    mailer: MailerService,
):
    logger.info("🚀 Running withdrawal auto-approval...")

    async with AsyncSessionLocal() as session:
        service = WithdrawService(session, leases, policy, mailer, RazorpayService(http=http_client))
        try:
            result = await service.auto_approve_due()
            logger.success(f"✔ Withdrawal auto-approval result: {result}")
        except Exception as e:
            logger.error(f"❌ Withdrawal auto-approval job error: {e}")


# ================================
# JOB 5: Retry queued mail
# ================================
async def mail_retry_job(mailer: MailerService):
    sent = await mailer.retry_failed()
    if sent:
        logger.info(f"✉ Re-sent {sent} queued emails")


# ================================
# START ALL JOBS
# ================================
def start_scheduler(
    http_client: httpx.AsyncClient,
    leases: LeaseManager,
    policy: PolicyService,
    mailer: MailerService,
):
    shared = {"http_client": http_client, "leases": leases, "policy": policy, "mailer": mailer}
    jobs = (
        (commission_release_job, IntervalTrigger(minutes=5), {"leases": leases, "policy": policy}),
        (commission_expiry_job, IntervalTrigger(hours=1), {"leases": leases, "policy": policy}),
        (order_expiry_job, IntervalTrigger(minutes=15), shared),
        (withdrawal_auto_approve_job, IntervalTrigger(minutes=10), shared),
        (mail_retry_job, IntervalTrigger(minutes=10), {"mailer": mailer}),
    )

    for func, trigger, kwargs in jobs:
        try:
            scheduler.add_job(
                func,  # the coroutine function itself, APScheduler awaits it
                trigger=trigger,
                id=func.__name__,
                kwargs=kwargs,
                replace_existing=True,
                max_instances=1,
            )
        except ConflictingIdError:
            logger.warning(f"⚠ {func.__name__} existed")

    scheduler.start()
    logger.info("🔔 ALL scheduler jobs started (commissions + orders + withdrawals + mail)")
