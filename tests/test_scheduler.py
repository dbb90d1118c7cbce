"""Background job registration."""

import httpx

from skillmint.core.leases import LeaseManager
from skillmint.core.policy import PolicyService
from skillmint.core.scheduler import mail_retry_job, scheduler, start_scheduler
from skillmint.services.shares.mailer import MailerService


class FlakyMailer(MailerService):
    def __init__(self):
        super().__init__()
        self.attempts = 0

    async def _deliver(self, message) -> bool:
        self.attempts += 1
        return self.attempts > 1


async def test_all_jobs_registered() -> None:
    async with httpx.AsyncClient() as http:
        start_scheduler(http, LeaseManager(), PolicyService(), MailerService())
        try:
            ids = {job.id for job in scheduler.get_jobs()}
            assert ids == {
                "commission_release_job",
                "commission_expiry_job",
                "order_expiry_job",
                "withdrawal_auto_approve_job",
                "mail_retry_job",
            }
        finally:
            scheduler.shutdown(wait=False)


async def test_mail_retry_job_drains_queue() -> None:
    mailer = FlakyMailer()
    assert await mailer.send_safe("Withdrawal completed", ["asha@example.com"], "body") is False
    assert len(mailer.failed) == 1

    await mail_retry_job(mailer)

    assert len(mailer.failed) == 0
    assert mailer.attempts == 2
