# skillmint/services/shares/mailer.py
from collections import deque

from fastapi import Request
from fastapi_mail import ConnectionConfig, FastMail, MessageSchema, MessageType
from loguru import logger
from pydantic import SecretStr

from skillmint.core.settings import Settings, settings as default_settings


class MailerService:
    """Best-effort mail relay. Failures are logged and queued, never raised."""

    def __init__(self, config: Settings | None = None, max_queue: int = 500):
        config = config or default_settings
        self.enabled = config.mail_enabled
        self.failed: deque[MessageSchema] = deque(maxlen=max_queue)
        self.fastmail: FastMail | None = None

        if self.enabled:
            self.conf = ConnectionConfig(
                MAIL_USERNAME=config.MAIL_USERNAME,
                MAIL_PASSWORD=SecretStr(config.MAIL_PASSWORD),
                MAIL_FROM=config.MAIL_FROM,
                MAIL_PORT=config.MAIL_PORT,
                MAIL_SERVER=config.MAIL_SERVER,
                MAIL_STARTTLS=config.MAIL_TLS,
                MAIL_SSL_TLS=config.MAIL_SSL,
                USE_CREDENTIALS=bool(config.MAIL_USERNAME),
                VALIDATE_CERTS=True,
            )
            self.fastmail = FastMail(self.conf)
        else:
            logger.warning("✉ Mail relay not configured, emails will only be logged")

    async def _deliver(self, message: MessageSchema) -> bool:
        if not self.enabled or self.fastmail is None:
            logger.info(f"✉ (mail disabled) {message.subject} → {message.recipients}")
            return True
        try:
            await self.fastmail.send_message(message)
            return True
        except Exception as e:
            logger.error(f"❌ Mail delivery failed ({message.subject}): {e}")
            return False

    async def send_safe(self, subject: str, recipients: list[str], body: str) -> bool:
        if not recipients:
            return False
        message = MessageSchema(
            subject=subject,
            recipients=recipients,
            body=body,
            subtype=MessageType.plain,
        )
        delivered = await self._deliver(message)
        if not delivered:
            self.failed.append(message)
        return delivered

    async def retry_failed(self) -> int:
        """Retry queued messages once; returns how many went out."""
        sent = 0
        for _ in range(len(self.failed)):
            message = self.failed.popleft()
            if await self._deliver(message):
                sent += 1
            else:
                self.failed.append(message)
        return sent

    async def drain(self) -> None:
        if self.failed:
            await self.retry_failed()
        if self.failed:
            logger.warning(f"⚠ Dropping {len(self.failed)} undelivered emails at shutdown")
            self.failed.clear()

    # ==============================
    # Monetary notifications
    # ==============================

    async def send_enrollment_confirmation(self, email: str, fullname: str, course_title: str, amount: str):
        return await self.send_safe(
            f"Enrollment confirmed: {course_title}",
            [email],
            f"Hi {fullname},\n\nYour payment of {amount} was received and you are now enrolled in {course_title}.",
        )

    async def send_withdrawal_update(self, email: str, fullname: str, status: str, amount: str):
        return await self.send_safe(
            f"Withdrawal {status}",
            [email],
            f"Hi {fullname},\n\nYour withdrawal of {amount} is now {status}.",
        )

    async def send_refund_notice(self, email: str, fullname: str, course_title: str, amount: str):
        return await self.send_safe(
            f"Refund processed: {course_title}",
            [email],
            f"Hi {fullname},\n\nA refund of {amount} for {course_title} has been processed.",
        )


def get_mailer_service(request: Request) -> MailerService:
    return request.app.state.mailer
