import uuid

from fastapi import Depends
from loguru import logger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from skillmint.core.enum import EnrollmentStatus
from skillmint.db.models.database import CourseEnrollments, Courses, Orders
from skillmint.db.session import get_session
from skillmint.libs.formats.datetime import now as get_now


class EnrollmentService:
    """Enrollment records tied to orders. Never commits."""

    def __init__(self, db: AsyncSession = Depends(get_session)):
        self.db = db

    async def get_for_order(self, order_id: uuid.UUID) -> CourseEnrollments | None:
        return await self.db.scalar(
            select(CourseEnrollments).where(CourseEnrollments.order_id == order_id)
        )

    async def grant(self, order: Orders) -> CourseEnrollments:
        """Exactly one enrollment per order; a second call returns the first."""
        enrollment = await self.get_for_order(order.id)
        if enrollment is not None:
            return enrollment

        enrollment = CourseEnrollments(
            id=uuid.uuid4(),
            user_id=order.buyer_id,
            course_id=order.course_id,
            order_id=order.id,
            status=EnrollmentStatus.ACTIVE.value,
            enrolled_at=get_now(),
        )
        self.db.add(enrollment)

        course = await self.db.get(Courses, order.course_id)
        if course is not None:
            course.total_enrolls = (course.total_enrolls or 0) + 1
        await self.db.flush()
        logger.info(f"🎓 Enrollment granted: user={order.buyer_id} course={order.course_id}")
        return enrollment

    async def revoke(self, order: Orders) -> CourseEnrollments | None:
        enrollment = await self.get_for_order(order.id)
        if enrollment is None or enrollment.status == EnrollmentStatus.REVOKED.value:
            return enrollment

        enrollment.status = EnrollmentStatus.REVOKED.value
        enrollment.revoked_at = get_now()
        course = await self.db.get(Courses, order.course_id)
        if course is not None and course.total_enrolls:
            course.total_enrolls -= 1
        await self.db.flush()
        logger.info(f"🎓 Enrollment revoked: user={order.buyer_id} course={order.course_id}")
        return enrollment
