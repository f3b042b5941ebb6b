# learnpay/enrollments.py
"""
Turns completed course payments into enrollments and tracks topic progress.

There is exactly one enrollment row per (user, course). A later purchase for
the same pair renews that row in place instead of inserting a new one, and a
concurrent insert that trips the unique constraint falls back to the row the
other writer created.
"""
import logging
import math
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from learnpay import catalog, models
from learnpay.access import effective_status, find_enrollment
from learnpay.config import PaymentPolicy
from learnpay.durations import AccessDuration, as_utc, utcnow
from learnpay.errors import AlreadyActive, InvalidTransition, NotFound, ValidationFailed

logger = logging.getLogger("learnpay.enrollments")


def completion_percentage(completed: int, total: int) -> int:
    if total <= 0:
        return 0
    percent = (Decimal(100) * completed / total).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    return min(100, int(percent))


def days_remaining(enrollment: models.Enrollment, now: Optional[datetime] = None) -> int:
    now = now or utcnow()
    if effective_status(enrollment.status, enrollment.expires_at, now) != models.ACTIVE:
        return 0
    seconds = (as_utc(enrollment.expires_at) - now).total_seconds()
    return max(0, math.ceil(seconds / 86400))


class EnrollmentManager:
    def __init__(self, policy: PaymentPolicy):
        self.policy = policy

    def access_duration_for(self, course: models.Course) -> AccessDuration:
        return course.access_duration or self.policy.default_access_duration

    def materialize(self, db: Session, payment: models.Payment, now: Optional[datetime] = None) -> models.Enrollment:
        """
        Create or renew the enrollment a completed course payment pays for.

        Flushes but does not commit; the caller owns the transaction so the
        payment status and the enrollment land together.
        """
        if payment.status != models.COMPLETED or payment.payment_type != models.COURSE:
            raise ValidationFailed(
                "Only completed course payments can grant course access.",
                payment_id=payment.id,
                payment_status=payment.status,
            )

        course = catalog.get_course(db, payment.course_id)
        if course is None:
            raise NotFound("Course not found.", course_id=payment.course_id)

        now = now or utcnow()
        expires_at = self.access_duration_for(course).add_to(now)

        enrollment = find_enrollment(db, payment.user_id, payment.course_id)
        if enrollment is None:
            try:
                with db.begin_nested():
                    enrollment = models.Enrollment(
                        user_id=payment.user_id,
                        course_id=payment.course_id,
                        payment_id=payment.id,
                        status=models.ACTIVE,
                        enrolled_at=now,
                        expires_at=expires_at,
                        completion_percentage=0,
                    )
                    db.add(enrollment)
            except IntegrityError:
                logger.info(
                    "Enrollment for user=%s course=%s was created concurrently; re-reading",
                    payment.user_id, payment.course_id,
                )
                enrollment = find_enrollment(db, payment.user_id, payment.course_id)
                if enrollment is None:
                    raise
            else:
                catalog.increment_enrollment_count(db, course.id)
                logger.info(
                    "Enrolled user=%s in course=%s payment=%s expires_at=%s",
                    payment.user_id, course.id, payment.id, expires_at.isoformat(),
                )
                return enrollment

        return self._renew(db, enrollment, payment, now, expires_at)

    def _renew(self, db, enrollment, payment, now, expires_at):
        if enrollment.payment_id == payment.id:
            # same payment delivered again
            return enrollment

        status = effective_status(enrollment.status, enrollment.expires_at, now)
        if status == models.ACTIVE:
            raise AlreadyActive(
                "An active enrollment already exists for this course.",
                enrollment_id=enrollment.id,
                payment_id=payment.id,
            )
        if status == models.SUSPENDED:
            raise InvalidTransition(
                "Enrollment is suspended and cannot be renewed by a payment.",
                enrollment_id=enrollment.id,
            )

        previous_status = status
        enrollment.payment_id = payment.id
        enrollment.enrolled_at = now
        enrollment.expires_at = expires_at
        enrollment.status = models.ACTIVE
        # progress is kept so a returning learner resumes where they stopped
        db.flush()
        logger.info(
            "Renewed enrollment=%s user=%s course=%s from status=%s payment=%s expires_at=%s",
            enrollment.id, enrollment.user_id, enrollment.course_id, previous_status, payment.id,
            expires_at.isoformat(),
        )
        return enrollment

    def record_progress(
        self,
        db: Session,
        enrollment_id: str,
        section_index: int,
        topic_index: int,
        now: Optional[datetime] = None,
    ) -> models.Enrollment:
        enrollment = db.get(models.Enrollment, enrollment_id)
        if enrollment is None:
            raise NotFound("Enrollment not found.", enrollment_id=enrollment_id)

        course = catalog.get_course(db, enrollment.course_id)
        if course is None:
            raise NotFound("Course not found.", course_id=enrollment.course_id)
        if catalog.get_topic(course, section_index, topic_index) is None:
            raise NotFound(
                "Topic not found.",
                course_id=course.id,
                section_index=section_index,
                topic_index=topic_index,
            )

        now = now or utcnow()
        already_done = any(
            done.section_index == section_index and done.topic_index == topic_index
            for done in enrollment.completed_topics
        )
        if not already_done:
            try:
                with db.begin_nested():
                    db.add(
                        models.CompletedTopic(
                            enrollment_id=enrollment.id,
                            section_index=section_index,
                            topic_index=topic_index,
                            completed_at=now,
                        )
                    )
            except IntegrityError:
                logger.debug("Topic %s/%s already recorded for enrollment=%s", section_index, topic_index, enrollment.id)
            db.expire(enrollment, ["completed_topics"])

        enrollment.last_section_index = section_index
        enrollment.last_topic_index = topic_index
        enrollment.last_accessed_at = now
        enrollment.completion_percentage = completion_percentage(
            len(enrollment.completed_topics), catalog.total_topics(course)
        )
        db.commit()
        db.refresh(enrollment)
        return enrollment

    def get_enrollment(self, db: Session, user_id: str, course_id: str) -> Optional[models.Enrollment]:
        return find_enrollment(db, user_id, course_id)
