# learnpay/access.py
"""
Access gate consulted before serving course content or starting a purchase.

Every check returns ``Admit`` or ``Deny``; nothing here writes to the
database. Expiry is derived from ``expires_at`` at read time, so an
enrollment whose stored status still says ``active`` is treated as expired
as soon as its end date has passed.
"""
import enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, Optional, Union

from sqlalchemy import select
from sqlalchemy.orm import Session

from learnpay import catalog, errors, models
from learnpay.config import PaymentPolicy
from learnpay.durations import as_utc, utcnow
from learnpay.identity import CurrentUser, needs_registration_fee


class DenyReason(str, enum.Enum):
    UNAUTHENTICATED = "unauthenticated"
    NOT_FOUND = "not_found"
    NOT_PUBLISHED = "not_published"
    NOT_ENROLLED = "not_enrolled"
    EXPIRED = "expired"
    REGISTRATION_FEE_REQUIRED = "registration_fee_required"
    ALREADY_ENROLLED = "already_enrolled"


@dataclass(frozen=True)
class Admit:
    course: models.Course
    enrollment: Optional[models.Enrollment] = None
    topic: Optional[dict] = None

    admitted = True


@dataclass(frozen=True)
class Deny:
    reason: DenyReason
    message: str
    detail: Dict[str, Any] = field(default_factory=dict)

    admitted = False

    def to_error(self) -> errors.LearnpayError:
        if self.reason is DenyReason.UNAUTHENTICATED:
            return errors.Unauthenticated(self.message, **self.detail)
        if self.reason is DenyReason.NOT_FOUND:
            return errors.NotFound(self.message, **self.detail)
        if self.reason is DenyReason.NOT_PUBLISHED:
            return errors.NotPublished(self.message, **self.detail)
        if self.reason is DenyReason.REGISTRATION_FEE_REQUIRED:
            return errors.RegistrationFeeRequired(self.message, **self.detail)
        if self.reason is DenyReason.ALREADY_ENROLLED:
            return errors.AlreadyEnrolled(self.message, **self.detail)
        return errors.AccessDenied(self.message, code=self.reason.value, **self.detail)


Decision = Union[Admit, Deny]


def effective_status(status: str, expires_at: Optional[datetime], now: Optional[datetime] = None) -> str:
    """Enrollment status as seen at ``now``: stored ``active`` past its end date reads as expired."""
    if status != models.ACTIVE or expires_at is None:
        return status
    now = now or utcnow()
    return models.EXPIRED if now > as_utc(expires_at) else status


def find_enrollment(
    db: Session, user_id: str, course_id: str, statuses: Optional[Iterable[str]] = None
) -> Optional[models.Enrollment]:
    stmt = select(models.Enrollment).where(
        models.Enrollment.user_id == user_id,
        models.Enrollment.course_id == course_id,
    )
    if statuses is not None:
        stmt = stmt.where(models.Enrollment.status.in_(list(statuses)))
    return db.execute(stmt).scalars().first()


def _course_missing(course_id: str) -> Deny:
    return Deny(DenyReason.NOT_FOUND, "Course not found.", {"course_id": course_id})


def _enrolled_decision(db: Session, user: Optional[CurrentUser], course: models.Course, now: datetime) -> Decision:
    if user is None:
        return Deny(DenyReason.UNAUTHENTICATED, "Authentication required to access course content.")

    if course.status != models.PUBLISHED:
        return Deny(DenyReason.NOT_PUBLISHED, "Course is not available for access.", {"course_id": course.id})

    enrollment = find_enrollment(db, user.id, course.id, statuses=[models.ACTIVE])
    if enrollment is None:
        return Deny(
            DenyReason.NOT_ENROLLED,
            "You are not enrolled in this course. Please enroll to access the content.",
            {
                "course_id": course.id,
                "course_title": course.title,
                "price": str(course.price),
                "currency": course.currency,
            },
        )

    if effective_status(enrollment.status, enrollment.expires_at, now) == models.EXPIRED:
        return Deny(
            DenyReason.EXPIRED,
            "Your course access has expired. Please renew your enrollment.",
            {"course_id": course.id, "expired_at": as_utc(enrollment.expires_at).isoformat()},
        )

    return Admit(course=course, enrollment=enrollment)


def course_access(db: Session, user: Optional[CurrentUser], course_id: str, now: Optional[datetime] = None) -> Decision:
    if user is None:
        return Deny(DenyReason.UNAUTHENTICATED, "Authentication required to access course content.")

    course = catalog.get_course(db, course_id)
    if course is None:
        return _course_missing(course_id)

    return _enrolled_decision(db, user, course, now or utcnow())


def topic_access(
    db: Session,
    user: Optional[CurrentUser],
    course_id: str,
    section_index: int,
    topic_index: int,
    now: Optional[datetime] = None,
) -> Decision:
    course = catalog.get_course(db, course_id)
    if course is None:
        return _course_missing(course_id)

    topic = catalog.get_topic(course, section_index, topic_index)
    if topic is None:
        return Deny(
            DenyReason.NOT_FOUND,
            "Topic not found.",
            {"course_id": course_id, "section_index": section_index, "topic_index": topic_index},
        )

    # free previews never look at enrollments
    if topic.get("is_free"):
        return Admit(course=course, topic=topic)

    decision = _enrolled_decision(db, user, course, now or utcnow())
    if isinstance(decision, Deny):
        return decision
    return Admit(course=course, enrollment=decision.enrollment, topic=topic)


def enrollment_eligibility(
    db: Session, policy: PaymentPolicy, user: Optional[CurrentUser], course_id: str, now: Optional[datetime] = None
) -> Decision:
    if user is None:
        return Deny(DenyReason.UNAUTHENTICATED, "Authentication required.")

    if needs_registration_fee(policy, user):
        return Deny(
            DenyReason.REGISTRATION_FEE_REQUIRED,
            "Registration fee payment required to enroll in courses.",
            {
                "payment_required": True,
                "amount": str(policy.registration_fee_amount),
                "currency": policy.default_currency,
            },
        )

    existing = find_enrollment(db, user.id, course_id, statuses=[models.ACTIVE, models.EXPIRED])
    if existing is not None:
        return Deny(
            DenyReason.ALREADY_ENROLLED,
            "You are already enrolled in this course.",
            {
                "enrollment_id": existing.id,
                "enrollment_status": effective_status(existing.status, existing.expires_at, now),
            },
        )

    course = catalog.get_course(db, course_id)
    if course is None:
        return _course_missing(course_id)
    if course.status != models.PUBLISHED:
        return Deny(DenyReason.NOT_PUBLISHED, "Course is not available for enrollment.", {"course_id": course_id})

    return Admit(course=course)
