from decimal import Decimal

import pytest

from learnpay import access, models
from learnpay.access import Admit, Deny, DenyReason, effective_status
from learnpay.errors import AccessDenied, NotPublished, RegistrationFeeRequired

from conftest import utc


def _enrollment(db, user, course, enrolled_at, expires_at, status=models.ACTIVE):
    payment = models.Payment(
        user_id=user.id,
        course_id=course.id,
        amount=Decimal(course.price),
        currency="INR",
        payment_type=models.COURSE,
        status=models.COMPLETED,
    )
    db.add(payment)
    db.flush()
    enrollment = models.Enrollment(
        user_id=user.id,
        course_id=course.id,
        payment_id=payment.id,
        status=status,
        enrolled_at=enrolled_at,
        expires_at=expires_at,
    )
    db.add(enrollment)
    db.commit()
    return enrollment


def test_effective_status():
    expires = utc(2025, 1, 15)
    assert effective_status(models.ACTIVE, expires, utc(2025, 1, 15)) == models.ACTIVE
    assert effective_status(models.ACTIVE, expires, utc(2025, 1, 15, 0, 0, 1)) == models.EXPIRED
    assert effective_status(models.SUSPENDED, expires, utc(2024, 1, 1)) == models.SUSPENDED
    assert effective_status(models.CANCELLED, expires, utc(2030, 1, 1)) == models.CANCELLED


def test_free_topic_admits_anonymous_caller(db, make_course):
    course = make_course()

    decision = access.topic_access(db, None, course.id, 0, 0)

    assert isinstance(decision, Admit)
    assert decision.topic["title"] == "Welcome"
    assert decision.enrollment is None


def test_paid_topic_requires_authentication(db, make_course):
    course = make_course()

    decision = access.topic_access(db, None, course.id, 0, 1)

    assert isinstance(decision, Deny)
    assert decision.reason is DenyReason.UNAUTHENTICATED


@pytest.mark.parametrize("section,topic", [(9, 0), (0, 9), (-1, 0)])
def test_unknown_topic(db, make_course, make_user, as_current, section, topic):
    course = make_course()

    decision = access.topic_access(db, as_current(make_user()), course.id, section, topic)

    assert decision.reason is DenyReason.NOT_FOUND


def test_not_enrolled_carries_course_details(db, make_course, make_user, as_current):
    course = make_course(price="500")

    decision = access.course_access(db, as_current(make_user()), course.id)

    assert decision.reason is DenyReason.NOT_ENROLLED
    assert decision.detail["course_title"] == "Python from scratch"
    assert Decimal(decision.detail["price"]) == Decimal("500")
    assert decision.detail["currency"] == "INR"
    error = decision.to_error()
    assert isinstance(error, AccessDenied)
    assert error.code == "not_enrolled"
    assert error.status_code == 403


def test_one_year_window(db, make_course, make_user, as_current):
    user = make_user(registration_fee_paid=True)
    course = make_course(price="500")
    _enrollment(db, user, course, utc(2024, 1, 15), utc(2025, 1, 15))
    current = as_current(user)

    admitted = access.topic_access(db, current, course.id, 1, 0, now=utc(2025, 1, 14))
    denied = access.topic_access(db, current, course.id, 1, 0, now=utc(2025, 1, 16))

    assert isinstance(admitted, Admit)
    assert admitted.enrollment is not None
    assert isinstance(denied, Deny)
    assert denied.reason is DenyReason.EXPIRED
    assert denied.detail["expired_at"].startswith("2025-01-15")


def test_expiry_applies_the_moment_it_passes(db, make_course, make_user, as_current):
    user = make_user(registration_fee_paid=True)
    course = make_course()
    _enrollment(db, user, course, utc(2024, 1, 15), utc(2025, 1, 15, 12, 0))

    just_after = access.course_access(db, as_current(user), course.id, now=utc(2025, 1, 15, 12, 0, 1))

    assert just_after.reason is DenyReason.EXPIRED


def test_draft_course_is_not_published(db, make_course, make_user, as_current):
    course = make_course(status="draft")

    decision = access.course_access(db, as_current(make_user()), course.id)

    assert decision.reason is DenyReason.NOT_PUBLISHED
    assert isinstance(decision.to_error(), NotPublished)


def test_missing_course(db, make_user, as_current):
    assert access.course_access(db, as_current(make_user()), "nope").reason is DenyReason.NOT_FOUND
    assert access.topic_access(db, None, "nope", 0, 0).reason is DenyReason.NOT_FOUND


def test_cancelled_enrollment_is_not_enrolled(db, make_course, make_user, as_current):
    user = make_user(registration_fee_paid=True)
    course = make_course()
    _enrollment(db, user, course, utc(2024, 1, 1), utc(2099, 1, 1), status=models.CANCELLED)

    assert access.course_access(db, as_current(user), course.id).reason is DenyReason.NOT_ENROLLED


def test_eligibility_requires_registration_fee(db, policy, make_course, make_user, as_current):
    course = make_course()

    decision = access.enrollment_eligibility(db, policy, as_current(make_user()), course.id)

    assert decision.reason is DenyReason.REGISTRATION_FEE_REQUIRED
    assert decision.detail == {"payment_required": True, "amount": "699", "currency": "INR"}
    assert isinstance(decision.to_error(), RegistrationFeeRequired)
    assert decision.to_error().status_code == 402


@pytest.mark.parametrize("role", ["admin", "beta"])
def test_eligibility_complimentary_roles(db, policy, make_course, make_user, as_current, role):
    course = make_course()

    decision = access.enrollment_eligibility(db, policy, as_current(make_user(role=role)), course.id)

    assert isinstance(decision, Admit)
    assert decision.course.id == course.id


def test_eligibility_reports_existing_enrollment(db, policy, make_course, make_user, as_current):
    user = make_user(registration_fee_paid=True)
    course = make_course()
    enrollment = _enrollment(db, user, course, utc(2020, 1, 1), utc(2021, 1, 1))

    decision = access.enrollment_eligibility(db, policy, as_current(user), course.id, now=utc(2024, 1, 1))

    assert decision.reason is DenyReason.ALREADY_ENROLLED
    assert decision.detail["enrollment_id"] == enrollment.id
    assert decision.detail["enrollment_status"] == models.EXPIRED


def test_eligibility_anonymous(db, policy, make_course):
    assert access.enrollment_eligibility(db, policy, None, make_course().id).reason is DenyReason.UNAUTHENTICATED
