# learnpay/payments.py
"""
Payment lifecycle: intents, gateway verification and the administrative
transitions (fail, cancel, refund).

Status moves only along ``ALLOWED_TRANSITIONS``. Verification is safe under
at-least-once delivery of gateway callbacks: the pending -> completed write is
a compare-and-set, and it commits together with its side effect (registration
flag or enrollment), so a payment is never completed without the access it
paid for.
"""
import logging
import time
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional, Tuple

from sqlalchemy import select, update
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from learnpay import access, models
from learnpay.config import PaymentPolicy
from learnpay.durations import utcnow
from learnpay.enrollments import EnrollmentManager
from learnpay.errors import (
    AlreadySatisfied,
    InvalidTransition,
    LearnpayError,
    NotFound,
    SignatureMismatch,
    StoreUnavailable,
    Unauthenticated,
    ValidationFailed,
)
from learnpay.gateway import GatewayOrder, RazorpayGateway
from learnpay.identity import CurrentUser

logger = logging.getLogger("learnpay.payments")

ALLOWED_TRANSITIONS = {
    models.PENDING: {models.COMPLETED, models.FAILED, models.CANCELLED},
    models.COMPLETED: {models.REFUNDED},
}

VERIFIED = "verified"
ALREADY_PROCESSED = "already_processed"


def can_transition(current: str, target: str) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, set())


def _ensure_transition(payment: models.Payment, target: str):
    if not can_transition(payment.status, target):
        raise InvalidTransition(
            f"Payment cannot move from {payment.status} to {target}.",
            payment_id=payment.id,
            payment_status=payment.status,
        )


@dataclass
class VerificationResult:
    payment: models.Payment
    outcome: str
    enrollment: Optional[models.Enrollment] = None

    @property
    def already_processed(self) -> bool:
        return self.outcome == ALREADY_PROCESSED


class PaymentLifecycle:
    def __init__(self, gateway: RazorpayGateway, policy: PaymentPolicy, enrollments: EnrollmentManager):
        self.gateway = gateway
        self.policy = policy
        self.enrollments = enrollments

    # intents

    def create_intent(
        self, db: Session, user: Optional[CurrentUser], kind: str, course_id: Optional[str] = None
    ) -> Tuple[GatewayOrder, models.Payment]:
        if user is None:
            raise Unauthenticated("Authentication required.")
        if kind not in (models.REGISTRATION, models.COURSE):
            raise ValidationFailed("Unknown payment type.", payment_type=kind)

        stamp = int(time.time())
        if kind == models.REGISTRATION:
            if course_id:
                raise ValidationFailed("course_id is not accepted for registration payments.")
            if user.registration_fee_paid:
                raise AlreadySatisfied("Registration fee has already been paid.")
            amount = Decimal(self.policy.registration_fee_amount)
            currency = self.policy.default_currency
            receipt = f"reg_{user.id[:8]}_{stamp}"
            notes = {"payment_type": models.REGISTRATION, "user_id": user.id}
        else:
            if not course_id:
                raise ValidationFailed("course_id is required for course payments.")
            decision = access.enrollment_eligibility(db, self.policy, user, course_id)
            if isinstance(decision, access.Deny):
                logger.info("Course intent refused user=%s course=%s reason=%s", user.id, course_id, decision.reason.value)
                raise decision.to_error()
            course = decision.course
            amount = Decimal(course.price)
            currency = course.currency or self.policy.default_currency
            receipt = f"course_{course.id[:8]}_{user.id[:8]}_{stamp}"
            notes = {"payment_type": models.COURSE, "user_id": user.id, "course_id": course.id}

        if amount < 0:
            raise ValidationFailed("Payment amount cannot be negative.", amount=str(amount))

        order = self.gateway.create_order(amount, currency, receipt, notes)

        payment = models.Payment(
            user_id=user.id,
            course_id=course_id if kind == models.COURSE else None,
            amount=amount,
            currency=currency,
            payment_type=kind,
            status=models.PENDING,
            gateway_provider=self.gateway.provider,
            gateway_order_id=order.id,
            gateway_receipt=order.receipt,
        )
        db.add(payment)
        try:
            db.commit()
        except OperationalError as exc:
            db.rollback()
            logger.error("Store unavailable recording order=%s: %s", order.id, exc)
            raise StoreUnavailable("Payment store is unavailable. Please retry.") from exc
        db.refresh(payment)
        logger.info(
            "Created %s payment id=%s user=%s course=%s order=%s amount=%s %s status=pending",
            kind, payment.id, user.id, payment.course_id, order.id, amount, currency,
        )
        return order, payment

    # verification

    def verify(
        self,
        db: Session,
        payment_id: str,
        order_id: str,
        gateway_payment_id: str,
        signature: str,
        now: Optional[datetime] = None,
    ) -> VerificationResult:
        if not payment_id or not order_id or not gateway_payment_id or not signature:
            raise ValidationFailed("Missing required payment verification data.")

        if not self.gateway.verify_signature(order_id, gateway_payment_id, signature):
            logger.warning(
                "Signature mismatch payment=%s order=%s gateway_payment=%s",
                payment_id, order_id, gateway_payment_id,
            )
            raise SignatureMismatch("Invalid payment signature.", payment_id=payment_id)

        payment = db.get(models.Payment, payment_id)
        if payment is None:
            raise NotFound("Payment record not found.", payment_id=payment_id)
        if payment.gateway_order_id != order_id:
            logger.warning("Order mismatch payment=%s expected=%s got=%s", payment_id, payment.gateway_order_id, order_id)
            raise ValidationFailed("Order does not belong to this payment.", payment_id=payment_id)

        if payment.status == models.COMPLETED:
            return self._already_processed(db, payment)
        _ensure_transition(payment, models.COMPLETED)

        enrollment = None
        try:
            claimed = db.execute(
                update(models.Payment)
                .where(models.Payment.id == payment.id, models.Payment.status == models.PENDING)
                .values(
                    status=models.COMPLETED,
                    gateway_payment_id=gateway_payment_id,
                    gateway_signature=signature,
                )
            ).rowcount
            if claimed == 1:
                if payment.payment_type == models.REGISTRATION:
                    self._grant_registration(db, payment)
                else:
                    enrollment = self.enrollments.materialize(db, payment, now)
                db.commit()
            else:
                db.rollback()
        except LearnpayError as exc:
            db.rollback()
            logger.warning("Verification of payment=%s rolled back (%s): %s", payment_id, exc.code, exc.message)
            raise
        except OperationalError as exc:
            db.rollback()
            logger.error("Store unavailable while verifying payment=%s: %s", payment_id, exc)
            raise StoreUnavailable("Payment store is unavailable. Please retry.", payment_id=payment_id) from exc
        except Exception:
            db.rollback()
            logger.exception("Verification of payment=%s rolled back", payment_id)
            raise

        if claimed != 1:
            # another delivery of the same callback won the compare-and-set
            db.refresh(payment)
            if payment.status == models.COMPLETED:
                return self._already_processed(db, payment)
            _ensure_transition(payment, models.COMPLETED)

        db.refresh(payment)
        logger.info("Payment id=%s type=%s user=%s completed", payment.id, payment.payment_type, payment.user_id)
        return VerificationResult(payment=payment, outcome=VERIFIED, enrollment=enrollment)

    def _already_processed(self, db: Session, payment: models.Payment) -> VerificationResult:
        logger.info("Payment id=%s already processed; ignoring duplicate callback", payment.id)
        enrollment = None
        if payment.payment_type == models.COURSE:
            enrollment = db.execute(
                select(models.Enrollment).where(models.Enrollment.payment_id == payment.id)
            ).scalars().first()
        return VerificationResult(payment=payment, outcome=ALREADY_PROCESSED, enrollment=enrollment)

    def _grant_registration(self, db: Session, payment: models.Payment):
        user = db.get(models.User, payment.user_id)
        if user is None:
            raise NotFound("User not found.", user_id=payment.user_id)
        user.registration_fee_paid = True
        user.registration_fee_payment_id = payment.id
        db.flush()
        logger.info("Registration fee recorded for user=%s payment=%s", user.id, payment.id)

    # other transitions

    def fail(self, db: Session, payment_id: str, reason: str) -> models.Payment:
        payment = self._get(db, payment_id)
        if payment.status == models.FAILED:
            return payment
        _ensure_transition(payment, models.FAILED)

        claimed = db.execute(
            update(models.Payment)
            .where(models.Payment.id == payment.id, models.Payment.status == models.PENDING)
            .values(status=models.FAILED, failure_reason=reason)
        ).rowcount
        db.commit()
        db.refresh(payment)
        if claimed != 1 and payment.status != models.FAILED:
            raise InvalidTransition(
                f"Payment cannot move from {payment.status} to {models.FAILED}.",
                payment_id=payment.id,
                payment_status=payment.status,
            )
        logger.info("Payment id=%s failed: %s", payment.id, reason)
        return payment

    def cancel(self, db: Session, payment_id: str, user: CurrentUser) -> models.Payment:
        payment = self.get_payment(db, payment_id, user)
        if payment.status == models.CANCELLED:
            return payment
        _ensure_transition(payment, models.CANCELLED)

        claimed = db.execute(
            update(models.Payment)
            .where(models.Payment.id == payment.id, models.Payment.status == models.PENDING)
            .values(status=models.CANCELLED)
        ).rowcount
        db.commit()
        db.refresh(payment)
        if claimed != 1 and payment.status != models.CANCELLED:
            raise InvalidTransition(
                f"Payment cannot move from {payment.status} to {models.CANCELLED}.",
                payment_id=payment.id,
                payment_status=payment.status,
            )
        logger.info("Payment id=%s cancelled by user=%s", payment.id, user.id)
        return payment

    def refund(
        self,
        db: Session,
        payment_id: str,
        refund_id: str,
        amount: Optional[Decimal] = None,
        reason: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> models.Payment:
        payment = self._get(db, payment_id)
        if payment.status == models.REFUNDED and payment.refund_id == refund_id:
            return payment
        _ensure_transition(payment, models.REFUNDED)

        refund_amount = Decimal(payment.amount) if amount is None else Decimal(amount)
        if refund_amount < 0 or refund_amount > Decimal(payment.amount):
            raise ValidationFailed(
                "Refund amount must be between 0 and the paid amount.",
                payment_id=payment.id,
                amount=str(refund_amount),
            )

        try:
            payment.status = models.REFUNDED
            payment.refund_id = refund_id
            payment.refund_amount = refund_amount
            payment.refund_reason = reason
            payment.refunded_at = now or utcnow()

            if payment.payment_type == models.COURSE:
                enrollment = db.execute(
                    select(models.Enrollment).where(models.Enrollment.payment_id == payment.id)
                ).scalars().first()
                if enrollment is not None:
                    enrollment.status = models.CANCELLED
                    logger.info("Enrollment=%s cancelled by refund of payment=%s", enrollment.id, payment.id)
            else:
                user = db.get(models.User, payment.user_id)
                if user is not None and user.registration_fee_payment_id == payment.id:
                    user.registration_fee_paid = False
            db.commit()
        except OperationalError as exc:
            db.rollback()
            logger.error("Store unavailable while refunding payment=%s: %s", payment_id, exc)
            raise StoreUnavailable("Payment store is unavailable. Please retry.", payment_id=payment_id) from exc
        except Exception:
            db.rollback()
            raise

        db.refresh(payment)
        logger.info("Payment id=%s refunded amount=%s refund=%s", payment.id, refund_amount, refund_id)
        return payment

    # reads

    def _get(self, db: Session, payment_id: str) -> models.Payment:
        payment = db.get(models.Payment, payment_id)
        if payment is None:
            raise NotFound("Payment not found.", payment_id=payment_id)
        return payment

    def get_payment(self, db: Session, payment_id: str, user: CurrentUser) -> models.Payment:
        payment = db.get(models.Payment, payment_id)
        # other users' payments are reported as missing
        if payment is None or (payment.user_id != user.id and user.role != self.policy.admin_role):
            raise NotFound("Payment not found.", payment_id=payment_id)
        return payment
