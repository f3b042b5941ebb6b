# learnpay/main.py
from functools import lru_cache
from typing import Optional
import logging

from fastapi import BackgroundTasks, Depends, FastAPI, Header, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import uvicorn
from sqlalchemy import text
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from learnpay import access, database, events, models, schemas
from learnpay.config import PaymentPolicy, get_settings
from learnpay.durations import as_utc, utcnow
from learnpay.enrollments import EnrollmentManager, days_remaining
from learnpay.errors import AccessDenied, LearnpayError, StoreUnavailable, Unauthenticated
from learnpay.gateway import RazorpayGateway
from learnpay.identity import CurrentUser, load_user
from learnpay.payments import PaymentLifecycle

# config / env
settings = get_settings()

# logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("learnpay")

app = FastAPI(title="Learnpay")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@lru_cache
def get_policy() -> PaymentPolicy:
    return settings.payment_policy()


def get_gateway() -> RazorpayGateway:
    return RazorpayGateway(
        settings.razorpay_key_id,
        settings.razorpay_key_secret,
        api_url=settings.razorpay_api_url,
        timeout=settings.gateway_timeout_seconds,
    )


def build_lifecycle(gateway: RazorpayGateway, policy: PaymentPolicy) -> PaymentLifecycle:
    return PaymentLifecycle(gateway, policy, EnrollmentManager(policy))


# Startup: initialize DB and start the consumer that listens to gateway events
@app.on_event("startup")
def startup():
    logger.info("Initializing DB and starting gateway-event consumer...")
    database.init_db(settings.database_url)
    if settings.consume_gateway_events:
        events.start_consumer(
            settings.database_url,
            settings.rabbitmq_url,
            build_lifecycle(get_gateway(), get_policy()),
            settings.gateway_queue,
        )
    logger.info("Startup complete.")


def get_db():
    db = database.SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_lifecycle(
    gateway: RazorpayGateway = Depends(get_gateway), policy: PaymentPolicy = Depends(get_policy)
) -> PaymentLifecycle:
    return build_lifecycle(gateway, policy)


def get_enrollment_manager(policy: PaymentPolicy = Depends(get_policy)) -> EnrollmentManager:
    return EnrollmentManager(policy)


# the identity layer in front of this service authenticates the caller and forwards the id
def get_current_user(x_user_id: Optional[str] = Header(None), db: Session = Depends(get_db)) -> Optional[CurrentUser]:
    return load_user(db, x_user_id)


def require_user(user: Optional[CurrentUser] = Depends(get_current_user)) -> CurrentUser:
    if user is None:
        raise Unauthenticated("Authentication required.")
    return user


@app.exception_handler(LearnpayError)
async def learnpay_error_handler(request: Request, exc: LearnpayError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# database outages outside the payment operations (lookups, progress writes)
@app.exception_handler(OperationalError)
async def store_error_handler(request: Request, exc: OperationalError):
    logger.error("Store unavailable on %s %s: %s", request.method, request.url.path, exc.orig)
    error = StoreUnavailable("Service storage is unavailable. Please retry.")
    return JSONResponse(status_code=error.status_code, content=error.to_dict())


def _enrollment_out(enrollment: models.Enrollment) -> schemas.EnrollmentOut:
    now = utcnow()
    return schemas.EnrollmentOut(
        id=enrollment.id,
        user_id=enrollment.user_id,
        course_id=enrollment.course_id,
        payment_id=enrollment.payment_id,
        status=access.effective_status(enrollment.status, enrollment.expires_at, now),
        enrolled_at=as_utc(enrollment.enrolled_at),
        expires_at=as_utc(enrollment.expires_at),
        days_remaining=days_remaining(enrollment, now),
        progress=schemas.ProgressOut(
            completed_topics=[schemas.CompletedTopicOut.model_validate(t) for t in enrollment.completed_topics],
            last_section_index=enrollment.last_section_index,
            last_topic_index=enrollment.last_topic_index,
            last_accessed_at=as_utc(enrollment.last_accessed_at),
            completion_percentage=enrollment.completion_percentage,
        ),
    )


def _admitted(decision: access.Decision) -> access.Admit:
    if isinstance(decision, access.Deny):
        raise decision.to_error()
    return decision


# Root and health endpoints
@app.get("/")
def root():
    return {"service": "Learnpay", "status": "running", "endpoints": ["/payments", "/courses", "/docs", "/openapi.json"]}


@app.get("/health")
def health():
    try:
        db = database.SessionLocal()
        db.execute(text("SELECT 1"))
        db.close()
    except Exception as e:
        logger.exception("Health check failed: %s", e)
        raise HTTPException(status_code=503, detail="Database unreachable")
    return {"status": "ok"}


@app.get("/payments/config", response_model=schemas.GatewayConfigOut)
def gateway_config(policy: PaymentPolicy = Depends(get_policy)):
    return schemas.GatewayConfigOut(
        key_id=settings.razorpay_key_id,
        currency=policy.default_currency,
        merchant_name=settings.merchant_name,
        registration_fee_amount=policy.registration_fee_amount,
    )


def _intent_out(order, payment: models.Payment, gateway: RazorpayGateway) -> schemas.PaymentIntentOut:
    return schemas.PaymentIntentOut(
        order=schemas.OrderOut(id=order.id, amount=order.amount, currency=order.currency, receipt=order.receipt),
        payment_id=payment.id,
        key_id=gateway.key_id,
    )


@app.post("/payments/registration-order", response_model=schemas.PaymentIntentOut, status_code=201)
def create_registration_order(
    user: CurrentUser = Depends(require_user),
    db: Session = Depends(get_db),
    lifecycle: PaymentLifecycle = Depends(get_lifecycle),
):
    order, payment = lifecycle.create_intent(db, user, models.REGISTRATION)
    return _intent_out(order, payment, lifecycle.gateway)


@app.post("/payments/course-order", response_model=schemas.PaymentIntentOut, status_code=201)
def create_course_order(
    body: schemas.CourseOrderCreate,
    user: CurrentUser = Depends(require_user),
    db: Session = Depends(get_db),
    lifecycle: PaymentLifecycle = Depends(get_lifecycle),
):
    order, payment = lifecycle.create_intent(db, user, models.COURSE, body.course_id)
    return _intent_out(order, payment, lifecycle.gateway)


@app.post("/payments/verify", response_model=schemas.VerificationOut)
def verify_payment(
    body: schemas.VerifyPaymentIn,
    background_tasks: BackgroundTasks,
    user: CurrentUser = Depends(require_user),
    db: Session = Depends(get_db),
    lifecycle: PaymentLifecycle = Depends(get_lifecycle),
):
    result = lifecycle.verify(db, body.payment_id, body.order_id, body.gateway_payment_id, body.signature)
    background_tasks.add_task(events.publish_events, settings.rabbitmq_url, events.verification_events(result))

    return schemas.VerificationOut(
        outcome=result.outcome,
        payment_type=result.payment.payment_type,
        payment=schemas.PaymentOut.model_validate(result.payment),
        enrollment=_enrollment_out(result.enrollment) if result.enrollment is not None else None,
    )


@app.get("/payments/{payment_id}", response_model=schemas.PaymentOut)
def get_payment(
    payment_id: str,
    user: CurrentUser = Depends(require_user),
    db: Session = Depends(get_db),
    lifecycle: PaymentLifecycle = Depends(get_lifecycle),
):
    return schemas.PaymentOut.model_validate(lifecycle.get_payment(db, payment_id, user))


@app.post("/payments/{payment_id}/cancel", response_model=schemas.PaymentOut)
def cancel_payment(
    payment_id: str,
    user: CurrentUser = Depends(require_user),
    db: Session = Depends(get_db),
    lifecycle: PaymentLifecycle = Depends(get_lifecycle),
):
    payment = lifecycle.cancel(db, payment_id, user)
    return schemas.PaymentOut.model_validate(payment)


# Checkout reported a failed attempt for the caller's own payment
@app.post("/payments/{payment_id}/fail", response_model=schemas.PaymentOut)
def fail_payment(
    payment_id: str,
    body: schemas.FailPaymentIn,
    background_tasks: BackgroundTasks,
    user: CurrentUser = Depends(require_user),
    db: Session = Depends(get_db),
    lifecycle: PaymentLifecycle = Depends(get_lifecycle),
):
    lifecycle.get_payment(db, payment_id, user)
    payment = lifecycle.fail(db, payment_id, body.reason)
    background_tasks.add_task(
        events.publish_event, settings.rabbitmq_url, "payment.events.failed", events.payment_event("PaymentFailed", payment)
    )
    return schemas.PaymentOut.model_validate(payment)


# Admin refund: mark REFUNDED, revoke what it paid for and publish event
@app.post("/payments/{payment_id}/refund", response_model=schemas.PaymentOut)
def refund_payment(
    payment_id: str,
    body: schemas.RefundIn,
    background_tasks: BackgroundTasks,
    user: CurrentUser = Depends(require_user),
    db: Session = Depends(get_db),
    lifecycle: PaymentLifecycle = Depends(get_lifecycle),
):
    if user.role != lifecycle.policy.admin_role:
        raise AccessDenied("Insufficient permissions. Access denied.")

    payment = lifecycle.refund(db, payment_id, body.refund_id, body.amount, body.reason)
    background_tasks.add_task(
        events.publish_event, settings.rabbitmq_url, "payment.events.refunded", events.payment_event("PaymentRefunded", payment)
    )
    logger.info("Refunded payment id=%s by admin=%s", payment_id, user.id)
    return schemas.PaymentOut.model_validate(payment)


@app.get("/courses/{course_id}/access", response_model=schemas.AccessOut)
def check_course_access(
    course_id: str,
    user: Optional[CurrentUser] = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    admit = _admitted(access.course_access(db, user, course_id))
    return schemas.AccessOut(
        course_id=admit.course.id,
        course_title=admit.course.title,
        enrollment=_enrollment_out(admit.enrollment),
    )


@app.get("/courses/{course_id}/content", response_model=schemas.CourseContentOut)
def get_course_content(
    course_id: str,
    user: Optional[CurrentUser] = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    admit = _admitted(access.course_access(db, user, course_id))
    return schemas.CourseContentOut(
        course_id=admit.course.id,
        title=admit.course.title,
        sections=admit.course.sections or [],
        enrollment=_enrollment_out(admit.enrollment),
    )


@app.get("/courses/{course_id}/topics/{section_index}/{topic_index}", response_model=schemas.AccessOut)
def get_topic(
    course_id: str,
    section_index: int,
    topic_index: int,
    user: Optional[CurrentUser] = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    admit = _admitted(access.topic_access(db, user, course_id, section_index, topic_index))
    return schemas.AccessOut(
        course_id=admit.course.id,
        course_title=admit.course.title,
        enrollment=_enrollment_out(admit.enrollment) if admit.enrollment is not None else None,
        topic=admit.topic,
    )


@app.post("/courses/{course_id}/topics/{section_index}/{topic_index}/progress", response_model=schemas.EnrollmentOut)
def update_progress(
    course_id: str,
    section_index: int,
    topic_index: int,
    user: CurrentUser = Depends(require_user),
    db: Session = Depends(get_db),
    enrollments: EnrollmentManager = Depends(get_enrollment_manager),
):
    admit = _admitted(access.topic_access(db, user, course_id, section_index, topic_index))
    enrollment = admit.enrollment
    if enrollment is None:
        # free topic: progress still belongs to an enrollment
        enrollment = _admitted(access.course_access(db, user, course_id)).enrollment

    enrollment = enrollments.record_progress(db, enrollment.id, section_index, topic_index)
    return _enrollment_out(enrollment)


@app.get("/courses/{course_id}/enrollment-status", response_model=schemas.EnrollmentStatusOut)
def enrollment_status(
    course_id: str,
    user: CurrentUser = Depends(require_user),
    db: Session = Depends(get_db),
    enrollments: EnrollmentManager = Depends(get_enrollment_manager),
):
    enrollment = enrollments.get_enrollment(db, user.id, course_id)
    if enrollment is None:
        return schemas.EnrollmentStatusOut(is_enrolled=False)
    return schemas.EnrollmentStatusOut(is_enrolled=True, enrollment=_enrollment_out(enrollment))


@app.get("/courses/{course_id}/eligibility", response_model=schemas.EligibilityOut)
def enrollment_eligibility(
    course_id: str,
    user: Optional[CurrentUser] = Depends(get_current_user),
    db: Session = Depends(get_db),
    policy: PaymentPolicy = Depends(get_policy),
):
    admit = _admitted(access.enrollment_eligibility(db, policy, user, course_id))
    return schemas.EligibilityOut(
        course_id=admit.course.id,
        course_title=admit.course.title,
        price=admit.course.price,
        currency=admit.course.currency,
    )


def run():
    uvicorn.run("learnpay.main:app", host=settings.host, port=settings.port)
