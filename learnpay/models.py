import uuid

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import relationship

from learnpay.database import Base
from learnpay.durations import AccessDuration, DurationUnit


def new_id() -> str:
    return str(uuid.uuid4())


# payment status
PENDING = "pending"
COMPLETED = "completed"
FAILED = "failed"
REFUNDED = "refunded"
CANCELLED = "cancelled"

# payment type
REGISTRATION = "registration"
COURSE = "course"

# enrollment status
ACTIVE = "active"
EXPIRED = "expired"
SUSPENDED = "suspended"

PUBLISHED = "published"


class User(Base):
    """Identity record; owned by the identity layer, read and flagged here."""

    __tablename__ = "users"
    id = Column(String(36), primary_key=True, default=new_id)
    role = Column(String(20), nullable=False, default="student")
    registration_fee_paid = Column(Boolean, nullable=False, default=False)
    registration_fee_payment_id = Column(String(36), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class Course(Base):
    """
    Catalog record. ``sections`` is the authored tree:
    ``[{"title": ..., "topics": [{"title": ..., "is_free": bool}, ...]}, ...]``
    """

    __tablename__ = "courses"
    id = Column(String(36), primary_key=True, default=new_id)
    title = Column(String(200), nullable=False)
    price = Column(Numeric(10, 2), nullable=False, default=0)
    currency = Column(String(3), nullable=False, default="INR")
    status = Column(String(20), nullable=False, default="draft", index=True)
    access_duration_count = Column(Integer, nullable=True)
    access_duration_unit = Column(String(10), nullable=True)
    sections = Column(JSON, nullable=False, default=list)
    enrollment_count = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    @property
    def access_duration(self):
        if not self.access_duration_count or not self.access_duration_unit:
            return None
        return AccessDuration(self.access_duration_count, DurationUnit(self.access_duration_unit))

    @access_duration.setter
    def access_duration(self, duration):
        self.access_duration_count = duration.count if duration else None
        self.access_duration_unit = duration.unit.value if duration else None


class Payment(Base):
    __tablename__ = "payments"
    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    course_id = Column(String(36), ForeignKey("courses.id"), nullable=True, index=True)
    amount = Column(Numeric(10, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="INR")
    payment_type = Column(String(20), nullable=False, index=True)
    status = Column(String(20), nullable=False, default=PENDING, index=True)

    gateway_provider = Column(String(20), nullable=False, default="razorpay")
    gateway_order_id = Column(String(64), nullable=True, unique=True)
    gateway_payment_id = Column(String(64), nullable=True, index=True)
    gateway_signature = Column(String(128), nullable=True)
    gateway_receipt = Column(String(40), nullable=True)

    refund_id = Column(String(64), nullable=True)
    refund_amount = Column(Numeric(10, 2), nullable=True)
    refund_reason = Column(Text, nullable=True)
    refunded_at = Column(DateTime(timezone=True), nullable=True)

    failure_reason = Column(Text, nullable=True)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())


class Enrollment(Base):
    __tablename__ = "enrollments"
    __table_args__ = (UniqueConstraint("user_id", "course_id", name="uq_enrollment_user_course"),)

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    course_id = Column(String(36), ForeignKey("courses.id"), nullable=False, index=True)
    payment_id = Column(String(36), ForeignKey("payments.id"), nullable=False)
    status = Column(String(20), nullable=False, default=ACTIVE, index=True)
    enrolled_at = Column(DateTime(timezone=True), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False, index=True)

    last_section_index = Column(Integer, nullable=True)
    last_topic_index = Column(Integer, nullable=True)
    last_accessed_at = Column(DateTime(timezone=True), nullable=True)
    completion_percentage = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    completed_topics = relationship(
        "CompletedTopic",
        back_populates="enrollment",
        cascade="all, delete-orphan",
        order_by="CompletedTopic.completed_at",
    )


class CompletedTopic(Base):
    __tablename__ = "completed_topics"
    __table_args__ = (
        UniqueConstraint("enrollment_id", "section_index", "topic_index", name="uq_completed_topic"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    enrollment_id = Column(String(36), ForeignKey("enrollments.id"), nullable=False, index=True)
    section_index = Column(Integer, nullable=False)
    topic_index = Column(Integer, nullable=False)
    completed_at = Column(DateTime(timezone=True), nullable=False)

    enrollment = relationship("Enrollment", back_populates="completed_topics")
