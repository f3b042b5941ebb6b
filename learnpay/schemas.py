from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class CourseOrderCreate(BaseModel):
    course_id: str = Field(..., min_length=1)


class VerifyPaymentIn(BaseModel):
    payment_id: str = Field(..., min_length=1)
    order_id: str = Field(..., min_length=1)
    gateway_payment_id: str = Field(..., min_length=1)
    signature: str = Field(..., min_length=1)


class FailPaymentIn(BaseModel):
    reason: str = Field("payment failed at gateway", max_length=500)


class RefundIn(BaseModel):
    refund_id: str = Field(..., min_length=1)
    amount: Optional[Decimal] = Field(None, ge=0)
    reason: Optional[str] = Field(None, max_length=500)


class OrderOut(BaseModel):
    id: str
    amount: int
    currency: str
    receipt: str


class PaymentOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    course_id: Optional[str] = None
    amount: Decimal
    currency: str
    payment_type: str
    status: str
    gateway_provider: str
    gateway_order_id: Optional[str] = None
    gateway_payment_id: Optional[str] = None
    failure_reason: Optional[str] = None
    refund_id: Optional[str] = None
    refund_amount: Optional[Decimal] = None
    refunded_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


class PaymentIntentOut(BaseModel):
    success: bool = True
    order: OrderOut
    payment_id: str
    key_id: str


class CompletedTopicOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    section_index: int
    topic_index: int
    completed_at: datetime


class ProgressOut(BaseModel):
    completed_topics: List[CompletedTopicOut] = []
    last_section_index: Optional[int] = None
    last_topic_index: Optional[int] = None
    last_accessed_at: Optional[datetime] = None
    completion_percentage: int = 0


class EnrollmentOut(BaseModel):
    id: str
    user_id: str
    course_id: str
    payment_id: str
    status: str
    enrolled_at: datetime
    expires_at: datetime
    days_remaining: int
    progress: ProgressOut


class VerificationOut(BaseModel):
    success: bool = True
    outcome: str
    payment_type: str
    payment: PaymentOut
    enrollment: Optional[EnrollmentOut] = None


class AccessOut(BaseModel):
    success: bool = True
    course_id: str
    course_title: str
    enrollment: Optional[EnrollmentOut] = None
    topic: Optional[Dict[str, Any]] = None


class CourseContentOut(BaseModel):
    success: bool = True
    course_id: str
    title: str
    sections: List[Dict[str, Any]] = []
    enrollment: EnrollmentOut


class EligibilityOut(BaseModel):
    success: bool = True
    course_id: str
    course_title: str
    price: Decimal
    currency: str


class EnrollmentStatusOut(BaseModel):
    success: bool = True
    is_enrolled: bool
    enrollment: Optional[EnrollmentOut] = None


class GatewayConfigOut(BaseModel):
    key_id: str
    currency: str
    merchant_name: str
    registration_fee_amount: Decimal
