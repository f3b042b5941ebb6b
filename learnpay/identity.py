# learnpay/identity.py
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.orm import Session

from learnpay import models
from learnpay.config import PaymentPolicy


@dataclass(frozen=True)
class CurrentUser:
    id: str
    role: str
    registration_fee_paid: bool

    @classmethod
    def from_model(cls, user: models.User) -> "CurrentUser":
        return cls(id=user.id, role=user.role, registration_fee_paid=bool(user.registration_fee_paid))


def load_user(db: Session, user_id: Optional[str]) -> Optional[CurrentUser]:
    """Resolve an authenticated user id to the caller, ignoring deactivated accounts."""
    if not user_id:
        return None
    user = db.get(models.User, user_id)
    if user is None or not user.is_active:
        return None
    return CurrentUser.from_model(user)


def needs_registration_fee(policy: PaymentPolicy, user: CurrentUser) -> bool:
    if user.role in policy.complimentary_roles:
        return False
    return user.role == policy.paid_tier_role and not user.registration_fee_paid
