from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
from pydantic import BaseModel, Field, ConfigDict


class VerificationStatus(str, Enum):
    PENDING = "pending"
    VERIFIED = "verified"


class CouponStatus(str, Enum):
    ACTIVE = "active"
    REDEEMED = "redeemed"


class UserProfile(BaseModel):
    """Everything needed to create a user; the credential is already hashed."""
    username: str
    credential_hash: str
    name: str
    address: str
    phone: str
    is_admin: bool = False


class RegisterUserRequest(BaseModel):
    username: str = Field(..., min_length=1, max_length=64)
    password: str = Field(..., min_length=6)
    name: str = Field(..., min_length=1)
    address: str = Field(..., min_length=1)
    phone: str = Field(..., pattern=r"^\d{10}$")

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "username": "alice",
            "password": "s3cret-pass",
            "name": "Alice Shopper",
            "address": "12 Market Road",
            "phone": "9876543210",
        }
    })


class CreatePurchaseRequest(BaseModel):
    bill_number: str = Field(..., description="Receipt number printed on the bill")
    bill_amount: Decimal
    purchase_date: date

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "bill_number": "B-2024-000183",
            "bill_amount": 1000.00,
            "purchase_date": "2024-06-01",
        }
    })


class VerifyPurchaseRequest(BaseModel):
    cashback_amount: Optional[Decimal] = Field(
        default=None, description="Overrides the default percentage when set"
    )


class User(BaseModel):
    id: int
    username: str
    credential_hash: str
    name: str
    address: str
    phone: str
    is_admin: bool = False
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class UserPublic(BaseModel):
    id: int
    username: str
    name: str
    address: str
    phone: str
    is_admin: bool
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class Purchase(BaseModel):
    id: int
    owner_id: int
    bill_number: str
    bill_amount: Decimal
    purchase_date: date
    verification_status: VerificationStatus = VerificationStatus.PENDING
    created_at: datetime
    verified_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)

    def is_verified(self) -> bool:
        return self.verification_status == VerificationStatus.VERIFIED


class Coupon(BaseModel):
    id: int
    purchase_id: int
    code: str
    amount: Decimal
    status: CouponStatus = CouponStatus.ACTIVE
    created_at: datetime
    updated_at: datetime
    redeemed_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)

    def can_redeem(self) -> bool:
        return self.status == CouponStatus.ACTIVE


class VerificationResult(BaseModel):
    coupon: Coupon
    bill_number: str
    message: str


class RedemptionResult(BaseModel):
    coupon: Coupon
    bill_number: str
    message: str


class CouponView(BaseModel):
    """Coupon with the purchase and owner details shown on admin reports."""
    coupon: Coupon
    bill_number: str
    owner_id: int
    owner_username: Optional[str] = None


class StatsResponse(BaseModel):
    user_count: int
    purchase_count: int
    pending_count: int
    verified_count: int
    coupon_count: int
    redeemed_count: int
