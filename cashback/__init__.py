"""
Cashback Coupon Lifecycle

This package provides:
- User, purchase and coupon stores kept in process memory
- Unique bill numbers and one coupon per verified purchase
- Purchase lifecycle: pending → verified → coupon redeemed
- Idempotent re-verification that adjusts the coupon amount, never its code
- A FastAPI layer with admin-only verification and redemption
"""

from .models import (
    VerificationStatus,
    CouponStatus,
    User,
    Purchase,
    Coupon,
)
from .storage import CashbackStorage
from .service import CashbackService

__all__ = [
    "VerificationStatus",
    "CouponStatus",
    "User",
    "Purchase",
    "Coupon",
    "CashbackStorage",
    "CashbackService",
]
