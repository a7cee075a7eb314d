"""
In-memory stores for users, purchases and coupons.

Each store guards its maps with its own lock and never calls into another
store while holding it. Records are kept as plain dicts and handed out as
model snapshots.
"""

import itertools
import secrets
import threading
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Callable, Optional

from .errors import (
    AlreadyRedeemedError,
    CodeGenerationError,
    CouponNotFoundError,
    DuplicateBillNumberError,
    DuplicateUsernameError,
    InvalidAmountError,
    MissingFieldError,
    PurchaseNotFoundError,
)
from .models import (
    Coupon,
    CouponStatus,
    Purchase,
    User,
    UserProfile,
    VerificationStatus,
)

Clock = Callable[[], datetime]
RandomBytes = Callable[[int], bytes]

CENT = Decimal("0.01")
MAX_CODE_ATTEMPTS = 32


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_amount(value, field: str = "amount") -> Decimal:
    if value is None:
        raise MissingFieldError(field)
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise InvalidAmountError(f"{field} must be a number, got {value!r}")
    if not amount.is_finite():
        raise InvalidAmountError(f"{field} must be a finite number")
    return amount


def to_cents(amount: Decimal, rounding: Optional[str] = None) -> Decimal:
    try:
        return amount.quantize(CENT, rounding=rounding)
    except InvalidOperation:
        raise InvalidAmountError(f"Amount {amount} is too large to express in cents")


class IdentityStore:
    def __init__(self, clock: Clock = utc_now):
        self._clock = clock
        self._lock = threading.RLock()
        self._ids = itertools.count(1)
        self.users: dict[int, dict] = {}
        self.username_index: dict[str, int] = {}

    def create_user(self, profile: UserProfile) -> User:
        username = profile.username.strip()
        if not username:
            raise MissingFieldError("username")

        with self._lock:
            if username in self.username_index:
                raise DuplicateUsernameError(username)

            user_id = next(self._ids)
            user_data = {
                **profile.model_dump(),
                "id": user_id,
                "username": username,
                "created_at": self._clock(),
            }
            self.users[user_id] = user_data
            self.username_index[username] = user_id
            return User(**user_data)

    def get_user_by_id(self, user_id: int) -> Optional[User]:
        with self._lock:
            user_data = self.users.get(user_id)
            return User(**user_data) if user_data else None

    def get_user_by_username(self, username: str) -> Optional[User]:
        with self._lock:
            user_id = self.username_index.get(username)
            if user_id is None:
                return None
            return User(**self.users[user_id])

    def list_users(self) -> list[User]:
        with self._lock:
            return [User(**u) for u in self.users.values()]

    def count(self) -> int:
        with self._lock:
            return len(self.users)


class PurchaseLedger:
    def __init__(self, clock: Clock = utc_now):
        self._clock = clock
        self._lock = threading.RLock()
        self._ids = itertools.count(1)
        self.purchases: dict[int, dict] = {}
        self.bill_number_index: dict[str, int] = {}

    def create_purchase(
        self, owner_id: int, bill_number: str, bill_amount, purchase_date: date
    ) -> Purchase:
        bill_number = (bill_number or "").strip()
        if not bill_number:
            raise MissingFieldError("bill_number")
        if purchase_date is None:
            raise MissingFieldError("purchase_date")
        amount = to_amount(bill_amount, "bill_amount")
        if amount <= 0:
            raise InvalidAmountError(f"bill_amount must be positive, got {amount}")

        with self._lock:
            if bill_number in self.bill_number_index:
                raise DuplicateBillNumberError(bill_number)

            purchase_id = next(self._ids)
            purchase_data = {
                "id": purchase_id,
                "owner_id": owner_id,
                "bill_number": bill_number,
                "bill_amount": amount,
                "purchase_date": purchase_date,
                "verification_status": VerificationStatus.PENDING,
                "created_at": self._clock(),
                "verified_at": None,
            }
            self.purchases[purchase_id] = purchase_data
            self.bill_number_index[bill_number] = purchase_id
            return Purchase(**purchase_data)

    def get_by_id(self, purchase_id: int) -> Optional[Purchase]:
        with self._lock:
            purchase_data = self.purchases.get(purchase_id)
            return Purchase(**purchase_data) if purchase_data else None

    def get_by_bill_number(self, bill_number: str) -> Optional[Purchase]:
        with self._lock:
            purchase_id = self.bill_number_index.get(bill_number.strip())
            if purchase_id is None:
                return None
            return Purchase(**self.purchases[purchase_id])

    def list_by_owner(self, owner_id: int) -> list[Purchase]:
        with self._lock:
            return [Purchase(**p) for p in self.purchases.values() if p["owner_id"] == owner_id]

    def list_all(self) -> list[Purchase]:
        with self._lock:
            return [Purchase(**p) for p in self.purchases.values()]

    def count(self) -> int:
        with self._lock:
            return len(self.purchases)

    def mark_verified(self, purchase_id: int) -> Purchase:
        """Move a purchase to verified. Already verified purchases come back unchanged."""
        with self._lock:
            purchase_data = self.purchases.get(purchase_id)
            if not purchase_data:
                raise PurchaseNotFoundError(purchase_id)

            if purchase_data["verification_status"] != VerificationStatus.VERIFIED:
                purchase_data["verification_status"] = VerificationStatus.VERIFIED
                purchase_data["verified_at"] = self._clock()
            return Purchase(**purchase_data)


class CouponRegistry:
    def __init__(
        self,
        ledger: PurchaseLedger,
        clock: Clock = utc_now,
        random_bytes: RandomBytes = secrets.token_bytes,
        code_bytes: int = 8,
    ):
        self.ledger = ledger
        self._clock = clock
        self._random_bytes = random_bytes
        self._code_bytes = code_bytes
        self._lock = threading.RLock()
        self._ids = itertools.count(1)
        self.coupons: dict[int, dict] = {}
        self.purchase_index: dict[int, int] = {}
        self.codes: set[str] = set()

    def issue_or_update(self, purchase_id: int, amount) -> Coupon:
        coupon, _ = self.upsert(purchase_id, amount)
        return coupon

    def upsert(self, purchase_id: int, amount) -> tuple[Coupon, bool]:
        """Create the coupon for a purchase, or change the amount of the one it already has.

        Returns the coupon and whether it was created by this call. The code is fixed
        at creation. A redeemed coupon is frozen and refuses updates.
        """
        amount = to_amount(amount)
        if amount < 0:
            raise InvalidAmountError(f"Coupon amount cannot be negative, got {amount}")
        amount = to_cents(amount)

        with self._lock:
            now = self._clock()
            coupon_id = self.purchase_index.get(purchase_id)
            if coupon_id is not None:
                coupon_data = self.coupons[coupon_id]
                if not Coupon(**coupon_data).can_redeem():
                    raise AlreadyRedeemedError(purchase_id)
                coupon_data["amount"] = amount
                coupon_data["updated_at"] = now
                return Coupon(**coupon_data), False

            coupon_id = next(self._ids)
            coupon_data = {
                "id": coupon_id,
                "purchase_id": purchase_id,
                "code": self._generate_code(),
                "amount": amount,
                "status": CouponStatus.ACTIVE,
                "created_at": now,
                "updated_at": now,
                "redeemed_at": None,
            }
            self.coupons[coupon_id] = coupon_data
            self.purchase_index[purchase_id] = coupon_id
            self.codes.add(coupon_data["code"])
            return Coupon(**coupon_data), True

    def redeem(self, purchase_id: int) -> Coupon:
        with self._lock:
            coupon_id = self.purchase_index.get(purchase_id)
            if coupon_id is None:
                raise CouponNotFoundError(purchase_id)

            coupon_data = self.coupons[coupon_id]
            if not Coupon(**coupon_data).can_redeem():
                raise AlreadyRedeemedError(purchase_id)

            now = self._clock()
            coupon_data["status"] = CouponStatus.REDEEMED
            coupon_data["redeemed_at"] = now
            coupon_data["updated_at"] = now
            return Coupon(**coupon_data)

    def get_by_purchase(self, purchase_id: int) -> Optional[Coupon]:
        with self._lock:
            coupon_id = self.purchase_index.get(purchase_id)
            if coupon_id is None:
                return None
            return Coupon(**self.coupons[coupon_id])

    def get_by_user(self, owner_id: int) -> list[Coupon]:
        """Coupons of the owner's verified purchases, newest first."""
        verified_ids = {
            p.id for p in self.ledger.list_by_owner(owner_id) if p.is_verified()
        }
        with self._lock:
            coupons = [
                Coupon(**c) for c in self.coupons.values()
                if c["purchase_id"] in verified_ids
            ]
        coupons.sort(key=lambda c: (c.created_at, c.id), reverse=True)
        return coupons

    def list_all(self) -> list[Coupon]:
        with self._lock:
            return [Coupon(**c) for c in self.coupons.values()]

    def count(self) -> int:
        with self._lock:
            return len(self.coupons)

    def _generate_code(self) -> str:
        for _ in range(MAX_CODE_ATTEMPTS):
            code = self._random_bytes(self._code_bytes).hex().upper()
            if code not in self.codes:
                return code
        raise CodeGenerationError(MAX_CODE_ATTEMPTS)


class CashbackStorage:
    """The three stores, built once at startup and shared by reference."""

    def __init__(
        self,
        clock: Clock = utc_now,
        random_bytes: RandomBytes = secrets.token_bytes,
        code_bytes: int = 8,
    ):
        self.users = IdentityStore(clock)
        self.purchases = PurchaseLedger(clock)
        self.coupons = CouponRegistry(self.purchases, clock, random_bytes, code_bytes)
