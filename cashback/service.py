import logging
from datetime import date
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

from .config import Settings, get_settings
from .errors import (
    ConflictError,
    InvalidAmountError,
    PurchaseNotFoundError,
    StateError,
    UserNotFoundError,
)
from .models import (
    Coupon,
    CouponStatus,
    CouponView,
    Purchase,
    RedemptionResult,
    StatsResponse,
    User,
    UserProfile,
    VerificationResult,
    VerificationStatus,
)
from .security import CredentialHasher, PasslibHasher
from .storage import CashbackStorage, to_amount, to_cents

logger = logging.getLogger(__name__)


def sort_for_review(purchases: list[Purchase]) -> list[Purchase]:
    """Pending purchases first, newest first within each group."""
    newest_first = sorted(purchases, key=lambda p: (p.created_at, p.id), reverse=True)
    return sorted(newest_first, key=lambda p: p.verification_status != VerificationStatus.PENDING)


class CashbackService:
    """Purchase verification and coupon redemption on top of the shared stores.

    Authorization is the caller's job; every operation here trusts the ids it is given.
    """

    def __init__(
        self,
        storage: Optional[CashbackStorage] = None,
        settings: Optional[Settings] = None,
        hasher: Optional[CredentialHasher] = None,
    ):
        self.settings = settings or get_settings()
        self.storage = storage or CashbackStorage(code_bytes=self.settings.coupon_code_bytes)
        self.hasher = hasher or PasslibHasher()
        if self.settings.seed_admin:
            self._seed_admin()

    def create_user(self, profile: UserProfile) -> User:
        try:
            user = self.storage.users.create_user(profile)
        except ConflictError as e:
            logger.warning(e.message, extra={"error_code": e.code})
            raise
        logger.info(f"User '{user.username}' created", extra={"user_id": user.id})
        return user

    def register_user(
        self,
        username: str,
        password: str,
        name: str,
        address: str,
        phone: str,
        is_admin: bool = False,
    ) -> User:
        return self.create_user(UserProfile(
            username=username,
            credential_hash=self.hasher.hash(password),
            name=name,
            address=address,
            phone=phone,
            is_admin=is_admin,
        ))

    def authenticate(self, username: str, password: str) -> Optional[User]:
        user = self.storage.users.get_user_by_username(username)
        if user and self.hasher.verify(password, user.credential_hash):
            return user
        return None

    def get_user(self, user_id: int) -> Optional[User]:
        return self.storage.users.get_user_by_id(user_id)

    def get_user_by_username(self, username: str) -> Optional[User]:
        return self.storage.users.get_user_by_username(username)

    def list_users(self) -> list[User]:
        return self.storage.users.list_users()

    def user_count(self) -> int:
        return self.storage.users.count()

    def create_purchase(
        self, owner_id: int, bill_number: str, bill_amount, purchase_date: date
    ) -> Purchase:
        if self.storage.users.get_user_by_id(owner_id) is None:
            raise UserNotFoundError(owner_id)
        try:
            purchase = self.storage.purchases.create_purchase(
                owner_id, bill_number, bill_amount, purchase_date
            )
        except ConflictError as e:
            logger.warning(e.message, extra={"user_id": owner_id, "error_code": e.code})
            raise
        logger.info(
            "Purchase submitted",
            extra={"purchase_id": purchase.id, "user_id": owner_id, "bill_number": purchase.bill_number},
        )
        return purchase

    def get_purchase(self, purchase_id: int) -> Purchase:
        purchase = self.storage.purchases.get_by_id(purchase_id)
        if not purchase:
            raise PurchaseNotFoundError(purchase_id)
        return purchase

    def list_purchases(self, owner_id: Optional[int] = None) -> list[Purchase]:
        if owner_id is None:
            return self.storage.purchases.list_all()
        return self.storage.purchases.list_by_owner(owner_id)

    def default_cashback(self, bill_amount: Decimal) -> Decimal:
        percent = self.settings.default_cashback_percent
        return to_cents(bill_amount * percent / Decimal(100), rounding=ROUND_HALF_UP)

    def verify_purchase(self, purchase_id: int, amount=None) -> VerificationResult:
        """Verify a purchase and issue its coupon, or re-verify and adjust the coupon amount.

        Without an explicit amount the coupon is worth the default percentage of the bill.
        The amount is settled before the purchase is touched, so a rejected amount leaves
        it as it was.
        """
        purchase = self.get_purchase(purchase_id)
        if amount is None:
            amount = self.default_cashback(purchase.bill_amount)
        else:
            amount = to_amount(amount)
            if amount < 0:
                raise InvalidAmountError(f"Cashback amount cannot be negative, got {amount}")
            amount = to_cents(amount)

        purchase = self.storage.purchases.mark_verified(purchase_id)
        try:
            coupon, created = self.storage.coupons.upsert(purchase_id, amount)
        except StateError as e:
            logger.warning(e.message, extra={"purchase_id": purchase_id, "error_code": e.code})
            raise

        if created:
            message = "Purchase verified and coupon issued"
        else:
            message = "Coupon amount updated"
        logger.info(
            f"{message}: {coupon.amount}",
            extra={"purchase_id": purchase_id, "coupon_id": coupon.id},
        )
        return VerificationResult(coupon=coupon, bill_number=purchase.bill_number, message=message)

    def redeem_coupon(self, purchase_id: int) -> RedemptionResult:
        purchase = self.get_purchase(purchase_id)
        try:
            coupon = self.storage.coupons.redeem(purchase_id)
        except StateError as e:
            logger.warning(e.message, extra={"purchase_id": purchase_id, "error_code": e.code})
            raise
        logger.info("Coupon redeemed", extra={"purchase_id": purchase_id, "coupon_id": coupon.id})
        return RedemptionResult(
            coupon=coupon, bill_number=purchase.bill_number, message="Coupon redeemed"
        )

    def list_coupons_for_user(self, owner_id: int) -> list[Coupon]:
        return self.storage.coupons.get_by_user(owner_id)

    def list_all_coupons(self) -> list[Coupon]:
        return self.storage.coupons.list_all()

    def coupon_report(self) -> list[CouponView]:
        views = []
        for coupon in self.storage.coupons.list_all():
            purchase = self.storage.purchases.get_by_id(coupon.purchase_id)
            if purchase is None:
                continue
            owner = self.storage.users.get_user_by_id(purchase.owner_id)
            views.append(CouponView(
                coupon=coupon,
                bill_number=purchase.bill_number,
                owner_id=purchase.owner_id,
                owner_username=owner.username if owner else None,
            ))
        views.sort(key=lambda v: (v.coupon.created_at, v.coupon.id), reverse=True)
        return views

    def stats(self) -> StatsResponse:
        purchases = self.storage.purchases.list_all()
        coupons = self.storage.coupons.list_all()
        verified = sum(1 for p in purchases if p.is_verified())
        return StatsResponse(
            user_count=self.storage.users.count(),
            purchase_count=len(purchases),
            pending_count=len(purchases) - verified,
            verified_count=verified,
            coupon_count=len(coupons),
            redeemed_count=sum(1 for c in coupons if c.status == CouponStatus.REDEEMED),
        )

    def _seed_admin(self) -> None:
        username = self.settings.admin_username
        if self.storage.users.get_user_by_username(username):
            return
        self.register_user(
            username=username,
            password=self.settings.admin_password,
            name="Admin User",
            address="Admin Address",
            phone="1234567890",
            is_admin=True,
        )
