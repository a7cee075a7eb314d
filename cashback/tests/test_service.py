"""
Unit Tests for the Cashback Service

Tests cover:
1. Purchase submission through the service
2. Verification flow and default cashback
3. Idempotent re-verification
4. Redemption flow
5. Per-user coupon visibility
6. Concurrent submissions, verifications and redemptions
"""

import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import date
from decimal import Decimal

import pytest

from cashback.config import Settings
from cashback.errors import (
    AlreadyRedeemedError,
    ConflictError,
    CouponNotFoundError,
    InputValidationError,
    InvalidAmountError,
    NotFoundError,
    PurchaseNotFoundError,
    StateError,
    UserNotFoundError,
)
from cashback.models import CouponStatus, VerificationStatus
from cashback.service import CashbackService, sort_for_review
from cashback.storage import CashbackStorage

TODAY = date(2024, 6, 1)


class TestSubmitPurchase:
    """Tests for purchase submission."""

    def test_submit_purchase(self, service, alice):
        purchase = service.create_purchase(alice.id, "B1", Decimal("1000"), TODAY)

        assert purchase.owner_id == alice.id
        assert purchase.verification_status == VerificationStatus.PENDING

    def test_duplicate_bill_number_is_conflict(self, service, alice, bob):
        service.create_purchase(alice.id, "B1", Decimal("1000"), TODAY)

        with pytest.raises(ConflictError):
            service.create_purchase(bob.id, "B1", Decimal("20"), TODAY)

    def test_negative_amount_leaves_ledger_untouched(self, service, alice):
        before = len(service.list_purchases())

        with pytest.raises(InputValidationError):
            service.create_purchase(alice.id, "B1", Decimal("-5"), TODAY)

        assert len(service.list_purchases()) == before

    def test_unknown_owner_rejected(self, service):
        with pytest.raises(UserNotFoundError):
            service.create_purchase(99, "B1", Decimal("100"), TODAY)

    def test_list_purchases_by_owner(self, service, alice, bob):
        service.create_purchase(alice.id, "B1", Decimal("100"), TODAY)
        service.create_purchase(bob.id, "B2", Decimal("100"), TODAY)

        assert [p.bill_number for p in service.list_purchases(alice.id)] == ["B1"]
        assert len(service.list_purchases()) == 2


class TestVerifyFlow:
    """Tests for verification and coupon issuance."""

    def test_full_lifecycle(self, service, alice):
        purchase = service.create_purchase(alice.id, "B1", Decimal("1000"), TODAY)

        verified = service.verify_purchase(purchase.id)
        assert service.get_purchase(purchase.id).verification_status == VerificationStatus.VERIFIED
        assert verified.bill_number == "B1"
        assert verified.coupon.amount == Decimal("40")
        assert len(verified.coupon.code) == 16

        adjusted = service.verify_purchase(purchase.id, Decimal("75"))
        assert adjusted.coupon.code == verified.coupon.code
        assert adjusted.coupon.amount == Decimal("75")
        assert "updated" in adjusted.message.lower()

        redeemed = service.redeem_coupon(purchase.id)
        assert redeemed.coupon.status == CouponStatus.REDEEMED
        assert redeemed.coupon.amount == Decimal("75")
        assert redeemed.bill_number == "B1"

        with pytest.raises(StateError):
            service.redeem_coupon(purchase.id)

    def test_default_cashback_rounds_to_cents(self, service, alice):
        purchase = service.create_purchase(alice.id, "B1", Decimal("123.45"), TODAY)

        result = service.verify_purchase(purchase.id)

        # 4% of 123.45 = 4.938
        assert result.coupon.amount == Decimal("4.94")

    def test_default_percentage_is_configurable(self, storage, alice):
        service = CashbackService(
            storage=storage,
            settings=Settings(seed_admin=False, default_cashback_percent=Decimal("10")),
        )
        purchase = service.create_purchase(alice.id, "B1", Decimal("1000"), TODAY)

        result = service.verify_purchase(purchase.id)

        assert result.coupon.amount == Decimal("100.00")

    def test_explicit_amount_overrides_default(self, service, alice):
        purchase = service.create_purchase(alice.id, "B1", Decimal("1000"), TODAY)

        result = service.verify_purchase(purchase.id, "12.5")

        assert result.coupon.amount == Decimal("12.50")

    def test_repeated_verify_keeps_single_coupon(self, service, alice):
        purchase = service.create_purchase(alice.id, "B1", Decimal("1000"), TODAY)

        codes = {service.verify_purchase(purchase.id, Decimal(a)).coupon.code for a in ("1", "2", "3")}

        assert len(codes) == 1
        assert len(service.list_all_coupons()) == 1
        assert service.list_all_coupons()[0].amount == Decimal("3.00")

    def test_negative_explicit_amount_leaves_purchase_pending(self, service, alice):
        purchase = service.create_purchase(alice.id, "B1", Decimal("1000"), TODAY)

        with pytest.raises(InvalidAmountError):
            service.verify_purchase(purchase.id, Decimal("-1"))

        assert service.get_purchase(purchase.id).verification_status == VerificationStatus.PENDING
        assert service.list_all_coupons() == []

    def test_oversized_default_cashback_leaves_purchase_pending(self, service, alice):
        purchase = service.create_purchase(alice.id, "B1", Decimal("1e30"), TODAY)

        with pytest.raises(InvalidAmountError):
            service.verify_purchase(purchase.id)

        assert service.get_purchase(purchase.id).verification_status == VerificationStatus.PENDING
        assert service.list_all_coupons() == []

    def test_oversized_explicit_amount_leaves_purchase_pending(self, service, alice):
        purchase = service.create_purchase(alice.id, "B1", Decimal("100"), TODAY)

        with pytest.raises(InvalidAmountError):
            service.verify_purchase(purchase.id, Decimal("1e27"))

        assert service.get_purchase(purchase.id).verification_status == VerificationStatus.PENDING
        assert service.list_all_coupons() == []

    def test_verify_unknown_purchase(self, service):
        with pytest.raises(PurchaseNotFoundError):
            service.verify_purchase(404)

    def test_verify_after_redeem_is_rejected(self, service, alice):
        purchase = service.create_purchase(alice.id, "B1", Decimal("1000"), TODAY)
        service.verify_purchase(purchase.id)
        service.redeem_coupon(purchase.id)

        with pytest.raises(AlreadyRedeemedError):
            service.verify_purchase(purchase.id, Decimal("500"))

        assert service.list_all_coupons()[0].amount == Decimal("40.00")

    def test_verify_heals_missing_coupon(self, service, storage, alice):
        purchase = service.create_purchase(alice.id, "B1", Decimal("1000"), TODAY)
        # Verified without a coupon, as if the process died between the two steps
        storage.purchases.mark_verified(purchase.id)

        result = service.verify_purchase(purchase.id)

        assert result.coupon.amount == Decimal("40.00")


class TestRedeemFlow:
    """Tests for coupon redemption."""

    def test_redeem_unknown_purchase(self, service):
        with pytest.raises(PurchaseNotFoundError):
            service.redeem_coupon(1)

    def test_redeem_pending_purchase_has_no_coupon(self, service, alice):
        purchase = service.create_purchase(alice.id, "B1", Decimal("1000"), TODAY)

        with pytest.raises(CouponNotFoundError) as exc_info:
            service.redeem_coupon(purchase.id)

        assert isinstance(exc_info.value, NotFoundError)
        assert not isinstance(exc_info.value, StateError)

    def test_already_redeemed_keeps_amount_and_code(self, service, alice):
        purchase = service.create_purchase(alice.id, "B1", Decimal("1000"), TODAY)
        issued = service.verify_purchase(purchase.id, Decimal("75")).coupon
        service.redeem_coupon(purchase.id)

        with pytest.raises(AlreadyRedeemedError):
            service.redeem_coupon(purchase.id)

        coupon = service.list_all_coupons()[0]
        assert coupon.code == issued.code
        assert coupon.amount == Decimal("75.00")


class TestCouponVisibility:
    """Tests for per-user coupon listings and reports."""

    def test_user_sees_only_own_verified_coupons(self, service, alice, bob):
        a1 = service.create_purchase(alice.id, "A1", Decimal("100"), TODAY)
        service.create_purchase(alice.id, "A2", Decimal("100"), TODAY)
        b1 = service.create_purchase(bob.id, "B1", Decimal("100"), TODAY)
        service.verify_purchase(a1.id)
        service.verify_purchase(b1.id)

        alice_coupons = service.list_coupons_for_user(alice.id)
        bob_coupons = service.list_coupons_for_user(bob.id)

        assert [c.purchase_id for c in alice_coupons] == [a1.id]
        assert [c.purchase_id for c in bob_coupons] == [b1.id]

    def test_coupon_report_attributes_owner(self, service, alice):
        purchase = service.create_purchase(alice.id, "A1", Decimal("100"), TODAY)
        service.verify_purchase(purchase.id)

        report = service.coupon_report()

        assert len(report) == 1
        assert report[0].bill_number == "A1"
        assert report[0].owner_username == "alice"

    def test_stats(self, service, alice):
        p1 = service.create_purchase(alice.id, "A1", Decimal("100"), TODAY)
        service.create_purchase(alice.id, "A2", Decimal("100"), TODAY)
        service.verify_purchase(p1.id)
        service.redeem_coupon(p1.id)

        stats = service.stats()

        assert stats.user_count == 1
        assert stats.purchase_count == 2
        assert stats.pending_count == 1
        assert stats.verified_count == 1
        assert stats.coupon_count == 1
        assert stats.redeemed_count == 1

    def test_sort_for_review(self, service, alice):
        p1 = service.create_purchase(alice.id, "A1", Decimal("100"), TODAY)
        p2 = service.create_purchase(alice.id, "A2", Decimal("100"), TODAY)
        p3 = service.create_purchase(alice.id, "A3", Decimal("100"), TODAY)
        service.verify_purchase(p3.id)

        ordered = sort_for_review(service.list_purchases())

        assert [p.id for p in ordered] == [p2.id, p1.id, p3.id]


class TestUsers:
    """Tests for registration, authentication and admin seeding."""

    def test_register_and_authenticate(self, service):
        user = service.register_user("carol", "pw-123456", "Carol", "2 Side St", "9123456780")

        assert user.credential_hash != "pw-123456"
        assert service.authenticate("carol", "pw-123456").id == user.id
        assert service.authenticate("carol", "wrong") is None
        assert service.authenticate("nobody", "pw-123456") is None

    def test_seeded_admin(self, storage):
        service = CashbackService(
            storage=storage,
            settings=Settings(seed_admin=True, admin_username="root", admin_password="toor-pass"),
        )

        admin = service.get_user_by_username("root")
        assert admin.is_admin is True
        assert service.authenticate("root", "toor-pass") is not None

        # A second service over the same storage does not seed twice
        CashbackService(
            storage=storage,
            settings=Settings(seed_admin=True, admin_username="root", admin_password="toor-pass"),
        )
        assert service.user_count() == 1

    def test_duplicate_username_is_conflict(self, service, alice, profile):
        with pytest.raises(ConflictError):
            service.create_user(profile("alice"))


class TestConcurrency:
    """Tests for racing writers on the same entity."""

    WORKERS = 16

    def _race(self, fn):
        barrier = threading.Barrier(self.WORKERS)
        results, errors = [], []
        lock = threading.Lock()

        def run(i):
            barrier.wait()
            try:
                value = fn(i)
            except Exception as e:
                with lock:
                    errors.append(e)
            else:
                with lock:
                    results.append(value)

        with ThreadPoolExecutor(max_workers=self.WORKERS) as pool:
            list(pool.map(run, range(self.WORKERS)))
        return results, errors

    def test_concurrent_same_bill_number(self, service, alice):
        results, errors = self._race(
            lambda i: service.create_purchase(alice.id, "B1", Decimal(100 + i), TODAY)
        )

        assert len(results) == 1
        assert len(errors) == self.WORKERS - 1
        assert all(isinstance(e, ConflictError) for e in errors)
        assert len(service.list_purchases()) == 1

    def test_concurrent_verify_issues_one_coupon(self, service, alice):
        purchase = service.create_purchase(alice.id, "B1", Decimal("1000"), TODAY)

        results, errors = self._race(lambda i: service.verify_purchase(purchase.id, Decimal(i)))

        assert errors == []
        assert len({r.coupon.code for r in results}) == 1
        assert sum(1 for r in results if "issued" in r.message) == 1
        assert len(service.list_all_coupons()) == 1

    def test_concurrent_redeem_succeeds_once(self, service, alice):
        purchase = service.create_purchase(alice.id, "B1", Decimal("1000"), TODAY)
        service.verify_purchase(purchase.id)

        results, errors = self._race(lambda i: service.redeem_coupon(purchase.id))

        assert len(results) == 1
        assert len(errors) == self.WORKERS - 1
        assert all(isinstance(e, AlreadyRedeemedError) for e in errors)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
