import io
import itertools
import threading
from datetime import datetime, timedelta, timezone as dt_timezone
from decimal import Decimal
from unittest.mock import patch

from django.contrib.auth import get_user_model
from django.core.management import call_command
from django.db import connection
from django.test import TestCase, TransactionTestCase, override_settings
from django.urls import reverse
from django.utils import timezone
from openpyxl import load_workbook
from rest_framework.test import APIClient, APITestCase

from coupon.models import Coupon, CouponCode, MemberCoupon
from coupon.transitions import (
    CodeEvent,
    CodeStatus,
    CouponRejected,
    MemberCouponStatus,
    RejectionReason,
    code_statuses_allowing,
    next_code_status,
)
from member.models import Member

User = get_user_model()

NOW = datetime(2025, 8, 1, 12, 0, tzinfo=dt_timezone.utc)
_seq = itertools.count(1)


def make_coupon(**kwargs):
    n = next(_seq)
    defaults = {
        "name": f"테스트쿠폰{n}",
        "code": f"TEST{n:04d}",
        "discount_amount": Decimal("1000.00"),
        "discount_type": Coupon.DiscountType.FIXED,
        "start_at": NOW - timedelta(days=1),
        "end_at": None,
        "max_usage": 0,
        "is_active": True,
    }
    defaults.update(kwargs)
    return Coupon.objects.create(**defaults)


def make_code(coupon, **kwargs):
    return CouponCode.objects.create(coupon=coupon, code=kwargs.pop("code", f"C{next(_seq):06d}"), **kwargs)


def make_member(**kwargs):
    n = next(_seq)
    defaults = {"name": f"회원{n}", "email": f"member{n}@example.com"}
    defaults.update(kwargs)
    return Member.objects.create(**defaults)


class CouponValidityTest(TestCase):

    def test_active_within_window(self):
        coupon = make_coupon(end_at=NOW + timedelta(days=1))
        self.assertTrue(coupon.is_currently_active(NOW))
        self.assertIsNone(coupon.rejection_reason(NOW))

    def test_inactive_flag(self):
        coupon = make_coupon(is_active=False)
        self.assertFalse(coupon.is_currently_active(NOW))
        self.assertEqual(coupon.rejection_reason(NOW), RejectionReason.INACTIVE)

    def test_before_start(self):
        coupon = make_coupon(start_at=NOW + timedelta(minutes=1))
        self.assertFalse(coupon.is_currently_active(NOW))
        self.assertEqual(coupon.rejection_reason(NOW), RejectionReason.NOT_YET_STARTED)

    def test_after_end(self):
        coupon = make_coupon(end_at=NOW - timedelta(seconds=1))
        self.assertFalse(coupon.is_currently_active(NOW))
        self.assertEqual(coupon.rejection_reason(NOW), RejectionReason.EXPIRED_COUPON)

    def test_window_bounds_are_inclusive(self):
        coupon = make_coupon(start_at=NOW, end_at=NOW)
        self.assertTrue(coupon.is_currently_active(NOW))

    def test_usage_limit_reached(self):
        """최대 사용 횟수 도달"""
        coupon = make_coupon(max_usage=3)
        Coupon.objects.filter(pk=coupon.pk).update(used_count=3)
        coupon.refresh_from_db()
        self.assertFalse(coupon.is_currently_active(NOW))
        self.assertEqual(coupon.rejection_reason(NOW), RejectionReason.USAGE_LIMIT_REACHED)

    def test_zero_max_usage_is_unlimited(self):
        """max_usage=0 은 무제한"""
        coupon = make_coupon(max_usage=0)
        Coupon.objects.filter(pk=coupon.pk).update(used_count=10_000)
        coupon.refresh_from_db()
        self.assertTrue(coupon.is_currently_active(NOW))
        self.assertEqual(coupon.usage_text, "10000/무제한")

    def test_percentage_discount(self):
        coupon = make_coupon(discount_type=Coupon.DiscountType.PERCENTAGE, discount_amount=Decimal("10"))
        self.assertEqual(coupon.get_discount_amount(Decimal("250.00")), Decimal("25.00"))

    def test_percentage_discount_rounds_to_two_places(self):
        coupon = make_coupon(discount_type=Coupon.DiscountType.PERCENTAGE, discount_amount=Decimal("15"))
        self.assertEqual(coupon.get_discount_amount(Decimal("33.33")), Decimal("5.00"))
        self.assertEqual(coupon.get_discount_amount(199.99), Decimal("30.00"))

    def test_fixed_discount_ignores_total(self):
        """정액 할인은 주문 금액보다 커도 그대로"""
        coupon = make_coupon(discount_amount=Decimal("5000.00"))
        self.assertEqual(coupon.get_discount_amount(Decimal("100")), Decimal("5000.00"))
        self.assertEqual(coupon.get_discount_amount(Decimal("999999")), Decimal("5000.00"))

    def test_minimum_amount_is_non_strict(self):
        coupon = make_coupon(minimum_amount=Decimal("300.00"))
        self.assertTrue(coupon.meets_minimum_amount(Decimal("300.00")))
        self.assertTrue(coupon.meets_minimum_amount(301))
        self.assertFalse(coupon.meets_minimum_amount(Decimal("299.99")))

    def test_discount_text(self):
        self.assertEqual(make_coupon(discount_amount=Decimal("1500")).discount_text, "1,500.00")
        percent = make_coupon(discount_type=Coupon.DiscountType.PERCENTAGE, discount_amount=Decimal("12.50"))
        self.assertEqual(percent.discount_text, "12.5%")

    def test_usable_queryset_matches_instance_check(self):
        ok = make_coupon()
        make_coupon(is_active=False)
        make_coupon(end_at=NOW - timedelta(days=1))
        make_coupon(start_at=NOW + timedelta(days=1))
        exhausted = make_coupon(max_usage=1)
        Coupon.objects.filter(pk=exhausted.pk).update(used_count=1)

        self.assertEqual(list(Coupon.objects.usable(NOW)), [ok])

    def test_soft_delete_and_restore(self):
        coupon = make_coupon()
        coupon.delete()
        self.assertFalse(Coupon.objects.filter(pk=coupon.pk).exists())
        self.assertTrue(Coupon.all_objects.filter(pk=coupon.pk).exists())

        coupon.restore()
        self.assertTrue(Coupon.objects.filter(pk=coupon.pk).exists())

    def test_queryset_delete_is_soft(self):
        make_coupon()
        make_coupon()
        Coupon.objects.all().delete()
        self.assertEqual(Coupon.objects.count(), 0)
        self.assertEqual(Coupon.all_objects.count(), 2)


class CouponCodeStateMachineTest(TestCase):

    def setUp(self):
        self.coupon = make_coupon()
        self.code = make_code(self.coupon)
        self.giver = make_member()
        self.receiver = make_member()

    def test_use_marks_used_and_increments_counter(self):
        self.assertTrue(self.code.use(NOW))

        self.code.refresh_from_db()
        self.coupon.refresh_from_db()
        self.assertEqual(self.code.status, CodeStatus.USED)
        self.assertEqual(self.code.used_at, NOW)
        self.assertEqual(self.coupon.used_count, 1)

    def test_use_twice_succeeds_once(self):
        """같은 코드 두 번 사용 → 두 번째는 거절, 카운트는 1"""
        self.assertTrue(self.code.use(NOW))
        self.assertFalse(self.code.use(NOW))

        self.coupon.refresh_from_db()
        self.assertEqual(self.coupon.used_count, 1)

    def test_use_refreshes_cached_coupon_counter(self):
        code = CouponCode.objects.select_related("coupon").get(pk=self.code.pk)
        self.assertTrue(code.use(NOW))
        self.assertEqual(code.coupon.used_count, 1)

    def test_single_use_coupon_scenario(self):
        """1회용 쿠폰: 첫 코드 사용 후 다른 코드는 거절"""
        coupon = make_coupon(max_usage=1)
        first = make_code(coupon)
        second = make_code(coupon)
        self.assertTrue(coupon.is_currently_active(NOW))

        self.assertTrue(first.use(NOW))
        coupon.refresh_from_db()
        self.assertEqual(coupon.used_count, 1)
        self.assertFalse(coupon.is_currently_active(NOW))

        self.assertFalse(second.use(NOW))
        second.refresh_from_db()
        coupon.refresh_from_db()
        self.assertEqual(second.status, CodeStatus.UNUSED)
        self.assertEqual(coupon.used_count, 1)

    def test_stale_copies_redeem_once(self):
        """같은 row 를 각각 로드한 인스턴스들로 동시에 사용"""
        copies = [CouponCode.objects.get(pk=self.code.pk) for _ in range(5)]
        results = [c.use(NOW) for c in copies]

        self.assertEqual(results.count(True), 1)
        self.coupon.refresh_from_db()
        self.assertEqual(self.coupon.used_count, 1)

    def test_stale_codes_cannot_overshoot_max_usage(self):
        coupon = make_coupon(max_usage=1)
        codes = [make_code(coupon) for _ in range(4)]
        # 모두 사용 전 상태로 로드된 인스턴스
        loaded = [CouponCode.objects.select_related("coupon").get(pk=c.pk) for c in codes]

        results = [c.use(NOW) for c in loaded]

        self.assertEqual(results.count(True), 1)
        coupon.refresh_from_db()
        self.assertEqual(coupon.used_count, 1)
        self.assertEqual(CouponCode.objects.filter(coupon=coupon, status=CodeStatus.USED).count(), 1)

    def test_use_on_expired_coupon_is_rejected_without_mutation(self):
        """기간 지난 쿠폰 코드 사용 시 아무것도 바뀌지 않음"""
        coupon = make_coupon(end_at=NOW - timedelta(days=1))
        code = make_code(coupon)

        self.assertFalse(code.use(NOW))

        code.refresh_from_db()
        coupon.refresh_from_db()
        self.assertEqual(code.status, CodeStatus.UNUSED)
        self.assertIsNone(code.used_at)
        self.assertEqual(coupon.used_count, 0)

    def test_gift_then_accept(self):
        self.assertTrue(self.code.gift(self.giver.pk, NOW))
        self.assertEqual(self.code.status, CodeStatus.GIFTED)
        self.assertEqual(self.code.gifted_by_member_id, self.giver.pk)
        self.assertEqual(self.code.gifted_at, NOW)

        later = NOW + timedelta(hours=1)
        self.assertTrue(self.code.accept(self.receiver, later))

        self.code.refresh_from_db()
        self.assertEqual(self.code.status, CodeStatus.GIFTED)
        self.assertEqual(self.code.member_id, self.receiver.pk)
        self.assertEqual(self.code.accepted_at, later)

    def test_gift_fails_on_gifted_or_used_code(self):
        self.assertTrue(self.code.gift(self.giver.pk, NOW))
        self.assertFalse(self.code.gift(self.receiver.pk, NOW))

        used = make_code(self.coupon)
        self.assertTrue(used.use(NOW))
        self.assertFalse(used.gift(self.giver.pk, NOW))
        used.refresh_from_db()
        self.assertEqual(used.status, CodeStatus.USED)
        self.assertIsNone(used.gifted_by_member_id)
        self.assertIsNone(used.gifted_at)

    def test_accept_requires_gifted_code(self):
        self.assertFalse(self.code.accept(self.receiver.pk, NOW))
        self.code.refresh_from_db()
        self.assertIsNone(self.code.member_id)
        self.assertIsNone(self.code.accepted_at)

    def test_accepted_gift_stays_gifted_and_unusable(self):
        """수락 후에도 gifted 상태라 사용 불가"""
        self.code.gift(self.giver.pk, NOW)
        self.code.accept(self.receiver.pk, NOW)

        self.assertFalse(self.code.is_usable(NOW))
        self.assertEqual(self.code.rejection_reason(NOW), RejectionReason.ALREADY_GIFTED)
        self.assertFalse(self.code.use(NOW))

    def test_usable_requires_live_coupon(self):
        self.assertTrue(self.code.is_usable(NOW))
        self.coupon.delete()
        code = CouponCode.objects.get(pk=self.code.pk)
        self.assertFalse(code.is_usable(NOW))
        self.assertEqual(code.rejection_reason(NOW), RejectionReason.MISSING_COUPON)
        self.assertFalse(code.use(NOW))

    def test_missing_coupon_is_unusable_and_expired(self):
        orphan = CouponCode(code="ORPHAN01")
        self.assertFalse(orphan.is_usable(NOW))
        self.assertTrue(orphan.is_expired(NOW))
        self.assertFalse(orphan.use(NOW))

    def test_is_expired_is_derived(self):
        coupon = make_coupon(end_at=NOW - timedelta(hours=1))
        code = make_code(coupon)
        self.assertTrue(code.is_expired(NOW))
        self.assertFalse(self.code.is_expired(NOW))
        code.refresh_from_db()
        self.assertEqual(code.status, CodeStatus.UNUSED)

    def test_status_text(self):
        self.assertEqual(self.code.status_text, "미사용")
        self.code.status = "bogus"
        self.assertEqual(self.code.status_text, "알 수 없음")

    def test_usable_queryset(self):
        used = make_code(self.coupon)
        used.use(NOW)
        dead_coupon_code = make_code(make_coupon(is_active=False))

        usable = CouponCode.objects.usable(NOW)
        self.assertIn(self.code, usable)
        self.assertNotIn(used, usable)
        self.assertNotIn(dead_coupon_code, usable)

    def test_claim_creates_wallet_entry_and_owner(self):
        member_coupon = self.code.claim(self.receiver)

        self.code.refresh_from_db()
        self.assertEqual(self.code.member_id, self.receiver.pk)
        self.assertEqual(member_coupon.status, MemberCouponStatus.ACTIVE)
        # 두 번 호출해도 하나만
        self.assertEqual(self.code.claim(self.receiver).pk, member_coupon.pk)
        self.assertEqual(MemberCoupon.objects.filter(coupon_code=self.code).count(), 1)

    def test_member_deletion_keeps_codes(self):
        self.code.gift(self.giver.pk, NOW)
        self.giver.hard_delete()

        self.code.refresh_from_db()
        self.assertIsNone(self.code.gifted_by_member_id)
        self.assertEqual(self.code.status, CodeStatus.GIFTED)

    def test_gift_to_unknown_member_is_rejected(self):
        """존재하지 않는 회원 id 로 선물 → False, 코드는 그대로"""
        self.assertFalse(self.code.gift(999999, NOW))

        self.code.refresh_from_db()
        self.assertEqual(self.code.status, CodeStatus.UNUSED)
        self.assertIsNone(self.code.gifted_by_member_id)
        self.assertIsNone(self.code.gifted_at)

    def test_accept_by_unknown_member_is_rejected(self):
        self.code.gift(self.giver.pk, NOW)
        self.assertFalse(self.code.accept(999999, NOW))

        self.code.refresh_from_db()
        self.assertIsNone(self.code.member_id)
        self.assertIsNone(self.code.accepted_at)

    def test_accept_by_deleted_member_is_rejected(self):
        self.code.gift(self.giver.pk, NOW)
        self.receiver.delete()
        self.assertFalse(self.code.accept(self.receiver, NOW))


class MemberCouponTest(TestCase):

    def setUp(self):
        self.member = make_member()
        self.coupon = make_coupon(
            discount_type=Coupon.DiscountType.PERCENTAGE,
            discount_amount=Decimal("10"),
            minimum_amount=Decimal("100"),
        )
        self.code = make_code(self.coupon, member=self.member)
        self.member_coupon = MemberCoupon.objects.create(member=self.member, coupon_code=self.code)

    def _fresh(self):
        return MemberCoupon.objects.select_related("coupon_code__coupon").get(pk=self.member_coupon.pk)

    def test_is_usable(self):
        self.assertTrue(self.member_coupon.is_usable(NOW))

    def test_not_usable_when_not_active(self):
        self.member_coupon.status = MemberCouponStatus.USED
        self.assertFalse(self.member_coupon.is_usable(NOW))

    def test_expired_at_must_be_in_future(self):
        self.member_coupon.expired_at = NOW + timedelta(days=1)
        self.assertTrue(self.member_coupon.is_usable(NOW))
        self.member_coupon.expired_at = NOW
        self.assertFalse(self.member_coupon.is_usable(NOW))
        self.assertEqual(self.member_coupon.rejection_reason(NOW), RejectionReason.MEMBER_COUPON_EXPIRED)

    def test_not_usable_when_code_used(self):
        self.code.use(NOW)
        self.assertFalse(self._fresh().is_usable(NOW))

    def test_use_moves_both_records_to_used(self):
        member_coupon = self._fresh()
        self.assertTrue(member_coupon.use(NOW))

        self.assertEqual(member_coupon.status, MemberCouponStatus.USED)
        self.assertEqual(member_coupon.coupon_code.status, CodeStatus.USED)
        self.assertEqual(member_coupon.coupon_code.coupon.used_count, 1)

        self.code.refresh_from_db()
        self.coupon.refresh_from_db()
        stored = MemberCoupon.objects.get(pk=member_coupon.pk)
        self.assertEqual(stored.status, MemberCouponStatus.USED)
        self.assertEqual(stored.used_at, NOW)
        self.assertEqual(self.code.status, CodeStatus.USED)
        self.assertEqual(self.code.used_at, NOW)
        self.assertEqual(self.coupon.used_count, 1)

    def test_use_twice_succeeds_once(self):
        self.assertTrue(self.member_coupon.use(NOW))
        self.assertFalse(self.member_coupon.use(NOW))
        self.coupon.refresh_from_db()
        self.assertEqual(self.coupon.used_count, 1)

    def test_use_on_ended_coupon_changes_nothing(self):
        """쿠폰 종료 후 회원 쿠폰 사용 → 거절, 세 레코드 모두 그대로"""
        Coupon.objects.filter(pk=self.coupon.pk).update(end_at=NOW - timedelta(days=1))
        member_coupon = self._fresh()

        self.assertFalse(member_coupon.use(NOW))

        self.assertEqual(member_coupon.status, MemberCouponStatus.ACTIVE)
        self.assertIsNone(member_coupon.used_at)
        stored = MemberCoupon.objects.get(pk=member_coupon.pk)
        self.assertEqual(stored.status, MemberCouponStatus.ACTIVE)
        self.assertIsNone(stored.used_at)
        self.code.refresh_from_db()
        self.coupon.refresh_from_db()
        self.assertEqual(self.code.status, CodeStatus.UNUSED)
        self.assertIsNone(self.code.used_at)
        self.assertEqual(self.coupon.used_count, 0)

    def test_use_rolls_back_code_when_wallet_update_fails(self):
        """코드 사용 후 실패하면 코드 / 카운트도 롤백"""
        real_redeem = CouponCode._redeem

        def redeem_then_fail(code_self, now):
            real_redeem(code_self, now)
            raise CouponRejected(RejectionReason.MEMBER_COUPON_INACTIVE)

        with patch.object(CouponCode, "_redeem", autospec=True, side_effect=redeem_then_fail):
            self.assertFalse(self.member_coupon.use(NOW))

        self.code.refresh_from_db()
        self.coupon.refresh_from_db()
        self.member_coupon.refresh_from_db()
        self.assertEqual(self.code.status, CodeStatus.UNUSED)
        self.assertEqual(self.coupon.used_count, 0)
        self.assertEqual(self.member_coupon.status, MemberCouponStatus.ACTIVE)

    def test_stale_wallet_copies_redeem_once(self):
        copies = [MemberCoupon.objects.get(pk=self.member_coupon.pk) for _ in range(3)]
        results = [c.use(NOW) for c in copies]
        self.assertEqual(results.count(True), 1)
        self.coupon.refresh_from_db()
        self.assertEqual(self.coupon.used_count, 1)

    def test_mark_as_expired_is_unconditional(self):
        self.member_coupon.use(NOW)
        later = NOW + timedelta(days=2)

        self.assertTrue(self.member_coupon.mark_as_expired(later))

        self.member_coupon.refresh_from_db()
        self.assertEqual(self.member_coupon.status, MemberCouponStatus.EXPIRED)
        self.assertEqual(self.member_coupon.expired_at, later)
        self.assertEqual(self.member_coupon.status_text, "만료됨")

    def test_discount_delegation(self):
        self.assertEqual(self.member_coupon.get_discount_amount(Decimal("250.00")), Decimal("25.00"))
        self.assertTrue(self.member_coupon.meets_minimum_amount(100))
        self.assertFalse(self.member_coupon.meets_minimum_amount(Decimal("99.99")))

    def test_missing_links_are_safe(self):
        orphan = MemberCoupon(member=self.member)
        self.assertFalse(orphan.is_usable(NOW))
        self.assertEqual(orphan.rejection_reason(NOW), RejectionReason.MISSING_CODE)
        self.assertEqual(orphan.get_discount_amount(Decimal("250")), Decimal("0"))
        self.assertFalse(orphan.meets_minimum_amount(Decimal("250")))
        self.assertIsNone(orphan.coupon)

    def test_member_wallet_accessors(self):
        other_code = make_code(self.coupon, member=self.member)
        used = MemberCoupon.objects.create(member=self.member, coupon_code=other_code)
        used.use(NOW)
        expired_code = make_code(self.coupon, member=self.member)
        expired = MemberCoupon.objects.create(member=self.member, coupon_code=expired_code)
        expired.mark_as_expired(NOW)

        self.assertEqual(list(self.member.usable_coupons(NOW)), [self.member_coupon])
        self.assertEqual(list(self.member.used_coupons()), [used])
        self.assertEqual(list(self.member.expired_coupons()), [expired])


class IssueAndSweepTest(TestCase):

    @override_settings(COUPON_CODE_LENGTH=10)
    def test_issue_codes(self):
        coupon = make_coupon()
        issued = coupon.issue_codes(5)

        self.assertEqual(len(issued), 5)
        self.assertEqual(len({c.code for c in issued}), 5)
        self.assertTrue(all(len(c.code) == 10 for c in issued))
        self.assertEqual(coupon.unused_codes().count(), 5)

    def test_issue_codes_to_member_fills_wallet(self):
        coupon = make_coupon()
        member = make_member()
        coupon.issue_codes(3, member=member, length=6)

        self.assertEqual(member.coupon_codes.count(), 3)
        self.assertEqual(member.usable_coupons(NOW).count(), 3)

    def test_expire_overdue_codes(self):
        now = timezone.now()
        ended = make_coupon(start_at=now - timedelta(days=10), end_at=now - timedelta(days=1))
        unused = make_code(ended)
        gifted = make_code(ended, status=CodeStatus.GIFTED)
        used = make_code(ended, status=CodeStatus.USED, used_at=now - timedelta(days=2))
        running = make_code(make_coupon(start_at=now - timedelta(days=1), end_at=now + timedelta(days=1)))

        self.assertEqual(CouponCode.objects.expire_overdue(now), 2)

        for code, expected in (
            (unused, CodeStatus.EXPIRED),
            (gifted, CodeStatus.EXPIRED),
            (used, CodeStatus.USED),
            (running, CodeStatus.UNUSED),
        ):
            code.refresh_from_db()
            self.assertEqual(code.status, expected)

    def test_expire_overdue_member_coupons(self):
        now = timezone.now()
        member = make_member()
        ended = make_coupon(start_at=now - timedelta(days=10), end_at=now - timedelta(days=1))
        running = make_coupon(start_at=now - timedelta(days=1))
        by_coupon = MemberCoupon.objects.create(member=member, coupon_code=make_code(ended))
        deadline = now - timedelta(hours=1)
        by_deadline = MemberCoupon.objects.create(
            member=member, coupon_code=make_code(running), expired_at=deadline
        )
        alive = MemberCoupon.objects.create(member=member, coupon_code=make_code(running))

        self.assertEqual(MemberCoupon.objects.expire_overdue(now), 2)

        by_coupon.refresh_from_db()
        by_deadline.refresh_from_db()
        alive.refresh_from_db()
        self.assertEqual(by_coupon.status, MemberCouponStatus.EXPIRED)
        self.assertEqual(by_coupon.expired_at, now)
        self.assertEqual(by_deadline.status, MemberCouponStatus.EXPIRED)
        self.assertEqual(by_deadline.expired_at, deadline)
        self.assertEqual(alive.status, MemberCouponStatus.ACTIVE)

    def test_expire_coupons_command(self):
        now = timezone.now()
        ended = make_coupon(start_at=now - timedelta(days=10), end_at=now - timedelta(days=1))
        code = make_code(ended)
        MemberCoupon.objects.create(member=make_member(), coupon_code=code)

        out = io.StringIO()
        call_command("expire_coupons", "--dry-run", stdout=out)
        self.assertIn("코드 1건", out.getvalue())
        code.refresh_from_db()
        self.assertEqual(code.status, CodeStatus.UNUSED)

        out = io.StringIO()
        call_command("expire_coupons", stdout=out)
        self.assertIn("코드 1건, 회원 쿠폰 1건", out.getvalue())
        code.refresh_from_db()
        self.assertEqual(code.status, CodeStatus.EXPIRED)


class TransitionTableTest(TestCase):

    def test_only_listed_transitions_are_allowed(self):
        self.assertEqual(next_code_status(CodeStatus.UNUSED, CodeEvent.USE), CodeStatus.USED)
        self.assertEqual(next_code_status(CodeStatus.GIFTED, CodeEvent.ACCEPT), CodeStatus.GIFTED)

        with self.assertRaises(CouponRejected) as ctx:
            next_code_status(CodeStatus.USED, CodeEvent.USE)
        self.assertEqual(ctx.exception.reason, RejectionReason.ALREADY_REDEEMED)

        with self.assertRaises(CouponRejected) as ctx:
            next_code_status(CodeStatus.UNUSED, CodeEvent.ACCEPT)
        self.assertEqual(ctx.exception.reason, RejectionReason.NOT_GIFTED)

    def test_expire_sources(self):
        self.assertEqual(
            set(code_statuses_allowing(CodeEvent.EXPIRE)),
            {CodeStatus.UNUSED, CodeStatus.GIFTED},
        )


class CouponAPITest(APITestCase):

    def setUp(self):
        self.staff = User.objects.create_user(username="admin", password="pw", is_staff=True)
        self.client = APIClient()
        self.client.force_authenticate(user=self.staff)
        now = timezone.now()
        self.coupon = make_coupon(
            start_at=now - timedelta(days=1),
            discount_type=Coupon.DiscountType.PERCENTAGE,
            discount_amount=Decimal("10"),
            minimum_amount=Decimal("100"),
        )
        self.code = make_code(self.coupon, code="APICODE1")
        self.member = make_member()
        self.other = make_member()

    def test_requires_staff(self):
        """관리자 아닌 사용자는 403"""
        user = User.objects.create_user(username="user", password="pw")
        client = APIClient()
        client.force_authenticate(user=user)
        resp = client.get(reverse("coupon-list-create"))
        self.assertEqual(resp.status_code, 403)

    def test_create_with_codes(self):
        now = timezone.now()
        resp = self.client.post(reverse("coupon-list-create"), {
            "name": "신규 가입 쿠폰",
            "code": "WELCOME",
            "discount_amount": "3000.00",
            "discount_type": "fixed",
            "max_usage": 100,
            "start_at": now.isoformat(),
            "issue_count": 3,
        }, format="json")

        self.assertEqual(resp.status_code, 201)
        self.assertEqual(len(resp.data["data"]["codes"]), 3)
        coupon = Coupon.objects.get(code="WELCOME")
        self.assertEqual(coupon.codes.count(), 3)
        self.assertEqual(coupon.used_count, 0)

    def test_create_rejects_end_before_start(self):
        now = timezone.now()
        resp = self.client.post(reverse("coupon-list-create"), {
            "name": "잘못된 쿠폰",
            "code": "BROKEN",
            "discount_amount": "10",
            "discount_type": "percentage",
            "start_at": now.isoformat(),
            "end_at": (now - timedelta(days=1)).isoformat(),
        }, format="json")
        self.assertEqual(resp.status_code, 400)
        self.assertIn("end_at", resp.data)

    def test_list_and_detail(self):
        resp = self.client.get(reverse("coupon-list-create"))
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.data["data"][0]["unused_count"], 1)
        self.assertTrue(resp.data["data"][0]["is_currently_active"])

        resp = self.client.get(reverse("coupon-detail", args=[self.coupon.id]))
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.data["data"]["usage_text"], "0/무제한")

    def test_delete_is_soft(self):
        resp = self.client.delete(reverse("coupon-detail", args=[self.coupon.id]))
        self.assertEqual(resp.status_code, 200)
        self.assertTrue(Coupon.all_objects.filter(pk=self.coupon.pk).exists())

        resp = self.client.get(reverse("coupon-detail", args=[self.coupon.id]))
        self.assertEqual(resp.status_code, 404)

    def test_code_list_filter(self):
        resp = self.client.get(reverse("coupon-code-list", args=[self.coupon.id]), {"status": "unused"})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual([c["code"] for c in resp.data["data"]], ["APICODE1"])

        resp = self.client.get(reverse("coupon-code-list", args=[self.coupon.id]), {"status": "nope"})
        self.assertEqual(resp.status_code, 400)

    def test_use_code_once(self):
        """코드 사용 성공 후 재사용은 409"""
        url = reverse("coupon-code-use", args=["apicode1"])
        resp = self.client.post(url)
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.data["data"]["status"], "used")

        resp = self.client.post(url)
        self.assertEqual(resp.status_code, 409)
        self.assertEqual(resp.data["reason"], "already_redeemed")

    def test_gift_and_accept_fill_wallet(self):
        resp = self.client.post(
            reverse("coupon-code-gift", args=["APICODE1"]), {"member_id": self.member.id}, format="json"
        )
        self.assertEqual(resp.status_code, 200)

        resp = self.client.post(
            reverse("coupon-code-gift", args=["APICODE1"]), {"member_id": self.member.id}, format="json"
        )
        self.assertEqual(resp.status_code, 409)
        self.assertEqual(resp.data["reason"], "already_gifted")

        resp = self.client.post(
            reverse("coupon-code-accept", args=["APICODE1"]), {"member_id": self.other.id}, format="json"
        )
        self.assertEqual(resp.status_code, 200)
        self.assertTrue(
            MemberCoupon.objects.filter(member=self.other, coupon_code=self.code).exists()
        )

    def test_accept_non_gifted_code(self):
        resp = self.client.post(
            reverse("coupon-code-accept", args=["APICODE1"]), {"member_id": self.other.id}, format="json"
        )
        self.assertEqual(resp.status_code, 409)
        self.assertEqual(resp.data["reason"], "not_gifted")
        self.assertFalse(MemberCoupon.objects.filter(member=self.other).exists())

    def test_gift_unknown_member(self):
        resp = self.client.post(
            reverse("coupon-code-gift", args=["APICODE1"]), {"member_id": 999999}, format="json"
        )
        self.assertEqual(resp.status_code, 400)

    def test_use_reports_reason_from_latest_state(self):
        """사용 직전에 다른 요청이 한도를 채웠으면 usage_limit_reached 로 응답"""
        coupon_pk = self.coupon.pk

        def limit_filled_elsewhere(code_self, now=None):
            Coupon.objects.filter(pk=coupon_pk).update(max_usage=1, used_count=1)
            return False

        with patch.object(CouponCode, "use", autospec=True, side_effect=limit_filled_elsewhere):
            resp = self.client.post(reverse("coupon-code-use", args=["APICODE1"]))

        self.assertEqual(resp.status_code, 409)
        self.assertEqual(resp.data["reason"], "usage_limit_reached")

    def test_member_coupon_use_reports_reason_from_latest_state(self):
        member_coupon = MemberCoupon.objects.create(member=self.member, coupon_code=self.code)
        coupon_pk = self.coupon.pk

        def ended_elsewhere(mc_self, now=None):
            Coupon.objects.filter(pk=coupon_pk).update(is_active=False)
            return False

        with patch.object(MemberCoupon, "use", autospec=True, side_effect=ended_elsewhere):
            resp = self.client.post(reverse("member-coupon-use", args=[member_coupon.id]))

        self.assertEqual(resp.status_code, 409)
        self.assertEqual(resp.data["reason"], "inactive")

    def test_member_coupon_use_with_discount(self):
        member_coupon = MemberCoupon.objects.create(member=self.member, coupon_code=self.code)
        resp = self.client.post(
            reverse("member-coupon-use", args=[member_coupon.id]), {"total_amount": "250.00"}, format="json"
        )
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.data["data"]["discount_amount"], "25.00")
        self.assertEqual(resp.data["data"]["payable_amount"], "225.00")
        self.code.refresh_from_db()
        self.assertEqual(self.code.status, CodeStatus.USED)

    def test_member_coupon_use_below_minimum(self):
        """최소 주문 금액 미달"""
        member_coupon = MemberCoupon.objects.create(member=self.member, coupon_code=self.code)
        resp = self.client.post(
            reverse("member-coupon-use", args=[member_coupon.id]), {"total_amount": "50.00"}, format="json"
        )
        self.assertEqual(resp.status_code, 409)
        self.assertEqual(resp.data["reason"], "below_minimum_amount")
        member_coupon.refresh_from_db()
        self.assertEqual(member_coupon.status, MemberCouponStatus.ACTIVE)

    def test_member_coupon_expire(self):
        member_coupon = MemberCoupon.objects.create(member=self.member, coupon_code=self.code)
        resp = self.client.post(reverse("member-coupon-expire", args=[member_coupon.id]))
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.data["data"]["status"], "expired")

    def test_export_codes(self):
        self.code.gift(self.member.pk)
        resp = self.client.get(reverse("coupon-code-export", args=[self.coupon.id]))
        self.assertEqual(resp.status_code, 200)
        self.assertIn("attachment;", resp["Content-Disposition"])

        wb = load_workbook(io.BytesIO(resp.content))
        ws = wb["coupon_codes"]
        self.assertEqual(ws.cell(row=1, column=1).value, "코드")
        self.assertEqual(ws.cell(row=2, column=1).value, "APICODE1")
        self.assertEqual(ws.cell(row=2, column=2).value, "선물됨")


class ConcurrentRedeemTest(TransactionTestCase):
    """
    스레드 여러 개가 동시에 사용 요청.
    테스트 DB 는 파일이라 스레드마다 별도 커넥션으로 같은 DB 를 본다.
    """
    THREADS = 8

    def _run_concurrently(self, targets):
        barrier = threading.Barrier(len(targets))
        lock = threading.Lock()
        results, errors = [], []

        def worker(obj):
            try:
                barrier.wait()
                ok = obj.use()
                with lock:
                    results.append(ok)
            except Exception as e:
                with lock:
                    errors.append(repr(e))
            finally:
                connection.close()

        threads = [threading.Thread(target=worker, args=(t,)) for t in targets]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        return results, errors

    def _assert_single_success(self, results, errors):
        self.assertEqual(errors, [])
        self.assertEqual(results.count(True), 1)
        self.assertEqual(results.count(False), self.THREADS - 1)

    def test_same_code_used_concurrently(self):
        coupon = make_coupon(start_at=timezone.now() - timedelta(days=1), max_usage=1)
        code = make_code(coupon)
        copies = [CouponCode.objects.get(pk=code.pk) for _ in range(self.THREADS)]

        results, errors = self._run_concurrently(copies)

        self._assert_single_success(results, errors)
        coupon.refresh_from_db()
        code.refresh_from_db()
        self.assertEqual(coupon.used_count, 1)
        self.assertEqual(code.status, CodeStatus.USED)

    def test_single_use_coupon_with_many_codes(self):
        """max_usage=1 쿠폰의 서로 다른 코드들을 동시에 사용"""
        coupon = make_coupon(start_at=timezone.now() - timedelta(days=1), max_usage=1)
        codes = [make_code(coupon) for _ in range(self.THREADS)]

        results, errors = self._run_concurrently(codes)

        self._assert_single_success(results, errors)
        coupon.refresh_from_db()
        self.assertEqual(coupon.used_count, 1)
        self.assertEqual(CouponCode.objects.filter(coupon=coupon, status=CodeStatus.USED).count(), 1)

    def test_same_member_coupon_used_concurrently(self):
        coupon = make_coupon(start_at=timezone.now() - timedelta(days=1))
        member = make_member()
        code = make_code(coupon, member=member)
        member_coupon = MemberCoupon.objects.create(member=member, coupon_code=code)
        copies = [MemberCoupon.objects.get(pk=member_coupon.pk) for _ in range(self.THREADS)]

        results, errors = self._run_concurrently(copies)

        self._assert_single_success(results, errors)
        coupon.refresh_from_db()
        code.refresh_from_db()
        member_coupon.refresh_from_db()
        self.assertEqual(coupon.used_count, 1)
        self.assertEqual(code.status, CodeStatus.USED)
        self.assertEqual(member_coupon.status, MemberCouponStatus.USED)
