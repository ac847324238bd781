from datetime import timedelta
from decimal import Decimal

from django.contrib.auth import get_user_model
from django.test import TestCase
from django.urls import reverse
from django.utils import timezone
from rest_framework.test import APIClient

from coupon.models import Coupon, CouponCode, MemberCoupon
from member.models import Member

User = get_user_model()


class MemberSoftDeleteTest(TestCase):

    def setUp(self):
        self.member = Member.objects.create(name="홍길동", email="hong@example.com")

    def test_delete_is_soft(self):
        """삭제해도 row 는 남는다"""
        self.member.delete()
        self.assertFalse(Member.objects.filter(pk=self.member.pk).exists())
        self.assertTrue(Member.all_objects.filter(pk=self.member.pk).exists())
        self.assertTrue(self.member.is_deleted)

    def test_restore(self):
        self.member.delete()
        self.member.restore()
        self.assertTrue(Member.objects.filter(pk=self.member.pk).exists())

    def test_hard_delete_detaches_wallet(self):
        """회원을 완전히 지워도 회원 쿠폰은 member 만 비운 채 남는다"""
        coupon = Coupon.objects.create(
            name="웰컴", code="WELCOME", discount_amount=Decimal("1000"),
            start_at=timezone.now() - timedelta(days=1),
        )
        code = CouponCode.objects.create(coupon=coupon, code="HONG0001", member=self.member)
        member_coupon = MemberCoupon.objects.create(member=self.member, coupon_code=code)

        self.member.hard_delete()

        member_coupon.refresh_from_db()
        code.refresh_from_db()
        self.assertIsNone(member_coupon.member_id)
        self.assertIsNone(code.member_id)


class MemberCouponListAPITest(TestCase):

    def setUp(self):
        self.client = APIClient()
        staff = User.objects.create_user(username="admin", password="pw", is_staff=True)
        self.client.force_authenticate(user=staff)

        now = timezone.now()
        self.member = Member.objects.create(name="김철수", email="kim@example.com")
        coupon = Coupon.objects.create(
            name="가을 할인", code="AUTUMN", discount_amount=Decimal("2000"),
            start_at=now - timedelta(days=1),
        )
        self.codes = coupon.issue_codes(3, member=self.member)
        wallet = {mc.coupon_code_id: mc for mc in self.member.member_coupons.all()}
        self.used = wallet[self.codes[0].pk]
        self.used.use()
        self.expired = wallet[self.codes[1].pk]
        self.expired.mark_as_expired()
        self.usable = wallet[self.codes[2].pk]

    def test_all(self):
        url = reverse("member-coupon-list", args=[self.member.id])
        resp = self.client.get(url)
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.data["data"]["member"]["email"], "kim@example.com")
        self.assertEqual(len(resp.data["data"]["coupons"]), 3)

    def test_filter_by_status(self):
        url = reverse("member-coupon-list", args=[self.member.id])
        for status_param, expected in (
            ("usable", self.usable),
            ("used", self.used),
            ("expired", self.expired),
        ):
            resp = self.client.get(url, {"status": status_param})
            self.assertEqual(resp.status_code, 200)
            self.assertEqual([c["id"] for c in resp.data["data"]["coupons"]], [expected.id])

    def test_usable_entry(self):
        url = reverse("member-coupon-list", args=[self.member.id])
        resp = self.client.get(url, {"status": "usable"})
        entry = resp.data["data"]["coupons"][0]
        self.assertEqual(entry["coupon_name"], "가을 할인")
        self.assertEqual(entry["status_text"], "유효")
        self.assertTrue(entry["is_usable"])

    def test_invalid_status(self):
        """지원하지 않는 status 값"""
        url = reverse("member-coupon-list", args=[self.member.id])
        resp = self.client.get(url, {"status": "gifted"})
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.data["status"], "fail")

    def test_deleted_member_not_found(self):
        self.member.delete()
        url = reverse("member-coupon-list", args=[self.member.id])
        resp = self.client.get(url)
        self.assertEqual(resp.status_code, 404)
