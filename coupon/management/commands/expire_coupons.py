import logging

from django.core.management.base import BaseCommand
from django.db import transaction
from django.utils import timezone

from coupon.models import CouponCode, MemberCoupon

logger = logging.getLogger(__name__)


class Command(BaseCommand):
    help = "사용 기간이 끝난 쿠폰 코드 / 회원 쿠폰의 status 를 expired 로 기록합니다."

    def add_arguments(self, parser):
        parser.add_argument(
            "--dry-run",
            action="store_true",
            help="변경하지 않고 대상 건수만 출력",
        )

    def handle(self, *args, **options):
        now = timezone.now()

        if options["dry_run"]:
            codes = CouponCode.objects.overdue(now).count()
            member_coupons = MemberCoupon.objects.overdue(now).count()
            self.stdout.write(f"[dry-run] 만료 대상 코드 {codes}건, 회원 쿠폰 {member_coupons}건")
            return

        with transaction.atomic():
            codes = CouponCode.objects.expire_overdue(now)
            member_coupons = MemberCoupon.objects.expire_overdue(now)

        logger.info(f"[expire_coupons] codes={codes}, member_coupons={member_coupons}")
        self.stdout.write(self.style.SUCCESS(
            f"코드 {codes}건, 회원 쿠폰 {member_coupons}건 만료 처리 완료"
        ))
