import logging
from decimal import Decimal, ROUND_HALF_UP

from django.conf import settings
from django.db import models, transaction
from django.db.models import F, Q
from django.utils import timezone

from member.models import Member
from project.softdelete import (
    AllObjectsManager,
    SoftDeleteManager,
    SoftDeleteModel,
    SoftDeleteQuerySet,
)
from .transitions import (
    CODE_STATUS_REASONS,
    CodeEvent,
    CodeStatus,
    CouponRejected,
    MemberCouponEvent,
    MemberCouponStatus,
    RejectionReason,
    code_statuses_allowing,
    next_code_status,
    next_member_coupon_status,
)

logger = logging.getLogger(__name__)

TWO_PLACES = Decimal("0.01")
UNKNOWN_STATUS_TEXT = "알 수 없음"


def _resolve_now(now):
    return now if now is not None else timezone.now()


def _to_decimal(value):
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


# -------- Coupon --------
class CouponQuerySet(SoftDeleteQuerySet):
    def active(self):
        return self.filter(is_active=True)

    def valid(self, now=None):
        """활성화 + 사용 기간 안"""
        now = _resolve_now(now)
        return self.filter(is_active=True, start_at__lte=now).filter(
            Q(end_at__isnull=True) | Q(end_at__gte=now)
        )

    def available(self):
        """사용 한도 미도달 (max_usage=0 은 무제한)"""
        return self.filter(Q(max_usage=0) | Q(used_count__lt=F("max_usage")))

    def usable(self, now=None):
        return self.valid(now).available()


class Coupon(SoftDeleteModel):
    class DiscountType(models.TextChoices):
        FIXED = "fixed", "정액"
        PERCENTAGE = "percentage", "정률(%)"

    name = models.CharField(max_length=100)
    code = models.CharField(max_length=50, unique=True)
    description = models.TextField(blank=True, null=True)
    discount_amount = models.DecimalField(max_digits=10, decimal_places=2)
    discount_type = models.CharField(
        max_length=20, choices=DiscountType.choices, default=DiscountType.FIXED
    )
    minimum_amount = models.DecimalField(max_digits=10, decimal_places=2, default=Decimal("0.00"))
    max_usage = models.PositiveIntegerField(default=0, help_text="최대 사용 횟수 (0 이면 무제한)")
    # 코드 사용 시에만 증가, 운영자가 직접 수정하지 않음
    used_count = models.PositiveIntegerField(default=0, editable=False)
    start_at = models.DateTimeField()
    end_at = models.DateTimeField(null=True, blank=True)
    is_active = models.BooleanField(default=True)

    objects = SoftDeleteManager.from_queryset(CouponQuerySet)()
    all_objects = AllObjectsManager.from_queryset(CouponQuerySet)()

    class Meta:
        db_table = "coupons"
        ordering = ["-created_at", "-id"]
        indexes = [
            models.Index(fields=["is_active", "start_at", "end_at"], name="coupons_active_window_idx"),
        ]

    def __str__(self):
        return f"{self.name} ({self.code})"

    def rejection_reason(self, now=None):
        """사용 불가 사유. 사용 가능하면 None"""
        now = _resolve_now(now)
        if not self.is_active:
            return RejectionReason.INACTIVE
        if now < self.start_at:
            return RejectionReason.NOT_YET_STARTED
        if self.end_at and now > self.end_at:
            return RejectionReason.EXPIRED_COUPON
        if self.max_usage > 0 and self.used_count >= self.max_usage:
            return RejectionReason.USAGE_LIMIT_REACHED
        return None

    def is_currently_active(self, now=None):
        return self.rejection_reason(now) is None

    def is_percentage_discount(self):
        return self.discount_type == self.DiscountType.PERCENTAGE

    def get_discount_amount(self, total_amount=0):
        # 정액 할인은 주문 금액으로 자르지 않는다
        if self.is_percentage_discount():
            discount = _to_decimal(total_amount) * _to_decimal(self.discount_amount) / Decimal("100")
            return discount.quantize(TWO_PLACES, rounding=ROUND_HALF_UP)
        return _to_decimal(self.discount_amount)

    def meets_minimum_amount(self, total_amount):
        return _to_decimal(total_amount) >= _to_decimal(self.minimum_amount)

    @property
    def usage_text(self):
        limit = self.max_usage if self.max_usage > 0 else "무제한"
        return f"{self.used_count}/{limit}"

    @property
    def discount_text(self):
        if self.is_percentage_discount():
            return f"{_to_decimal(self.discount_amount).normalize():f}%"
        return f"{_to_decimal(self.discount_amount):,.2f}"

    def unused_codes(self):
        return self.codes.unused()

    def used_codes(self):
        return self.codes.used()

    def issue_codes(self, count, member=None, length=None):
        """
        미사용 코드 count 개 발급.
        member 가 주어지면 해당 회원 소유로 만들고 MemberCoupon 도 같이 생성.
        """
        from .utils import generate_unique_codes

        length = length or settings.COUPON_CODE_LENGTH
        with transaction.atomic():
            codes = generate_unique_codes(n=count, length=length)
            CouponCode.objects.bulk_create(
                [CouponCode(coupon=self, code=c, member=member) for c in codes],
                batch_size=1000,
            )
            issued = list(CouponCode.objects.filter(coupon=self, code__in=codes).order_by("id"))
            if member is not None:
                MemberCoupon.objects.bulk_create(
                    [MemberCoupon(member=member, coupon_code=cc) for cc in issued],
                    batch_size=1000,
                )
        logger.info(
            f"[Coupon.issue_codes] coupon={self.pk} {len(issued)}개 발급"
            + (f" → member={member.pk}" if member is not None else "")
        )
        return issued


# -------- CouponCode --------
class CouponCodeQuerySet(SoftDeleteQuerySet):
    def unused(self):
        return self.filter(status=CodeStatus.UNUSED)

    def used(self):
        return self.filter(status=CodeStatus.USED)

    def gifted(self):
        return self.filter(status=CodeStatus.GIFTED)

    def usable(self, now=None):
        now = _resolve_now(now)
        return self.filter(status=CodeStatus.UNUSED, coupon__in=Coupon.objects.usable(now))

    def overdue(self, now=None):
        """쿠폰 사용 기간이 끝났는데 아직 expired 로 기록되지 않은 코드"""
        now = _resolve_now(now)
        return self.filter(
            status__in=code_statuses_allowing(CodeEvent.EXPIRE),
            coupon__end_at__isnull=False,
            coupon__end_at__lt=now,
        )

    def expire_overdue(self, now=None):
        now = _resolve_now(now)
        count = self.overdue(now).update(status=CodeStatus.EXPIRED, updated_at=now)
        if count:
            logger.info(f"[CouponCode.expire_overdue] {count}개 코드 만료 처리")
        return count


class CouponCode(SoftDeleteModel):
    Status = CodeStatus

    coupon = models.ForeignKey(Coupon, on_delete=models.CASCADE, related_name="codes")
    code = models.CharField(max_length=32, unique=True)
    member = models.ForeignKey(
        Member, null=True, blank=True, on_delete=models.SET_NULL, related_name="coupon_codes"
    )
    gifted_by_member = models.ForeignKey(
        Member, null=True, blank=True, on_delete=models.SET_NULL, related_name="gifted_coupon_codes"
    )
    status = models.CharField(max_length=10, choices=CodeStatus.choices, default=CodeStatus.UNUSED)
    used_at = models.DateTimeField(null=True, blank=True)
    gifted_at = models.DateTimeField(null=True, blank=True)
    accepted_at = models.DateTimeField(null=True, blank=True)

    objects = SoftDeleteManager.from_queryset(CouponCodeQuerySet)()
    all_objects = AllObjectsManager.from_queryset(CouponCodeQuerySet)()

    class Meta:
        db_table = "coupon_codes"
        ordering = ["id"]
        indexes = [
            models.Index(fields=["coupon", "status"], name="coupon_codes_coupon_status"),
            models.Index(fields=["member", "status"], name="coupon_codes_member_status"),
        ]

    def __str__(self):
        return self.code

    def _live_coupon(self):
        """연결된 쿠폰. 없거나 소프트 삭제됐으면 None"""
        if self.coupon_id is None:
            return None
        coupon = self.coupon
        if coupon is None or coupon.is_deleted:
            return None
        return coupon

    @property
    def status_text(self):
        try:
            return CodeStatus(self.status).label
        except ValueError:
            return UNKNOWN_STATUS_TEXT

    def rejection_reason(self, now=None):
        if self.status != CodeStatus.UNUSED:
            return CODE_STATUS_REASONS.get(self.status, RejectionReason.CODE_EXPIRED)
        coupon = self._live_coupon()
        if coupon is None:
            return RejectionReason.MISSING_COUPON
        return coupon.rejection_reason(now)

    def is_usable(self, now=None):
        return self.rejection_reason(now) is None

    def is_expired(self, now=None):
        """계산된 만료 여부. status 는 건드리지 않는다 (기록은 expire_coupons 커맨드)"""
        coupon = self._live_coupon()
        if coupon is None:
            return True
        return bool(coupon.end_at and _resolve_now(now) > coupon.end_at)

    # ---- 상태 전이 ----
    def _lock(self):
        locked = (
            CouponCode.objects.select_for_update()
            .filter(pk=self.pk)
            .first()
        )
        if locked is None:
            raise CouponRejected(RejectionReason.MISSING_CODE)
        return locked

    def _redeem(self, now):
        """
        코드 used 처리 + 쿠폰 used_count 증가.
        transaction.atomic 안에서만 호출. 잠근 row 기준으로 가드를 다시 확인하므로
        오래된 인스턴스로 동시에 호출해도 한 번만 성공한다.
        성공 시 인스턴스에 반영할 변경값을 돌려준다.
        """
        locked = self._lock()
        target = next_code_status(locked.status, CodeEvent.USE)

        coupon = Coupon.objects.select_for_update().filter(pk=locked.coupon_id).first()
        if coupon is None:
            raise CouponRejected(RejectionReason.MISSING_COUPON)
        reason = coupon.rejection_reason(now)
        if reason is not None:
            raise CouponRejected(reason)

        # 한도 조건을 건 채로 증가 → read-modify-write 없음
        incremented = (
            Coupon.objects.filter(pk=coupon.pk)
            .available()
            .update(used_count=F("used_count") + 1, updated_at=now)
        )
        if not incremented:
            raise CouponRejected(RejectionReason.USAGE_LIMIT_REACHED)

        swapped = CouponCode.objects.filter(pk=locked.pk, status=locked.status).update(
            status=target, used_at=now, updated_at=now
        )
        if not swapped:
            raise CouponRejected(RejectionReason.ALREADY_REDEEMED)
        return {"status": target, "used_at": now}

    def _apply(self, changes):
        for field, value in changes.items():
            setattr(self, field, value)
        if "used_at" in changes and CouponCode.coupon.is_cached(self):
            self.coupon.refresh_from_db(fields=["used_count", "updated_at"])

    def use(self, now=None):
        now = _resolve_now(now)
        try:
            with transaction.atomic():
                changes = self._redeem(now)
        except CouponRejected as e:
            logger.info(f"[CouponCode.use] #{self.pk} {self.code} 거절: {e.reason.value}")
            return False
        self._apply(changes)
        logger.info(f"[CouponCode.use] #{self.pk} {self.code} 사용 완료 (coupon={self.coupon_id})")
        return True

    @staticmethod
    def _require_member(member_id):
        if not Member.objects.filter(pk=member_id).exists():
            raise CouponRejected(RejectionReason.MISSING_MEMBER)

    def gift(self, by_member_id, now=None):
        now = _resolve_now(now)
        by_member_id = getattr(by_member_id, "pk", by_member_id)
        try:
            with transaction.atomic():
                locked = self._lock()
                target = next_code_status(locked.status, CodeEvent.GIFT)
                self._require_member(by_member_id)
                CouponCode.objects.filter(pk=locked.pk).update(
                    status=target,
                    gifted_by_member_id=by_member_id,
                    gifted_at=now,
                    updated_at=now,
                )
        except CouponRejected as e:
            logger.info(f"[CouponCode.gift] #{self.pk} {self.code} 거절: {e.reason.value}")
            return False
        self._apply({"status": target, "gifted_by_member_id": by_member_id, "gifted_at": now})
        logger.info(f"[CouponCode.gift] #{self.pk} {self.code} 선물 (by member={by_member_id})")
        return True

    def accept(self, member_id, now=None):
        now = _resolve_now(now)
        member_id = getattr(member_id, "pk", member_id)
        try:
            with transaction.atomic():
                locked = self._lock()
                target = next_code_status(locked.status, CodeEvent.ACCEPT)
                self._require_member(member_id)
                CouponCode.objects.filter(pk=locked.pk).update(
                    status=target,
                    member_id=member_id,
                    accepted_at=now,
                    updated_at=now,
                )
        except CouponRejected as e:
            logger.info(f"[CouponCode.accept] #{self.pk} {self.code} 거절: {e.reason.value}")
            return False
        self._apply({"status": target, "member_id": member_id, "accepted_at": now})
        logger.info(f"[CouponCode.accept] #{self.pk} {self.code} 수락 (member={member_id})")
        return True

    def claim(self, member):
        """회원 지갑에 이 코드를 넣는다. 주인이 없는 코드면 소유자로도 지정"""
        with transaction.atomic():
            member_coupon, created = MemberCoupon.all_objects.get_or_create(
                member=member, coupon_code=self
            )
            if member_coupon.is_deleted:
                member_coupon.restore()
            if self.member_id is None:
                self.member = member
                self.save(update_fields=["member", "updated_at"])
        if created:
            logger.info(f"[CouponCode.claim] #{self.pk} {self.code} → member={member.pk}")
        return member_coupon


# -------- MemberCoupon --------
class MemberCouponQuerySet(SoftDeleteQuerySet):
    def active(self):
        return self.filter(status=MemberCouponStatus.ACTIVE)

    def used(self):
        return self.filter(status=MemberCouponStatus.USED)

    def expired(self):
        return self.filter(status=MemberCouponStatus.EXPIRED)

    def usable(self, now=None):
        now = _resolve_now(now)
        return (
            self.filter(status=MemberCouponStatus.ACTIVE)
            .filter(Q(expired_at__isnull=True) | Q(expired_at__gt=now))
            .filter(coupon_code__in=CouponCode.objects.usable(now))
        )

    def overdue(self, now=None):
        now = _resolve_now(now)
        return self.filter(status=MemberCouponStatus.ACTIVE).filter(
            Q(expired_at__isnull=False, expired_at__lte=now)
            | Q(coupon_code__coupon__end_at__isnull=False, coupon_code__coupon__end_at__lt=now)
        )

    def expire_overdue(self, now=None):
        now = _resolve_now(now)
        active = self.filter(status=MemberCouponStatus.ACTIVE)
        # 자체 만료 시각이 지난 건 기존 expired_at 유지
        by_own_deadline = active.filter(expired_at__isnull=False, expired_at__lte=now).update(
            status=MemberCouponStatus.EXPIRED, updated_at=now
        )
        by_coupon_end = active.filter(
            coupon_code__coupon__end_at__isnull=False,
            coupon_code__coupon__end_at__lt=now,
        ).update(status=MemberCouponStatus.EXPIRED, expired_at=now, updated_at=now)
        count = by_own_deadline + by_coupon_end
        if count:
            logger.info(f"[MemberCoupon.expire_overdue] {count}개 회원 쿠폰 만료 처리")
        return count


class MemberCoupon(SoftDeleteModel):
    Status = MemberCouponStatus

    member = models.ForeignKey(
        Member, null=True, blank=True, on_delete=models.SET_NULL, related_name="member_coupons"
    )
    coupon_code = models.ForeignKey(CouponCode, on_delete=models.CASCADE, related_name="member_coupons")
    status = models.CharField(
        max_length=10, choices=MemberCouponStatus.choices, default=MemberCouponStatus.ACTIVE
    )
    used_at = models.DateTimeField(null=True, blank=True)
    expired_at = models.DateTimeField(null=True, blank=True)

    objects = SoftDeleteManager.from_queryset(MemberCouponQuerySet)()
    all_objects = AllObjectsManager.from_queryset(MemberCouponQuerySet)()

    class Meta:
        db_table = "member_coupons"
        ordering = ["-created_at", "-id"]
        constraints = [
            models.UniqueConstraint(fields=["member", "coupon_code"], name="member_coupons_member_code_uniq"),
        ]
        indexes = [
            models.Index(fields=["member", "status"], name="member_coupons_member_status"),
            models.Index(fields=["coupon_code", "status"], name="member_coupons_code_status"),
        ]

    def __str__(self):
        return f"MemberCoupon #{self.pk} - member {self.member_id} / {self.coupon_code_id}"

    def _live_code(self):
        if self.coupon_code_id is None:
            return None
        code = self.coupon_code
        if code is None or code.is_deleted:
            return None
        return code

    def _live_coupon(self):
        code = self._live_code()
        return code._live_coupon() if code is not None else None

    @property
    def coupon(self):
        return self._live_coupon()

    @property
    def status_text(self):
        try:
            return MemberCouponStatus(self.status).label
        except ValueError:
            return UNKNOWN_STATUS_TEXT

    def rejection_reason(self, now=None):
        now = _resolve_now(now)
        if self.status != MemberCouponStatus.ACTIVE:
            return RejectionReason.MEMBER_COUPON_INACTIVE
        if self.expired_at and self.expired_at <= now:
            return RejectionReason.MEMBER_COUPON_EXPIRED
        code = self._live_code()
        if code is None:
            return RejectionReason.MISSING_CODE
        return code.rejection_reason(now)

    def is_usable(self, now=None):
        return self.rejection_reason(now) is None

    def use(self, now=None):
        """회원 쿠폰과 코드를 한 트랜잭션에서 함께 used 로 바꾼다"""
        now = _resolve_now(now)
        try:
            with transaction.atomic():
                locked = MemberCoupon.objects.select_for_update().filter(pk=self.pk).first()
                if locked is None:
                    raise CouponRejected(RejectionReason.MEMBER_COUPON_INACTIVE)
                reason = locked.rejection_reason(now)
                if reason is not None:
                    raise CouponRejected(reason)
                target = next_member_coupon_status(locked.status, MemberCouponEvent.USE)

                code_changes = locked.coupon_code._redeem(now)
                swapped = MemberCoupon.objects.filter(pk=locked.pk, status=locked.status).update(
                    status=target, used_at=now, updated_at=now
                )
                if not swapped:
                    raise CouponRejected(RejectionReason.MEMBER_COUPON_INACTIVE)
        except CouponRejected as e:
            logger.info(f"[MemberCoupon.use] #{self.pk} 거절: {e.reason.value}")
            return False

        self.status = target
        self.used_at = now
        if MemberCoupon.coupon_code.is_cached(self):
            self.coupon_code._apply(code_changes)
        logger.info(f"[MemberCoupon.use] #{self.pk} 사용 완료 (member={self.member_id}, code={self.coupon_code_id})")
        return True

    def mark_as_expired(self, now=None):
        # 현재 상태와 무관하게 만료 처리
        now = _resolve_now(now)
        self.status = MemberCouponStatus.EXPIRED
        self.expired_at = now
        self.save(update_fields=["status", "expired_at", "updated_at"])
        logger.info(f"[MemberCoupon.mark_as_expired] #{self.pk} 만료 처리")
        return True

    def get_discount_amount(self, total_amount=0):
        coupon = self._live_coupon()
        if coupon is None:
            return Decimal("0")
        return coupon.get_discount_amount(total_amount)

    def meets_minimum_amount(self, total_amount):
        coupon = self._live_coupon()
        if coupon is None:
            return False
        return coupon.meets_minimum_amount(total_amount)
