"""
쿠폰 상태 전이 테이블.

CouponCode / MemberCoupon 의 상태 변경은 반드시 여기 정의된
(현재 상태, 이벤트) 쌍으로만 가능하다. 나머지 조합은 모두 거절된다.
"""
from django.db import models


class CodeStatus(models.TextChoices):
    UNUSED = "unused", "미사용"
    USED = "used", "사용됨"
    EXPIRED = "expired", "만료됨"
    GIFTED = "gifted", "선물됨"


class MemberCouponStatus(models.TextChoices):
    ACTIVE = "active", "유효"
    USED = "used", "사용됨"
    EXPIRED = "expired", "만료됨"


class RejectionReason(models.TextChoices):
    INACTIVE = "inactive", "비활성화된 쿠폰입니다."
    NOT_YET_STARTED = "not_yet_started", "아직 사용 기간이 시작되지 않은 쿠폰입니다."
    EXPIRED_COUPON = "expired_coupon", "사용 기간이 지난 쿠폰입니다."
    USAGE_LIMIT_REACHED = "usage_limit_reached", "사용 가능 횟수를 모두 소진한 쿠폰입니다."
    ALREADY_REDEEMED = "already_redeemed", "이미 사용된 쿠폰 코드입니다."
    ALREADY_GIFTED = "already_gifted", "이미 선물된 쿠폰 코드입니다."
    NOT_GIFTED = "not_gifted", "선물 상태가 아닌 쿠폰 코드입니다."
    CODE_EXPIRED = "code_expired", "만료 처리된 쿠폰 코드입니다."
    MISSING_COUPON = "missing_coupon", "연결된 쿠폰이 없습니다."
    MISSING_CODE = "missing_code", "연결된 쿠폰 코드가 없습니다."
    MISSING_MEMBER = "missing_member", "존재하지 않는 회원입니다."
    MEMBER_COUPON_INACTIVE = "member_coupon_inactive", "사용할 수 없는 회원 쿠폰입니다."
    MEMBER_COUPON_EXPIRED = "member_coupon_expired", "만료 시각이 지난 회원 쿠폰입니다."
    BELOW_MINIMUM_AMOUNT = "below_minimum_amount", "최소 주문 금액을 충족하지 않습니다."


class CouponRejected(Exception):
    """트랜잭션 안에서 가드 실패 시 롤백용. 모델 밖으로는 False 로 변환된다."""

    def __init__(self, reason):
        self.reason = reason
        super().__init__(reason.label)


class CodeEvent:
    USE = "use"
    GIFT = "gift"
    ACCEPT = "accept"
    EXPIRE = "expire"


class MemberCouponEvent:
    USE = "use"


CODE_TRANSITIONS = {
    (CodeStatus.UNUSED, CodeEvent.USE): CodeStatus.USED,
    (CodeStatus.UNUSED, CodeEvent.GIFT): CodeStatus.GIFTED,
    # 수락해도 상태는 gifted 그대로, 소유자만 바뀐다
    (CodeStatus.GIFTED, CodeEvent.ACCEPT): CodeStatus.GIFTED,
    (CodeStatus.UNUSED, CodeEvent.EXPIRE): CodeStatus.EXPIRED,
    (CodeStatus.GIFTED, CodeEvent.EXPIRE): CodeStatus.EXPIRED,
}

# 만료 처리(mark_as_expired)는 현재 상태와 무관하게 허용되므로 테이블에 없음
MEMBER_COUPON_TRANSITIONS = {
    (MemberCouponStatus.ACTIVE, MemberCouponEvent.USE): MemberCouponStatus.USED,
}

# 코드 상태별 거절 사유 (UNUSED 는 전이 가능한 상태라 없음)
CODE_STATUS_REASONS = {
    CodeStatus.USED: RejectionReason.ALREADY_REDEEMED,
    CodeStatus.GIFTED: RejectionReason.ALREADY_GIFTED,
    CodeStatus.EXPIRED: RejectionReason.CODE_EXPIRED,
}


def next_code_status(status, event):
    """허용되지 않은 전이면 CouponRejected"""
    target = CODE_TRANSITIONS.get((status, event))
    if target is None:
        if event == CodeEvent.ACCEPT:
            raise CouponRejected(RejectionReason.NOT_GIFTED)
        raise CouponRejected(CODE_STATUS_REASONS.get(status, RejectionReason.CODE_EXPIRED))
    return target


def next_member_coupon_status(status, event):
    target = MEMBER_COUPON_TRANSITIONS.get((status, event))
    if target is None:
        raise CouponRejected(RejectionReason.MEMBER_COUPON_INACTIVE)
    return target


def code_statuses_allowing(event):
    """해당 이벤트를 받을 수 있는 코드 상태 목록 (일괄 update 필터용)"""
    return [status for (status, ev) in CODE_TRANSITIONS if ev == event]
