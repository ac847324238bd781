import logging
from decimal import Decimal

from django.db import transaction
from django.db.models import Count, Q
from django.http import HttpResponse
from django.shortcuts import get_object_or_404
from django.utils import timezone
from django.utils.text import slugify
from rest_framework import generics, status
from rest_framework.permissions import IsAdminUser
from rest_framework.response import Response
from rest_framework.views import APIView

from member.models import Member
from .models import Coupon, CouponCode, MemberCoupon
from .serializers import (
    CouponCodeSerializer,
    CouponCreateSerializer,
    CouponSerializer,
    MemberActionSerializer,
    MemberCouponSerializer,
    RedeemSerializer,
)
from .transitions import CODE_STATUS_REASONS, CodeStatus, RejectionReason
from .utils import build_codes_xlsx

logger = logging.getLogger(__name__)


def _fail(code, message, reason=None):
    body = {"status": "fail", "code": code, "message": message}
    if reason is not None:
        body["reason"] = reason.value
    return Response(body, status=code)


def _rejected(reason):
    return _fail(status.HTTP_409_CONFLICT, reason.label, reason)


# -------- 목록 & 생성 --------
class CouponListCreateView(generics.GenericAPIView):
    permission_classes = [IsAdminUser]
    serializer_class = CouponCreateSerializer

    def get(self, request):
        qs = Coupon.objects.annotate(
            unused_count=Count(
                "codes",
                filter=Q(codes__status=CodeStatus.UNUSED, codes__deleted_at__isnull=True),
            )
        ).order_by("-created_at", "-id")

        state = request.query_params.get("state")
        now = timezone.now()
        if state == "usable":
            qs = qs.usable(now)
        elif state == "expired":
            qs = qs.filter(end_at__isnull=False, end_at__lt=now)
        elif state == "inactive":
            qs = qs.filter(is_active=False)

        data = CouponSerializer(qs, many=True, context={"now": now}).data
        return Response({"status": "success", "code": 200, "data": data})

    def post(self, request):
        serializer = self.get_serializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        issue_count = serializer.validated_data.get("issue_count", 0)

        with transaction.atomic():
            coupon = serializer.save()
            issued = coupon.issue_codes(issue_count) if issue_count else []

        logger.info(f"[CouponListCreateView] coupon={coupon.pk} 생성, 코드 {len(issued)}개 발급")
        return Response(
            {
                "status": "success",
                "code": 201,
                "message": f"쿠폰이 생성되었습니다. (코드 {len(issued)}개 발급)",
                "data": {
                    "coupon": CouponSerializer(coupon).data,
                    "codes": [c.code for c in issued],
                },
            },
            status=status.HTTP_201_CREATED,
        )


class CouponDetailView(APIView):
    permission_classes = [IsAdminUser]

    # ------- 단건 조회 & 삭제 --------
    def get(self, request, coupon_id):
        coupon = get_object_or_404(Coupon, id=coupon_id)
        data = CouponSerializer(coupon, context={"now": timezone.now()}).data
        data["used_code_count"] = coupon.used_codes().count()
        data["gifted_code_count"] = coupon.codes.gifted().count()
        return Response({"status": "success", "code": 200, "data": data})

    def delete(self, request, coupon_id):
        coupon = get_object_or_404(Coupon, id=coupon_id)
        coupon.delete()  # 소프트 삭제
        return Response(
            {"status": "success", "code": 200, "message": f"쿠폰 {coupon_id}가 삭제되었습니다."}
        )


class CouponCodeListView(APIView):
    """
    GET /api/v1/coupons/<coupon_id>/codes/
    특정 쿠폰의 발급 코드 전체 조회 (?status=unused|used|gifted|expired)
    """
    permission_classes = [IsAdminUser]

    def get(self, request, coupon_id: int):
        coupon = get_object_or_404(Coupon, id=coupon_id)
        codes = CouponCode.objects.filter(coupon=coupon).select_related("coupon")

        status_param = request.query_params.get("status")
        if status_param:
            if status_param not in CodeStatus.values:
                return _fail(status.HTTP_400_BAD_REQUEST, "status 값이 올바르지 않습니다.")
            codes = codes.filter(status=status_param)

        data = CouponCodeSerializer(codes, many=True, context={"now": timezone.now()}).data
        return Response({"status": "success", "code": 200, "data": data}, status=status.HTTP_200_OK)


class CouponExportView(APIView):
    permission_classes = [IsAdminUser]

    def get(self, request, coupon_id: int):
        coupon = get_object_or_404(Coupon, id=coupon_id)

        qs = (
            CouponCode.objects
            .filter(coupon=coupon)
            .select_related("member", "gifted_by_member")
            .order_by("id")  # 생성순 정렬 (오래된게 앞에)
        )

        meta_title = f"{coupon.name} ({coupon.code}) - 코드 내보내기"
        bio = build_codes_xlsx(qs, sheet_name="coupon_codes", meta_title=meta_title)

        safe_coupon = slugify(coupon.code) or f"coupon_{coupon.id}"
        ts = timezone.localtime(timezone.now()).strftime("%Y%m%d_%H%M%S")
        filename = f"{safe_coupon}_codes_{ts}.xlsx"

        resp = HttpResponse(
            bio.read(),
            content_type="application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        )
        resp["Content-Disposition"] = f'attachment; filename="{filename}"'
        return resp


# -------- 코드 상태 전이 --------
class CouponCodeUseView(APIView):
    permission_classes = [IsAdminUser]

    def post(self, request, code: str):
        coupon_code = get_object_or_404(CouponCode.objects.select_related("coupon"), code=code.upper())
        now = timezone.now()
        if not coupon_code.use(now):
            # 커밋된 최신 상태로 다시 읽어 실제 거절 사유를 돌려준다
            latest = CouponCode.objects.select_related("coupon").get(pk=coupon_code.pk)
            return _rejected(latest.rejection_reason(now) or RejectionReason.ALREADY_REDEEMED)
        return Response({
            "status": "success",
            "code": 200,
            "message": "쿠폰 코드가 사용 처리되었습니다.",
            "data": CouponCodeSerializer(coupon_code, context={"now": now}).data,
        })


class CouponCodeGiftView(APIView):
    permission_classes = [IsAdminUser]

    def post(self, request, code: str):
        coupon_code = get_object_or_404(CouponCode, code=code.upper())
        serializer = MemberActionSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        if not coupon_code.gift(serializer.validated_data["member_id"]):
            coupon_code.refresh_from_db(fields=["status"])
            return _rejected(CODE_STATUS_REASONS.get(coupon_code.status, RejectionReason.ALREADY_GIFTED))
        return Response({
            "status": "success",
            "code": 200,
            "message": "쿠폰 코드를 선물했습니다.",
            "data": CouponCodeSerializer(coupon_code).data,
        })


class CouponCodeAcceptView(APIView):
    permission_classes = [IsAdminUser]

    def post(self, request, code: str):
        coupon_code = get_object_or_404(CouponCode, code=code.upper())
        serializer = MemberActionSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        member = Member.objects.get(pk=serializer.validated_data["member_id"])

        with transaction.atomic():
            if not coupon_code.accept(member.pk):
                return _rejected(RejectionReason.NOT_GIFTED)
            # 수락한 회원 지갑에 추가
            member_coupon = coupon_code.claim(member)

        return Response({
            "status": "success",
            "code": 200,
            "message": "선물받은 쿠폰을 수락했습니다.",
            "data": {
                "coupon_code": CouponCodeSerializer(coupon_code).data,
                "member_coupon_id": member_coupon.pk,
            },
        })


# -------- 회원 쿠폰 --------
class MemberCouponUseView(APIView):
    permission_classes = [IsAdminUser]

    def post(self, request, member_coupon_id: int):
        member_coupon = get_object_or_404(
            MemberCoupon.objects.select_related("coupon_code__coupon"), id=member_coupon_id
        )
        serializer = RedeemSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        total_amount = serializer.validated_data.get("total_amount")
        now = timezone.now()

        if total_amount is not None and not member_coupon.meets_minimum_amount(total_amount):
            return _rejected(RejectionReason.BELOW_MINIMUM_AMOUNT)

        if not member_coupon.use(now):
            latest = MemberCoupon.objects.select_related("coupon_code__coupon").get(pk=member_coupon.pk)
            return _rejected(latest.rejection_reason(now) or RejectionReason.MEMBER_COUPON_INACTIVE)

        data = MemberCouponSerializer(member_coupon, context={"now": now}).data
        if total_amount is not None:
            discount = member_coupon.get_discount_amount(total_amount)
            data["total_amount"] = str(total_amount)
            data["discount_amount"] = str(discount)
            # 정액 할인이 주문 금액보다 클 수 있어 결제 금액은 0 아래로 내리지 않음
            data["payable_amount"] = str(max(total_amount - discount, Decimal("0.00")))
        return Response({
            "status": "success",
            "code": 200,
            "message": "쿠폰이 사용되었습니다.",
            "data": data,
        })


class MemberCouponExpireView(APIView):
    permission_classes = [IsAdminUser]

    def post(self, request, member_coupon_id: int):
        member_coupon = get_object_or_404(MemberCoupon, id=member_coupon_id)
        member_coupon.mark_as_expired()
        return Response({
            "status": "success",
            "code": 200,
            "message": "회원 쿠폰이 만료 처리되었습니다.",
            "data": MemberCouponSerializer(member_coupon).data,
        })
