from django.shortcuts import get_object_or_404
from django.utils import timezone
from rest_framework import status
from rest_framework.permissions import IsAdminUser
from rest_framework.response import Response
from rest_framework.views import APIView

from coupon.serializers import MemberCouponSerializer
from .models import Member
from .serializers import MemberSerializer


class MemberCouponListView(APIView):
    """
    GET /api/v1/members/<member_id>/coupons/?status=usable|used|expired
    회원 지갑 조회
    """
    permission_classes = [IsAdminUser]

    def get(self, request, member_id: int):
        member = get_object_or_404(Member, id=member_id)
        now = timezone.now()

        status_param = request.query_params.get("status")
        if status_param == "usable":
            qs = member.usable_coupons(now)
        elif status_param == "used":
            qs = member.used_coupons()
        elif status_param == "expired":
            qs = member.expired_coupons()
        elif status_param:
            return Response(
                {"status": "fail", "code": 400, "message": "status 는 usable, used, expired 중 하나여야 합니다."},
                status=status.HTTP_400_BAD_REQUEST,
            )
        else:
            qs = member.member_coupons.all()

        qs = qs.select_related("coupon_code__coupon")
        return Response({
            "status": "success",
            "code": 200,
            "data": {
                "member": MemberSerializer(member).data,
                "coupons": MemberCouponSerializer(qs, many=True, context={"now": now}).data,
            },
        })
