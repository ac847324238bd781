from decimal import Decimal

from rest_framework import serializers

from member.models import Member
from .models import Coupon, CouponCode, MemberCoupon


class CouponCreateSerializer(serializers.ModelSerializer):
    # 생성과 동시에 발급할 코드 수 (선택)
    issue_count = serializers.IntegerField(min_value=0, max_value=100000, required=False, default=0)

    class Meta:
        model = Coupon
        fields = [
            "name", "code", "description",
            "discount_amount", "discount_type", "minimum_amount",
            "max_usage", "start_at", "end_at", "is_active",
            "issue_count",
        ]

    def validate(self, attrs):
        start_at = attrs.get("start_at")
        end_at = attrs.get("end_at")
        if start_at and end_at and end_at < start_at:
            raise serializers.ValidationError({"end_at": "종료 시각은 시작 시각 이후여야 합니다."})
        if (
            attrs.get("discount_type") == Coupon.DiscountType.PERCENTAGE
            and attrs.get("discount_amount", Decimal("0")) > Decimal("100")
        ):
            raise serializers.ValidationError({"discount_amount": "정률 할인은 100%를 넘을 수 없습니다."})
        return attrs

    def create(self, validated_data):
        validated_data.pop("issue_count", None)
        return super().create(validated_data)


class CouponSerializer(serializers.ModelSerializer):
    coupon_id = serializers.IntegerField(source="id", read_only=True)
    usage_text = serializers.CharField(read_only=True)
    is_currently_active = serializers.SerializerMethodField()
    unused_count = serializers.SerializerMethodField()

    class Meta:
        model = Coupon
        fields = [
            "coupon_id", "name", "code", "description",
            "discount_amount", "discount_type", "minimum_amount",
            "max_usage", "used_count", "usage_text",
            "start_at", "end_at", "is_active", "is_currently_active",
            "unused_count", "created_at",
        ]

    def get_is_currently_active(self, obj):
        return obj.is_currently_active(self.context.get("now"))

    def get_unused_count(self, obj):
        # annotate 된 값이 있으면 그걸 사용
        annotated = getattr(obj, "unused_count", None)
        if annotated is not None:
            return annotated
        return obj.unused_codes().count()


class CouponCodeSerializer(serializers.ModelSerializer):
    coupon_id = serializers.IntegerField(read_only=True)
    member_id = serializers.IntegerField(read_only=True)
    gifted_by_member_id = serializers.IntegerField(read_only=True)
    status_text = serializers.CharField(read_only=True)
    is_usable = serializers.SerializerMethodField()
    is_expired = serializers.SerializerMethodField()

    class Meta:
        model = CouponCode
        fields = [
            "id", "code", "coupon_id", "member_id", "gifted_by_member_id",
            "status", "status_text", "is_usable", "is_expired",
            "used_at", "gifted_at", "accepted_at",
        ]

    def get_is_usable(self, obj):
        return obj.is_usable(self.context.get("now"))

    def get_is_expired(self, obj):
        return obj.is_expired(self.context.get("now"))


class MemberCouponSerializer(serializers.ModelSerializer):
    member_id = serializers.IntegerField(read_only=True)
    code = serializers.CharField(source="coupon_code.code", read_only=True)
    coupon_name = serializers.CharField(source="coupon_code.coupon.name", read_only=True)
    status_text = serializers.CharField(read_only=True)
    is_usable = serializers.SerializerMethodField()

    class Meta:
        model = MemberCoupon
        fields = [
            "id", "member_id", "code", "coupon_name",
            "status", "status_text", "is_usable",
            "used_at", "expired_at", "created_at",
        ]

    def get_is_usable(self, obj):
        return obj.is_usable(self.context.get("now"))


class MemberActionSerializer(serializers.Serializer):
    """gift / accept 요청 바디"""
    member_id = serializers.IntegerField(min_value=1)

    def validate_member_id(self, value):
        if not Member.objects.filter(pk=value).exists():
            raise serializers.ValidationError("존재하지 않는 회원입니다.")
        return value


class RedeemSerializer(serializers.Serializer):
    total_amount = serializers.DecimalField(
        max_digits=12, decimal_places=2, min_value=Decimal("0"), required=False
    )
