from django.contrib import admin, messages
from django.utils import timezone

from .models import Coupon, CouponCode, MemberCoupon


class SoftDeleteAdminMixin:
    """admin 삭제도 소프트 삭제로"""

    def delete_queryset(self, request, queryset):
        queryset.delete()


class CouponValidityFilter(admin.SimpleListFilter):
    title = "쿠폰 상태"
    parameter_name = "validity"

    def lookups(self, request, model_admin):
        return (
            ("valid", "사용 가능"),
            ("expired", "기간 만료"),
            ("unavailable", "한도 소진"),
        )

    def queryset(self, request, queryset):
        now = timezone.now()
        if self.value() == "valid":
            return queryset.usable(now)
        if self.value() == "expired":
            return queryset.filter(end_at__isnull=False, end_at__lt=now)
        if self.value() == "unavailable":
            return queryset.exclude(pk__in=queryset.available().values("pk"))
        return queryset


@admin.register(Coupon)
class CouponAdmin(SoftDeleteAdminMixin, admin.ModelAdmin):
    list_display = (
        "id", "name", "code",
        "discount_display", "discount_type", "minimum_amount",
        "usage_display", "start_at", "end_at",
        "is_active", "currently_active", "created_at",
    )
    search_fields = ("name", "code", "description")
    list_filter = ("discount_type", "is_active", CouponValidityFilter)
    readonly_fields = ("used_count", "created_at", "updated_at")
    ordering = ("-created_at",)

    def discount_display(self, obj):
        return obj.discount_text
    discount_display.short_description = "할인"

    def usage_display(self, obj):
        return obj.usage_text
    usage_display.short_description = "사용 현황"

    def currently_active(self, obj):
        return obj.is_currently_active()
    currently_active.boolean = True
    currently_active.short_description = "현재 사용 가능"


class AssignedFilter(admin.SimpleListFilter):
    title = "회원 배정 여부"
    parameter_name = "assigned"

    def lookups(self, request, model_admin):
        return (("yes", "배정됨"), ("no", "미배정"))

    def queryset(self, request, queryset):
        if self.value() == "yes":
            return queryset.filter(member__isnull=False)
        if self.value() == "no":
            return queryset.filter(member__isnull=True)
        return queryset


class GiftedFilter(admin.SimpleListFilter):
    title = "선물 여부"
    parameter_name = "gifted"

    def lookups(self, request, model_admin):
        return (("yes", "선물됨"), ("no", "선물 아님"))

    def queryset(self, request, queryset):
        if self.value() == "yes":
            return queryset.filter(gifted_by_member__isnull=False)
        if self.value() == "no":
            return queryset.filter(gifted_by_member__isnull=True)
        return queryset


@admin.register(CouponCode)
class CouponCodeAdmin(SoftDeleteAdminMixin, admin.ModelAdmin):
    list_display = (
        "id", "code", "coupon_name", "discount_display",
        "member", "gifted_by_member", "status_display",
        "used_at", "gifted_at", "accepted_at", "created_at",
    )
    search_fields = ("code", "coupon__name", "coupon__code", "member__name", "member__email")
    list_filter = ("status", "coupon", AssignedFilter, GiftedFilter)
    list_select_related = ("coupon", "member", "gifted_by_member")
    readonly_fields = ("created_at", "updated_at")
    actions = ["expire_overdue_codes"]

    def coupon_name(self, obj):
        return obj.coupon.name
    coupon_name.short_description = "쿠폰 이름"

    def discount_display(self, obj):
        return obj.coupon.discount_text
    discount_display.short_description = "할인"

    def status_display(self, obj):
        return obj.status_text
    status_display.short_description = "상태"

    @admin.action(description="기간 만료된 코드 만료 처리")
    def expire_overdue_codes(self, request, queryset):
        count = queryset.expire_overdue()
        self.message_user(request, f"{count}개 코드를 만료 처리했습니다.", messages.SUCCESS)


@admin.register(MemberCoupon)
class MemberCouponAdmin(SoftDeleteAdminMixin, admin.ModelAdmin):
    list_display = (
        "id", "member", "code", "coupon_name",
        "status_display", "usable", "used_at", "expired_at", "created_at",
    )
    search_fields = ("member__name", "member__email", "coupon_code__code", "coupon_code__coupon__name")
    list_filter = ("status",)
    list_select_related = ("member", "coupon_code__coupon")
    readonly_fields = ("created_at", "updated_at")
    actions = ["use_selected", "mark_selected_as_expired"]

    def code(self, obj):
        return obj.coupon_code.code
    code.short_description = "쿠폰 코드"

    def coupon_name(self, obj):
        coupon = obj.coupon
        return coupon.name if coupon else "-"
    coupon_name.short_description = "쿠폰 이름"

    def status_display(self, obj):
        return obj.status_text
    status_display.short_description = "상태"

    def usable(self, obj):
        return obj.is_usable()
    usable.boolean = True
    usable.short_description = "사용 가능"

    @admin.action(description="선택한 회원 쿠폰 사용 처리")
    def use_selected(self, request, queryset):
        used, rejected = 0, 0
        for member_coupon in queryset:
            if member_coupon.use():
                used += 1
            else:
                rejected += 1
        self.message_user(request, f"{used}건 사용 처리, {rejected}건 거절", messages.INFO)

    @admin.action(description="선택한 회원 쿠폰 만료 처리")
    def mark_selected_as_expired(self, request, queryset):
        count = 0
        for member_coupon in queryset:
            member_coupon.mark_as_expired()
            count += 1
        self.message_user(request, f"{count}건 만료 처리했습니다.", messages.SUCCESS)
