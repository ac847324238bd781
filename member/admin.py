from django.contrib import admin
from .models import Member


@admin.register(Member)
class MemberAdmin(admin.ModelAdmin):
    list_display = (
        "id", "name", "email", "phone", "gender",
        "is_active", "usable_coupon_count", "created_at",
    )
    search_fields = ("name", "email", "phone")
    list_filter = ("is_active", "gender")
    readonly_fields = ("created_at", "updated_at")
    ordering = ("-created_at",)

    def delete_queryset(self, request, queryset):
        queryset.delete()  # 소프트 삭제

    def usable_coupon_count(self, obj):
        return obj.usable_coupons().count()
    usable_coupon_count.short_description = "사용 가능 쿠폰"
