from django.urls import path
from .views import *

urlpatterns = [
    path("coupons/", CouponListCreateView.as_view(), name="coupon-list-create"),
    path("coupons/<int:coupon_id>/", CouponDetailView.as_view(), name="coupon-detail"),
    path("coupons/<int:coupon_id>/codes/", CouponCodeListView.as_view(), name="coupon-code-list"),
    path("coupons/<int:coupon_id>/codes/export/", CouponExportView.as_view(), name="coupon-code-export"),
    path("coupon-codes/<str:code>/use/", CouponCodeUseView.as_view(), name="coupon-code-use"),
    path("coupon-codes/<str:code>/gift/", CouponCodeGiftView.as_view(), name="coupon-code-gift"),
    path("coupon-codes/<str:code>/accept/", CouponCodeAcceptView.as_view(), name="coupon-code-accept"),
    path("member-coupons/<int:member_coupon_id>/use/", MemberCouponUseView.as_view(), name="member-coupon-use"),
    path("member-coupons/<int:member_coupon_id>/expire/", MemberCouponExpireView.as_view(), name="member-coupon-expire"),
]
