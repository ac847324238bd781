from django.urls import path
from .views import *

urlpatterns = [
    path("members/<int:member_id>/coupons/", MemberCouponListView.as_view(), name="member-coupon-list"),
]
