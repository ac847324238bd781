from django.db import models
from django.utils import timezone
from project.softdelete import SoftDeleteModel


class Member(SoftDeleteModel):
    class Gender(models.TextChoices):
        MALE = "male", "남성"
        FEMALE = "female", "여성"
        OTHER = "other", "기타"

    name = models.CharField(max_length=100)
    email = models.EmailField(unique=True)
    phone = models.CharField(max_length=20, blank=True, null=True)
    address = models.JSONField(
        blank=True, null=True,
        help_text="주소 정보 (예: {'city': '서울', 'district': '강남구', 'detail': '...'})"
    )
    birthday = models.DateField(blank=True, null=True)
    gender = models.CharField(max_length=10, choices=Gender.choices, blank=True, null=True)
    is_active = models.BooleanField(default=True)

    class Meta:
        db_table = "members"
        ordering = ["-created_at"]

    def __str__(self):
        return f"{self.id} - {self.name}"

    # 회원 지갑 조회
    def usable_coupons(self, now=None):
        return self.member_coupons.usable(now or timezone.now())

    def used_coupons(self):
        return self.member_coupons.used()

    def expired_coupons(self):
        return self.member_coupons.expired()
