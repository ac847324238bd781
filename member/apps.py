from django.apps import AppConfig


class MemberConfig(AppConfig):
    default_auto_field = "django.db.models.BigAutoField"
    name = "member"
    verbose_name = "회원"
