import logging

from django.db import models
from django.utils import timezone

logger = logging.getLogger(__name__)


class SoftDeleteQuerySet(models.QuerySet):
    def delete(self):
        """실제 삭제 대신 deleted_at 기록"""
        count = self.update(deleted_at=timezone.now())
        logger.info(f"[SoftDelete] {self.model.__name__} {count}건 소프트 삭제")
        return count, {self.model._meta.label: count}

    def hard_delete(self):
        return super().delete()

    def alive(self):
        return self.filter(deleted_at__isnull=True)

    def dead(self):
        return self.filter(deleted_at__isnull=False)


class SoftDeleteManager(models.Manager.from_queryset(SoftDeleteQuerySet)):
    """기본 매니저: 삭제된 row 제외"""

    def get_queryset(self):
        return super().get_queryset().filter(deleted_at__isnull=True)


class AllObjectsManager(models.Manager.from_queryset(SoftDeleteQuerySet)):
    pass


class SoftDeleteModel(models.Model):
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)
    deleted_at = models.DateTimeField(null=True, blank=True, db_index=True)

    objects = SoftDeleteManager()
    all_objects = AllObjectsManager()

    class Meta:
        abstract = True

    @property
    def is_deleted(self):
        return self.deleted_at is not None

    def delete(self, using=None, keep_parents=False):
        self.deleted_at = timezone.now()
        self.save(update_fields=["deleted_at", "updated_at"])
        logger.info(f"[SoftDelete] {self.__class__.__name__} #{self.pk} 소프트 삭제")

    def hard_delete(self, using=None, keep_parents=False):
        return super().delete(using=using, keep_parents=keep_parents)

    def restore(self):
        self.deleted_at = None
        self.save(update_fields=["deleted_at", "updated_at"])
        logger.info(f"[SoftDelete] {self.__class__.__name__} #{self.pk} 복구")
