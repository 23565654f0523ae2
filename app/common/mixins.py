"""
Common mixins for multi-tenant models
"""
from sqlalchemy import Column, DateTime
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.sql import func


class TenantMixin:
    """Mixin for multi-tenant models that adds tenant_id and ensures tenant isolation"""

    tenant_id = Column(UUID(as_uuid=True), nullable=False, index=True)


class TimestampMixin:
    """Mixin for models that need timestamp tracking"""

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)


class SoftDeleteMixin:
    """Rows with deleted_at set are invisible to every tenant-scoped query"""

    deleted_at = Column(DateTime(timezone=True), nullable=True)

    @property
    def is_deleted(self):
        return self.deleted_at is not None
