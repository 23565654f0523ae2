from app.database.database import Base
from sqlalchemy import Column, String, Text
from sqlalchemy.dialects.postgresql import UUID
from uuid import uuid4
from app.common.mixins import TenantMixin, TimestampMixin, SoftDeleteMixin


class ClientAccount(Base, TenantMixin, TimestampMixin, SoftDeleteMixin):
    """Cliente facturable. Solo se usa aquí como referencia de la factura."""
    __tablename__ = "client_accounts"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    name = Column(String(200), nullable=False, index=True)
    email = Column(String(100), nullable=True)
    phone = Column(String(50), nullable=True)
    address = Column(Text, nullable=True)


class PostSite(Base, TenantMixin, TimestampMixin, SoftDeleteMixin):
    """Sitio / ubicación de negocio del cliente."""
    __tablename__ = "post_sites"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    client_id = Column(UUID(as_uuid=True), nullable=True, index=True)
    name = Column(String(200), nullable=False)
    address = Column(Text, nullable=True)
