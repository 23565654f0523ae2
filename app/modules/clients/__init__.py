"""
Clientes y sitios (referencias de facturas).

El CRUD completo de estas entidades vive fuera de este servicio; aquí solo se
necesitan las tablas y la resolución de ids dentro del tenant.
"""

from .models import ClientAccount, PostSite
from .service import ReferenceResolver

__all__ = ["ClientAccount", "PostSite", "ReferenceResolver"]
