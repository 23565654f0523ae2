"""
Resolución de referencias multi-tenant para clientes y sitios.

Un id que no existe o que pertenece a otra empresa se descarta (None) en
lugar de guardarse, igual que el resto de módulos CRUD.
"""
from typing import Iterable, List, Optional, Type
from uuid import UUID
import logging

from sqlalchemy.orm import Session

from app.database.database import get_tenant_query
from app.modules.clients.models import ClientAccount, PostSite

logger = logging.getLogger(__name__)


class ReferenceResolver:

    def __init__(self, db: Session):
        self.db = db

    def filter_ids_in_tenant(self, model: Type, ids: Iterable[UUID], tenant_id: UUID) -> List[UUID]:
        ids = [i for i in ids if i]
        if not ids:
            return []
        rows = get_tenant_query(self.db, model, tenant_id).filter(model.id.in_(ids)).all()
        found = {row.id for row in rows}
        # Preserve caller order
        return [i for i in ids if i in found]

    def filter_id_in_tenant(self, model: Type, id_: Optional[UUID], tenant_id: UUID) -> Optional[UUID]:
        if not id_:
            return None
        matches = self.filter_ids_in_tenant(model, [id_], tenant_id)
        if not matches:
            logger.warning(f"Discarding {model.__tablename__} reference {id_} not found in tenant {tenant_id}")
            return None
        return matches[0]

    def client_id(self, client_id: Optional[UUID], tenant_id: UUID) -> Optional[UUID]:
        return self.filter_id_in_tenant(ClientAccount, client_id, tenant_id)

    def post_site_id(self, post_site_id: Optional[UUID], tenant_id: UUID) -> Optional[UUID]:
        return self.filter_id_in_tenant(PostSite, post_site_id, tenant_id)

    def client_email(self, client_id: Optional[UUID], tenant_id: UUID) -> Optional[str]:
        if not client_id:
            return None
        client = get_tenant_query(self.db, ClientAccount, tenant_id).filter(ClientAccount.id == client_id).first()
        return client.email if client and client.email else None
