from typing import Any, Dict, List, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from app.modules.audit.models import AuditLog


class AuditLogService:
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    PAYMENT = "payment"
    SEND = "send"

    def __init__(self, db: Session):
        self.db = db

    def log(
        self,
        entity_name: str,
        entity_id: UUID,
        action: str,
        tenant_id: UUID,
        user_id: Optional[UUID] = None,
        values: Optional[Dict[str, Any]] = None
    ) -> AuditLog:
        """Registrar una entrada dentro de la transacción en curso (sin commit)."""
        entry = AuditLog(
            tenant_id=tenant_id,
            entity_name=entity_name,
            entity_id=entity_id,
            action=action,
            values=values,
            created_by=user_id
        )
        self.db.add(entry)
        return entry

    def entries_for(self, entity_name: str, entity_id: UUID, tenant_id: UUID) -> List[AuditLog]:
        return self.db.query(AuditLog).filter(
            AuditLog.tenant_id == tenant_id,
            AuditLog.entity_name == entity_name,
            AuditLog.entity_id == entity_id
        ).order_by(AuditLog.created_at).all()
