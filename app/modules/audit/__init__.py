from .models import AuditLog
from .service import AuditLogService

__all__ = ["AuditLog", "AuditLogService"]
