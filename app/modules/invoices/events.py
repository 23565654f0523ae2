"""
Evento InvoiceSent y su despacho de notificación.

El evento se emite solo después del commit del envío. Generar el PDF y mandar
el correo son efectos secundarios de mejor esfuerzo: un fallo aquí se registra
y se informa, pero nunca deshace la transición ya confirmada.
"""
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple
from uuid import UUID
import logging

from app.core.config import settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class InvoiceSent:
    invoice_id: UUID
    tenant_id: UUID
    invoice_number: str
    total: Decimal
    total_paid: Decimal
    sent_at: Optional[datetime]
    transitioned: bool
    client_name: Optional[str] = None
    client_email: Optional[str] = None
    issue_date: Optional[str] = None
    due_date: Optional[str] = None
    line_items: List[Dict[str, Any]] = field(default_factory=list)

    @classmethod
    def from_invoice(cls, invoice, transitioned: bool, client_email: Optional[str] = None) -> "InvoiceSent":
        client = getattr(invoice, "client", None)
        return cls(
            invoice_id=invoice.id,
            tenant_id=invoice.tenant_id,
            invoice_number=invoice.invoice_number,
            total=Decimal(invoice.total),
            total_paid=invoice.paid_amount,
            sent_at=invoice.sent_at,
            transitioned=transitioned,
            client_name=client.name if client else None,
            client_email=client_email,
            issue_date=invoice.issue_date.strftime("%d/%m/%Y") if invoice.issue_date else None,
            due_date=invoice.due_date.strftime("%d/%m/%Y") if invoice.due_date else None,
            line_items=[
                {
                    "description": item.description,
                    "quantity": str(item.quantity),
                    "unit_rate": str(item.unit_rate),
                    "tax_rate_percent": str(item.tax_rate_percent),
                    "line_total": str(item.line_total),
                }
                for item in invoice.line_items
            ],
        )

    def to_payload(self) -> Dict[str, Any]:
        """Datos serializables a JSON para la tarea de Celery."""
        return {
            "id": str(self.invoice_id),
            "number": self.invoice_number,
            "issue_date": self.issue_date,
            "due_date": self.due_date,
            "customer_name": self.client_name or "Cliente",
            "total_amount": str(self.total),
            "total_paid": str(self.total_paid),
            "balance_due": str(max(self.total - self.total_paid, Decimal("0.00"))),
            "line_items": self.line_items,
        }


class InvoiceNotifier:
    """Encola el correo de la factura con el PDF adjunto."""

    def publish(self, event: InvoiceSent) -> Tuple[bool, Optional[str]]:
        """
        Returns:
            (notification_attempted, notified_address)
        """
        if not event.client_email:
            logger.info(f"Invoice {event.invoice_number} sent without notification: client has no email")
            return False, None

        if not settings.email_configured:
            logger.warning(f"Invoice {event.invoice_number} sent without notification: email is not configured")
            return False, None

        try:
            from app.modules.email.tasks import send_invoice_email_task

            task = send_invoice_email_task.delay(
                to_email=event.client_email,
                invoice_data=event.to_payload(),
                company_data={"name": settings.EMAIL_FROM_NAME},
            )
            logger.info(f"Invoice {event.invoice_number} email queued to {event.client_email} (task {task.id})")
            return True, event.client_email
        except Exception as e:
            logger.error(f"Could not queue invoice email for {event.invoice_number}: {str(e)}", exc_info=True)
            return False, None
