"""
Máquina de estados de la factura: Draft -> Sent.

Enviar exige que la factura esté totalmente pagada según el ledger. Una
factura enviada y pagada queda sellada: no se puede editar ni eliminar.
"""
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional
import logging

from app.modules.invoices.exceptions import InvoiceLocked, NotFullyPaid
from app.modules.invoices.ledger import PaymentLedger
from app.modules.invoices.models import Invoice, InvoiceStatus

logger = logging.getLogger(__name__)


class InvoiceStateMachine:

    @staticmethod
    def is_fully_paid(invoice: Invoice) -> bool:
        total = Decimal(invoice.total or 0)
        if total <= 0:
            return False
        return PaymentLedger.total_paid(invoice) + PaymentLedger.tolerance() >= total

    @classmethod
    def is_locked(cls, invoice: Invoice) -> bool:
        return invoice.status == InvoiceStatus.SENT and cls.is_fully_paid(invoice)

    @classmethod
    def ensure_mutable(cls, invoice: Invoice) -> None:
        if cls.is_locked(invoice):
            raise InvoiceLocked(invoice.id)

    @classmethod
    def send(cls, invoice: Invoice, now: Optional[datetime] = None) -> bool:
        """
        Pasar la factura a Sent.

        Returns:
            True si hubo transición, False si ya estaba enviada (idempotente).

        Raises:
            NotFullyPaid: con el saldo pendiente, sin cambiar el estado.
        """
        if not cls.is_fully_paid(invoice):
            raise NotFullyPaid(PaymentLedger.remaining_balance(invoice))

        if invoice.status == InvoiceStatus.SENT:
            logger.info(f"Invoice {invoice.invoice_number} already sent at {invoice.sent_at}; no transition")
            return False

        invoice.status = InvoiceStatus.SENT
        invoice.sent_at = now or datetime.now(timezone.utc)
        logger.info(f"Invoice {invoice.invoice_number} transitioned to {invoice.status.value}")
        return True
