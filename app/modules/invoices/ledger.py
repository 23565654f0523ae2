"""
Ledger de pagos de una factura.

El total pagado se calcula siempre sumando las entradas del ledger. No existe
otro campo "pagado" que pueda contradecirlo.
"""
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Dict, Optional
from uuid import UUID
import logging

from app.core.config import settings
from app.modules.invoices.exceptions import InvalidPaymentAmount, OverpaymentRejected, ValidationFailed
from app.modules.invoices.models import Invoice, InvoicePayment
from app.modules.invoices.schemas import PaymentCreate

logger = logging.getLogger(__name__)

ZERO = Decimal("0.00")
CENT = Decimal("0.01")

# Legacy ledgers stored the amount under any of these keys, in this priority
_LEGACY_AMOUNT_KEYS = ("amount", "paidAmount", "paid", "total")


def _to_decimal(value: Any) -> Decimal:
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        raise ValidationFailed(f"Monto inválido: {value!r}", {"amount": str(value)})


class PaymentLedger:

    @staticmethod
    def tolerance() -> Decimal:
        return Decimal(str(settings.PAYMENT_TOLERANCE))

    @staticmethod
    def total_paid(invoice: Invoice) -> Decimal:
        return sum((Decimal(p.amount) for p in invoice.payments), ZERO)

    @classmethod
    def remaining_balance(cls, invoice: Invoice) -> Decimal:
        remaining = Decimal(invoice.total or 0) - cls.total_paid(invoice)
        return remaining if remaining > 0 else ZERO

    @classmethod
    def append_payment(
        cls,
        invoice: Invoice,
        payment_data: PaymentCreate,
        user_id: Optional[UUID] = None,
        now: Optional[datetime] = None
    ) -> InvoicePayment:
        """
        Validar y agregar un pago al ledger de la factura.

        No hace commit: el servicio persiste la entrada junto con la factura en
        la misma transacción.

        Raises:
            InvalidPaymentAmount: si el monto no es mayor a 0.
            OverpaymentRejected: si la suma de pagos superaría el total (+ε).
        """
        # The ledger column keeps cents; checks run on the value that gets stored
        amount = _to_decimal(payment_data.amount).quantize(CENT, rounding=ROUND_HALF_UP)
        if amount <= 0:
            raise InvalidPaymentAmount(amount)

        total = Decimal(invoice.total or 0)
        existing_sum = cls.total_paid(invoice)
        proposed_sum = existing_sum + amount

        if proposed_sum > total + cls.tolerance():
            max_acceptable = total - existing_sum
            logger.info(
                f"Overpayment rejected on invoice {invoice.invoice_number}: "
                f"{existing_sum} + {amount} > {total}"
            )
            raise OverpaymentRejected(amount, max_acceptable if max_acceptable > 0 else ZERO)

        now = now or datetime.now(timezone.utc)
        payment = InvoicePayment(
            tenant_id=invoice.tenant_id,
            sequence=len(invoice.payments) + 1,
            amount=amount,
            date=payment_data.date or now,
            method=payment_data.method,
            note=payment_data.note,
            created_by=user_id,
            created_at=now
        )
        invoice.payments.append(payment)
        return payment


def normalize_legacy_payment(raw: Dict[str, Any]) -> PaymentCreate:
    """
    Traducir un pago heredado al formato canónico.

    Los ledgers anteriores guardaban el monto como amount, paid, total o
    paidAmount, y la nota como note o reference. Esta es la única conversión;
    el resto del motor solo conoce `amount`.
    """
    amount = None
    for key in _LEGACY_AMOUNT_KEYS:
        if raw.get(key) not in (None, ""):
            amount = raw[key]
            break
    if amount is None:
        raise ValidationFailed("El pago importado no tiene monto", {"payment": {k: str(v) for k, v in raw.items()}})

    return PaymentCreate(
        amount=_to_decimal(amount),
        date=raw.get("date") or None,
        method=raw.get("method") or None,
        note=raw.get("note") or raw.get("reference") or None
    )
