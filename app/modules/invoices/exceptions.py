"""
Errores del motor de facturación.

Cada tipo implica una acción distinta para quien llama, por eso ninguno se
reduce a un 500 genérico.
"""
from decimal import Decimal
from typing import Optional
from uuid import UUID

from fastapi import status

from app.common.exceptions import DomainError


def _money(value: Decimal) -> str:
    return str(Decimal(value).quantize(Decimal("0.01")))


class ValidationFailed(DomainError):
    status_code = 422  # Unprocessable Content
    code = "VALIDATION_FAILED"


class DuplicateInvoiceNumber(ValidationFailed):
    code = "DUPLICATE_INVOICE_NUMBER"

    def __init__(self, invoice_number: str):
        self.invoice_number = invoice_number
        super().__init__(
            f"Ya existe una factura con el número {invoice_number}",
            {"invoice_number": invoice_number},
        )


class InvalidPaymentAmount(ValidationFailed):
    code = "INVALID_PAYMENT_AMOUNT"

    def __init__(self, amount):
        self.amount = amount
        super().__init__(
            "El monto del pago debe ser mayor a 0",
            {"amount": str(amount)},
        )


class InvoiceNotFound(DomainError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "NOT_FOUND"

    def __init__(self, invoice_id: Optional[UUID] = None):
        self.invoice_id = invoice_id
        extra = {"invoice_id": str(invoice_id)} if invoice_id else None
        super().__init__("Factura no encontrada", extra)


class RetryExhausted(DomainError):
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    code = "RETRY_EXHAUSTED"

    def __init__(self, attempts: int):
        self.attempts = attempts
        super().__init__(
            f"No fue posible asignar un número de factura tras {attempts} intentos. Intente de nuevo más tarde",
            {"attempts": attempts},
        )


class OverpaymentRejected(DomainError):
    status_code = status.HTTP_409_CONFLICT
    code = "OVERPAYMENT_REJECTED"

    def __init__(self, amount: Decimal, max_acceptable: Decimal):
        self.amount = amount
        self.max_acceptable = max_acceptable
        super().__init__(
            f"El pago de {_money(amount)} excede el saldo pendiente. Monto máximo aceptado: {_money(max_acceptable)}",
            {"amount": _money(amount), "max_acceptable": _money(max_acceptable)},
        )


class NotFullyPaid(DomainError):
    status_code = status.HTTP_409_CONFLICT
    code = "NOT_FULLY_PAID"

    def __init__(self, remaining: Decimal):
        self.remaining = remaining
        super().__init__(
            f"La factura no está totalmente pagada. Saldo pendiente: {_money(remaining)}",
            {"remaining": _money(remaining)},
        )


class InvoiceLocked(DomainError):
    status_code = status.HTTP_423_LOCKED
    code = "INVOICE_LOCKED"

    def __init__(self, invoice_id: Optional[UUID] = None):
        self.invoice_id = invoice_id
        extra = {"invoice_id": str(invoice_id)} if invoice_id else None
        super().__init__("La factura fue enviada y pagada; no admite cambios", extra)


class LedgerConflict(DomainError):
    status_code = status.HTTP_409_CONFLICT
    code = "LEDGER_CONFLICT"

    def __init__(self, invoice_id: UUID):
        self.invoice_id = invoice_id
        super().__init__(
            "Otro pago se registró al mismo tiempo sobre esta factura. Reintente la operación",
            {"invoice_id": str(invoice_id)},
        )


class UnsupportedFormat(DomainError):
    status_code = status.HTTP_400_BAD_REQUEST
    code = "UNSUPPORTED_FORMAT"

    def __init__(self, document_format: str):
        self.document_format = document_format
        super().__init__("Formato no soportado", {"format": document_format})
