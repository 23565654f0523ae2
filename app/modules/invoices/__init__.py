"""
Módulo de Facturación (Invoices)

- Numeración por empresa con reintento ante conflicto (numbering)
- Ledger de pagos de solo agregado, sin sobrepago (ledger)
- Ciclo Draft -> Sent condicionado al pago total (state)
- Servicio transaccional del agregado y router HTTP

Tablas principales:
- invoices: Facturas
- invoice_line_items: Ítems de factura
- invoice_payments: Ledger de pagos
"""

from .models import Invoice, InvoiceLineItem, InvoicePayment
from .schemas import (
    InvoiceCreate, InvoiceOut, InvoiceDetail,
    PaymentCreate, PaymentOut
)
from .service import InvoiceService
from .router import router

__all__ = [
    "Invoice", "InvoiceLineItem", "InvoicePayment",
    "InvoiceCreate", "InvoiceOut", "InvoiceDetail",
    "PaymentCreate", "PaymentOut",
    "InvoiceService",
    "router"
]
