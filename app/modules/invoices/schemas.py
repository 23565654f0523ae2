from pydantic import BaseModel, Field, field_validator, model_validator, ConfigDict
from decimal import Decimal
from typing import Optional, List, Dict, Any
from uuid import UUID
from datetime import date, datetime
from enum import Enum


class InvoiceStatus(str, Enum):
    DRAFT = "draft"
    SENT = "sent"


class NumberFormat(str, Enum):
    NUMERIC = "numeric"
    YEARLY = "yearly"


# Invoice Line Item Schemas
class InvoiceLineItemCreate(BaseModel):
    description: str = Field(..., min_length=1, max_length=255)
    quantity: Decimal = Field(..., gt=0, description="Cantidad debe ser mayor a 0")
    unit_rate: Decimal = Field(..., ge=0, description="Tarifa unitaria sin impuestos")
    tax_rate_percent: Decimal = Field(Decimal("0"), ge=0, le=100)


class InvoiceLineItemOut(BaseModel):
    id: UUID
    position: int
    description: str
    quantity: Decimal
    unit_rate: Decimal
    tax_rate_percent: Decimal
    line_subtotal: Decimal
    line_tax: Decimal
    line_total: Decimal

    model_config = ConfigDict(from_attributes=True)


# Invoice Schemas
class InvoiceCreate(BaseModel):
    invoice_number: Optional[str] = Field(None, max_length=50, description="Si se omite se asigna automáticamente")
    client_id: Optional[UUID] = None
    post_site_id: Optional[UUID] = None
    po_so_number: Optional[str] = Field(None, max_length=50)
    title: Optional[str] = Field(None, max_length=100)
    summary: Optional[str] = Field(None, max_length=255)
    issue_date: Optional[date] = None
    due_date: Optional[date] = None
    notes: Optional[str] = Field(None, max_length=1000)
    items: List[InvoiceLineItemCreate] = Field(..., min_length=1, description="Debe incluir al menos un item")
    # Solo se validan contra el cálculo de los items
    subtotal: Optional[Decimal] = None
    total: Optional[Decimal] = None

    @field_validator('invoice_number')
    @classmethod
    def validate_invoice_number(cls, v):
        if v is not None:
            v = v.strip()
            if not v:
                return None
        return v

    @model_validator(mode='after')
    def validate_due_date(self):
        if self.due_date and self.issue_date and self.due_date < self.issue_date:
            raise ValueError('La fecha de vencimiento no puede ser anterior a la fecha de la factura')
        return self


class InvoiceUpdate(BaseModel):
    invoice_number: Optional[str] = Field(None, max_length=50)
    client_id: Optional[UUID] = None
    post_site_id: Optional[UUID] = None
    po_so_number: Optional[str] = Field(None, max_length=50)
    title: Optional[str] = Field(None, max_length=100)
    summary: Optional[str] = Field(None, max_length=255)
    issue_date: Optional[date] = None
    due_date: Optional[date] = None
    notes: Optional[str] = Field(None, max_length=1000)
    items: Optional[List[InvoiceLineItemCreate]] = Field(None, min_length=1)
    subtotal: Optional[Decimal] = None
    total: Optional[Decimal] = None

    @model_validator(mode='after')
    def validate_due_date(self):
        if self.due_date and self.issue_date and self.due_date < self.issue_date:
            raise ValueError('La fecha de vencimiento no puede ser anterior a la fecha de la factura')
        return self


class InvoiceImport(BaseModel):
    import_hash: str = Field(..., min_length=1, max_length=255)
    data: InvoiceCreate
    # Pagos heredados en cualquiera de sus formas (amount/paid/total/paidAmount)
    payments: List[Dict[str, Any]] = Field(default_factory=list)


class PaymentCreate(BaseModel):
    amount: Decimal = Field(..., description="Monto debe ser mayor a 0")
    date: Optional[datetime] = None
    method: Optional[str] = Field(None, max_length=50)
    note: Optional[str] = None


class PaymentOut(BaseModel):
    id: UUID
    invoice_id: UUID
    sequence: int
    amount: Decimal
    date: datetime
    method: Optional[str]
    note: Optional[str]
    created_by: Optional[UUID]
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class PaymentList(BaseModel):
    payments: List[PaymentOut]
    total_paid: Decimal
    balance_due: Decimal


class InvoiceOut(BaseModel):
    id: UUID
    invoice_number: str
    client_id: Optional[UUID]
    post_site_id: Optional[UUID]
    po_so_number: Optional[str]
    title: Optional[str]
    summary: Optional[str]
    status: InvoiceStatus
    sent_at: Optional[datetime]
    issue_date: Optional[date]
    due_date: Optional[date]
    notes: Optional[str]
    subtotal: Decimal
    tax_total: Decimal
    total: Decimal
    paid_amount: Decimal
    balance_due: Decimal
    is_locked: bool
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)

    @field_validator('status', mode='before')
    @classmethod
    def status_value(cls, v):
        return getattr(v, 'value', v)


class InvoiceDetail(InvoiceOut):
    line_items: List[InvoiceLineItemOut]
    payments: List[PaymentOut] = []


class InvoiceList(BaseModel):
    invoices: List[InvoiceOut]
    total: int
    limit: int
    offset: int


class InvoiceFilters(BaseModel):
    """Filtros para búsqueda de facturas"""
    invoice_number: Optional[str] = Field(None, description="Contiene el texto")
    client_id: Optional[UUID] = None
    post_site_id: Optional[UUID] = None
    status: Optional[InvoiceStatus] = None
    total_min: Optional[Decimal] = None
    total_max: Optional[Decimal] = None


class InvoiceAutocomplete(BaseModel):
    id: UUID
    label: str


class InvoiceDestroyAll(BaseModel):
    ids: List[UUID] = Field(..., min_length=1)


class InvoiceSendResult(BaseModel):
    message: str
    invoice: InvoiceDetail
    notification_attempted: bool
    notified_address: Optional[str] = None
