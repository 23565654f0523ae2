from app.database.database import Base
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, UniqueConstraint, Numeric, Enum, Date, Text
from sqlalchemy.orm import relationship
from sqlalchemy.dialects.postgresql import UUID
from uuid import uuid4
from app.common.mixins import TenantMixin, TimestampMixin, SoftDeleteMixin
import enum


class InvoiceStatus(enum.Enum):
    DRAFT = "draft"      # Borrador, admite cambios y pagos
    SENT = "sent"        # Enviada; sellada si además está pagada


class NumberFormat(enum.Enum):
    NUMERIC = "numeric"  # 1, 2, 3...
    YEARLY = "yearly"    # 2026-0001, 2026-0002...


class Invoice(Base, TenantMixin, TimestampMixin, SoftDeleteMixin):
    __tablename__ = "invoices"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)

    # References (validated against the tenant before being stored)
    client_id = Column(UUID(as_uuid=True), ForeignKey("client_accounts.id"), nullable=True, index=True)
    post_site_id = Column(UUID(as_uuid=True), ForeignKey("post_sites.id"), nullable=True, index=True)
    created_by = Column(UUID(as_uuid=True), nullable=True)
    updated_by = Column(UUID(as_uuid=True), nullable=True)

    # Invoice data
    invoice_number = Column(String(50), nullable=False)
    po_so_number = Column(String(50), nullable=True)
    title = Column(String(100), nullable=True)
    summary = Column(String(255), nullable=True)
    status = Column(Enum(InvoiceStatus), nullable=False, default=InvoiceStatus.DRAFT)
    sent_at = Column(DateTime(timezone=True), nullable=True)

    # Dates
    issue_date = Column(Date, nullable=True)
    due_date = Column(Date, nullable=True)

    notes = Column(Text, nullable=True)
    import_hash = Column(String(255), nullable=True)

    # Totals (derived from line items)
    subtotal = Column(Numeric(15, 2), nullable=False, default=0)
    tax_total = Column(Numeric(15, 2), nullable=False, default=0)
    total = Column(Numeric(15, 2), nullable=False, default=0)

    client = relationship("ClientAccount")
    post_site = relationship("PostSite")
    line_items = relationship(
        "InvoiceLineItem",
        back_populates="invoice",
        cascade="all, delete-orphan",
        order_by="InvoiceLineItem.position"
    )
    payments = relationship(
        "InvoicePayment",
        back_populates="invoice",
        cascade="all, delete-orphan",
        order_by="InvoicePayment.sequence"
    )

    __table_args__ = (
        UniqueConstraint("tenant_id", "invoice_number", name="uq_invoice_tenant_number"),
        UniqueConstraint("tenant_id", "import_hash", name="uq_invoice_tenant_import_hash"),
    )

    @property
    def paid_amount(self):
        """Suma del ledger; nunca se guarda como columna."""
        from app.modules.invoices.ledger import PaymentLedger
        return PaymentLedger.total_paid(self)

    @property
    def balance_due(self):
        from app.modules.invoices.ledger import PaymentLedger
        return PaymentLedger.remaining_balance(self)

    @property
    def is_locked(self):
        from app.modules.invoices.state import InvoiceStateMachine
        return InvoiceStateMachine.is_locked(self)


class InvoiceLineItem(Base):
    __tablename__ = "invoice_line_items"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    invoice_id = Column(UUID(as_uuid=True), ForeignKey("invoices.id", ondelete="CASCADE"), nullable=False, index=True)
    position = Column(Integer, nullable=False, default=0)

    description = Column(String(255), nullable=False)
    quantity = Column(Numeric(10, 3), nullable=False)
    unit_rate = Column(Numeric(15, 2), nullable=False)
    tax_rate_percent = Column(Numeric(5, 2), nullable=False, default=0)

    # Line calculations
    line_subtotal = Column(Numeric(15, 2), nullable=False)  # quantity * unit_rate
    line_tax = Column(Numeric(15, 2), nullable=False)       # line_subtotal * tax_rate_percent / 100
    line_total = Column(Numeric(15, 2), nullable=False)     # line_subtotal + line_tax

    invoice = relationship("Invoice", back_populates="line_items")


class InvoicePayment(Base, TenantMixin):
    """Entrada del ledger de pagos. Solo se agrega, nunca se edita ni se borra."""
    __tablename__ = "invoice_payments"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    invoice_id = Column(UUID(as_uuid=True), ForeignKey("invoices.id", ondelete="CASCADE"), nullable=False, index=True)
    sequence = Column(Integer, nullable=False)  # 1-based position in the ledger

    amount = Column(Numeric(15, 2), nullable=False)
    date = Column(DateTime(timezone=True), nullable=False)
    method = Column(String(50), nullable=True)
    note = Column(Text, nullable=True)
    created_by = Column(UUID(as_uuid=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False)

    invoice = relationship("Invoice", back_populates="payments")

    __table_args__ = (
        UniqueConstraint("invoice_id", "sequence", name="uq_payment_invoice_sequence"),
    )
