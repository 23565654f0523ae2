"""
Servicio de facturas: frontera transaccional del agregado Invoice.

Cada operación corre en una sola transacción. Cualquier error hace rollback
completo antes de propagarse; los efectos secundarios del envío (PDF y correo)
solo se disparan después del commit.
"""
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union
from uuid import UUID, uuid4
import time
import logging

from fastapi.encoders import jsonable_encoder
from sqlalchemy import asc, desc, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from app.core.config import settings
from app.database.database import get_tenant_query
from app.modules.audit.service import AuditLogService
from app.modules.clients.service import ReferenceResolver
from app.modules.documents.renderer import InvoiceDocumentRenderer
from app.modules.invoices.events import InvoiceNotifier, InvoiceSent
from app.modules.invoices.exceptions import (
    DuplicateInvoiceNumber, InvoiceNotFound, LedgerConflict, RetryExhausted, UnsupportedFormat, ValidationFailed
)
from app.modules.invoices.ledger import PaymentLedger, normalize_legacy_payment
from app.modules.invoices.models import Invoice, InvoiceLineItem, InvoiceStatus, NumberFormat
from app.modules.invoices.numbering import NumberingPolicy, SequenceAllocator
from app.modules.invoices.schemas import (
    InvoiceCreate, InvoiceDetail, InvoiceFilters, InvoiceImport, InvoiceLineItemCreate,
    InvoiceSendResult, InvoiceUpdate, PaymentCreate
)
from app.modules.invoices.state import InvoiceStateMachine

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
ENTITY_NAME = "invoice"
DOCUMENT_FORMATS = ("pdf",)

NUMBER_CONSTRAINT = ("uq_invoice_tenant_number", "invoices.invoice_number")
IMPORT_HASH_CONSTRAINT = ("uq_invoice_tenant_import_hash", "invoices.import_hash")
PAYMENT_SEQUENCE_CONSTRAINT = ("uq_payment_invoice_sequence", "invoice_payments.sequence")

ORDERABLE_FIELDS = {
    "created_at": Invoice.created_at,
    "invoice_number": Invoice.invoice_number,
    "issue_date": Invoice.issue_date,
    "due_date": Invoice.due_date,
    "total": Invoice.total,
    "status": Invoice.status,
}


def _violates(exc: IntegrityError, constraint: Tuple[str, str]) -> bool:
    """
    Saber si un IntegrityError viene de una restricción concreta.

    PostgreSQL (psycopg2) expone el nombre de la restricción en `diag`; SQLite
    solo informa las columnas en el mensaje.
    """
    name, columns_hint = constraint
    diag = getattr(exc.orig, "diag", None)
    constraint_name = getattr(diag, "constraint_name", None)
    if constraint_name:
        return constraint_name == name
    message = str(exc.orig)
    return name in message or columns_hint in message


def _money(value) -> Decimal:
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def compute_line(item: InvoiceLineItemCreate) -> Dict[str, Decimal]:
    line_subtotal = _money(Decimal(item.quantity) * Decimal(item.unit_rate))
    line_tax = _money(line_subtotal * Decimal(item.tax_rate_percent) / Decimal("100"))
    return {
        "line_subtotal": line_subtotal,
        "line_tax": line_tax,
        "line_total": line_subtotal + line_tax,
    }


def compute_totals(items: Iterable[InvoiceLineItemCreate]) -> Tuple[List[Dict[str, Any]], Decimal, Decimal, Decimal]:
    """Calcular líneas y totales: subtotal = Σ cantidad × tarifa, total = subtotal + impuestos."""
    lines = []
    subtotal = Decimal("0.00")
    tax_total = Decimal("0.00")
    for position, item in enumerate(items, start=1):
        figures = compute_line(item)
        subtotal += figures["line_subtotal"]
        tax_total += figures["line_tax"]
        lines.append({
            "position": position,
            "description": item.description,
            "quantity": Decimal(item.quantity),
            "unit_rate": Decimal(item.unit_rate),
            "tax_rate_percent": Decimal(item.tax_rate_percent),
            **figures,
        })
    return lines, subtotal, tax_total, subtotal + tax_total


def _check_supplied_totals(supplied_subtotal, supplied_total, subtotal: Decimal, total: Decimal) -> None:
    if supplied_subtotal is not None and abs(Decimal(supplied_subtotal) - subtotal) > CENT:
        raise ValidationFailed(
            f"El subtotal enviado ({supplied_subtotal}) no coincide con el calculado ({subtotal})",
            {"subtotal": str(subtotal)}
        )
    if supplied_total is not None and abs(Decimal(supplied_total) - total) > CENT:
        raise ValidationFailed(
            f"El total enviado ({supplied_total}) no coincide con el calculado ({total})",
            {"total": str(total)}
        )


class InvoiceService:
    def __init__(
        self,
        db: Session,
        allocator: Optional[SequenceAllocator] = None,
        policy: Optional[NumberingPolicy] = None,
        notifier: Optional[InvoiceNotifier] = None
    ):
        self.db = db
        self.allocator = allocator or SequenceAllocator()
        self.policy = policy or NumberingPolicy.from_settings()
        self.notifier = notifier or InvoiceNotifier()
        self.resolver = ReferenceResolver(db)
        self.audit = AuditLogService(db)

    # ------------------------------------------------------------------
    # Lectura
    # ------------------------------------------------------------------

    def get_invoice_by_id(self, invoice_id: UUID, tenant_id: UUID) -> Invoice:
        """Obtener factura por ID con items y pagos"""
        invoice = get_tenant_query(self.db, Invoice, tenant_id).options(
            selectinload(Invoice.client),
            selectinload(Invoice.line_items),
            selectinload(Invoice.payments)
        ).filter(Invoice.id == invoice_id).first()

        if not invoice:
            raise InvoiceNotFound(invoice_id)
        return invoice

    find_by_id = get_invoice_by_id

    def _get_for_update(self, invoice_id: UUID, tenant_id: UUID) -> Invoice:
        # SELECT ... FOR UPDATE: la fila de la factura es la unidad de exclusión
        invoice = get_tenant_query(self.db, Invoice, tenant_id).filter(
            Invoice.id == invoice_id
        ).populate_existing().with_for_update().first()

        if not invoice:
            raise InvoiceNotFound(invoice_id)
        return invoice

    def find_and_count_all(
        self,
        tenant_id: UUID,
        filters: Optional[InvoiceFilters] = None,
        limit: int = 100,
        offset: int = 0,
        order_by: Optional[str] = None
    ) -> dict:
        """Listar facturas con filtros y paginación"""
        query = get_tenant_query(self.db, Invoice, tenant_id).options(
            selectinload(Invoice.payments)
        )

        if filters:
            if filters.invoice_number:
                query = query.filter(Invoice.invoice_number.ilike(f"%{filters.invoice_number}%"))
            if filters.client_id:
                query = query.filter(Invoice.client_id == filters.client_id)
            if filters.post_site_id:
                query = query.filter(Invoice.post_site_id == filters.post_site_id)
            if filters.status:
                query = query.filter(Invoice.status == InvoiceStatus(filters.status.value))
            if filters.total_min is not None:
                query = query.filter(Invoice.total >= filters.total_min)
            if filters.total_max is not None:
                query = query.filter(Invoice.total <= filters.total_max)

        total = query.count()
        invoices = query.order_by(*self._parse_order_by(order_by)).offset(offset).limit(limit).all()

        return {
            "invoices": invoices,
            "total": total,
            "limit": limit,
            "offset": offset
        }

    @staticmethod
    def _parse_order_by(order_by: Optional[str]):
        """'created_at_DESC' -> (created_at DESC, id)"""
        if not order_by:
            return desc(Invoice.created_at), Invoice.id

        field, _, direction = order_by.rpartition("_")
        if not field:
            field, direction = direction, "ASC"
        column = ORDERABLE_FIELDS.get(field)
        if column is None or direction.upper() not in ("ASC", "DESC"):
            raise ValidationFailed(f"Orden no soportado: {order_by}", {"order_by": order_by})

        direction_fn = desc if direction.upper() == "DESC" else asc
        return direction_fn(column), Invoice.id

    def find_all_autocomplete(self, tenant_id: UUID, search: Optional[str] = None, limit: Optional[int] = None) -> List[dict]:
        query = get_tenant_query(self.db, Invoice, tenant_id)

        if search:
            conditions = [Invoice.invoice_number.ilike(f"%{search}%")]
            try:
                conditions.append(Invoice.id == UUID(search))
            except ValueError:
                pass
            query = query.filter(or_(*conditions))

        query = query.order_by(asc(Invoice.invoice_number))
        if limit:
            query = query.limit(limit)

        return [{"id": invoice.id, "label": invoice.invoice_number} for invoice in query.all()]

    def list_payments(self, invoice_id: UUID, tenant_id: UUID) -> dict:
        """Ledger de pagos en orden de registro"""
        invoice = self.get_invoice_by_id(invoice_id, tenant_id)
        return {
            "payments": list(invoice.payments),
            "total_paid": PaymentLedger.total_paid(invoice),
            "balance_due": PaymentLedger.remaining_balance(invoice)
        }

    def export_document(self, invoice_id: UUID, tenant_id: UUID, document_format: str = "pdf") -> bytes:
        """
        Generar el documento descargable de la factura.

        Usa el mismo payload que el correo de envío, así el PDF descargado y el
        adjunto son idénticos. Solo se soporta PDF.
        """
        document_format = (document_format or "pdf").lower()
        if document_format not in DOCUMENT_FORMATS:
            raise UnsupportedFormat(document_format)

        invoice = self.get_invoice_by_id(invoice_id, tenant_id)
        payload = InvoiceSent.from_invoice(invoice, transitioned=False).to_payload()
        content = InvoiceDocumentRenderer().render(payload, settings.EMAIL_FROM_NAME)

        logger.info(f"Invoice {invoice.invoice_number} exported as {document_format} ({len(content)} bytes)")
        return content

    # ------------------------------------------------------------------
    # Creación
    # ------------------------------------------------------------------

    def create_invoice(
        self,
        invoice_data: InvoiceCreate,
        tenant_id: UUID,
        user_id: Optional[UUID] = None,
        number_format: Union[NumberFormat, str, None] = None
    ) -> Invoice:
        """
        Crear factura en borrador.

        Sin número explícito, el número se asigna y se reintenta ante conflicto
        hasta `policy.max_attempts` veces. Con número explícito hay un único
        intento y un duplicado falla con DuplicateInvoiceNumber.

        Raises:
            RetryExhausted: si todos los candidatos chocaron con otra escritura.
        """
        return self._create(invoice_data, tenant_id, user_id, number_format)

    def import_invoice(
        self,
        import_data: InvoiceImport,
        tenant_id: UUID,
        user_id: Optional[UUID] = None,
        number_format: Union[NumberFormat, str, None] = None
    ) -> Invoice:
        """
        Importar una factura de un sistema anterior.

        El hash de importación es obligatorio y único por empresa. Los pagos
        heredados se traducen una sola vez y pasan por el ledger como cualquier
        otro pago, así que tampoco pueden sobrepagar la factura.
        """
        import_hash = (import_data.import_hash or "").strip()
        if not import_hash:
            raise ValidationFailed("El hash de importación es obligatorio")

        existing = self.db.query(Invoice.id).filter(
            Invoice.tenant_id == tenant_id,
            Invoice.import_hash == import_hash
        ).first()
        if existing:
            raise ValidationFailed(
                "Esta factura ya fue importada",
                {"import_hash": import_hash}
            )

        payments = [normalize_legacy_payment(raw) for raw in import_data.payments]
        return self._create(import_data.data, tenant_id, user_id, number_format, import_hash, payments)

    def _create(
        self,
        invoice_data: InvoiceCreate,
        tenant_id: UUID,
        user_id: Optional[UUID],
        number_format,
        import_hash: Optional[str] = None,
        payments: Iterable[PaymentCreate] = ()
    ) -> Invoice:
        lines, subtotal, tax_total, total = compute_totals(invoice_data.items)
        _check_supplied_totals(invoice_data.subtotal, invoice_data.total, subtotal, total)

        client_id = self.resolver.client_id(invoice_data.client_id, tenant_id)
        post_site_id = self.resolver.post_site_id(invoice_data.post_site_id, tenant_id)
        payments = list(payments)

        explicit_number = invoice_data.invoice_number
        max_attempts = 1 if explicit_number else self.policy.max_attempts

        for attempt in range(1, max_attempts + 1):
            invoice_number = explicit_number or self.allocator.next_candidate(self.db, tenant_id, number_format)
            try:
                invoice = Invoice(
                    id=uuid4(),
                    tenant_id=tenant_id,
                    invoice_number=invoice_number,
                    client_id=client_id,
                    post_site_id=post_site_id,
                    po_so_number=invoice_data.po_so_number,
                    title=invoice_data.title,
                    summary=invoice_data.summary,
                    issue_date=invoice_data.issue_date,
                    due_date=invoice_data.due_date,
                    notes=invoice_data.notes,
                    import_hash=import_hash,
                    status=InvoiceStatus.DRAFT,
                    subtotal=subtotal,
                    tax_total=tax_total,
                    total=total,
                    created_by=user_id,
                    updated_by=user_id,
                    line_items=[InvoiceLineItem(**line) for line in lines],
                    payments=[]
                )
                for payment_data in payments:
                    PaymentLedger.append_payment(invoice, payment_data, user_id)

                self.db.add(invoice)
                self.db.flush()

                self.audit.log(
                    ENTITY_NAME, invoice.id, AuditLogService.CREATE, tenant_id, user_id,
                    jsonable_encoder({
                        "invoice_number": invoice_number,
                        "total": total,
                        "import_hash": import_hash,
                        "payments": len(payments)
                    })
                )
                self.db.commit()

            except IntegrityError as e:
                self.db.rollback()
                if import_hash and _violates(e, IMPORT_HASH_CONSTRAINT):
                    raise ValidationFailed("Esta factura ya fue importada", {"import_hash": import_hash})
                if not _violates(e, NUMBER_CONSTRAINT):
                    logger.error(f"Integrity error creating invoice for tenant {tenant_id}: {str(e.orig)}")
                    raise
                if explicit_number:
                    raise DuplicateInvoiceNumber(explicit_number)

                logger.warning(
                    f"Invoice number {invoice_number} taken for tenant {tenant_id} "
                    f"(attempt {attempt}/{max_attempts})"
                )
                if attempt < max_attempts and self.policy.backoff_seconds:
                    time.sleep(self.policy.backoff_seconds)
                continue

            except Exception:
                self.db.rollback()
                raise

            logger.info(f"Invoice {invoice_number} created for tenant {tenant_id} on attempt {attempt}")
            return self.get_invoice_by_id(invoice.id, tenant_id)

        logger.error(f"Invoice numbering gave up after {max_attempts} attempts for tenant {tenant_id}")
        raise RetryExhausted(max_attempts)

    # ------------------------------------------------------------------
    # Pagos
    # ------------------------------------------------------------------

    def record_payment(
        self,
        invoice_id: UUID,
        payment_data: PaymentCreate,
        tenant_id: UUID,
        user_id: Optional[UUID] = None
    ) -> Invoice:
        """
        Registrar un pago bajo bloqueo de fila.

        Raises:
            InvoiceLocked: la factura ya fue enviada y pagada.
            InvalidPaymentAmount, OverpaymentRejected: validación del ledger.
            LedgerConflict: otro pago tomó la misma posición del ledger.
        """
        try:
            invoice = self._get_for_update(invoice_id, tenant_id)
            InvoiceStateMachine.ensure_mutable(invoice)
            payment = PaymentLedger.append_payment(invoice, payment_data, user_id)
            invoice.updated_by = user_id
            self.db.flush()

            self.audit.log(
                ENTITY_NAME, invoice.id, AuditLogService.PAYMENT, tenant_id, user_id,
                jsonable_encoder({
                    "sequence": payment.sequence,
                    "amount": payment.amount,
                    "method": payment.method
                })
            )
            self.db.commit()
        except IntegrityError as e:
            self.db.rollback()
            if _violates(e, PAYMENT_SEQUENCE_CONSTRAINT):
                logger.warning(f"Concurrent payment detected on invoice {invoice_id}")
                raise LedgerConflict(invoice_id)
            raise
        except Exception:
            self.db.rollback()
            raise

        logger.info(f"Payment #{payment.sequence} of {payment.amount} recorded on invoice {invoice_id}")
        return self.get_invoice_by_id(invoice_id, tenant_id)

    # ------------------------------------------------------------------
    # Edición y borrado
    # ------------------------------------------------------------------

    def update_invoice(
        self,
        invoice_id: UUID,
        invoice_data: InvoiceUpdate,
        tenant_id: UUID,
        user_id: Optional[UUID] = None
    ) -> Invoice:
        """Actualizar una factura que aún no está sellada"""
        try:
            invoice = self._get_for_update(invoice_id, tenant_id)
            InvoiceStateMachine.ensure_mutable(invoice)

            changes = invoice_data.model_dump(exclude_unset=True)
            items = changes.pop("items", None)
            supplied_subtotal = changes.pop("subtotal", None)
            supplied_total = changes.pop("total", None)

            new_number = changes.pop("invoice_number", None)
            if new_number is not None and new_number.strip() != invoice.invoice_number:
                raise ValidationFailed(
                    "El número de factura no se puede modificar",
                    {"invoice_number": invoice.invoice_number}
                )

            if "client_id" in changes:
                changes["client_id"] = self.resolver.client_id(changes["client_id"], tenant_id)
            if "post_site_id" in changes:
                changes["post_site_id"] = self.resolver.post_site_id(changes["post_site_id"], tenant_id)

            for field, value in changes.items():
                setattr(invoice, field, value)

            if invoice.due_date and invoice.issue_date and invoice.due_date < invoice.issue_date:
                raise ValidationFailed("La fecha de vencimiento no puede ser anterior a la fecha de la factura")

            if items is not None:
                lines, subtotal, tax_total, total = compute_totals(invoice_data.items)
                _check_supplied_totals(supplied_subtotal, supplied_total, subtotal, total)

                paid = PaymentLedger.total_paid(invoice)
                if total + PaymentLedger.tolerance() < paid:
                    raise ValidationFailed(
                        f"El nuevo total ({total}) es menor a lo ya pagado ({paid})",
                        {"total": str(total), "paid": str(paid)}
                    )

                invoice.line_items = [InvoiceLineItem(**line) for line in lines]
                invoice.subtotal = subtotal
                invoice.tax_total = tax_total
                invoice.total = total
                changes["total"] = total
            else:
                _check_supplied_totals(
                    supplied_subtotal, supplied_total,
                    Decimal(invoice.subtotal), Decimal(invoice.total)
                )

            invoice.updated_by = user_id
            self.audit.log(
                ENTITY_NAME, invoice.id, AuditLogService.UPDATE, tenant_id, user_id,
                jsonable_encoder(changes)
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        logger.info(f"Invoice {invoice_id} updated by {user_id}")
        return self.get_invoice_by_id(invoice_id, tenant_id)

    def destroy_invoice(self, invoice_id: UUID, tenant_id: UUID, user_id: Optional[UUID] = None) -> None:
        self.destroy_all([invoice_id], tenant_id, user_id)

    def destroy_all(self, ids: Iterable[UUID], tenant_id: UUID, user_id: Optional[UUID] = None) -> int:
        """
        Eliminar facturas (borrado físico). Todo o nada: si alguna no existe o
        está sellada no se elimina ninguna.
        """
        unique_ids = list(dict.fromkeys(ids))
        if not unique_ids:
            return 0

        try:
            invoices = get_tenant_query(self.db, Invoice, tenant_id).filter(
                Invoice.id.in_(unique_ids)
            ).populate_existing().with_for_update().all()

            found = {invoice.id: invoice for invoice in invoices}
            for invoice_id in unique_ids:
                if invoice_id not in found:
                    raise InvoiceNotFound(invoice_id)
            for invoice in invoices:
                InvoiceStateMachine.ensure_mutable(invoice)

            for invoice in invoices:
                self.audit.log(
                    ENTITY_NAME, invoice.id, AuditLogService.DELETE, tenant_id, user_id,
                    {"invoice_number": invoice.invoice_number}
                )
                self.db.delete(invoice)

            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        logger.info(f"Deleted {len(unique_ids)} invoice(s) for tenant {tenant_id}")
        return len(unique_ids)

    # ------------------------------------------------------------------
    # Envío
    # ------------------------------------------------------------------

    def send_invoice(self, invoice_id: UUID, tenant_id: UUID, user_id: Optional[UUID] = None) -> InvoiceSendResult:
        """
        Marcar la factura como enviada y notificar al cliente.

        La transición se confirma primero. La notificación es de mejor
        esfuerzo: si falla, la factura sigue enviada y el resultado lo indica
        con notification_attempted=False.
        """
        try:
            invoice = self._get_for_update(invoice_id, tenant_id)
            transitioned = InvoiceStateMachine.send(invoice, datetime.now(timezone.utc))
            if transitioned:
                invoice.updated_by = user_id
                self.audit.log(
                    ENTITY_NAME, invoice.id, AuditLogService.SEND, tenant_id, user_id,
                    jsonable_encoder({"status": invoice.status.value, "sent_at": invoice.sent_at})
                )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        invoice = self.get_invoice_by_id(invoice_id, tenant_id)
        client_email = self.resolver.client_email(invoice.client_id, tenant_id)
        event = InvoiceSent.from_invoice(invoice, transitioned, client_email)
        attempted, address = self._dispatch(event)

        if attempted:
            message = f"Factura enviada a {address}"
        else:
            message = "Factura procesada. No se envió correo (falta configuración o email)."

        return InvoiceSendResult(
            message=message,
            invoice=InvoiceDetail.model_validate(invoice),
            notification_attempted=attempted,
            notified_address=address
        )

    def _dispatch(self, event: InvoiceSent) -> Tuple[bool, Optional[str]]:
        try:
            return self.notifier.publish(event)
        except Exception as e:
            logger.error(f"Notification for invoice {event.invoice_number} failed: {str(e)}", exc_info=True)
            return False, None
