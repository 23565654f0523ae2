from fastapi import APIRouter, Depends, status, Query
from fastapi.responses import Response
from typing import Annotated, List, Optional
from uuid import UUID
from decimal import Decimal

from app.dependencies.dbDependecies import db_dependency
from app.dependencies.companyDependencies import TenantId
from app.dependencies.userDependencies import CurrentUserId
from app.modules.invoices.service import InvoiceService
from app.modules.invoices.schemas import (
    InvoiceCreate, InvoiceDetail, InvoiceList, InvoiceUpdate, InvoiceFilters, InvoiceStatus,
    InvoiceImport, InvoiceAutocomplete, InvoiceSendResult, PaymentCreate, PaymentList
)


def get_invoice_service(db: db_dependency) -> InvoiceService:
    return InvoiceService(db)


InvoiceServiceDep = Annotated[InvoiceService, Depends(get_invoice_service)]

# Router principal del módulo de facturas
router = APIRouter(prefix="/invoices", tags=["Invoices"])


@router.post("/", response_model=InvoiceDetail, status_code=status.HTTP_201_CREATED)
def create_invoice(
    invoice_data: InvoiceCreate,
    service: InvoiceServiceDep,
    tenant_id: TenantId,
    user_id: CurrentUserId
):
    """
    Crear una nueva factura en borrador.

    Si no se envía `invoice_number`, se asigna el siguiente número de la
    empresa. Responde 503 si no fue posible asignarlo tras varios intentos.
    """
    return service.create_invoice(invoice_data, tenant_id, user_id)


@router.get("/", response_model=InvoiceList)
def list_invoices(
    service: InvoiceServiceDep,
    tenant_id: TenantId,
    user_id: CurrentUserId,
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    order_by: Optional[str] = Query(None, description="Ej: created_at_DESC, invoice_number_ASC"),
    invoice_number: Optional[str] = Query(None, description="Contiene el texto"),
    client_id: Optional[UUID] = Query(None, description="Filtrar por cliente"),
    post_site_id: Optional[UUID] = Query(None, description="Filtrar por sitio"),
    status: Optional[InvoiceStatus] = Query(None, description="Estado de la factura"),
    total_min: Optional[Decimal] = Query(None, description="Total mínimo"),
    total_max: Optional[Decimal] = Query(None, description="Total máximo")
):
    """Listar facturas con filtros"""
    filters = InvoiceFilters(
        invoice_number=invoice_number,
        client_id=client_id,
        post_site_id=post_site_id,
        status=status,
        total_min=total_min,
        total_max=total_max
    )
    return service.find_and_count_all(tenant_id, filters, limit, offset, order_by)


@router.get("/autocomplete", response_model=List[InvoiceAutocomplete])
def autocomplete_invoices(
    service: InvoiceServiceDep,
    tenant_id: TenantId,
    user_id: CurrentUserId,
    query: Optional[str] = Query(None, description="Número o id de la factura"),
    limit: Optional[int] = Query(None, ge=1, le=100)
):
    return service.find_all_autocomplete(tenant_id, query, limit)


@router.post("/import", response_model=InvoiceDetail, status_code=status.HTTP_201_CREATED)
def import_invoice(
    import_data: InvoiceImport,
    service: InvoiceServiceDep,
    tenant_id: TenantId,
    user_id: CurrentUserId
):
    """
    Importar una factura de otro sistema.

    Requiere `import_hash`; una segunda importación con el mismo hash se
    rechaza. Los pagos heredados se registran a través del ledger.
    """
    return service.import_invoice(import_data, tenant_id, user_id)


@router.delete("/")
def destroy_invoices(
    service: InvoiceServiceDep,
    tenant_id: TenantId,
    user_id: CurrentUserId,
    ids: List[UUID] = Query(...)
):
    """Eliminar varias facturas. Si alguna no se puede eliminar no se elimina ninguna."""
    deleted = service.destroy_all(ids, tenant_id, user_id)
    return {"message": f"{deleted} factura(s) eliminada(s)", "deleted": deleted}


@router.get("/{invoice_id}", response_model=InvoiceDetail)
def get_invoice(
    invoice_id: UUID,
    service: InvoiceServiceDep,
    tenant_id: TenantId,
    user_id: CurrentUserId
):
    """Obtener detalles completos de una factura"""
    return service.find_by_id(invoice_id, tenant_id)


@router.put("/{invoice_id}", response_model=InvoiceDetail)
def update_invoice(
    invoice_id: UUID,
    invoice_data: InvoiceUpdate,
    service: InvoiceServiceDep,
    tenant_id: TenantId,
    user_id: CurrentUserId
):
    """
    Actualizar una factura.

    Una factura enviada y pagada no admite cambios (423).
    """
    return service.update_invoice(invoice_id, invoice_data, tenant_id, user_id)


@router.delete("/{invoice_id}")
def destroy_invoice(
    invoice_id: UUID,
    service: InvoiceServiceDep,
    tenant_id: TenantId,
    user_id: CurrentUserId
):
    service.destroy_invoice(invoice_id, tenant_id, user_id)
    return {"message": "Factura eliminada exitosamente"}


# --- PAGOS ---

@router.post("/{invoice_id}/payments", response_model=InvoiceDetail, status_code=status.HTTP_201_CREATED)
def record_payment(
    invoice_id: UUID,
    payment_data: PaymentCreate,
    service: InvoiceServiceDep,
    tenant_id: TenantId,
    user_id: CurrentUserId
):
    """
    Registrar un pago para una factura.

    Permite pagos parciales; un pago que haría superar el total se rechaza
    (409) indicando el monto máximo aceptable.
    """
    return service.record_payment(invoice_id, payment_data, tenant_id, user_id)


@router.get("/{invoice_id}/payments", response_model=PaymentList)
def list_payments(
    invoice_id: UUID,
    service: InvoiceServiceDep,
    tenant_id: TenantId,
    user_id: CurrentUserId
):
    """Ledger de pagos de la factura, en orden"""
    return service.list_payments(invoice_id, tenant_id)


# --- ENVÍO ---

@router.post("/{invoice_id}/send", response_model=InvoiceSendResult)
def send_invoice(
    invoice_id: UUID,
    service: InvoiceServiceDep,
    tenant_id: TenantId,
    user_id: CurrentUserId
):
    """
    Enviar la factura al cliente.

    Solo se permite si está totalmente pagada (409 con el saldo pendiente en
    otro caso). El correo con el PDF se envía en segundo plano; si no se pudo
    encolar, la factura queda enviada igualmente.
    """
    return service.send_invoice(invoice_id, tenant_id, user_id)


# --- DESCARGA ---

@router.get("/{invoice_id}/download")
def download_invoice(
    invoice_id: UUID,
    service: InvoiceServiceDep,
    tenant_id: TenantId,
    user_id: CurrentUserId,
    document_format: str = Query("pdf", alias="format", description="Formato del documento (solo pdf)")
):
    """Descargar la factura como PDF. Otros formatos responden 400."""
    content = service.export_document(invoice_id, tenant_id, document_format)
    return Response(
        content=content,
        media_type="application/pdf",
        headers={"Content-Disposition": f"attachment; filename=invoice-{invoice_id}.pdf"}
    )
