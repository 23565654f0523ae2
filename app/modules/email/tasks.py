"""
Tareas asíncronas de Celery para el envío de correos electrónicos.
"""
import logging
from typing import Dict, Any, Optional
from app.core.celery import celery_app
from app.modules.documents.renderer import InvoiceDocumentRenderer
from app.modules.email.service import email_service

logger = logging.getLogger(__name__)


@celery_app.task(bind=True, max_retries=3)
def send_invoice_email_task(
    self,
    to_email: str,
    invoice_data: Dict[str, Any],
    company_data: Dict[str, Any],
    custom_message: Optional[str] = None,
    subject: Optional[str] = None
):
    """
    Enviar factura por correo electrónico con PDF adjunto.

    Args:
        to_email: Email del destinatario
        invoice_data: Payload del evento InvoiceSent (número, fechas, totales, items)
        company_data: Datos de la empresa
        custom_message: Mensaje personalizado opcional
        subject: Asunto personalizado opcional
    """
    company_name = company_data.get("name") or "Su Empresa"
    invoice_number = invoice_data.get("number", "N/A")

    try:
        pdf_content = InvoiceDocumentRenderer().render(invoice_data, company_name)
        logger.info(f"Invoice {invoice_number} PDF rendered ({len(pdf_content)} bytes)")

        context = {
            "company_name": company_name,
            "customer_name": invoice_data.get("customer_name", "Cliente"),
            "invoice_number": invoice_number,
            "invoice_date": invoice_data.get("issue_date") or "",
            "due_date": invoice_data.get("due_date"),
            "total_amount": invoice_data.get("total_amount", "0.00"),
            "total_paid": invoice_data.get("total_paid", "0.00"),
            "custom_message": custom_message,
        }

        if not subject:
            subject = f"Factura {invoice_number} - {company_name}"

        success = email_service.send_template_email(
            to_emails=[to_email],
            subject=subject,
            template_name="invoice_email.html",
            context=context,
            attachments=[(f"factura-{invoice_number}.pdf", pdf_content)]
        )

        if not success:
            raise Exception("Failed to send invoice email")

        logger.info(f"Invoice email sent successfully to {to_email}")
        return {"status": "success", "recipient": to_email, "invoice_number": invoice_number}

    except Exception as exc:
        logger.error(f"Invoice email sending failed to {to_email}: {str(exc)}", exc_info=True)

        # Retry with exponential backoff
        if self.request.retries < self.max_retries:
            logger.info(f"Retrying invoice email task (attempt {self.request.retries + 1}/{self.max_retries})")
            raise self.retry(exc=exc, countdown=60 * (2 ** self.request.retries))

        logger.error(f"Invoice email task failed permanently after {self.max_retries} retries")
        return {"status": "failed", "error": str(exc), "recipient": to_email, "invoice_number": invoice_number}
