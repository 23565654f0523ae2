"""
Tests del módulo de email: armado del mensaje, templates y la tarea de
envío de la factura. No se abre ninguna conexión SMTP.
"""

from app.modules.email import tasks
from app.modules.email.service import EmailService


def invoice_payload():
    return {
        "id": "8f1c2c39-7d3f-4a55-9d57-3b1f0f0c2a11",
        "number": "2026-0003",
        "issue_date": "16/01/2026",
        "due_date": "15/02/2026",
        "customer_name": "Cliente de Prueba S.A.S.",
        "total_amount": "288.00",
        "total_paid": "288.00",
        "balance_due": "0.00",
        "line_items": [
            {"description": "Vigilancia", "quantity": "1", "unit_rate": "288.00",
             "tax_rate_percent": "0", "line_total": "288.00"}
        ],
    }


class TestEmailService:

    def test_message_with_attachment(self):
        service = EmailService()
        message = service.build_message(
            ["pagos@cliente.com"],
            "Factura 1",
            html_content="<p>Hola</p>",
            attachments=[("factura-1.pdf", b"%PDF-1.4 test")]
        )

        assert message["To"] == "pagos@cliente.com"
        parts = message.get_payload()
        assert parts[0].get_content_type() == "multipart/alternative"
        assert parts[1].get_filename() == "factura-1.pdf"
        assert parts[1].get_payload(decode=True) == b"%PDF-1.4 test"

    def test_render_invoice_template(self):
        html = EmailService().render_template("invoice_email.html", {
            "company_name": "Seguridad Andina",
            "customer_name": "Cliente <Prueba>",
            "invoice_number": "2026-0003",
            "invoice_date": "16/01/2026",
            "due_date": None,
            "total_amount": "288.00",
            "total_paid": "288.00",
            "custom_message": None,
        })

        assert "2026-0003" in html
        assert "288.00" in html
        assert "Cliente &lt;Prueba&gt;" in html


class TestSendInvoiceEmailTask:

    def test_sends_pdf_attachment(self, monkeypatch):
        sent = {}

        def fake_send(to_emails, subject, template_name, context, attachments=None):
            sent.update(to=to_emails, subject=subject, context=context, attachments=attachments)
            return True

        monkeypatch.setattr(tasks.email_service, "send_template_email", fake_send)

        result = tasks.send_invoice_email_task.run(
            to_email="pagos@cliente.com",
            invoice_data=invoice_payload(),
            company_data={"name": "Seguridad Andina"}
        )

        assert result["status"] == "success"
        assert sent["to"] == ["pagos@cliente.com"]
        assert sent["subject"] == "Factura 2026-0003 - Seguridad Andina"
        filename, content = sent["attachments"][0]
        assert filename == "factura-2026-0003.pdf"
        assert content.startswith(b"%PDF")
