"""
PDF de la factura enviada, generado con reportlab.

Trabaja sobre el payload serializado del evento InvoiceSent, así la tarea de
Celery no necesita abrir una sesión de base de datos.
"""
from io import BytesIO
from typing import Any, Dict

from reportlab.lib.colors import HexColor
from reportlab.lib.pagesizes import A4
from reportlab.pdfgen import canvas

NAVY = HexColor('#1B2A4A')
SLATE = HexColor('#64748B')
SLATE_PALE = HexColor('#F1F5F9')

W, H = A4
MARGIN = 45
CONTENT_W = W - 2 * MARGIN
ROW_H = 18


class InvoiceDocumentRenderer:

    def render(self, invoice_data: Dict[str, Any], company_name: str = "") -> bytes:
        buffer = BytesIO()
        self.c = canvas.Canvas(buffer, pagesize=A4)
        self.c.setTitle(f"Factura {invoice_data.get('number', '')}")
        self.c.setAuthor(company_name or "Facturación")
        self.y = H - MARGIN

        self._header(invoice_data, company_name)
        self._items(invoice_data.get("line_items") or [])
        self._totals(invoice_data)

        self.c.showPage()
        self.c.save()
        return buffer.getvalue()

    def _new_page_if_needed(self, needed: float):
        if self.y - needed < MARGIN:
            self.c.showPage()
            self.y = H - MARGIN

    def _header(self, data: Dict[str, Any], company_name: str):
        c = self.c
        c.setFillColor(NAVY)
        c.setFont("Helvetica-Bold", 20)
        c.drawString(MARGIN, self.y - 20, f"Factura {data.get('number', '')}")
        if company_name:
            c.setFont("Helvetica", 10)
            c.drawRightString(W - MARGIN, self.y - 16, company_name)
        self.y -= 44

        c.setFillColor(SLATE)
        c.setFont("Helvetica", 10)
        c.drawString(MARGIN, self.y, f"Cliente: {data.get('customer_name') or 'Cliente'}")
        self.y -= 14
        if data.get("issue_date"):
            c.drawString(MARGIN, self.y, f"Fecha: {data['issue_date']}")
            self.y -= 14
        if data.get("due_date"):
            c.drawString(MARGIN, self.y, f"Vencimiento: {data['due_date']}")
            self.y -= 14
        self.y -= 10

    def _items(self, items):
        c = self.c
        columns = (
            ("Descripción", MARGIN + 4, False),
            ("Cantidad", MARGIN + CONTENT_W * 0.58, True),
            ("Tarifa", MARGIN + CONTENT_W * 0.72, True),
            ("Imp. %", MARGIN + CONTENT_W * 0.84, True),
            ("Total", MARGIN + CONTENT_W - 4, True),
        )

        c.setFillColor(SLATE_PALE)
        c.rect(MARGIN, self.y - ROW_H + 4, CONTENT_W, ROW_H, stroke=0, fill=1)
        c.setFillColor(NAVY)
        c.setFont("Helvetica-Bold", 9)
        for label, x, right in columns:
            (c.drawRightString if right else c.drawString)(x, self.y - 9, label)
        self.y -= ROW_H + 2

        c.setFont("Helvetica", 9)
        for item in items:
            self._new_page_if_needed(ROW_H)
            values = (
                str(item.get("description", ""))[:60],
                str(item.get("quantity", "")),
                str(item.get("unit_rate", "")),
                str(item.get("tax_rate_percent", "")),
                str(item.get("line_total", "")),
            )
            for value, (_, x, right) in zip(values, columns):
                (c.drawRightString if right else c.drawString)(x, self.y - 9, value)
            self.y -= ROW_H

    def _totals(self, data: Dict[str, Any]):
        self._new_page_if_needed(3 * ROW_H + 10)
        c = self.c
        self.y -= 10
        c.setStrokeColor(SLATE)
        c.line(MARGIN + CONTENT_W * 0.55, self.y, W - MARGIN, self.y)
        self.y -= 14

        rows = (
            ("Total", data.get("total_amount", "0.00")),
            ("Pagado", data.get("total_paid", "0.00")),
            ("Saldo", data.get("balance_due", "0.00")),
        )
        for label, value in rows:
            c.setFont("Helvetica-Bold" if label == "Total" else "Helvetica", 10)
            c.drawString(MARGIN + CONTENT_W * 0.58, self.y, label)
            c.drawRightString(W - MARGIN - 4, self.y, str(value))
            self.y -= 14
