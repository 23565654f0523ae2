from app.modules.documents.renderer import InvoiceDocumentRenderer


def test_render_returns_pdf():
    data = {
        "number": "12",
        "customer_name": "Cliente",
        "issue_date": "16/01/2026",
        "total_amount": "100.00",
        "total_paid": "100.00",
        "balance_due": "0.00",
        "line_items": [
            {"description": f"Turno {n}", "quantity": "1", "unit_rate": "2.50",
             "tax_rate_percent": "0", "line_total": "2.50"}
            for n in range(40)
        ],
    }

    pdf = InvoiceDocumentRenderer().render(data, "Seguridad Andina")

    assert pdf.startswith(b"%PDF")
    assert pdf.rstrip().endswith(b"%%EOF")


def test_render_without_items():
    pdf = InvoiceDocumentRenderer().render({"number": "1"})
    assert pdf.startswith(b"%PDF")
