from .renderer import InvoiceDocumentRenderer

__all__ = ["InvoiceDocumentRenderer"]
