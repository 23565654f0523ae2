"""
Módulo de email: envío de la factura con su PDF adjunto.
"""

from .service import email_service
from .tasks import send_invoice_email_task

__all__ = [
    'email_service',
    'send_invoice_email_task'
]
