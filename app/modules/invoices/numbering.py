"""
Asignación de números de factura por tenant.

El asignador solo propone un candidato; no reserva ni bloquea nada. La
unicidad la garantiza la restricción (tenant_id, invoice_number) y el servicio
reintenta con un candidato nuevo cuando otra transacción ganó la carrera.
"""
from dataclasses import dataclass
from datetime import date
from typing import Iterable, Optional, Union
from uuid import UUID
import re
import logging

from sqlalchemy.orm import Session

from app.core.config import settings
from app.modules.invoices.models import Invoice, NumberFormat

logger = logging.getLogger(__name__)

_NUMERIC_RE = re.compile(r"^\d+$")


@dataclass(frozen=True)
class NumberingPolicy:
    """Cota y espera del ciclo de reintentos ante conflictos de número."""
    max_attempts: int = 5
    backoff_seconds: float = 0.0

    @classmethod
    def from_settings(cls) -> "NumberingPolicy":
        return cls(
            max_attempts=settings.INVOICE_NUMBER_MAX_ATTEMPTS,
            backoff_seconds=settings.INVOICE_NUMBER_RETRY_BACKOFF
        )


def resolve_format(number_format: Union[NumberFormat, str, None]) -> NumberFormat:
    if number_format is None:
        number_format = settings.INVOICE_NUMBER_FORMAT
    if isinstance(number_format, NumberFormat):
        return number_format
    value = str(number_format).lower()
    if value == "year":
        value = NumberFormat.YEARLY.value
    return NumberFormat(value)


def next_numeric(existing: Iterable[str]) -> str:
    """max(n) + 1 over the numbers made only of digits; others are ignored."""
    highest = 0
    for raw in existing:
        if raw and _NUMERIC_RE.match(raw.strip()):
            highest = max(highest, int(raw.strip()))
    return str(highest + 1)


def next_yearly(existing: Iterable[str], year: int) -> str:
    """'{year}-{seq:04d}' continuing the highest suffix already used this year."""
    prefix = f"{year}-"
    highest = 0
    for raw in existing:
        if not raw or not raw.startswith(prefix):
            continue
        suffix = raw.rsplit("-", 1)[-1]
        if suffix.isdigit():
            highest = max(highest, int(suffix))
    return f"{year}-{highest + 1:04d}"


class SequenceAllocator:

    def next_candidate(
        self,
        db: Session,
        tenant_id: UUID,
        number_format: Union[NumberFormat, str, None] = None,
        today: Optional[date] = None
    ) -> str:
        fmt = resolve_format(number_format)
        query = db.query(Invoice.invoice_number).filter(Invoice.tenant_id == tenant_id)

        if fmt == NumberFormat.YEARLY:
            year = (today or date.today()).year
            query = query.filter(Invoice.invoice_number.like(f"{year}-%"))
            candidate = next_yearly((row[0] for row in query), year)
        else:
            candidate = next_numeric(row[0] for row in query)

        logger.debug(f"Invoice number candidate {candidate} ({fmt.value}) for tenant {tenant_id}")
        return candidate
