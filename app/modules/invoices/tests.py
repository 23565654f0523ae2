"""
Tests para el módulo de Facturas

Cubren:
- Numeración por empresa, incluidos escritores concurrentes y reintentos
- Ledger de pagos: nunca sobrepagar, traducción de pagos heredados
- Ciclo Draft -> Sent y sellado de la factura pagada
- Servicio transaccional y endpoints HTTP

Las carreras se simulan con dos sesiones sobre la misma base SQLite: la
segunda confirma su escritura entre la lectura y el insert de la primera.
"""

import pytest
from datetime import date, datetime, timezone
from decimal import Decimal
from uuid import uuid4

from sqlalchemy.orm import selectinload

from app.core.config import settings
from app.modules.audit.models import AuditLog
from app.modules.audit.service import AuditLogService
from app.modules.invoices import service as service_module
from app.modules.invoices.events import InvoiceNotifier, InvoiceSent
from app.modules.invoices.exceptions import (
    DuplicateInvoiceNumber, InvalidPaymentAmount, InvoiceLocked, InvoiceNotFound,
    LedgerConflict, NotFullyPaid, OverpaymentRejected, RetryExhausted, UnsupportedFormat, ValidationFailed
)
from app.modules.invoices.ledger import PaymentLedger, normalize_legacy_payment
from app.modules.invoices.models import Invoice, InvoiceLineItem, InvoicePayment, InvoiceStatus, NumberFormat
from app.modules.invoices.numbering import (
    NumberingPolicy, SequenceAllocator, next_numeric, next_yearly, resolve_format
)
from app.modules.invoices.schemas import (
    InvoiceCreate, InvoiceFilters, InvoiceImport, InvoiceLineItemCreate, InvoiceUpdate, PaymentCreate
)
from app.modules.invoices.service import InvoiceService, compute_totals
from app.modules.invoices.state import InvoiceStateMachine


# ===== HELPERS =====

def invoice_payload(*rates, tax=Decimal("0"), **extra) -> InvoiceCreate:
    """Una línea de cantidad 1 por cada tarifa"""
    items = [
        InvoiceLineItemCreate(
            description=f"Servicio {position}",
            quantity=Decimal("1"),
            unit_rate=Decimal(str(rate)),
            tax_rate_percent=tax
        )
        for position, rate in enumerate(rates or (100,), start=1)
    ]
    return InvoiceCreate(items=items, **extra)


def pay(amount, **extra) -> PaymentCreate:
    return PaymentCreate(amount=Decimal(str(amount)), **extra)


def draft_invoice(total, payments=()) -> Invoice:
    """Factura transitoria (sin sesión) para probar ledger y estados"""
    invoice = Invoice(
        tenant_id=uuid4(),
        invoice_number="1",
        status=InvoiceStatus.DRAFT,
        total=Decimal(str(total))
    )
    for sequence, amount in enumerate(payments, start=1):
        invoice.payments.append(InvoicePayment(
            sequence=sequence,
            amount=Decimal(str(amount)),
            date=datetime.now(timezone.utc),
            created_at=datetime.now(timezone.utc)
        ))
    return invoice


def fresh_invoice(session_factory, invoice_id):
    """Leer la factura desde una sesión nueva, sin caché de identidad"""
    session = session_factory()
    try:
        return session.query(Invoice).options(
            selectinload(Invoice.line_items),
            selectinload(Invoice.payments)
        ).filter(Invoice.id == invoice_id).first()
    finally:
        session.close()


def count_rows(session_factory, model) -> int:
    with session_factory() as session:
        return session.query(model).count()


class RecordingNotifier(InvoiceNotifier):
    def __init__(self):
        self.events = []

    def publish(self, event: InvoiceSent):
        self.events.append(event)
        if event.client_email:
            return True, event.client_email
        return False, None


class FailingNotifier(InvoiceNotifier):
    def publish(self, event: InvoiceSent):
        raise RuntimeError("SMTP caído")


class InterleavingAllocator(SequenceAllocator):
    """
    Después de calcular el primer candidato deja correr a otro escritor
    completo, como si su commit llegara justo antes del insert propio.
    """

    def __init__(self, competitor=None):
        self.competitor = competitor
        self.calls = 0

    def next_candidate(self, db, tenant_id, number_format=None, today=None):
        candidate = super().next_candidate(db, tenant_id, number_format, today)
        self.calls += 1
        if self.calls == 1 and self.competitor:
            self.competitor()
        return candidate


class StuckAllocator(SequenceAllocator):
    """Siempre propone el mismo número"""

    def __init__(self, number):
        self.number = number
        self.calls = 0

    def next_candidate(self, db, tenant_id, number_format=None, today=None):
        self.calls += 1
        return self.number


# ===== FIXTURES =====

@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def service(db_session, notifier):
    return InvoiceService(db_session, notifier=notifier)


@pytest.fixture
def paid_invoice(service, sample_company, sample_user, sample_client):
    invoice = service.create_invoice(invoice_payload(100, client_id=sample_client.id), sample_company, sample_user)
    service.record_payment(invoice.id, pay(100), sample_company, sample_user)
    return invoice.id


@pytest.fixture
def sent_invoice(service, paid_invoice, sample_company, sample_user):
    service.send_invoice(paid_invoice, sample_company, sample_user)
    return paid_invoice


# ===== TESTS DE NUMERACIÓN =====

class TestNumberingRules:
    """Reglas puras de formato de número"""

    def test_numeric_starts_at_one(self):
        assert next_numeric([]) == "1"

    def test_numeric_continues_from_highest(self):
        assert next_numeric(["1", "2", "7"]) == "8"

    def test_numeric_ignores_non_numeric_numbers(self):
        assert next_numeric(["3", "2026-0009", "A7", ""]) == "4"

    def test_numeric_is_not_padded(self):
        assert next_numeric(["009"]) == "10"

    def test_yearly_continues_current_year_only(self):
        existing = ["2026-0001", "2026-0002", "2025-0099"]
        assert next_yearly(existing, 2026) == "2026-0003"

    def test_yearly_starts_each_year_at_one(self):
        assert next_yearly(["2025-0099"], 2026) == "2026-0001"

    def test_resolve_format(self):
        assert resolve_format("year") == NumberFormat.YEARLY
        assert resolve_format("yearly") == NumberFormat.YEARLY
        assert resolve_format(NumberFormat.NUMERIC) == NumberFormat.NUMERIC
        assert resolve_format(None) == NumberFormat(settings.INVOICE_NUMBER_FORMAT)

    def test_resolve_format_rejects_unknown(self):
        with pytest.raises(ValueError):
            resolve_format("roman")

    def test_policy_from_settings(self):
        policy = NumberingPolicy.from_settings()
        assert policy.max_attempts == 5
        assert policy.backoff_seconds == 0.0


class TestSequenceAllocator:
    """Candidatos leídos de la base, por empresa"""

    def test_yearly_candidate_from_database(self, service, db_session, sample_company):
        for number in ("2026-0001", "2026-0002", "2025-0099"):
            service.create_invoice(invoice_payload(10, invoice_number=number), sample_company)

        candidate = SequenceAllocator().next_candidate(
            db_session, sample_company, NumberFormat.YEARLY, today=date(2026, 5, 20)
        )
        assert candidate == "2026-0003"

    def test_candidate_is_scoped_to_tenant(self, service, db_session, sample_company, other_company):
        service.create_invoice(invoice_payload(10, invoice_number="50"), other_company)

        assert SequenceAllocator().next_candidate(db_session, sample_company, "numeric") == "1"
        assert SequenceAllocator().next_candidate(db_session, other_company, "numeric") == "51"


# ===== TESTS DEL LEDGER =====

class TestPaymentLedger:
    """Suma de pagos y regla de no sobrepagar"""

    def test_total_paid_round_trip(self):
        invoice = draft_invoice(100, payments=[30, 70])

        assert PaymentLedger.total_paid(invoice) == Decimal("100")
        assert PaymentLedger.remaining_balance(invoice) == Decimal("0")
        assert InvoiceStateMachine.is_fully_paid(invoice)

    def test_partial_payment_remaining(self):
        invoice = draft_invoice(288, payments=[200])
        assert PaymentLedger.remaining_balance(invoice) == Decimal("88.00")

    def test_append_assigns_sequence(self):
        invoice = draft_invoice(100)
        user_id = uuid4()

        first = PaymentLedger.append_payment(invoice, pay(40, method="transfer"), user_id)
        second = PaymentLedger.append_payment(invoice, pay(10))

        assert (first.sequence, second.sequence) == (1, 2)
        assert first.created_by == user_id
        assert first.method == "transfer"
        assert first.date is not None
        assert PaymentLedger.total_paid(invoice) == Decimal("50")

    def test_overpayment_rejected_without_appending(self):
        invoice = draft_invoice(100, payments=[95])

        with pytest.raises(OverpaymentRejected) as exc_info:
            PaymentLedger.append_payment(invoice, pay("5.01"))

        assert exc_info.value.max_acceptable == Decimal("5")
        assert exc_info.value.extra["max_acceptable"] == "5.00"
        assert len(invoice.payments) == 1

    def test_exact_remaining_is_accepted(self):
        invoice = draft_invoice(100, payments=[95])

        PaymentLedger.append_payment(invoice, pay("5.00"))

        assert PaymentLedger.total_paid(invoice) == Decimal("100.00")

    def test_any_payment_on_settled_invoice_is_rejected(self):
        invoice = draft_invoice(100, payments=[100])

        with pytest.raises(OverpaymentRejected) as exc_info:
            PaymentLedger.append_payment(invoice, pay("0.01"))
        assert exc_info.value.max_acceptable == Decimal("0")

    @pytest.mark.parametrize("amount", ["0", "-10"])
    def test_non_positive_amount_rejected(self, amount):
        invoice = draft_invoice(100)

        with pytest.raises(InvalidPaymentAmount):
            PaymentLedger.append_payment(invoice, pay(amount))
        assert invoice.payments == []

    def test_sub_cent_amount_rejected(self):
        """Un monto que redondeado a centavos es 0 no entra al ledger"""
        invoice = draft_invoice(100)

        with pytest.raises(InvalidPaymentAmount):
            PaymentLedger.append_payment(invoice, pay("0.004"))
        assert invoice.payments == []

    def test_amount_is_rounded_to_cents_before_checks(self):
        invoice = draft_invoice(100, payments=[90])

        payment = PaymentLedger.append_payment(invoice, pay("10.004"))

        assert payment.amount == Decimal("10.00")
        assert PaymentLedger.total_paid(invoice) == Decimal("100.00")

    def test_half_cent_rounds_up(self):
        payment = PaymentLedger.append_payment(draft_invoice(100), pay("10.005"))
        assert payment.amount == Decimal("10.01")

    def test_invalid_amount_is_a_validation_error(self):
        assert issubclass(InvalidPaymentAmount, ValidationFailed)
        assert issubclass(DuplicateInvoiceNumber, ValidationFailed)


class TestLegacyPayments:
    """Traducción única de los formatos heredados"""

    def test_amount_key_variants(self):
        assert normalize_legacy_payment({"amount": "10"}).amount == Decimal("10")
        assert normalize_legacy_payment({"paid": 20}).amount == Decimal("20")
        assert normalize_legacy_payment({"total": "30.50"}).amount == Decimal("30.50")
        assert normalize_legacy_payment({"paidAmount": 40}).amount == Decimal("40")

    def test_amount_takes_priority(self):
        assert normalize_legacy_payment({"amount": 5, "paid": 9}).amount == Decimal("5")

    def test_reference_becomes_note(self):
        payment = normalize_legacy_payment({"paid": 10, "reference": "TRX-991", "method": "cash"})
        assert payment.note == "TRX-991"
        assert payment.method == "cash"

    def test_missing_amount_rejected(self):
        with pytest.raises(ValidationFailed):
            normalize_legacy_payment({"note": "sin monto"})

    def test_garbage_amount_rejected(self):
        with pytest.raises(ValidationFailed):
            normalize_legacy_payment({"paid": "diez"})


# ===== TESTS DE ESTADOS =====

class TestInvoiceStateMachine:
    """Draft -> Sent condicionado al pago total"""

    def test_send_requires_full_payment(self):
        invoice = draft_invoice(288, payments=[200])

        with pytest.raises(NotFullyPaid) as exc_info:
            InvoiceStateMachine.send(invoice)

        assert exc_info.value.remaining == Decimal("88.00")
        assert invoice.status == InvoiceStatus.DRAFT
        assert invoice.sent_at is None

    def test_send_transitions_once(self):
        invoice = draft_invoice(100, payments=[100])
        sent_at = datetime(2026, 1, 16, 10, 0, tzinfo=timezone.utc)

        assert InvoiceStateMachine.send(invoice, sent_at) is True
        assert invoice.status == InvoiceStatus.SENT
        assert invoice.sent_at == sent_at

        assert InvoiceStateMachine.send(invoice, datetime.now(timezone.utc)) is False
        assert invoice.sent_at == sent_at

    def test_tolerance_counts_as_paid(self):
        invoice = draft_invoice("100.00", payments=["99.996"])
        assert InvoiceStateMachine.is_fully_paid(invoice)

    def test_lock_requires_sent_and_paid(self):
        invoice = draft_invoice(100, payments=[100])
        assert not InvoiceStateMachine.is_locked(invoice)

        InvoiceStateMachine.send(invoice)

        assert InvoiceStateMachine.is_locked(invoice)
        with pytest.raises(InvoiceLocked):
            InvoiceStateMachine.ensure_mutable(invoice)


# ===== TESTS DEL SERVICIO =====

class TestCreateInvoice:

    def test_create_computes_totals(self, service, sample_company, sample_user, session_factory):
        data = InvoiceCreate(
            title="Vigilancia enero",
            items=[
                InvoiceLineItemCreate(description="Turno diurno", quantity=2, unit_rate=50, tax_rate_percent=19),
                InvoiceLineItemCreate(description="Supervisión", quantity=1, unit_rate=100)
            ]
        )

        invoice = service.create_invoice(data, sample_company, sample_user)

        stored = fresh_invoice(session_factory, invoice.id)
        assert stored.invoice_number == "1"
        assert stored.status == InvoiceStatus.DRAFT
        assert stored.subtotal == Decimal("200.00")
        assert stored.tax_total == Decimal("19.00")
        assert stored.total == Decimal("219.00")
        assert [item.position for item in stored.line_items] == [1, 2]
        assert stored.line_items[0].line_total == Decimal("119.00")
        assert stored.created_by == sample_user

    def test_line_amounts_round_half_up(self):
        items = [InvoiceLineItemCreate(description="Fracción", quantity=Decimal("0.5"), unit_rate=Decimal("0.01"))]
        lines, subtotal, tax_total, total = compute_totals(items)

        assert lines[0]["line_subtotal"] == Decimal("0.01")
        assert total == Decimal("0.01")

    def test_supplied_total_must_match(self, service, sample_company):
        with pytest.raises(ValidationFailed):
            service.create_invoice(invoice_payload(100, total=Decimal("150")), sample_company)

    def test_supplied_total_within_a_cent_is_accepted(self, service, sample_company):
        invoice = service.create_invoice(invoice_payload(100, total=Decimal("100.01")), sample_company)
        assert invoice.total == Decimal("100.00")

    def test_sequential_numbers(self, service, sample_company):
        numbers = [service.create_invoice(invoice_payload(10), sample_company).invoice_number for _ in range(3)]
        assert numbers == ["1", "2", "3"]

    def test_numbers_are_per_tenant(self, service, sample_company, other_company):
        assert service.create_invoice(invoice_payload(10), sample_company).invoice_number == "1"
        assert service.create_invoice(invoice_payload(10), other_company).invoice_number == "1"

    def test_explicit_number_is_kept(self, service, sample_company):
        assert service.create_invoice(invoice_payload(10, invoice_number=" 7 "), sample_company).invoice_number == "7"
        assert service.create_invoice(invoice_payload(10), sample_company).invoice_number == "8"

    def test_duplicate_explicit_number(self, db_session, sample_company, session_factory):
        allocator = StuckAllocator("unused")
        service = InvoiceService(db_session, allocator=allocator)
        service.create_invoice(invoice_payload(10, invoice_number="7"), sample_company)

        with pytest.raises(DuplicateInvoiceNumber) as exc_info:
            service.create_invoice(invoice_payload(10, invoice_number="7"), sample_company)

        assert exc_info.value.invoice_number == "7"
        assert allocator.calls == 0
        assert count_rows(session_factory, Invoice) == 1

    def test_yearly_format(self, service, sample_company):
        invoice = service.create_invoice(invoice_payload(10), sample_company, number_format="yearly")
        assert invoice.invoice_number == f"{date.today().year}-0001"

    def test_references_resolved_within_tenant(
        self, service, db_session, sample_company, other_company, sample_client, sample_post_site
    ):
        from app.modules.clients.models import ClientAccount

        foreign = ClientAccount(tenant_id=other_company, name="Cliente de otra empresa")
        db_session.add(foreign)
        db_session.commit()

        own = service.create_invoice(
            invoice_payload(10, client_id=sample_client.id, post_site_id=sample_post_site.id), sample_company
        )
        leaked = service.create_invoice(invoice_payload(10, client_id=foreign.id), sample_company)

        assert own.client_id == sample_client.id
        assert own.post_site_id == sample_post_site.id
        assert leaked.client_id is None

    def test_create_writes_audit_log(self, service, db_session, sample_company, sample_user):
        invoice = service.create_invoice(invoice_payload(10), sample_company, sample_user)

        entries = AuditLogService(db_session).entries_for("invoice", invoice.id, sample_company)
        assert [entry.action for entry in entries] == [AuditLogService.CREATE]
        assert entries[0].values["invoice_number"] == "1"
        assert entries[0].created_by == sample_user


class TestConcurrentNumbering:
    """Carreras de numeración simuladas con sesiones independientes"""

    def test_interleaved_creates_get_distinct_consecutive_numbers(self, session_factory, sample_company):
        writers = 5
        sessions = []
        numbers = []

        def run(level):
            session = session_factory()
            sessions.append(session)
            competitor = (lambda: run(level + 1)) if level < writers else None
            service = InvoiceService(session, allocator=InterleavingAllocator(competitor))
            numbers.append(service.create_invoice(invoice_payload(10), sample_company).invoice_number)

        try:
            run(1)
        finally:
            for session in sessions:
                session.close()

        assert len(numbers) == writers
        assert len(set(numbers)) == writers
        assert sorted(numbers, key=int) == [str(n) for n in range(1, writers + 1)]

    def test_two_racing_creates_after_seven(self, session_factory, sample_company):
        with session_factory() as setup:
            InvoiceService(setup).create_invoice(invoice_payload(10, invoice_number="7"), sample_company)

        session_a = session_factory()
        session_b = session_factory()
        try:
            other = {}

            def competitor():
                other["invoice"] = InvoiceService(session_b).create_invoice(invoice_payload(10), sample_company)

            allocator = InterleavingAllocator(competitor)
            mine = InvoiceService(session_a, allocator=allocator).create_invoice(invoice_payload(10), sample_company)

            assert {mine.invoice_number, other["invoice"].invoice_number} == {"8", "9"}
            assert other["invoice"].invoice_number == "8"
            assert allocator.calls == 2
        finally:
            session_a.close()
            session_b.close()

    def test_retry_exhausted_after_bound(self, db_session, sample_company, session_factory):
        InvoiceService(db_session).create_invoice(invoice_payload(10), sample_company)
        allocator = StuckAllocator("1")
        service = InvoiceService(db_session, allocator=allocator)

        with pytest.raises(RetryExhausted) as exc_info:
            service.create_invoice(invoice_payload(10), sample_company)

        assert exc_info.value.attempts == 5
        assert exc_info.value.extra == {"attempts": 5}
        assert allocator.calls == 5
        assert count_rows(session_factory, Invoice) == 1
        assert count_rows(session_factory, InvoiceLineItem) == 1

    def test_backoff_between_attempts(self, db_session, sample_company, monkeypatch):
        sleeps = []
        monkeypatch.setattr(service_module.time, "sleep", lambda seconds: sleeps.append(seconds))
        InvoiceService(db_session).create_invoice(invoice_payload(10), sample_company)

        service = InvoiceService(
            db_session,
            allocator=StuckAllocator("1"),
            policy=NumberingPolicy(max_attempts=3, backoff_seconds=0.25)
        )
        with pytest.raises(RetryExhausted) as exc_info:
            service.create_invoice(invoice_payload(10), sample_company)

        assert exc_info.value.attempts == 3
        assert sleeps == [0.25, 0.25]

    def test_session_usable_after_exhaustion(self, db_session, sample_company):
        InvoiceService(db_session).create_invoice(invoice_payload(10), sample_company)
        with pytest.raises(RetryExhausted):
            InvoiceService(db_session, allocator=StuckAllocator("1")).create_invoice(invoice_payload(10), sample_company)

        assert InvoiceService(db_session).create_invoice(invoice_payload(10), sample_company).invoice_number == "2"


class TestRecordPayment:

    def test_partial_payment_scenario(self, service, sample_company, sample_user, session_factory):
        invoice = service.create_invoice(invoice_payload(288), sample_company, sample_user)

        updated = service.record_payment(invoice.id, pay(200, method="transfer"), sample_company, sample_user)

        assert updated.paid_amount == Decimal("200.00")
        assert updated.balance_due == Decimal("88.00")
        stored = fresh_invoice(session_factory, invoice.id)
        assert [(p.sequence, p.amount) for p in stored.payments] == [(1, Decimal("200.00"))]
        assert stored.payments[0].created_by == sample_user

    def test_overpayment_leaves_ledger_untouched(self, service, sample_company, session_factory):
        invoice = service.create_invoice(invoice_payload(100), sample_company)
        service.record_payment(invoice.id, pay(95), sample_company)

        with pytest.raises(OverpaymentRejected) as exc_info:
            service.record_payment(invoice.id, pay("5.01"), sample_company)

        assert exc_info.value.max_acceptable == Decimal("5.00")
        assert fresh_invoice(session_factory, invoice.id).paid_amount == Decimal("95.00")

        service.record_payment(invoice.id, pay("5.00"), sample_company)
        result = service.send_invoice(invoice.id, sample_company)
        assert result.invoice.status.value == "sent"

    def test_invalid_amount(self, service, sample_company):
        invoice = service.create_invoice(invoice_payload(100), sample_company)
        with pytest.raises(InvalidPaymentAmount):
            service.record_payment(invoice.id, pay(0), sample_company)

    def test_invoice_of_other_tenant_is_not_found(self, service, sample_company, other_company):
        invoice = service.create_invoice(invoice_payload(100), sample_company)
        with pytest.raises(InvoiceNotFound):
            service.record_payment(invoice.id, pay(10), other_company)

    def test_sub_cent_payment_is_not_stored(self, service, sample_company, session_factory):
        invoice = service.create_invoice(invoice_payload(100), sample_company)

        with pytest.raises(InvalidPaymentAmount):
            service.record_payment(invoice.id, pay("0.004"), sample_company)

        assert fresh_invoice(session_factory, invoice.id).payments == []

    @pytest.mark.parametrize("amount", ["0.004", "0.01"])
    def test_sealed_invoice_rejects_payments(self, service, sent_invoice, sample_company, session_factory, amount):
        """Una factura enviada y pagada tiene el ledger cerrado"""
        with pytest.raises(InvoiceLocked):
            service.record_payment(sent_invoice, pay(amount), sample_company)

        stored = fresh_invoice(session_factory, sent_invoice)
        assert [(p.sequence, p.amount) for p in stored.payments] == [(1, Decimal("100.00"))]
        assert all(p.amount > 0 for p in stored.payments)

    def test_concurrent_append_fails_with_ledger_conflict(
        self, service, sample_company, session_factory, monkeypatch
    ):
        invoice = service.create_invoice(invoice_payload(100), sample_company)
        invoice_id = invoice.id
        original_append = PaymentLedger.append_payment

        def racing_append(target, payment_data, user_id=None, now=None):
            payment = original_append(target, payment_data, user_id, now)
            # Otra transacción confirma su pago en la misma posición del ledger
            with session_factory() as other:
                other.add(InvoicePayment(
                    tenant_id=sample_company,
                    invoice_id=invoice_id,
                    sequence=payment.sequence,
                    amount=Decimal("10"),
                    date=datetime.now(timezone.utc),
                    created_at=datetime.now(timezone.utc)
                ))
                other.commit()
            return payment

        monkeypatch.setattr(PaymentLedger, "append_payment", racing_append)

        with pytest.raises(LedgerConflict):
            service.record_payment(invoice_id, pay(20), sample_company)

        stored = fresh_invoice(session_factory, invoice_id)
        assert [p.amount for p in stored.payments] == [Decimal("10.00")]

    def test_list_payments_in_order(self, service, sample_company):
        invoice = service.create_invoice(invoice_payload(100), sample_company)
        for amount in (30, 20, 10):
            service.record_payment(invoice.id, pay(amount), sample_company)

        ledger = service.list_payments(invoice.id, sample_company)

        assert [p.sequence for p in ledger["payments"]] == [1, 2, 3]
        assert ledger["total_paid"] == Decimal("60.00")
        assert ledger["balance_due"] == Decimal("40.00")

    def test_payment_audit_entry(self, service, db_session, sample_company, sample_user):
        invoice = service.create_invoice(invoice_payload(100), sample_company, sample_user)
        service.record_payment(invoice.id, pay(40), sample_company, sample_user)

        actions = [e.action for e in AuditLogService(db_session).entries_for("invoice", invoice.id, sample_company)]
        assert AuditLogService.PAYMENT in actions


class TestUpdateInvoice:

    def test_update_recomputes_totals(self, service, sample_company, sample_user, session_factory):
        invoice = service.create_invoice(invoice_payload(100), sample_company)

        service.update_invoice(
            invoice.id,
            InvoiceUpdate(
                title="Ajustada",
                items=[InvoiceLineItemCreate(description="Nuevo", quantity=3, unit_rate=40, tax_rate_percent=10)]
            ),
            sample_company,
            sample_user
        )

        stored = fresh_invoice(session_factory, invoice.id)
        assert stored.title == "Ajustada"
        assert stored.total == Decimal("132.00")
        assert [item.description for item in stored.line_items] == ["Nuevo"]
        assert stored.updated_by == sample_user

    def test_invoice_number_is_immutable(self, service, sample_company):
        invoice = service.create_invoice(invoice_payload(100), sample_company)

        with pytest.raises(ValidationFailed):
            service.update_invoice(invoice.id, InvoiceUpdate(invoice_number="99"), sample_company)

        same = service.update_invoice(invoice.id, InvoiceUpdate(invoice_number="1", notes="ok"), sample_company)
        assert same.notes == "ok"

    def test_new_total_below_paid_rejected(self, service, sample_company, session_factory):
        invoice = service.create_invoice(invoice_payload(100), sample_company)
        service.record_payment(invoice.id, pay(80), sample_company)

        with pytest.raises(ValidationFailed):
            service.update_invoice(invoice.id, InvoiceUpdate(items=[
                InvoiceLineItemCreate(description="Menor", quantity=1, unit_rate=50)
            ]), sample_company)

        assert fresh_invoice(session_factory, invoice.id).total == Decimal("100.00")

    def test_due_date_before_issue_date_rejected(self, service, sample_company):
        invoice = service.create_invoice(invoice_payload(100, issue_date=date(2026, 2, 1)), sample_company)
        with pytest.raises(ValidationFailed):
            service.update_invoice(invoice.id, InvoiceUpdate(due_date=date(2026, 1, 1)), sample_company)

    def test_locked_invoice_cannot_be_updated(self, service, sent_invoice, sample_company, session_factory):
        with pytest.raises(InvoiceLocked):
            service.update_invoice(sent_invoice, InvoiceUpdate(title="Cambio tardío"), sample_company)

        assert fresh_invoice(session_factory, sent_invoice).title is None


class TestDestroyInvoice:

    def test_destroy_removes_aggregate(self, service, sample_company, session_factory):
        invoice = service.create_invoice(invoice_payload(100, 50), sample_company)
        service.record_payment(invoice.id, pay(20), sample_company)

        service.destroy_invoice(invoice.id, sample_company)

        assert count_rows(session_factory, Invoice) == 0
        assert count_rows(session_factory, InvoiceLineItem) == 0
        assert count_rows(session_factory, InvoicePayment) == 0

    def test_locked_invoice_cannot_be_destroyed(self, service, sent_invoice, sample_company, session_factory):
        with pytest.raises(InvoiceLocked):
            service.destroy_invoice(sent_invoice, sample_company)
        assert fresh_invoice(session_factory, sent_invoice) is not None

    def test_batch_is_all_or_nothing_when_locked(self, service, sent_invoice, sample_company, session_factory):
        draft = service.create_invoice(invoice_payload(10), sample_company)

        with pytest.raises(InvoiceLocked):
            service.destroy_all([draft.id, sent_invoice], sample_company)

        assert count_rows(session_factory, Invoice) == 2

    def test_batch_is_all_or_nothing_when_missing(self, service, sample_company, session_factory):
        draft = service.create_invoice(invoice_payload(10), sample_company)

        with pytest.raises(InvoiceNotFound):
            service.destroy_all([draft.id, uuid4()], sample_company)

        assert count_rows(session_factory, Invoice) == 1

    def test_batch_delete(self, service, db_session, sample_company, session_factory):
        ids = [service.create_invoice(invoice_payload(10), sample_company).id for _ in range(3)]

        assert service.destroy_all(ids, sample_company) == 3
        assert count_rows(session_factory, Invoice) == 0
        deletes = db_session.query(AuditLog).filter(AuditLog.action == AuditLogService.DELETE).count()
        assert deletes == 3


class TestSendInvoice:

    def test_send_requires_full_payment(self, service, sample_company, session_factory, notifier):
        invoice = service.create_invoice(invoice_payload(288), sample_company)
        service.record_payment(invoice.id, pay(200), sample_company)

        with pytest.raises(NotFullyPaid) as exc_info:
            service.send_invoice(invoice.id, sample_company)

        assert exc_info.value.extra == {"remaining": "88.00"}
        assert fresh_invoice(session_factory, invoice.id).status == InvoiceStatus.DRAFT
        assert notifier.events == []

    def test_send_paid_invoice_notifies_client(self, service, paid_invoice, sample_company, sample_client, notifier):
        result = service.send_invoice(paid_invoice, sample_company)

        assert result.invoice.status.value == "sent"
        assert result.invoice.sent_at is not None
        assert result.invoice.is_locked is True
        assert result.notification_attempted is True
        assert result.notified_address == sample_client.email
        assert result.message == f"Factura enviada a {sample_client.email}"

        event = notifier.events[0]
        assert event.transitioned is True
        assert event.invoice_number == "1"
        assert event.total_paid == Decimal("100.00")

    def test_repeated_send_is_idempotent(self, service, db_session, paid_invoice, sample_company, notifier):
        first = service.send_invoice(paid_invoice, sample_company)
        second = service.send_invoice(paid_invoice, sample_company)

        assert second.invoice.sent_at == first.invoice.sent_at
        assert [event.transitioned for event in notifier.events] == [True, False]
        sends = [
            e.action for e in AuditLogService(db_session).entries_for("invoice", paid_invoice, sample_company)
            if e.action == AuditLogService.SEND
        ]
        assert len(sends) == 1

    def test_notification_failure_keeps_invoice_sent(
        self, db_session, sample_company, sample_client, session_factory
    ):
        service = InvoiceService(db_session, notifier=FailingNotifier())
        invoice = service.create_invoice(invoice_payload(100, client_id=sample_client.id), sample_company)
        service.record_payment(invoice.id, pay(100), sample_company)

        result = service.send_invoice(invoice.id, sample_company)

        assert result.notification_attempted is False
        assert result.notified_address is None
        assert fresh_invoice(session_factory, invoice.id).status == InvoiceStatus.SENT

    def test_client_without_email_is_not_notified(self, db_session, sample_company, client_without_email):
        service = InvoiceService(db_session)
        invoice = service.create_invoice(invoice_payload(100, client_id=client_without_email.id), sample_company)
        service.record_payment(invoice.id, pay(100), sample_company)

        result = service.send_invoice(invoice.id, sample_company)

        assert result.notification_attempted is False
        assert result.message.startswith("Factura procesada")


class TestImportInvoice:

    def test_import_applies_legacy_payments(self, service, sample_company, session_factory):
        data = InvoiceImport(
            import_hash="legacy-001",
            data=invoice_payload(100),
            payments=[{"paid": "50"}, {"paidAmount": "25", "reference": "TRX-1"}]
        )

        invoice = service.import_invoice(data, sample_company)

        stored = fresh_invoice(session_factory, invoice.id)
        assert stored.import_hash == "legacy-001"
        assert stored.paid_amount == Decimal("75.00")
        assert [p.note for p in stored.payments] == [None, "TRX-1"]

    def test_duplicate_hash_rejected(self, service, sample_company, session_factory):
        data = InvoiceImport(import_hash="legacy-001", data=invoice_payload(100))
        service.import_invoice(data, sample_company)

        with pytest.raises(ValidationFailed):
            service.import_invoice(data, sample_company)
        assert count_rows(session_factory, Invoice) == 1

    def test_blank_hash_rejected(self, service, sample_company):
        with pytest.raises(ValidationFailed):
            service.import_invoice(InvoiceImport(import_hash="   ", data=invoice_payload(100)), sample_company)

    def test_legacy_overpayment_rejected(self, service, sample_company, session_factory):
        data = InvoiceImport(
            import_hash="legacy-002",
            data=invoice_payload(100),
            payments=[{"total": "80"}, {"amount": "30"}]
        )

        with pytest.raises(OverpaymentRejected):
            service.import_invoice(data, sample_company)
        assert count_rows(session_factory, Invoice) == 0


class TestFindInvoices:

    def test_filters_and_count(self, service, sample_company, sample_client, other_company):
        service.create_invoice(invoice_payload(100, client_id=sample_client.id), sample_company)
        service.create_invoice(invoice_payload(500), sample_company)
        service.create_invoice(invoice_payload(40, invoice_number="A-10"), sample_company)
        service.create_invoice(invoice_payload(100), other_company)

        result = service.find_and_count_all(sample_company, InvoiceFilters(total_min=Decimal("50")))
        assert result["total"] == 2

        by_client = service.find_and_count_all(sample_company, InvoiceFilters(client_id=sample_client.id))
        assert [i.client_id for i in by_client["invoices"]] == [sample_client.id]

        by_number = service.find_and_count_all(sample_company, InvoiceFilters(invoice_number="a-1"))
        assert [i.invoice_number for i in by_number["invoices"]] == ["A-10"]

    def test_status_filter(self, service, sent_invoice, sample_company):
        service.create_invoice(invoice_payload(10), sample_company)

        result = service.find_and_count_all(sample_company, InvoiceFilters(status="sent"))
        assert [i.id for i in result["invoices"]] == [sent_invoice]

    def test_order_by(self, service, sample_company):
        for number in ("3", "1", "2"):
            service.create_invoice(invoice_payload(10, invoice_number=number), sample_company)

        result = service.find_and_count_all(sample_company, order_by="invoice_number_ASC", limit=2)
        assert [i.invoice_number for i in result["invoices"]] == ["1", "2"]
        assert result["total"] == 3

    def test_unknown_order_rejected(self, service, sample_company):
        with pytest.raises(ValidationFailed):
            service.find_and_count_all(sample_company, order_by="password_DESC")

    def test_autocomplete(self, service, sample_company):
        first = service.create_invoice(invoice_payload(10, invoice_number="2026-0002"), sample_company)
        service.create_invoice(invoice_payload(10, invoice_number="2026-0001"), sample_company)
        service.create_invoice(invoice_payload(10, invoice_number="99"), sample_company)

        labels = [row["label"] for row in service.find_all_autocomplete(sample_company, "2026")]
        assert labels == ["2026-0001", "2026-0002"]

        by_id = service.find_all_autocomplete(sample_company, str(first.id))
        assert by_id == [{"id": first.id, "label": "2026-0002"}]

        assert len(service.find_all_autocomplete(sample_company, limit=1)) == 1

    def test_soft_deleted_invoices_are_hidden(self, service, db_session, sample_company):
        invoice = service.create_invoice(invoice_payload(10), sample_company)
        stored = db_session.get(Invoice, invoice.id)
        stored.deleted_at = datetime.now(timezone.utc)
        db_session.commit()

        assert service.find_and_count_all(sample_company)["total"] == 0
        with pytest.raises(InvoiceNotFound):
            service.find_by_id(invoice.id, sample_company)


class TestExportDocument:
    """Descarga del PDF de la factura"""

    def test_export_pdf(self, service, paid_invoice, sample_company):
        content = service.export_document(paid_invoice, sample_company, "PDF")
        assert content.startswith(b"%PDF")

    def test_unsupported_format(self, service, paid_invoice, sample_company):
        with pytest.raises(UnsupportedFormat) as exc_info:
            service.export_document(paid_invoice, sample_company, "xlsx")
        assert exc_info.value.status_code == 400

    def test_other_tenant_cannot_export(self, service, paid_invoice, other_company):
        with pytest.raises(InvoiceNotFound):
            service.export_document(paid_invoice, other_company)


# ===== TESTS DEL NOTIFICADOR =====

class FakeTask:
    def __init__(self, fail=False):
        self.fail = fail
        self.calls = []

    def delay(self, **kwargs):
        if self.fail:
            raise ConnectionError("broker unavailable")
        self.calls.append(kwargs)
        return type("AsyncResult", (), {"id": "task-1"})()


class TestInvoiceNotifier:

    def make_event(self, email="pagos@cliente.com"):
        return InvoiceSent(
            invoice_id=uuid4(),
            tenant_id=uuid4(),
            invoice_number="12",
            total=Decimal("100.00"),
            total_paid=Decimal("100.00"),
            sent_at=datetime.now(timezone.utc),
            transitioned=True,
            client_name="Cliente",
            client_email=email
        )

    @pytest.fixture
    def email_enabled(self, monkeypatch):
        monkeypatch.setattr(settings, "EMAIL_FROM", "facturas@empresa.com")
        monkeypatch.setattr(settings, "EMAIL_USERNAME", "facturas@empresa.com")

    def test_no_address_no_attempt(self, email_enabled):
        assert InvoiceNotifier().publish(self.make_event(email=None)) == (False, None)

    def test_email_not_configured(self):
        assert InvoiceNotifier().publish(self.make_event()) == (False, None)

    def test_queues_email_task(self, email_enabled, monkeypatch):
        from app.modules.email import tasks as email_tasks

        task = FakeTask()
        monkeypatch.setattr(email_tasks, "send_invoice_email_task", task)

        assert InvoiceNotifier().publish(self.make_event()) == (True, "pagos@cliente.com")
        payload = task.calls[0]["invoice_data"]
        assert payload["number"] == "12"
        assert payload["balance_due"] == "0.00"
        assert task.calls[0]["to_email"] == "pagos@cliente.com"

    def test_broker_failure_is_reported(self, email_enabled, monkeypatch):
        from app.modules.email import tasks as email_tasks

        monkeypatch.setattr(email_tasks, "send_invoice_email_task", FakeTask(fail=True))

        assert InvoiceNotifier().publish(self.make_event()) == (False, None)


# ===== TESTS DE API =====

@pytest.fixture
def api(api_client, notifier):
    from app.main import app
    from app.dependencies.dbDependecies import db_dependency
    from app.modules.invoices.router import get_invoice_service

    def override_service(db: db_dependency):
        return InvoiceService(db, notifier=notifier)

    app.dependency_overrides[get_invoice_service] = override_service
    return api_client


def invoice_json(*rates, **extra):
    body = {
        "items": [
            {"description": f"Servicio {i}", "quantity": "1", "unit_rate": str(rate), "tax_rate_percent": "0"}
            for i, rate in enumerate(rates or (100,), start=1)
        ]
    }
    body.update(extra)
    return body


class TestInvoiceAPI:

    def test_create_invoice_endpoint(self, api, auth_headers):
        response = api.post("/invoices/", json=invoice_json(288), headers=auth_headers)

        assert response.status_code == 201
        data = response.json()
        assert data["invoice_number"] == "1"
        assert data["status"] == "draft"
        assert data["total"] == "288.00"
        assert data["balance_due"] == "288.00"
        assert data["is_locked"] is False
        assert len(data["line_items"]) == 1

    def test_tenant_header_required(self, api, auth_headers):
        headers = {"Authorization": auth_headers["Authorization"]}
        response = api.post("/invoices/", json=invoice_json(10), headers=headers)
        assert response.status_code == 400
        assert response.json()["code"] == "TENANT_REQUIRED"

    def test_malformed_tenant_header(self, api, auth_headers):
        headers = dict(auth_headers, **{"X-Company-ID": "empresa-1"})
        response = api.get("/invoices/", headers=headers)
        assert response.status_code == 400
        assert response.json()["code"] == "INVALID_TENANT"

    def test_health_needs_no_tenant(self, api):
        response = api.get("/health")
        assert response.status_code == 200
        assert response.headers["X-Content-Type-Options"] == "nosniff"

    def test_token_required(self, api, sample_company):
        response = api.get("/invoices/", headers={"X-Company-ID": str(sample_company)})
        assert response.status_code in (401, 403)

    def test_payment_and_send_flow(self, api, auth_headers):
        invoice_id = api.post("/invoices/", json=invoice_json(288), headers=auth_headers).json()["id"]

        response = api.post(f"/invoices/{invoice_id}/payments", json={"amount": "200"}, headers=auth_headers)
        assert response.status_code == 201
        assert response.json()["balance_due"] == "88.00"

        response = api.post(f"/invoices/{invoice_id}/send", headers=auth_headers)
        assert response.status_code == 409
        assert response.json()["code"] == "NOT_FULLY_PAID"
        assert response.json()["remaining"] == "88.00"

        response = api.post(f"/invoices/{invoice_id}/payments", json={"amount": "88.01"}, headers=auth_headers)
        assert response.status_code == 409
        assert response.json()["code"] == "OVERPAYMENT_REJECTED"
        assert response.json()["max_acceptable"] == "88.00"

        api.post(f"/invoices/{invoice_id}/payments", json={"amount": "88"}, headers=auth_headers)
        response = api.post(f"/invoices/{invoice_id}/send", headers=auth_headers)
        assert response.status_code == 200
        body = response.json()
        assert body["invoice"]["status"] == "sent"
        assert body["notification_attempted"] is False

        response = api.put(f"/invoices/{invoice_id}", json={"title": "Tarde"}, headers=auth_headers)
        assert response.status_code == 423
        assert response.json()["code"] == "INVOICE_LOCKED"

        response = api.delete(f"/invoices/{invoice_id}", headers=auth_headers)
        assert response.status_code == 423

    def test_invalid_payment_amount(self, api, auth_headers):
        invoice_id = api.post("/invoices/", json=invoice_json(10), headers=auth_headers).json()["id"]

        response = api.post(f"/invoices/{invoice_id}/payments", json={"amount": "0"}, headers=auth_headers)

        assert response.status_code == 422
        assert response.json()["code"] == "INVALID_PAYMENT_AMOUNT"

    def test_duplicate_number(self, api, auth_headers):
        api.post("/invoices/", json=invoice_json(10, invoice_number="7"), headers=auth_headers)
        response = api.post("/invoices/", json=invoice_json(10, invoice_number="7"), headers=auth_headers)

        assert response.status_code == 422
        assert response.json()["code"] == "DUPLICATE_INVOICE_NUMBER"

    def test_not_found(self, api, auth_headers):
        response = api.get(f"/invoices/{uuid4()}", headers=auth_headers)
        assert response.status_code == 404
        assert response.json()["code"] == "NOT_FOUND"

    def test_other_tenant_cannot_read(self, api, auth_headers, other_company):
        invoice_id = api.post("/invoices/", json=invoice_json(10), headers=auth_headers).json()["id"]

        headers = dict(auth_headers, **{"X-Company-ID": str(other_company)})
        assert api.get(f"/invoices/{invoice_id}", headers=headers).status_code == 404

    def test_retry_exhausted_maps_to_503(self, api, auth_headers):
        from app.main import app
        from app.dependencies.dbDependecies import db_dependency
        from app.modules.invoices.router import get_invoice_service

        api.post("/invoices/", json=invoice_json(10), headers=auth_headers)

        def stuck_service(db: db_dependency):
            return InvoiceService(db, allocator=StuckAllocator("1"))

        app.dependency_overrides[get_invoice_service] = stuck_service
        response = api.post("/invoices/", json=invoice_json(10), headers=auth_headers)

        assert response.status_code == 503
        assert response.json()["code"] == "RETRY_EXHAUSTED"
        assert response.json()["attempts"] == 5

    def test_list_autocomplete_and_payments(self, api, auth_headers):
        first = api.post("/invoices/", json=invoice_json(10), headers=auth_headers).json()
        api.post("/invoices/", json=invoice_json(500), headers=auth_headers)
        api.post(f"/invoices/{first['id']}/payments", json={"amount": "4", "note": "anticipo"}, headers=auth_headers)

        listing = api.get("/invoices/", params={"total_min": "100"}, headers=auth_headers).json()
        assert listing["total"] == 1
        assert listing["invoices"][0]["invoice_number"] == "2"

        suggestions = api.get("/invoices/autocomplete", params={"query": "1"}, headers=auth_headers).json()
        assert suggestions == [{"id": first["id"], "label": "1"}]

        ledger = api.get(f"/invoices/{first['id']}/payments", headers=auth_headers).json()
        assert ledger["total_paid"] == "4.00"
        assert ledger["payments"][0]["note"] == "anticipo"

    def test_import_endpoint(self, api, auth_headers):
        body = {"import_hash": "abc", "data": invoice_json(100), "payments": [{"paid": "100"}]}

        response = api.post("/invoices/import", json=body, headers=auth_headers)
        assert response.status_code == 201
        assert response.json()["paid_amount"] == "100.00"

        assert api.post("/invoices/import", json=body, headers=auth_headers).status_code == 422

    def test_batch_delete_endpoint(self, api, auth_headers):
        ids = [api.post("/invoices/", json=invoice_json(10), headers=auth_headers).json()["id"] for _ in range(2)]

        response = api.delete("/invoices/", params={"ids": ids}, headers=auth_headers)

        assert response.status_code == 200
        assert response.json()["deleted"] == 2
        assert api.get("/invoices/", headers=auth_headers).json()["total"] == 0

    def test_download_pdf(self, api, auth_headers):
        invoice_id = api.post("/invoices/", json=invoice_json(10), headers=auth_headers).json()["id"]

        response = api.get(f"/invoices/{invoice_id}/download", headers=auth_headers)

        assert response.status_code == 200
        assert response.headers["content-type"] == "application/pdf"
        assert response.headers["content-disposition"] == f"attachment; filename=invoice-{invoice_id}.pdf"
        assert response.content.startswith(b"%PDF")

    def test_download_unsupported_format(self, api, auth_headers):
        invoice_id = api.post("/invoices/", json=invoice_json(10), headers=auth_headers).json()["id"]

        response = api.get(f"/invoices/{invoice_id}/download", params={"format": "xlsx"}, headers=auth_headers)

        assert response.status_code == 400
        assert response.json()["code"] == "UNSUPPORTED_FORMAT"

    def test_download_missing_invoice(self, api, auth_headers):
        assert api.get(f"/invoices/{uuid4()}/download", headers=auth_headers).status_code == 404

    def test_sealed_invoice_rejects_payment_endpoint(self, api, auth_headers):
        invoice_id = api.post("/invoices/", json=invoice_json(100), headers=auth_headers).json()["id"]
        api.post(f"/invoices/{invoice_id}/payments", json={"amount": "100"}, headers=auth_headers)
        api.post(f"/invoices/{invoice_id}/send", headers=auth_headers)

        response = api.post(f"/invoices/{invoice_id}/payments", json={"amount": "0.004"}, headers=auth_headers)

        assert response.status_code == 423
        assert response.json()["code"] == "INVOICE_LOCKED"
        ledger = api.get(f"/invoices/{invoice_id}/payments", headers=auth_headers).json()
        assert [p["amount"] for p in ledger["payments"]] == ["100.00"]
