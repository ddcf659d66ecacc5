"""
taxportal/features/invoices/service.py

Invoice ledger.

Handles:
- Invoice creation with per-client sequential numbers
- Optional snapshot of billable minutes and hourly rate for a period
- Status transitions: OPEN -> REVIEW -> PAID | CANCELLED, and OPEN|REVIEW -> PAID
- Document attachment (invoice PDF, proof of payment)

Transitions are conditional updates on the expected status. Losing a race
surfaces as ConflictError to the caller and is never retried here.
"""

from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Iterable, List, Optional, Tuple, Union
from uuid import uuid4
from sqlalchemy import select, insert, update, func
from sqlalchemy.orm import Session

from taxportal.core.config import settings
from taxportal.core.database import client_invoice_counters, documents, invoices, time_entries
from taxportal.core.errors import ConflictError, InvalidStatusError, NotFoundError, ValidationError
from taxportal.core.logging import log_event
from taxportal.core.metrics import invoice_transition_conflicts_total, invoice_transitions_total
from taxportal.core.transactions import StaleWriteError, ledger_session, run_in_transaction
from taxportal.core.validation import DateLike, check_page, parse_date, parse_optional_date, require_text
from taxportal.features.client_plans.service import find_plan_on
from taxportal.features.plan_configs.service import find_plan_config
from taxportal.models.invoice import (
    Invoice,
    InvoiceDocumentType,
    InvoiceStatus,
    PaymentMethod,
    ReviewDecision,
)


def _row_to_invoice(row) -> Invoice:
    return Invoice(
        id=row.id,
        client_id=row.client_id,
        invoice_no=row.invoice_no,
        title=row.title,
        description=row.description,
        currency=row.currency,
        amount_total=Decimal(str(row.amount_total)),
        status=row.status,
        due_date=row.due_date,
        period_start=row.period_start,
        period_end=row.period_end,
        billable_minutes_snapshot=row.billable_minutes_snapshot,
        hourly_rate_snapshot=Decimal(str(row.hourly_rate_snapshot)) if row.hourly_rate_snapshot is not None else None,
        invoice_document_id=row.invoice_document_id,
        proof_document_id=row.proof_document_id,
        paid_at=row.paid_at,
        payment_method=row.payment_method,
        payment_reference=row.payment_reference,
        payment_note=row.payment_note,
        created_by=row.created_by,
        reviewed_by=row.reviewed_by,
        reviewed_at=row.reviewed_at,
        review_note=row.review_note,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _parse_amount(amount_total: Union[str, int, Decimal]) -> Decimal:
    try:
        amount = Decimal(str(amount_total))
    except InvalidOperation:
        raise ValidationError("Invoice amount must be a positive number")
    if not amount.is_finite() or amount <= 0:
        raise ValidationError("Invoice amount must be a positive number")
    return amount.quantize(Decimal("0.01"))


def _parse_enum(enum_cls, value, field: str):
    try:
        return enum_cls(value)
    except ValueError:
        raise ValidationError(f"Unknown {field}: {value}")


def _parse_paid_at(value: Optional[Union[datetime, date, str]]) -> datetime:
    if value is None:
        return datetime.now(timezone.utc)
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value.strip())
        except ValueError:
            raise ValidationError("paid_at must be an ISO 8601 timestamp", code="invalid_date")
    if not isinstance(value, datetime):
        if not isinstance(value, date):
            raise ValidationError("paid_at must be an ISO 8601 timestamp", code="invalid_date")
        value = datetime.combine(value, time.min)
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


def _record_transition(operation: str, invoice: Invoice, from_status: InvoiceStatus, **extra) -> None:
    invoice_transitions_total.inc({"from_status": from_status.value, "to_status": invoice.status.value})
    log_event(
        "info",
        f"invoice.{operation}",
        client_id=invoice.client_id,
        event_type=f"invoice.{operation}",
        extra={
            "invoice_id": invoice.id,
            "invoice_no": invoice.invoice_no,
            "from_status": from_status.value,
            "to_status": invoice.status.value,
            **extra,
        },
    )


def _transition_conflict(operation: str, invoice: Invoice, code: str, message: str) -> ConflictError:
    invoice_transition_conflicts_total.inc({"operation": operation})
    log_event(
        "warning",
        "invoice.transition_conflict",
        client_id=invoice.client_id,
        event_type=f"invoice.{operation}",
        error_code=code,
        extra={"invoice_id": invoice.id, "expected_status": invoice.status.value},
    )
    return ConflictError(message, code=code)


def _next_invoice_number(client_id: str, year: int) -> str:
    """
    Allocate the next invoice number for a client.

    The counter bump commits on its own, before the invoice insert, so a
    number is consumed even if the insert later fails and is never reused.
    """

    def _bump(session: Session) -> int:
        row = session.execute(
            select(client_invoice_counters)
            .where(client_invoice_counters.c.client_id == client_id)
            .with_for_update()
        ).first()
        now = datetime.now(timezone.utc)
        if not row:
            session.execute(
                insert(client_invoice_counters).values(
                    client_id=client_id,
                    last_invoice_number=1,
                    created_at=now,
                    updated_at=now,
                )
            )
            return 1

        next_number = row.last_invoice_number + 1
        result = session.execute(
            update(client_invoice_counters)
            .where(client_invoice_counters.c.client_id == client_id)
            .where(client_invoice_counters.c.last_invoice_number == row.last_invoice_number)
            .values(last_invoice_number=next_number, updated_at=now)
        )
        if result.rowcount != 1:
            raise StaleWriteError()
        return next_number

    number = run_in_transaction("invoice.number", _bump, client_id=client_id)
    return f"{settings.INVOICE_NUMBER_PREFIX}-{year}-{number:04d}"


def _billable_minutes_between(session: Session, client_id: str, start: date, end: date) -> int:
    total = session.execute(
        select(func.coalesce(func.sum(time_entries.c.billable_minutes), 0))
        .where(time_entries.c.client_id == client_id)
        .where(time_entries.c.deleted_at.is_(None))
        .where(time_entries.c.worked_at >= start)
        .where(time_entries.c.worked_at <= end)
    ).scalar_one()
    return int(total)


def _hourly_rate_on(session: Session, client_id: str, day: date) -> Optional[Decimal]:
    assignment = find_plan_on(session, client_id, day)
    if not assignment:
        return None
    config = find_plan_config(session, assignment.plan_code)
    return config.hourly_rate if config else None


def create_invoice(
    client_id: str,
    title: str,
    amount_total: Union[str, int, Decimal],
    due_date: DateLike,
    *,
    description: Optional[str] = None,
    currency: Optional[str] = None,
    period_start: Optional[DateLike] = None,
    period_end: Optional[DateLike] = None,
    auto_calculate: bool = False,
    created_by: Optional[str] = None,
) -> Invoice:
    """
    Create an OPEN invoice.

    With auto_calculate and both period bounds, the invoice carries a
    snapshot of billable minutes over non-deleted entries in
    [period_start, period_end] and the hourly rate of the plan in force on
    period_end. The snapshot is informational; amount_total is what the
    caller sets.

    Raises:
        ValidationError: Empty title, non-positive amount, bad dates,
            period_end before period_start
        InternalError: Store failure
    """
    client_id = require_text(client_id, "client_id")
    title = require_text(title, "title")
    amount = _parse_amount(amount_total)
    due = parse_date(due_date, "due_date")
    start = parse_optional_date(period_start, "period_start")
    end = parse_optional_date(period_end, "period_end")
    if start and end and end < start:
        raise ValidationError("period_end must not be before period_start", code="invalid_date")
    currency_code = (currency or settings.DEFAULT_CURRENCY).upper()
    if len(currency_code) != 3 or not currency_code.isalpha():
        raise ValidationError("currency must be a 3-letter ISO 4217 code")

    now = datetime.now(timezone.utc)
    invoice_no = _next_invoice_number(client_id, now.year)

    def _create(session: Session) -> Invoice:
        billable_snapshot = None
        rate_snapshot = None
        if auto_calculate and start and end:
            billable_snapshot = _billable_minutes_between(session, client_id, start, end)
            rate_snapshot = _hourly_rate_on(session, client_id, end)

        invoice = Invoice(
            id=str(uuid4()),
            client_id=client_id,
            invoice_no=invoice_no,
            title=title,
            description=description,
            currency=currency_code,
            amount_total=amount,
            status=InvoiceStatus.OPEN,
            due_date=due,
            period_start=start,
            period_end=end,
            billable_minutes_snapshot=billable_snapshot,
            hourly_rate_snapshot=rate_snapshot,
            created_by=created_by,
            created_at=now,
            updated_at=now,
        )
        session.execute(
            insert(invoices).values(
                id=invoice.id,
                client_id=client_id,
                invoice_no=invoice_no,
                title=title,
                description=description,
                currency=currency_code,
                amount_total=amount,
                status=InvoiceStatus.OPEN.value,
                due_date=due,
                period_start=start,
                period_end=end,
                billable_minutes_snapshot=billable_snapshot,
                hourly_rate_snapshot=rate_snapshot,
                created_by=created_by,
                created_at=now,
                updated_at=now,
            )
        )
        return invoice

    invoice = run_in_transaction("invoice.create", _create, client_id=client_id, max_attempts=1)

    log_event(
        "info",
        "invoice.created",
        client_id=client_id,
        event_type="invoice.create",
        extra={
            "invoice_id": invoice.id,
            "invoice_no": invoice_no,
            "amount_total": str(amount),
            "auto_calculate": auto_calculate,
            "billable_minutes_snapshot": invoice.billable_minutes_snapshot,
        },
    )
    return invoice


def list_invoices(
    client_id: Optional[str] = None,
    status: Optional[Union[str, InvoiceStatus]] = None,
    from_date: Optional[DateLike] = None,
    to_date: Optional[DateLike] = None,
    limit: int = 50,
    offset: int = 0,
) -> Tuple[List[Invoice], int]:
    """
    List invoices, newest first.

    from_date/to_date filter on the creation day (both inclusive). Without
    client_id the listing spans all clients (admin view).

    Returns:
        (invoices, total_count)
    """
    check_page(limit, offset)
    conditions = []
    if client_id:
        conditions.append(invoices.c.client_id == client_id)
    if status is not None:
        conditions.append(invoices.c.status == _parse_enum(InvoiceStatus, status, "invoice status").value)
    start = parse_optional_date(from_date, "from_date")
    if start:
        conditions.append(invoices.c.created_at >= datetime.combine(start, time.min, tzinfo=timezone.utc))
    end = parse_optional_date(to_date, "to_date")
    if end:
        conditions.append(
            invoices.c.created_at < datetime.combine(end + timedelta(days=1), time.min, tzinfo=timezone.utc)
        )

    with ledger_session("invoice.list", client_id=client_id) as session:
        total = session.execute(
            select(func.count()).select_from(invoices).where(*conditions)
        ).scalar_one()
        rows = session.execute(
            select(invoices)
            .where(*conditions)
            .order_by(invoices.c.created_at.desc(), invoices.c.invoice_no.desc())
            .limit(limit)
            .offset(offset)
        ).all()

    return [_row_to_invoice(row) for row in rows], int(total)


def _find_invoice(session: Session, invoice_id: str, client_id: Optional[str] = None) -> Invoice:
    query = select(invoices).where(invoices.c.id == invoice_id)
    if client_id:
        query = query.where(invoices.c.client_id == client_id)
    row = session.execute(query).first()
    if not row:
        raise NotFoundError(f"Invoice not found: {invoice_id}", code="invoice_not_found")
    return _row_to_invoice(row)


def get_invoice(invoice_id: str, client_id: Optional[str] = None) -> Invoice:
    """
    Get an invoice, optionally scoped to a client.

    Raises:
        NotFoundError: Missing, or owned by another client when client_id is given
    """
    with ledger_session("invoice.get", client_id=client_id) as session:
        return _find_invoice(session, invoice_id, client_id)


def _require_document(session: Session, client_id: str, document_id: str) -> None:
    row = session.execute(
        select(documents.c.id)
        .where(documents.c.id == document_id)
        .where(documents.c.client_id == client_id)
        .where(documents.c.deleted_at.is_(None))
    ).first()
    if not row:
        raise NotFoundError(
            "Document not found or does not belong to this client",
            code="document_not_found",
        )


def _guarded_transition(
    session: Session,
    invoice: Invoice,
    expected: Iterable[InvoiceStatus],
    values: dict,
) -> bool:
    """Apply values only if the invoice is still in one of the expected statuses."""
    result = session.execute(
        update(invoices)
        .where(invoices.c.id == invoice.id)
        .where(invoices.c.client_id == invoice.client_id)
        .where(invoices.c.status.in_([status.value for status in expected]))
        .values(**values)
    )
    return result.rowcount == 1


def submit_proof(client_id: str, invoice_id: str, document_id: str) -> Invoice:
    """
    Attach a proof of payment and move the invoice from OPEN to REVIEW.

    Raises:
        NotFoundError: Invoice or document missing, or owned by another client
        InvalidStatusError: Invoice is not OPEN
        ConflictError: Another transition won the race (code "invoice_already_reviewed")
    """
    with ledger_session("invoice.submit_proof", client_id=client_id) as session:
        invoice = _find_invoice(session, invoice_id, client_id)
        if invoice.status != InvoiceStatus.OPEN:
            raise InvalidStatusError(
                "Can only submit proof for invoices with OPEN status",
                code="invoice_invalid_status",
            )
        _require_document(session, client_id, document_id)

        now = datetime.now(timezone.utc)
        values = {
            "proof_document_id": document_id,
            "status": InvoiceStatus.REVIEW.value,
            "updated_at": now,
        }
        if not _guarded_transition(session, invoice, [InvoiceStatus.OPEN], values):
            raise _transition_conflict(
                "submit_proof",
                invoice,
                "invoice_already_reviewed",
                "Invoice already reviewed or status changed",
            )

    updated = invoice.model_copy(
        update={"proof_document_id": document_id, "status": InvoiceStatus.REVIEW, "updated_at": now}
    )
    _record_transition("submit_proof", updated, InvoiceStatus.OPEN, document_id=document_id)
    return updated


def review_invoice(
    invoice_id: str,
    decision: Union[str, ReviewDecision],
    review_note: Optional[str] = None,
    reviewed_by: Optional[str] = None,
) -> Invoice:
    """
    Approve (PAID) or cancel (CANCELLED) an invoice under review.

    Raises:
        ValidationError: Unknown decision
        NotFoundError: Invoice missing
        InvalidStatusError: Invoice is not in REVIEW
        ConflictError: Another transition won the race
    """
    choice = _parse_enum(ReviewDecision, decision, "review decision")
    new_status = InvoiceStatus.PAID if choice == ReviewDecision.APPROVE else InvoiceStatus.CANCELLED

    with ledger_session("invoice.review") as session:
        invoice = _find_invoice(session, invoice_id)
        if invoice.status != InvoiceStatus.REVIEW:
            raise InvalidStatusError(
                "Can only review invoices with REVIEW status",
                code="invoice_invalid_status",
            )

        now = datetime.now(timezone.utc)
        values = {
            "status": new_status.value,
            "reviewed_by": reviewed_by,
            "reviewed_at": now,
            "review_note": review_note,
            "updated_at": now,
        }
        if not _guarded_transition(session, invoice, [InvoiceStatus.REVIEW], values):
            raise _transition_conflict(
                "review",
                invoice,
                "invoice_already_reviewed",
                "Invoice already reviewed or status changed",
            )

    updated = invoice.model_copy(update={**values, "status": new_status})
    _record_transition("review", updated, InvoiceStatus.REVIEW, decision=choice.value, reviewed_by=reviewed_by)
    return updated


def mark_invoice_as_paid(
    invoice_id: str,
    client_id: str,
    paid_at: Optional[Union[datetime, date, str]] = None,
    payment_method: Union[str, PaymentMethod] = PaymentMethod.BANK_TRANSFER,
    payment_reference: Optional[str] = None,
    payment_note: Optional[str] = None,
    reviewed_by: Optional[str] = None,
) -> Invoice:
    """
    Record a payment directly, from OPEN or REVIEW.

    Raises:
        ValidationError: Unknown payment method or bad paid_at
        NotFoundError: Invoice missing or owned by another client
        InvalidStatusError: Invoice already PAID, or CANCELLED
        ConflictError: Another transition won the race
    """
    method = _parse_enum(PaymentMethod, payment_method, "payment method")
    paid = _parse_paid_at(paid_at)

    with ledger_session("invoice.mark_paid", client_id=client_id) as session:
        invoice = _find_invoice(session, invoice_id, client_id)
        if invoice.status == InvoiceStatus.PAID:
            raise InvalidStatusError("Invoice is already marked as paid", code="invoice_invalid_status")
        if invoice.status == InvoiceStatus.CANCELLED:
            raise InvalidStatusError("Cannot mark cancelled invoice as paid", code="invoice_invalid_status")

        now = datetime.now(timezone.utc)
        values = {
            "status": InvoiceStatus.PAID.value,
            "paid_at": paid,
            "payment_method": method.value,
            "payment_reference": payment_reference,
            "payment_note": payment_note,
            "reviewed_by": reviewed_by,
            "reviewed_at": now,
            "updated_at": now,
        }
        if not _guarded_transition(session, invoice, [InvoiceStatus.OPEN, InvoiceStatus.REVIEW], values):
            raise _transition_conflict(
                "mark_paid",
                invoice,
                "invoice_status_changed",
                "Invoice status changed while recording the payment",
            )

    updated = invoice.model_copy(update={**values, "status": InvoiceStatus.PAID, "payment_method": method})
    _record_transition("mark_paid", updated, invoice.status, payment_method=method.value)
    return updated


def attach_invoice_document(
    invoice_id: str,
    client_id: str,
    document_id: str,
    document_type: Union[str, InvoiceDocumentType],
) -> Invoice:
    """
    Link the invoice PDF or a proof document without changing status.

    Raises:
        ValidationError: Unknown document type
        NotFoundError: Invoice or document missing, or owned by another client
    """
    kind = _parse_enum(InvoiceDocumentType, document_type, "document type")
    field = "invoice_document_id" if kind == InvoiceDocumentType.INVOICE else "proof_document_id"

    with ledger_session("invoice.attach_document", client_id=client_id) as session:
        invoice = _find_invoice(session, invoice_id, client_id)
        _require_document(session, client_id, document_id)
        now = datetime.now(timezone.utc)
        session.execute(
            update(invoices)
            .where(invoices.c.id == invoice_id)
            .where(invoices.c.client_id == client_id)
            .values(**{field: document_id, "updated_at": now})
        )

    log_event(
        "info",
        "invoice.document_attached",
        client_id=client_id,
        event_type="invoice.attach_document",
        extra={"invoice_id": invoice_id, "document_id": document_id, "document_type": kind.value},
    )
    return invoice.model_copy(update={field: document_id, "updated_at": now})
