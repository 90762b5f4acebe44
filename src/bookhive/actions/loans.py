from __future__ import annotations
import logging
from datetime import date, timedelta
from typing import Optional, Dict, Any, List, Tuple

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy import select, update, or_, and_

from bookhive.config import settings
from bookhive.email import templates
from bookhive.email.client import Mailer
from bookhive.models import Book, Copy, Loan, CopyStatus, LoanStatus
from bookhive.actions.common import ok, err, store_error, today as _today, iso
from bookhive.actions.activity import record_activity, DEFAULT_ADMIN
from bookhive.actions.notifications import dispatch_email

logger = logging.getLogger(__name__)

RETURN = "return"
RENEW = "renew"

def compute_late_fee_cents(days_overdue: int, *, rate_cents: Optional[int] = None, cap_cents: Optional[int] = None) -> int:
    """Late fee for a loan ``days_overdue`` whole days past due, recomputed from scratch."""
    rate = settings.LATE_FEE_PER_DAY_CENTS if rate_cents is None else rate_cents
    cap = settings.LATE_FEE_CAP_CENTS if cap_cents is None else cap_cents
    if days_overdue <= 0:
        return 0
    fee = days_overdue * rate
    return min(fee, cap) if cap is not None else fee

def days_overdue(due_date: date, on: date) -> int:
    return max(0, (on - due_date).days)

def loan_to_dict(loan: Loan) -> Dict[str, Any]:
    return {
        "id": loan.id,
        "borrow_request_id": loan.borrow_request_id,
        "copy_id": loan.copy_id,
        "borrower_name": loan.borrower_name,
        "borrower_email": loan.borrower_email,
        "borrower_phone": loan.borrower_phone,
        "issued_date": iso(loan.issued_date),
        "due_date": iso(loan.due_date),
        "duration_days": loan.duration_days,
        "status": loan.status.value,
        "renewal_count": loan.renewal_count,
        "late_fee": loan.late_fee_cents / 100,
        "late_fee_cents": loan.late_fee_cents,
        "issued_by": loan.issued_by,
        "returned_date": iso(loan.returned_date),
        "returned_to": loan.returned_to,
        "notes": loan.notes,
    }

async def loan_book_info(session: AsyncSession, loan: Loan) -> Tuple[str, List[str]]:
    if not loan.copy_id:
        return "Unknown Book", []
    r = await session.execute(
        select(Book.title, Book.authors).join(Copy, Copy.book_id == Book.id).where(Copy.id == loan.copy_id)
    )
    row = r.first()
    if not row:
        return "Unknown Book", []
    return row.title, list(row.authors or [])

async def list_loans(session: AsyncSession, *, status: Optional[str] = None) -> Dict[str, Any]:
    q = select(Loan).order_by(Loan.due_date)
    if status:
        try:
            q = q.where(Loan.status == LoanStatus(status))
        except ValueError:
            return err("Unknown loan status.", code="INVALID_STATUS")
    loans = (await session.execute(q)).scalars().all()
    return ok("Loans.", items=[loan_to_dict(l) for l in loans])

async def list_overdue_loans(session: AsyncSession, *, today: Optional[date] = None) -> Dict[str, Any]:
    today = today or _today()
    q = (
        select(Loan)
        .where(or_(
            Loan.status == LoanStatus.OVERDUE,
            and_(Loan.status == LoanStatus.ACTIVE, Loan.due_date < today),
        ))
        .order_by(Loan.due_date)
    )
    loans = (await session.execute(q)).scalars().all()
    items = []
    for loan in loans:
        d = loan_to_dict(loan)
        d["days_overdue"] = days_overdue(loan.due_date, today)
        items.append(d)
    return ok("Overdue loans.", items=items)

async def return_loan(session: AsyncSession, mailer: Mailer, *, loan: Loan, actor: str, today: date) -> Dict[str, Any]:
    if loan.status == LoanStatus.RETURNED:
        return err("Loan was already returned.", code="LOAN_ALREADY_RETURNED")
    loan.status = LoanStatus.RETURNED
    loan.returned_date = today
    loan.returned_to = actor
    fee = compute_late_fee_cents(days_overdue(loan.due_date, today))
    if fee > loan.late_fee_cents:
        loan.late_fee_cents = fee
    if loan.copy_id:
        await session.execute(update(Copy).where(Copy.id == loan.copy_id).values(status=CopyStatus.AVAILABLE))
    record_activity(
        session, actor=actor, action="book_returned", entity_type="loan", entity_id=loan.id,
        details={"borrower": loan.borrower_name, "copy_id": loan.copy_id, "late_fee": loan.late_fee_cents / 100},
    )
    title, _ = await loan_book_info(session, loan)
    await session.commit()

    subject, html = templates.return_confirmation(
        borrower_name=loan.borrower_name, book_title=title,
        returned_date=today.isoformat(), late_fee_cents=loan.late_fee_cents,
    )
    await dispatch_email(
        session, mailer, to=loan.borrower_email, subject=subject, html=html,
        action="Return confirmation email sent", entity_type="loan", entity_id=loan.id,
    )
    logger.info("[loan] Successfully returned loan %s", loan.id)
    return ok("Loan returned successfully", loan=loan_to_dict(loan))

async def renew_loan(session: AsyncSession, mailer: Mailer, *, loan: Loan, actor: str) -> Dict[str, Any]:
    if loan.status != LoanStatus.ACTIVE:
        return err(f"Only active loans can be renewed (loan is {loan.status.value}).", code="LOAN_NOT_ACTIVE", status=loan.status.value)
    if settings.MAX_RENEWALS is not None and loan.renewal_count >= settings.MAX_RENEWALS:
        return err("The loan has reached the maximum number of renewals.", code="RENEWAL_LIMIT_REACHED")
    period = loan.duration_days or max(1, (loan.due_date - loan.issued_date).days)
    loan.due_date = loan.due_date + timedelta(days=period)
    loan.renewal_count = (loan.renewal_count or 0) + 1
    record_activity(
        session, actor=actor, action="loan_renewed", entity_type="loan", entity_id=loan.id,
        details={
            "borrower": loan.borrower_name,
            "new_due_date": loan.due_date.isoformat(),
            "renewal_count": loan.renewal_count,
        },
    )
    title, _ = await loan_book_info(session, loan)
    await session.commit()

    subject, html = templates.renewal_confirmation(
        borrower_name=loan.borrower_name, book_title=title,
        new_due_date=loan.due_date.isoformat(), renewal_count=loan.renewal_count,
    )
    await dispatch_email(
        session, mailer, to=loan.borrower_email, subject=subject, html=html,
        action="Renewal confirmation email sent", entity_type="loan", entity_id=loan.id,
    )
    logger.info("[loan] Successfully renewed loan %s", loan.id)
    return ok("Loan renewed successfully", loan=loan_to_dict(loan))

async def manage_loan(
    session: AsyncSession,
    mailer: Mailer,
    *,
    loan_id: Optional[str],
    action: Optional[str],
    admin_email: Optional[str] = None,
    today: Optional[date] = None,
) -> Dict[str, Any]:
    if not loan_id:
        return err("Missing loan id.", code="MISSING_ID")
    if action not in (RETURN, RENEW):
        return err("Action must be 'return' or 'renew'.", code="INVALID_ACTION")
    actor = admin_email or DEFAULT_ADMIN
    logger.info("[loan] Processing %s for loan %s", action, loan_id)
    try:
        loan = await session.get(Loan, loan_id)
        if not loan:
            return err("Loan not found.", code="LOAN_NOT_FOUND")
        if action == RETURN:
            return await return_loan(session, mailer, loan=loan, actor=actor, today=today or _today())
        return await renew_loan(session, mailer, loan=loan, actor=actor)
    except SQLAlchemyError:
        await session.rollback()
        logger.exception("[loan] Error processing %s for loan %s", action, loan_id)
        return store_error()
