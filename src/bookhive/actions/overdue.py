from __future__ import annotations
import logging
from datetime import date
from typing import Optional, Dict, Any

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy import select

from bookhive.email import templates
from bookhive.models import Loan, LoanStatus, OPEN_LOAN_STATUSES
from bookhive.actions.common import ok, store_error, today as _today
from bookhive.actions.activity import record_activity, SYSTEM_ACTOR
from bookhive.actions.loans import compute_late_fee_cents, days_overdue, loan_book_info
from bookhive.actions.notifications import queue_email

logger = logging.getLogger(__name__)

async def run_overdue_check(session: AsyncSession, *, today: Optional[date] = None) -> Dict[str, Any]:
    """Mark past-due loans overdue and bring their late fee up to date.

    The fee is recomputed from the due date on every run instead of being
    accumulated, so running the check twice on the same day leaves loans,
    fees and the notification queue unchanged.
    """
    today = today or _today()
    logger.info("[overdue] Starting overdue check for %s", today.isoformat())
    try:
        r = await session.execute(
            select(Loan)
            .where(Loan.status.in_(OPEN_LOAN_STATUSES), Loan.due_date < today)
            .order_by(Loan.due_date)
        )
        loans = r.scalars().all()
        processed = 0
        for loan in loans:
            days = days_overdue(loan.due_date, today)
            fee = compute_late_fee_cents(days)
            if loan.status == LoanStatus.OVERDUE and loan.late_fee_cents == fee:
                continue
            loan.status = LoanStatus.OVERDUE
            loan.late_fee_cents = fee

            title, authors = await loan_book_info(session, loan)
            subject, html = templates.overdue_notice(
                borrower_name=loan.borrower_name,
                book_title=title,
                authors=", ".join(authors) or "Unknown Author",
                due_date=loan.due_date.isoformat(),
                days_overdue=days,
                fee_cents=fee,
            )
            queue_email(
                session, to=loan.borrower_email, subject=subject, html=html,
                payload={"loan_id": loan.id, "days_overdue": days, "fine_amount": fee / 100},
            )
            record_activity(
                session, actor=SYSTEM_ACTOR, action="Loan marked overdue",
                entity_type="loan", entity_id=loan.id,
                details={
                    "borrower": loan.borrower_name,
                    "book": title,
                    "days_overdue": days,
                    "fine_amount": fee / 100,
                },
            )
            processed += 1

        record_activity(
            session, actor=SYSTEM_ACTOR, action="Daily overdue check completed",
            details={"date": today.isoformat(), "processed_count": processed, "total_overdue": len(loans)},
        )
        await session.commit()
    except SQLAlchemyError:
        await session.rollback()
        logger.exception("[overdue] Error during overdue check")
        return store_error()
    logger.info("[overdue] Processed %d of %d overdue loans", processed, len(loans))
    return ok(
        f"Processed {processed} overdue loans",
        processed_count=processed,
        total_overdue=len(loans),
    )
