from __future__ import annotations
import json
import logging
from datetime import date, datetime, timedelta
from typing import Optional, Dict, Any, List

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy import select, update

from bookhive.email import templates
from bookhive.email.client import Mailer
from bookhive.models import (
    Book, BorrowRequest, Copy, Loan,
    CopyStatus, LoanStatus, RequestStatus,
)
from bookhive.actions.common import ok, err, store_error, utcnow, iso
from bookhive.actions.activity import record_activity, DEFAULT_ADMIN
from bookhive.actions.loans import loan_to_dict
from bookhive.actions.notifications import dispatch_email

logger = logging.getLogger(__name__)

APPROVE = "approved"
REJECT = "rejected"

REQUIRED_FIELDS = ("requester_name", "email", "affiliation", "id_number", "pickup_location")

def _requested_items(raw) -> List[Dict[str, Any]]:
    # older rows may hold the list serialized as a JSON string
    if isinstance(raw, str):
        raw = json.loads(raw or "[]")
    items = []
    for it in raw or []:
        book_id = it.get("book_id") or it.get("id")
        if not book_id:
            continue
        items.append({
            "book_id": book_id,
            "quantity": max(1, int(it.get("quantity") or 1)),
            "title": it.get("title"),
        })
    return items

def request_to_dict(req: BorrowRequest) -> Dict[str, Any]:
    return {
        "id": req.id,
        "requester_name": req.requester_name,
        "email": req.email,
        "phone": req.phone,
        "affiliation": req.affiliation,
        "id_number": req.id_number,
        "membership_id": req.membership_id,
        "requested_items": _requested_items(req.requested_items),
        "desired_duration_days": req.desired_duration_days,
        "pickup_location": req.pickup_location,
        "purpose": req.purpose,
        "status": req.status.value,
        "admin_notes": req.admin_notes,
        "approved_by": req.approved_by,
        "approved_at": iso(req.approved_at),
        "created_at": iso(req.created_at),
    }

async def _titles_for(session: AsyncSession, book_ids: List[str]) -> Dict[str, str]:
    if not book_ids:
        return {}
    rows = await session.execute(select(Book.id, Book.title).where(Book.id.in_(book_ids)))
    return {book_id: title for book_id, title in rows}

async def submit_borrow_request(session: AsyncSession, *, data: Dict[str, Any]) -> Dict[str, Any]:
    missing = [f for f in REQUIRED_FIELDS if not (data.get(f) or "").strip()]
    if missing:
        return err("Missing required fields.", code="MISSING_FIELDS", fields=missing)
    items = _requested_items(data.get("requested_items"))
    if not items:
        return err("At least one book must be requested.", code="MISSING_ITEMS")
    raw_duration = data.get("desired_duration_days")
    duration = 14 if raw_duration in (None, "") else int(raw_duration)
    if duration < 1:
        return err("The loan duration must be at least one day.", code="INVALID_DURATION")
    titles = await _titles_for(session, [it["book_id"] for it in items])
    unknown = [it["book_id"] for it in items if it["book_id"] not in titles]
    if unknown:
        return err("Requested book not found.", code="BOOK_NOT_FOUND", book_ids=unknown)
    for it in items:
        it["title"] = titles[it["book_id"]]
    try:
        req = BorrowRequest(
            requester_name=data["requester_name"].strip(),
            email=data["email"].strip().lower(),
            phone=data.get("phone"),
            affiliation=data["affiliation"].strip(),
            id_number=data["id_number"].strip(),
            membership_id=data.get("membership_id"),
            requested_items=items,
            desired_duration_days=duration,
            pickup_location=data["pickup_location"].strip(),
            purpose=data.get("purpose"),
            status=RequestStatus.PENDING,
        )
        session.add(req)
        await session.flush()
        record_activity(
            session, actor=req.email, action="borrow_request_submitted",
            entity_type="borrow_request", entity_id=req.id,
            details={"requester_name": req.requester_name, "items_count": len(items)},
        )
        await session.commit()
    except SQLAlchemyError:
        await session.rollback()
        logger.exception("[process-request] Error storing borrow request")
        return store_error()
    return ok("Borrow request submitted.", request=request_to_dict(req))

async def list_borrow_requests(session: AsyncSession, *, status: Optional[str] = None) -> Dict[str, Any]:
    q = select(BorrowRequest).order_by(BorrowRequest.created_at.desc())
    if status:
        try:
            q = q.where(BorrowRequest.status == RequestStatus(status))
        except ValueError:
            return err("Unknown request status.", code="INVALID_STATUS")
    reqs = (await session.execute(q)).scalars().all()
    return ok("Borrow requests.", items=[request_to_dict(r) for r in reqs])

async def update_request_notes(session: AsyncSession, *, request_id: str, notes: Optional[str], actor: str = DEFAULT_ADMIN) -> Dict[str, Any]:
    try:
        req = await session.get(BorrowRequest, request_id)
        if not req:
            return err("Borrow request not found.", code="REQUEST_NOT_FOUND")
        req.admin_notes = notes
        record_activity(
            session, actor=actor, action="borrow_request_notes_updated",
            entity_type="borrow_request", entity_id=request_id,
        )
        await session.commit()
    except SQLAlchemyError:
        await session.rollback()
        logger.exception("[process-request] Error updating notes for %s", request_id)
        return store_error()
    return ok("Notes updated.", request=request_to_dict(req))

async def _claim_copy(session: AsyncSession, book_id: str) -> Optional[str]:
    """Move one available copy of the book to borrowed, or return None.

    The status guard on the UPDATE makes the claim a compare-and-set: a copy
    taken by a concurrent approval matches zero rows and the next candidate is
    tried.
    """
    r = await session.execute(
        select(Copy.id)
        .where(Copy.book_id == book_id, Copy.status == CopyStatus.AVAILABLE)
        .order_by(Copy.created_at, Copy.barcode)
    )
    for copy_id in r.scalars().all():
        claimed = await session.execute(
            update(Copy)
            .where(Copy.id == copy_id, Copy.status == CopyStatus.AVAILABLE)
            .values(status=CopyStatus.BORROWED)
        )
        if claimed.rowcount == 1:
            return copy_id
    return None

async def _allocate_item(session: AsyncSession, req: BorrowRequest, item: Dict[str, Any], *,
                         issued: date, due: date, actor: str) -> List[Loan]:
    loans: List[Loan] = []
    for _ in range(item["quantity"]):
        copy_id = await _claim_copy(session, item["book_id"])
        if not copy_id:
            break
        loan = Loan(
            borrow_request_id=req.id,
            copy_id=copy_id,
            borrower_name=req.requester_name,
            borrower_email=req.email,
            borrower_phone=req.phone,
            issued_date=issued,
            due_date=due,
            duration_days=req.desired_duration_days,
            status=LoanStatus.ACTIVE,
            issued_by=actor,
            notes=req.purpose or None,
        )
        session.add(loan)
        loans.append(loan)
    await session.flush()
    return loans

async def _approve(session: AsyncSession, req: BorrowRequest, *, actor: str, now: datetime, today: date):
    req.status = RequestStatus.APPROVED
    req.approved_by = actor
    req.approved_at = now
    # flush before the per-item savepoints so they nest inside the outer transaction
    await session.flush()

    items = _requested_items(req.requested_items)
    titles = await _titles_for(session, [it["book_id"] for it in items])
    due = today + timedelta(days=req.desired_duration_days)
    outcomes: List[Dict[str, Any]] = []
    loans: List[Loan] = []
    for item in items:
        outcome = {
            "book_id": item["book_id"],
            "title": titles.get(item["book_id"]) or item.get("title"),
            "requested": item["quantity"],
            "loan_ids": [],
            "copy_ids": [],
        }
        try:
            async with session.begin_nested():
                item_loans = await _allocate_item(session, req, item, issued=today, due=due, actor=actor)
        except SQLAlchemyError:
            logger.exception("[process-request] Allocation failed for book %s on request %s", item["book_id"], req.id)
            outcome["status"] = "error"
            outcomes.append(outcome)
            continue
        loans.extend(item_loans)
        outcome["loan_ids"] = [l.id for l in item_loans]
        outcome["copy_ids"] = [l.copy_id for l in item_loans]
        if len(item_loans) == item["quantity"]:
            outcome["status"] = "fulfilled"
        elif item_loans:
            outcome["status"] = "partial"
        else:
            logger.warning("[process-request] No available copy found for book %s", item["book_id"])
            outcome["status"] = "unavailable"
        outcomes.append(outcome)

    record_activity(
        session, actor=actor, action="borrow_request_approved",
        entity_type="borrow_request", entity_id=req.id,
        details={
            "requester_name": req.requester_name,
            "items_count": len(items),
            "loans_created": len(loans),
            "unfulfilled": [o["book_id"] for o in outcomes if o["status"] != "fulfilled"],
            "due_date": due.isoformat(),
        },
    )
    return due, outcomes, loans

async def process_borrow_request(
    session: AsyncSession,
    mailer: Mailer,
    *,
    request_id: Optional[str],
    action: Optional[str],
    admin_email: Optional[str] = None,
    notes: Optional[str] = None,
    now: Optional[datetime] = None,
    today: Optional[date] = None,
) -> Dict[str, Any]:
    if not request_id:
        return err("Missing request id.", code="MISSING_ID")
    if action not in (APPROVE, REJECT):
        return err("Action must be 'approved' or 'rejected'.", code="INVALID_ACTION")
    actor = admin_email or DEFAULT_ADMIN
    now = now or utcnow()
    today = today or now.date()
    logger.info("[process-request] Processing %s for request %s", action, request_id)

    try:
        req = await session.get(BorrowRequest, request_id)
        if not req:
            return err("Borrow request not found.", code="REQUEST_NOT_FOUND")
        if req.status != RequestStatus.PENDING:
            return err(f"Request was already {req.status.value}.", code="REQUEST_NOT_PENDING", status=req.status.value)
        if notes is not None:
            req.admin_notes = notes
        if action == APPROVE:
            due, outcomes, loans = await _approve(session, req, actor=actor, now=now, today=today)
        else:
            req.status = RequestStatus.REJECTED
            req.approved_by = None
            req.approved_at = None
            record_activity(
                session, actor=actor, action="borrow_request_rejected",
                entity_type="borrow_request", entity_id=req.id,
                details={"requester_name": req.requester_name},
            )
        await session.commit()
    except SQLAlchemyError:
        await session.rollback()
        logger.exception("[process-request] Error processing request %s", request_id)
        return store_error()

    if action == REJECT:
        titles = ", ".join(it.get("title") or it["book_id"] for it in _requested_items(req.requested_items))
        subject, html = templates.loan_rejection(borrower_name=req.requester_name, book_titles=titles, reason=req.admin_notes)
        await dispatch_email(
            session, mailer, to=req.email, subject=subject, html=html,
            action="Loan rejection email sent", entity_type="borrow_request", entity_id=req.id,
        )
        logger.info("[process-request] Successfully rejected request %s", request_id)
        return ok("Request rejected successfully", request_id=req.id, status=req.status.value)

    fulfilled = [o for o in outcomes if o["loan_ids"]]
    unavailable = [o for o in outcomes if o["status"] in ("unavailable", "error", "partial")]
    if fulfilled:
        subject, html = templates.loan_approval(
            borrower_name=req.requester_name,
            book_titles=", ".join(o["title"] or o["book_id"] for o in fulfilled),
            due_date=due.isoformat(),
            pickup_location=req.pickup_location,
            unavailable_titles=", ".join(o["title"] or o["book_id"] for o in unavailable) or None,
        )
    else:
        logger.warning("[process-request] Request %s approved but no copy could be allocated", request_id)
        subject, html = templates.loan_unfulfilled(
            borrower_name=req.requester_name,
            book_titles=", ".join(o["title"] or o["book_id"] for o in outcomes),
            pickup_location=req.pickup_location,
        )
    await dispatch_email(
        session, mailer, to=req.email, subject=subject, html=html,
        action="Loan approval email sent", entity_type="borrow_request", entity_id=req.id,
    )

    logger.info("[process-request] Successfully approved request %s (%d loans)", request_id, len(loans))
    return ok(
        "Request approved successfully",
        request_id=req.id,
        status=req.status.value,
        due_date=due.isoformat(),
        requested_count=sum(o["requested"] for o in outcomes),
        fulfilled_count=len(loans),
        items=outcomes,
        loans=[loan_to_dict(l) for l in loans],
    )
