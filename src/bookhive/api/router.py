from typing import Any, Dict
from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession
from bookhive.deps import get_session, get_mailer, require_admin
from bookhive.email.client import Mailer

from bookhive.schemas import (
    PasswordIn, ManageBookIn, ManageCopyIn,
    ProcessRequestIn, ManageLoanIn, BulkImportIn, SendEmailIn, dump,
)

from bookhive.actions.auth import check_admin_password
from bookhive.actions.catalog import create_book, update_book, delete_book, add_copy, bulk_import_books
from bookhive.actions.requests import process_borrow_request
from bookhive.actions.loans import manage_loan
from bookhive.actions.overdue import run_overdue_check
from bookhive.actions.notifications import send_email, deliver_queued_notifications

router = APIRouter(prefix="/functions")

CONFLICT_CODES = {
    "REQUEST_NOT_PENDING", "LOAN_NOT_ACTIVE", "LOAN_ALREADY_RETURNED",
    "BOOK_HAS_ACTIVE_LOANS", "RENEWAL_LIMIT_REACHED", "BARCODE_EXISTS", "CATEGORY_EXISTS",
}
UNAUTHORIZED_CODES = {"INVALID_PASSWORD"}
SERVER_CODES = {"AUTH_NOT_CONFIGURED", "STORE_ERROR", "EMAIL_FAILED"}

def status_for(code: str | None) -> int:
    code = code or ""
    if code in UNAUTHORIZED_CODES:
        return 401
    if code.endswith("_NOT_FOUND"):
        return 404
    if code in CONFLICT_CODES:
        return 409
    if code in SERVER_CODES:
        return 500
    return 400

def respond(r: Dict[str, Any]) -> Dict[str, Any]:
    """Turn an action result into the wire envelope, raising for failures."""
    if not r["ok"]:
        raise HTTPException(status_code=status_for(r.get("code")), detail=r["message"])
    return {"success": True, "message": r["message"], **(r.get("data") or {})}

def _actor(admin_email: str | None, claims: Dict[str, Any]) -> str:
    return admin_email or claims.get("sub") or "admin"

@router.post("/admin-check-password")
async def http_admin_check_password(payload: PasswordIn, request: Request, session: AsyncSession = Depends(get_session)):
    r = await check_admin_password(
        session,
        password=payload.password,
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )
    return respond(r)

@router.post("/admin-manage-book")
async def http_admin_manage_book(
    payload: ManageBookIn,
    session: AsyncSession = Depends(get_session),
    claims: Dict[str, Any] = Depends(require_admin),
):
    actor = _actor(None, claims)
    # only the keys the caller sent, so an update leaves the rest untouched
    book_data = dump(payload.book_data, exclude_unset=True)
    if payload.action == "create":
        r = await create_book(session, book_data=book_data, actor=actor)
    elif payload.action == "update":
        r = await update_book(session, book_id=payload.book_id, book_data=book_data, actor=actor)
    elif payload.action == "delete":
        r = await delete_book(session, book_id=payload.book_id, actor=actor)
    else:
        raise HTTPException(400, "Invalid action")
    return respond(r)

@router.post("/admin-manage-copy")
async def http_admin_manage_copy(
    payload: ManageCopyIn,
    session: AsyncSession = Depends(get_session),
    claims: Dict[str, Any] = Depends(require_admin),
):
    r = await add_copy(
        session, book_id=payload.book_id, actor=_actor(None, claims),
        location=payload.location, notes=payload.notes,
    )
    return respond(r)

@router.post("/process-borrow-request")
async def http_process_borrow_request(
    payload: ProcessRequestIn,
    session: AsyncSession = Depends(get_session),
    mailer: Mailer = Depends(get_mailer),
    claims: Dict[str, Any] = Depends(require_admin),
):
    r = await process_borrow_request(
        session, mailer,
        request_id=payload.request_id,
        action=payload.action,
        admin_email=_actor(payload.admin_email, claims),
        notes=payload.notes,
    )
    return respond(r)

@router.post("/admin-manage-loan")
async def http_admin_manage_loan(
    payload: ManageLoanIn,
    session: AsyncSession = Depends(get_session),
    mailer: Mailer = Depends(get_mailer),
    claims: Dict[str, Any] = Depends(require_admin),
):
    r = await manage_loan(
        session, mailer,
        loan_id=payload.loan_id,
        action=payload.action,
        admin_email=_actor(payload.admin_email, claims),
    )
    return respond(r)

@router.post("/bulk-import-books")
async def http_bulk_import_books(
    payload: BulkImportIn,
    session: AsyncSession = Depends(get_session),
    claims: Dict[str, Any] = Depends(require_admin),
):
    r = await bulk_import_books(session, books=[dump(b) for b in payload.books], actor=_actor(None, claims))
    return respond(r)

@router.post("/daily-overdue-check")
async def http_daily_overdue_check(
    session: AsyncSession = Depends(get_session),
    mailer: Mailer = Depends(get_mailer),
    claims: Dict[str, Any] = Depends(require_admin),
):
    r = respond(await run_overdue_check(session))
    drained = await deliver_queued_notifications(session, mailer)
    r["notifications"] = drained.get("data") or {}
    return r

@router.post("/send-email")
async def http_send_email(
    payload: SendEmailIn,
    session: AsyncSession = Depends(get_session),
    mailer: Mailer = Depends(get_mailer),
    claims: Dict[str, Any] = Depends(require_admin),
):
    r = await send_email(
        session, mailer,
        to=payload.to, subject=payload.subject,
        html=payload.html, text=payload.text,
        queue_id=payload.queue_id,
    )
    return respond(r)
