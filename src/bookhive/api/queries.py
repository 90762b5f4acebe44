from typing import Any, Dict, Optional
from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession
from bookhive.deps import get_session, require_admin
from bookhive.api.router import respond
from bookhive.schemas import BorrowRequestIn, NotesIn, TaxonomyIn

from bookhive.actions.activity import list_activity
from bookhive.actions.catalog import (
    list_books, get_book, list_categories, list_levels, create_category, create_level,
)
from bookhive.actions.requests import submit_borrow_request, list_borrow_requests, update_request_notes
from bookhive.actions.loans import list_loans, list_overdue_loans

router = APIRouter()
admin = APIRouter(prefix="/admin", dependencies=[Depends(require_admin)])

@router.get("/health")
async def health():
    return {"status": "ok", "service": "book-hive"}

@router.get("/books")
async def http_list_books(
    search: Optional[str] = None,
    category: Optional[str] = None,
    session: AsyncSession = Depends(get_session),
):
    return respond(await list_books(session, search=search, category_id=category))

@router.get("/books/{book_id}")
async def http_get_book(book_id: str, session: AsyncSession = Depends(get_session)):
    return respond(await get_book(session, book_id=book_id))

@router.get("/categories")
async def http_list_categories(session: AsyncSession = Depends(get_session)):
    return respond(await list_categories(session))

@router.get("/levels")
async def http_list_levels(session: AsyncSession = Depends(get_session)):
    return respond(await list_levels(session))

@router.post("/borrow-requests", status_code=201)
async def http_submit_borrow_request(payload: BorrowRequestIn, session: AsyncSession = Depends(get_session)):
    return respond(await submit_borrow_request(session, data=payload.model_dump()))

@admin.get("/borrow-requests")
async def http_list_borrow_requests(status: Optional[str] = None, session: AsyncSession = Depends(get_session)):
    return respond(await list_borrow_requests(session, status=status))

@admin.patch("/borrow-requests/{request_id}/notes")
async def http_update_request_notes(
    request_id: str,
    payload: NotesIn,
    session: AsyncSession = Depends(get_session),
    claims: Dict[str, Any] = Depends(require_admin),
):
    r = await update_request_notes(session, request_id=request_id, notes=payload.notes, actor=claims.get("sub") or "admin")
    return respond(r)

@admin.get("/loans")
async def http_list_loans(status: Optional[str] = None, session: AsyncSession = Depends(get_session)):
    return respond(await list_loans(session, status=status))

@admin.get("/overdue")
async def http_list_overdue(session: AsyncSession = Depends(get_session)):
    return respond(await list_overdue_loans(session))

@admin.get("/activity")
async def http_list_activity(
    limit: int = Query(100, ge=1, le=1000),
    actor: Optional[str] = None,
    session: AsyncSession = Depends(get_session),
):
    return respond(await list_activity(session, limit=limit, actor=actor))

@admin.post("/categories", status_code=201)
async def http_create_category(
    payload: TaxonomyIn,
    session: AsyncSession = Depends(get_session),
    claims: Dict[str, Any] = Depends(require_admin),
):
    r = await create_category(session, name=payload.name, description=payload.description, actor=claims.get("sub") or "admin")
    return respond(r)

@admin.post("/levels", status_code=201)
async def http_create_level(
    payload: TaxonomyIn,
    session: AsyncSession = Depends(get_session),
    claims: Dict[str, Any] = Depends(require_admin),
):
    r = await create_level(session, name=payload.name, description=payload.description, actor=claims.get("sub") or "admin")
    return respond(r)

router.include_router(admin)
