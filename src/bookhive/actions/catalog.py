from __future__ import annotations
import logging
from collections import defaultdict
from typing import Optional, Dict, Any, List, Iterable, Tuple

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy import select, func, delete, update, cast, or_, String

from bookhive.config import settings
from bookhive.models import (
    Book, BookCategory, Category, Copy, Level, Loan,
    CopyStatus, OPEN_LOAN_STATUSES,
)
from bookhive.actions.common import ok, err, store_error, new_barcode, iso
from bookhive.actions.activity import record_activity, DEFAULT_ADMIN

logger = logging.getLogger(__name__)

BOOK_FIELDS = (
    "title", "authors", "description", "isbn", "publisher",
    "publication_year", "edition", "language", "level_id", "cover_path",
)

def _normalize_authors(value) -> List[str]:
    if not value:
        return []
    if isinstance(value, str):
        value = value.split(",")
    return [str(a).strip() for a in value if str(a).strip()]

def _parse_year(value) -> Optional[int]:
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    return int(str(value).strip())

def _book_values(book_data: Dict[str, Any], partial: bool = False) -> Dict[str, Any]:
    """Normalized column values; with partial=True only the keys present in book_data."""
    keys = [k for k in BOOK_FIELDS if k in book_data] if partial else BOOK_FIELDS
    values = {k: book_data.get(k) for k in keys}
    if "title" in values:
        values["title"] = (values["title"] or "").strip()
    if "authors" in values:
        values["authors"] = _normalize_authors(values["authors"])
    if "publication_year" in values:
        values["publication_year"] = _parse_year(values["publication_year"])
    if "level_id" in values:
        values["level_id"] = values["level_id"] or None
    return values

async def _check_taxonomy(session: AsyncSession, category_ids: List[str], level_id: Optional[str]) -> Optional[Dict[str, Any]]:
    unknown = await _unknown_categories(session, category_ids)
    if unknown:
        return err("Unknown category.", code="UNKNOWN_CATEGORY", categories=unknown)
    if not await _level_exists(session, level_id):
        return err("Unknown level.", code="UNKNOWN_LEVEL")
    return None

def summarize_availability(rows: Iterable[Tuple[str, Any]]) -> Dict[str, Dict[str, int]]:
    """Aggregate (book_id, copy_status) rows into per-book copy counts."""
    summary: Dict[str, Dict[str, int]] = defaultdict(lambda: {"total_copies": 0, "available_count": 0})
    for book_id, status in rows:
        counts = summary[book_id]
        counts["total_copies"] += 1
        if status == CopyStatus.AVAILABLE:
            counts["available_count"] += 1
    return dict(summary)

async def _availability_for(session: AsyncSession, book_ids: List[str]) -> Dict[str, Dict[str, int]]:
    if not book_ids:
        return {}
    rows = await session.execute(select(Copy.book_id, Copy.status).where(Copy.book_id.in_(book_ids)))
    return summarize_availability(rows.all())

async def _category_ids_for(session: AsyncSession, book_ids: List[str]) -> Dict[str, List[str]]:
    if not book_ids:
        return {}
    rows = await session.execute(
        select(BookCategory.book_id, BookCategory.category_id).where(BookCategory.book_id.in_(book_ids))
    )
    out: Dict[str, List[str]] = defaultdict(list)
    for book_id, category_id in rows:
        out[book_id].append(category_id)
    return dict(out)

async def _unknown_categories(session: AsyncSession, category_ids: List[str]) -> List[str]:
    if not category_ids:
        return []
    r = await session.execute(select(Category.id).where(Category.id.in_(category_ids)))
    found = set(r.scalars().all())
    return [c for c in category_ids if c not in found]

async def _level_exists(session: AsyncSession, level_id: Optional[str]) -> bool:
    if not level_id:
        return True
    r = await session.execute(select(Level.id).where(Level.id == level_id))
    return r.scalar_one_or_none() is not None

def book_to_dict(book: Book, category_ids: Optional[List[str]] = None, availability: Optional[Dict[str, int]] = None) -> Dict[str, Any]:
    counts = availability or {"total_copies": 0, "available_count": 0}
    return {
        "id": book.id,
        "title": book.title,
        "authors": list(book.authors or []),
        "description": book.description,
        "isbn": book.isbn,
        "publisher": book.publisher,
        "publication_year": book.publication_year,
        "edition": book.edition,
        "language": book.language,
        "level_id": book.level_id,
        "cover_path": book.cover_path,
        "categories": list(category_ids or []),
        "total_copies": counts["total_copies"],
        "available_count": counts["available_count"],
        "created_at": iso(book.created_at),
    }

def copy_to_dict(copy: Copy) -> Dict[str, Any]:
    return {
        "id": copy.id,
        "book_id": copy.book_id,
        "barcode": copy.barcode,
        "status": copy.status.value,
        "location": copy.location,
        "notes": copy.notes,
        "created_at": iso(copy.created_at),
    }

async def list_books(session: AsyncSession, *, search: Optional[str] = None, category_id: Optional[str] = None) -> Dict[str, Any]:
    q = select(Book).order_by(Book.title)
    if search:
        like = f"%{search.strip().lower()}%"
        q = q.where(or_(
            func.lower(Book.title).like(like),
            func.lower(cast(Book.authors, String)).like(like),
            func.lower(Book.isbn).like(like),
        ))
    if category_id:
        q = q.where(Book.id.in_(select(BookCategory.book_id).where(BookCategory.category_id == category_id)))
    books: List[Book] = (await session.execute(q)).scalars().all()
    ids = [b.id for b in books]
    avail = await _availability_for(session, ids)
    cats = await _category_ids_for(session, ids)
    items = [book_to_dict(b, cats.get(b.id), avail.get(b.id)) for b in books]
    return ok("Book list.", items=items)

async def get_book(session: AsyncSession, *, book_id: str) -> Dict[str, Any]:
    book = await session.get(Book, book_id)
    if not book:
        return err("Book not found.", code="BOOK_NOT_FOUND")
    avail = await _availability_for(session, [book.id])
    cats = await _category_ids_for(session, [book.id])
    copies = (await session.execute(select(Copy).where(Copy.book_id == book.id).order_by(Copy.barcode))).scalars().all()
    data = book_to_dict(book, cats.get(book.id), avail.get(book.id))
    data["copies"] = [copy_to_dict(c) for c in copies]
    return ok("Book details.", book=data)

async def create_book(session: AsyncSession, *, book_data: Optional[Dict[str, Any]], actor: str = DEFAULT_ADMIN) -> Dict[str, Any]:
    if not book_data:
        return err("Missing book data.", code="MISSING_BOOK_DATA")
    try:
        values = _book_values(book_data)
    except ValueError:
        return err("Publication year must be a number.", code="INVALID_YEAR")
    if not values["title"]:
        return err("Book title is required.", code="MISSING_TITLE")
    category_ids = list(dict.fromkeys(book_data.get("categories") or []))
    try:
        bad = await _check_taxonomy(session, category_ids, values["level_id"])
        if bad:
            return bad
        book = Book(**values)
        session.add(book)
        await session.flush()
        for category_id in category_ids:
            session.add(BookCategory(book_id=book.id, category_id=category_id))
        copy = Copy(book_id=book.id, barcode=new_barcode(), status=CopyStatus.AVAILABLE)
        session.add(copy)
        record_activity(
            session, actor=actor, action="book_created", entity_type="book", entity_id=book.id,
            details={"title": book.title, "initial_copy": copy.barcode},
        )
        await session.commit()
    except SQLAlchemyError:
        await session.rollback()
        logger.exception("[catalog] Error creating book")
        return store_error()
    logger.info("[catalog] Created book %s (%s)", book.id, book.title)
    return ok("Book created successfully.", book=book_to_dict(book, category_ids, {"total_copies": 1, "available_count": 1}))

async def update_book(session: AsyncSession, *, book_id: Optional[str], book_data: Optional[Dict[str, Any]], actor: str = DEFAULT_ADMIN) -> Dict[str, Any]:
    if not book_id:
        return err("Missing book id.", code="MISSING_ID")
    if not book_data:
        return err("Missing book data.", code="MISSING_BOOK_DATA")
    try:
        values = _book_values(book_data, partial=True)
    except ValueError:
        return err("Publication year must be a number.", code="INVALID_YEAR")
    if "title" in values and not values["title"]:
        return err("Book title is required.", code="MISSING_TITLE")
    # categories are replaced only when the caller sends them
    replace_categories = "categories" in book_data
    category_ids = list(dict.fromkeys(book_data.get("categories") or []))
    try:
        book = await session.get(Book, book_id)
        if not book:
            return err("Book not found.", code="BOOK_NOT_FOUND")
        bad = await _check_taxonomy(session, category_ids, values.get("level_id"))
        if bad:
            return bad
        for field, value in values.items():
            setattr(book, field, value)
        details: Dict[str, Any] = {"title": book.title, "fields": sorted(values)}
        if replace_categories:
            await session.execute(delete(BookCategory).where(BookCategory.book_id == book_id))
            for category_id in category_ids:
                session.add(BookCategory(book_id=book_id, category_id=category_id))
            details["categories"] = category_ids
        record_activity(
            session, actor=actor, action="book_updated", entity_type="book", entity_id=book_id,
            details=details,
        )
        await session.commit()
    except SQLAlchemyError:
        await session.rollback()
        logger.exception("[catalog] Error updating book %s", book_id)
        return store_error()
    avail = await _availability_for(session, [book_id])
    cats = await _category_ids_for(session, [book_id])
    return ok("Book updated successfully.", book=book_to_dict(book, cats.get(book_id), avail.get(book_id)))

async def delete_book(session: AsyncSession, *, book_id: Optional[str], actor: str = DEFAULT_ADMIN) -> Dict[str, Any]:
    if not book_id:
        return err("Missing book id.", code="MISSING_ID")
    try:
        book = await session.get(Book, book_id)
        if not book:
            return err("Book not found.", code="BOOK_NOT_FOUND")
        copy_ids = (await session.execute(select(Copy.id).where(Copy.book_id == book_id))).scalars().all()
        if copy_ids:
            r_open = await session.execute(
                select(func.count()).select_from(Loan).where(
                    Loan.copy_id.in_(copy_ids), Loan.status.in_(OPEN_LOAN_STATUSES)
                )
            )
            open_loans = int(r_open.scalar_one())
            if open_loans:
                return err(
                    "The book has copies currently on loan and cannot be deleted.",
                    code="BOOK_HAS_ACTIVE_LOANS", open_loans=open_loans,
                )
            # keep loan history, detached from the copies being removed
            await session.execute(update(Loan).where(Loan.copy_id.in_(copy_ids)).values(copy_id=None))
            await session.execute(delete(Copy).where(Copy.id.in_(copy_ids)))
        r_cats = await session.execute(delete(BookCategory).where(BookCategory.book_id == book_id))
        title = book.title
        await session.execute(delete(Book).where(Book.id == book_id))
        record_activity(
            session, actor=actor, action="book_deleted", entity_type="book", entity_id=book_id,
            details={"title": title, "removed_copies": len(copy_ids)},
        )
        await session.commit()
    except SQLAlchemyError:
        await session.rollback()
        logger.exception("[catalog] Error deleting book %s", book_id)
        return store_error()
    return ok(
        "Book deleted successfully.",
        book_id=book_id, removed_copies=len(copy_ids), removed_categories=r_cats.rowcount or 0,
    )

async def add_copy(
    session: AsyncSession, *, book_id: Optional[str], actor: str = DEFAULT_ADMIN,
    location: Optional[str] = None, notes: Optional[str] = None,
) -> Dict[str, Any]:
    if not book_id:
        return err("Missing book id.", code="MISSING_ID")
    try:
        if not await session.get(Book, book_id):
            return err("Book not found.", code="BOOK_NOT_FOUND")
        copy = Copy(book_id=book_id, barcode=new_barcode(), status=CopyStatus.AVAILABLE, location=location, notes=notes)
        session.add(copy)
        await session.flush()
        record_activity(
            session, actor=actor, action="copy_added", entity_type="copy", entity_id=copy.id,
            details={"book_id": book_id, "barcode": copy.barcode},
        )
        await session.commit()
    except SQLAlchemyError:
        await session.rollback()
        logger.exception("[catalog] Error creating copy for book %s", book_id)
        return store_error()
    return ok("Copy added successfully.", copy=copy_to_dict(copy))

async def bulk_import_books(session: AsyncSession, *, books: Optional[List[Dict[str, Any]]], actor: str = DEFAULT_ADMIN) -> Dict[str, Any]:
    if not books:
        return err("No books to import.", code="MISSING_BOOKS")
    logger.info("[catalog] Bulk importing %d books", len(books))
    results: List[Dict[str, Any]] = []
    for book_data in books:
        title = (book_data.get("title") or "").strip()
        try:
            values = _book_values(book_data)
        except ValueError:
            results.append({"title": title, "success": False, "error": "Publication year must be a number."})
            continue
        if not values["title"]:
            results.append({"title": title, "success": False, "error": "Book title is required."})
            continue
        values["language"] = values["language"] or settings.DEFAULT_LANGUAGE
        n_copies = book_data.get("copies") or settings.BULK_IMPORT_DEFAULT_COPIES
        category_ids = list(dict.fromkeys(book_data.get("categories") or []))
        # each item commits on its own
        try:
            bad = await _check_taxonomy(session, category_ids, values["level_id"])
            if bad:
                results.append({"title": title, "success": False, "error": bad["message"]})
                continue
            book = Book(**values)
            session.add(book)
            await session.flush()
            for category_id in category_ids:
                session.add(BookCategory(book_id=book.id, category_id=category_id))
            for _ in range(n_copies):
                session.add(Copy(book_id=book.id, barcode=new_barcode(), status=CopyStatus.AVAILABLE))
            await session.commit()
        except SQLAlchemyError:
            await session.rollback()
            logger.exception("[catalog] Error importing book %r", title)
            results.append({"title": title, "success": False, "error": "Could not store the book."})
            continue
        results.append({"title": title, "success": True, "bookId": book.id, "copies": n_copies})

    imported = sum(1 for r in results if r["success"])
    try:
        record_activity(
            session, actor=actor, action="books_bulk_imported", entity_type="book",
            details={"imported": imported, "total": len(books)},
        )
        await session.commit()
    except SQLAlchemyError:
        await session.rollback()
        logger.exception("[catalog] Could not log bulk import summary")
    return ok("Bulk import finished.", imported=imported, total=len(books), results=results)

async def create_category(session: AsyncSession, *, name: Optional[str], description: Optional[str] = None, actor: str = DEFAULT_ADMIN) -> Dict[str, Any]:
    name = (name or "").strip()
    if not name:
        return err("Category name is required.", code="MISSING_NAME")
    r = await session.execute(select(Category).where(func.lower(Category.name) == name.lower()))
    if r.scalar_one_or_none():
        return err("A category with that name already exists.", code="CATEGORY_EXISTS")
    try:
        c = Category(name=name, description=description)
        session.add(c)
        await session.flush()
        record_activity(session, actor=actor, action="category_created", entity_type="category", entity_id=c.id, details={"name": name})
        await session.commit()
    except SQLAlchemyError:
        await session.rollback()
        logger.exception("[catalog] Error creating category %r", name)
        return store_error()
    return ok("Category created.", category={"id": c.id, "name": c.name, "description": c.description})

async def create_level(session: AsyncSession, *, name: Optional[str], description: Optional[str] = None, actor: str = DEFAULT_ADMIN) -> Dict[str, Any]:
    name = (name or "").strip()
    if not name:
        return err("Level name is required.", code="MISSING_NAME")
    try:
        lvl = Level(name=name, description=description)
        session.add(lvl)
        await session.flush()
        record_activity(session, actor=actor, action="level_created", entity_type="level", entity_id=lvl.id, details={"name": name})
        await session.commit()
    except SQLAlchemyError:
        await session.rollback()
        logger.exception("[catalog] Error creating level %r", name)
        return store_error()
    return ok("Level created.", level={"id": lvl.id, "name": lvl.name, "description": lvl.description})

async def list_categories(session: AsyncSession) -> Dict[str, Any]:
    cats = (await session.execute(select(Category).order_by(Category.name))).scalars().all()
    return ok("Categories.", items=[{"id": c.id, "name": c.name, "description": c.description} for c in cats])

async def list_levels(session: AsyncSession) -> Dict[str, Any]:
    levels = (await session.execute(select(Level).order_by(Level.name))).scalars().all()
    return ok("Levels.", items=[{"id": l.id, "name": l.name, "description": l.description} for l in levels])
