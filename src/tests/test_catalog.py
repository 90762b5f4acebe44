import pytest
from sqlalchemy import select, func
from bookhive import models
from bookhive.config import settings
from bookhive.actions.catalog import (
    summarize_availability,
    list_books,
    get_book,
    create_book,
    update_book,
    delete_book,
    add_copy,
    bulk_import_books,
    create_category,
    create_level,
)
from bookhive.actions.loans import manage_loan

pytestmark = pytest.mark.asyncio

async def _category(session, name):
    r = await create_category(session, name=name)
    assert r["ok"] is True
    return r["data"]["category"]["id"]

async def _count(session, model, *where):
    r = await session.execute(select(func.count()).select_from(model).where(*where))
    return r.scalar_one()

async def test_summarize_availability_groups_by_book():
    rows = [
        ("b1", models.CopyStatus.AVAILABLE),
        ("b1", models.CopyStatus.BORROWED),
        ("b1", models.CopyStatus.AVAILABLE),
        ("b2", models.CopyStatus.LOST),
    ]
    assert summarize_availability(rows) == {
        "b1": {"total_copies": 3, "available_count": 2},
        "b2": {"total_copies": 1, "available_count": 0},
    }
    assert summarize_availability([]) == {}

async def test_create_book_adds_one_copy_and_categories(session):
    fiction = await _category(session, "Fiction")
    classics = await _category(session, "Classics")
    r = await create_book(session, book_data={
        "title": "  Dune ",
        "authors": "Frank Herbert",
        "publication_year": "1965",
        "categories": [fiction, classics, fiction],
    })
    assert r["ok"] is True
    book = r["data"]["book"]
    assert book["title"] == "Dune"
    assert book["authors"] == ["Frank Herbert"]
    assert book["publication_year"] == 1965
    assert book["total_copies"] == 1 and book["available_count"] == 1
    assert await _count(session, models.Copy, models.Copy.book_id == book["id"]) == 1
    assert await _count(session, models.BookCategory, models.BookCategory.book_id == book["id"]) == 2
    barcode = (await session.execute(select(models.Copy.barcode).where(models.Copy.book_id == book["id"]))).scalar_one()
    assert barcode.startswith("BH-")

async def test_create_book_validation(session):
    r = await create_book(session, book_data=None)
    assert r["code"] == "MISSING_BOOK_DATA"
    r = await create_book(session, book_data={"title": "   "})
    assert r["code"] == "MISSING_TITLE"
    r = await create_book(session, book_data={"title": "X", "publication_year": "nineteen"})
    assert r["code"] == "INVALID_YEAR"
    r = await create_book(session, book_data={"title": "X", "categories": ["nope"]})
    assert r["ok"] is False
    assert r["code"] == "UNKNOWN_CATEGORY"
    r = await create_book(session, book_data={"title": "X", "level_id": "nope"})
    assert r["code"] == "UNKNOWN_LEVEL"
    assert await _count(session, models.Book) == 0

async def test_update_book_replaces_category_set(session):
    a = await _category(session, "A")
    b = await _category(session, "B")
    lvl = await create_level(session, name="Beginner")
    r = await create_book(session, book_data={"title": "Old", "categories": [a]})
    book_id = r["data"]["book"]["id"]

    r2 = await update_book(session, book_id=book_id, book_data={
        "title": "New", "categories": [b], "level_id": lvl["data"]["level"]["id"],
    })
    assert r2["ok"] is True
    assert r2["data"]["book"]["title"] == "New"
    assert r2["data"]["book"]["categories"] == [b]
    rows = (await session.execute(
        select(models.BookCategory.category_id).where(models.BookCategory.book_id == book_id)
    )).scalars().all()
    assert rows == [b]

async def test_update_book_missing_and_unknown(session):
    r = await update_book(session, book_id=None, book_data={"title": "X"})
    assert r["code"] == "MISSING_ID"
    r = await update_book(session, book_id="missing", book_data={"title": "X"})
    assert r["code"] == "BOOK_NOT_FOUND"

async def test_delete_book_removes_copies_and_associations(session, make_book):
    cat = await _category(session, "Poetry")
    r = await create_book(session, book_data={"title": "Leaves of Grass", "categories": [cat]})
    book_id = r["data"]["book"]["id"]
    await add_copy(session, book_id=book_id)

    r2 = await delete_book(session, book_id=book_id)
    assert r2["ok"] is True
    assert r2["data"]["removed_copies"] == 2
    assert r2["data"]["removed_categories"] == 1
    assert await _count(session, models.Book, models.Book.id == book_id) == 0
    assert await _count(session, models.Copy, models.Copy.book_id == book_id) == 0
    assert await _count(session, models.BookCategory, models.BookCategory.book_id == book_id) == 0
    assert await _count(session, models.Category) == 1

async def test_delete_book_with_active_loan_is_refused(session, make_loan):
    loan_id, copy_id = await make_loan()
    book_id = (await session.execute(select(models.Copy.book_id).where(models.Copy.id == copy_id))).scalar_one()

    r = await delete_book(session, book_id=book_id)
    assert r["ok"] is False
    assert r["code"] == "BOOK_HAS_ACTIVE_LOANS"
    assert await _count(session, models.Copy, models.Copy.id == copy_id) == 1

async def test_delete_book_keeps_returned_loan_history(session, make_loan, mailer):
    loan_id, copy_id = await make_loan()
    book_id = (await session.execute(select(models.Copy.book_id).where(models.Copy.id == copy_id))).scalar_one()
    r = await manage_loan(session, mailer, loan_id=loan_id, action="return")
    assert r["ok"] is True

    r2 = await delete_book(session, book_id=book_id)
    assert r2["ok"] is True
    loan = (await session.execute(select(models.Loan.status, models.Loan.copy_id).where(models.Loan.id == loan_id))).one()
    assert loan.status == models.LoanStatus.RETURNED
    assert loan.copy_id is None

async def test_delete_book_not_found(session):
    assert (await delete_book(session, book_id=None))["code"] == "MISSING_ID"
    assert (await delete_book(session, book_id="missing"))["code"] == "BOOK_NOT_FOUND"

async def test_add_copy(session, make_book):
    book_id, _ = await make_book(copies=1)
    r = await add_copy(session, book_id=book_id, location="Shelf B2")
    assert r["ok"] is True
    copy = r["data"]["copy"]
    assert copy["status"] == "available"
    assert copy["location"] == "Shelf B2"
    r2 = await get_book(session, book_id=book_id)
    assert r2["data"]["book"]["total_copies"] == 2
    assert len(r2["data"]["book"]["copies"]) == 2
    assert (await add_copy(session, book_id="missing"))["code"] == "BOOK_NOT_FOUND"

async def test_bulk_import_reports_per_item(session, monkeypatch):
    monkeypatch.setattr(settings, "BULK_IMPORT_DEFAULT_COPIES", 3)
    r = await bulk_import_books(session, books=[
        {"title": "Book One", "authors": ["A. Writer"]},
        {"title": "", "authors": ["Nobody"]},
        {"title": "Book Three", "copies": 1, "language": "Spanish"},
        {"title": "Bad Year", "publication_year": "abc"},
    ])
    assert r["ok"] is True
    data = r["data"]
    assert data["imported"] == 2
    assert data["total"] == 4
    assert [x["success"] for x in data["results"]] == [True, False, True, False]
    first, third = data["results"][0], data["results"][2]
    assert first["copies"] == 3
    assert third["copies"] == 1
    languages = dict((await session.execute(select(models.Book.title, models.Book.language))).all())
    assert languages == {"Book One": "English", "Book Three": "Spanish"}
    assert await _count(session, models.Copy) == 4

async def test_bulk_import_requires_books(session):
    r = await bulk_import_books(session, books=[])
    assert r["code"] == "MISSING_BOOKS"

async def test_list_books_with_availability_and_search(session, make_book):
    await make_book(title="Clean Code", copies=2)
    await make_book(title="Refactoring", authors=("Martin Fowler",), copies=1, status=models.CopyStatus.BORROWED)
    r = await list_books(session)
    assert r["ok"] is True
    items = {it["title"]: it for it in r["data"]["items"]}
    assert items["Clean Code"]["available_count"] == 2
    assert items["Refactoring"]["total_copies"] == 1
    assert items["Refactoring"]["available_count"] == 0

    r2 = await list_books(session, search="fowler")
    assert [it["title"] for it in r2["data"]["items"]] == ["Refactoring"]

async def test_duplicate_category_is_rejected(session):
    await _category(session, "History")
    r = await create_category(session, name="history")
    assert r["code"] == "CATEGORY_EXISTS"

async def test_update_book_keeps_fields_it_was_not_given(session):
    scifi = await _category(session, "Science Fiction")
    lvl = await create_level(session, name="Advanced")
    level_id = lvl["data"]["level"]["id"]
    r = await create_book(session, book_data={
        "title": "Dune", "authors": ["Frank Herbert"], "isbn": "9780441013593",
        "language": "English", "publication_year": 1965, "level_id": level_id, "categories": [scifi],
    })
    book_id = r["data"]["book"]["id"]

    r2 = await update_book(session, book_id=book_id, book_data={"title": "Dune (Deluxe Edition)"})
    assert r2["ok"] is True
    book = r2["data"]["book"]
    assert book["title"] == "Dune (Deluxe Edition)"
    assert book["authors"] == ["Frank Herbert"]
    assert book["isbn"] == "9780441013593"
    assert book["language"] == "English"
    assert book["publication_year"] == 1965
    assert book["level_id"] == level_id
    assert book["categories"] == [scifi]
    assert await _count(session, models.BookCategory, models.BookCategory.book_id == book_id) == 1

    r3 = await update_book(session, book_id=book_id, book_data={"isbn": None, "categories": []})
    assert r3["data"]["book"]["isbn"] is None
    assert r3["data"]["book"]["categories"] == []
    assert r3["data"]["book"]["title"] == "Dune (Deluxe Edition)"

async def test_update_book_rejects_blank_title(session):
    r = await create_book(session, book_data={"title": "Emma"})
    book_id = r["data"]["book"]["id"]
    r2 = await update_book(session, book_id=book_id, book_data={"title": "  "})
    assert r2["code"] == "MISSING_TITLE"
    assert (await get_book(session, book_id=book_id))["data"]["book"]["title"] == "Emma"

async def test_bulk_import_applies_and_checks_categories_and_level(session):
    poetry = await _category(session, "Poetry")
    lvl = await create_level(session, name="Intermediate")
    level_id = lvl["data"]["level"]["id"]
    r = await bulk_import_books(session, books=[
        {"title": "Leaves of Grass", "categories": [poetry, poetry], "level_id": level_id, "copies": 1},
        {"title": "Ghost Shelf", "categories": ["no-such-category"], "copies": 1},
        {"title": "Lost Level", "level_id": "no-such-level", "copies": 1},
    ])
    data = r["data"]
    assert data["imported"] == 1
    assert [x["success"] for x in data["results"]] == [True, False, False]
    assert data["results"][1]["error"] == "Unknown category."
    assert data["results"][2]["error"] == "Unknown level."

    book_id = data["results"][0]["bookId"]
    book = (await get_book(session, book_id=book_id))["data"]["book"]
    assert book["categories"] == [poetry]
    assert book["level_id"] == level_id
    assert await _count(session, models.Book) == 1
