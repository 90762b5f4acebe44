from html import escape
from typing import Optional, Tuple

from bookhive.config import settings

_WRAPPER = (
    '<div style="font-family: -apple-system, BlinkMacSystemFont, \'Segoe UI\', sans-serif; '
    'max-width: 600px; margin: 0 auto; padding: 20px;">'
    '<h1 style="color: #1f2937; font-size: 26px;">{heading}</h1>'
    "{body}"
    '<p style="color: #6b7280; border-top: 1px solid #e5e7eb; padding-top: 16px;">'
    "Thank you,<br>{signature}</p>"
    "</div>"
)

def _render(heading: str, body: str) -> str:
    return _WRAPPER.format(heading=escape(heading), body=body, signature=escape(settings.EMAIL_FROM_NAME))

def _details(*rows: Tuple[str, Optional[str]]) -> str:
    items = "".join(
        f"<li><strong>{escape(label)}:</strong> {escape(str(value))}</li>"
        for label, value in rows if value not in (None, "")
    )
    return f'<ul style="list-style: none; padding: 0;">{items}</ul>'

def _money(cents: int) -> str:
    return f"${cents / 100:.2f}"

def loan_approval(*, borrower_name: str, book_titles: str, due_date: str, pickup_location: str,
                  unavailable_titles: Optional[str] = None) -> Tuple[str, str]:
    body = (
        f"<p>Hello {escape(borrower_name)},</p>"
        f"<p>Great news! Your request to borrow <strong>{escape(book_titles)}</strong> "
        "has been approved by our library staff.</p>"
        + _details(("Book", book_titles), ("Due Date", due_date), ("Pickup Location", pickup_location))
    )
    if unavailable_titles:
        body += (
            f"<p>Unfortunately no copy of <strong>{escape(unavailable_titles)}</strong> was available, "
            "so it is not part of this loan.</p>"
        )
    body += (
        "<p>Please bring a valid ID when picking up your book and return it by the due date "
        "to avoid late fees.</p>"
    )
    return "Loan Request Approved - Book Hive", _render("Loan Request Approved!", body)

def loan_unfulfilled(*, borrower_name: str, book_titles: str, pickup_location: Optional[str] = None) -> Tuple[str, str]:
    body = (
        f"<p>Hello {escape(borrower_name)},</p>"
        f"<p>Your request to borrow <strong>{escape(book_titles)}</strong> was approved, "
        "but no copy was available when it was processed, so no loan has been issued.</p>"
        + _details(("Unavailable", book_titles), ("Pickup Location", pickup_location))
        + "<p>Please submit a new request later or ask the library staff about waiting times.</p>"
    )
    return "Loan Request Update - Book Hive", _render("No Copies Available", body)

def loan_rejection(*, borrower_name: str, book_titles: str, reason: Optional[str] = None) -> Tuple[str, str]:
    body = (
        f"<p>Hello {escape(borrower_name)},</p>"
        f"<p>Thank you for your interest in borrowing <strong>{escape(book_titles)}</strong> from our library.</p>"
        "<p>We regret to inform you that your request could not be approved at this time.</p>"
    )
    if reason:
        body += f"<p><strong>Note from the library:</strong> {escape(reason)}</p>"
    body += "<p>The book might become available soon; feel free to submit a new request later.</p>"
    return "Loan Request Update - Book Hive", _render("Loan Request Update", body)

def renewal_confirmation(*, borrower_name: str, book_title: str, new_due_date: str, renewal_count: int) -> Tuple[str, str]:
    body = (
        f"<p>Hello {escape(borrower_name)},</p>"
        f"<p>Your loan of <strong>{escape(book_title)}</strong> has been renewed.</p>"
        + _details(("Book", book_title), ("New Due Date", new_due_date), ("Renewals", str(renewal_count)))
    )
    return "Loan Renewed - Book Hive", _render("Loan Renewed", body)

def return_confirmation(*, borrower_name: str, book_title: str, returned_date: str, late_fee_cents: int) -> Tuple[str, str]:
    body = (
        f"<p>Hello {escape(borrower_name)},</p>"
        f"<p>We have received <strong>{escape(book_title)}</strong>. Thank you for returning it.</p>"
        + _details(
            ("Book", book_title),
            ("Returned On", returned_date),
            ("Late Fee", _money(late_fee_cents) if late_fee_cents else None),
        )
    )
    return "Book Returned - Book Hive", _render("Return Confirmed", body)

def overdue_notice(*, borrower_name: str, book_title: str, authors: str, due_date: str,
                   days_overdue: int, fee_cents: int) -> Tuple[str, str]:
    body = (
        f"<p>Dear {escape(borrower_name)},</p>"
        "<p>This is a reminder that the following book is now overdue:</p>"
        + _details(
            ("Book", book_title),
            ("Author(s)", authors),
            ("Due Date", due_date),
            ("Days Overdue", str(days_overdue)),
            ("Fine Amount", _money(fee_cents)),
        )
        + "<p>Please return the book as soon as possible to avoid additional fines. "
        "If you have already returned this book, please ignore this notice.</p>"
    )
    return "Overdue Book Notice - Book Hive Library", _render("Overdue Book Notice", body)
