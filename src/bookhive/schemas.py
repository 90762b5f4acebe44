from typing import Any, Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field, conint

class _In(BaseModel):
    # the portal posts camelCase keys; snake_case is accepted too
    model_config = ConfigDict(populate_by_name=True)

class PasswordIn(_In):
    password: Optional[str] = None

class BookData(_In):
    title: Optional[str] = None
    authors: Optional[List[str] | str] = None
    description: Optional[str] = None
    isbn: Optional[str] = None
    publisher: Optional[str] = None
    publication_year: Optional[int | str] = Field(None, alias="publicationYear")
    edition: Optional[str] = None
    language: Optional[str] = None
    level_id: Optional[str] = Field(None, alias="levelId")
    cover_path: Optional[str] = Field(None, alias="coverPath")
    categories: List[str] = Field(default_factory=list)

class ManageBookIn(_In):
    action: str
    book_data: Optional[BookData] = Field(None, alias="bookData")
    book_id: Optional[str] = Field(None, alias="bookId")

class ManageCopyIn(_In):
    book_id: Optional[str] = Field(None, alias="bookId")
    location: Optional[str] = None
    notes: Optional[str] = None

class ProcessRequestIn(_In):
    request_id: Optional[str] = Field(None, alias="requestId")
    action: Optional[str] = None
    admin_email: Optional[str] = Field(None, alias="adminEmail")
    notes: Optional[str] = None

class ManageLoanIn(_In):
    loan_id: Optional[str] = Field(None, alias="loanId")
    action: Optional[str] = None
    admin_email: Optional[str] = Field(None, alias="adminEmail")

class ImportBook(BookData):
    copies: Optional[conint(ge=1, le=100)] = None

class BulkImportIn(_In):
    books: List[ImportBook] = Field(default_factory=list)

class SendEmailIn(_In):
    to: Optional[str] = None
    subject: Optional[str] = None
    html: Optional[str] = None
    text: Optional[str] = None
    queue_id: Optional[str] = Field(None, alias="queueId")

class RequestedItem(_In):
    book_id: str = Field(alias="bookId")
    quantity: conint(ge=1) = 1
    title: Optional[str] = None

class BorrowRequestIn(_In):
    requester_name: Optional[str] = Field(None, alias="requesterName")
    email: Optional[str] = None
    phone: Optional[str] = None
    affiliation: Optional[str] = None
    id_number: Optional[str] = Field(None, alias="idNumber")
    membership_id: Optional[str] = Field(None, alias="membershipId")
    requested_items: List[RequestedItem] = Field(default_factory=list, alias="requestedItems")
    desired_duration_days: conint(ge=1) = Field(14, alias="desiredDurationDays")
    pickup_location: Optional[str] = Field(None, alias="pickupLocation")
    purpose: Optional[str] = None

class NotesIn(_In):
    notes: Optional[str] = None

class TaxonomyIn(_In):
    name: str
    description: Optional[str] = None

def dump(model: Optional[BaseModel], exclude_unset: bool = False) -> Optional[Dict[str, Any]]:
    return model.model_dump(exclude_unset=exclude_unset) if model is not None else None
