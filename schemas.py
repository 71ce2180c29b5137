"""
Database Schemas for the Library Circulation Service

Each Pydantic model represents a collection in MongoDB.
Collection name is the lowercase class name.

Collections:
- Book
- BookCopy
- Loan
- User
- counter (per-book copy number sequence, no model)
"""

from pydantic import BaseModel, Field
from typing import Optional, List, Literal
from datetime import datetime

CopyStatus = Literal["available", "borrowed", "reserved", "lost", "damaged", "maintenance"]
PaymentMethod = Literal["cash", "gateway"]
PaymentStatus = Literal["unpaid", "pending", "paid", "failed"]


class Book(BaseModel):
    """
    Book titles collection schema
    Collection name: "book"

    The count fields are derived from the bookcopy collection and are only
    ever written by the inventory recompute.
    """
    title: str = Field(..., description="Book title")
    author: str = Field(..., description="Primary author")
    isbn: Optional[str] = Field(None, description="Normalized ISBN (uppercase alphanumeric)")
    description: str = Field("", description="Short description")
    price: int = Field(0, ge=0, description="Borrowing price")
    available_count: int = Field(0, ge=0, description="Copies with status available")
    total_copies: int = Field(0, ge=0, description="Copies that are not retired")
    is_available: bool = Field(False, description="available_count > 0")
    is_deleted: bool = Field(False, description="Soft delete flag")
    deleted_at: Optional[datetime] = None


class BookCopy(BaseModel):
    """
    Physical copies collection schema
    Collection name: "bookcopy"
    """
    book_id: str = Field(..., description="Book ObjectId as string")
    copy_number: int = Field(..., ge=1, description="Sequential number within the book")
    copy_code: str = Field(..., description="Globally unique barcode")
    status: CopyStatus = "available"
    current_loan_id: Optional[str] = Field(None, description="Set iff status is borrowed")
    acquired_at: datetime
    price: int = Field(0, ge=0)
    notes: str = ""


class Borrower(BaseModel):
    id: str
    name: str
    email: str


class Payment(BaseModel):
    method: Optional[PaymentMethod] = None
    status: PaymentStatus = "unpaid"
    amount: int = Field(0, ge=0, description="price + fine")
    transaction_id: Optional[str] = None
    prepared_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None


class Loan(BaseModel):
    """
    Loans collection schema
    Collection name: "loan"

    return_date is only set once payment.status reaches paid.
    """
    user: Borrower
    book_id: str = Field(..., description="Book ObjectId as string")
    book_copy_id: str = Field(..., description="BookCopy ObjectId as string")
    copy_code: str
    price: int = Field(0, ge=0)
    borrow_date: datetime
    due_date: datetime
    return_date: Optional[datetime] = None
    renew_count: int = Field(0, ge=0)
    last_renewed_at: Optional[datetime] = None
    fine: int = Field(0, ge=0, description="Computed when payment is prepared")
    payment: Payment = Field(default_factory=Payment)
    closing: bool = Field(False, description="Set while one finalize call releases the copy")


class LoanSummary(BaseModel):
    """Denormalized loan entry mirrored on the user document."""
    loan_id: str
    book_id: str
    book_title: str
    copy_code: str
    borrowed_date: datetime
    due_date: datetime
    returned: bool = False
    returned_date: Optional[datetime] = None
    renew_count: int = 0
    last_renewed_at: Optional[datetime] = None


class User(BaseModel):
    """
    Users collection schema
    Collection name: "user"
    """
    name: str = Field(..., description="Full name")
    email: str = Field(..., description="Email address (lowercase)")
    role: Literal["User", "Admin"] = "User"
    account_verified: bool = True
    is_locked: bool = False
    lock_reason: str = ""
    is_deleted: bool = False
    borrowed_books: List[LoanSummary] = Field(default_factory=list)
