"""
Inventory ledger and catalog administration.

A book's ``available_count``, ``total_copies`` and ``is_available`` are a
cache of the bookcopy collection. They are rebuilt by ``recompute_counts``
after every copy change and never incremented or decremented in place.
"""

import hashlib
import logging
import re
from typing import Any, Dict, List, Optional

from pymongo import ReturnDocument
from pymongo.database import Database

from database import create_document, object_id, to_str_id, utcnow
from errors import (
    CopyNotFound,
    CopyUnavailable,
    TitleHasOutstandingLoans,
    TitleNotFound,
    ValidationFailed,
)
from schemas import Book, BookCopy

logger = logging.getLogger(__name__)

# copies in these states no longer count towards total_copies
RETIRED_STATUSES = ("lost",)
ADMIN_STATUSES = ("available", "reserved", "lost", "damaged", "maintenance")


def normalize_isbn(isbn: Optional[str]) -> str:
    return re.sub(r"[-\s]", "", str(isbn or "").strip()).upper()


def build_copy_code(book: Dict[str, Any], copy_number: int) -> str:
    prefix = normalize_isbn(book.get("isbn"))
    if not prefix:
        prefix = hashlib.sha1(str(book["_id"]).encode("utf-8")).hexdigest()[:12].upper()
    return f"{prefix}-{copy_number:04d}"


def copy_counts(db: Database, book_id: str) -> Dict[str, int]:
    total = db["bookcopy"].count_documents({"book_id": book_id, "status": {"$nin": list(RETIRED_STATUSES)}})
    available = db["bookcopy"].count_documents({"book_id": book_id, "status": "available"})
    return {"total": total, "available": available}


def recompute_counts(db: Database, book_id: str) -> Dict[str, Any]:
    """Rebuild the cached counts of one book from its copies.

    Idempotent. A missing book is a programming error, not a user facing one,
    so it raises LookupError.
    """
    counts = copy_counts(db, book_id)
    update = {
        "available_count": counts["available"],
        "total_copies": counts["total"],
        "is_available": counts["available"] > 0,
        "updated_at": utcnow(),
    }
    doc = db["book"].find_one_and_update(
        {"_id": object_id(book_id, "book id")},
        {"$set": update},
        return_document=ReturnDocument.AFTER,
    )
    if doc is None:
        raise LookupError(f"book {book_id} does not exist")
    return doc


def get_book(db: Database, book_id: str) -> Dict[str, Any]:
    doc = db["book"].find_one({"_id": object_id(book_id, "book id")})
    if not doc:
        raise TitleNotFound()
    return doc


def _next_copy_numbers(db: Database, book_id: str, count: int) -> range:
    counter = db["counter"].find_one_and_update(
        {"_id": f"bookcopy:{book_id}"},
        {"$inc": {"seq": count}},
        upsert=True,
        return_document=ReturnDocument.AFTER,
    )
    last = counter["seq"]
    return range(last - count + 1, last + 1)


def add_book_copies(
    db: Database,
    isbn: Optional[str] = None,
    title: Optional[str] = None,
    author: Optional[str] = None,
    description: Optional[str] = None,
    price: Optional[int] = None,
    quantity: int = 1,
) -> Dict[str, Any]:
    """Add ``quantity`` physical copies, creating the book first if needed.

    An existing book is matched by normalized ISBN; its descriptive fields are
    updated from whatever was supplied and a soft-deleted book is restored.
    Copy numbers come from a per-book atomic counter so concurrent adds never
    collide.
    """
    if quantity < 1:
        raise ValidationFailed("quantity must be at least 1")
    normalized = normalize_isbn(isbn) or None
    book = db["book"].find_one({"isbn": normalized}) if normalized else None
    created = book is None

    if created:
        if not (title or "").strip() or not (author or "").strip():
            raise ValidationFailed("title and author are required for a new book")
        data = Book(
            title=title.strip(),
            author=author.strip(),
            isbn=normalized,
            description=(description or "").strip(),
            price=price or 0,
        )
        book_id = create_document(db, "book", data)
    else:
        book_id = str(book["_id"])
        update: Dict[str, Any] = {"updated_at": utcnow(), "is_deleted": False, "deleted_at": None}
        if title and title.strip():
            update["title"] = title.strip()
        if author and author.strip():
            update["author"] = author.strip()
        if description is not None:
            update["description"] = description.strip()
        if price is not None:
            update["price"] = price
        db["book"].update_one({"_id": book["_id"]}, {"$set": update})

    book = db["book"].find_one({"_id": object_id(book_id)})
    now = utcnow()
    docs = []
    for number in _next_copy_numbers(db, book_id, quantity):
        copy = BookCopy(
            book_id=book_id,
            copy_number=number,
            copy_code=build_copy_code(book, number),
            acquired_at=now,
            price=book.get("price", 0),
        )
        data = copy.model_dump()
        data["created_at"] = now
        data["updated_at"] = now
        docs.append(data)
    db["bookcopy"].insert_many(docs)

    book = recompute_counts(db, book_id)
    logger.info("Added %d copies to book %s (created=%s)", quantity, book_id, created)
    return {"book": to_str_id(book), "created": created, "created_copies": quantity}


def list_available_copies(db: Database, book_id: str) -> List[Dict[str, Any]]:
    get_book(db, book_id)
    docs = db["bookcopy"].find({"book_id": book_id, "status": "available"}).sort("copy_number", 1)
    return [to_str_id(d) for d in docs]


def set_copy_status(db: Database, copy_id: str, status: str) -> Dict[str, Any]:
    """Administrative status change. Borrowed copies are left to the loan flow."""
    if status not in ADMIN_STATUSES:
        raise ValidationFailed(f"status must be one of {', '.join(ADMIN_STATUSES)}")
    oid = object_id(copy_id, "copy id")
    doc = db["bookcopy"].find_one_and_update(
        {"_id": oid, "status": {"$ne": "borrowed"}},
        {"$set": {"status": status, "current_loan_id": None, "updated_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    if doc is None:
        if db["bookcopy"].count_documents({"_id": oid}) == 0:
            raise CopyNotFound()
        raise CopyUnavailable("Copy is on loan, close the loan first")
    recompute_counts(db, doc["book_id"])
    return to_str_id(doc)


def get_book_by_isbn(db: Database, isbn: str) -> Optional[Dict[str, Any]]:
    normalized = normalize_isbn(isbn)
    if not normalized:
        raise ValidationFailed("isbn is required")
    return db["book"].find_one({"isbn": normalized})


def soft_delete_book(db: Database, book_id: str) -> Dict[str, Any]:
    """Hide a book whose copies are all on the shelf.

    The flag is set first and the copies are checked afterwards, so a borrow
    racing with the delete either shows up in the check or sees the flag.
    """
    book = get_book(db, book_id)
    doc = db["book"].find_one_and_update(
        {"_id": book["_id"], "is_deleted": False},
        {"$set": {"is_deleted": True, "deleted_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    if doc is None:
        return to_str_id(get_book(db, book_id))
    counts = copy_counts(db, book_id)
    if counts["available"] != counts["total"]:
        db["book"].update_one({"_id": book["_id"]}, {"$set": {"is_deleted": False, "deleted_at": None}})
        raise TitleHasOutstandingLoans()
    doc = recompute_counts(db, book_id)
    logger.info("Soft deleted book %s", book_id)
    return to_str_id(doc)


def restore_book(db: Database, book_id: str) -> Dict[str, Any]:
    book = get_book(db, book_id)
    if book.get("is_deleted"):
        db["book"].update_one({"_id": book["_id"]}, {"$set": {"is_deleted": False, "deleted_at": None}})
    return to_str_id(recompute_counts(db, book_id))
