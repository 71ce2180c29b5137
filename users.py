"""
User directory.

Users carry a ``borrowed_books`` mirror of their loans for quick reads. The
loan collection is authoritative; the mirror can always be rebuilt from it
with ``rebuild_loan_summaries``.
"""

import logging
from typing import Any, Dict, List

from pymongo.database import Database

from database import create_document, object_id, to_str_id, utcnow
from errors import Conflict, UserLocked, UserNotFound, ValidationFailed
from schemas import LoanSummary, User

logger = logging.getLogger(__name__)


def register_user(db: Database, name: str, email: str, role: str = "User") -> Dict[str, Any]:
    name = (name or "").strip()
    email = (email or "").strip().lower()
    if not name or not email:
        raise ValidationFailed("name and email are required")
    if db["user"].count_documents({"email": email}) > 0:
        raise Conflict("Email already exists")
    user_id = create_document(db, "user", User(name=name, email=email, role=role))
    return to_str_id(db["user"].find_one({"_id": object_id(user_id)}))


def get_user(db: Database, user_id: str) -> Dict[str, Any]:
    doc = db["user"].find_one({"_id": object_id(user_id, "user id"), "is_deleted": False})
    if not doc:
        raise UserNotFound()
    return doc


def find_borrower(db: Database, email: str) -> Dict[str, Any]:
    """Verified, active user allowed to borrow."""
    email = (email or "").strip().lower()
    if not email:
        raise ValidationFailed("email is required")
    doc = db["user"].find_one({"email": email, "account_verified": True, "is_deleted": False})
    if not doc:
        raise UserNotFound()
    if doc.get("is_locked"):
        raise UserLocked(doc.get("lock_reason") or None)
    return doc


def set_user_lock(db: Database, user_id: str, locked: bool, reason: str = "") -> Dict[str, Any]:
    user = get_user(db, user_id)
    db["user"].update_one(
        {"_id": user["_id"]},
        {"$set": {"is_locked": locked, "lock_reason": reason if locked else "", "updated_at": utcnow()}},
    )
    logger.info("User %s %s", user_id, "locked" if locked else "unlocked")
    return to_str_id(get_user(db, user_id))


def push_loan_summary(db: Database, user_id: str, summary: LoanSummary) -> None:
    db["user"].update_one({"_id": object_id(user_id)}, {"$push": {"borrowed_books": summary.model_dump()}})


def update_loan_summary(db: Database, user_id: str, loan_id: str, fields: Dict[str, Any]) -> None:
    update = {f"borrowed_books.$.{k}": v for k, v in fields.items()}
    db["user"].update_one({"_id": object_id(user_id), "borrowed_books.loan_id": loan_id}, {"$set": update})


def summary_from_loan(loan: Dict[str, Any], book_title: str) -> LoanSummary:
    return LoanSummary(
        loan_id=str(loan["_id"]),
        book_id=loan["book_id"],
        book_title=book_title,
        copy_code=loan["copy_code"],
        borrowed_date=loan["borrow_date"],
        due_date=loan["due_date"],
        returned=loan.get("return_date") is not None,
        returned_date=loan.get("return_date"),
        renew_count=loan.get("renew_count", 0),
        last_renewed_at=loan.get("last_renewed_at"),
    )


def rebuild_loan_summaries(db: Database, user_id: str) -> List[Dict[str, Any]]:
    user = get_user(db, user_id)
    loans = list(db["loan"].find({"user.id": str(user["_id"])}).sort("borrow_date", 1))
    book_ids = {object_id(l["book_id"]) for l in loans}
    titles = {str(b["_id"]): b["title"] for b in db["book"].find({"_id": {"$in": list(book_ids)}})}
    summaries = [summary_from_loan(l, titles.get(l["book_id"], "")).model_dump() for l in loans]
    db["user"].update_one({"_id": user["_id"]}, {"$set": {"borrowed_books": summaries, "updated_at": utcnow()}})
    logger.info("Rebuilt %d loan summaries for user %s", len(summaries), user_id)
    return summaries
