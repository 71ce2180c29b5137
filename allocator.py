"""
Copy allocation.

Claim and release are each a single conditional update on the bookcopy
document, so two requests racing for the same copy can never both win.
"""

import logging
from typing import Any, Dict, Optional

from pymongo import ReturnDocument
from pymongo.database import Database

from database import object_id, utcnow
from errors import CopyUnavailable, InconsistentCopyState, NoCopyAvailable

logger = logging.getLogger(__name__)


def claim_copy(db: Database, book_id: str, loan_id: str, copy_id: Optional[str] = None) -> Dict[str, Any]:
    """Move one available copy of ``book_id`` to borrowed, held by ``loan_id``.

    With ``copy_id`` only that copy is tried; otherwise the lowest numbered
    available copy is taken.
    """
    update = {"$set": {"status": "borrowed", "current_loan_id": loan_id, "updated_at": utcnow()}}
    if copy_id:
        doc = db["bookcopy"].find_one_and_update(
            {"_id": object_id(copy_id, "copy id"), "book_id": book_id, "status": "available"},
            update,
            return_document=ReturnDocument.AFTER,
        )
        if doc is None:
            raise CopyUnavailable()
    else:
        doc = db["bookcopy"].find_one_and_update(
            {"book_id": book_id, "status": "available"},
            update,
            sort=[("copy_number", 1)],
            return_document=ReturnDocument.AFTER,
        )
        if doc is None:
            raise NoCopyAvailable()
    logger.debug("Claimed copy %s for loan %s", doc["copy_code"], loan_id)
    return {"id": str(doc["_id"]), "copy_code": doc["copy_code"], "copy_number": doc["copy_number"]}


def release_copy(db: Database, copy_id: str, loan_id: str) -> None:
    """Return a borrowed copy to available, only if ``loan_id`` still holds it."""
    result = db["bookcopy"].update_one(
        {"_id": object_id(copy_id, "copy id"), "status": "borrowed", "current_loan_id": loan_id},
        {"$set": {"status": "available", "current_loan_id": None, "updated_at": utcnow()}},
    )
    if result.modified_count == 0:
        raise InconsistentCopyState(f"Copy {copy_id} is not held by loan {loan_id}")
