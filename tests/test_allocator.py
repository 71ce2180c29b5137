import pytest

import allocator
import inventory
from errors import CopyUnavailable, InconsistentCopyState, NoCopyAvailable


def test_claims_until_exhausted(db, book):
    first = allocator.claim_copy(db, book["id"], "loan-1")
    second = allocator.claim_copy(db, book["id"], "loan-2")
    assert {first["id"], second["id"]} == {str(c["_id"]) for c in db["bookcopy"].find()}
    with pytest.raises(NoCopyAvailable):
        allocator.claim_copy(db, book["id"], "loan-3")
    assert db["bookcopy"].count_documents({"status": "borrowed"}) == 2


def test_hinted_claim_of_taken_copy_fails_without_side_effects(db, book):
    copy = inventory.list_available_copies(db, book["id"])[0]
    allocator.claim_copy(db, book["id"], "loan-1", copy["id"])
    with pytest.raises(CopyUnavailable):
        allocator.claim_copy(db, book["id"], "loan-2", copy["id"])
    stored = db["bookcopy"].find_one({"copy_code": copy["copy_code"]})
    assert stored["current_loan_id"] == "loan-1"


def test_hinted_claim_must_belong_to_book(db, book):
    other = inventory.add_book_copies(db, isbn="9780132350884", title="Clean Code", author="Robert C. Martin")
    foreign = inventory.list_available_copies(db, other["book"]["id"])[0]
    with pytest.raises(CopyUnavailable):
        allocator.claim_copy(db, book["id"], "loan-1", foreign["id"])
    assert db["bookcopy"].count_documents({"status": "borrowed"}) == 0


def test_release_requires_holding_loan(db, book):
    claimed = allocator.claim_copy(db, book["id"], "loan-1")
    with pytest.raises(InconsistentCopyState):
        allocator.release_copy(db, claimed["id"], "loan-2")
    assert db["bookcopy"].count_documents({"status": "borrowed", "current_loan_id": "loan-1"}) == 1

    allocator.release_copy(db, claimed["id"], "loan-1")
    with pytest.raises(InconsistentCopyState):
        allocator.release_copy(db, claimed["id"], "loan-1")
    stored = db["bookcopy"].find_one({"copy_code": claimed["copy_code"]})
    assert stored["status"] == "available"
    assert stored["current_loan_id"] is None
