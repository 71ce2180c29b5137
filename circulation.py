"""
Borrow lifecycle.

A loan is open while ``return_date`` is null. Its payment moves
unpaid -> pending -> paid | failed; a failed payment can be prepared again.
The loan only closes through ``finalize``, which runs once payment is paid
and releases the copy held by the loan.
"""

import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from bson import ObjectId
from pymongo import ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

import allocator
import inventory
import users
from config import Settings
from database import create_document, object_id, to_str_id, utcnow
from errors import (
    AlreadyBorrowing,
    ExternalFailure,
    IntegrityAlert,
    InconsistentCopyState,
    LoanAlreadyClosed,
    LoanNotFound,
    LoanOverdue,
    LoanStateChanged,
    PaymentInProgress,
    PaymentNotPending,
    RenewalLimitExceeded,
    TitleNotFound,
    ValidationFailed,
    WrongPaymentMethod,
)
from fines import calculate_fine
from schemas import Borrower, Loan, Payment
from vnpay import CallbackResult, VnpayGateway

logger = logging.getLogger(__name__)

PAYMENT_METHODS = ("cash", "gateway")


class CirculationService:
    def __init__(self, db: Database, settings: Settings, gateway: VnpayGateway = None):
        self.db = db
        self.settings = settings
        self.fine_policy = settings.fine_policy()
        self.gateway = gateway or VnpayGateway.from_settings(settings)

    # ---- lookups

    def get_loan(self, loan_id: str) -> Dict[str, Any]:
        loan = self.db["loan"].find_one({"_id": object_id(loan_id, "loan id")})
        if not loan:
            raise LoanNotFound()
        return loan

    def list_open_loans(self, user_id: str) -> List[Dict[str, Any]]:
        user = users.get_user(self.db, user_id)
        return [s for s in user.get("borrowed_books", []) if not s.get("returned")]

    def list_all_loans(self, open_only: bool = False) -> List[Dict[str, Any]]:
        query: Dict[str, Any] = {"return_date": None} if open_only else {}
        return [to_str_id(d) for d in self.db["loan"].find(query).sort("borrow_date", -1)]

    # ---- open

    def open_loan(self, book_id: str, email: str, copy_id: Optional[str] = None,
                  now: datetime = None) -> Dict[str, Any]:
        now = now or utcnow()
        book = inventory.get_book(self.db, book_id)
        if book.get("is_deleted"):
            raise TitleNotFound()
        book_id = str(book["_id"])
        user = users.find_borrower(self.db, email)
        user_id = str(user["_id"])

        if self.db["loan"].count_documents({"user.id": user_id, "book_id": book_id, "return_date": None}) > 0:
            raise AlreadyBorrowing()

        loan_oid = ObjectId()
        loan_id = str(loan_oid)
        copy = allocator.claim_copy(self.db, book_id, loan_id, copy_id)
        if inventory.get_book(self.db, book_id).get("is_deleted"):
            # deleted while the copy was being claimed
            allocator.release_copy(self.db, copy["id"], loan_id)
            inventory.recompute_counts(self.db, book_id)
            raise TitleNotFound()

        loan = Loan(
            user=Borrower(id=user_id, name=user["name"], email=user["email"]),
            book_id=book_id,
            book_copy_id=copy["id"],
            copy_code=copy["copy_code"],
            price=book.get("price", 0),
            borrow_date=now,
            due_date=now + timedelta(days=self.settings.borrow_days),
        )
        try:
            create_document(self.db, "loan", loan, _id=loan_oid)
        except DuplicateKeyError:
            # another request opened a loan for this user and book first
            allocator.release_copy(self.db, copy["id"], loan_id)
            inventory.recompute_counts(self.db, book_id)
            raise AlreadyBorrowing()
        except Exception:
            # the copy must not stay borrowed by a loan that was never written
            allocator.release_copy(self.db, copy["id"], loan_id)
            raise

        stored = self.db["loan"].find_one({"_id": loan_oid})
        users.push_loan_summary(self.db, user_id, users.summary_from_loan(stored, book["title"]))
        inventory.recompute_counts(self.db, book_id)
        logger.info("Loan %s opened: book=%s copy=%s user=%s", loan_id, book_id, copy["copy_code"], user_id)
        return {"loan": to_str_id(stored), "copy_code": copy["copy_code"]}

    # ---- renew

    def renew_loan(self, loan_id: str, user_id: str, now: datetime = None) -> Dict[str, Any]:
        now = now or utcnow()
        loan = self.get_loan(loan_id)
        if loan["user"]["id"] != str(user_id):
            raise LoanNotFound()
        if loan.get("return_date") is not None:
            raise LoanAlreadyClosed()
        if now > loan["due_date"]:
            raise LoanOverdue()
        if loan.get("renew_count", 0) >= self.settings.max_renewals:
            raise RenewalLimitExceeded()
        if loan["payment"]["status"] in ("pending", "paid"):
            raise LoanStateChanged("Loan has a payment in progress and cannot be renewed")

        new_due = loan["due_date"] + timedelta(days=self.settings.renew_days)
        updated = self.db["loan"].find_one_and_update(
            {
                "_id": loan["_id"],
                "return_date": None,
                "due_date": loan["due_date"],
                "renew_count": loan.get("renew_count", 0),
                "payment.status": {"$in": ["unpaid", "failed"]},
            },
            {
                "$set": {"due_date": new_due, "last_renewed_at": now, "updated_at": now},
                "$inc": {"renew_count": 1},
            },
            return_document=ReturnDocument.AFTER,
        )
        if updated is None:
            raise LoanStateChanged()

        users.update_loan_summary(self.db, loan["user"]["id"], loan_id, {
            "due_date": updated["due_date"],
            "renew_count": updated["renew_count"],
            "last_renewed_at": updated["last_renewed_at"],
        })
        logger.info("Loan %s renewed (%d/%d)", loan_id, updated["renew_count"], self.settings.max_renewals)
        return {"due_date": updated["due_date"], "renew_count": updated["renew_count"]}

    # ---- payment

    def prepare_payment(self, loan_id: str, method: str, client_ip: str = None,
                        now: datetime = None) -> Dict[str, Any]:
        if method not in PAYMENT_METHODS:
            raise ValidationFailed(f"method must be one of {', '.join(PAYMENT_METHODS)}")
        now = now or utcnow()
        loan = self.get_loan(loan_id)
        if loan.get("return_date") is not None or loan["payment"]["status"] == "paid":
            raise LoanAlreadyClosed()
        self._check_open_gateway_payment(loan, now)

        fine = calculate_fine(loan["due_date"], now, self.fine_policy)
        amount = loan.get("price", 0) + fine
        transaction_id = uuid.uuid4().hex if method == "gateway" else None

        payment_url = None
        if method == "gateway":
            # built before touching the loan so a misconfigured gateway changes nothing
            payment_url = self.gateway.build_payment_url(
                amount=amount,
                transaction_ref=transaction_id,
                order_info=f"Thanh toan tra sach {loan['copy_code']}",
                client_ip=client_ip,
                now=now,
            )

        payment = Payment(method=method, status="pending", amount=amount,
                          transaction_id=transaction_id, prepared_at=now)
        # only replace the payment this call looked at
        result = self.db["loan"].update_one(
            {
                "_id": loan["_id"],
                "return_date": None,
                "payment.status": loan["payment"]["status"],
                "payment.transaction_id": loan["payment"].get("transaction_id"),
            },
            {"$set": {"fine": fine, "payment": payment.model_dump(), "updated_at": now}},
        )
        if result.matched_count == 0:
            current = self.get_loan(loan_id)
            if current.get("return_date") is not None or current["payment"]["status"] == "paid":
                raise LoanAlreadyClosed()
            raise LoanStateChanged()

        logger.info("Payment prepared for loan %s: method=%s amount=%d fine=%d", loan_id, method, amount, fine)
        return {
            "loan_id": loan_id,
            "method": method,
            "price": loan.get("price", 0),
            "fine": fine,
            "amount": amount,
            "transaction_id": transaction_id,
            "payment_url": payment_url,
        }

    def _check_open_gateway_payment(self, loan: Dict[str, Any], now: datetime) -> None:
        """Refuse to replace a gateway payment the user may still complete.

        Once the gateway link has expired the old reference can be dropped;
        a callback for it is then reported as unknown.
        """
        payment = loan["payment"]
        if payment.get("method") != "gateway" or payment["status"] != "pending":
            return
        prepared_at = payment.get("prepared_at")
        if prepared_at and now < prepared_at + timedelta(minutes=self.settings.vnpay_expire_minutes):
            raise PaymentInProgress()
        logger.warning("Replacing expired gateway payment %s for loan %s",
                       payment.get("transaction_id"), loan["_id"])

    def confirm_cash(self, loan_id: str, now: datetime = None) -> Dict[str, Any]:
        now = now or utcnow()
        loan = self.get_loan(loan_id)
        if loan["payment"].get("method") != "cash":
            raise WrongPaymentMethod("Loan is not awaiting a cash payment")
        result = self.db["loan"].update_one(
            {"_id": loan["_id"], "payment.method": "cash", "payment.status": "pending"},
            {"$set": {"payment.status": "paid", "payment.paid_at": now, "updated_at": now}},
        )
        if result.matched_count == 0:
            raise PaymentNotPending()
        logger.info("Cash payment confirmed for loan %s", loan_id)
        return self.finalize(loan_id, now=now)

    def handle_gateway_callback(self, params: Dict[str, str], now: datetime = None) -> Dict[str, Any]:
        """Apply a gateway return callback.

        Never raises: the gateway redirect has to complete whatever happened,
        so the outcome is reported as ``{"status": ..., "loan_id": ...}``.
        """
        now = now or utcnow()
        try:
            outcome = self.gateway.verify_callback(params)
        except ExternalFailure as exc:
            logger.warning("Rejected gateway callback: %s", exc.message)
            return {"status": "invalid", "loan_id": None}

        loan = self.db["loan"].find_one({"payment.transaction_id": outcome.transaction_ref})
        if not loan:
            logger.warning("Gateway callback for unknown TxnRef=%s", outcome.transaction_ref)
            return {"status": "unknown", "loan_id": None}
        loan_id = str(loan["_id"])

        if loan["payment"]["status"] == "paid":
            # repeated callback, make sure the loan got closed
            return self._finalize_after_callback(loan_id, now)

        if not self._callback_matches(loan, outcome):
            self._mark_failed(loan, now)
            return {"status": "failed", "loan_id": loan_id}

        result = self.db["loan"].update_one(
            {"_id": loan["_id"], "payment.transaction_id": outcome.transaction_ref, "payment.status": "pending"},
            {"$set": {"payment.status": "paid", "payment.paid_at": now, "updated_at": now}},
        )
        if result.matched_count == 0:
            logger.warning("Gateway success for loan %s without a pending payment", loan_id)
            return {"status": "failed", "loan_id": loan_id}
        logger.info("Gateway payment confirmed for loan %s (TransactionNo=%s)", loan_id, outcome.gateway_transaction_no)
        return self._finalize_after_callback(loan_id, now)

    def _callback_matches(self, loan: Dict[str, Any], outcome: CallbackResult) -> bool:
        if not outcome.success:
            logger.warning("Gateway reported failure for loan %s: code=%s", loan["_id"], outcome.response_code)
            return False
        if outcome.amount is not None and outcome.amount != loan["payment"]["amount"]:
            logger.warning("Gateway amount %s does not match %s for loan %s",
                           outcome.amount, loan["payment"]["amount"], loan["_id"])
            return False
        return True

    def _mark_failed(self, loan: Dict[str, Any], now: datetime) -> None:
        self.db["loan"].update_one(
            {"_id": loan["_id"], "payment.status": "pending"},
            {"$set": {"payment.status": "failed", "updated_at": now}},
        )

    def _finalize_after_callback(self, loan_id: str, now: datetime) -> Dict[str, Any]:
        try:
            self.finalize(loan_id, now=now)
        except IntegrityAlert:
            return {"status": "reconcile", "loan_id": loan_id}
        return {"status": "success", "loan_id": loan_id}

    # ---- finalize

    def finalize(self, loan_id: str, now: datetime = None) -> Dict[str, Any]:
        """Close a paid loan. Safe to call again; a closed loan is left as is.

        The loan is first marked ``closing`` by one conditional update. Only
        the call that set the mark releases the copy, so concurrent callers
        never see each other's release as an integrity problem.
        """
        now = now or utcnow()
        loan = self.get_loan(loan_id)
        if loan.get("return_date") is not None:
            return to_str_id(loan)
        if loan["payment"]["status"] != "paid":
            raise PaymentNotPending("Loan cannot be closed before it is paid")

        claimed = self.db["loan"].find_one_and_update(
            {"_id": loan["_id"], "return_date": None, "payment.status": "paid", "closing": {"$ne": True}},
            {"$set": {"closing": True, "updated_at": now}},
            return_document=ReturnDocument.AFTER,
        )
        if claimed is None:
            # closed, or being closed, by another call
            return to_str_id(self.get_loan(loan_id))

        try:
            allocator.release_copy(self.db, loan["book_copy_id"], loan_id)
        except InconsistentCopyState as exc:
            self.db["loan"].update_one({"_id": loan["_id"]}, {"$set": {"closing": False}})
            logger.error("INTEGRITY: loan %s is paid but copy %s could not be released: %s",
                         loan_id, loan["book_copy_id"], exc.message)
            raise IntegrityAlert(loan_id=loan_id) from exc
        except Exception:
            self.db["loan"].update_one({"_id": loan["_id"]}, {"$set": {"closing": False}})
            raise

        self.db["loan"].update_one(
            {"_id": loan["_id"], "return_date": None},
            {"$set": {"return_date": now, "closing": False, "updated_at": now}},
        )
        users.update_loan_summary(self.db, loan["user"]["id"], loan_id, {"returned": True, "returned_date": now})
        inventory.recompute_counts(self.db, loan["book_id"])
        logger.info("Loan %s closed, copy %s released", loan_id, loan["copy_code"])
        return to_str_id(self.get_loan(loan_id))
