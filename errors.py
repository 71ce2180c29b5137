"""
Domain errors for the circulation service.

Each error carries a ``kind`` (the broad category the HTTP layer maps to a
status code) and a human readable message. Handlers render them as
``{"kind": ..., "error": <class name>, "message": ...}``.
"""


class LibraryError(Exception):
    kind = "Internal"
    status_code = 500
    default_message = "Library error"

    def __init__(self, message: str = None):
        self.message = message or self.default_message
        super().__init__(self.message)

    @property
    def name(self) -> str:
        return type(self).__name__

    def to_dict(self):
        return {"success": False, "kind": self.kind, "error": self.name, "message": self.message}


# Validation

class ValidationFailed(LibraryError):
    kind = "Validation"
    status_code = 400
    default_message = "Invalid input"


# NotFound

class NotFound(LibraryError):
    kind = "NotFound"
    status_code = 404
    default_message = "Not found"


class TitleNotFound(NotFound):
    default_message = "Book not found"


class UserNotFound(NotFound):
    default_message = "User not found"


class LoanNotFound(NotFound):
    default_message = "Loan not found"


class CopyNotFound(NotFound):
    default_message = "Book copy not found"


# Conflict

class Conflict(LibraryError):
    kind = "Conflict"
    status_code = 409
    default_message = "Conflict"


class CopyUnavailable(Conflict):
    default_message = "The requested copy is not available"


class NoCopyAvailable(Conflict):
    default_message = "No copy of this book is available"


class AlreadyBorrowing(Conflict):
    default_message = "User already has an open loan for this book"


class RenewalLimitExceeded(Conflict):
    default_message = "Renewal limit reached"


class LoanOverdue(Conflict):
    default_message = "Loan is overdue and cannot be renewed"


class LoanAlreadyClosed(Conflict):
    default_message = "Loan is already closed"


class LoanStateChanged(Conflict):
    default_message = "Loan was modified concurrently, try again"


class WrongPaymentMethod(Conflict):
    default_message = "Payment method does not match"


class PaymentNotPending(Conflict):
    default_message = "No pending payment for this loan"


class PaymentInProgress(Conflict):
    default_message = "A gateway payment for this loan is still open"


class InconsistentCopyState(Conflict):
    default_message = "Copy is not held by this loan"


class UserLocked(Conflict):
    default_message = "User account is locked"


class TitleHasOutstandingLoans(Conflict):
    default_message = "All copies must be available before deleting this book"


# ExternalFailure

class ExternalFailure(LibraryError):
    kind = "ExternalFailure"
    status_code = 502
    default_message = "Payment gateway failure"


class GatewayMisconfigured(ExternalFailure):
    status_code = 503
    default_message = "Payment gateway is not configured"


class InvalidSignature(ExternalFailure):
    default_message = "Payment callback signature mismatch"


# IntegrityAlert

class IntegrityAlert(LibraryError):
    kind = "IntegrityAlert"
    status_code = 500
    default_message = "Loan is paid but could not be closed, manual reconciliation required"

    def __init__(self, message: str = None, loan_id: str = None):
        super().__init__(message)
        self.loan_id = loan_id

    def to_dict(self):
        data = super().to_dict()
        data["loan_id"] = self.loan_id
        return data
