import logging
import os
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Literal, Optional
from urllib.parse import urlencode

from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, RedirectResponse
from pydantic import BaseModel, Field
from pymongo.database import Database

import database
import inventory
import users
from circulation import CirculationService
from config import Settings
from database import get_db, to_str_id
from errors import LibraryError
from schemas import Book as BookSchema, BookCopy as BookCopySchema, Loan as LoanSchema, User as UserSchema
from vnpay import VnpayGateway

settings = Settings.from_env()

logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)


def get_settings() -> Settings:
    return settings


def get_circulation(db: Database = Depends(get_db), cfg: Settings = Depends(get_settings)) -> CirculationService:
    return CirculationService(db, cfg, VnpayGateway.from_settings(cfg))


# Request Models
class AddBookRequest(BaseModel):
    isbn: Optional[str] = None
    title: Optional[str] = None
    author: Optional[str] = None
    description: Optional[str] = None
    price: Optional[int] = Field(None, ge=0)
    quantity: int = Field(1, ge=1, le=500)


class CopyStatusRequest(BaseModel):
    status: str


class CreateUserRequest(BaseModel):
    name: str
    email: str
    role: Literal["User", "Admin"] = "User"


class LockUserRequest(BaseModel):
    locked: bool
    reason: str = ""


class BorrowRequest(BaseModel):
    email: str
    copy_id: Optional[str] = None


class RenewRequest(BaseModel):
    user_id: str


class PrepareReturnRequest(BaseModel):
    method: str = "cash"


@asynccontextmanager
async def lifespan(app: FastAPI):
    if database.db is not None:
        database.ensure_indexes(database.db)
    yield


app = FastAPI(title="Library Circulation API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.frontend_url],
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization"],
)


@app.exception_handler(LibraryError)
async def library_error_handler(request: Request, exc: LibraryError):
    if exc.kind == "IntegrityAlert":
        logger.error("Integrity alert on %s %s: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.get("/")
def read_root():
    return {"message": "Library Circulation API is running"}


# Books Endpoints
@app.post("/api/v1/book/admin/add", status_code=201)
def add_book(payload: AddBookRequest, db: Database = Depends(get_db)):
    result = inventory.add_book_copies(db, **payload.model_dump())
    return {"success": True, **result}


@app.get("/api/v1/book/isbn/{isbn}")
def book_by_isbn(isbn: str, db: Database = Depends(get_db)):
    book = inventory.get_book_by_isbn(db, isbn)
    return {"success": True, "exists": book is not None, "book": to_str_id(book)}


@app.get("/api/v1/book/{book_id}")
def get_book(book_id: str, db: Database = Depends(get_db)):
    return {"success": True, "book": to_str_id(inventory.get_book(db, book_id))}


@app.get("/api/v1/book/{book_id}/available-copies")
def available_copies(book_id: str, db: Database = Depends(get_db)):
    copies = inventory.list_available_copies(db, book_id)
    return {"success": True, "copies": copies, "total": len(copies)}


@app.patch("/api/v1/book/{book_id}/soft-delete")
def soft_delete_book(book_id: str, db: Database = Depends(get_db)):
    return {"success": True, "book": inventory.soft_delete_book(db, book_id)}


@app.patch("/api/v1/book/{book_id}/restore")
def restore_book(book_id: str, db: Database = Depends(get_db)):
    return {"success": True, "book": inventory.restore_book(db, book_id)}


@app.patch("/api/v1/book/copy/{copy_id}/status")
def update_copy_status(copy_id: str, payload: CopyStatusRequest, db: Database = Depends(get_db)):
    return {"success": True, "copy": inventory.set_copy_status(db, copy_id, payload.status)}


# Users Endpoints
@app.post("/api/v1/user/add", status_code=201)
def create_user(payload: CreateUserRequest, db: Database = Depends(get_db)):
    return {"success": True, "user": users.register_user(db, payload.name, payload.email, payload.role)}


@app.patch("/api/v1/user/{user_id}/lock")
def lock_user(user_id: str, payload: LockUserRequest, db: Database = Depends(get_db)):
    return {"success": True, "user": users.set_user_lock(db, user_id, payload.locked, payload.reason)}


@app.post("/api/v1/user/{user_id}/rebuild-loans")
def rebuild_user_loans(user_id: str, db: Database = Depends(get_db)):
    return {"success": True, "borrowedBooks": users.rebuild_loan_summaries(db, user_id)}


# Borrow Endpoints
@app.post("/api/v1/borrow/record-borrow-book/{book_id}", status_code=201)
def record_borrow(book_id: str, payload: BorrowRequest, service: CirculationService = Depends(get_circulation)):
    result = service.open_loan(book_id, payload.email, payload.copy_id)
    return {"success": True, **result}


@app.get("/api/v1/borrow/my-borrowed-books")
def my_borrowed_books(user_id: str, service: CirculationService = Depends(get_circulation)):
    return {"success": True, "borrowedBooks": service.list_open_loans(user_id)}


@app.get("/api/v1/borrow/borrowed-books-by-users")
def borrowed_books_by_users(open_only: bool = False, service: CirculationService = Depends(get_circulation)):
    return {"success": True, "borrowedBooks": service.list_all_loans(open_only)}


@app.post("/api/v1/borrow/renew/{loan_id}")
def renew_loan(loan_id: str, payload: RenewRequest, service: CirculationService = Depends(get_circulation)):
    return {"success": True, **service.renew_loan(loan_id, payload.user_id)}


@app.post("/api/v1/borrow/return/prepare/{loan_id}")
def prepare_return(loan_id: str, payload: PrepareReturnRequest, request: Request,
                   service: CirculationService = Depends(get_circulation)):
    client_ip = request.headers.get("x-forwarded-for", "").split(",")[0].strip()
    if not client_ip and request.client:
        client_ip = request.client.host
    return {"success": True, **service.prepare_payment(loan_id, payload.method, client_ip)}


@app.post("/api/v1/borrow/return/cash/confirm/{loan_id}")
def confirm_cash(loan_id: str, service: CirculationService = Depends(get_circulation)):
    return {"success": True, "loan": service.confirm_cash(loan_id)}


@app.post("/api/v1/borrow/finalize/{loan_id}")
def finalize_loan(loan_id: str, service: CirculationService = Depends(get_circulation)):
    return {"success": True, "loan": service.finalize(loan_id)}


@app.get("/api/v1/borrow/payment/vnpay/return")
def vnpay_return(request: Request, service: CirculationService = Depends(get_circulation),
                 cfg: Settings = Depends(get_settings)):
    try:
        outcome = service.handle_gateway_callback(dict(request.query_params))
    except Exception:
        logger.exception("Unexpected error while handling gateway callback")
        outcome = {"status": "error", "loan_id": None}
    query = {k: v for k, v in outcome.items() if v is not None}
    return RedirectResponse(f"{cfg.frontend_url}/payment-result?{urlencode(query)}", status_code=302)


# Schema info (useful for tooling)
@app.get("/schema")
def get_schema_info():
    return {
        "collections": [
            {"name": "book", "fields": list(BookSchema.model_fields.keys())},
            {"name": "bookcopy", "fields": list(BookCopySchema.model_fields.keys())},
            {"name": "loan", "fields": list(LoanSchema.model_fields.keys())},
            {"name": "user", "fields": list(UserSchema.model_fields.keys())},
        ]
    }


@app.get("/test")
def test_database():
    response: Dict[str, Any] = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "connection_status": "Not Connected",
        "collections": [],
    }
    if database.db is not None:
        response["database"] = "✅ Available"
        response["connection_status"] = "Connected"
        try:
            collections: List[str] = database.db.list_collection_names()
            response["collections"] = collections[:10]
            response["database"] = "✅ Connected & Working"
        except Exception as e:
            response["database"] = f"⚠️  Connected but Error: {str(e)[:50]}"
    response["database_url"] = "✅ Set" if settings.database_url else "❌ Not Set"
    response["database_name"] = "✅ Set" if settings.database_name else "❌ Not Set"
    response["payment_gateway"] = "✅ Set" if settings.vnpay_hash_secret else "❌ Not Set"
    return response


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
