import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request, Security
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import APIKeyHeader
from pydantic import BaseModel, Field

from book import Book
from borrow import BorrowRecord, BorrowStatus
from borrowing import build_service
from config import settings
from database import connection, format_ts
from errors import (ConflictError, DependencyError, NotFoundError, PartialStateError,
                    ValidationError)
from validators import ISBNValidator

logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)

service = build_service(db_file=os.environ.get("LIBRARY_DB_FILE"))
library = service.library
ledger = service.ledger
users = service.users

app = FastAPI(title=settings.app_name, version=settings.app_version, debug=settings.debug)

# --- CORS ---
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# --- Security ---
api_key_header = APIKeyHeader(name="X-API-Key")


def get_api_key(api_key: str = Security(api_key_header)):
    """Dependency guarding administrative routes."""
    if api_key == settings.api_key:
        return api_key
    raise HTTPException(status_code=403, detail="Could not validate credentials")


# --- Error mapping ---
RETRY_LATER_MESSAGE = "The service is temporarily unavailable. Please try again later."


@app.exception_handler(ValidationError)
async def _validation_error(request: Request, exc: ValidationError):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(NotFoundError)
async def _not_found(request: Request, exc: NotFoundError):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(ConflictError)
async def _conflict(request: Request, exc: ConflictError):
    return JSONResponse(status_code=409, content={"detail": str(exc)})


@app.exception_handler(PartialStateError)
async def _partial_state(request: Request, exc: PartialStateError):
    logger.error(f"Manual reconciliation required: step={exc.step} book={exc.book_id} "
                 f"borrow={exc.borrow_id} compensated={exc.compensated}: {exc}")
    return JSONResponse(status_code=503, content={"detail": RETRY_LATER_MESSAGE, "reconciliation_required": True})


@app.exception_handler(DependencyError)
async def _dependency(request: Request, exc: DependencyError):
    logger.warning(f"Dependency failure on {request.url.path}: {exc}")
    return JSONResponse(status_code=503, content={"detail": RETRY_LATER_MESSAGE})


# --- Models ---
class BookModel(BaseModel):
    id: str
    title: str
    author: str
    isbn: str | None = None
    status: str
    borrow_count: int = 0
    average_rating: float = 0.0
    ratings: List[Dict[str, Any]] = []
    publisher: str | None = None
    published_date: str | None = None
    description: str | None = None
    page_count: int | None = None
    categories: List[str] = []
    cover_url: str | None = None
    location: str | None = None
    added_date: str | None = None
    logs: Dict[str, Any] = {}


class BookCreateModel(BaseModel):
    isbn: str | None = Field(default=None, description="Provide alone to fetch metadata automatically")
    title: str | None = Field(default=None, description="Manual title when not using an ISBN lookup")
    author: str | None = Field(default=None, description="Manual author when not using an ISBN lookup")
    publisher: str | None = None
    description: str | None = None
    page_count: int | None = None
    categories: List[str] | None = None
    cover_url: str | None = None
    location: str | None = None


class BookUpdateModel(BaseModel):
    title: str | None = None
    author: str | None = None
    isbn: str | None = None
    publisher: str | None = None
    published_date: str | None = None
    description: str | None = None
    page_count: int | None = None
    categories: List[str] | None = None
    cover_url: str | None = None
    location: str | None = None


class StatusUpdateModel(BaseModel):
    status: str


class RatingCreateModel(BaseModel):
    user: str
    rating: int = Field(ge=1, le=5)


class BorrowerModel(BaseModel):
    name: str | None = None
    email: str | None = None
    phone: str | None = None
    uid: str | None = None


class OTPRequestModel(BaseModel):
    book_id: str
    borrower: BorrowerModel


class OTPResponseModel(BaseModel):
    book_id: str
    email: str
    delivery: Dict[str, bool]
    expires_in_minutes: int


class BorrowRequestModel(BaseModel):
    book_id: str
    borrower: BorrowerModel
    otp: str


class BorrowResponseModel(BaseModel):
    borrow_id: str
    book_id: str
    due_date: datetime


class BorrowRecordModel(BaseModel):
    id: str
    book_id: str
    borrower: Dict[str, Any]
    borrow_date: str
    due_date: str
    return_date: str | None = None
    status: str


class QRModel(BaseModel):
    book_id: str
    payload: str
    image: str | None = None


class ScanModel(BaseModel):
    payload: str = Field(..., description="Raw text read from a book QR code")


class UserCreateModel(BaseModel):
    uid: str | None = None
    email: str
    name: str
    role: str = "borrower"
    phone: str | None = None


class UserModel(BaseModel):
    uid: str
    email: str
    name: str
    role: str
    phone: str | None = None
    created_at: str | None = None


# --- Helpers ---
def _book_out(book: Book) -> BookModel:
    return BookModel(**book.to_dict())


def _borrow_out(record: BorrowRecord) -> BorrowRecordModel:
    return BorrowRecordModel(**record.to_dict())


def _resolve_borrower(model: BorrowerModel) -> Dict[str, Any]:
    """Use the stored profile when only a uid is given; otherwise take the payload as-is."""
    if model.uid and not (model.name and model.email):
        return users.require_user(model.uid).as_borrower().to_dict()
    return model.model_dump()


# --- Health & statistics ---
@app.get("/health")
def health():
    db_ok = True
    try:
        with connection(library.db_file) as conn:
            conn.execute("SELECT 1")
    except DependencyError:
        db_ok = False
    return {
        "status": "healthy" if db_ok else "degraded",
        "timestamp": format_ts(datetime.now(timezone.utc)),
        "db": db_ok,
        "services": {
            "email": service.dispatcher.email_available(),
            "sms": service.dispatcher.sms_available(),
            "google_books": settings.enable_google_books,
        },
    }


@app.get("/stats")
def get_stats():
    return library.get_statistics()


@app.get("/reports")
def get_report(time_range: str = Query("month", alias="range", description="week | month | year")):
    return service.report(time_range=time_range)


# --- Books ---
@app.get("/books", response_model=List[BookModel])
def list_books(
    status: Optional[str] = Query(None, description="available | borrowed | unavailable | deleted"),
    q: Optional[str] = Query(None, description="Search title, author or ISBN"),
):
    if q:
        books = library.search_books(q)
        if status:
            books = [b for b in books if b.status.value == status]
    else:
        books = library.list_books(status)
    return [_book_out(b) for b in books]


@app.get("/books/popular", response_model=List[BookModel])
def most_borrowed_books(limit: int = Query(10, ge=1, le=50)):
    return [_book_out(b) for b in library.most_borrowed(limit)]


@app.get("/books/top-rated", response_model=List[BookModel])
def highest_rated_books(limit: int = Query(10, ge=1, le=50)):
    return [_book_out(b) for b in library.highest_rated(limit)]


@app.get("/books/{book_id}", response_model=BookModel)
def get_book(book_id: str):
    return _book_out(library.require_book(book_id))


@app.post("/books", response_model=BookModel, status_code=201, dependencies=[Depends(get_api_key)])
def add_book(payload: BookCreateModel, actor: Optional[str] = Header(None, alias="X-Actor")):
    """Add a book by ISBN lookup, or from manual title and author."""
    if payload.title or payload.author:
        book = library.add_book(payload.model_dump(exclude_none=True), actor=actor)
    elif payload.isbn:
        book = library.add_book_by_isbn(payload.isbn, actor=actor)
    else:
        raise ValidationError("Provide an ISBN, or a title and an author.")
    return _book_out(book)


@app.put("/books/{book_id}", response_model=BookModel, dependencies=[Depends(get_api_key)])
def update_book(book_id: str, update: BookUpdateModel, actor: Optional[str] = Header(None, alias="X-Actor")):
    return _book_out(library.update_book(book_id, actor=actor, **update.model_dump(exclude_none=True)))


@app.delete("/books/{book_id}", dependencies=[Depends(get_api_key)])
def delete_book(book_id: str, actor: Optional[str] = Header(None, alias="X-Actor")):
    library.soft_delete(book_id, actor=actor)
    return {"message": "Book deleted.", "id": book_id}


@app.put("/books/{book_id}/status", response_model=BookModel, dependencies=[Depends(get_api_key)])
def change_status(book_id: str, update: StatusUpdateModel, actor: Optional[str] = Header(None, alias="X-Actor")):
    return _book_out(service.set_availability(book_id, update.status, actor=actor))


@app.post("/books/{book_id}/ratings", response_model=BookModel)
def rate_book(book_id: str, rating: RatingCreateModel):
    return _book_out(library.add_rating(book_id, rating.user, rating.rating))


@app.get("/books/{book_id}/borrows", response_model=List[BorrowRecordModel])
def book_borrow_history(book_id: str):
    library.require_book(book_id)
    return [_borrow_out(r) for r in ledger.list_by_book(book_id)]


@app.post("/books/{book_id}/qr", response_model=QRModel, dependencies=[Depends(get_api_key)])
def generate_qr(book_id: str, actor: Optional[str] = Header(None, alias="X-Actor")):
    return QRModel(**library.generate_qr(book_id, actor=actor))


@app.post("/books/scan", response_model=BookModel)
def scan_qr(scan: ScanModel):
    return _book_out(library.find_by_qr(scan.payload))


# --- Borrowing ---
@app.post("/borrows/otp", response_model=OTPResponseModel, status_code=202)
def request_otp(payload: OTPRequestModel):
    """Issue a one-time code for a pending borrow and send it to the borrower."""
    return OTPResponseModel(**service.initiate_borrow(payload.book_id, _resolve_borrower(payload.borrower)))


@app.post("/borrows", response_model=BorrowResponseModel, status_code=201)
def create_borrow(payload: BorrowRequestModel, actor: Optional[str] = Header(None, alias="X-Actor")):
    result = service.borrow_with_otp(payload.book_id, _resolve_borrower(payload.borrower), payload.otp, actor=actor)
    return BorrowResponseModel(**result)


@app.post("/borrows/{borrow_id}/return", response_model=BorrowRecordModel)
def return_borrow(borrow_id: str, actor: Optional[str] = Header(None, alias="X-Actor")):
    return _borrow_out(service.complete_return(borrow_id, actor=actor))


@app.get("/borrows", response_model=List[BorrowRecordModel])
def list_borrows(
    status: Optional[str] = Query(None, description="active | returned"),
    email: Optional[str] = Query(None, description="Borrower e-mail"),
):
    if status is not None and status not in {s.value for s in BorrowStatus}:
        raise ValidationError("Invalid status. Allowed: active, returned")
    if email:
        records = ledger.list_by_borrower_email(email)
    elif status == BorrowStatus.ACTIVE.value:
        records = ledger.list_active()
    else:
        records = ledger.list_all()
    if status:
        records = [r for r in records if r.status.value == status]
    return [_borrow_out(r) for r in records]


@app.get("/borrows/overdue", response_model=List[BorrowRecordModel])
def list_overdue():
    return [_borrow_out(r) for r in service.list_overdue()]


@app.post("/borrows/reminders", dependencies=[Depends(get_api_key)])
def send_reminders(within_days: Optional[int] = Query(None, ge=0, le=30)):
    return {"sent": service.send_due_reminders(within_days=within_days)}


# --- Metadata lookup ---
@app.get("/metadata/isbn/{isbn}")
def lookup_isbn(isbn: str):
    isbn = ISBNValidator.normalize_isbn(isbn)
    if not ISBNValidator.is_valid_isbn(isbn):
        raise ValidationError("Invalid ISBN format.")
    found = library.metadata.lookup_isbn(isbn)
    if not found:
        raise NotFoundError(f"No metadata found for ISBN {isbn}.")
    return found.to_dict()


@app.get("/metadata/search")
def search_metadata(q: str = Query(..., min_length=1), limit: int = Query(10, ge=1, le=40)):
    return [m.to_dict() for m in library.metadata.search(q, limit)]


# --- Users ---
@app.post("/users", response_model=UserModel, status_code=201)
def register_user(payload: UserCreateModel):
    return UserModel(**users.register(payload.model_dump()).to_dict())


@app.get("/users/{uid}", response_model=UserModel)
def get_user(uid: str):
    return UserModel(**users.require_user(uid).to_dict())


@app.get("/")
def read_root():
    return {"name": settings.app_name, "version": settings.app_version}
