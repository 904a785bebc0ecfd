import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Depends, Query, Request, Security
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from fastapi.security import APIKeyHeader
from pydantic import BaseModel, Field

from config import settings
from circulation.database import get_db_connection
from circulation.errors import (
    CirculationError,
    InvalidArgument,
    InvalidState,
    InvariantViolation,
    NotFound,
    StoreBusy,
    Unavailable,
    UpstreamUnavailable,
)
from circulation.library import Library
from circulation.records import CatalogItem
from circulation.services.directory_source import HttpDirectorySource
from circulation.services.http_client import cleanup_http_client, get_http_client
from circulation.services.reconciler import SyncResult
from circulation.services.scheduler import SyncScheduler

logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)

library = Library()


async def run_directory_sync() -> SyncResult:
    """Sync runner used by the scheduler: crawl the configured directory over the shared client."""
    client = await get_http_client()
    return await library.run_directory_sync(HttpDirectorySource(client))


scheduler = SyncScheduler(run_directory_sync)


@asynccontextmanager
async def lifespan(app: FastAPI):
    await get_http_client()
    if settings.enable_directory_sync:
        scheduler.start()
    try:
        yield
    finally:
        await scheduler.stop()
        await library.aclose()
        await cleanup_http_client()


app = FastAPI(title=settings.app_name, version=settings.app_version, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# --- Errors ---
# Order matters: first isinstance match wins
_ERROR_STATUS = [
    (NotFound, 404),
    (InvalidArgument, 400),
    (Unavailable, 409),
    (InvalidState, 409),
    (UpstreamUnavailable, 502),
    (StoreBusy, 503),
    (InvariantViolation, 500),
]


@app.exception_handler(CirculationError)
async def circulation_error_handler(request: Request, exc: CirculationError):
    status = next((code for kind, code in _ERROR_STATUS if isinstance(exc, kind)), 500)
    if status >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=status, content={"detail": str(exc), "code": exc.code})


# --- Security ---
api_key_header = APIKeyHeader(name="X-API-Key")


def get_api_key(api_key: str = Security(api_key_header)):
    """Dependency that validates the API key."""
    if api_key == settings.api_key:
        return api_key
    raise HTTPException(status_code=403, detail="Could not validate credentials")


# --- Models ---
class ItemModel(BaseModel):
    isbn: str
    title: str
    author: str
    tags: List[str] = []
    description: Optional[str] = None
    shelf: Optional[str] = None
    rack: Optional[str] = None
    total_copies: int
    issued_copies: int
    available_copies: int
    created_at: Optional[str] = None


class ItemCreateModel(BaseModel):
    isbn: str = Field(..., max_length=17)
    title: str = Field(..., min_length=1, max_length=255)
    author: str = Field(..., min_length=1, max_length=255)
    tags: List[str] = []
    description: Optional[str] = None
    shelf: Optional[str] = Field(None, max_length=50)
    rack: Optional[str] = Field(None, max_length=50)
    total_copies: int = Field(0, ge=0)


class ItemUpdateModel(BaseModel):
    isbn: Optional[str] = None
    title: Optional[str] = None
    author: Optional[str] = None
    tags: Optional[List[str]] = None
    description: Optional[str] = None
    shelf: Optional[str] = None
    rack: Optional[str] = None


class CapacityModel(BaseModel):
    total_copies: int


class IssueRequest(BaseModel):
    isbn: str
    borrower: str


class LedgerEntryModel(BaseModel):
    id: str
    borrower_handle: str
    isbn: str
    issued_at: str
    due_at: str
    returned_at: Optional[str] = None
    status: str
    is_overdue: bool


class BorrowRecordModel(LedgerEntryModel):
    borrower_name: str
    title: str


class ItemWithBorrowersModel(ItemModel):
    borrow_records: List[BorrowRecordModel] = []


class ImportResultModel(BaseModel):
    processed: int
    added: int
    skipped: int
    errors: List[Dict[str, Any]] = []


class IdentityModel(BaseModel):
    handle: str
    first_name: str
    last_name: str
    email: str
    role: str
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class StaffCreateModel(BaseModel):
    handle: str = Field(..., min_length=1)
    first_name: str = ""
    last_name: str = ""
    email: str = ""
    password: str = Field(..., min_length=8)


class StatsModel(BaseModel):
    total_items: int
    issued_items: int
    overdue_entries: int
    borrowers: int


class SyncResultModel(BaseModel):
    total: int
    created: int
    updated: int
    failed: int = 0


# --- Health ---
@app.get("/health")
def health():
    """Lightweight health endpoint: a quick DB round-trip plus sync scheduler state."""
    db_ok = True
    try:
        conn = get_db_connection()
        conn.execute("SELECT 1")
        conn.close()
    except Exception:
        db_ok = False
    return {
        "status": "healthy" if db_ok else "degraded",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "db": db_ok,
        "directory_sync": {
            "scheduled": scheduler.started,
            "running": scheduler.running,
        },
    }


# --- Catalog ---
@app.get("/books", response_model=List[ItemModel])
def get_books(
    q: Optional[str] = Query(None, description="Search in title, author, ISBN and description"),
    available: bool = Query(False, description="Only items with a free copy"),
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
):
    """List catalog items, optionally filtered."""
    if q or available:
        items = library.search_items(q or "", available_only=available)
    else:
        items = library.list_items()
    return [ItemModel(**item.to_dict()) for item in items[offset:offset + limit]]


@app.get("/books/popular", response_model=List[Dict[str, Any]])
def get_popular_books(limit: int = Query(6, ge=1, le=50)):
    return library.popular_items(limit)


@app.get("/books/new-arrivals", response_model=List[ItemModel])
def get_new_arrivals(limit: int = Query(6, ge=1, le=50)):
    return [ItemModel(**item.to_dict()) for item in library.new_arrivals(limit)]


@app.get("/books/{isbn}", response_model=ItemModel)
def get_book(isbn: str):
    return ItemModel(**library.get_item(isbn).to_dict())


@app.post("/books", response_model=ItemModel, status_code=201, dependencies=[Depends(get_api_key)])
def add_book(payload: ItemCreateModel):
    item = library.add_item(CatalogItem(
        isbn=payload.isbn,
        title=payload.title,
        author=payload.author,
        tags=payload.tags,
        description=payload.description,
        shelf=payload.shelf,
        rack=payload.rack,
        total_copies=payload.total_copies,
    ))
    return ItemModel(**item.to_dict())


@app.post("/books/import", response_model=ImportResultModel, dependencies=[Depends(get_api_key)])
async def import_books_csv(request: Request):
    """Bulk-add books from a CSV request body.

    Books whose title and author already exist are skipped; rows that fail are
    listed in ``errors`` and do not stop the import.
    """
    body = await request.body()
    try:
        text = body.decode("utf-8-sig")
    except UnicodeDecodeError as e:
        raise InvalidArgument("CSV upload must be UTF-8 text.") from e
    if not text.strip():
        raise InvalidArgument("Please upload a CSV file.")
    result = await run_in_threadpool(library.import_csv, text)
    return ImportResultModel(**result.to_dict())


@app.get("/tags", response_model=List[str])
def get_tags():
    return library.list_tags()



@app.put("/books/{isbn}", response_model=ItemModel, dependencies=[Depends(get_api_key)])
def update_book(isbn: str, update: ItemUpdateModel):
    item = library.update_item(
        isbn,
        new_isbn=update.isbn,
        title=update.title,
        author=update.author,
        description=update.description,
        shelf=update.shelf,
        rack=update.rack,
        tags=update.tags,
    )
    return ItemModel(**item.to_dict())


@app.put("/books/{isbn}/capacity", response_model=ItemModel, dependencies=[Depends(get_api_key)])
def set_book_capacity(isbn: str, payload: CapacityModel):
    library.set_capacity(isbn, payload.total_copies)
    return ItemModel(**library.get_item(isbn).to_dict())


@app.delete("/books/{isbn}", dependencies=[Depends(get_api_key)])
def delete_book(isbn: str):
    """Delete a book and its borrow history. Refused while copies are out."""
    purged = library.remove_item(isbn)
    return {"message": "Book removed.", "purged_entries": purged}


@app.get("/books/{isbn}/history", response_model=List[LedgerEntryModel], dependencies=[Depends(get_api_key)])
def get_book_history(isbn: str):
    now = datetime.now(timezone.utc)
    return [LedgerEntryModel(**entry.to_dict(now)) for entry in library.item_history(isbn)]


# --- Loans ---
@app.post("/loans", response_model=LedgerEntryModel, status_code=201, dependencies=[Depends(get_api_key)])
def issue_book(payload: IssueRequest):
    """Issue one copy of a book to a borrower."""
    if not payload.isbn.strip() or not payload.borrower.strip():
        raise InvalidArgument("Book ISBN and borrower handle are required")
    entry = library.issue(payload.borrower.strip(), payload.isbn)
    return LedgerEntryModel(**entry.to_dict())


@app.post("/loans/{entry_id}/return", response_model=LedgerEntryModel, dependencies=[Depends(get_api_key)])
def return_book(entry_id: str):
    entry = library.return_copy(entry_id)
    return LedgerEntryModel(**entry.to_dict())


@app.get("/loans/overdue", response_model=List[LedgerEntryModel], dependencies=[Depends(get_api_key)])
def get_overdue_loans():
    now = datetime.now(timezone.utc)
    return [LedgerEntryModel(**entry.to_dict(now)) for entry in library.list_overdue(now)]


# --- Identities ---
@app.get("/users/{handle}/loans", response_model=List[LedgerEntryModel], dependencies=[Depends(get_api_key)])
def get_borrow_history(handle: str):
    now = datetime.now(timezone.utc)
    return [LedgerEntryModel(**entry.to_dict(now)) for entry in library.borrower_history(handle)]


@app.get("/borrowers", response_model=List[IdentityModel], dependencies=[Depends(get_api_key)])
def get_borrowers():
    return [IdentityModel(**identity.to_dict()) for identity in library.list_borrowers()]


@app.post("/staff", response_model=IdentityModel, status_code=201, dependencies=[Depends(get_api_key)])
def create_staff(payload: StaffCreateModel):
    identity = library.provision_staff(
        payload.handle, payload.first_name, payload.last_name, payload.email, payload.password
    )
    return IdentityModel(**identity.to_dict())


@app.get("/staff/books", response_model=List[ItemWithBorrowersModel], dependencies=[Depends(get_api_key)])
def get_staff_books(
    q: Optional[str] = Query(None, description="Search in title, author, ISBN and description"),
    status: Optional[str] = Query(None, description="'issued' or 'overdue'"),
):
    """Books with everyone currently holding a copy."""
    now = datetime.now(timezone.utc)
    return [ItemWithBorrowersModel(**book) for book in library.books_with_borrowers(q or "", status or "", now)]


# --- Statistics and export ---
@app.get("/stats", response_model=StatsModel)
def get_library_stats():
    return StatsModel(**library.get_statistics())


def _csv_response(content: str, prefix: str) -> Response:
    return Response(
        content=content,
        media_type="text/csv",
        headers={
            "Content-Disposition": f"attachment; filename={prefix}_{datetime.now().strftime('%Y%m%d_%H%M%S')}.csv"
        }
    )


@app.get("/export/csv")
def export_books_csv():
    """Export the catalog with copy counts as CSV."""
    return _csv_response(library.export_csv(), "catalog_export")


@app.get("/export/csv/detailed", dependencies=[Depends(get_api_key)])
def export_books_detailed_csv():
    """Catalog CSV with the current and overdue borrowers of every book."""
    return _csv_response(library.export_csv(detailed=True), "catalog_detailed_export")


# --- Directory sync ---
@app.post("/admin/directory-sync", response_model=SyncResultModel, dependencies=[Depends(get_api_key)])
async def trigger_directory_sync():
    """Run one directory sync now and return its counts."""
    result = await scheduler.run_now(trigger="manual")
    return SyncResultModel(**result.to_dict())


@app.get("/admin/directory-sync", dependencies=[Depends(get_api_key)])
def get_directory_sync_status():
    status = scheduler.status()
    report = library.last_crawl_report
    status["last_crawl"] = report.to_dict() if report else None
    return status


@app.get("/")
def read_root():
    return {"name": settings.app_name, "version": settings.app_version}
