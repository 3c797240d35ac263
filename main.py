import asyncio
import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime
from typing import List, Literal, Optional

from fastapi import Depends, FastAPI, File, Form, Request, UploadFile
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import OAuth2PasswordRequestForm
from pydantic import BaseModel, EmailStr, Field
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError, PyMongoError
from starlette.exceptions import HTTPException as StarletteHTTPException

import database
from auth import create_access_token, get_current_user, hash_password, verify_password
from comics import ComicService
from content_store import ContentStore, UploadedFile
from database import create_document, ensure_indexes, get_db, serialize_doc
from episodes import EpisodeService
from exceptions import ComicChainError, ConflictError, ValidationError
from ledger import LedgerClient
from logging_config import setup_logging
from marketplace import MarketplaceService
from reading import ReadingTracker
from reconcile import reconcile_episode, reconcile_loop
from schemas import AccessType, Currency, Pricing, User, Wallet, require_account
from settings import Settings, get_settings
from stats import marketplace_stats, platform_stats

logger = logging.getLogger(__name__)

ARCHIVE_TYPES = {"application/zip", "application/x-cbz", "application/vnd.comicbook+zip", "application/octet-stream"}


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    setup_logging(settings.log_level, settings.log_dir)
    reconciler = None
    if database.db is not None:
        ensure_indexes(database.db)
        if settings.reconcile_interval_seconds:
            reconciler = asyncio.create_task(
                reconcile_loop(database.db, get_ledger(settings), settings.reconcile_interval_seconds)
            )
            logger.info("Reconciliation every %ss", settings.reconcile_interval_seconds)
    yield
    if reconciler is not None:
        reconciler.cancel()
        await asyncio.gather(reconciler, return_exceptions=True)


app = FastAPI(title="Comic Chain API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ------------------------
# Responses & errors
# ------------------------
def ok(data=None, message: Optional[str] = None) -> dict:
    body = {"success": True}
    if message:
        body["message"] = message
    if data is not None:
        body["data"] = data
    return body


def fail(status_code: int, code: str, message: str, details: Optional[dict] = None, headers=None) -> JSONResponse:
    body = {"success": False, "error": code, "message": message}
    if details:
        body["details"] = details
    return JSONResponse(status_code=status_code, content=jsonable_encoder(body), headers=headers)


@app.exception_handler(ComicChainError)
async def comic_chain_error_handler(request: Request, exc: ComicChainError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
        return fail(exc.status_code, exc.code, exc.message)
    logger.info("%s %s rejected: %s", request.method, request.url.path, exc)
    return fail(exc.status_code, exc.code, exc.message, exc.details)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    problems = "; ".join(
        f"{'.'.join(str(p) for p in err['loc'][1:]) or 'body'}: {err['msg']}" for err in exc.errors()
    )
    return fail(400, ValidationError.code, problems or "Invalid request")


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    codes = {401: "unauthorized", 403: "access_denied", 404: "not_found", 405: "method_not_allowed"}
    return fail(exc.status_code, codes.get(exc.status_code, "http_error"), str(exc.detail),
                headers=getattr(exc, "headers", None))


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return fail(500, "internal_error", "Internal server error")


# ------------------------
# Dependencies
# ------------------------
def get_ledger(settings: Settings = Depends(get_settings)) -> LedgerClient:
    return LedgerClient(settings.ledger_api_url, settings.ledger_api_key, settings.ledger_timeout_seconds)


def get_content_store(settings: Settings = Depends(get_settings)) -> ContentStore:
    return ContentStore(
        settings.content_store_url,
        settings.content_gateway_url,
        settings.content_store_api_key,
        settings.content_timeout_seconds,
    )


def get_reading_tracker(db: Database = Depends(get_db)) -> ReadingTracker:
    return ReadingTracker(db)


def get_episode_service(
    db: Database = Depends(get_db),
    ledger: LedgerClient = Depends(get_ledger),
    content_store: ContentStore = Depends(get_content_store),
    reading: ReadingTracker = Depends(get_reading_tracker),
    settings: Settings = Depends(get_settings),
) -> EpisodeService:
    return EpisodeService(
        db, ledger, content_store, reading,
        preview_page_count=settings.preview_page_count,
        max_update_retries=settings.max_update_retries,
    )


def get_comic_service(
    db: Database = Depends(get_db),
    content_store: ContentStore = Depends(get_content_store),
) -> ComicService:
    return ComicService(db, content_store)


def get_marketplace_service(
    db: Database = Depends(get_db),
    ledger: LedgerClient = Depends(get_ledger),
) -> MarketplaceService:
    return MarketplaceService(db, ledger)


async def read_upload(upload: UploadFile, settings: Settings, allowed_types) -> UploadedFile:
    if upload.content_type not in allowed_types:
        raise ValidationError(f"Unsupported file type: {upload.content_type}", {"filename": upload.filename})
    data = await upload.read()
    if len(data) > settings.upload_max_bytes:
        raise ValidationError("File too large", {"filename": upload.filename, "max_bytes": settings.upload_max_bytes})
    return UploadedFile(upload.filename or "upload", data, upload.content_type)


def split_list(value: Optional[str]) -> List[str]:
    return [item.strip() for item in (value or "").split(",") if item.strip()]


def public_user(user: dict) -> dict:
    user = dict(user)
    user.pop("password_hash", None)
    return serialize_doc(user)


# ------------------------
# Routes: Health
# ------------------------
@app.get("/")
def read_root():
    return ok(message="Comic Chain API running")


@app.get("/health")
def health():
    info = {
        "backend": "running",
        "database": "not available",
        "database_url": "set" if os.getenv("DATABASE_URL") else "not set",
        "database_name": "set" if os.getenv("DATABASE_NAME") else "not set",
        "connection_status": "not connected",
        "collections": [],
    }
    try:
        if database.db is not None:
            info["collections"] = database.db.list_collection_names()
            info["database"] = "available"
            info["connection_status"] = "connected"
    except PyMongoError as e:
        info["database"] = f"error: {str(e)[:80]}"
    return ok(info)


# ------------------------
# Auth Endpoints
# ------------------------
class RegisterRequest(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=8)
    display_name: str = Field(..., max_length=64)


def token_response(user_id: str) -> dict:
    token = create_access_token({"sub": user_id})
    # access_token at top level keeps the OAuth2 password flow working
    body = ok({"access_token": token, "token_type": "bearer"})
    body.update({"access_token": token, "token_type": "bearer"})
    return body


@app.post("/auth/register", status_code=201)
def register(body: RegisterRequest, db: Database = Depends(get_db)):
    if db["user"].find_one({"email": body.email}):
        raise ValidationError("Email already registered")
    user = User(email=body.email, password_hash=hash_password(body.password), display_name=body.display_name)
    try:
        doc = create_document(db, user)
    except DuplicateKeyError:
        raise ValidationError("Email already registered")
    return token_response(str(doc["_id"]))


@app.post("/auth/login")
def login(form_data: OAuth2PasswordRequestForm = Depends(), db: Database = Depends(get_db)):
    user = db["user"].find_one({"email": form_data.username})
    if not user or not verify_password(form_data.password, user.get("password_hash", "")):
        raise ValidationError("Incorrect email or password")
    return token_response(str(user["_id"]))


# ------------------------
# Users
# ------------------------
class WalletLinkRequest(BaseModel):
    account_id: str = Field(..., pattern=r"^\d+\.\d+\.\d+$")


@app.get("/users/me")
def get_me(user: dict = Depends(get_current_user)):
    return ok(public_user(user))


@app.put("/users/me/wallet")
def link_wallet(body: WalletLinkRequest, user: dict = Depends(get_current_user), db: Database = Depends(get_db)):
    taken = db["user"].find_one({"wallet.account_id": body.account_id, "_id": {"$ne": user["_id"]}})
    if taken:
        raise ConflictError("Account is linked to another user")
    wallet = Wallet(account_id=body.account_id, linked_at=datetime.utcnow())
    db["user"].update_one(
        {"_id": user["_id"]},
        {"$set": {"wallet": wallet.model_dump(), "updated_at": datetime.utcnow()}},
    )
    user["wallet"] = wallet.model_dump()
    return ok(public_user(user), "Wallet linked")


@app.get("/users/me/comics")
def get_my_comics(user: dict = Depends(get_current_user), comics: ComicService = Depends(get_comic_service)):
    return ok([serialize_doc(c) for c in comics.my_comics(user)])


@app.get("/users/me/collection")
def get_my_collection(user: dict = Depends(get_current_user),
                      episodes: EpisodeService = Depends(get_episode_service)):
    return ok(episodes.collection(require_account(user)))


@app.get("/users/me/listings")
def get_my_listings(user: dict = Depends(get_current_user),
                    market: MarketplaceService = Depends(get_marketplace_service)):
    return ok([serialize_doc(x) for x in market.my_listings(user)])


@app.get("/users/me/history")
def get_history(user: dict = Depends(get_current_user), reading: ReadingTracker = Depends(get_reading_tracker)):
    return ok([serialize_doc(x) for x in reading.history(user)])


# ------------------------
# Comics Endpoints
# ------------------------
@app.post("/comics", status_code=201)
async def create_comic(
    title: str = Form(...),
    description: Optional[str] = Form(None),
    series: Optional[str] = Form(None),
    genres: Optional[str] = Form(None),
    tags: Optional[str] = Form(None),
    royalty_percentage: float = Form(10.0),
    max_supply: int = Form(0),
    cover: Optional[UploadFile] = File(None),
    user: dict = Depends(get_current_user),
    comics: ComicService = Depends(get_comic_service),
    settings: Settings = Depends(get_settings),
):
    require_account(user)
    cover_file = await read_upload(cover, settings, settings.allowed_image_types) if cover else None
    doc = await comics.create_comic(
        user, title,
        description=description,
        series=series,
        genres=split_list(genres),
        tags=split_list(tags),
        royalty_percentage=royalty_percentage,
        max_supply=max_supply,
        cover=cover_file,
    )
    return ok(serialize_doc(doc), "Comic collection created successfully")


@app.get("/comics")
def list_comics(
    q: Optional[str] = None,
    status: Optional[str] = None,
    genre: Optional[str] = None,
    creator: Optional[str] = None,
    limit: int = 20,
    skip: int = 0,
    sort: str = "-created_at",
    comics: ComicService = Depends(get_comic_service),
):
    result = comics.list_comics(status=status, genre=genre, creator=creator, q=q,
                                limit=max(1, min(limit, 100)), skip=max(0, skip), sort=sort)
    result["comics"] = [serialize_doc(c) for c in result["comics"]]
    return ok(result)


@app.get("/comics/{comic_id}")
def get_comic(comic_id: str, comics: ComicService = Depends(get_comic_service),
              episodes: EpisodeService = Depends(get_episode_service)):
    comic = comics.get_comic(comic_id)
    comic["episodes"] = [episodes.public_view(ep) for ep in comic["episodes"]]
    return ok(serialize_doc(comic))


# ------------------------
# Episodes Endpoints
# ------------------------
@app.post("/comics/{comic_id}/episodes", status_code=201)
async def create_episode(
    comic_id: str,
    title: str = Form(...),
    episode_number: int = Form(...),
    description: Optional[str] = Form(None),
    mint_price: float = Form(0),
    read_price: float = Form(0),
    currency: Currency = Form("HBAR"),
    max_supply: int = Form(0),
    access_type: AccessType = Form("nft-holders"),
    is_free: bool = Form(False),
    cover: Optional[UploadFile] = File(None),
    pages: Optional[List[UploadFile]] = File(None),
    cbz: Optional[UploadFile] = File(None),
    user: dict = Depends(get_current_user),
    episodes: EpisodeService = Depends(get_episode_service),
    settings: Settings = Depends(get_settings),
):
    if cover is None or not pages:
        raise ValidationError("Cover image and pages are required")
    cover_file = await read_upload(cover, settings, settings.allowed_image_types)
    page_files = [await read_upload(p, settings, settings.allowed_image_types) for p in pages]
    cbz_file = await read_upload(cbz, settings, ARCHIVE_TYPES) if cbz else None
    doc = await episodes.create_episode(
        comic_id, user, title, episode_number,
        cover=cover_file,
        pages=page_files,
        description=description,
        pricing=Pricing(mint_price=mint_price, read_price=read_price, currency=currency),
        max_supply=max_supply,
        access_type=access_type,
        is_free=is_free,
        cbz=cbz_file,
    )
    return ok(serialize_doc(doc), "Episode created successfully")


@app.get("/episodes/{episode_id}")
def get_episode(episode_id: str, episodes: EpisodeService = Depends(get_episode_service)):
    return ok(episodes.public_view(episodes.get_episode(episode_id)))


class PublishRequest(BaseModel):
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    max_per_wallet: int = Field(0, ge=0)
    whitelist_only: bool = False
    whitelist: List[str] = []


@app.post("/episodes/{episode_id}/publish")
def publish_episode(episode_id: str, body: PublishRequest, user: dict = Depends(get_current_user),
                    episodes: EpisodeService = Depends(get_episode_service)):
    episode = episodes.publish(episode_id, user, body.model_dump())
    return ok(episodes.public_view(episode), "Episode published successfully")


class StatusRequest(BaseModel):
    status: Literal["processing", "ready", "paused", "archived"]


@app.put("/episodes/{episode_id}/status")
def set_episode_status(episode_id: str, body: StatusRequest, user: dict = Depends(get_current_user),
                       episodes: EpisodeService = Depends(get_episode_service)):
    episode = episodes.set_status(episode_id, user, body.status)
    return ok(episodes.public_view(episode), f"Episode is now {body.status}")


class MintRequest(BaseModel):
    quantity: int = Field(1, ge=1, le=100)


@app.post("/episodes/{episode_id}/mint")
async def mint_episode_nft(episode_id: str, body: MintRequest, user: dict = Depends(get_current_user),
                           episodes: EpisodeService = Depends(get_episode_service)):
    buyer_account_id = require_account(user)
    result = await episodes.mint_nft(episode_id, buyer_account_id, body.quantity)
    return ok(result, f"Minted {body.quantity} NFT(s) successfully")


@app.get("/episodes/{episode_id}/read")
def read_episode(episode_id: str, user: dict = Depends(get_current_user),
                 episodes: EpisodeService = Depends(get_episode_service)):
    return ok(episodes.read(episode_id, user))


class ProgressRequest(BaseModel):
    current_page: int
    total_pages: int


@app.put("/episodes/{episode_id}/progress")
def update_reading_progress(episode_id: str, body: ProgressRequest, user: dict = Depends(get_current_user),
                            episodes: EpisodeService = Depends(get_episode_service)):
    record = episodes.update_progress(episode_id, user, body.current_page, body.total_pages)
    return ok(serialize_doc(record), "Progress updated")


class RateRequest(BaseModel):
    rating: int = Field(..., ge=1, le=5)


@app.post("/episodes/{episode_id}/rate")
def rate_episode(episode_id: str, body: RateRequest, user: dict = Depends(get_current_user),
                 episodes: EpisodeService = Depends(get_episode_service)):
    return ok(episodes.rate(episode_id, body.rating), "Rating saved")


@app.post("/episodes/{episode_id}/reconcile")
async def reconcile_episode_mirror(
    episode_id: str,
    user: dict = Depends(get_current_user),
    episodes: EpisodeService = Depends(get_episode_service),
    db: Database = Depends(get_db),
    ledger: LedgerClient = Depends(get_ledger),
):
    episodes.owned_episode(episode_id, user)
    return ok(await reconcile_episode(db, ledger, episode_id), "Mirror reconciled")


# ------------------------
# Reader
# ------------------------
class ComicProgressRequest(BaseModel):
    comic_id: str
    current_page: int


@app.get("/reader/comic/{comic_id}")
def get_comic_content(comic_id: str, user: dict = Depends(get_current_user),
                      reading: ReadingTracker = Depends(get_reading_tracker)):
    return ok(reading.comic_content(comic_id, user))


@app.post("/reader/progress")
def save_progress(body: ComicProgressRequest, user: dict = Depends(get_current_user),
                  reading: ReadingTracker = Depends(get_reading_tracker)):
    record = reading.save_comic_progress(body.comic_id, user, body.current_page)
    return ok({"progress": record["progress"]}, "Progress saved")


@app.get("/reader/progress/{comic_id}")
def get_progress(comic_id: str, user: dict = Depends(get_current_user),
                 reading: ReadingTracker = Depends(get_reading_tracker)):
    return ok({"progress": reading.get_progress(user, comic_id)["progress"]})


@app.get("/reader/download/{comic_id}")
def download_comic(comic_id: str, user: dict = Depends(get_current_user),
                   reading: ReadingTracker = Depends(get_reading_tracker)):
    return ok(reading.download(comic_id, user))


# ------------------------
# Marketplace
# ------------------------
class ListingCreate(BaseModel):
    episode_id: str
    serial_number: int
    price: float = Field(..., gt=0)
    currency: Currency = "HBAR"


class AuctionCreate(BaseModel):
    episode_id: str
    serial_number: int
    starting_price: float = Field(..., gt=0)
    end_time: datetime
    currency: Currency = "HBAR"


class BidRequest(BaseModel):
    amount: float = Field(..., gt=0)


@app.get("/listings")
def get_listings(status: Optional[str] = "active", listing_type: Optional[str] = None,
                 episode_id: Optional[str] = None, limit: int = 20, skip: int = 0,
                 market: MarketplaceService = Depends(get_marketplace_service)):
    listings = market.list_listings(status, listing_type, episode_id, max(1, min(limit, 100)), max(0, skip))
    return ok([serialize_doc(x) for x in listings])


@app.get("/listings/{listing_id}")
def get_listing(listing_id: str, market: MarketplaceService = Depends(get_marketplace_service)):
    return ok(serialize_doc(market.get_listing(listing_id)))


@app.post("/listings", status_code=201)
def create_listing(body: ListingCreate, user: dict = Depends(get_current_user),
                   market: MarketplaceService = Depends(get_marketplace_service)):
    doc = market.create_listing(user, body.episode_id, body.serial_number, body.price, body.currency)
    return ok(serialize_doc(doc), "Listing created")


@app.post("/auctions", status_code=201)
def create_auction(body: AuctionCreate, user: dict = Depends(get_current_user),
                   market: MarketplaceService = Depends(get_marketplace_service)):
    doc = market.create_auction(user, body.episode_id, body.serial_number, body.starting_price,
                                body.end_time, body.currency)
    return ok(serialize_doc(doc), "Auction created")


@app.post("/auctions/{listing_id}/bid")
def place_bid(listing_id: str, body: BidRequest, user: dict = Depends(get_current_user),
              market: MarketplaceService = Depends(get_marketplace_service)):
    return ok(serialize_doc(market.place_bid(listing_id, user, body.amount)), "Bid placed")


@app.post("/listings/{listing_id}/buy")
async def buy_nft(listing_id: str, user: dict = Depends(get_current_user),
                  market: MarketplaceService = Depends(get_marketplace_service)):
    transaction = await market.buy(listing_id, user)
    return ok(serialize_doc(transaction), "Purchase completed")


@app.post("/auctions/{listing_id}/complete")
async def complete_auction(listing_id: str, user: dict = Depends(get_current_user),
                           market: MarketplaceService = Depends(get_marketplace_service)):
    result = await market.complete_auction(listing_id, user)
    if result["transaction"] is not None:
        result["transaction"] = serialize_doc(result["transaction"])
    return ok(result, f"Auction {result['status']}")


@app.delete("/listings/{listing_id}")
def cancel_listing(listing_id: str, user: dict = Depends(get_current_user),
                   market: MarketplaceService = Depends(get_marketplace_service)):
    return ok(serialize_doc(market.cancel_listing(listing_id, user)), "Listing cancelled")


# ------------------------
# Stats
# ------------------------
@app.get("/stats/marketplace")
def get_marketplace_stats(db: Database = Depends(get_db)):
    return ok(marketplace_stats(db))


@app.get("/stats/platform")
def get_platform_stats(db: Database = Depends(get_db)):
    return ok(platform_stats(db))


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
