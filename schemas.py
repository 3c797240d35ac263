"""
Database Schemas for the Comic Chain API

Pydantic models define MongoDB collections. Class name in snake_case is the
collection name (ReadHistory -> read_history). References to other documents
are stored as string ids.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Literal, Optional, Union

from pydantic import BaseModel, EmailStr, Field, model_validator

from exceptions import ValidationError

EpisodeStatus = Literal["draft", "processing", "ready", "published", "paused", "archived"]
AccessType = Literal["public", "nft-holders", "paid", "free"]
Currency = Literal["HBAR", "USDT"]
ListingType = Literal["fixed-price", "auction"]
ListingStatus = Literal["active", "completed", "cancelled"]


# Users
class Wallet(BaseModel):
    account_id: str = Field(..., pattern=r"^\d+\.\d+\.\d+$", description="Ledger account id, e.g. 0.0.1234")
    linked_at: Optional[datetime] = None


class User(BaseModel):
    email: EmailStr
    password_hash: str
    display_name: str = Field(..., max_length=64)
    avatar_url: Optional[str] = None
    is_active: bool = True
    wallet: Optional[Wallet] = None


@dataclass(frozen=True)
class LinkedAccount:
    account_id: str


@dataclass(frozen=True)
class Unlinked:
    pass


WalletLink = Union[LinkedAccount, Unlinked]


def wallet_of(user: dict) -> WalletLink:
    """Return the user's ledger account as a LinkedAccount or Unlinked."""
    wallet = user.get("wallet") or {}
    account_id = wallet.get("account_id")
    if account_id:
        return LinkedAccount(account_id)
    return Unlinked()


def require_account(user: dict) -> str:
    link = wallet_of(user)
    if isinstance(link, Unlinked):
        raise ValidationError("Ledger wallet not connected")
    return link.account_id


# Content references
class ContentRef(BaseModel):
    hash: str
    url: str


class Page(BaseModel):
    page_number: int = Field(..., ge=1)
    hash: str
    url: str
    thumbnail: Optional[str] = None


# Comics
class ComicDownloads(BaseModel):
    cbz: Optional[str] = None
    pdf: Optional[str] = None


class ComicNFT(BaseModel):
    serial_number: int
    owner: str


class Comic(BaseModel):
    title: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = Field(None, max_length=5000)
    series: Optional[str] = None
    genres: List[str] = []
    tags: List[str] = []
    creator: str
    creator_account_id: str
    royalty_percentage: float = Field(10.0, ge=0, le=50)
    max_supply: int = Field(0, ge=0)
    status: Literal["draft", "published", "archived"] = "draft"
    page_count: int = 0
    cover_image: Optional[ContentRef] = None
    downloads: ComicDownloads = ComicDownloads()
    episodes: List[str] = []
    nfts: List[ComicNFT] = []


# Episodes
class EpisodeContent(BaseModel):
    metadata_uri: str
    metadata_hash: str
    cover_image: ContentRef
    pages: List[Page] = Field(..., min_length=1)
    cbz: Optional[ContentRef] = None
    total_pages: int = 0

    @model_validator(mode="after")
    def count_pages(self) -> "EpisodeContent":
        self.total_pages = len(self.pages)
        return self


class Pricing(BaseModel):
    mint_price: float = Field(0, ge=0)
    read_price: float = Field(0, ge=0)
    currency: Currency = "HBAR"


class Supply(BaseModel):
    max_supply: int = Field(0, ge=0)  # 0 = unlimited
    current_supply: int = Field(0, ge=0)
    burned: int = Field(0, ge=0)

    @model_validator(mode="after")
    def check_cap(self) -> "Supply":
        if self.max_supply > 0 and self.current_supply + self.burned > self.max_supply:
            raise ValueError("current_supply + burned exceeds max_supply")
        return self


class MintingRules(BaseModel):
    enabled: bool = False
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    max_per_wallet: int = Field(0, ge=0)  # 0 = unlimited
    whitelist_only: bool = False
    whitelist: List[str] = []

    @model_validator(mode="after")
    def check_window(self) -> "MintingRules":
        if self.start_time and self.end_time and self.end_time <= self.start_time:
            raise ValueError("end_time must be after start_time")
        return self


class MintedNFT(BaseModel):
    serial_number: int
    owner: str
    minted_at: datetime
    transaction_id: str


class EpisodeStats(BaseModel):
    total_minted: int = 0
    total_reads: int = 0
    total_earnings: float = 0
    unique_readers: int = 0
    average_rating: float = 0
    total_ratings: int = 0


class Episode(BaseModel):
    title: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = Field(None, max_length=1000)
    episode_number: int = Field(..., ge=1)
    comic: str
    creator: str
    collection_token_id: str
    content: EpisodeContent
    pricing: Pricing = Pricing()
    supply: Supply = Supply()
    minting_rules: MintingRules = MintingRules()
    minted_nfts: List[MintedNFT] = []
    wallet_mints: Dict[str, int] = {}  # reserved + minted per buyer, keyed by wallet_key
    stats: EpisodeStats = EpisodeStats()
    status: EpisodeStatus = "draft"
    is_live: bool = False
    is_free: bool = False
    access_type: AccessType = "nft-holders"
    version: int = 0
    published_at: Optional[datetime] = None
    last_minted_at: Optional[datetime] = None


# Reading history
class Progress(BaseModel):
    current_page: int = 0
    total_pages: int = 0
    percentage: int = 0
    completed: bool = False


class ReadHistory(BaseModel):
    user: str
    user_account_id: str = ""
    comic: str
    episode: Optional[str] = None  # None tracks a whole-comic read
    access_type: str
    progress: Progress = Progress()
    last_accessed_at: datetime


# Marketplace
class Bid(BaseModel):
    bidder: str
    bidder_account_id: str
    amount: float = Field(..., gt=0)
    placed_at: datetime


class Listing(BaseModel):
    listing_type: ListingType
    episode_id: str
    serial_number: int
    seller: str
    seller_account_id: str
    price: float = Field(..., gt=0)
    currency: Currency = "HBAR"
    status: ListingStatus = "active"
    buyer: Optional[str] = None
    end_time: Optional[datetime] = None
    highest_bid: Optional[Bid] = None
    bids: List[Bid] = []


class Price(BaseModel):
    amount: float
    currency: Currency = "HBAR"


class MarketplaceTransaction(BaseModel):
    type: Literal["purchase"] = "purchase"
    listing_id: str
    episode_id: str
    serial_number: int
    seller: str
    buyer: str
    price: Price
    status: Literal["completed"] = "completed"
    transaction_id: str


# Ledger reconciliation journal
class ReconciliationEntry(BaseModel):
    episode_id: str
    collection_token_id: str
    buyer_account_id: str
    quantity: int
    reason: str
    status: Literal["pending", "resolved"] = "pending"
    resolved_at: Optional[datetime] = None
