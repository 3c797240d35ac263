"""Shared pytest fixtures for the comic chain test suite."""

import asyncio
from datetime import datetime, timedelta

import mongomock
import pytest

from content_store import StoredContent
from database import ensure_indexes
from exceptions import LedgerError, StorageError
from ledger import LedgerNFT, MintReceipt
from schemas import ContentRef, Episode, EpisodeContent, MintingRules, Page, Pricing, Supply

NOW = datetime(2025, 6, 1, 12, 0, 0)


# ---------------------------------------------------------------------------
# Database fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def db():
    """Return an in-memory MongoDB database with indexes created."""
    database = mongomock.MongoClient().comicchain_test
    ensure_indexes(database)
    return database


# ---------------------------------------------------------------------------
# Collaborator fakes
# ---------------------------------------------------------------------------

class FakeClock:
    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FakeLedger:
    """In-memory ledger gateway. Tracks ownership per collection."""

    def __init__(self, timeout: float = 5.0):
        self.timeout = timeout
        self.delay = 0.0
        self.fail = False
        self.collections = {}
        self.mint_calls = []
        self.transfer_calls = []

    async def create_collection(self, name, symbol, treasury_account_id, max_supply=0, royalty_percentage=0):
        if self.fail:
            raise LedgerError("Ledger unreachable")
        token_id = f"0.0.{9000 + len(self.collections) + 1}"
        self.collections[token_id] = {}
        return token_id

    async def mint(self, collection_token_id, buyer_account_id, quantity):
        self.mint_calls.append((collection_token_id, buyer_account_id, quantity))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise LedgerError("Ledger request failed")
        owners = self.collections.setdefault(collection_token_id, {})
        receipts = []
        for _ in range(quantity):
            serial = len(owners) + 1
            owners[serial] = buyer_account_id
            receipts.append(MintReceipt(serial, f"tx-mint-{collection_token_id}-{serial}"))
        return receipts

    async def transfer(self, collection_token_id, serial_number, from_account_id, to_account_id):
        self.transfer_calls.append((collection_token_id, serial_number, from_account_id, to_account_id))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise LedgerError("Ledger request failed")
        self.collections.setdefault(collection_token_id, {})[serial_number] = to_account_id
        return f"tx-transfer-{serial_number}"

    async def list_nfts(self, collection_token_id):
        owners = self.collections.get(collection_token_id, {})
        return [
            LedgerNFT(serial, owner, f"tx-mint-{collection_token_id}-{serial}")
            for serial, owner in sorted(owners.items())
        ]


class FakeContentStore:
    def __init__(self, timeout: float = 5.0):
        self.timeout = timeout
        self.fail = False
        self.stored = []

    def _put(self, name: str) -> StoredContent:
        if self.fail:
            raise StorageError("Content store upload failed", {"filename": name})
        self.stored.append(name)
        content_hash = f"Qm{len(self.stored):04d}"
        return StoredContent(content_hash, f"https://gateway.test/ipfs/{content_hash}")

    async def store_upload(self, upload):
        return self._put(upload.filename)

    async def store_json(self, payload, name="metadata.json"):
        return self._put(name)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def ledger():
    return FakeLedger()


@pytest.fixture
def content_store():
    return FakeContentStore()


# ---------------------------------------------------------------------------
# Record factories
# ---------------------------------------------------------------------------

def make_user(db, name: str, account_id=None) -> dict:
    doc = {
        "email": f"{name}@example.com",
        "password_hash": "not-a-real-hash",
        "display_name": name,
        "is_active": True,
        "wallet": {"account_id": account_id, "linked_at": NOW} if account_id else None,
    }
    doc["_id"] = db["user"].insert_one(doc).inserted_id
    return doc


def make_comic(db, creator: dict, title: str = "Star Harbor", **overrides) -> dict:
    doc = {
        "title": title,
        "description": "A harbor in space",
        "genres": ["sci-fi"],
        "tags": [],
        "creator": str(creator["_id"]),
        "creator_account_id": (creator.get("wallet") or {}).get("account_id", ""),
        "royalty_percentage": 10.0,
        "max_supply": 0,
        "status": "draft",
        "page_count": 0,
        "cover_image": None,
        "downloads": {"cbz": None, "pdf": None},
        "episodes": [],
        "nfts": [],
        "created_at": NOW,
        "updated_at": NOW,
    }
    doc.update(overrides)
    doc["_id"] = db["comic"].insert_one(doc).inserted_id
    return doc


def make_episode(db, comic: dict, episode_number: int = 1, page_count: int = 5, max_supply: int = 0,
                 status: str = "draft", minting_rules=None, minted=None, **overrides) -> dict:
    pages = [
        Page(page_number=n, hash=f"QmPage{n}", url=f"https://gateway.test/ipfs/QmPage{n}")
        for n in range(1, page_count + 1)
    ]
    episode = Episode(
        title=f"Chapter {episode_number}",
        episode_number=episode_number,
        comic=str(comic["_id"]),
        creator=comic["creator"],
        collection_token_id=f"0.0.{5000 + episode_number}",
        content=EpisodeContent(
            metadata_uri="https://gateway.test/ipfs/QmMeta",
            metadata_hash="QmMeta",
            cover_image=ContentRef(hash="QmCover", url="https://gateway.test/ipfs/QmCover"),
            pages=pages,
        ),
        pricing=Pricing(mint_price=10),
        supply=Supply(max_supply=max_supply, current_supply=len(minted or [])),
        minting_rules=minting_rules or MintingRules(),
        status=status,
        is_live=status == "published",
    )
    doc = episode.model_dump()
    doc["minted_nfts"] = [
        {"serial_number": serial, "owner": owner, "minted_at": NOW, "transaction_id": f"tx-{serial}"}
        for serial, owner in (minted or [])
    ]
    doc["stats"]["total_minted"] = len(doc["minted_nfts"])
    doc.update(overrides)
    doc.update({"created_at": NOW, "updated_at": NOW})
    doc["_id"] = db["episode"].insert_one(doc).inserted_id
    db["comic"].update_one(
        {"_id": comic["_id"]},
        {"$push": {"episodes": str(doc["_id"])}, "$inc": {"page_count": page_count}},
    )
    return doc


def published(db, comic: dict, **kwargs) -> dict:
    """A live episode with minting enabled and no window."""
    kwargs.setdefault("minting_rules", MintingRules(enabled=True))
    return make_episode(db, comic, status="published", **kwargs)


@pytest.fixture
def creator(db):
    return make_user(db, "creator", "0.0.100")


@pytest.fixture
def reader(db):
    return make_user(db, "reader", "0.0.200")


@pytest.fixture
def comic(db, creator):
    return make_comic(db, creator)
