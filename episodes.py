"""
Episode lifecycle management.

An episode moves through draft -> processing -> ready -> published <-> paused
-> archived. Minting is only possible while published, enabled and inside the
minting window. The ``minted_nfts`` array mirrors ledger ownership; it is a
cache that reconciliation repairs, never the source of truth.

All writes are single-document atomic updates. Supply is reserved with a
conditional ``$inc`` before the ledger is called, so concurrent mints cannot
oversell, and released again if the ledger call fails.
"""
import logging
import re
from datetime import datetime, timezone
from functools import partial
from typing import Callable, List, Optional

from bson import ObjectId
from pymongo import ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError, PyMongoError

from access import AccessDecision, PaymentCheck, can_access
from content_store import ContentStore, UploadedFile
from database import create_document, find_by_id, get_documents, serialize_doc
from exceptions import (
    AccessDeniedError,
    ConflictError,
    LedgerError,
    LedgerTimeoutError,
    MintingDisabledError,
    MintingWindowClosedError,
    NotFoundError,
    NotWhitelistedError,
    StorageError,
    SupplyExceededError,
    ValidationError,
    WalletLimitExceededError,
)
from ledger import LedgerClient, MintReceipt, call_external
from reading import ReadingTracker
from schemas import (
    AccessType,
    ContentRef,
    Episode,
    EpisodeContent,
    EpisodeStats,
    MintedNFT,
    MintingRules,
    Page,
    Pricing,
    ReconciliationEntry,
    Supply,
    require_account,
)

logger = logging.getLogger(__name__)

# Forward transitions reachable through set_status; publishing has its own path
TRANSITIONS = {
    "draft": {"processing", "ready", "archived"},
    "processing": {"ready", "archived"},
    "ready": {"archived"},
    "published": {"paused", "archived"},
    "paused": {"archived"},
    "archived": set(),
}
PUBLISHABLE = ("draft", "ready", "paused")
STAT_FIELDS = frozenset(EpisodeStats.model_fields)


def naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Store datetimes as naive UTC, the way MongoDB hands them back."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _symbol(title: str, episode_number: int) -> str:
    letters = re.sub(r"[^A-Za-z]", "", title).upper()[:4] or "EP"
    return f"{letters}{episode_number}"


def wallet_key(account_id: str) -> str:
    """Field-safe form of a ledger account id (0.0.200 -> 0_0_200)."""
    return account_id.replace(".", "_")


class EpisodeService:
    def __init__(
        self,
        db: Database,
        ledger: LedgerClient,
        content_store: ContentStore,
        reading: Optional[ReadingTracker] = None,
        has_paid: Optional[PaymentCheck] = None,
        preview_page_count: int = 3,
        max_update_retries: int = 3,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self.db = db
        self.ledger = ledger
        self.content_store = content_store
        self.reading = reading or ReadingTracker(db, clock)
        self.has_paid = has_paid
        self.preview_page_count = preview_page_count
        self.max_update_retries = max_update_retries
        self.clock = clock

    # ------------------------
    # Lookup
    # ------------------------
    def get_episode(self, episode_id: str) -> dict:
        return find_by_id(self.db, "episode", episode_id, "Episode")

    def owned_episode(self, episode_id: str, user: dict) -> dict:
        episode = self.get_episode(episode_id)
        if episode["creator"] != str(user["_id"]):
            raise AccessDeniedError("Only the creator can manage this episode")
        return episode

    # ------------------------
    # Creation
    # ------------------------
    async def _store(self, upload: UploadedFile) -> ContentRef:
        stored = await call_external(
            self.content_store.store_upload(upload), self.content_store.timeout, error_cls=StorageError
        )
        return ContentRef(**stored.as_dict())

    async def create_episode(
        self,
        comic_id: str,
        user: dict,
        title: str,
        episode_number: int,
        cover: Optional[UploadedFile],
        pages: List[UploadedFile],
        description: Optional[str] = None,
        pricing: Optional[Pricing] = None,
        max_supply: int = 0,
        access_type: AccessType = "nft-holders",
        is_free: bool = False,
        cbz: Optional[UploadedFile] = None,
    ) -> dict:
        if cover is None or not pages:
            raise ValidationError("Cover image and pages are required")
        if episode_number < 1:
            raise ValidationError("episode_number must be at least 1")
        if max_supply < 0:
            raise ValidationError("max_supply must be non-negative")

        comic = find_by_id(self.db, "comic", comic_id, "Comic")
        if comic["creator"] != str(user["_id"]):
            raise NotFoundError("Comic not found or not owned by you", {"id": comic_id})
        if self.db["episode"].find_one({"comic": comic_id, "episode_number": episode_number}):
            raise ValidationError(f"Episode {episode_number} already exists for this comic")
        account_id = require_account(user)
        pricing = pricing or Pricing()

        cover_ref = await self._store(cover)
        page_refs = []
        for number, upload in enumerate(pages, start=1):
            ref = await self._store(upload)
            page_refs.append(Page(page_number=number, hash=ref.hash, url=ref.url))
        cbz_ref = await self._store(cbz) if cbz is not None else None

        metadata = await call_external(
            self.content_store.store_json({
                "name": f"{comic['title']} #{episode_number}: {title}",
                "description": description or "",
                "image": cover_ref.url,
                "properties": {
                    "comic": comic_id,
                    "episode_number": episode_number,
                    "pages": [p.url for p in page_refs],
                    "creator": account_id,
                },
            }),
            self.content_store.timeout,
            error_cls=StorageError,
        )
        token_id = await call_external(
            self.ledger.create_collection(
                name=f"{comic['title']} #{episode_number}",
                symbol=_symbol(comic["title"], episode_number),
                treasury_account_id=account_id,
                max_supply=max_supply,
                royalty_percentage=comic.get("royalty_percentage", 0),
            ),
            self.ledger.timeout,
        )

        episode = Episode(
            title=title,
            description=description,
            episode_number=episode_number,
            comic=comic_id,
            creator=str(user["_id"]),
            collection_token_id=token_id,
            content=EpisodeContent(
                metadata_uri=metadata.url,
                metadata_hash=metadata.hash,
                cover_image=cover_ref,
                pages=page_refs,
                cbz=cbz_ref,
            ),
            pricing=pricing,
            supply=Supply(max_supply=max_supply),
            access_type=access_type,
            is_free=is_free,
        )
        try:
            doc = create_document(self.db, episode)
        except DuplicateKeyError:
            logger.warning("Collection %s orphaned by duplicate episode %s of comic %s",
                           token_id, episode_number, comic_id)
            raise ValidationError(f"Episode {episode_number} already exists for this comic")

        self.db["comic"].update_one(
            {"_id": comic["_id"]},
            {
                "$push": {"episodes": str(doc["_id"])},
                "$inc": {"page_count": len(page_refs)},
                "$set": {"updated_at": self.clock()},
            },
        )
        logger.info("Created episode %s #%s of comic %s (token %s)", doc["_id"], episode_number, comic_id, token_id)
        return doc

    # ------------------------
    # Status transitions
    # ------------------------
    def publish(self, episode_id: str, user: dict, rules: dict) -> dict:
        """Publish the episode and open minting under ``rules``.

        Only draft, ready and paused episodes can be published; re-publishing a
        live episode is a conflict rather than a silent rule overwrite.
        """
        episode = self.owned_episode(episode_id, user)
        if episode["status"] not in PUBLISHABLE:
            raise ConflictError(f"Cannot publish an episode that is {episode['status']}")
        minting_rules = MintingRules(
            enabled=True,
            start_time=naive_utc(rules.get("start_time")),
            end_time=naive_utc(rules.get("end_time")),
            max_per_wallet=rules.get("max_per_wallet") or 0,
            whitelist_only=bool(rules.get("whitelist_only")),
            whitelist=list(rules.get("whitelist") or []),
        )
        now = self.clock()
        updated = self.db["episode"].find_one_and_update(
            {"_id": episode["_id"], "status": {"$in": list(PUBLISHABLE)}},
            {
                "$set": {
                    "status": "published",
                    "is_live": True,
                    "minting_rules": minting_rules.model_dump(),
                    "published_at": now,
                    "updated_at": now,
                },
                "$inc": {"version": 1},
            },
            return_document=ReturnDocument.AFTER,
        )
        if updated is None:
            raise ConflictError("Episode status changed while publishing")
        self.db["comic"].update_one(
            {"_id": ObjectId(episode["comic"]), "status": "draft"},
            {"$set": {"status": "published", "updated_at": now}},
        )
        logger.info("Published episode %s", episode_id)
        return updated

    def set_status(self, episode_id: str, user: dict, status: str) -> dict:
        if status == "published":
            raise ValidationError("Use publish to make an episode live")
        episode = self.owned_episode(episode_id, user)
        current = episode["status"]
        if status not in TRANSITIONS.get(current, set()):
            raise ConflictError(f"Cannot move episode from {current} to {status}")
        changes = {"status": status, "updated_at": self.clock()}
        if status in ("paused", "archived"):
            changes["is_live"] = False
        updated = self.db["episode"].find_one_and_update(
            {"_id": episode["_id"], "status": current},
            {"$set": changes, "$inc": {"version": 1}},
            return_document=ReturnDocument.AFTER,
        )
        if updated is None:
            raise ConflictError("Episode status changed concurrently")
        logger.info("Episode %s: %s -> %s", episode_id, current, status)
        return updated

    # ------------------------
    # Minting
    # ------------------------
    def check_mint_rules(self, episode: dict, buyer_account_id: str, quantity: int) -> None:
        """Raise if minting ``quantity`` for ``buyer_account_id`` is not allowed now."""
        rules = episode.get("minting_rules") or {}
        if episode.get("status") != "published" or not rules.get("enabled"):
            raise MintingDisabledError()

        now = self.clock()
        start, end = rules.get("start_time"), rules.get("end_time")
        if start and now < start:
            raise MintingWindowClosedError("Minting has not started yet", {"start_time": start.isoformat()})
        if end and now > end:
            raise MintingWindowClosedError("Minting has ended", {"end_time": end.isoformat()})

        if rules.get("whitelist_only") and buyer_account_id not in (rules.get("whitelist") or []):
            raise NotWhitelistedError(buyer_account_id)

        max_per_wallet = rules.get("max_per_wallet") or 0
        if max_per_wallet:
            owned = sum(1 for nft in episode.get("minted_nfts", []) if nft["owner"] == buyer_account_id)
            if owned + quantity > max_per_wallet:
                raise WalletLimitExceededError(buyer_account_id, owned, quantity, max_per_wallet)

        supply = episode["supply"]
        if supply["max_supply"]:
            available = supply["max_supply"] - supply["current_supply"] - supply.get("burned", 0)
            if quantity > available:
                raise SupplyExceededError(quantity, max(available, 0))

    def _reserve(self, episode: dict, buyer_account_id: str, quantity: int) -> None:
        """Reserve supply and the buyer's per-wallet allowance in one conditional update."""
        max_supply = episode["supply"]["max_supply"]
        max_per_wallet = (episode.get("minting_rules") or {}).get("max_per_wallet") or 0
        wallet_field = f"wallet_mints.{wallet_key(buyer_account_id)}"
        supply = episode["supply"]

        for attempt in range(self.max_update_retries):
            query = {"_id": episode["_id"]}
            if max_supply:
                burned = supply.get("burned", 0)
                query["supply.burned"] = burned
                query["supply.current_supply"] = {"$lte": max_supply - burned - quantity}
            if max_per_wallet:
                query["$or"] = [
                    {wallet_field: {"$exists": False}},
                    {wallet_field: {"$lte": max_per_wallet - quantity}},
                ]
            result = self.db["episode"].update_one(
                query, {"$inc": {"supply.current_supply": quantity, wallet_field: quantity}}
            )
            if result.modified_count:
                return

            fresh = self.db["episode"].find_one({"_id": episode["_id"]}, {"supply": 1, "wallet_mints": 1})
            if fresh is None:
                raise NotFoundError("Episode not found")
            if max_per_wallet:
                minted = (fresh.get("wallet_mints") or {}).get(wallet_key(buyer_account_id), 0)
                if minted + quantity > max_per_wallet:
                    raise WalletLimitExceededError(buyer_account_id, minted, quantity, max_per_wallet)
            supply = fresh["supply"]
            if max_supply:
                available = max_supply - supply["current_supply"] - supply.get("burned", 0)
                if quantity > available:
                    raise SupplyExceededError(quantity, max(available, 0))
            logger.debug("Supply reservation retry %d for episode %s", attempt + 1, episode["_id"])
        raise ConflictError("Could not reserve supply", {"attempts": self.max_update_retries})

    def _release(self, episode: dict, buyer_account_id: str, quantity: int) -> None:
        self.db["episode"].update_one(
            {"_id": episode["_id"]},
            {"$inc": {"supply.current_supply": -quantity, f"wallet_mints.{wallet_key(buyer_account_id)}": -quantity}},
        )

    def _journal(self, episode: dict, buyer_account_id: str, quantity: int, reason: str) -> None:
        try:
            create_document(self.db, ReconciliationEntry(
                episode_id=str(episode["_id"]),
                collection_token_id=episode["collection_token_id"],
                buyer_account_id=buyer_account_id,
                quantity=quantity,
                reason=reason,
            ))
        except PyMongoError:
            logger.exception("Could not journal reconciliation for episode %s", episode["_id"])

    def _record_mint(self, episode: dict, buyer_account_id: str, receipts: List[MintReceipt]) -> None:
        now = self.clock()
        records = [
            MintedNFT(
                serial_number=r.serial_number,
                owner=buyer_account_id,
                minted_at=now,
                transaction_id=r.transaction_id,
            ).model_dump()
            for r in receipts
        ]
        price = (episode.get("pricing") or {}).get("mint_price", 0)
        serials = [r.serial_number for r in receipts]
        try:
            result = self.db["episode"].update_one(
                {"_id": episode["_id"], "minted_nfts.serial_number": {"$nin": serials}},
                {
                    "$push": {"minted_nfts": {"$each": records}},
                    "$inc": {"stats.total_minted": len(records), "stats.total_earnings": price * len(records)},
                    "$set": {"last_minted_at": now, "updated_at": now},
                },
            )
            if not result.matched_count:
                logger.info("Serials %s of episode %s already mirrored by reconciliation", serials, episode["_id"])
        except PyMongoError as e:
            logger.error("Ledger minted %d serial(s) for episode %s but mirror append failed: %s",
                         len(records), episode["_id"], e)
            self._journal(episode, buyer_account_id, len(records), f"mirror append failed: {e}")

    def _settle_late_mint(self, episode: dict, buyer_account_id: str, quantity: int, task) -> None:
        if task.cancelled() or task.exception() is not None:
            reason = "cancelled" if task.cancelled() else str(task.exception())
            logger.warning("Detached mint for episode %s failed (%s), releasing supply", episode["_id"], reason)
            self._release(episode, buyer_account_id, quantity)
            self._journal(episode, buyer_account_id, quantity, f"detached mint failed: {reason}")
            return
        logger.info("Detached mint for episode %s completed, recording", episode["_id"])
        self._record_mint(episode, buyer_account_id, task.result())

    async def mint_nft(self, episode_id: str, buyer_account_id: str, quantity: int = 1) -> dict:
        if quantity < 1:
            raise ValidationError("quantity must be at least 1")
        episode = self.get_episode(episode_id)
        self.check_mint_rules(episode, buyer_account_id, quantity)
        self._reserve(episode, buyer_account_id, quantity)

        try:
            receipts = await call_external(
                self.ledger.mint(episode["collection_token_id"], buyer_account_id, quantity),
                self.ledger.timeout,
                on_late_result=partial(self._settle_late_mint, episode, buyer_account_id, quantity),
            )
        except LedgerTimeoutError:
            raise
        except LedgerError:
            self._release(episode, buyer_account_id, quantity)
            self._journal(episode, buyer_account_id, quantity, "ledger mint failed")
            raise

        self._record_mint(episode, buyer_account_id, receipts)
        price = (episode.get("pricing") or {}).get("mint_price", 0)
        logger.info("Minted %d NFT(s) of episode %s for %s", quantity, episode_id, buyer_account_id)
        return {
            "episode_id": episode_id,
            "collection_token_id": episode["collection_token_id"],
            "minted": [{"serial_number": r.serial_number, "transaction_id": r.transaction_id} for r in receipts],
            "total_cost": price * quantity,
            "currency": (episode.get("pricing") or {}).get("currency", "HBAR"),
        }

    # ------------------------
    # Stats
    # ------------------------
    def increment_stat(self, episode_id, field: str, delta: float = 1) -> None:
        if field not in STAT_FIELDS:
            raise ValidationError(f"Unknown stat: {field}")
        _id = episode_id if isinstance(episode_id, ObjectId) else ObjectId(episode_id)
        result = self.db["episode"].update_one({"_id": _id}, {"$inc": {f"stats.{field}": delta}})
        if not result.matched_count:
            raise NotFoundError("Episode not found", {"id": str(episode_id)})

    def rate(self, episode_id: str, rating: int) -> dict:
        if not 1 <= rating <= 5:
            raise ValidationError("rating must be between 1 and 5")
        for _ in range(self.max_update_retries):
            episode = self.get_episode(episode_id)
            stats = episode["stats"]
            count = stats.get("total_ratings", 0)
            average = round((stats.get("average_rating", 0) * count + rating) / (count + 1), 2)
            result = self.db["episode"].update_one(
                {"_id": episode["_id"], "version": episode.get("version", 0)},
                {"$set": {"stats.average_rating": average}, "$inc": {"stats.total_ratings": 1, "version": 1}},
            )
            if result.modified_count:
                return {"average_rating": average, "total_ratings": count + 1}
            logger.debug("Rating update for episode %s lost a version race, retrying", episode_id)
        raise ConflictError("Too many concurrent updates, try again", {"attempts": self.max_update_retries})

    # ------------------------
    # Access and reading
    # ------------------------
    def can_access(self, episode: dict, account_id: Optional[str]) -> AccessDecision:
        return can_access(episode, account_id, self.has_paid)

    def read(self, episode_id: str, user: dict) -> dict:
        account_id = require_account(user)
        episode = self.get_episode(episode_id)
        decision = self.can_access(episode, account_id)
        if decision is AccessDecision.DENIED:
            if episode.get("access_type") == "paid":
                raise AccessDeniedError("Payment required to read this episode")
            raise AccessDeniedError("You must own an NFT of this episode to read it")

        pages = episode["content"]["pages"]
        data = {
            "access": decision.value,
            "episode": {
                "id": str(episode["_id"]),
                "title": episode["title"],
                "episode_number": episode["episode_number"],
                "total_pages": episode["content"]["total_pages"],
            },
        }
        if decision is AccessDecision.PREVIEW_ONLY:
            data["pages"] = pages[: self.preview_page_count]
            return data

        data["pages"] = pages
        self.increment_stat(episode["_id"], "total_reads")
        data["progress"] = self._reading_record(episode, user)["progress"]
        return data

    def _reading_record(self, episode: dict, user: dict) -> dict:
        """The user's ReadHistory for ``episode``; a new record counts a unique reader."""
        record, created = self.reading.get_or_create(
            user, episode["comic"], str(episode["_id"]),
            total_pages=episode["content"]["total_pages"],
            access_type=episode.get("access_type", "nft-holders"),
        )
        if created:
            self.increment_stat(episode["_id"], "unique_readers")
        return record

    def update_progress(self, episode_id: str, user: dict, current_page: int, total_pages: int) -> dict:
        episode = self.get_episode(episode_id)
        record = self._reading_record(episode, user)
        return self.reading.update_progress(record, current_page, total_pages)

    def collection(self, account_id: str) -> list:
        """Episodes holding NFTs of ``account_id``, with only that account's records."""
        episodes = get_documents(self.db, "episode", {"minted_nfts.owner": account_id})
        comic_ids = {ObjectId(ep["comic"]) for ep in episodes}
        comics = {
            str(c["_id"]): {"id": str(c["_id"]), "title": c["title"], "cover_image": c.get("cover_image")}
            for c in self.db["comic"].find({"_id": {"$in": list(comic_ids)}})
        }
        return [
            {
                "episode": {
                    "id": str(ep["_id"]),
                    "title": ep["title"],
                    "episode_number": ep["episode_number"],
                    "cover_image": ep["content"]["cover_image"],
                },
                "comic": comics.get(ep["comic"]),
                "nfts": [nft for nft in ep["minted_nfts"] if nft["owner"] == account_id],
            }
            for ep in episodes
        ]

    def public_view(self, episode: dict) -> dict:
        """Episode document without page URLs, for unauthenticated listing."""
        doc = serialize_doc(dict(episode))
        content = dict(doc["content"])
        content.pop("pages", None)
        content.pop("cbz", None)
        doc["content"] = content
        return doc
