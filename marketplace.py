"""
Marketplace listings, auctions and purchases of minted episode NFTs.

A listing is claimed (active -> completed) with one conditional update before
the ledger transfer runs, so two buyers can never both win it. A failed
transfer puts the listing back on sale.
"""
import logging
from datetime import datetime
from functools import partial
from typing import Callable, Optional

from pymongo import ReturnDocument
from pymongo.database import Database

from database import create_document, find_by_id, get_documents
from episodes import naive_utc
from exceptions import AccessDeniedError, ConflictError, LedgerError, LedgerTimeoutError, ValidationError
from ledger import LedgerClient, call_external
from schemas import Bid, Listing, MarketplaceTransaction, Price, require_account

logger = logging.getLogger(__name__)


def nft_owner(episode: dict, serial_number: int) -> Optional[str]:
    for nft in episode.get("minted_nfts", []):
        if nft["serial_number"] == serial_number:
            return nft["owner"]
    return None


class MarketplaceService:
    def __init__(self, db: Database, ledger: LedgerClient, clock: Callable[[], datetime] = datetime.utcnow):
        self.db = db
        self.ledger = ledger
        self.clock = clock

    def get_listing(self, listing_id: str) -> dict:
        return find_by_id(self.db, "listing", listing_id, "Listing")

    def list_listings(self, status: Optional[str] = "active", listing_type: Optional[str] = None,
                      episode_id: Optional[str] = None, limit: int = 20, skip: int = 0) -> list:
        filters = {}
        if status:
            filters["status"] = status
        if listing_type:
            filters["listing_type"] = listing_type
        if episode_id:
            filters["episode_id"] = episode_id
        return get_documents(self.db, "listing", filters, sort=[("created_at", -1)], limit=limit, skip=skip)

    def my_listings(self, user: dict) -> list:
        return get_documents(self.db, "listing", {"seller": str(user["_id"])}, sort=[("created_at", -1)])

    # ------------------------
    # Listing
    # ------------------------
    def _check_listable(self, user: dict, episode_id: str, serial_number: int) -> str:
        account_id = require_account(user)
        episode = find_by_id(self.db, "episode", episode_id, "Episode")
        if nft_owner(episode, serial_number) != account_id:
            raise AccessDeniedError("You do not own this NFT", {"serial_number": serial_number})
        if self.db["listing"].find_one({"episode_id": episode_id, "serial_number": serial_number, "status": "active"}):
            raise ConflictError("This NFT is already listed")
        return account_id

    def create_listing(self, user: dict, episode_id: str, serial_number: int, price: float,
                       currency: str = "HBAR") -> dict:
        if price <= 0:
            raise ValidationError("price must be positive")
        account_id = self._check_listable(user, episode_id, serial_number)
        doc = create_document(self.db, Listing(
            listing_type="fixed-price",
            episode_id=episode_id,
            serial_number=serial_number,
            seller=str(user["_id"]),
            seller_account_id=account_id,
            price=price,
            currency=currency,
        ))
        logger.info("Listed %s#%s for %s %s", episode_id, serial_number, price, currency)
        return doc

    def create_auction(self, user: dict, episode_id: str, serial_number: int, starting_price: float,
                       end_time: datetime, currency: str = "HBAR") -> dict:
        if starting_price <= 0:
            raise ValidationError("starting_price must be positive")
        end_time = naive_utc(end_time)
        if end_time <= self.clock():
            raise ValidationError("end_time must be in the future")
        account_id = self._check_listable(user, episode_id, serial_number)
        doc = create_document(self.db, Listing(
            listing_type="auction",
            episode_id=episode_id,
            serial_number=serial_number,
            seller=str(user["_id"]),
            seller_account_id=account_id,
            price=starting_price,
            currency=currency,
            end_time=end_time,
        ))
        logger.info("Auction for %s#%s until %s", episode_id, serial_number, end_time)
        return doc

    def cancel_listing(self, listing_id: str, user: dict) -> dict:
        listing = self.get_listing(listing_id)
        if listing["seller"] != str(user["_id"]):
            raise AccessDeniedError("Only the seller can cancel this listing")
        if listing["status"] != "active":
            raise ConflictError(f"Listing is already {listing['status']}")
        if listing.get("highest_bid"):
            raise ConflictError("Cannot cancel an auction that has bids")
        updated = self.db["listing"].find_one_and_update(
            {"_id": listing["_id"], "status": "active", "highest_bid": None},
            {"$set": {"status": "cancelled", "updated_at": self.clock()}},
            return_document=ReturnDocument.AFTER,
        )
        if updated is None:
            raise ConflictError("Listing changed while cancelling")
        return updated

    # ------------------------
    # Bidding
    # ------------------------
    def place_bid(self, listing_id: str, user: dict, amount: float) -> dict:
        account_id = require_account(user)
        listing = self.get_listing(listing_id)
        now = self.clock()
        if listing["listing_type"] != "auction" or listing["status"] != "active":
            raise ConflictError("Auction is not active")
        if listing["end_time"] and now >= listing["end_time"]:
            raise ConflictError("Auction has ended")
        if listing["seller"] == str(user["_id"]):
            raise ValidationError("Sellers cannot bid on their own auction")
        floor = listing["highest_bid"]["amount"] if listing.get("highest_bid") else listing["price"]
        if amount <= floor:
            raise ValidationError(f"Bid must exceed {floor}", {"amount": amount, "minimum": floor})

        bid = Bid(bidder=str(user["_id"]), bidder_account_id=account_id, amount=amount, placed_at=now).model_dump()
        updated = self.db["listing"].find_one_and_update(
            {
                "_id": listing["_id"],
                "status": "active",
                "end_time": {"$gt": now},
                "$or": [{"highest_bid": None}, {"highest_bid.amount": {"$lt": amount}}],
            },
            {"$set": {"highest_bid": bid, "updated_at": now}, "$push": {"bids": bid}},
            return_document=ReturnDocument.AFTER,
        )
        if updated is None:
            raise ConflictError("A higher bid was placed first")
        logger.info("Bid %s on listing %s by %s", amount, listing_id, account_id)
        return updated

    # ------------------------
    # Settlement
    # ------------------------
    def _claim(self, listing: dict, buyer_id: str, winning_bid: Optional[dict] = None) -> dict:
        """Mark the listing sold; with ``winning_bid`` only while it is still the highest bid."""
        query = {"_id": listing["_id"], "status": "active"}
        if winning_bid is not None:
            query["highest_bid.amount"] = winning_bid["amount"]
            query["highest_bid.bidder"] = winning_bid["bidder"]
        claimed = self.db["listing"].find_one_and_update(
            query,
            {"$set": {"status": "completed", "buyer": buyer_id, "updated_at": self.clock()}},
            return_document=ReturnDocument.AFTER,
        )
        if claimed is None:
            if winning_bid is not None:
                raise ConflictError("A new bid arrived while completing the auction, try again")
            raise ConflictError("Listing is no longer available")
        return claimed

    def _unclaim(self, listing: dict) -> None:
        self.db["listing"].update_one(
            {"_id": listing["_id"], "status": "completed"},
            {"$set": {"status": "active", "buyer": None, "updated_at": self.clock()}},
        )

    def _finalize(self, listing: dict, episode: dict, buyer_id: str, buyer_account_id: str,
                  amount: float, transaction_id: str) -> dict:
        self.db["episode"].update_one(
            {"_id": episode["_id"], "minted_nfts.serial_number": listing["serial_number"]},
            {"$set": {"minted_nfts.$.owner": buyer_account_id, "updated_at": self.clock()}},
        )
        doc = create_document(self.db, MarketplaceTransaction(
            listing_id=str(listing["_id"]),
            episode_id=listing["episode_id"],
            serial_number=listing["serial_number"],
            seller=listing["seller"],
            buyer=buyer_id,
            price=Price(amount=amount, currency=listing.get("currency", "HBAR")),
            transaction_id=transaction_id,
        ))
        logger.info("Sold %s#%s to %s for %s", listing["episode_id"], listing["serial_number"],
                    buyer_account_id, amount)
        return doc

    def _settle_late_transfer(self, listing, episode, buyer_id, buyer_account_id, amount, task) -> None:
        if task.cancelled() or task.exception() is not None:
            logger.warning("Detached transfer for listing %s failed, reopening", listing["_id"])
            self._unclaim(listing)
            return
        self._finalize(listing, episode, buyer_id, buyer_account_id, amount, task.result())

    async def _settle(self, listing: dict, buyer_id: str, buyer_account_id: str, amount: float) -> dict:
        episode = find_by_id(self.db, "episode", listing["episode_id"], "Episode")
        try:
            transaction_id = await call_external(
                self.ledger.transfer(
                    episode["collection_token_id"],
                    listing["serial_number"],
                    listing["seller_account_id"],
                    buyer_account_id,
                ),
                self.ledger.timeout,
                on_late_result=partial(self._settle_late_transfer, listing, episode, buyer_id,
                                       buyer_account_id, amount),
            )
        except LedgerTimeoutError:
            raise
        except LedgerError:
            self._unclaim(listing)
            raise
        return self._finalize(listing, episode, buyer_id, buyer_account_id, amount, transaction_id)

    async def buy(self, listing_id: str, user: dict) -> dict:
        account_id = require_account(user)
        listing = self.get_listing(listing_id)
        if listing["listing_type"] != "fixed-price":
            raise ValidationError("Auctions cannot be bought directly")
        if listing["status"] != "active":
            raise ConflictError("Listing is no longer available")
        if listing["seller"] == str(user["_id"]):
            raise ValidationError("You cannot buy your own listing")
        claimed = self._claim(listing, str(user["_id"]))
        return await self._settle(claimed, str(user["_id"]), account_id, listing["price"])

    async def complete_auction(self, listing_id: str, user: dict) -> dict:
        """Settle an auction with its highest bidder, or cancel it when nobody bid."""
        listing = self.get_listing(listing_id)
        if listing["listing_type"] != "auction" or listing["status"] != "active":
            raise ConflictError("Auction is not active")
        ended = listing["end_time"] is not None and self.clock() >= listing["end_time"]
        if listing["seller"] != str(user["_id"]) and not ended:
            raise AccessDeniedError("Only the seller can complete an auction before it ends")

        highest = listing.get("highest_bid")
        if not highest:
            self.db["listing"].update_one(
                {"_id": listing["_id"], "status": "active"},
                {"$set": {"status": "cancelled", "updated_at": self.clock()}},
            )
            logger.info("Auction %s ended without bids", listing_id)
            return {"listing_id": listing_id, "status": "cancelled", "transaction": None}

        claimed = self._claim(listing, highest["bidder"], winning_bid=highest)
        transaction = await self._settle(claimed, highest["bidder"], highest["bidder_account_id"], highest["amount"])
        return {"listing_id": listing_id, "status": "completed", "transaction": transaction}
