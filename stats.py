"""
Marketplace and platform statistics, recomputed on every request.

Two different volumes exist and are named apart: ``active_listing_volume``
sums asking prices of listings that are still for sale, while
``completed_sales_volume`` sums what buyers actually paid.
"""
from typing import Iterable

from pymongo.database import Database


def summarize_listings(listings: Iterable[dict]) -> dict:
    active = [listing for listing in listings if listing.get("status") == "active"]
    prices = [float(listing.get("price") or 0) for listing in active]
    positive = [p for p in prices if p > 0]
    return {
        "active_auctions": sum(1 for listing in active if listing.get("listing_type") == "auction"),
        "active_listing_volume": round(sum(prices), 2),
        "floor_price": round(min(positive), 2) if positive else 0,
        "total_listings": len(active),
    }


def marketplace_stats(db: Database) -> dict:
    listings = db["listing"].find({"status": "active"}, {"price": 1, "listing_type": 1, "status": 1})
    return summarize_listings(listings)


def platform_stats(db: Database) -> dict:
    """Platform totals. Collector counting scans every episode mirror."""
    volume = list(db["marketplace_transaction"].aggregate([
        {"$match": {"status": "completed", "type": "purchase"}},
        {"$group": {"_id": None, "total": {"$sum": "$price.amount"}}},
    ]))
    collectors = set()
    for episode in db["episode"].find({}, {"minted_nfts": 1}):
        for nft in episode.get("minted_nfts", []):
            if nft.get("owner"):
                collectors.add(nft["owner"])
    return {
        "total_comics": db["comic"].count_documents({"status": {"$ne": "draft"}}),
        "total_published": db["comic"].count_documents({"status": "published"}),
        "completed_sales_volume": round(volume[0]["total"], 2) if volume else 0,
        "total_creators": len(db["comic"].distinct("creator")),
        "total_collectors": len(collectors),
    }
