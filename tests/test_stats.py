"""Tests for marketplace and platform statistics."""

from conftest import make_comic, make_user, published
from stats import marketplace_stats, platform_stats, summarize_listings


class TestSummarizeListings:
    def test_active_listings(self):
        listings = [
            {"price": 5, "listing_type": "fixed-price", "status": "active"},
            {"price": 3, "listing_type": "auction", "status": "active"},
        ]
        assert summarize_listings(listings) == {
            "active_auctions": 1,
            "active_listing_volume": 8,
            "floor_price": 3,
            "total_listings": 2,
        }

    def test_empty(self):
        assert summarize_listings([]) == {
            "active_auctions": 0,
            "active_listing_volume": 0,
            "floor_price": 0,
            "total_listings": 0,
        }

    def test_ignores_inactive(self):
        listings = [
            {"price": 1, "listing_type": "fixed-price", "status": "completed"},
            {"price": 7, "listing_type": "fixed-price", "status": "active"},
        ]
        summary = summarize_listings(listings)
        assert summary["floor_price"] == 7
        assert summary["total_listings"] == 1


class TestStoredStats:
    def test_marketplace_stats(self, db):
        db["listing"].insert_many([
            {"price": 5.0, "listing_type": "fixed-price", "status": "active"},
            {"price": 3.0, "listing_type": "auction", "status": "active"},
            {"price": 1.0, "listing_type": "fixed-price", "status": "cancelled"},
        ])
        stats = marketplace_stats(db)
        assert stats["floor_price"] == 3
        assert stats["active_listing_volume"] == 8
        assert stats["active_auctions"] == 1

    def test_platform_stats(self, db, creator, comic):
        other_creator = make_user(db, "artist", "0.0.101")
        other = make_comic(db, other_creator, title="Night Tide", status="published")
        published(db, comic, minted=[(1, "0.0.200"), (2, "0.0.201")])
        published(db, other, minted=[(1, "0.0.200")])
        db["marketplace_transaction"].insert_many([
            {"type": "purchase", "status": "completed", "price": {"amount": 12.5, "currency": "HBAR"}},
            {"type": "purchase", "status": "completed", "price": {"amount": 7.5, "currency": "HBAR"}},
        ])
        stats = platform_stats(db)
        assert stats["total_comics"] == 1
        assert stats["total_published"] == 1
        assert stats["completed_sales_volume"] == 20
        assert stats["total_creators"] == 2
        assert stats["total_collectors"] == 2
