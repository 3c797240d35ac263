"""
Reconcile minted-NFT mirrors against the ledger.

The ledger can get ahead of the local mirror when a mint succeeds but the
mirror append fails, or when a detached mint finishes after its caller gave
up. Those cases leave a pending ReconciliationEntry; this job replays the
ledger's view of the collection into the mirror and resolves them.

Usage:
    python -m reconcile
"""
import asyncio
import logging
from datetime import datetime

from pymongo.database import Database
from pymongo.errors import PyMongoError

from database import find_by_id, get_db, ensure_indexes
from exceptions import ComicChainError
from ledger import LedgerClient, call_external
from logging_config import setup_logging
from schemas import MintedNFT
from settings import get_settings

logger = logging.getLogger(__name__)


async def reconcile_episode(db: Database, ledger: LedgerClient, episode_id: str) -> dict:
    episode = find_by_id(db, "episode", episode_id, "Episode")
    ledger_nfts = await call_external(ledger.list_nfts(episode["collection_token_id"]), ledger.timeout)
    mirror = {nft["serial_number"]: nft for nft in episode.get("minted_nfts", [])}
    now = datetime.utcnow()

    missing = [n for n in ledger_nfts if n.serial_number not in mirror]
    appended = 0
    if missing:
        serials = [n.serial_number for n in missing]
        records = [
            MintedNFT(serial_number=n.serial_number, owner=n.owner, minted_at=now,
                      transaction_id=n.transaction_id).model_dump()
            for n in missing
        ]
        result = db["episode"].update_one(
            {"_id": episode["_id"], "minted_nfts.serial_number": {"$nin": serials}},
            {
                "$push": {"minted_nfts": {"$each": records}},
                "$inc": {"stats.total_minted": len(records)},
                "$max": {"supply.current_supply": len(mirror) + len(records)},
                "$set": {"updated_at": now},
            },
        )
        if result.modified_count:
            appended = len(records)
        else:
            logger.info("Episode %s mirror changed during reconciliation, will retry next run", episode_id)

    owners_updated = 0
    for nft in ledger_nfts:
        local = mirror.get(nft.serial_number)
        if local is not None and local["owner"] != nft.owner:
            db["episode"].update_one(
                {"_id": episode["_id"], "minted_nfts.serial_number": nft.serial_number},
                {"$set": {"minted_nfts.$.owner": nft.owner, "updated_at": now}},
            )
            owners_updated += 1

    if appended or not missing:
        db["reconciliation_entry"].update_many(
            {"episode_id": episode_id, "status": "pending"},
            {"$set": {"status": "resolved", "resolved_at": now}},
        )
    logger.info("Reconciled episode %s: %d appended, %d owner(s) updated", episode_id, appended, owners_updated)
    return {"episode_id": episode_id, "appended": appended, "owners_updated": owners_updated}


async def reconcile_pending(db: Database, ledger: LedgerClient) -> list:
    """Reconcile every episode with a pending journal entry; failures stay pending."""
    results = []
    for episode_id in db["reconciliation_entry"].distinct("episode_id", {"status": "pending"}):
        try:
            results.append(await reconcile_episode(db, ledger, episode_id))
        except (ComicChainError, PyMongoError) as e:
            logger.error("Reconciliation of episode %s failed: %s", episode_id, e)
    return results


async def reconcile_loop(db: Database, ledger: LedgerClient, interval: int) -> None:
    """Run reconcile_pending every ``interval`` seconds until cancelled; failed passes are retried."""
    while True:
        try:
            await reconcile_pending(db, ledger)
        except (ComicChainError, PyMongoError):
            logger.exception("Reconciliation pass failed, retrying in %ss", interval)
        await asyncio.sleep(interval)


def main() -> None:
    settings = get_settings()
    setup_logging(settings.log_level, settings.log_dir)
    db = get_db()
    ensure_indexes(db)
    ledger = LedgerClient(settings.ledger_api_url, settings.ledger_api_key, settings.ledger_timeout_seconds)
    results = asyncio.run(reconcile_pending(db, ledger))
    logger.info("Reconciled %d episode(s)", len(results))


if __name__ == "__main__":
    main()
