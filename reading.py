"""
Reading session tracking.

One ReadHistory record per (user, comic) for whole-comic reads and per
(user, episode) for episode reads. Records are created lazily at page 0 with
``total_pages`` snapshotted from the content unit at creation time.
"""
import logging
from datetime import datetime
from typing import Callable, Optional, Tuple

from pymongo import ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from access import holds_any_nft
from database import find_by_id, get_documents
from exceptions import AccessDeniedError, NotFoundError, ValidationError
from schemas import Progress, ReadHistory, wallet_of, LinkedAccount

logger = logging.getLogger(__name__)


def compute_progress(current_page: int, total_pages: int) -> dict:
    if total_pages < 1:
        raise ValidationError("total_pages must be at least 1", {"total_pages": total_pages})
    if current_page < 0 or current_page > total_pages:
        raise ValidationError(
            f"current_page must be between 0 and {total_pages}",
            {"current_page": current_page, "total_pages": total_pages},
        )
    return Progress(
        current_page=current_page,
        total_pages=total_pages,
        percentage=round(current_page / total_pages * 100),
        completed=current_page >= total_pages,
    ).model_dump()


def _account_id(user: dict) -> str:
    link = wallet_of(user)
    return link.account_id if isinstance(link, LinkedAccount) else ""


class ReadingTracker:
    def __init__(self, db: Database, clock: Callable[[], datetime] = datetime.utcnow):
        self.db = db
        self.clock = clock

    def get_or_create(self, user: dict, comic_id: str, episode_id: Optional[str] = None,
                      total_pages: int = 0, access_type: str = "nft-owner") -> Tuple[dict, bool]:
        """Return (record, created) for the user's progress on a content unit."""
        key = {"user": str(user["_id"]), "comic": comic_id, "episode": episode_id}
        now = self.clock()
        fresh = ReadHistory(
            **key,
            user_account_id=_account_id(user),
            access_type=access_type,
            progress=Progress(total_pages=total_pages),
            last_accessed_at=now,
        ).model_dump()
        on_insert = {k: v for k, v in fresh.items() if k not in key and k != "last_accessed_at"}
        on_insert["created_at"] = now
        update = {"$set": {"last_accessed_at": now, "updated_at": now}, "$setOnInsert": on_insert}
        try:
            before = self.db["read_history"].find_one_and_update(
                key, update, upsert=True, return_document=ReturnDocument.BEFORE
            )
        except DuplicateKeyError:
            # Lost an upsert race; the winner's record is the one to use
            before = self.db["read_history"].find_one_and_update(
                key, {"$set": update["$set"]}, return_document=ReturnDocument.BEFORE
            )
        record = self.db["read_history"].find_one(key)
        created = before is None
        if created:
            logger.debug("Created read history for user %s on %s/%s", key["user"], comic_id, episode_id)
        return record, created

    def update_progress(self, record: dict, current_page: int, total_pages: int) -> dict:
        progress = compute_progress(current_page, total_pages)
        now = self.clock()
        updated = self.db["read_history"].find_one_and_update(
            {"_id": record["_id"]},
            {"$set": {"progress": progress, "last_accessed_at": now, "updated_at": now}},
            return_document=ReturnDocument.AFTER,
        )
        if updated is None:
            raise NotFoundError("Read history not found")
        return updated

    def get_progress(self, user: dict, comic_id: str, episode_id: Optional[str] = None) -> dict:
        record = self.db["read_history"].find_one(
            {"user": str(user["_id"]), "comic": comic_id, "episode": episode_id}
        )
        if not record:
            raise NotFoundError("No progress found for this comic")
        return record

    def history(self, user: dict, limit: int = 50) -> list:
        return get_documents(self.db, "read_history", {"user": str(user["_id"])},
                             sort=[("last_accessed_at", -1)], limit=limit)

    # Whole-comic reading

    def _owned_comic(self, comic_id: str, user: dict, action: str) -> Tuple[dict, list]:
        comic = find_by_id(self.db, "comic", comic_id, "Comic")
        episodes = get_documents(self.db, "episode", {"comic": comic_id}, sort=[("episode_number", 1)])
        if not holds_any_nft(comic, episodes, _account_id(user)):
            raise AccessDeniedError(f"You must own this comic NFT to {action} it")
        return comic, episodes

    def comic_content(self, comic_id: str, user: dict) -> dict:
        comic, episodes = self._owned_comic(comic_id, user, "read")
        record, _ = self.get_or_create(user, comic_id, total_pages=comic.get("page_count", 0))
        return {
            "comic": {
                "id": str(comic["_id"]),
                "title": comic["title"],
                "page_count": comic.get("page_count", 0),
                "episodes": [
                    {
                        "id": str(ep["_id"]),
                        "episode_number": ep["episode_number"],
                        "title": ep["title"],
                        "pages": ep["content"]["pages"],
                    }
                    for ep in episodes
                ],
                "downloads": comic.get("downloads", {}),
            },
            "progress": {
                "current_page": record["progress"]["current_page"],
                "last_read_at": record["last_accessed_at"],
            },
        }

    def save_comic_progress(self, comic_id: str, user: dict, current_page: int) -> dict:
        comic = find_by_id(self.db, "comic", comic_id, "Comic")
        page_count = comic.get("page_count", 0)
        record, _ = self.get_or_create(user, comic_id, total_pages=page_count)
        return self.update_progress(record, current_page, page_count)

    def download(self, comic_id: str, user: dict) -> dict:
        comic, episodes = self._owned_comic(comic_id, user, "download")
        downloads = comic.get("downloads") or {}
        return {
            "title": comic["title"],
            "cbz_url": downloads.get("cbz"),
            "pdf_url": downloads.get("pdf"),
            "episodes": [
                {"episode_number": ep["episode_number"], "cbz_url": (ep["content"].get("cbz") or {}).get("url")}
                for ep in episodes
                if ep["content"].get("cbz")
            ],
        }
