"""Comic collections: creation and catalogue queries."""
import logging
import re
from typing import List, Optional

from pymongo.database import Database

from content_store import ContentStore, UploadedFile
from database import create_document, find_by_id, get_documents
from exceptions import StorageError
from ledger import call_external
from schemas import Comic, ContentRef, require_account

logger = logging.getLogger(__name__)

SORT_FIELDS = {"created_at", "updated_at", "title", "page_count"}


def parse_sort(sort: str) -> list:
    """'-created_at' -> [('created_at', -1)]; unknown fields fall back to newest first."""
    direction = -1 if sort.startswith("-") else 1
    field = sort.lstrip("-+")
    if field not in SORT_FIELDS:
        return [("created_at", -1)]
    return [(field, direction)]


class ComicService:
    def __init__(self, db: Database, content_store: ContentStore):
        self.db = db
        self.content_store = content_store

    async def create_comic(
        self,
        user: dict,
        title: str,
        description: Optional[str] = None,
        series: Optional[str] = None,
        genres: Optional[List[str]] = None,
        tags: Optional[List[str]] = None,
        royalty_percentage: float = 10.0,
        max_supply: int = 0,
        cover: Optional[UploadedFile] = None,
    ) -> dict:
        account_id = require_account(user)
        cover_ref = None
        if cover is not None:
            stored = await call_external(
                self.content_store.store_upload(cover), self.content_store.timeout, error_cls=StorageError
            )
            cover_ref = ContentRef(**stored.as_dict())
        comic = Comic(
            title=title,
            description=description,
            series=series,
            genres=genres or [],
            tags=tags or [],
            creator=str(user["_id"]),
            creator_account_id=account_id,
            royalty_percentage=royalty_percentage,
            max_supply=max_supply,
            cover_image=cover_ref,
        )
        doc = create_document(self.db, comic)
        logger.info("Created comic %s (%s) for user %s", doc["_id"], title, user["_id"])
        return doc

    def get_comic(self, comic_id: str) -> dict:
        comic = find_by_id(self.db, "comic", comic_id, "Comic")
        comic["episodes"] = get_documents(self.db, "episode", {"comic": comic_id}, sort=[("episode_number", 1)])
        return comic

    def list_comics(self, status: Optional[str] = None, genre: Optional[str] = None,
                    creator: Optional[str] = None, q: Optional[str] = None,
                    limit: int = 20, skip: int = 0, sort: str = "-created_at") -> dict:
        filters = {}
        if status:
            filters["status"] = status
        if genre:
            filters["genres"] = genre
        if creator:
            filters["creator"] = creator
        if q:
            filters["title"] = {"$regex": re.escape(q), "$options": "i"}
        comics = get_documents(self.db, "comic", filters, sort=parse_sort(sort), limit=limit, skip=skip)
        total = self.db["comic"].count_documents(filters)
        return {
            "comics": comics,
            "pagination": {
                "total": total,
                "limit": limit,
                "skip": skip,
                "has_more": total > skip + limit,
            },
        }

    def my_comics(self, user: dict) -> list:
        return get_documents(self.db, "comic", {"creator": str(user["_id"])}, sort=[("created_at", -1)])
