"""Content-addressed storage client (IPFS pinning service)."""
import json
import logging
from dataclasses import dataclass
from typing import Optional

import httpx

from exceptions import StorageError

logger = logging.getLogger(__name__)


@dataclass
class UploadedFile:
    filename: str
    data: bytes
    content_type: str = "application/octet-stream"


@dataclass
class StoredContent:
    hash: str
    url: str

    def as_dict(self) -> dict:
        return {"hash": self.hash, "url": self.url}


class ContentStore:
    """Uploads files to the pinning service and builds gateway URLs."""

    def __init__(self, api_url: str, gateway_url: str, api_key: Optional[str] = None,
                 timeout: float = 60.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        self._api_url = api_url.rstrip("/")
        self._gateway_url = gateway_url.rstrip("/")
        self._headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self._timeout = timeout
        self._transport = transport

    @property
    def timeout(self) -> float:
        return self._timeout

    def url_for(self, content_hash: str) -> str:
        return f"{self._gateway_url}/{content_hash}"

    async def store(self, filename: str, data: bytes, content_type: str = "application/octet-stream") -> StoredContent:
        try:
            async with httpx.AsyncClient(headers=self._headers, timeout=self._timeout,
                                         transport=self._transport) as client:
                response = await client.post(
                    f"{self._api_url}/pin/file",
                    files={"file": (filename, data, content_type)},
                )
                response.raise_for_status()
                content_hash = response.json()["hash"]
        except httpx.HTTPError as e:
            logger.error("Failed to store %s: %s", filename, e)
            raise StorageError("Content store upload failed", {"filename": filename})
        except (KeyError, ValueError):
            raise StorageError("Content store returned no hash", {"filename": filename})
        logger.debug("Stored %s (%d bytes) as %s", filename, len(data), content_hash)
        return StoredContent(content_hash, self.url_for(content_hash))

    async def store_upload(self, upload: UploadedFile) -> StoredContent:
        return await self.store(upload.filename, upload.data, upload.content_type)

    async def store_json(self, payload: dict, name: str = "metadata.json") -> StoredContent:
        data = json.dumps(payload, default=str).encode("utf-8")
        return await self.store(name, data, "application/json")
