"""
Ledger gateway client.

The ledger (token service) is the source of truth for NFT ownership. This
module talks to it over HTTP and never touches the database; callers mirror
the results locally.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional, TypeVar

import httpx

from exceptions import LedgerError, LedgerTimeoutError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class MintReceipt:
    serial_number: int
    transaction_id: str


@dataclass
class LedgerNFT:
    serial_number: int
    owner: str
    transaction_id: str = ""


def _log_detached(task: "asyncio.Task") -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error("Detached external call failed: %s", exc)


async def call_external(
    coro: Awaitable[T],
    timeout: float,
    on_late_result: Optional[Callable[["asyncio.Task"], None]] = None,
    error_cls: type = LedgerTimeoutError,
) -> T:
    """Await an external call with a timeout without aborting it.

    The call runs in its own task behind ``asyncio.shield``. If the timeout
    expires or the caller is cancelled, the task keeps running and
    ``on_late_result`` is invoked with it once it finishes. Without one, a
    late failure is logged.
    """
    task = asyncio.ensure_future(coro)
    try:
        return await asyncio.wait_for(asyncio.shield(task), timeout)
    except asyncio.TimeoutError:
        logger.warning("External call still running after %.1fs, detaching", timeout)
        task.add_done_callback(on_late_result or _log_detached)
        raise error_cls("External call timed out", {"timeout": timeout})
    except asyncio.CancelledError:
        logger.warning("Caller cancelled during external call, detaching")
        task.add_done_callback(on_late_result or _log_detached)
        raise


class LedgerClient:
    """Async client for the ledger gateway REST API."""

    def __init__(self, base_url: str, api_key: Optional[str] = None, timeout: float = 30.0,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self._base_url = base_url.rstrip("/")
        self._headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self._timeout = timeout
        self._transport = transport

    @property
    def timeout(self) -> float:
        return self._timeout

    async def _request(self, method: str, path: str, json: Optional[dict] = None) -> dict:
        try:
            async with httpx.AsyncClient(
                base_url=self._base_url,
                headers=self._headers,
                timeout=self._timeout,
                transport=self._transport,
            ) as client:
                response = await client.request(method, path, json=json)
                response.raise_for_status()
                return response.json()
        except httpx.HTTPStatusError as e:
            logger.error("Ledger %s %s failed: %s %s", method, path, e.response.status_code, e.response.text[:200])
            raise LedgerError("Ledger request failed", {"status": e.response.status_code, "path": path})
        except httpx.HTTPError as e:
            logger.error("Ledger %s %s unreachable: %s", method, path, e)
            raise LedgerError("Ledger unreachable", {"path": path})

    async def create_collection(self, name: str, symbol: str, treasury_account_id: str,
                                max_supply: int = 0, royalty_percentage: float = 0) -> str:
        """Create an NFT collection and return its token id."""
        data = await self._request("POST", "/collections", json={
            "name": name,
            "symbol": symbol,
            "treasury_account_id": treasury_account_id,
            "max_supply": max_supply,
            "royalty_percentage": royalty_percentage,
        })
        token_id = data.get("token_id")
        if not token_id:
            raise LedgerError("Ledger returned no token id")
        logger.info("Created collection %s (%s)", token_id, name)
        return token_id

    async def mint(self, collection_token_id: str, buyer_account_id: str, quantity: int) -> List[MintReceipt]:
        data = await self._request("POST", f"/collections/{collection_token_id}/mint", json={
            "account_id": buyer_account_id,
            "quantity": quantity,
        })
        receipts = [MintReceipt(int(r["serial_number"]), str(r["transaction_id"])) for r in data.get("minted", [])]
        if len(receipts) != quantity:
            # Whatever was minted is recovered by reconciliation
            raise LedgerError("Ledger minted an unexpected quantity", {"requested": quantity, "minted": len(receipts)})
        logger.info("Minted %s serial(s) of %s to %s", quantity, collection_token_id, buyer_account_id)
        return receipts

    async def transfer(self, collection_token_id: str, serial_number: int,
                       from_account_id: str, to_account_id: str) -> str:
        """Transfer one NFT and return the transaction id."""
        data = await self._request("POST", f"/collections/{collection_token_id}/transfer", json={
            "serial_number": serial_number,
            "from_account_id": from_account_id,
            "to_account_id": to_account_id,
        })
        logger.info("Transferred %s#%s %s -> %s", collection_token_id, serial_number, from_account_id, to_account_id)
        return str(data["transaction_id"])

    async def list_nfts(self, collection_token_id: str) -> List[LedgerNFT]:
        data = await self._request("GET", f"/collections/{collection_token_id}/nfts")
        return [
            LedgerNFT(int(n["serial_number"]), n["owner"], str(n.get("transaction_id", "")))
            for n in data.get("nfts", [])
        ]
