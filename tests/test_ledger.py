"""Tests for the ledger and content store HTTP clients."""

import asyncio
import json

import httpx
import pytest

from content_store import ContentStore, UploadedFile
from exceptions import LedgerError, LedgerTimeoutError, StorageError
from ledger import LedgerClient, call_external


def ledger_with(handler, api_key="secret"):
    return LedgerClient("http://ledger.test/", api_key, timeout=5, transport=httpx.MockTransport(handler))


class TestLedgerClient:
    @pytest.mark.asyncio
    async def test_create_collection(self):
        seen = {}

        def handler(request):
            seen["path"] = request.url.path
            seen["auth"] = request.headers.get("authorization")
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"token_id": "0.0.7001"})

        token_id = await ledger_with(handler).create_collection("Star Harbor #1", "STAR1", "0.0.100", 10, 5)
        assert token_id == "0.0.7001"
        assert seen["path"] == "/collections"
        assert seen["auth"] == "Bearer secret"
        assert seen["body"]["max_supply"] == 10
        assert seen["body"]["treasury_account_id"] == "0.0.100"

    @pytest.mark.asyncio
    async def test_mint(self):
        def handler(request):
            assert request.url.path == "/collections/0.0.7001/mint"
            return httpx.Response(200, json={"minted": [
                {"serial_number": 4, "transaction_id": "tx-4"},
                {"serial_number": 5, "transaction_id": "tx-5"},
            ]})

        receipts = await ledger_with(handler).mint("0.0.7001", "0.0.200", 2)
        assert [(r.serial_number, r.transaction_id) for r in receipts] == [(4, "tx-4"), (5, "tx-5")]

    @pytest.mark.asyncio
    async def test_mint_quantity_mismatch(self):
        def handler(request):
            return httpx.Response(200, json={"minted": [{"serial_number": 1, "transaction_id": "tx-1"}]})

        with pytest.raises(LedgerError):
            await ledger_with(handler).mint("0.0.7001", "0.0.200", 2)

    @pytest.mark.asyncio
    async def test_http_error(self):
        def handler(request):
            return httpx.Response(500, text="boom")

        with pytest.raises(LedgerError) as exc:
            await ledger_with(handler).transfer("0.0.7001", 1, "0.0.200", "0.0.300")
        assert exc.value.details["status"] == 500

    @pytest.mark.asyncio
    async def test_unreachable(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(LedgerError, match="unreachable"):
            await ledger_with(handler, api_key=None).list_nfts("0.0.7001")

    @pytest.mark.asyncio
    async def test_list_nfts(self):
        def handler(request):
            return httpx.Response(200, json={"nfts": [{"serial_number": "1", "owner": "0.0.200"}]})

        nfts = await ledger_with(handler).list_nfts("0.0.7001")
        assert nfts[0].serial_number == 1
        assert nfts[0].owner == "0.0.200"
        assert nfts[0].transaction_id == ""


class TestCallExternal:
    @pytest.mark.asyncio
    async def test_returns_result(self):
        async def quick():
            return 42

        assert await call_external(quick(), 1) == 42

    @pytest.mark.asyncio
    async def test_timeout_detaches(self):
        finished = []

        async def slow():
            await asyncio.sleep(0.1)
            return "done"

        with pytest.raises(LedgerTimeoutError):
            await call_external(slow(), 0.01, on_late_result=lambda task: finished.append(task.result()))
        assert finished == []
        await asyncio.sleep(0.2)
        assert finished == ["done"]

    @pytest.mark.asyncio
    async def test_custom_error_class(self):
        async def slow():
            await asyncio.sleep(0.1)

        with pytest.raises(StorageError):
            await call_external(slow(), 0.01, error_cls=StorageError)
        await asyncio.sleep(0.15)

    @pytest.mark.asyncio
    async def test_late_failure_is_logged(self, caplog):
        async def slow_failure():
            await asyncio.sleep(0.05)
            raise StorageError("pin service went away")

        with pytest.raises(StorageError, match="timed out"):
            await call_external(slow_failure(), 0.01, error_cls=StorageError)
        await asyncio.sleep(0.1)
        assert "Detached external call failed: pin service went away" in caplog.text


class TestContentStore:
    @pytest.mark.asyncio
    async def test_store_returns_gateway_url(self):
        def handler(request):
            assert request.url.path == "/api/pin/file"
            return httpx.Response(200, json={"hash": "QmAbc"})

        store = ContentStore("http://pin.test/api/", "https://gateway.test/ipfs/",
                             transport=httpx.MockTransport(handler))
        stored = await store.store_upload(UploadedFile("p1.png", b"img", "image/png"))
        assert stored.as_dict() == {"hash": "QmAbc", "url": "https://gateway.test/ipfs/QmAbc"}

    @pytest.mark.asyncio
    async def test_missing_hash(self):
        store = ContentStore("http://pin.test", "https://gateway.test/ipfs",
                             transport=httpx.MockTransport(lambda request: httpx.Response(200, json={})))
        with pytest.raises(StorageError):
            await store.store_json({"name": "meta"})

    @pytest.mark.asyncio
    async def test_upload_failure(self):
        store = ContentStore("http://pin.test", "https://gateway.test/ipfs",
                             transport=httpx.MockTransport(lambda request: httpx.Response(503)))
        with pytest.raises(StorageError):
            await store.store("p.png", b"img")
