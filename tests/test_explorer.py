import httpx
import pytest

from explorer import ExplorerClient, ExplorerError
from snapshots import Network

ADDRESS = "0x" + "ab" * 20


def make_client(handler):
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return ExplorerClient(client=http)


async def test_fetch_balances_combines_native_and_tokens():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append((request.url.host, request.url.params["action"]))
        if request.url.params["action"] == "balance":
            return httpx.Response(200, json={"status": "1", "message": "OK", "result": "1500000000000000001"})
        return httpx.Response(200, json={
            "status": "1",
            "message": "OK",
            "result": [{"symbol": "cBRL", "decimals": "18", "balance": "2500000000000000000"}],
        })

    client = make_client(handler)
    data = await client.fetch_balances(ADDRESS, Network.TESTNET)
    assert data == {
        "native": "1.500000",
        "tokens": [{"symbol": "cBRL", "decimals": "18", "balanceRaw": "2500000000000000000"}],
    }
    assert sorted(seen) == [("floripa.azorescan.com", "balance"), ("floripa.azorescan.com", "tokenlist")]


async def test_no_tokens_found_is_an_empty_list():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.params["action"] == "balance":
            return httpx.Response(200, json={"status": "1", "result": "0"})
        return httpx.Response(200, json={"status": "0", "message": "No tokens found", "result": []})

    data = await make_client(handler).fetch_balances(ADDRESS, Network.MAINNET)
    assert data == {"native": "0.000000", "tokens": []}


async def test_balance_api_error_raises():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"status": "0", "message": "NOTOK", "result": "Invalid address"})

    with pytest.raises(ExplorerError):
        await make_client(handler).fetch_balances(ADDRESS, Network.TESTNET)


async def test_http_error_propagates():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503, text="down")

    with pytest.raises(httpx.HTTPStatusError):
        await make_client(handler).get_native_balance(ADDRESS, Network.TESTNET)
