import json

import aiohttp
import pytest

import config
from collector import collect_comprehensive
from conftest import FakeRpc, make_event
from errors import RpcError
from ratelimit import RateLimiter
from rpc import SorobanRpc, HorizonClient


class FakeProvider:
    def __init__(self, responses=None, exc=None):
        self.responses = list(responses or [])
        self.exc = exc
        self.requests = []
        self.disconnected = False

    async def make_request(self, method, params):
        self.requests.append((method, params))
        if self.exc is not None:
            raise self.exc
        return self.responses.pop(0)

    async def disconnect(self):
        self.disconnected = True


class FakeResponse:
    def __init__(self, status, body=None):
        self.status = status
        self.body = body

    async def json(self):
        if isinstance(self.body, Exception):
            raise self.body
        return self.body

    async def text(self):
        return str(self.body)

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False


class FakeSession:
    closed = False

    def __init__(self, routes):
        self.routes = routes
        self.requests = []

    def get(self, url, params=None):
        self.requests.append((url, params))
        for suffix, resp in self.routes.items():
            if url.endswith(suffix):
                if isinstance(resp, Exception):
                    raise resp
                return resp
        return FakeResponse(404, {"status": 404})


@pytest.mark.asyncio
async def test_latest_ledger_sequence():
    rpc = SorobanRpc("http://rpc", provider=FakeProvider([{"jsonrpc": "2.0", "id": 1,
                                                           "result": {"sequence": 4242, "id": "abc"}}]))
    assert await rpc.get_latest_ledger() == 4242
    assert rpc.provider.requests[0] == ("getLatestLedger", {})


@pytest.mark.asyncio
async def test_error_member_raises_with_code():
    rpc = SorobanRpc("http://rpc", provider=FakeProvider([
        {"jsonrpc": "2.0", "id": 1, "error": {"code": -32600, "message": "startLedger must be positive"}}]))
    with pytest.raises(RpcError) as exc:
        await rpc.get_events(["C1"], start_ledger=0)
    assert exc.value.code == -32600


@pytest.mark.asyncio
async def test_transport_errors_become_rpc_errors():
    rpc = SorobanRpc("http://rpc", provider=FakeProvider(exc=aiohttp.ClientConnectionError("refused")))
    with pytest.raises(RpcError):
        await rpc.get_transaction("abc")


@pytest.mark.asyncio
async def test_get_events_sends_cursor_or_start_ledger_never_both():
    ok = {"jsonrpc": "2.0", "id": 1, "result": {"events": [], "latestLedger": 10}}
    provider = FakeProvider([dict(ok), dict(ok)])
    rpc = SorobanRpc("http://rpc", provider=provider)

    await rpc.get_events(["C1"], start_ledger=77, limit=100)
    await rpc.get_events(["C1"], start_ledger=77, cursor="0000-1", limit=100)
    await rpc.close()

    first, second = provider.requests[0][1], provider.requests[1][1]
    assert first["startLedger"] == 77 and "cursor" not in first["pagination"]
    assert second["pagination"]["cursor"] == "0000-1" and "startLedger" not in second
    assert first["filters"] == [{"type": "contract", "contractIds": ["C1"], "topics": []}]
    assert provider.disconnected


@pytest.mark.asyncio
async def test_horizon_records_and_limits():
    session = FakeSession({"/transactions/abc/operations": FakeResponse(200, {
        "_embedded": {"records": [{"id": "1"}, {"id": "2"}]}})})
    h = HorizonClient("https://horizon.example/", session=session)

    ops = await h.operations(for_transaction="abc", limit=500)

    assert [o["id"] for o in ops] == ["1", "2"]
    url, params = session.requests[0]
    assert url == "https://horizon.example/transactions/abc/operations"
    assert params["limit"] == 200
    assert params["order"] == "desc"
    assert "cursor" not in params


@pytest.mark.asyncio
async def test_horizon_missing_account_is_none():
    h = HorizonClient("https://horizon.example", session=FakeSession({}))
    assert await h.account("GNOPE") is None
    assert await h.payments(for_account="GNOPE") == []


@pytest.mark.asyncio
async def test_horizon_server_error_raises():
    session = FakeSession({"/accounts/GA": FakeResponse(503, "unavailable"),
                           "/operations/9/effects": aiohttp.ClientConnectionError("reset")})
    h = HorizonClient("https://horizon.example", session=session)
    with pytest.raises(RpcError) as exc:
        await h.account("GA")
    assert exc.value.status == 503
    with pytest.raises(RpcError):
        await h.effects(for_operation="9")


def _malformed():
    return json.JSONDecodeError("Unterminated string starting at", '{"_embedded": {"rec', 15)


@pytest.mark.asyncio
async def test_horizon_malformed_body_raises_rpc_error():
    session = FakeSession({"/transactions/abc/operations": FakeResponse(200, _malformed())})
    h = HorizonClient("https://horizon.example", session=session)
    with pytest.raises(RpcError) as exc:
        await h.operations(for_transaction="abc")
    assert exc.value.status == 200


@pytest.mark.asyncio
async def test_malformed_body_does_not_abort_collection(store, monkeypatch):
    monkeypatch.setattr(config, "CONTRACT_IDS", ["CCONTRACT1"])
    session = FakeSession({
        "/transactions/tx1/operations": FakeResponse(200, _malformed()),
        "/transactions/tx2/operations": FakeResponse(200, {"_embedded": {"records": [
            {"id": "7", "transaction_hash": "tx2", "source_account": "GA"}]}}),
    })
    h = HorizonClient("https://horizon.example", session=session)
    rpc = FakeRpc(latest=150, pages=[{"events": [make_event("e1", 110, "tx1"), make_event("e2", 111, "tx2")]}])

    res = await collect_comprehensive(store, rpc, h, RateLimiter(), start_ledger=101)

    assert [op["id"] for op in res.operations] == ["7"]
    assert await store.count_where("operations") == 1
