import asyncio, logging
from typing import Any, Dict, List, Optional

import aiohttp
from web3 import AsyncHTTPProvider
from web3.exceptions import Web3Exception

import config
from errors import RpcError

log = logging.getLogger(__name__)

# ---------- Soroban JSON-RPC ----------
class SorobanRpc:
    """Thin async client for the Soroban JSON-RPC methods the indexer needs.

    Transport (envelope, ids, HTTP session) is web3's AsyncHTTPProvider; the
    response `error` member is checked here because Soroban errors do not go
    through web3's eth middleware.
    """

    def __init__(self, url: str | None = None, *, timeout_s: float | None = None, provider=None):
        self.url = url or config.SOROBAN_RPC_URL
        self.provider = provider or AsyncHTTPProvider(
            self.url,
            request_kwargs={"timeout": aiohttp.ClientTimeout(total=timeout_s or config.RPC_TIMEOUT_S)},
        )

    async def call(self, method: str, params: Optional[Dict[str, Any]] = None) -> Any:
        try:
            resp = await self.provider.make_request(method, params or {})
        except (aiohttp.ClientError, asyncio.TimeoutError, Web3Exception, ValueError) as e:
            raise RpcError(f"{method} transport failure: {e}") from e

        if not isinstance(resp, dict):
            raise RpcError(f"{method} returned malformed response")
        err = resp.get("error")
        if err:
            code = err.get("code") if isinstance(err, dict) else None
            msg = err.get("message") if isinstance(err, dict) else str(err)
            log.warning(f"[rpc] {method} returned error {code}: {msg}")
            raise RpcError(f"{method} failed: {msg}", code=code)
        if "result" not in resp:
            raise RpcError(f"{method} returned no result")
        return resp["result"]

    async def get_latest_ledger(self) -> int:
        res = await self.call("getLatestLedger")
        try:
            return int(res["sequence"])
        except (KeyError, TypeError, ValueError) as e:
            raise RpcError(f"getLatestLedger returned no sequence: {res!r}") from e

    async def get_events(self, contract_ids: List[str], *, start_ledger: int | None = None,
                         cursor: str | None = None, limit: int | None = None) -> Dict[str, Any]:
        params: Dict[str, Any] = {
            "filters": [{"type": "contract", "contractIds": list(contract_ids), "topics": []}],
            "pagination": {"limit": limit or config.MAX_EVENTS_PER_FETCH},
        }
        # cursor and startLedger are mutually exclusive on the wire
        if cursor:
            params["pagination"]["cursor"] = cursor
        else:
            params["startLedger"] = int(start_ledger or 1)
        res = await self.call("getEvents", params)
        return res or {}

    async def get_transaction(self, tx_hash: str) -> Dict[str, Any]:
        return await self.call("getTransaction", {"hash": tx_hash})

    async def get_health(self) -> Dict[str, Any]:
        return await self.call("getHealth")

    async def close(self):
        disconnect = getattr(self.provider, "disconnect", None)
        if disconnect is not None:
            await disconnect()


# ---------- Horizon REST ----------
class HorizonClient:
    def __init__(self, url: str | None = None, *, timeout_s: float | None = None,
                 session: aiohttp.ClientSession | None = None):
        self.url = (url or config.HORIZON_URL).rstrip("/")
        self.timeout = aiohttp.ClientTimeout(total=timeout_s or config.HORIZON_TIMEOUT_S)
        self._session = session
        self._owns_session = session is None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.timeout)
            self._owns_session = True
        return self._session

    async def _get(self, path: str, params: Optional[Dict[str, Any]] = None, *, allow_404: bool = False):
        session = await self._get_session()
        url = f"{self.url}{path}"
        clean = {k: v for k, v in (params or {}).items() if v is not None}
        log.debug(f"[horizon] GET {path} {clean}")
        try:
            async with session.get(url, params=clean) as resp:
                if resp.status == 404 and allow_404:
                    return None
                if resp.status < 200 or resp.status >= 300:
                    body = await resp.text()
                    raise RpcError(f"horizon GET {path} -> {resp.status}: {body[:200]}", status=resp.status)
                try:
                    return await resp.json()
                except ValueError as e:
                    raise RpcError(f"horizon GET {path} returned malformed json: {e}", status=resp.status) from e
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise RpcError(f"horizon GET {path} failed: {e}") from e

    async def _records(self, path: str, params: Dict[str, Any]) -> List[Dict[str, Any]]:
        params = dict(params)
        params["limit"] = min(int(params.get("limit") or config.HORIZON_PAGE_LIMIT), config.HORIZON_PAGE_LIMIT)
        params.setdefault("order", "desc")
        data = await self._get(path, params, allow_404=True)
        if not data:
            return []
        return list(((data.get("_embedded") or {}).get("records")) or [])

    async def operations(self, *, for_transaction: str | None = None, for_account: str | None = None,
                         cursor: str | None = None, limit: int | None = None,
                         include_failed: bool | None = None) -> List[Dict[str, Any]]:
        if for_transaction:
            path = f"/transactions/{for_transaction}/operations"
        elif for_account:
            path = f"/accounts/{for_account}/operations"
        else:
            path = "/operations"
        params = {"cursor": cursor, "limit": limit or config.MAX_OPERATIONS_PER_FETCH}
        if include_failed is not None:
            params["include_failed"] = "true" if include_failed else "false"
        return await self._records(path, params)

    async def effects(self, *, for_operation: str | None = None, for_transaction: str | None = None,
                      for_account: str | None = None, cursor: str | None = None,
                      limit: int | None = None) -> List[Dict[str, Any]]:
        if for_operation:
            path = f"/operations/{for_operation}/effects"
        elif for_transaction:
            path = f"/transactions/{for_transaction}/effects"
        elif for_account:
            path = f"/accounts/{for_account}/effects"
        else:
            path = "/effects"
        return await self._records(path, {"cursor": cursor, "limit": limit})

    async def payments(self, *, for_account: str | None = None, cursor: str | None = None,
                       limit: int | None = None) -> List[Dict[str, Any]]:
        path = f"/accounts/{for_account}/payments" if for_account else "/payments"
        return await self._records(path, {"cursor": cursor, "limit": limit})

    async def account(self, account_id: str) -> Optional[Dict[str, Any]]:
        """Account record, or None when horizon does not know the id."""
        return await self._get(f"/accounts/{account_id}", allow_404=True)

    async def close(self):
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
