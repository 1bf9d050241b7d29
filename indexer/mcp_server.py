# mcp_server.py
import logging
from typing import List, Dict, Any, Optional

from fastmcp import FastMCP
from pydantic import BaseModel, Field, ValidationError

import config
from db import COUNTABLE
from errors import RpcError

log = logging.getLogger(__name__)

# --------- Pydantic input models ----------
class LimitIn(BaseModel):
    limit: int = Field(10, ge=1, le=500)

class StartLedgerIn(BaseModel):
    start_ledger: Optional[int] = None

class ContractOpsIn(BaseModel):
    contract_ids: Optional[List[str]] = None
    include_failed: bool = True

class EventIdIn(BaseModel):
    event_id: str

def _invalid(what: str, value: Any, err: ValidationError) -> Dict[str, Any]:
    msg = err.errors()[0].get("msg", "invalid value") if err.errors() else "invalid value"
    return {"success": False, "error": f"invalid {what} {value!r}: {msg}"}

# ----------------- triggers ------------------
# Each trigger only submits work; outcomes surface through queue status / notifications.

def trigger_fetch_events(queue, start_ledger: Any = None) -> Dict[str, Any]:
    try:
        args = StartLedgerIn(start_ledger=start_ledger)
    except ValidationError as e:
        return _invalid("start_ledger", start_ledger, e)
    job_id = queue.enqueue_fetch_events(args.start_ledger)
    return {"success": True, "message": "event ingestion queued", "job_id": job_id}

def trigger_comprehensive(queue, start_ledger: Any = None) -> Dict[str, Any]:
    try:
        args = StartLedgerIn(start_ledger=start_ledger)
    except ValidationError as e:
        return _invalid("start_ledger", start_ledger, e)
    job_id = queue.enqueue_comprehensive_data(args.start_ledger)
    return {"success": True, "message": "comprehensive collection queued", "job_id": job_id}

def trigger_contract_operations(queue, contract_ids: Any = None, include_failed: Any = True) -> Dict[str, Any]:
    try:
        args = ContractOpsIn(contract_ids=contract_ids, include_failed=include_failed)
    except ValidationError as e:
        return _invalid("contract operations request", contract_ids, e)
    job_id = queue.enqueue_contract_operations(args.contract_ids, include_failed=args.include_failed)
    return {"success": True, "message": "contract operations sweep queued", "job_id": job_id}

# ----------------- reads ------------------

async def latest_events(store, limit: int = 10) -> List[Dict[str, Any]]:
    """Most recent stored events, newest ledger first."""
    return await store.find_recent_events(max(1, min(int(limit), 500)))

async def event_by_id(store, event_id: str) -> Dict[str, Any]:
    if not event_id:
        return {"error": "event_id is required"}
    ev = await store.get_event(event_id)
    if not ev:
        return {"error": f"event {event_id} not found"}
    return ev

async def health(store, rpc=None) -> Dict[str, Any]:
    """
    Indexer health: persisted cursor, row counts per table and, when an rpc
    client is given, the node's getHealth answer.
    """
    out: Dict[str, Any] = {
        "db_path": config.DB_PATH,
        "network": config.STELLAR_NETWORK,
        "contracts": list(config.CONTRACT_IDS),
        "last_processed_ledger": await store.get_cursor(config.CURSOR_KEY),
        "counts": {t: await store.count_where(t) for t in COUNTABLE},
        "rpc": None,
        "ready": False,
    }
    if rpc is not None:
        try:
            out["rpc"] = await rpc.get_health()
            out["ready"] = True
        except RpcError as e:
            out["rpc"] = {"error": str(e)}
    else:
        out["ready"] = out["last_processed_ledger"] > 0
    return out

# ----------------- MCP app ------------------

def build_mcp(queue, store, rpc=None) -> FastMCP:
    mcp = FastMCP("horizon-index-mcp")

    @mcp.tool(name="ingest_events")
    def ingest_events_t(args: StartLedgerIn):
        """Queue one event ingestion cycle (optional start ledger override)."""
        return trigger_fetch_events(queue, args.start_ledger)

    @mcp.tool(name="ingest_comprehensive")
    def ingest_comprehensive_t(args: StartLedgerIn):
        """Queue an event cycle followed by the Horizon operations/effects/accounts/payments fan-out."""
        return trigger_comprehensive(queue, args.start_ledger)

    @mcp.tool(name="ingest_contract_operations")
    def ingest_contract_operations_t(args: ContractOpsIn):
        """Queue a Horizon operations sweep over the watched contracts."""
        return trigger_contract_operations(queue, args.contract_ids, args.include_failed)

    @mcp.tool(name="queue_status")
    def queue_status_t():
        """Pending jobs and the next ten due."""
        return queue.status()

    @mcp.tool(name="events_latest")
    async def events_latest_t(args: LimitIn):
        """Latest N stored contract events."""
        return await latest_events(store, args.limit)

    @mcp.tool(name="event_get")
    async def event_get_t(args: EventIdIn):
        """Stored event by id, with its transaction enrichment."""
        return await event_by_id(store, args.event_id)

    @mcp.tool(name="indexer_health")
    async def indexer_health_t():
        """Cursor, table counts and rpc health."""
        return await health(store, rpc)

    return mcp
