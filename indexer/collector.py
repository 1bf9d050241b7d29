import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

from pydantic import BaseModel, Field

import config
from errors import RpcError
from helpers import uniq
from indexer import FetchEventsResult, fetch_and_store_events

log = logging.getLogger(__name__)

class CollectResult(BaseModel):
    events: List[FetchEventsResult] = Field(default_factory=list)
    operations: List[Dict[str, Any]] = Field(default_factory=list)
    effects: List[Dict[str, Any]] = Field(default_factory=list)
    accounts: List[Dict[str, Any]] = Field(default_factory=list)
    payments: List[Dict[str, Any]] = Field(default_factory=list)
    summary: Dict[str, int] = Field(default_factory=dict)

async def guarded_call(limiter, monitor, resource: str, label: str,
                       fn: Callable[[], Awaitable[Any]], empty: Any):
    """Run one fan-out call behind the rate limiter; any refusal or RpcError yields `empty`."""
    max_calls, window_ms = config.RATE_LIMITS[resource]
    if not limiter.can_proceed(resource, max_calls, window_ms):
        log.warning(f"[collector] {label} skipped: {resource} rate limit reached")
        return empty
    try:
        if monitor is not None:
            res = await monitor.measure(label, fn)
        else:
            res = await fn()
    except RpcError as e:
        log.warning(f"[collector] {label} failed: {e}")
        return empty
    return empty if res is None else res

async def collect_comprehensive(store, rpc, horizon, limiter, start_ledger: Optional[int] = None, *,
                                monitor=None) -> CollectResult:
    """Event cycle followed by a capped Horizon fan-out over the most recent stored events."""
    fetched = await fetch_and_store_events(store, rpc, start_ledger)

    recent = await store.find_recent_events(config.COLLECT_RECENT_EVENTS)
    tx_hashes = uniq(e.get("tx_hash") for e in recent)
    contract_ids = uniq(e.get("contract_id") for e in recent)
    log.info(f"[collector] {len(recent)} recent events -> {len(tx_hashes)} txs, {len(contract_ids)} contracts")

    operations: List[Dict[str, Any]] = []
    for h in tx_hashes[:config.COLLECT_TX_CAP]:
        ops = await guarded_call(limiter, monitor, "operations", f"operations for tx {h}",
                                 lambda h=h: horizon.operations(for_transaction=h), [])
        operations.extend(ops)

    effects: List[Dict[str, Any]] = []
    for op in operations[:config.COLLECT_OP_CAP]:
        op_id = str(op.get("id") or "")
        if not op_id:
            continue
        effs = await guarded_call(limiter, monitor, "effects", f"effects for op {op_id}",
                                  lambda op_id=op_id: horizon.effects(for_operation=op_id), [])
        effects.extend(effs)

    accounts: List[Dict[str, Any]] = []
    for cid in contract_ids[:config.COLLECT_ACCOUNT_CAP]:
        acc = await guarded_call(limiter, monitor, "accounts", f"account {cid}",
                                 lambda cid=cid: horizon.account(cid), None)
        if acc:
            accounts.append(acc)

    payments: List[Dict[str, Any]] = []
    for cid in contract_ids[:config.COLLECT_PAYMENT_CAP]:
        pays = await guarded_call(limiter, monitor, "payments", f"payments for {cid}",
                                  lambda cid=cid: horizon.payments(for_account=cid), [])
        payments.extend(pays)

    await store.upsert_operations(operations)
    await store.upsert_effects(effects)
    await store.upsert_accounts(accounts)
    await store.upsert_payments(payments)

    summary = {
        "events_fetched": fetched.events_fetched,
        "processed_up_to_ledger": fetched.processed_up_to_ledger,
        "operations": len(operations),
        "effects": len(effects),
        "accounts": len(accounts),
        "payments": len(payments),
    }
    log.info(f"[collector] comprehensive pass done {summary}")
    return CollectResult(events=[fetched], operations=operations, effects=effects,
                         accounts=accounts, payments=payments, summary=summary)

def is_failed_operation(op: Dict[str, Any]) -> bool:
    return not op.get("successful", True) or op.get("transaction_successful") is False

async def collect_contract_operations(store, rpc, horizon, limiter, contract_ids: Optional[List[str]] = None,
                                      include_failed: bool = True, *, monitor=None) -> Dict[str, Any]:
    ids = list(config.CONTRACT_IDS if contract_ids is None else contract_ids)
    log.info(f"[collector] sweeping operations for {len(ids)} contracts")

    operations: List[Dict[str, Any]] = []
    failed: List[Dict[str, Any]] = []
    accounts: List[str] = []
    for cid in ids:
        ops = await guarded_call(
            limiter, monitor, "operations", f"operations for contract {cid}",
            lambda cid=cid: horizon.operations(for_account=cid, limit=config.MAX_OPERATIONS_PER_FETCH,
                                               include_failed=include_failed),
            [])
        for op in ops:
            op["_contract_id"] = cid
            if op.get("source_account") and op["source_account"] not in accounts:
                accounts.append(op["source_account"])
            if is_failed_operation(op):
                failed.append(op)
        operations.extend(ops)

    transactions: List[Dict[str, Any]] = []
    for h in uniq(op.get("transaction_hash") for op in operations):
        try:
            tx = await rpc.get_transaction(h)
        except RpcError as e:
            log.warning(f"[collector] getTransaction {h} failed: {e}")
            continue
        if tx and tx.get("status") != "NOT_FOUND":
            transactions.append({**tx, "txHash": tx.get("txHash") or h})

    # transactions before the operations that reference them
    await store.upsert_transactions([(t["txHash"], t) for t in transactions])
    await store.upsert_operations(operations)
    log.info(f"[collector] contract sweep: {len(operations)} ops ({len(failed)} failed), {len(transactions)} txs")

    return {
        "operations": operations,
        "transactions": transactions,
        "accounts": accounts,
        "failed_operations": failed,
        "operations_fetched": len(operations),
        "transactions_fetched": len(transactions),
    }
