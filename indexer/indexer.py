import logging
from typing import Dict, Any, List, Optional

from pydantic import BaseModel

import config
from errors import IndexerConfigError, FetchLoopError, RpcError
from helpers import ledger_of, to_int

log = logging.getLogger(__name__)

class FetchEventsResult(BaseModel):
    message: str
    events_fetched: int = 0
    processed_up_to_ledger: int = 0
    last_network_ledger: int = 0

# ---------- light wrappers ----------
async def fetch_transaction(rpc, event: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """Best-effort transaction detail for an event; None when unavailable."""
    tx_hash = event.get("txHash")
    if not tx_hash:
        return None
    try:
        tx = await rpc.get_transaction(tx_hash)
    except RpcError as e:
        log.warning(f"[events] getTransaction {tx_hash} for event {event.get('id')} failed: {e}")
        return None
    if not tx or tx.get("status") == "NOT_FOUND":
        log.debug(f"[events] tx {tx_hash} not found on rpc")
        return None
    return tx

async def enrich_page(rpc, events: List[Dict[str, Any]]) -> List[tuple]:
    # in page order, one lookup at a time
    out = []
    for ev in events:
        out.append((ev, await fetch_transaction(rpc, ev)))
    return out

def resolve_start_ledger(start_ledger: Optional[int], cursor: int, latest: int, lookback: int) -> int:
    if start_ledger is not None:
        return max(1, int(start_ledger))
    if cursor > 0:
        return cursor + 1
    return max(1, latest - lookback)

# ---------- main cycle ----------
async def fetch_and_store_events(store, rpc, start_ledger: Optional[int] = None, *,
                                 contract_ids: Optional[List[str]] = None,
                                 lookback_ledgers: Optional[int] = None,
                                 page_limit: Optional[int] = None) -> FetchEventsResult:
    """Pull contract events from the RPC node into the store and advance the ledger cursor.

    One call is one ingestion cycle. Each page is enriched and flushed before the
    next one is requested, so progress already written survives a later failure.
    """
    if store is None:
        raise IndexerConfigError("record store not connected; aborting event fetch")
    ids = list(config.CONTRACT_IDS if contract_ids is None else contract_ids)
    if not ids:
        raise IndexerConfigError("no contract ids configured (CONTRACT_IDS / contracts.json)")
    lookback = config.LOOKBACK_LEDGERS if lookback_ledgers is None else int(lookback_ledgers)
    limit = page_limit or config.MAX_EVENTS_PER_FETCH

    latest = await rpc.get_latest_ledger()
    last_cursor = await store.get_cursor(config.CURSOR_KEY)
    current = resolve_start_ledger(start_ledger, last_cursor, latest, lookback)
    log.info(f"[events] cycle start ledger={current} cursor={last_cursor} latest={latest}")

    if current > latest and latest > 0:
        msg = "start ledger is ahead of the latest network ledger; nothing to process"
        log.info(f"[events] {msg}")
        return FetchEventsResult(message=msg, events_fetched=0,
                                 processed_up_to_ledger=current - 1, last_network_ledger=latest)

    watermark = last_cursor
    total = 0
    iteration = 0
    token: Optional[str] = None
    prev_token: Optional[str] = None
    stale = 0

    while True:
        iteration += 1
        if iteration > config.MAX_FETCH_ITERATIONS:
            raise FetchLoopError(f"exceeded {config.MAX_FETCH_ITERATIONS} fetch iterations")

        if token:
            page = await rpc.get_events(ids, cursor=token, limit=limit)
        else:
            page = await rpc.get_events(ids, start_ledger=max(1, current), limit=limit)

        events = page.get("events") or []
        next_token = page.get("cursor") or None

        if events:
            total += len(events)
            items = await enrich_page(rpc, events)
            watermark = max(watermark, ledger_of(events[-1]))
            await store.upsert_events(items)
            log.info(f"[events] page {iteration}: {len(events)} events, watermark={watermark}")
            stale = 0
        elif next_token:
            if next_token == prev_token:
                stale += 1
                log.info(f"[events] empty page with unchanged token (repeat {stale})")
                if stale >= config.STALE_CURSOR_REPEATS:
                    log.info("[events] token stopped advancing; treating source as drained")
                    break
            else:
                stale = 0

        token = next_token
        if not token:
            current = watermark + 1
            if not events and page.get("latestLedger") is not None:
                # node scanned through its latestLedger and found nothing
                current = max(current, min(to_int(page.get("latestLedger")), latest) + 1)
            if current > latest:
                log.info(f"[events] scan pointer {current} past latest {latest}")
            break
        prev_token = token

    if watermark > last_cursor:
        await store.set_cursor(config.CURSOR_KEY, watermark)
    elif total == 0 and last_cursor < current <= latest + 1:
        scanned = min(current - 1, latest)
        if scanned > last_cursor:
            log.info(f"[events] empty range, advancing cursor to {scanned}")
            await store.set_cursor(config.CURSOR_KEY, scanned)

    msg = f"event ingestion cycle finished: fetched {total} events, processed up to ledger {watermark}"
    log.info(f"[events] {msg}")
    return FetchEventsResult(message=msg, events_fetched=total,
                             processed_up_to_ledger=watermark, last_network_ledger=latest)
