import asyncio, json, logging, time, uvloop

import config
from collector import collect_comprehensive, collect_contract_operations
from db import Store, seed_contracts
from indexer import fetch_and_store_events
from jobs import IngestQueue, FETCH_EVENTS, FETCH_COMPREHENSIVE, FETCH_CONTRACT_OPERATIONS
from mcp_server import build_mcp
from ratelimit import RateLimiter, PerformanceMonitor
from rpc import SorobanRpc, HorizonClient

log = logging.getLogger(__name__)

class JsonLinesFormatter(logging.Formatter):
    def format(self, record):
        out = {
            "ts": time.strftime("%Y-%m-%dT%H:%M:%S", time.gmtime(record.created)),
            "level": record.levelname.lower(),
            "msg": record.getMessage(),
        }
        out.update(getattr(record, "fields", None) or {})
        return json.dumps(out, default=str)

def configure_logging(level: str | None = None, queue_log_file: str | None = None):
    logging.basicConfig(
        level=getattr(logging, (level or config.LOG_LEVEL), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    path = queue_log_file or config.QUEUE_LOG_FILE
    if path:
        fh = logging.FileHandler(path)
        fh.setFormatter(JsonLinesFormatter())
        logging.getLogger("jobs").addHandler(fh)

def build_handlers(store, rpc, horizon, limiter, monitor):
    async def fetch_events(payload):
        return await fetch_and_store_events(store, rpc, payload.get("start_ledger"))

    async def comprehensive(payload):
        return await collect_comprehensive(store, rpc, horizon, limiter, payload.get("start_ledger"),
                                           monitor=monitor)

    async def contract_operations(payload):
        return await collect_contract_operations(store, rpc, horizon, limiter, payload.get("contract_ids"),
                                                 payload.get("include_failed", True), monitor=monitor)

    return {
        FETCH_EVENTS: fetch_events,
        FETCH_COMPREHENSIVE: comprehensive,
        FETCH_CONTRACT_OPERATIONS: contract_operations,
    }

async def schedule_loop(queue: IngestQueue, interval_s: float | None = None):
    """Keep one event cycle in flight: enqueue only when nothing is pending or running."""
    interval_s = config.INGEST_INTERVAL_S if interval_s is None else interval_s
    while True:
        if not queue.busy:
            queue.enqueue_fetch_events()
        await asyncio.sleep(interval_s)

async def main():
    configure_logging()

    rpc = SorobanRpc()
    horizon = HorizonClient()
    store = Store.open()
    seed_contracts(store.conn)

    latest = await rpc.get_latest_ledger()
    log.info(f"Connected to Soroban rpc ({config.STELLAR_NETWORK}), latest ledger={latest}")
    if not config.CONTRACT_IDS:
        log.warning("[main] no contract ids configured; event jobs will fail until CONTRACT_IDS is set")

    limiter = RateLimiter()
    monitor = PerformanceMonitor()
    queue = IngestQueue(build_handlers(store, rpc, horizon, limiter, monitor))
    queue.start()

    tasks = [schedule_loop(queue)]
    if config.MCP_ENABLED:
        mcp = build_mcp(queue, store, rpc)
        tasks.append(mcp.run_async(transport="http", host=config.MCP_HOST, port=config.MCP_PORT))

    try:
        await asyncio.gather(*tasks)
    finally:
        await queue.stop()
        await horizon.close()
        await rpc.close()
        store.close()

if __name__ == "__main__":
    uvloop.run(main())
