import os, json, pathlib, logging
from dotenv import load_dotenv

# always load from local file
load_dotenv(".env")

log = logging.getLogger(__name__)

def _int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))

def _float(name: str, default: float) -> float:
    return float(os.getenv(name, str(default)))

def _csv(name: str) -> list[str]:
    return [x.strip() for x in (os.getenv(name) or "").split(",") if x.strip()]

# -------- network --------
STELLAR_NETWORK = (os.getenv("STELLAR_NETWORK") or "testnet").lower()

if STELLAR_NETWORK == "mainnet":
    _DEFAULT_RPC     = "https://rpc.lightsail.network"
    _DEFAULT_HORIZON = "https://horizon.stellar.org"
else:
    _DEFAULT_RPC     = "https://soroban-testnet.stellar.org"
    _DEFAULT_HORIZON = "https://horizon-testnet.stellar.org"

SOROBAN_RPC_URL      = os.getenv("SOROBAN_RPC_URL") or _DEFAULT_RPC
HORIZON_URL          = (os.getenv("HORIZON_URL") or _DEFAULT_HORIZON).rstrip("/")
RPC_TIMEOUT_S        = _float("RPC_TIMEOUT_S", 30.0)
HORIZON_TIMEOUT_S    = _float("HORIZON_TIMEOUT_S", 30.0)

# -------- storage --------
DB_PATH              = os.getenv("DB_PATH", "horizon_index.sqlite")
CURSOR_KEY           = "last_processed_ledger"

# -------- event loop --------
MAX_EVENTS_PER_FETCH      = _int("MAX_EVENTS_PER_FETCH", 100)
MAX_FETCH_ITERATIONS      = _int("MAX_FETCH_ITERATIONS", 1000)
STALE_CURSOR_REPEATS      = 3
LEDGER_HISTORY_LIMIT_DAYS = _int("LEDGER_HISTORY_LIMIT_DAYS", 7)
LEDGERS_PER_MINUTE        = 10   # ~6s close time
LOOKBACK_LEDGERS          = LEDGER_HISTORY_LIMIT_DAYS * 24 * 60 * LEDGERS_PER_MINUTE

# -------- queue --------
QUEUE_POLL_INTERVAL_S  = _float("QUEUE_POLL_INTERVAL_S", 1.0)
QUEUE_BASE_BACKOFF_MS  = _int("QUEUE_BASE_BACKOFF_MS", 5000)
INGEST_INTERVAL_S      = _float("INGEST_INTERVAL_S", 30.0)
QUEUE_LOG_FILE         = os.getenv("QUEUE_LOG_FILE")

# -------- comprehensive collector --------
MAX_OPERATIONS_PER_FETCH = _int("MAX_OPERATIONS_PER_FETCH", 200)
HORIZON_PAGE_LIMIT       = 200   # horizon hard cap
COLLECT_RECENT_EVENTS    = _int("COLLECT_RECENT_EVENTS", 1000)
COLLECT_TX_CAP           = _int("COLLECT_TX_CAP", 100)
COLLECT_OP_CAP           = _int("COLLECT_OP_CAP", 100)
COLLECT_ACCOUNT_CAP      = _int("COLLECT_ACCOUNT_CAP", 50)
COLLECT_PAYMENT_CAP      = _int("COLLECT_PAYMENT_CAP", 20)

# (max_calls, window_ms) per horizon resource
RATE_LIMITS = {
    "operations": (_int("RATE_OPERATIONS_PER_MIN", 50), 60_000),
    "effects":    (_int("RATE_EFFECTS_PER_MIN", 100), 60_000),
    "accounts":   (_int("RATE_ACCOUNTS_PER_MIN", 60), 60_000),
    "payments":   (_int("RATE_PAYMENTS_PER_MIN", 60), 60_000),
}

# -------- mcp surface --------
MCP_ENABLED = (os.getenv("MCP_ENABLED", "true").lower() != "false")
MCP_HOST    = os.getenv("MCP_HOST", "0.0.0.0")
MCP_PORT    = _int("MCP_PORT", 8000)

LOG_LEVEL   = os.getenv("LOG_LEVEL", "INFO").upper()

# contracts watchlist (optional)
CONTRACTS_PATH = os.getenv("CONTRACTS_PATH", "contracts.json")

def load_contracts(path: str = CONTRACTS_PATH) -> list[dict]:
    p = pathlib.Path(path)
    if not p.exists():
        log.info(f"[contracts] {path} not found; continuing without contract watchlist")
        return []
    try:
        data = json.loads(p.read_text())
    except ValueError as e:
        log.warning(f"[contracts] failed to parse {path}: {e}")
        return []
    return [c for c in data if isinstance(c, dict) and c.get("address")]

CONTRACTS = load_contracts()

def resolve_contract_ids(contracts: list[dict] | None = None) -> list[str]:
    """Env ids first, then watchlist addresses; order kept, duplicates dropped."""
    ids = _csv("CONTRACT_IDS") + [
        os.getenv("PROTOCOL_CONTRACT_ID") or "",
        os.getenv("AUTHORITY_CONTRACT_ID") or "",
    ]
    ids += [c["address"] for c in (CONTRACTS if contracts is None else contracts)]
    out: list[str] = []
    for cid in ids:
        cid = cid.strip()
        if cid and cid not in out:
            out.append(cid)
    return out

CONTRACT_IDS = resolve_contract_ids()
