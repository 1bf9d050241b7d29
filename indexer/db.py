import sqlite3, time, logging
from contextlib import contextmanager
from typing import Dict, Any, Iterable

import config
from errors import StoreError
from helpers import ledger_of, to_int, to_json, from_json

log = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS meta (
    k TEXT PRIMARY KEY,
    v TEXT
);

-- watched contracts (seeded from contracts.json)
CREATE TABLE IF NOT EXISTS contracts (
    address TEXT PRIMARY KEY,
    name    TEXT,
    type    TEXT
);

CREATE TABLE IF NOT EXISTS transactions (
    hash               TEXT PRIMARY KEY,
    ledger             INTEGER,
    status             TEXT,
    application_order  INTEGER,
    fee_bump           INTEGER,
    envelope_xdr       TEXT,          -- opaque
    result_xdr         TEXT,          -- opaque
    result_meta_xdr    TEXT,          -- opaque
    created_at         TEXT,
    raw                TEXT
);
CREATE INDEX IF NOT EXISTS idx_tx_ledger ON transactions(ledger);

CREATE TABLE IF NOT EXISTS events (
    event_id                    TEXT PRIMARY KEY,
    ledger                      INTEGER NOT NULL,
    ledger_closed_at            TEXT,
    contract_id                 TEXT,
    event_type                  TEXT,
    event_data                  TEXT,
    paging_token                TEXT,
    in_successful_contract_call INTEGER,
    tx_hash                     TEXT,
    enriched_transaction        TEXT,
    ingested_at                 INTEGER NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_events_ledger ON events(ledger);
CREATE INDEX IF NOT EXISTS idx_events_contract ON events(contract_id);
CREATE INDEX IF NOT EXISTS idx_events_tx ON events(tx_hash);

CREATE TABLE IF NOT EXISTS operations (
    id               TEXT PRIMARY KEY,
    transaction_hash TEXT,
    contract_id      TEXT,
    type             TEXT,
    source_account   TEXT,
    successful       INTEGER,
    created_at       TEXT,
    raw              TEXT
);
CREATE INDEX IF NOT EXISTS idx_ops_tx ON operations(transaction_hash);

CREATE TABLE IF NOT EXISTS effects (
    id               TEXT PRIMARY KEY,
    operation_id     TEXT,
    transaction_hash TEXT,
    account          TEXT,
    type             TEXT,
    created_at       TEXT,
    raw              TEXT
);
CREATE INDEX IF NOT EXISTS idx_effects_op ON effects(operation_id);

CREATE TABLE IF NOT EXISTS accounts (
    account_id       TEXT PRIMARY KEY,
    sequence         TEXT,
    last_modified    TEXT,
    raw              TEXT
);

CREATE TABLE IF NOT EXISTS payments (
    id               TEXT PRIMARY KEY,
    transaction_hash TEXT,
    type             TEXT,
    "from"           TEXT,
    "to"             TEXT,
    asset_type       TEXT,
    asset_code       TEXT,
    asset_issuer     TEXT,
    amount           TEXT,
    created_at       TEXT,
    raw              TEXT
);
CREATE INDEX IF NOT EXISTS idx_payments_from ON payments("from");
CREATE INDEX IF NOT EXISTS idx_payments_to ON payments("to");
"""

COUNTABLE = ("events", "transactions", "operations", "effects", "accounts", "payments", "contracts")

def db(path: str | None = None):
    conn = sqlite3.connect(path or config.DB_PATH, isolation_level=None, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute("PRAGMA synchronous=NORMAL;")
    conn.execute("PRAGMA temp_store=MEMORY;")
    return conn

def ensure_schema(conn: sqlite3.Connection):
    conn.executescript(SCHEMA)
    conn.execute(f"INSERT OR IGNORE INTO meta(k, v) VALUES('{config.CURSOR_KEY}','0');")

def get_meta(conn, key, default):
    row = conn.execute("SELECT v FROM meta WHERE k=?", (key,)).fetchone()
    return row[0] if row else default

def set_meta(conn, key, value):
    conn.execute("INSERT INTO meta(k,v) VALUES(?,?) ON CONFLICT(k) DO UPDATE SET v=excluded.v;", (key, value))

def seed_contracts(conn, contracts: list[dict] | None = None):
    for c in (config.CONTRACTS if contracts is None else contracts):
        addr = (c.get("address") or "").strip()
        if not addr:
            continue
        conn.execute("""
            INSERT INTO contracts(address, name, type)
            VALUES(?,?,?)
            ON CONFLICT(address) DO UPDATE SET name=excluded.name, type=excluded.type
        """, (addr, c.get("name") or addr, c.get("type") or "unknown"))

# ---------- row shaping ----------
def event_row(ev: Dict[str, Any], tx: Dict[str, Any] | None) -> tuple:
    data = ev.get("data")
    if data is None:
        data = {
            "topic": ev.get("topic"),
            "value": ev.get("value"),
            "pagingToken": ev.get("pagingToken"),
            "inSuccessfulContractCall": ev.get("inSuccessfulContractCall"),
        }
    in_ok = ev.get("inSuccessfulContractCall")
    return (
        ev["id"],
        ledger_of(ev),
        ev.get("ledgerClosedAt"),
        ev.get("contractId") or "",
        ev.get("type") or "unknown",
        to_json(data),
        ev.get("pagingToken"),
        None if in_ok is None else int(bool(in_ok)),
        ev.get("txHash"),
        to_json(tx),
        int(time.time()),
    )

def transaction_row(tx_hash: str, tx: Dict[str, Any], ledger: int) -> tuple:
    return (
        tx.get("txHash") or tx.get("hash") or tx_hash,
        to_int(tx.get("ledger"), ledger),
        tx.get("status"),
        tx.get("applicationOrder"),
        None if tx.get("feeBump") is None else int(bool(tx.get("feeBump"))),
        tx.get("envelopeXdr"),
        tx.get("resultXdr"),
        tx.get("resultMetaXdr"),
        str(tx["createdAt"]) if tx.get("createdAt") is not None else None,
        to_json(tx),
    )

def _event_dict(row: sqlite3.Row) -> Dict[str, Any]:
    out = {k: row[k] for k in row.keys()}
    out["event_data"] = from_json(out.get("event_data"))
    out["enriched_transaction"] = from_json(out.get("enriched_transaction"))
    return out


class Store:
    """SQLite-backed record + metadata store.

    Methods are coroutines so callers treat every read/write as a suspension
    point; the connection itself is used synchronously, as the indexer does.
    """

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn
        self._columns: Dict[str, set] = {}

    @classmethod
    def open(cls, path: str | None = None) -> "Store":
        conn = db(path)
        ensure_schema(conn)
        return cls(conn)

    def close(self):
        self.conn.close()

    @contextmanager
    def _tx(self):
        try:
            self.conn.execute("BEGIN")
            yield self.conn
            self.conn.execute("COMMIT")
        except sqlite3.Error as e:
            if self.conn.in_transaction:
                self.conn.execute("ROLLBACK")
            raise StoreError(f"sqlite write failed: {e}") from e
        except BaseException:
            if self.conn.in_transaction:
                self.conn.execute("ROLLBACK")
            raise

    # ---------- cursor ----------
    async def get_cursor(self, key: str = config.CURSOR_KEY) -> int:
        return to_int(get_meta(self.conn, key, "0"), 0)

    async def set_cursor(self, key: str, value: int) -> int:
        """Persist `value` unless it would move the cursor backwards. Returns the stored value."""
        current = await self.get_cursor(key)
        if value <= current:
            if value < current:
                log.warning(f"[cursor] refusing to regress {key} from {current} to {value}")
            return current
        set_meta(self.conn, key, str(int(value)))
        log.info(f"[cursor] {key} -> {value}")
        return int(value)

    # ---------- events ----------
    async def upsert_event(self, ev: Dict[str, Any], tx: Dict[str, Any] | None = None):
        await self.upsert_events([(ev, tx)])

    async def upsert_events(self, items: Iterable[tuple]) -> int:
        """Write one fetched page: transactions first, then the events that reference them."""
        items = list(items)
        if not items:
            return 0
        with self._tx() as conn:
            for ev, tx in items:
                if tx and ev.get("txHash"):
                    conn.execute("""
                        INSERT INTO transactions(hash, ledger, status, application_order, fee_bump,
                            envelope_xdr, result_xdr, result_meta_xdr, created_at, raw)
                        VALUES (?,?,?,?,?,?,?,?,?,?)
                        ON CONFLICT(hash) DO UPDATE SET
                            ledger=excluded.ledger, status=excluded.status,
                            application_order=excluded.application_order, fee_bump=excluded.fee_bump,
                            envelope_xdr=excluded.envelope_xdr, result_xdr=excluded.result_xdr,
                            result_meta_xdr=excluded.result_meta_xdr, created_at=excluded.created_at,
                            raw=excluded.raw
                    """, transaction_row(ev["txHash"], tx, ledger_of(ev)))
                conn.execute("""
                    INSERT INTO events(event_id, ledger, ledger_closed_at, contract_id, event_type,
                        event_data, paging_token, in_successful_contract_call, tx_hash,
                        enriched_transaction, ingested_at)
                    VALUES (?,?,?,?,?,?,?,?,?,?,?)
                    ON CONFLICT(event_id) DO UPDATE SET
                        ledger=excluded.ledger, ledger_closed_at=excluded.ledger_closed_at,
                        contract_id=excluded.contract_id, event_type=excluded.event_type,
                        event_data=excluded.event_data, paging_token=excluded.paging_token,
                        in_successful_contract_call=excluded.in_successful_contract_call,
                        tx_hash=excluded.tx_hash,
                        enriched_transaction=COALESCE(excluded.enriched_transaction, events.enriched_transaction),
                        ingested_at=excluded.ingested_at
                """, event_row(ev, tx))
        log.info(f"[store] stored {len(items)} event-transaction pairs")
        return len(items)

    async def find_recent_events(self, limit: int = 100) -> list[Dict[str, Any]]:
        rows = self.conn.execute("""
            SELECT * FROM events ORDER BY ledger DESC, event_id DESC LIMIT ?
        """, (max(1, int(limit)),)).fetchall()
        return [_event_dict(r) for r in rows]

    async def get_event(self, event_id: str) -> Dict[str, Any] | None:
        row = self.conn.execute("SELECT * FROM events WHERE event_id=?", (event_id,)).fetchone()
        return _event_dict(row) if row else None

    async def count_where(self, table: str = "events", where: Dict[str, Any] | None = None) -> int:
        if table not in COUNTABLE:
            raise StoreError(f"unknown table {table!r}")
        where = where or {}
        cols = self._table_columns(table)
        bad = [k for k in where if k not in cols]
        if bad:
            raise StoreError(f"unknown column(s) for {table}: {', '.join(bad)}")
        clause = " AND ".join(f'"{k}"=?' for k in where)
        sql = f"SELECT COUNT(*) FROM {table}" + (f" WHERE {clause}" if clause else "")
        return self.conn.execute(sql, tuple(where.values())).fetchone()[0]

    def _table_columns(self, table: str) -> set:
        if table not in self._columns:
            self._columns[table] = {r[1] for r in self.conn.execute(f"PRAGMA table_info({table})")}
        return self._columns[table]

    # ---------- derived records ----------
    async def upsert_transaction(self, tx_hash: str, tx: Dict[str, Any]) -> int:
        return await self.upsert_transactions([(tx_hash, tx)])

    async def upsert_transactions(self, txs: list[tuple[str, Dict[str, Any]]]) -> int:
        if not txs:
            return 0
        with self._tx() as conn:
            for tx_hash, tx in txs:
                conn.execute("""
                    INSERT INTO transactions(hash, ledger, status, application_order, fee_bump,
                        envelope_xdr, result_xdr, result_meta_xdr, created_at, raw)
                    VALUES (?,?,?,?,?,?,?,?,?,?)
                    ON CONFLICT(hash) DO UPDATE SET
                        ledger=excluded.ledger, status=excluded.status, raw=excluded.raw
                """, transaction_row(tx_hash, tx, 0))
        return len(txs)

    async def upsert_operations(self, ops: list[Dict[str, Any]], contract_id: str | None = None) -> int:
        if not ops:
            return 0
        with self._tx() as conn:
            for op in ops:
                conn.execute("""
                    INSERT INTO operations(id, transaction_hash, contract_id, type, source_account,
                        successful, created_at, raw)
                    VALUES (?,?,?,?,?,?,?,?)
                    ON CONFLICT(id) DO UPDATE SET
                        transaction_hash=excluded.transaction_hash,
                        contract_id=COALESCE(excluded.contract_id, operations.contract_id),
                        type=excluded.type, source_account=excluded.source_account,
                        successful=excluded.successful, created_at=excluded.created_at, raw=excluded.raw
                """, (
                    str(op["id"]),
                    op.get("transaction_hash"),
                    op.get("_contract_id") or contract_id,
                    op.get("type") or "invoke_host_function",
                    op.get("source_account") or "",
                    int(op.get("transaction_successful") is not False and op.get("successful") is not False),
                    op.get("created_at"),
                    to_json({k: v for k, v in op.items() if not k.startswith("_")}),
                ))
        return len(ops)

    async def upsert_effects(self, effects: list[Dict[str, Any]]) -> int:
        if not effects:
            return 0
        with self._tx() as conn:
            for eff in effects:
                conn.execute("""
                    INSERT INTO effects(id, operation_id, transaction_hash, account, type, created_at, raw)
                    VALUES (?,?,?,?,?,?,?)
                    ON CONFLICT(id) DO UPDATE SET raw=excluded.raw, type=excluded.type
                """, (
                    str(eff["id"]),
                    eff.get("operation_id") or _operation_id_from_effect(eff),
                    eff.get("transaction_hash"),
                    eff.get("account"),
                    eff.get("type"),
                    eff.get("created_at"),
                    to_json(eff),
                ))
        return len(effects)

    async def upsert_accounts(self, accounts: list[Dict[str, Any]]) -> int:
        if not accounts:
            return 0
        with self._tx() as conn:
            for acc in accounts:
                conn.execute("""
                    INSERT INTO accounts(account_id, sequence, last_modified, raw)
                    VALUES (?,?,?,?)
                    ON CONFLICT(account_id) DO UPDATE SET
                        sequence=excluded.sequence, last_modified=excluded.last_modified, raw=excluded.raw
                """, (
                    acc.get("account_id") or acc.get("id"),
                    None if acc.get("sequence") is None else str(acc["sequence"]),
                    acc.get("last_modified_time"),
                    to_json(acc),
                ))
        return len(accounts)

    async def upsert_payments(self, payments: list[Dict[str, Any]]) -> int:
        if not payments:
            return 0
        with self._tx() as conn:
            for p in payments:
                conn.execute("""
                    INSERT INTO payments(id, transaction_hash, type, "from", "to", asset_type,
                        asset_code, asset_issuer, amount, created_at, raw)
                    VALUES (?,?,?,?,?,?,?,?,?,?,?)
                    ON CONFLICT(id) DO UPDATE SET raw=excluded.raw, amount=excluded.amount
                """, (
                    str(p["id"]),
                    p.get("transaction_hash"),
                    p.get("type"),
                    p.get("from") or p.get("funder") or p.get("source_account"),
                    p.get("to") or p.get("account"),
                    p.get("asset_type"),
                    p.get("asset_code"),
                    p.get("asset_issuer"),
                    p.get("amount") or p.get("starting_balance"),
                    p.get("created_at"),
                    to_json(p),
                ))
        return len(payments)


def _operation_id_from_effect(eff: Dict[str, Any]) -> str | None:
    # effect paging tokens look like "<operation paging token>-<n>"
    token = eff.get("paging_token") or ""
    return token.rsplit("-", 1)[0] if "-" in token else None
