"""Shared fakes for the indexer tests: in-memory store, scripted rpc/horizon, manual clock."""

import pytest

from db import Store, db, ensure_schema
from errors import RpcError


def make_event(event_id: str, ledger: int, tx_hash: str | None = None, contract_id: str = "CCONTRACT1"):
    return {
        "type": "contract",
        "id": event_id,
        "ledger": ledger,
        "ledgerClosedAt": "2025-01-01T00:00:00Z",
        "contractId": contract_id,
        "pagingToken": f"{event_id}-pt",
        "topic": ["AAAADwAAAAR0ZXN0"],
        "value": "AAAAAQ==",
        "inSuccessfulContractCall": True,
        "txHash": tx_hash if tx_hash is not None else f"tx-{event_id}",
    }


class FakeRpc:
    """Scripted Soroban rpc: pops pages in order, then serves `default_page` forever."""

    def __init__(self, latest=150, pages=None, default_page=None, page_fn=None, txs=None, fail_tx=()):
        self.latest = latest
        self.pages = list(pages or [])
        self.default_page = default_page if default_page is not None else {"events": []}
        self.page_fn = page_fn
        self.txs = dict(txs or {})
        self.fail_tx = set(fail_tx)
        self.event_calls = []
        self.tx_calls = []

    async def get_latest_ledger(self):
        if isinstance(self.latest, Exception):
            raise self.latest
        return self.latest

    async def get_events(self, contract_ids, *, start_ledger=None, cursor=None, limit=None):
        self.event_calls.append({"contract_ids": list(contract_ids), "start_ledger": start_ledger,
                                 "cursor": cursor, "limit": limit})
        if self.page_fn is not None:
            return self.page_fn(len(self.event_calls))
        if self.pages:
            return self.pages.pop(0)
        return dict(self.default_page)

    async def get_transaction(self, tx_hash):
        self.tx_calls.append(tx_hash)
        if tx_hash in self.fail_tx:
            raise RpcError(f"getTransaction {tx_hash} failed", code=-32603)
        return self.txs.get(tx_hash, {"status": "SUCCESS", "txHash": tx_hash, "ledger": 110,
                                      "applicationOrder": 1, "envelopeXdr": "AAAA"})

    async def get_health(self):
        return {"status": "healthy", "latestLedger": self.latest}


class FakeHorizon:
    def __init__(self, missing_accounts=(), failing_txs=()):
        self.missing_accounts = set(missing_accounts)
        self.failing_txs = set(failing_txs)
        self.calls = []
        self.account_ops = {}

    async def operations(self, *, for_transaction=None, for_account=None, cursor=None, limit=None,
                         include_failed=None):
        self.calls.append(("operations", for_transaction or for_account))
        if for_account is not None:
            return [dict(op) for op in self.account_ops.get(for_account, [])]
        if for_transaction in self.failing_txs:
            raise RpcError(f"horizon GET /transactions/{for_transaction}/operations -> 500", status=500)
        return [{"id": f"op-{for_transaction}", "transaction_hash": for_transaction,
                 "type": "invoke_host_function", "source_account": "GSOURCE",
                 "transaction_successful": True}]

    async def effects(self, *, for_operation=None, **kw):
        self.calls.append(("effects", for_operation))
        return [{"id": f"{for_operation}-1", "paging_token": f"{for_operation}-1",
                 "type": "contract_credited", "account": "GSOURCE"}]

    async def account(self, account_id):
        self.calls.append(("accounts", account_id))
        if account_id in self.missing_accounts:
            return None
        return {"id": account_id, "account_id": account_id, "sequence": "1"}

    async def payments(self, *, for_account=None, **kw):
        self.calls.append(("payments", for_account))
        return [{"id": f"pay-{for_account}", "type": "payment", "from": "GSOURCE", "to": for_account,
                 "asset_type": "native", "amount": "1.0"}]

    def count(self, kind):
        return sum(1 for k, _ in self.calls if k == kind)


class ManualClock:
    def __init__(self, start=1_000_000):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, ms):
        self.now += ms


@pytest.fixture
def store():
    conn = db(":memory:")
    ensure_schema(conn)
    s = Store(conn)
    yield s
    s.close()


@pytest.fixture
def clock():
    return ManualClock()
