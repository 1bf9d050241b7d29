import json, time, uuid
from typing import Any, Iterable

# ---------------- helpers ----------------
def now_ms() -> int:
    return int(time.time() * 1000)

def to_int(x, default: int = 0) -> int:
    if x is None: return default
    if isinstance(x, bool): return int(x)
    if isinstance(x, int): return x
    s = str(x).strip()
    try:
        return int(s, 16) if s.startswith("0x") else int(s)
    except ValueError:
        return default

def ledger_of(ev: dict) -> int:
    # rpc returns ledger as int, older nodes as a decimal string
    return to_int(ev.get("ledger"), 0)

def to_json(x) -> str | None:
    if x is None: return None
    return json.dumps(x, sort_keys=True, default=str)

def from_json(s):
    if s is None: return None
    return json.loads(s)

def uniq(values: Iterable[Any]) -> list:
    """Distinct truthy values, first-seen order."""
    seen, out = set(), []
    for v in values:
        if not v or v in seen:
            continue
        seen.add(v)
        out.append(v)
    return out

def new_job_id(job_type: str) -> str:
    return f"{job_type}-{now_ms()}-{uuid.uuid4().hex[:10]}"
