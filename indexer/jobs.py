import asyncio, math, random, logging
from collections import defaultdict
from typing import Any, Awaitable, Callable, Dict, List, Optional

from pydantic import BaseModel, Field

import config
from errors import IndexerConfigError
from helpers import new_job_id, now_ms

log = logging.getLogger(__name__)

FETCH_EVENTS = "fetch-events"
FETCH_COMPREHENSIVE = "fetch-comprehensive-data"
FETCH_CONTRACT_OPERATIONS = "fetch-contract-operations"
JOB_TYPES = (FETCH_EVENTS, FETCH_COMPREHENSIVE, FETCH_CONTRACT_OPERATIONS)

Handler = Callable[[Dict[str, Any]], Awaitable[Any]]

class IngestJob(BaseModel):
    id: str
    type: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    attempts: int = 0
    max_attempts: int = 5
    next_run_at: int = 0

def _is_empty_result(job: IngestJob, result: Any) -> bool:
    if job.type != FETCH_EVENTS or result is None:
        return False
    fetched = getattr(result, "events_fetched", None)
    if fetched is None and isinstance(result, dict):
        fetched = result.get("events_fetched")
    return fetched == 0


class IngestQueue:
    """In-process retrying job queue. One job body runs at a time per instance.

    handlers maps a job type to `async fn(payload) -> result`.
    """

    def __init__(self, handlers: Dict[str, Handler], *, poll_interval: float | None = None,
                 base_backoff_ms: int | None = None, clock: Callable[[], int] | None = None,
                 jitter: Callable[[], float] | None = None):
        self.handlers = dict(handlers)
        self.poll_interval = config.QUEUE_POLL_INTERVAL_S if poll_interval is None else poll_interval
        self.base_backoff_ms = config.QUEUE_BASE_BACKOFF_MS if base_backoff_ms is None else base_backoff_ms
        self._clock = clock or now_ms
        self._jitter = jitter or (lambda: random.uniform(-0.2, 0.2))
        self._pending: List[IngestJob] = []
        self._listeners: Dict[str, List[Callable]] = defaultdict(list)
        self._processing = False
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._wake: Optional[asyncio.Event] = None

    # ---------- notifications ----------
    def on(self, name: str, callback: Callable[[Dict[str, Any]], None]):
        self._listeners[name].append(callback)

    def _emit(self, name: str, payload: Dict[str, Any]):
        for cb in list(self._listeners.get(name, ())):
            try:
                cb(payload)
            except Exception:
                log.exception(f"[queue] listener for {name} raised")

    # ---------- lifecycle ----------
    def start(self):
        if self._running:
            return
        self._running = True
        self._wake = asyncio.Event()
        self._task = asyncio.get_running_loop().create_task(self._run())
        self._emit("queue_started", {"poll_interval": self.poll_interval, "base_backoff_ms": self.base_backoff_ms})
        log.info(f"[queue] started (poll={self.poll_interval}s, base backoff={self.base_backoff_ms}ms)")

    async def stop(self):
        if not self._running:
            return
        self._running = False
        if self._wake is not None:
            self._wake.set()
        if self._task is not None:
            # lets an in-flight job finish
            await self._task
            self._task = None
        self._emit("queue_stopped", {})
        log.info("[queue] stopped")

    async def _run(self):
        while self._running:
            await self.tick()
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                pass

    # ---------- enqueue ----------
    def enqueue(self, job_type: str, payload: Optional[Dict[str, Any]] = None, *,
                max_attempts: int = 5, delay_ms: int = 0) -> str:
        if job_type not in self.handlers:
            raise IndexerConfigError(f"no handler registered for job type {job_type!r}")
        job = IngestJob(
            id=new_job_id(job_type),
            type=job_type,
            payload=dict(payload or {}),
            max_attempts=max(1, int(max_attempts)),
            next_run_at=self._clock() + max(0, int(delay_ms)),
        )
        self._pending.append(job)
        self._emit("enqueued", {"job": job})
        log.info(f"[queue] job enqueued {job.id}", extra={"fields": {"event": "enqueued", **job.model_dump()}})
        return job.id

    def enqueue_fetch_events(self, start_ledger: Optional[int] = None, *, max_attempts: int = 5,
                             delay_ms: int = 0) -> str:
        return self.enqueue(FETCH_EVENTS, {"start_ledger": start_ledger},
                            max_attempts=max_attempts, delay_ms=delay_ms)

    def enqueue_comprehensive_data(self, start_ledger: Optional[int] = None, *, max_attempts: int = 3,
                                   delay_ms: int = 0) -> str:
        return self.enqueue(FETCH_COMPREHENSIVE, {"start_ledger": start_ledger},
                            max_attempts=max_attempts, delay_ms=delay_ms)

    def enqueue_contract_operations(self, contract_ids: Optional[List[str]] = None, *,
                                    include_failed: bool = True, max_attempts: int = 5,
                                    delay_ms: int = 0) -> str:
        return self.enqueue(FETCH_CONTRACT_OPERATIONS,
                            {"contract_ids": contract_ids, "include_failed": include_failed},
                            max_attempts=max_attempts, delay_ms=delay_ms)

    # ---------- scheduling ----------
    def backoff_ms(self, n: int) -> int:
        base = self.base_backoff_ms
        raw = base * (2 ** n)
        return max(base, math.floor(raw * (1 + self._jitter())))

    def _requeue(self, job: IngestJob, backoff: int):
        job.next_run_at = self._clock() + backoff
        self._pending.append(job)

    async def tick(self) -> Optional[IngestJob]:
        """Run at most one due job. Returns the job that ran, if any."""
        if self._processing:
            return None
        now = self._clock()
        idx = next((i for i, j in enumerate(self._pending) if j.next_run_at <= now), None)
        if idx is None:
            return None

        job = self._pending.pop(idx)
        self._processing = True
        self._emit("started", {"job": job})
        log.info(f"[queue] job started {job.id} attempt={job.attempts}",
                 extra={"fields": {"event": "started", "id": job.id, "type": job.type, "attempts": job.attempts}})
        try:
            try:
                handler = self.handlers[job.type]
                result = await handler(job.payload)
            except Exception as e:
                self._on_failure(job, e)
                return job

            if _is_empty_result(job, result) and job.attempts + 1 < job.max_attempts:
                backoff = self.backoff_ms(job.attempts)
                job.attempts += 1
                self._requeue(job, backoff)
                self._emit("requeued", {"job": job, "backoff_ms": backoff, "result": result})
                log.info(f"[queue] no new data, job {job.id} requeued in {backoff}ms",
                         extra={"fields": {"event": "requeued", "id": job.id, "attempts": job.attempts,
                                           "backoff_ms": backoff}})
            else:
                self._emit("completed", {"job": job, "result": result})
                log.info(f"[queue] job completed {job.id}",
                         extra={"fields": {"event": "completed", "id": job.id, "type": job.type}})
            return job
        finally:
            self._processing = False

    def _on_failure(self, job: IngestJob, error: Exception):
        job.attempts += 1
        self._emit("failed", {"job": job, "error": str(error)})
        log.error(f"[queue] job failed {job.id}: {error}",
                  extra={"fields": {"event": "failed", "id": job.id, "attempts": job.attempts, "error": str(error)}})
        if job.attempts < job.max_attempts:
            backoff = self.backoff_ms(job.attempts - 1)
            self._requeue(job, backoff)
            self._emit("requeued", {"job": job, "backoff_ms": backoff})
            log.info(f"[queue] job {job.id} requeued after failure in {backoff}ms",
                     extra={"fields": {"event": "requeued", "id": job.id, "attempts": job.attempts,
                                       "backoff_ms": backoff}})
        else:
            self._emit("dead", {"job": job, "error": str(error)})
            log.error(f"[queue] job dead {job.id} after {job.attempts} attempts",
                      extra={"fields": {"event": "dead", "id": job.id, "attempts": job.attempts}})

    # ---------- introspection ----------
    def status(self) -> Dict[str, Any]:
        now = self._clock()
        upcoming = sorted(self._pending, key=lambda j: j.next_run_at)[:10]
        return {
            "size": len(self._pending),
            "running": self._running,
            "next_jobs": [
                {"id": j.id, "type": j.type, "next_run_in_ms": max(0, j.next_run_at - now), "attempts": j.attempts}
                for j in upcoming
            ],
        }

    @property
    def busy(self) -> bool:
        """True while a job body is running or any job is waiting."""
        return self._processing or bool(self._pending)

    def __len__(self):
        return len(self._pending)
