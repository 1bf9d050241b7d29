import asyncio

import pytest

from errors import IndexerConfigError
from indexer import FetchEventsResult
from jobs import IngestQueue, FETCH_EVENTS, FETCH_COMPREHENSIVE, FETCH_CONTRACT_OPERATIONS

NOTIFICATIONS = ("enqueued", "started", "completed", "requeued", "failed", "dead")


def _queue(handler, clock, jitter=0.0, **kw):
    handlers = {FETCH_EVENTS: handler, FETCH_COMPREHENSIVE: handler, FETCH_CONTRACT_OPERATIONS: handler}
    return IngestQueue(handlers, clock=clock, jitter=lambda: jitter, base_backoff_ms=5000, **kw)


def _record(queue):
    seen = []
    for name in NOTIFICATIONS:
        queue.on(name, lambda payload, name=name: seen.append(name))
    return seen


def test_backoff_bounds(clock):
    async def noop(payload):
        return None

    for jitter in (-0.2, 0.0, 0.2):
        q = _queue(noop, clock, jitter=jitter)
        for n in range(6):
            b = q.backoff_ms(n)
            assert 5000 <= b <= int(5000 * 2 ** n * 1.2)
    assert _queue(noop, clock, jitter=-0.2).backoff_ms(0) == 5000
    assert _queue(noop, clock, jitter=0.2).backoff_ms(2) == 24000
    assert _queue(noop, clock, jitter=-0.2).backoff_ms(2) == 16000


@pytest.mark.asyncio
async def test_empty_result_requeued_once_then_completes(clock):
    runs = []

    async def empty(payload):
        runs.append(payload)
        return FetchEventsResult(message="nothing", events_fetched=0)

    q = _queue(empty, clock)
    seen = _record(q)
    q.enqueue_fetch_events(max_attempts=2)

    first = await q.tick()
    assert first.attempts == 1
    assert len(q) == 1
    # not due until the backoff elapses
    assert await q.tick() is None

    clock.advance(5000)
    second = await q.tick()
    assert second.id == first.id
    assert len(q) == 0
    assert len(runs) == 2
    assert seen == ["enqueued", "started", "requeued", "started", "completed"]


@pytest.mark.asyncio
async def test_failures_dead_letter_after_max_attempts(clock):
    async def boom(payload):
        raise RuntimeError("rpc down")

    q = _queue(boom, clock)
    seen = _record(q)
    dead = []
    q.on("dead", dead.append)
    q.enqueue_fetch_events(max_attempts=3)

    for _ in range(3):
        job = await q.tick()
        assert job is not None
        clock.advance(60_000)

    assert seen[1:] == ["started", "failed", "requeued",
                        "started", "failed", "requeued",
                        "started", "failed", "dead"]
    assert len(dead) == 1
    assert dead[0]["job"].attempts == 3
    assert len(q) == 0
    assert await q.tick() is None


@pytest.mark.asyncio
async def test_failure_backoff_uses_previous_attempt_count(clock):
    async def boom(payload):
        raise RuntimeError("nope")

    q = _queue(boom, clock)
    backoffs = []
    q.on("requeued", lambda p: backoffs.append(p["backoff_ms"]))
    q.enqueue_fetch_events(max_attempts=3)

    await q.tick()
    clock.advance(5000)
    await q.tick()

    assert backoffs == [5000, 10000]


@pytest.mark.asyncio
async def test_non_empty_result_completes_without_retry(clock):
    async def ok(payload):
        return FetchEventsResult(message="ok", events_fetched=4)

    q = _queue(ok, clock)
    seen = _record(q)
    q.enqueue_fetch_events(start_ledger=7)
    await q.tick()
    assert seen == ["enqueued", "started", "completed"]
    assert len(q) == 0


@pytest.mark.asyncio
async def test_only_one_job_body_runs_at_a_time(clock):
    release = asyncio.Event()
    active = 0
    peak = 0

    async def slow(payload):
        nonlocal active, peak
        active += 1
        peak = max(peak, active)
        await release.wait()
        active -= 1
        return {"ok": True}

    q = _queue(slow, clock)
    q.enqueue(FETCH_COMPREHENSIVE, {})
    q.enqueue(FETCH_CONTRACT_OPERATIONS, {})

    running = asyncio.ensure_future(q.tick())
    await asyncio.sleep(0)
    assert await q.tick() is None

    release.set()
    await running
    await q.tick()
    assert peak == 1
    assert len(q) == 0


@pytest.mark.asyncio
async def test_busy_while_popped_job_is_running(clock):
    release = asyncio.Event()

    async def slow(payload):
        await release.wait()
        return {"ok": True}

    q = _queue(slow, clock)
    assert q.busy is False
    q.enqueue_fetch_events()

    running = asyncio.ensure_future(q.tick())
    await asyncio.sleep(0)
    assert len(q) == 0
    assert q.busy is True

    release.set()
    await running
    assert q.busy is False


def test_status_lists_next_jobs_in_due_order(clock):
    async def noop(payload):
        return None

    q = _queue(noop, clock)
    late = q.enqueue_fetch_events(delay_ms=3000)
    soon = q.enqueue_comprehensive_data(delay_ms=1000)

    st = q.status()
    assert st["size"] == 2
    assert st["running"] is False
    assert [j["id"] for j in st["next_jobs"]] == [soon, late]
    assert st["next_jobs"][0]["next_run_in_ms"] == 1000
    assert st["next_jobs"][0]["attempts"] == 0


def test_comprehensive_jobs_default_to_three_attempts(clock):
    async def noop(payload):
        return None

    q = _queue(noop, clock)
    q.enqueue_comprehensive_data()
    assert q._pending[0].max_attempts == 3
    assert q._pending[0].type == FETCH_COMPREHENSIVE
    assert q._pending[0].id.startswith("fetch-comprehensive-data-")


def test_unknown_job_type_rejected(clock):
    q = IngestQueue({}, clock=clock)
    with pytest.raises(IndexerConfigError):
        q.enqueue_fetch_events()


@pytest.mark.asyncio
async def test_listener_errors_do_not_break_the_queue(clock):
    async def ok(payload):
        return FetchEventsResult(message="ok", events_fetched=1)

    q = _queue(ok, clock)
    done = []

    def bad(payload):
        raise ValueError("listener bug")

    q.on("started", bad)
    q.on("completed", done.append)
    q.enqueue_fetch_events()
    await q.tick()
    assert len(done) == 1


@pytest.mark.asyncio
async def test_start_runs_jobs_and_stop_is_clean():
    finished = asyncio.Event()

    async def ok(payload):
        return FetchEventsResult(message="ok", events_fetched=1)

    q = IngestQueue({FETCH_EVENTS: ok}, poll_interval=0.01)
    lifecycle = []
    q.on("queue_started", lambda p: lifecycle.append("started"))
    q.on("queue_stopped", lambda p: lifecycle.append("stopped"))
    q.on("completed", lambda p: finished.set())

    q.start()
    assert q.status()["running"] is True
    q.enqueue_fetch_events()
    await asyncio.wait_for(finished.wait(), timeout=2.0)
    await q.stop()

    assert lifecycle == ["started", "stopped"]
    assert q.status()["running"] is False
