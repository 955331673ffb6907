"""Execution scheduler and simulated clock"""
import time

from config import TICK_INTERVAL
from core import ThreadStatus
from scheduler import TaskQueue, Ticker

PAYLOAD = "x" * 100  # complexity 4.0: success yield 39, failure yield 3


def test_task_queue_orders_by_due_then_fifo():
    q = TaskQueue()
    seen = []
    q.schedule(20, seen.append, "late")
    q.schedule(10, seen.append, "first")
    q.schedule(10, seen.append, "second")
    assert q.advance(9) == 0
    assert q.advance(1) == 2
    assert seen == ["first", "second"]
    assert q.now_ms == 10
    q.run_all()
    assert seen == ["first", "second", "late"]
    assert q.pending == 0


def test_task_queue_runs_tasks_scheduled_inside_window():
    q = TaskQueue()
    seen = []
    q.schedule(5, lambda: q.schedule(5, seen.append, q.now_ms))
    q.advance(10)
    assert seen == [5]
    assert q.next_due() is None


def test_ticker_uses_configured_interval():
    assert Ticker(lambda ms: None).interval == TICK_INTERVAL


def test_ticker_advances_by_real_time():
    advanced = []
    ticker = Ticker(advanced.append, interval=0.01)
    ticker.start()
    time.sleep(0.1)
    ticker.running = False
    ticker.join(1)
    assert advanced
    assert all(ms > 0 for ms in advanced)


def test_successful_run(make_sim, scripted):
    rng = scripted(randoms=[0.5], uniforms=[1200])
    sim = make_sim(rng)
    outcomes = []
    sim.subscribe(outcomes.append)
    t = sim.create_thread(PAYLOAD)
    t.last_yield = 7

    assert sim.start_thread(t.id)
    assert t.status is ThreadStatus.RUNNING
    assert t.last_yield == 0
    assert "Executing" in t.last_output

    sim.advance(1199)
    assert t.status is ThreadStatus.RUNNING
    sim.advance(1)
    assert t.status is ThreadStatus.IDLE
    assert t.last_yield == 39
    assert t.last_output.startswith("SUCCESS")
    assert [(o.success, o.yield_amount, o.race_condition) for o in outcomes] == [(True, 39, False)]
    assert rng.exhausted()


def test_failed_run_needs_reset(make_sim, scripted):
    rng = scripted(randoms=[0.95, 0.5], uniforms=[1000, 1000])
    sim = make_sim(rng)
    t = sim.create_thread(PAYLOAD)
    sim.start_thread(t.id)
    sim.advance(1000)
    assert t.status is ThreadStatus.ERROR
    assert t.last_yield == 3

    assert not sim.start_thread(t.id)
    assert sim.reset_thread(t.id)
    assert t.status is ThreadStatus.IDLE
    assert t.last_yield == 0
    assert not sim.reset_thread(t.id)  # only from error

    assert sim.start_thread(t.id)
    sim.run_until_idle()
    assert t.status is ThreadStatus.IDLE
    assert rng.exhausted()


def test_start_over_memory_fails_without_delay(make_sim, scripted):
    sim = make_sim(scripted(), max_memory=30.0)
    t = sim.create_thread(PAYLOAD)  # 20 CU
    sim.update_limits(max_memory=10.0)

    assert not sim.start_thread(t.id)
    assert t.status is ThreadStatus.ERROR
    assert "exceeds capacity" in t.last_output
    assert sim.tasks.pending == 0
    # shrinking the limit does not evict
    assert sim.registry.get(t.id) is t


def test_race_condition_downgrades_success(make_sim, scripted):
    # success draw, race coin (0.1 < 0.25), then thread 2's success draw
    rng = scripted(randoms=[0.5, 0.1, 0.5], uniforms=[1000, 1500])
    sim = make_sim(rng)
    outcomes = []
    sim.subscribe(outcomes.append)
    t1 = sim.create_thread(PAYLOAD)
    t2 = sim.create_thread(PAYLOAD)
    sim.start_thread(t1.id)
    sim.start_thread(t2.id)

    sim.advance(1000)
    assert t1.status is ThreadStatus.ERROR
    assert t1.last_yield == 11  # floor(0.3 * 39)
    assert "Race condition" in t1.last_output

    # thread 2 finishes alone, so no race coin is drawn for it
    sim.advance(500)
    assert t2.status is ThreadStatus.IDLE
    assert t2.last_yield == 39
    assert [o.race_condition for o in outcomes] == [True, False]
    assert sim.races == 1
    assert rng.exhausted()


def test_no_race_when_thread_holds_a_lock(make_sim, scripted):
    rng = scripted(randoms=[0.5, 0.5], uniforms=[1000, 1500])
    sim = make_sim(rng)
    t1 = sim.create_thread(PAYLOAD)
    t2 = sim.create_thread(PAYLOAD)
    assert sim.acquire_lock(t1.id, "A")
    sim.start_thread(t1.id)
    sim.start_thread(t2.id)
    sim.run_until_idle()
    assert t1.status is ThreadStatus.IDLE and t1.last_yield == 39
    assert t2.status is ThreadStatus.IDLE
    assert rng.exhausted()


def test_running_thread_is_locked_against_commands(make_sim, scripted):
    sim = make_sim(scripted(uniforms=[1000]))
    t = sim.create_thread(PAYLOAD)
    sim.start_thread(t.id)
    assert not sim.remove_thread(t.id)
    assert not sim.update_payload(t.id, "changed")
    assert not sim.acquire_lock(t.id, "A")
    assert not sim.start_thread(t.id)
    assert sim.registry.get(t.id) is t
    assert t.status is ThreadStatus.RUNNING
    assert t.payload == PAYLOAD


def test_completion_for_removed_thread_is_discarded(make_sim, scripted):
    rng = scripted(uniforms=[1000])
    sim = make_sim(rng)
    outcomes = []
    sim.subscribe(outcomes.append)
    t = sim.create_thread(PAYLOAD)
    sim.start_thread(t.id)
    sim.resolve_deadlock()  # forces it back to idle
    assert sim.remove_thread(t.id)

    sim.advance(2000)
    assert sim.registry.get(t.id) is None
    assert len(sim.registry) == 0
    assert outcomes == []
    assert sim.logger.events("DISCARD")
    assert sim.scheduler._active == {}
    assert rng.exhausted()


def test_stale_completion_after_restart_is_discarded(make_sim, scripted):
    rng = scripted(randoms=[0.5], uniforms=[1000, 1500])
    sim = make_sim(rng)
    t = sim.create_thread(PAYLOAD)
    sim.start_thread(t.id)
    sim.resolve_deadlock()
    sim.start_thread(t.id)

    sim.advance(1000)
    assert t.status is ThreadStatus.RUNNING
    # the stale run must not drop the live run's token
    assert t.id in sim.scheduler._active
    sim.advance(500)
    assert t.status is ThreadStatus.IDLE
    assert t.runs == 1
    assert sim.scheduler._active == {}
    assert rng.exhausted()


def test_run_all_idle_staggers_starts(make_sim, scripted):
    sim = make_sim(scripted(uniforms=[1000, 1000, 1000]), max_threads=4)
    threads = [sim.create_thread(PAYLOAD) for _ in range(3)]
    threads[2].status = ThreadStatus.ERROR
    extra = sim.create_thread(PAYLOAD)

    assert sim.run_all_idle() == 3
    assert all(t.status is not ThreadStatus.RUNNING for t in threads)
    sim.advance(0)
    assert threads[0].status is ThreadStatus.RUNNING
    assert threads[1].status is ThreadStatus.IDLE
    sim.advance(200)
    assert threads[1].status is ThreadStatus.RUNNING
    assert extra.status is ThreadStatus.IDLE
    sim.advance(200)
    assert extra.status is ThreadStatus.RUNNING
    assert threads[2].status is ThreadStatus.ERROR


def test_run_all_idle_refused_over_memory(make_sim, scripted):
    sim = make_sim(scripted(), max_memory=30.0)
    sim.create_thread(PAYLOAD)
    sim.update_limits(max_memory=5.0)
    assert sim.run_all_idle() == 0
    assert sim.tasks.pending == 0


def test_run_all_idle_refused_without_idle_threads(make_sim):
    sim = make_sim()
    assert sim.run_all_idle() == 0
