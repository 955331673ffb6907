from __future__ import annotations
import heapq, itertools, math, random, threading, time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

from config import (Limits, RACE_PROBABILITY, RACE_YIELD_FACTOR, RUN_DELAY_RANGE_MS, RUN_STAGGER_MS,
                    TICK_INTERVAL)
from core import Logger, LockTable, ThreadRegistry, ThreadStatus
from costs import evaluate

# ----------------------------- Simulated time -----------------------------
class TaskQueue:
    """
    Deferred callbacks on a simulated millisecond clock.

    Tasks run in due-time order, ties broken by scheduling order. Nothing
    runs until the clock is advanced, so tests control time exactly.
    """
    def __init__(self):
        self.now_ms = 0.0
        self._heap: List[Tuple[float, int, Callable[..., Any], tuple]] = []
        self._seq = itertools.count()

    @property
    def pending(self) -> int:
        return len(self._heap)

    def next_due(self) -> Optional[float]:
        return self._heap[0][0] if self._heap else None

    def schedule(self, delay_ms: float, fn: Callable[..., Any], *args) -> float:
        due = self.now_ms + max(0.0, delay_ms)
        heapq.heappush(self._heap, (due, next(self._seq), fn, args))
        return due

    def advance(self, ms: float) -> int:
        target = self.now_ms + max(0.0, ms)
        ran = 0
        while self._heap and self._heap[0][0] <= target:
            due, _, fn, args = heapq.heappop(self._heap)
            self.now_ms = due
            fn(*args)
            ran += 1
        self.now_ms = target
        return ran

    def run_all(self) -> int:
        ran = 0
        while self._heap:
            ran += self.advance(self._heap[0][0] - self.now_ms)
        return ran

class Ticker(threading.Thread):
    """Advances a clock by real elapsed time, for live dashboards."""
    def __init__(self, advance: Callable[[float], Any], interval: float = TICK_INTERVAL):
        super().__init__(daemon=True)
        self.advance = advance
        self.interval = interval
        self.running = True

    def run(self):
        last = time.monotonic()
        while self.running:
            time.sleep(self.interval)
            now = time.monotonic()
            self.advance((now - last) * 1000.0)
            last = now

# ----------------------------- Execution ----------------------------------
@dataclass(frozen=True)
class RunOutcome:
    thread_id: int
    success: bool
    yield_amount: int
    race_condition: bool
    entropy_delta: float
    complexity: float

class ExecutionScheduler:
    """
    Drives threads idle -> running -> idle | error.

    A run is started synchronously and completed by a task on the queue after
    a randomized delay. The completion re-checks the thread and discards its
    result when the thread was removed, reset or restarted in the meantime.
    """
    def __init__(self, registry: ThreadRegistry, locks: LockTable, tasks: TaskQueue,
                 limits: Callable[[], Limits], rng: random.Random, logger: Logger,
                 deadlocked: Callable[[], bool],
                 emit: Optional[Callable[[RunOutcome], None]] = None,
                 on_change: Optional[Callable[[], None]] = None):
        self.registry = registry
        self.locks = locks
        self.tasks = tasks
        self.limits = limits
        self.rng = rng
        self.logger = logger
        self.deadlocked = deadlocked
        self.emit = emit
        self.on_change = on_change
        self._tokens = itertools.count(1)
        self._active: Dict[int, int] = {}

    def _reject(self, thread, message: str) -> bool:
        thread.status = ThreadStatus.ERROR
        thread.last_output = message
        self.logger.log("WARN", "REJECT", thread.id, details=message)
        return False

    def start(self, tid: int) -> bool:
        thread = self.registry.get(tid)
        if thread is None or thread.status is not ThreadStatus.IDLE:
            return False
        total, cap = self.registry.total_cost(), self.limits().max_memory
        if total > cap:
            return self._reject(
                thread, f"ERROR: Total thread memory ({total:.1f} CU) exceeds capacity ({cap:.0f} CU).")
        if self.deadlocked():
            return self._reject(thread, "ERROR: Deadlock detected! Resolve deadlock or manage locks.")

        thread.status = ThreadStatus.RUNNING
        thread.last_yield = 0
        thread.last_output = "// Executing thread..."
        token = next(self._tokens)
        self._active[tid] = token
        delay = self.rng.uniform(*RUN_DELAY_RANGE_MS)
        self.tasks.schedule(delay, self._complete, tid, token, thread.payload, len(thread.held_locks))
        self.logger.log("INFO", "START", tid, details=f"delay_ms={delay:.0f}")
        return True

    def _complete(self, tid: int, token: int, payload: str, locks_at_start: int):
        thread = self.registry.get(tid)
        if thread is None or thread.status is not ThreadStatus.RUNNING or self._active.get(tid) != token:
            if self._active.get(tid) == token:
                del self._active[tid]
            self.logger.log("INFO", "DISCARD", tid, details="thread changed while run was pending")
            return
        del self._active[tid]

        limits = self.limits()
        result = evaluate(payload, thread.layer, self.rng,
                          limits.layer_buff_multiplier, limits.global_tick_multiplier)
        others_running = any(t.id != tid for t in self.registry.running())
        race = locks_at_start == 0 and others_running and self.rng.random() < RACE_PROBABILITY

        amount = result.yield_amount
        held = ", ".join(thread.held_locks) or "none"
        if result.success and not race:
            thread.status = ThreadStatus.IDLE
            thread.last_output = (f"SUCCESS: Thread {tid} completed. Generated {amount} Ticks.\n"
                                  f"Locks held: {held}\nStatus: Idle.")
            self.logger.log("INFO", "COMPLETE", tid, details=f"yield={amount}")
        elif race:
            amount = math.floor(result.yield_amount * RACE_YIELD_FACTOR)
            thread.status = ThreadStatus.ERROR
            thread.last_output = (f"ERROR: Race condition detected in Thread {tid} execution!\n"
                                  f"Reduced Ticks: {amount}. Consider using locks for shared resources.")
            self.logger.log("ERROR", "RACE", tid, details=f"yield={amount}")
        else:
            thread.status = ThreadStatus.ERROR
            thread.last_output = (f"ERROR: Thread {tid} execution failed.\n"
                                  f"Generated only {amount} Ticks. Review code or resource conflicts.")
            self.logger.log("ERROR", "FAIL", tid, details=f"yield={amount}")
        thread.last_yield = amount
        thread.runs += 1

        outcome = RunOutcome(tid, result.success and not race, amount, race,
                             result.entropy_delta, result.complexity)
        if self.emit:
            self.emit(outcome)
        if self.on_change:
            self.on_change()

    def _staged_start(self, tid: int):
        self.start(tid)
        if self.on_change:
            self.on_change()

    def run_all_idle(self) -> int:
        idle = self.registry.idle()
        if not idle or self.deadlocked() or self.registry.over_memory():
            self.logger.log("WARN", "REJECT", details=f"run all refused (idle={len(idle)})")
            return 0
        for index, thread in enumerate(idle):
            self.tasks.schedule(index * RUN_STAGGER_MS, self._staged_start, thread.id)
        return len(idle)

    def reset(self, tid: int) -> bool:
        thread = self.registry.get(tid)
        if thread is None or thread.status is not ThreadStatus.ERROR:
            return False
        self.locks.release_all(tid)
        thread.held_locks.clear()
        thread.status = ThreadStatus.IDLE
        thread.last_yield = 0
        thread.last_output = f"// Thread {tid} reset from error state. Ready."
        self.logger.log("INFO", "RESET", tid)
        return True
