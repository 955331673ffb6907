from __future__ import annotations
import random, threading
from collections import deque
from dataclasses import replace
from typing import Callable, Deque, Dict, Iterable, List, Optional, Union
import psutil

from config import Limits, LOCK_NAMES, OUTCOME_HISTORY, TICK_INTERVAL
from core import Logger, LockTable, SimThread, ThreadRegistry, ThreadStatus
from helpers import DeadlockMonitor
from scheduler import ExecutionScheduler, RunOutcome, TaskQueue, Ticker

# ----------------------------- Simulation -------------------------
class Simulation:
    """
    Coordinates the registry, lock table, scheduler and deadlock monitor.

    This is the only command surface. Every command is applied under one
    re-entrant lock so a live Ticker and a UI thread never interleave, and
    every command ends by refreshing the deadlock flag. Rejected commands
    return False or None and leave state untouched.
    """
    def __init__(self, limits: Optional[Limits] = None, lock_names: Iterable[str] = LOCK_NAMES,
                 rng: Optional[random.Random] = None, logger: Optional[Logger] = None):
        self.logger = logger or Logger()
        self.limits = (limits or Limits()).validate()
        self.rng = rng or random.Random()
        self.cv = threading.RLock()

        self.locks = LockTable(lock_names, self.logger)
        self.registry = ThreadRegistry(self.locks, lambda: self.limits, self.logger)
        self.tasks = TaskQueue()
        self.monitor = DeadlockMonitor(self.registry, self.locks, self.rng, self.logger)
        self.scheduler = ExecutionScheduler(
            self.registry, self.locks, self.tasks, lambda: self.limits, self.rng, self.logger,
            deadlocked=lambda: self.monitor.detected,
            emit=self._emit,
            on_change=self.monitor.refresh,
        )

        self.outcomes: Deque[RunOutcome] = deque(maxlen=OUTCOME_HISTORY)
        self._subscribers: List[Callable[[RunOutcome], None]] = []
        self.runs_completed = 0
        self.runs_failed = 0
        self.races = 0
        self.ticker: Optional[Ticker] = None

    # -------- Outcomes --------
    def subscribe(self, fn: Callable[[RunOutcome], None]):
        self._subscribers.append(fn)

    def _emit(self, outcome: RunOutcome):
        self.outcomes.append(outcome)
        if outcome.success:
            self.runs_completed += 1
        else:
            self.runs_failed += 1
        if outcome.race_condition:
            self.races += 1
        for fn in list(self._subscribers):
            try:
                fn(outcome)
            except Exception as exc:
                self.logger.log("ERROR", "SUBSCRIBER", outcome.thread_id, details=repr(exc))

    # -------- Registry commands --------
    def create_thread(self, payload: Optional[str] = None) -> Optional[SimThread]:
        with self.cv:
            thread = self.registry.create(payload)
            self.monitor.refresh()
            return thread

    def remove_thread(self, tid: int) -> bool:
        with self.cv:
            ok = self.registry.remove(tid)
            self.monitor.refresh()
            return ok

    def update_payload(self, tid: int, payload: str) -> bool:
        with self.cv:
            ok = self.registry.update_payload(tid, payload)
            self.monitor.refresh()
            return ok

    # -------- Lock commands --------
    def acquire_lock(self, tid: int, lock: str) -> bool:
        with self.cv:
            thread = self.registry.get(tid)
            if thread is None or thread.status is ThreadStatus.RUNNING:
                return False
            ok = self.locks.acquire(lock, tid)
            if ok:
                thread.held_locks.append(lock)
            self.monitor.refresh()
            return ok

    def release_lock(self, tid: int, lock: str) -> bool:
        with self.cv:
            thread = self.registry.get(tid)
            if thread is None or thread.status is ThreadStatus.RUNNING:
                return False
            ok = self.locks.release(lock, tid)
            if ok and lock in thread.held_locks:
                thread.held_locks.remove(lock)
            self.monitor.refresh()
            return ok

    def toggle_lock(self, tid: int, lock: str) -> bool:
        with self.cv:
            thread = self.registry.get(tid)
            if thread is not None and lock in thread.held_locks:
                return self.release_lock(tid, lock)
            return self.acquire_lock(tid, lock)

    # -------- Execution commands --------
    def start_thread(self, tid: int) -> bool:
        with self.cv:
            ok = self.scheduler.start(tid)
            self.monitor.refresh()
            return ok

    def run_all_idle(self) -> int:
        with self.cv:
            return self.scheduler.run_all_idle()

    def reset_thread(self, tid: int) -> bool:
        with self.cv:
            ok = self.scheduler.reset(tid)
            self.monitor.refresh()
            return ok

    def resolve_deadlock(self) -> int:
        with self.cv:
            return self.monitor.resolve()

    def update_limits(self, **changes) -> Limits:
        with self.cv:
            self.limits = replace(self.limits, **changes).validate()
            self.logger.log("INFO", "LIMITS", details=str(changes))
            return self.limits

    # -------- Time --------
    def advance(self, ms: float) -> int:
        with self.cv:
            return self.tasks.advance(ms)

    def run_until_idle(self) -> int:
        with self.cv:
            return self.tasks.run_all()

    def start_clock(self, interval: float = TICK_INTERVAL):
        if self.ticker and self.ticker.is_alive():
            return
        self.ticker = Ticker(self.advance, interval)
        self.ticker.start()
        self.logger.log("INFO", "CLOCK_START", details=f"interval={interval}")

    def stop_clock(self):
        if not self.ticker:
            return
        self.ticker.running = False
        self.ticker.join(self.ticker.interval + 1.0)
        self.ticker = None
        self.logger.log("INFO", "CLOCK_STOP")

    # -------- Outputs --------
    @property
    def deadlock_detected(self) -> bool:
        return self.monitor.detected

    def threads_snapshot(self) -> List[dict]:
        with self.cv:
            return [t.as_dict() for t in self.registry]

    def locks_snapshot(self) -> Dict[str, Union[int, str]]:
        with self.cv:
            return self.locks.snapshot()

    def metrics(self):
        p = psutil.Process()
        with self.cv:
            return {
                "cpu": p.cpu_percent(interval=None),
                "mem_mb": p.memory_info().rss / (1024*1024),
                "threads": len(self.registry),
                "threads_running": len(self.registry.running()),
                "max_threads": self.limits.max_threads,
                "total_cost": self.registry.total_cost(),
                "max_memory": self.limits.max_memory,
                "runs_completed": self.runs_completed,
                "runs_failed": self.runs_failed,
                "races": self.races,
                "deadlocks_total": self.monitor.total_detected,
                "deadlocks_resolved": self.monitor.total_resolved,
                "pending_tasks": self.tasks.pending,
            }
