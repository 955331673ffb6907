import random
from typing import Callable, List, Optional

from config import DEADLOCK_PROBABILITY_PER_THREAD, LOCK_KEYWORD
from core import Logger, LockTable, SimThread, ThreadRegistry, ThreadStatus

# ----------------------------- Heuristic ----------------------------------
def threads_wanting_locks(running: List[SimThread], lock_count: int) -> List[SimThread]:
    return [t for t in running if LOCK_KEYWORD in t.payload and len(t.held_locks) < lock_count]

def detect_deadlock(registry: ThreadRegistry, locks: LockTable, rng: random.Random) -> bool:
    """
    Probabilistic check for apparent mutual blocking.

    Not a wait-for graph search. When at least two threads are running, some
    lock is held, and every running thread still asks for a lock it does not
    have, report a deadlock with probability 0.1 per contending thread. The
    random draw happens only in that last case.
    """
    running = registry.running()
    if len(running) < 2 or not locks.any_held():
        return False
    wanting = threads_wanting_locks(running, len(locks.lock_names))
    if len(wanting) == len(running) and len(wanting) > 1:
        return rng.random() < DEADLOCK_PROBABILITY_PER_THREAD * len(wanting)
    return False

# ----------------------------- Monitor ------------------------------------
class DeadlockMonitor:
    """
    Owns the global deadlock flag.

    The flag is re-evaluated after every command while clear. Once raised it
    stays raised, blocking new runs, until resolve() is called.
    """
    def __init__(self, registry: ThreadRegistry, locks: LockTable, rng: random.Random,
                 logger: Logger, on_deadlock: Optional[Callable[[dict], None]] = None):
        self.registry = registry
        self.locks = locks
        self.rng = rng
        self.logger = logger
        self.on_deadlock = on_deadlock
        self.detected = False
        self.total_detected = 0
        self.total_resolved = 0
        self.last_info: Optional[dict] = None

    def refresh(self) -> bool:
        if self.detected:
            return True
        if detect_deadlock(self.registry, self.locks, self.rng):
            self.detected = True
            self.total_detected += 1
            self.last_info = self.explain()
            nodes = ",".join(str(t) for t in self.last_info["threads"])
            self.logger.log("ERROR", "DEADLOCK_DETECTED", details=f"threads={nodes}")
            if self.on_deadlock:
                self.on_deadlock(self.last_info)
        return self.detected

    def explain(self) -> dict:
        running = self.registry.running()
        wanting = threads_wanting_locks(running, len(self.locks.lock_names))
        return {
            "threads": [t.id for t in wanting],
            "holders": {name: tid for name, tid in self.locks.holders.items()},
            "details": [
                {"thread": t.id, "holds": list(t.held_locks),
                 "missing": [n for n in self.locks.lock_names if n not in t.held_locks]}
                for t in wanting
            ],
        }

    def resolve(self) -> int:
        """Force contending threads back to idle and empty the lock table."""
        affected = 0
        for t in self.registry:
            if t.status is ThreadStatus.RUNNING or t.held_locks:
                t.status = ThreadStatus.IDLE
                t.last_output = "Thread reset due to deadlock resolution. Locks released."
                t.held_locks.clear()
                affected += 1
        self.locks.clear()
        if self.detected:
            self.total_resolved += 1
        self.detected = False
        self.last_info = None
        self.logger.log("ERROR", "RESOLUTION", details=f"threads_reset={affected}", force=True)
        return affected
