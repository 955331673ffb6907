from __future__ import annotations
import time, threading, queue
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, Iterable, Iterator, List, Optional, Union
import networkx as nx

from config import Limits, LOCK_NAMES, validate_lock_names
from costs import Layer, cost

FREE = "free"

# ----------------------------- Event log ----------------------------------
@dataclass
class LogRecord:
    level: str
    event: str
    tid: Optional[int] = None
    res: Optional[str] = None
    details: Optional[str] = None
    ts: float = field(default_factory=time.time)  # timestamp at creation

    def as_dict(self):
        return {
            "time": time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(self.ts)),
            "level": self.level,
            "event": self.event,
            "tid": self.tid,
            "res": self.res,
            "details": self.details,
        }

class Logger:
    """
    Thread-safe event log with buffering and pause/resume.

    Keeps a queue for live consumers and a buffer for history, both capped
    at max_buffer_size with the oldest records dropped first.
    While paused, records are dropped unless logged with force=True.
    """

    def __init__(self, max_buffer_size: Optional[int] = None):
        self.q: queue.Queue[LogRecord] = queue.Queue(maxsize=max_buffer_size or 0)
        self.buffer: List[LogRecord] = []
        self.lock = threading.Lock()
        self.max_buffer_size = max_buffer_size  # None = unbounded
        self.enabled = True

    def pause(self):
        self.enabled = False

    def resume(self):
        self.enabled = True

    def log(self, level: str, event: str, tid: Optional[int] = None, res: Optional[str] = None,
            details: Optional[str] = None, *, force: bool = False):
        if not self.enabled and not force:
            return
        rec = LogRecord(level, event, tid, res, details)
        with self.lock:
            try:
                self.q.put_nowait(rec)
            except queue.Full:
                # Drop the oldest unread record
                self.q.get_nowait()
                self.q.put_nowait(rec)
            self.buffer.append(rec)
            if self.max_buffer_size and len(self.buffer) > self.max_buffer_size:
                self.buffer = self.buffer[-self.max_buffer_size:]

    def drain(self) -> List[LogRecord]:
        drained: List[LogRecord] = []
        while not self.q.empty():
            drained.append(self.q.get())
        return drained

    def events(self, event: Optional[str] = None, tid: Optional[int] = None) -> List[LogRecord]:
        with self.lock:
            items = list(self.buffer)
        return [r for r in items
                if (event is None or r.event == event) and (tid is None or r.tid == tid)]

# ----------------------------- Threads ------------------------------------
class ThreadStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    ERROR = "error"

def initial_thread_payload(tid: int) -> str:
    return (
        f"// Thread {tid}\n"
        f"acquireLock('shared_data_A');\n"
        f"processBatch({tid});\n"
        f"releaseLock('shared_data_A');\n"
    )

@dataclass
class SimThread:
    id: int
    payload: str
    status: ThreadStatus = ThreadStatus.IDLE
    last_output: str = ""
    last_yield: int = 0
    held_locks: List[str] = field(default_factory=list)
    layer: Layer = Layer.CONCURRENCY
    runs: int = 0

    @property
    def cost(self) -> float:
        return cost(self.payload, self.layer)

    def as_dict(self):
        return {
            "id": self.id,
            "status": self.status.value,
            "payload": self.payload,
            "output": self.last_output,
            "yield": self.last_yield,
            "locks": list(self.held_locks),
            "cost": round(self.cost, 2),
            "runs": self.runs,
        }

# ----------------------------- Lock table ---------------------------------
class LockTable:
    """
    Single-owner table of named locks.

    Not a real mutex: every mutation is expected to come from one logical
    thread of control, serialized by the owning Simulation.
    """
    def __init__(self, lock_names: Iterable[str] = LOCK_NAMES, logger: Optional[Logger] = None):
        self.lock_names: List[str] = validate_lock_names(lock_names)
        self.holders: Dict[str, int] = {}
        self.logger = logger or Logger()

    def acquire(self, lock: str, tid: int) -> bool:
        if lock not in self.lock_names:
            self.logger.log("WARN", "DENY", tid, lock, details="unknown lock")
            return False
        holder = self.holders.get(lock)
        if holder is not None:
            # No re-entrancy: a second acquire by the holder is refused too
            self.logger.log("WARN", "DENY", tid, lock, details=f"holder={holder}")
            return False
        self.holders[lock] = tid
        self.logger.log("INFO", "GRANT", tid, lock)
        return True

    def release(self, lock: str, tid: int) -> bool:
        if self.holders.get(lock) != tid:
            return False
        del self.holders[lock]
        self.logger.log("INFO", "RELEASE", tid, lock)
        return True

    def holder_of(self, lock: str) -> Union[int, str]:
        return self.holders.get(lock, FREE)

    def held_by(self, tid: int) -> List[str]:
        return [name for name in self.lock_names if self.holders.get(name) == tid]

    def release_all(self, tid: int) -> List[str]:
        released = self.held_by(tid)
        for name in released:
            self.release(name, tid)
        return released

    def clear(self):
        self.holders.clear()

    def any_held(self) -> bool:
        return bool(self.holders)

    def snapshot(self) -> Dict[str, Union[int, str]]:
        return {name: self.holder_of(name) for name in self.lock_names}

    def build_rag(self, threads: Iterable[SimThread]) -> nx.DiGraph:
        g = nx.DiGraph()
        for name in self.lock_names:
            g.add_node(name, kind="lock")
        for t in threads:
            g.add_node(f"T{t.id}", kind="thread", status=t.status.value)
        for name, tid in self.holders.items():
            g.add_edge(f"T{tid}", name, kind="holds")
        return g

# ----------------------------- Registry -----------------------------------
class ThreadRegistry:
    """
    Ordered collection of simulated threads bounded by the external limits.

    `limits` is read on every check so the economy can move the ceilings at
    any time. Lowered ceilings never evict existing threads.
    """
    def __init__(self, lock_table: LockTable, limits: Callable[[], Limits], logger: Optional[Logger] = None):
        self.lock_table = lock_table
        self.limits = limits
        self.logger = logger or lock_table.logger
        self.threads: List[SimThread] = []

    def __iter__(self) -> Iterator[SimThread]:
        return iter(self.threads)

    def __len__(self) -> int:
        return len(self.threads)

    def get(self, tid: int) -> Optional[SimThread]:
        return next((t for t in self.threads if t.id == tid), None)

    def next_id(self) -> int:
        return max((t.id for t in self.threads), default=0) + 1

    def total_cost(self) -> float:
        return sum(t.cost for t in self.threads)

    def running(self) -> List[SimThread]:
        return [t for t in self.threads if t.status is ThreadStatus.RUNNING]

    def idle(self) -> List[SimThread]:
        return [t for t in self.threads if t.status is ThreadStatus.IDLE]

    def over_memory(self) -> bool:
        return self.total_cost() > self.limits().max_memory

    def create(self, payload: Optional[str] = None) -> Optional[SimThread]:
        limits = self.limits()
        if len(self.threads) >= limits.max_threads:
            self.logger.log("WARN", "REJECT", details=f"thread cap reached ({limits.max_threads})")
            return None
        tid = self.next_id()
        thread = SimThread(tid, payload if payload is not None else initial_thread_payload(tid))
        projected = self.total_cost() + thread.cost
        if projected > limits.max_memory:
            self.logger.log("WARN", "REJECT", tid,
                            details=f"memory {projected:.1f} CU would exceed {limits.max_memory:.0f} CU")
            return None
        thread.last_output = f"// Thread {tid} ready. Edit code and run."
        self.threads.append(thread)
        self.logger.log("INFO", "CREATE", tid, details=f"cost={thread.cost:.1f}")
        return thread

    def remove(self, tid: int) -> bool:
        thread = self.get(tid)
        if thread is None:
            return False
        if thread.status is ThreadStatus.RUNNING:
            self.logger.log("WARN", "REJECT", tid, details="cannot remove a running thread")
            return False
        self.lock_table.release_all(tid)
        thread.held_locks.clear()
        self.threads.remove(thread)
        self.logger.log("INFO", "REMOVE", tid)
        return True

    def update_payload(self, tid: int, payload: str) -> bool:
        thread = self.get(tid)
        if thread is None or thread.status is ThreadStatus.RUNNING:
            return False
        thread.payload = payload
        self.logger.log("INFO", "EDIT", tid, details=f"cost={thread.cost:.1f}")
        return True
