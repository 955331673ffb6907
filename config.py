"""
Central configuration for the thread/lock simulation.
Tune these values to change how often runs fail, how often races and
deadlocks surface, and how long simulated work takes.
"""
from __future__ import annotations
from dataclasses import dataclass
from typing import List, Sequence

# --- Shared resources ---
LOCK_NAMES = ["shared_data_A", "shared_buffer_B", "critical_section_C"]

# Payloads containing this token are treated as wanting locks by the
# deadlock heuristic.
LOCK_KEYWORD = "acquireLock"

# --- Timing (simulated milliseconds) ---
RUN_DELAY_RANGE_MS = (1000.0, 2000.0)
RUN_STAGGER_MS = 200.0

# Real seconds between clock advances when the dashboard drives the engine.
TICK_INTERVAL = 0.25

# --- Hazards ---
RACE_PROBABILITY = 0.25
RACE_YIELD_FACTOR = 0.3
DEADLOCK_PROBABILITY_PER_THREAD = 0.1

# --- Defaults for externally supplied limits ---
DEFAULT_MAX_THREADS = 2
DEFAULT_MAX_MEMORY = 64.0

# Completed outcomes kept for the dashboard.
OUTCOME_HISTORY = 200


class ConfigError(ValueError):
    pass


@dataclass
class Limits:
    """
    Values owned by the surrounding economy and folded into the engine.

    They may change at any time. Shrinking them never evicts threads, it only
    blocks new creations and runs.
    """
    max_threads: int = DEFAULT_MAX_THREADS
    max_memory: float = DEFAULT_MAX_MEMORY
    layer_buff_multiplier: float = 1.0
    global_tick_multiplier: float = 1.0

    def validate(self) -> "Limits":
        if self.max_threads < 1:
            raise ConfigError(f"max_threads must be >= 1, got {self.max_threads}")
        if self.max_memory < 0:
            raise ConfigError(f"max_memory must be >= 0, got {self.max_memory}")
        if self.layer_buff_multiplier < 0 or self.global_tick_multiplier < 0:
            raise ConfigError("multipliers must be >= 0")
        return self


def validate_lock_names(names: Sequence[str]) -> List[str]:
    names = list(names)
    if not names:
        raise ConfigError("at least one lock name is required")
    if len(set(names)) != len(names):
        raise ConfigError(f"duplicate lock names: {names}")
    return names
