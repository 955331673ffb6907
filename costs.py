from __future__ import annotations
import math
import random
from dataclasses import dataclass
from enum import Enum
from typing import Dict

# ----------------------------- Layers & rates -----------------------------
class Layer(str, Enum):
    ASSEMBLY = "assembly"
    HIGH_LEVEL = "highLevel"
    CONCURRENCY = "concurrency"

LOW_LEVEL_COST_PER_CHAR = 0.1
HIGH_LEVEL_COST_PER_CHAR = 0.2

COST_PER_CHAR: Dict[Layer, float] = {
    Layer.ASSEMBLY: LOW_LEVEL_COST_PER_CHAR,
    Layer.HIGH_LEVEL: HIGH_LEVEL_COST_PER_CHAR,
    Layer.CONCURRENCY: HIGH_LEVEL_COST_PER_CHAR,
}

# Terser low-level code counts as denser, hence the smaller divisor.
COMPLEXITY_DIVISOR: Dict[Layer, float] = {
    Layer.ASSEMBLY: 50.0,
    Layer.HIGH_LEVEL: 25.0,
    Layer.CONCURRENCY: 25.0,
}

LAYER_YIELD_MULTIPLIER: Dict[Layer, float] = {
    Layer.ASSEMBLY: 1.5,
    Layer.HIGH_LEVEL: 2.5,
    Layer.CONCURRENCY: 3.0,
}

BASE_SUCCESS_CHANCE = 0.95
MIN_SUCCESS_CHANCE = 0.1

# ----------------------------- Pure functions -----------------------------
def cost(payload: str, layer: Layer) -> float:
    return len(payload) * COST_PER_CHAR[Layer(layer)]

def complexity(payload: str, layer: Layer) -> float:
    return len(payload) / COMPLEXITY_DIVISOR[Layer(layer)]

def success_probability(cx: float) -> float:
    return max(MIN_SUCCESS_CHANCE, BASE_SUCCESS_CHANCE - cx * 0.02)

def yield_on_success(cx: float, layer_multiplier: float, buff_multiplier: float = 1.0,
                     global_multiplier: float = 1.0) -> int:
    return math.floor((5 + cx * 2) * layer_multiplier * buff_multiplier * global_multiplier)

def yield_on_failure(cx: float, buff_multiplier: float = 1.0) -> int:
    return math.floor((1 + cx * 0.5) * buff_multiplier)

def entropy_delta(cx: float, success: bool) -> float:
    return cx * (0.05 if success else 0.25)

# ----------------------------- Evaluation ---------------------------------
@dataclass(frozen=True)
class Evaluation:
    success: bool
    yield_amount: int
    complexity: float
    entropy_delta: float

def evaluate(payload: str, layer: Layer, rng: random.Random, buff_multiplier: float = 1.0,
             global_multiplier: float = 1.0) -> Evaluation:
    """
    Run one simulated execution of `payload`.

    This is the only place that draws randomness for the outcome: a single
    `rng.random()` compared against the success probability. Everything else
    follows deterministically from the payload and the multipliers.
    """
    layer = Layer(layer)
    cx = complexity(payload, layer)
    success = rng.random() < success_probability(cx)
    if success:
        amount = yield_on_success(cx, LAYER_YIELD_MULTIPLIER[layer], buff_multiplier, global_multiplier)
    else:
        amount = yield_on_failure(cx, buff_multiplier)
    return Evaluation(success, amount, cx, entropy_delta(cx, success))
