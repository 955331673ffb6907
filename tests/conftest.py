from collections import deque

import pytest

from config import Limits
from simulation import Simulation


class ScriptedRandom:
    """Stands in for random.Random, replaying fixed draws.

    Any draw beyond the script fails the test, so each test also pins down
    exactly how many draws the engine makes.
    """

    def __init__(self, randoms=(), uniforms=()):
        self.randoms = deque(randoms)
        self.uniforms = deque(uniforms)

    def random(self):
        assert self.randoms, "unexpected random() draw"
        return self.randoms.popleft()

    def uniform(self, a, b):
        assert self.uniforms, "unexpected uniform() draw"
        value = self.uniforms.popleft()
        assert a <= value <= b
        return value

    def exhausted(self):
        return not self.randoms and not self.uniforms


@pytest.fixture
def scripted():
    return ScriptedRandom


@pytest.fixture
def make_sim():
    def _make(rng=None, max_threads=2, max_memory=200.0, locks=("A", "B", "C"), **limits):
        return Simulation(
            limits=Limits(max_threads=max_threads, max_memory=max_memory, **limits),
            lock_names=locks,
            rng=rng if rng is not None else ScriptedRandom(),
        )
    return _make
