"""Injectable randomness.

Every roll in the engine (condition, success, critical, event table) goes
through a ``RandomSource``. ``random.Random`` satisfies it; tests and replays
can pass ``ScriptedRandom`` instead.
"""

from __future__ import annotations

import hashlib
import json
import random
from collections.abc import Iterable, Sequence
from typing import Any, Protocol, TypeVar

T = TypeVar("T")


class RandomSource(Protocol):
    def random(self) -> float: ...

    def choice(self, seq: Sequence[T]) -> T: ...


def sprint_seed(seed: int, *stream: Any) -> int:
    """Fold a user seed and a stream label into one 32-bit seed.

    The built-in ``hash()`` is salted per process, so the label goes through
    SHA-256 instead and a seeded run replays on any machine.
    """
    if not stream:
        return seed
    key = json.dumps([seed, *stream], separators=(",", ":"), default=str)
    digest = hashlib.sha256(f"kitchen-sprint:{key}".encode()).digest()
    return int.from_bytes(digest[:4], "big")


def make_rng(seed: int | None = None, *stream: Any) -> random.Random:
    """Seeded generator for one stream of the run; unseeded when ``seed`` is None."""
    if seed is None:
        return random.Random()
    return random.Random(sprint_seed(seed, *stream))


class ScriptedRandom:
    """Replays a fixed sequence of draws.

    ``random()`` pops the next value; ``choice()`` consumes one value too and
    maps it onto the sequence index the way ``int(r * len(seq))`` would.
    Running out of values raises, so a test notices an unexpected roll.
    """

    def __init__(self, values: Iterable[float]):
        self._values = list(values)
        self._pos = 0

    def random(self) -> float:
        if self._pos >= len(self._values):
            raise IndexError(f"ScriptedRandom exhausted after {self._pos} draws")
        value = self._values[self._pos]
        self._pos += 1
        return value

    def choice(self, seq: Sequence[T]) -> T:
        if not seq:
            raise IndexError("Cannot choose from an empty sequence")
        idx = min(int(self.random() * len(seq)), len(seq) - 1)
        return seq[idx]

    @property
    def draws(self) -> int:
        return self._pos

    @property
    def remaining(self) -> int:
        return len(self._values) - self._pos
