from __future__ import annotations

from typing import Callable

import pytest

from crowdlore.effects import EffectVector
from crowdlore.scenario import Option, Scenario
from crowdlore.store import MemoryStore

T0 = 1_700_000_000.0


class FakeClock:
    def __init__(self, now: float = T0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class MidpointRandom:
    """uniform(a, b) が常に中央値を返す乱数源（揺らぎもノイズもゼロになる）。"""

    def uniform(self, a: float, b: float) -> float:
        return (a + b) / 2


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def store(clock: FakeClock) -> MemoryStore:
    return MemoryStore(clock=clock)


@pytest.fixture()
def midpoint_rng() -> MidpointRandom:
    return MidpointRandom()


@pytest.fixture()
def make_scenario(clock: FakeClock) -> Callable[..., Scenario]:
    """最小限のシナリオを作る。effects は option id -> 効果の辞書。"""

    def _make(
        scenario_id: str = "d-001",
        effects: dict[str, dict[str, int]] | None = None,
        *,
        expires_in: float = 3600,
    ) -> Scenario:
        effects = effects or {
            "a": {"stability": 2},
            "b": {"curiosity": 1},
            "c": {"survival": 1},
        }
        texts = {"a": "Rebuild the bridge", "b": "To explore the caves", "c": "The river ferry"}
        options = [
            Option(
                id=oid,
                text=texts.get(oid, f"Option {oid}"),
                description=f"Description of {oid}.",
                effects=EffectVector.from_mapping(e),
            )
            for oid, e in effects.items()
        ]
        return Scenario(
            id=scenario_id,
            title="The Flooded Bridge",
            scenario="Spring rain has washed out the only bridge.",
            theme="survival",
            options=options,
            created_at=clock.now,
            expires_at=clock.now + expires_in,
        )

    return _make
