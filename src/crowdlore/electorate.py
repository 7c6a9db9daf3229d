"""合成有権者モデル。

固定のアーキタイプ（性格テンプレート）から、揺らぎを加えた有権者集団を作る。
アーキタイプ表は設定データとして注入する（テストで差し替え可能）。
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Protocol

from crowdlore.effects import AXES
from crowdlore.errors import ValidationError
from crowdlore.rounding import round_half_up

DEFAULT_POPULATION = 100
PREFERENCE_JITTER = 0.2
RISK_JITTER = 0.1


class RandomSource(Protocol):
    """乱数源。`random.Random` をそのまま渡せる。"""

    def uniform(self, a: float, b: float) -> float: ...


@dataclass(frozen=True)
class VoterArchetype:
    name: str
    preferences: dict[str, float]
    risk_tolerance: float
    weight: float


@dataclass
class SimulatedVoter:
    archetype: str
    preferences: dict[str, float] = field(default_factory=dict)
    risk_tolerance: float = 0.5


DEFAULT_ARCHETYPES: tuple[VoterArchetype, ...] = (
    VoterArchetype(
        name="Conservative",
        preferences={"stability": 0.8, "curiosity": -0.2, "survival": 0.6, "reputation": 0.4},
        risk_tolerance=0.2,
        weight=0.25,
    ),
    VoterArchetype(
        name="Explorer",
        preferences={"stability": -0.3, "curiosity": 0.9, "survival": 0.1, "reputation": 0.3},
        risk_tolerance=0.8,
        weight=0.2,
    ),
    VoterArchetype(
        name="Survivalist",
        preferences={"stability": 0.3, "curiosity": 0.1, "survival": 0.9, "reputation": -0.1},
        risk_tolerance=0.4,
        weight=0.15,
    ),
    VoterArchetype(
        name="Diplomat",
        preferences={"stability": 0.5, "curiosity": 0.2, "survival": 0.2, "reputation": 0.8},
        risk_tolerance=0.3,
        weight=0.15,
    ),
    VoterArchetype(
        name="Balanced",
        preferences={"stability": 0.1, "curiosity": 0.1, "survival": 0.1, "reputation": 0.1},
        risk_tolerance=0.5,
        weight=0.25,
    ),
)


def _clamp(value: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, value))


def validate_archetypes(archetypes: tuple[VoterArchetype, ...] | list[VoterArchetype]) -> None:
    if not archetypes:
        raise ValidationError("at least one voter archetype is required")
    for a in archetypes:
        missing = [axis for axis in AXES if axis not in a.preferences]
        if missing:
            raise ValidationError(f"archetype {a.name} misses preferences: {missing}")
        for axis, v in a.preferences.items():
            if axis not in AXES:
                raise ValidationError(f"archetype {a.name} has unknown axis: {axis}")
            if not -1.0 <= v <= 1.0:
                raise ValidationError(f"archetype {a.name} preference {axis} out of [-1, 1]: {v}")
        if not 0.0 <= a.risk_tolerance <= 1.0:
            raise ValidationError(f"archetype {a.name} risk tolerance out of [0, 1]")
        if a.weight < 0:
            raise ValidationError(f"archetype {a.name} has negative weight")
    total = sum(a.weight for a in archetypes)
    if abs(total - 1.0) > 1e-6:
        raise ValidationError(f"archetype weights must sum to 1.0, got {total:.4f}")


def generate_electorate(
    rng: RandomSource,
    *,
    archetypes: tuple[VoterArchetype, ...] | list[VoterArchetype] = DEFAULT_ARCHETYPES,
    population: int = DEFAULT_POPULATION,
    preference_jitter: float = PREFERENCE_JITTER,
    risk_jitter: float = RISK_JITTER,
) -> list[SimulatedVoter]:
    """アーキタイプごとに round(population * weight) 人を生成する。

    人数の丸めはアーキタイプ単位で独立に行うため、合計が population から
    少しずれることがある（補正しない）。
    """
    voters: list[SimulatedVoter] = []
    for a in archetypes:
        count = round_half_up(population * a.weight)
        for _ in range(count):
            prefs = {
                axis: _clamp(
                    a.preferences[axis] + rng.uniform(-preference_jitter, preference_jitter),
                    -1.0,
                    1.0,
                )
                for axis in AXES
            }
            risk = _clamp(a.risk_tolerance + rng.uniform(-risk_jitter, risk_jitter), 0.0, 1.0)
            voters.append(SimulatedVoter(archetype=a.name, preferences=prefs, risk_tolerance=risk))
    return voters
