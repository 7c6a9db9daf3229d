"""効果ベクトル: 選択肢が世界の4軸に与える変化量。

4軸は常に存在する（未指定は0）。値は [-3, +3] の整数。
"""

from __future__ import annotations

from dataclasses import dataclass

from crowdlore.errors import ValidationError

AXES: tuple[str, ...] = ("stability", "curiosity", "survival", "reputation")

EFFECT_MIN = -3
EFFECT_MAX = 3


def _check_value(axis: str, value: object) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"effect '{axis}' must be an integer, got {value!r}")
    if not EFFECT_MIN <= value <= EFFECT_MAX:
        raise ValidationError(f"effect '{axis}' out of range [{EFFECT_MIN}, {EFFECT_MAX}]: {value}")
    return value


@dataclass
class EffectVector:
    stability: int = 0
    curiosity: int = 0
    survival: int = 0
    reputation: int = 0

    def __post_init__(self) -> None:
        for axis in AXES:
            _check_value(axis, getattr(self, axis))

    @classmethod
    def from_mapping(cls, data: dict | None) -> "EffectVector":
        data = data or {}
        unknown = set(data) - set(AXES)
        if unknown:
            raise ValidationError(f"unknown effect axes: {', '.join(sorted(unknown))}")
        return cls(**{axis: data[axis] for axis in AXES if data.get(axis) is not None})

    def get(self, axis: str) -> int:
        return getattr(self, axis)

    def set(self, axis: str, value: int) -> None:
        if axis not in AXES:
            raise ValidationError(f"unknown effect axis: {axis}")
        setattr(self, axis, _check_value(axis, value))

    def items(self) -> list[tuple[str, int]]:
        return [(axis, getattr(self, axis)) for axis in AXES]

    def magnitude(self) -> int:
        """全軸の絶対値の合計（リスク項・インパクトに使う）。"""
        return sum(abs(v) for _, v in self.items())

    def as_dict(self, *, skip_zero: bool = False) -> dict[str, int]:
        return {axis: v for axis, v in self.items() if not (skip_zero and v == 0)}

    def copy(self) -> "EffectVector":
        return EffectVector(**self.as_dict())
