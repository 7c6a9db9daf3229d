"""シナリオ（ジレンマ）定義と読み込み。

シナリオは常にちょうど3つの選択肢を持つ。形状チェックは
作成時・調整時・勝者決定時の各境界で `validate_scenario` を通す。

### シナリオTOML

```toml
id = "d-001"
title = "The Flooded Bridge"
scenario = "Spring rain has washed out the only bridge to the market town."
theme = "survival"
expires_in_hours = 24

[[options]]
id = "a"
text = "Rebuild the bridge"
description = "Stone by stone, with everyone helping."
pros = ["Trade resumes"]
cons = ["Months of labour"]
[options.effects]
stability = 2
survival = -1
```
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from pathlib import Path

try:
    import tomllib
except ModuleNotFoundError:  # Python < 3.11
    import tomli as tomllib  # type: ignore[no-redef]

from crowdlore.effects import EffectVector
from crowdlore.errors import ValidationError

OPTION_COUNT = 3

THEMES = (
    "exploration",
    "diplomacy",
    "humor",
    "discovery",
    "survival",
    "mystery",
    "community",
    "trade",
)


@dataclass
class Option:
    id: str
    text: str
    description: str = ""
    effects: EffectVector = field(default_factory=EffectVector)
    pros: list[str] = field(default_factory=list)
    cons: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "text": self.text,
            "description": self.description,
            "effects": self.effects.as_dict(),
            "pros": list(self.pros),
            "cons": list(self.cons),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Option":
        return cls(
            id=str(data.get("id", "")),
            text=str(data.get("text", "")),
            description=str(data.get("description", "")),
            effects=EffectVector.from_mapping(data.get("effects")),
            pros=[str(p) for p in data.get("pros", []) or []],
            cons=[str(c) for c in data.get("cons", []) or []],
        )


@dataclass
class Scenario:
    id: str
    title: str
    scenario: str
    theme: str
    options: list[Option]
    created_at: float = field(default_factory=lambda: time.time())
    expires_at: float = 0.0
    is_active: bool = True

    def option(self, option_id: str) -> Option | None:
        for o in self.options:
            if o.id == option_id:
                return o
        return None

    def option_ids(self) -> list[str]:
        return [o.id for o in self.options]

    def is_expired(self, now: float) -> bool:
        return now > self.expires_at

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "scenario": self.scenario,
            "theme": self.theme,
            "options": [o.to_dict() for o in self.options],
            "created_at": self.created_at,
            "expires_at": self.expires_at,
            "is_active": self.is_active,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Scenario":
        s = cls(
            id=str(data.get("id", "")),
            title=str(data.get("title", "")),
            scenario=str(data.get("scenario", "")),
            theme=str(data.get("theme", "")),
            options=[Option.from_dict(o) for o in data.get("options", []) or []],
            created_at=float(data.get("created_at", 0.0)),
            expires_at=float(data.get("expires_at", 0.0)),
            is_active=bool(data.get("is_active", True)),
        )
        validate_scenario(s)
        return s


def validate_scenario(s: Scenario, *, approved: bool = False) -> None:
    """シナリオの形状を検証する。不正なら ValidationError。

    approved=True のときは、公開前チェックとして効果ベクトルが
    完全一致する選択肢の組も拒否する。
    """
    if not s.id:
        raise ValidationError("scenario id is required")
    if len(s.options) != OPTION_COUNT:
        raise ValidationError(
            f"scenario {s.id} must have exactly {OPTION_COUNT} options, got {len(s.options)}"
        )

    ids = [o.id for o in s.options]
    if any(not i for i in ids):
        raise ValidationError(f"scenario {s.id} has an option without id")
    if len(set(ids)) != len(ids):
        raise ValidationError(f"scenario {s.id} has duplicate option ids: {ids}")

    if approved:
        seen: dict[tuple[int, ...], str] = {}
        for o in s.options:
            key = tuple(v for _, v in o.effects.items())
            if key in seen:
                raise ValidationError(
                    f"options {seen[key]} and {o.id} have identical effects {o.effects.as_dict()}"
                )
            seen[key] = o.id


def parse_scenario(raw: dict, *, now: float | None = None) -> Scenario:
    """TOML/JSON 由来の辞書から Scenario を組み立てる。"""
    now = time.time() if now is None else now

    theme = str(raw.get("theme", "community"))
    if theme not in THEMES:
        raise ValidationError(f"unknown theme: {theme}")

    if "expires_at" in raw:
        expires_at = float(raw["expires_at"])
    else:
        expires_at = now + float(raw.get("expires_in_hours", 24)) * 3600

    s = Scenario(
        id=str(raw.get("id", "")),
        title=str(raw.get("title", "")),
        scenario=str(raw.get("scenario", "")),
        theme=theme,
        options=[Option.from_dict(o) for o in raw.get("options", []) or []],
        created_at=now,
        expires_at=expires_at,
        is_active=True,
    )
    validate_scenario(s)
    return s


def load_scenario(path: Path, *, now: float | None = None) -> Scenario:
    raw = tomllib.loads(path.read_text(encoding="utf-8"))
    return parse_scenario(raw, now=now)
