"""config: crowdlore の動作設定。

設定ファイル: `crowdlore.toml`（デフォルト）。無ければ全てデフォルト値。

```toml
[balance]
voter_count = 100
monotony_threshold = 0.7
min_balance_score = 0.6
max_attempts = 3

[voting]
eligible_users = 250
fanout_workers = 8
close_claim_ttl = 600
streak_gap_days = 2

[system]
store_path = ".crowdlore/store.db"
log_level = "INFO"

[[archetypes]]
name = "Conservative"
risk_tolerance = 0.2
weight = 1.0
[archetypes.preferences]
stability = 0.8
curiosity = -0.2
survival = 0.6
reputation = 0.4
```
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

try:
    import tomllib
except ModuleNotFoundError:  # Python < 3.11
    import tomli as tomllib  # type: ignore[no-redef]

from crowdlore.electorate import DEFAULT_ARCHETYPES, VoterArchetype, validate_archetypes


@dataclass
class BalanceConfig:
    voter_count: int = 100
    monotony_threshold: float = 0.7  # 70% 以上の独占で単調とみなす
    min_balance_score: float = 0.6
    max_attempts: int = 3  # シミュレーション回数の上限（調整は max_attempts - 1 回まで）
    preference_jitter: float = 0.2
    risk_jitter: float = 0.1
    choice_noise: float = 0.25
    archetypes: tuple[VoterArchetype, ...] = DEFAULT_ARCHETYPES


@dataclass
class VotingConfig:
    eligible_users: int = 100
    recent_window: int = 30
    impact_weight: float = 0.1
    fanout_workers: int = 8
    close_claim_ttl: float = 600.0  # 締め処理が落ちたときに枠が自然に外れるまでの秒数
    streak_gap_days: int = 2  # これより長く空くと連続投票日数をリセット


@dataclass
class CrowdLoreConfig:
    balance: BalanceConfig = field(default_factory=BalanceConfig)
    voting: VotingConfig = field(default_factory=VotingConfig)

    store_path: str = ".crowdlore/store.db"
    log_level: str = "INFO"


def _parse_archetypes(raw: list[dict]) -> tuple[VoterArchetype, ...]:
    archetypes = tuple(
        VoterArchetype(
            name=str(a.get("name", f"archetype{idx}")),
            preferences={k: float(v) for k, v in (a.get("preferences", {}) or {}).items()},
            risk_tolerance=float(a.get("risk_tolerance", 0.5)),
            weight=float(a.get("weight", 0.0)),
        )
        for idx, a in enumerate(raw, start=1)
    )
    validate_archetypes(archetypes)
    return archetypes


def load_config(path: Path | None = None) -> CrowdLoreConfig:
    if path is None:
        path = Path("crowdlore.toml")
    if not path.exists():
        return CrowdLoreConfig()

    raw = tomllib.loads(path.read_text(encoding="utf-8"))

    balance = raw.get("balance", {})
    voting = raw.get("voting", {})
    system = raw.get("system", {})

    archetypes = DEFAULT_ARCHETYPES
    if raw.get("archetypes"):
        archetypes = _parse_archetypes(list(raw["archetypes"]))

    return CrowdLoreConfig(
        balance=BalanceConfig(
            voter_count=int(balance.get("voter_count", 100)),
            monotony_threshold=float(balance.get("monotony_threshold", 0.7)),
            min_balance_score=float(balance.get("min_balance_score", 0.6)),
            max_attempts=max(1, int(balance.get("max_attempts", 3))),
            preference_jitter=float(balance.get("preference_jitter", 0.2)),
            risk_jitter=float(balance.get("risk_jitter", 0.1)),
            choice_noise=float(balance.get("choice_noise", 0.25)),
            archetypes=archetypes,
        ),
        voting=VotingConfig(
            eligible_users=int(voting.get("eligible_users", 100)),
            recent_window=int(voting.get("recent_window", 30)),
            impact_weight=float(voting.get("impact_weight", 0.1)),
            fanout_workers=max(1, int(voting.get("fanout_workers", 8))),
            close_claim_ttl=float(voting.get("close_claim_ttl", 600.0)),
            streak_gap_days=int(voting.get("streak_gap_days", 2)),
        ),
        store_path=str(system.get("store_path", ".crowdlore/store.db")),
        log_level=str(system.get("log_level", "INFO")),
    )
