"""公開前のバランス調整。

合成有権者でシナリオを試投票させ、1つの選択肢が票を独占しないか確認する。
偏っていれば効果ベクトルを少しずつ動かして再試行する（最大3ラウンド）。

流れ:
- generate_electorate → simulate_voting → score_balance
- 合格（score >= 0.6 かつ単調でない）なら終了
- 不合格なら adjust_balance で最多票/最少票の選択肢を調整して次ラウンド
- 最終ラウンドは調整後のシナリオを試投票し、結果に関わらず返す

I/O を持たない純粋な計算。乱数源は注入する。
"""

from __future__ import annotations

import logging
import math
import random
from dataclasses import dataclass, field

from crowdlore.config import BalanceConfig
from crowdlore.effects import EFFECT_MAX
from crowdlore.electorate import RandomSource, generate_electorate
from crowdlore.rounding import round_half_up
from crowdlore.scenario import Option, Scenario, validate_scenario
from crowdlore.simulate import simulate_voting

logger = logging.getLogger(__name__)

MONOTONY_PENALTY = 0.3
EXCELLENT_BALANCE = 0.8


@dataclass
class BalanceVerdict:
    score: float
    dominance_percentage: int
    is_monotonous: bool
    total_votes: int


@dataclass
class MonotonyCheck:
    is_monotonous: bool
    dominant_option: str | None
    dominance_percentage: int


@dataclass
class SimulationResult:
    option_votes: dict[str, int]
    winning_option: str
    dominance_percentage: int
    is_monotonous: bool
    balance_score: float


@dataclass
class BalanceResult:
    scenario: Scenario
    balance_score: float
    simulation: SimulationResult
    adjustments: list[str] = field(default_factory=list)
    attempts: int = 0
    accepted: bool = False


@dataclass
class BalanceReport:
    balance_score: float
    simulation: SimulationResult
    recommendations: list[str]
    is_balanced: bool


def _first_max(option_votes: dict[str, int]) -> tuple[str, int]:
    best_id = ""
    best = -1
    for oid, n in option_votes.items():
        if n > best:
            best_id, best = oid, n
    return best_id, best


def detect_monotony(option_votes: dict[str, int], *, threshold: float = 0.7) -> MonotonyCheck:
    total = sum(option_votes.values())
    if total == 0:
        return MonotonyCheck(is_monotonous=False, dominant_option=None, dominance_percentage=0)
    dominant, top = _first_max(option_votes)
    pct = round_half_up(100 * top / total)
    return MonotonyCheck(
        is_monotonous=pct >= round_half_up(threshold * 100),
        dominant_option=dominant,
        dominance_percentage=pct,
    )


def score_balance(option_votes: dict[str, int], *, monotony_threshold: float = 0.7) -> BalanceVerdict:
    """票の分布からバランススコア [0, 1] を計算する。

    標準偏差を理論上の最大値（全票が1択に集中した場合 = total/2）で正規化し、
    単調（独占率 >= 70%）なら 0.3 減点する。票が0ならスコア0。
    """
    counts = list(option_votes.values())
    total = sum(counts)
    mono = detect_monotony(option_votes, threshold=monotony_threshold)
    if total == 0 or not counts:
        return BalanceVerdict(score=0.0, dominance_percentage=0, is_monotonous=False, total_votes=0)

    mean = total / len(counts)
    variance = sum((c - mean) ** 2 for c in counts) / len(counts)
    stddev = math.sqrt(variance)
    distribution = max(0.0, 1 - stddev / (total / 2))

    penalty = MONOTONY_PENALTY if mono.is_monotonous else 0.0
    score = round(max(0.0, distribution - penalty), 2)
    return BalanceVerdict(
        score=score,
        dominance_percentage=mono.dominance_percentage,
        is_monotonous=mono.is_monotonous,
        total_votes=total,
    )


def run_simulation(
    scenario: Scenario,
    rng: RandomSource,
    settings: BalanceConfig | None = None,
) -> SimulationResult:
    settings = settings or BalanceConfig()
    voters = generate_electorate(
        rng,
        archetypes=settings.archetypes,
        population=settings.voter_count,
        preference_jitter=settings.preference_jitter,
        risk_jitter=settings.risk_jitter,
    )
    votes = simulate_voting(scenario.options, voters, rng, noise=settings.choice_noise)
    verdict = score_balance(votes, monotony_threshold=settings.monotony_threshold)
    winner, _ = _first_max(votes)
    return SimulationResult(
        option_votes=votes,
        winning_option=winner,
        dominance_percentage=verdict.dominance_percentage,
        is_monotonous=verdict.is_monotonous,
        balance_score=verdict.score,
    )


def _reduce_appeal(option: Option) -> list[str]:
    changes: list[str] = []
    for axis, v in option.effects.items():
        if v > 0:
            new = max(0, v - 1)
        elif v == 0:
            new = -1
        else:
            continue
        option.effects.set(axis, new)
        changes.append(f"{axis} {v}->{new}")
    return changes


def _increase_appeal(option: Option) -> list[str]:
    changes: list[str] = []
    for axis, v in option.effects.items():
        if v < 0:
            new = min(0, v + 1)
        elif v == 0:
            new = 1
        elif v < EFFECT_MAX:
            new = min(EFFECT_MAX, v + 1)
        else:
            continue
        option.effects.set(axis, new)
        changes.append(f"{axis} {v}->{new}")
    return changes


def adjust_balance(scenario: Scenario, option_votes: dict[str, int]) -> list[str]:
    """最多票の選択肢を弱め、最少票の選択肢を強める（シナリオをその場で書き換える）。

    同数の場合は定義順で先の選択肢を選ぶ。最少票は最多票とは別の選択肢から選ぶ。
    returns: 調整内容（人間向け）
    """
    validate_scenario(scenario)

    counts = [(o, option_votes.get(o.id, 0)) for o in scenario.options]
    dominant = counts[0][0]
    top = counts[0][1]
    for o, n in counts:
        if n > top:
            dominant, top = o, n

    weakest: Option | None = None
    low = 0
    for o, n in counts:
        if o is dominant:
            continue
        if weakest is None or n < low:
            weakest, low = o, n

    adjustments: list[str] = []
    changes = _reduce_appeal(dominant)
    adjustments.append(
        f"Reduced appeal of dominant option: {dominant.text} ({', '.join(changes) or 'no change'})"
    )
    if weakest is not None:
        changes = _increase_appeal(weakest)
        adjustments.append(
            f"Increased appeal of weak option: {weakest.text} ({', '.join(changes) or 'no change'})"
        )

    validate_scenario(scenario)
    return adjustments


def balance_scenario(
    scenario: Scenario,
    *,
    rng: RandomSource | None = None,
    settings: BalanceConfig | None = None,
) -> BalanceResult:
    """バランス調整ループ。必ず max_attempts ラウンド以内に終わる。"""
    settings = settings or BalanceConfig()
    rng = rng or random.Random()
    validate_scenario(scenario)
    logger.info("balancing scenario %s", scenario.id)

    adjustments: list[str] = []
    attempts = 0
    sim = run_simulation(scenario, rng, settings)
    while True:
        attempts += 1
        logger.info(
            "attempt %d: balance=%.2f dominance=%d%% votes=%s",
            attempts,
            sim.balance_score,
            sim.dominance_percentage,
            sim.option_votes,
        )
        if sim.balance_score >= settings.min_balance_score and not sim.is_monotonous:
            return BalanceResult(
                scenario=scenario,
                balance_score=sim.balance_score,
                simulation=sim,
                adjustments=adjustments,
                attempts=attempts,
                accepted=True,
            )
        if attempts >= settings.max_attempts:
            break
        adjustments.extend(adjust_balance(scenario, sim.option_votes))
        sim = run_simulation(scenario, rng, settings)

    logger.warning(
        "scenario %s not balanced after %d attempts (final balance=%.2f)",
        scenario.id,
        attempts,
        sim.balance_score,
    )
    return BalanceResult(
        scenario=scenario,
        balance_score=sim.balance_score,
        simulation=sim,
        adjustments=adjustments,
        attempts=attempts,
        accepted=False,
    )


def balance_report(
    scenario: Scenario,
    *,
    rng: RandomSource | None = None,
    settings: BalanceConfig | None = None,
) -> BalanceReport:
    """調整せずに1回だけ試投票して、所見を返す。"""
    settings = settings or BalanceConfig()
    rng = rng or random.Random()
    validate_scenario(scenario)

    sim = run_simulation(scenario, rng, settings)
    mono = detect_monotony(sim.option_votes, threshold=settings.monotony_threshold)

    recommendations: list[str] = []
    if mono.is_monotonous:
        recommendations.append(
            f'Option "{mono.dominant_option}" dominates with {mono.dominance_percentage}%'
            " - consider rebalancing"
        )
    if sim.balance_score < settings.min_balance_score:
        recommendations.append("Overall balance is low - consider adjusting option effects")
    if sim.balance_score >= EXCELLENT_BALANCE:
        recommendations.append("Excellent balance - options are well-distributed")

    return BalanceReport(
        balance_score=sim.balance_score,
        simulation=sim,
        recommendations=recommendations,
        is_balanced=sim.balance_score >= settings.min_balance_score and not mono.is_monotonous,
    )
