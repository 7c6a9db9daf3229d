"""合成有権者の選択シミュレーション。"""

from __future__ import annotations

from crowdlore.electorate import RandomSource, SimulatedVoter
from crowdlore.scenario import Option

CHOICE_NOISE = 0.25


def score_option(
    option: Option,
    voter: SimulatedVoter,
    rng: RandomSource,
    *,
    noise: float = CHOICE_NOISE,
) -> float:
    """ある有権者にとっての選択肢の魅力度。

    好みとの内積 + リスク項 + 小さな揺らぎ。リスク許容度が 0.5 より高いと
    効果の大きい選択肢に引き寄せられ、低いと遠ざかる。
    """
    score = sum(effect * voter.preferences.get(axis, 0.0) for axis, effect in option.effects.items())
    score += option.effects.magnitude() * (voter.risk_tolerance - 0.5)
    score += rng.uniform(-noise, noise)
    return score


def simulate_choice(
    options: list[Option],
    voter: SimulatedVoter,
    rng: RandomSource,
    *,
    noise: float = CHOICE_NOISE,
) -> Option:
    if not options:
        raise ValueError("no options to choose from")

    best = options[0]
    best_score = float("-inf")
    # 同点は先に見たものを残す
    for o in options:
        s = score_option(o, voter, rng, noise=noise)
        if s > best_score:
            best_score = s
            best = o
    return best


def simulate_voting(
    options: list[Option],
    voters: list[SimulatedVoter],
    rng: RandomSource,
    *,
    noise: float = CHOICE_NOISE,
) -> dict[str, int]:
    """全員に選ばせて選択肢ごとの票数を返す（定義順のキー）。"""
    votes = {o.id: 0 for o in options}
    for v in voters:
        picked = simulate_choice(options, v, rng, noise=noise)
        votes[picked.id] += 1
    return votes
