"""balance / simulate のテスト。

MidpointRandom を使うと揺らぎとノイズがゼロになり、票の分布を手計算で確かめられる。
"""

import random

import pytest

from crowdlore.balance import (
    adjust_balance,
    balance_report,
    balance_scenario,
    detect_monotony,
    run_simulation,
    score_balance,
)
from crowdlore.config import BalanceConfig
from crowdlore.effects import EFFECT_MAX, EFFECT_MIN
from crowdlore.electorate import SimulatedVoter
from crowdlore.errors import ValidationError
from crowdlore.simulate import simulate_choice


def test_score_balance_examples() -> None:
    v = score_balance({"a": 45, "b": 30, "c": 25})
    assert v.score == 0.83
    assert v.dominance_percentage == 45
    assert not v.is_monotonous

    v = score_balance({"a": 80, "b": 10, "c": 10})
    assert v.is_monotonous
    assert v.score == 0.04

    assert score_balance({"a": 0, "b": 0, "c": 0}).score == 0.0
    assert score_balance({}).score == 0.0


def test_monotony_threshold_is_inclusive() -> None:
    assert detect_monotony({"a": 70, "b": 20, "c": 10}).is_monotonous
    assert not detect_monotony({"a": 69, "b": 21, "c": 10}).is_monotonous
    assert detect_monotony({"a": 0, "b": 0, "c": 0}).dominant_option is None


def test_simulate_choice_keeps_first_on_tie(make_scenario, midpoint_rng) -> None:
    s = make_scenario(effects={"a": {}, "b": {}, "c": {}})
    voter = SimulatedVoter(archetype="x", preferences={}, risk_tolerance=0.5)
    assert simulate_choice(s.options, voter, midpoint_rng).id == "a"

    with pytest.raises(ValueError):
        simulate_choice([], voter, midpoint_rng)


def test_run_simulation_counts_every_voter(make_scenario, midpoint_rng) -> None:
    sim = run_simulation(make_scenario(), midpoint_rng)
    assert sim.option_votes == {"a": 65, "b": 20, "c": 15}
    assert sim.winning_option == "a"
    assert sim.dominance_percentage == 65
    assert sim.balance_score == 0.55


def test_balanced_scenario_accepted_on_first_attempt(make_scenario, midpoint_rng) -> None:
    s = make_scenario(
        effects={
            "a": {"stability": 1},
            "b": {"curiosity": 1},
            "c": {"survival": 1, "reputation": 1},
        }
    )
    result = balance_scenario(s, rng=midpoint_rng)

    assert result.accepted
    assert result.attempts == 1
    assert result.adjustments == []
    assert result.simulation.option_votes == {"a": 25, "b": 20, "c": 55}
    assert result.balance_score == 0.69


def test_unbalanced_scenario_stops_after_three_attempts(make_scenario, midpoint_rng) -> None:
    s = make_scenario()
    result = balance_scenario(s, rng=midpoint_rng)

    assert not result.accepted
    assert result.attempts == 3
    assert len(result.adjustments) == 4
    assert result.adjustments[0] == (
        "Reduced appeal of dominant option: Rebuild the bridge "
        "(stability 2->1, curiosity 0->-1, survival 0->-1, reputation 0->-1)"
    )
    assert result.adjustments[1] == (
        "Increased appeal of weak option: The river ferry "
        "(stability 0->1, curiosity 0->1, survival 1->2, reputation 0->1)"
    )
    # 2ラウンド目は c が全票を取り、調整で元の効果に戻る
    assert result.adjustments[2].startswith("Reduced appeal of dominant option: The river ferry")
    assert result.adjustments[3].startswith("Increased appeal of weak option: Rebuild the bridge")
    assert result.simulation.option_votes == {"a": 65, "b": 20, "c": 15}
    assert result.balance_score == 0.55
    assert result.scenario.options[0].effects.as_dict(skip_zero=True) == {"stability": 2}
    assert result.scenario.options[2].effects.as_dict(skip_zero=True) == {"survival": 1}


def test_max_attempts_one_means_no_adjustment(make_scenario, midpoint_rng) -> None:
    result = balance_scenario(make_scenario(), rng=midpoint_rng, settings=BalanceConfig(max_attempts=1))
    assert result.attempts == 1
    assert result.adjustments == []
    assert not result.accepted


@pytest.mark.parametrize("seed", [1, 7, 42, 2024])
def test_balance_loop_invariants(make_scenario, seed: int) -> None:
    s = make_scenario(effects={"a": {"stability": 3, "survival": 2}, "b": {"curiosity": -1}, "c": {}})
    result = balance_scenario(s, rng=random.Random(seed))

    assert 1 <= result.attempts <= 3
    assert len(result.adjustments) == 2 * (result.attempts - 1)
    assert 0.0 <= result.balance_score <= 1.0
    if result.accepted:
        assert result.balance_score >= 0.6
        assert not result.simulation.is_monotonous
    for o in result.scenario.options:
        for _, v in o.effects.items():
            assert EFFECT_MIN <= v <= EFFECT_MAX
    assert sum(result.simulation.option_votes.values()) == 100


def test_same_seed_same_result(make_scenario) -> None:
    r1 = balance_scenario(make_scenario(), rng=random.Random(5))
    r2 = balance_scenario(make_scenario(), rng=random.Random(5))
    assert r1.simulation.option_votes == r2.simulation.option_votes
    assert r1.adjustments == r2.adjustments


def test_adjust_balance_respects_bounds(make_scenario) -> None:
    s = make_scenario(
        effects={
            "a": {"stability": -3, "curiosity": -3, "survival": -3, "reputation": -3},
            "b": {"stability": 3, "curiosity": 3, "survival": 3, "reputation": 3},
            "c": {},
        }
    )
    log = adjust_balance(s, {"a": 90, "b": 0, "c": 10})

    # 負の値しかない最多票の選択肢は変わらない
    assert s.options[0].effects.as_dict() == {
        "stability": -3,
        "curiosity": -3,
        "survival": -3,
        "reputation": -3,
    }
    assert "no change" in log[0]
    # 上限の選択肢も変わらない
    assert s.options[1].effects.magnitude() == 12
    assert "no change" in log[1]


def test_adjust_balance_rejects_malformed_scenario(make_scenario) -> None:
    s = make_scenario(effects={"a": {}, "b": {}})
    with pytest.raises(ValidationError):
        adjust_balance(s, {"a": 1, "b": 0})


def test_balance_report_recommendations(make_scenario, midpoint_rng) -> None:
    report = balance_report(make_scenario(), rng=midpoint_rng)
    assert not report.is_balanced
    assert report.balance_score == 0.55
    assert report.recommendations == ["Overall balance is low - consider adjusting option effects"]

    s = make_scenario(effects={"a": {"stability": 3}, "b": {}, "c": {"curiosity": -1}})
    report = balance_report(s, rng=midpoint_rng)
    assert report.recommendations[0].startswith('Option "a" dominates with')
