"""ユーザー成績の反映（fan-out）のテスト。"""

import pytest

from crowdlore import keys
from crowdlore.outcome import (
    DAY,
    OutcomeFanout,
    RecentVote,
    UserOutcomeState,
    apply_outcome,
    load_user_state,
    user_rank,
)
from crowdlore.publish import publish_scenario
from crowdlore.store import MemoryStore
from crowdlore.votes import get_all_votes, submit_vote


def _apply(state: UserOutcomeState, won: bool, *, now: float, impact: int = 1, sid: str = "s") -> None:
    apply_outcome(state, scenario_id=sid, was_winner=won, impact=impact, now=now)


def test_streaks(clock) -> None:
    st = UserOutcomeState(user_id="u1")
    for won in (True, True, False, True):
        _apply(st, won, now=clock.now)

    assert st.total_votes == 4
    assert st.winning_votes == 3
    assert st.current_streak == 1
    assert st.longest_streak == 2
    assert st.winning_percentage == 75


def test_average_impact_moves_slowly(clock) -> None:
    st = UserOutcomeState(user_id="u1")
    _apply(st, True, now=clock.now, impact=3)
    assert st.average_impact == pytest.approx(0.3)
    _apply(st, True, now=clock.now, impact=-2)
    assert st.average_impact == pytest.approx(0.47)


def test_recent_window_keeps_last_30(clock) -> None:
    st = UserOutcomeState(user_id="u1")
    for i in range(35):
        _apply(st, True, now=clock.now, sid=f"s{i}")
    assert len(st.recent_votes) == 30
    assert st.recent_votes[0].scenario_id == "s5"
    assert st.recent_votes[-1].scenario_id == "s34"


def test_period_counts(clock) -> None:
    now = clock.now
    st = UserOutcomeState(
        user_id="u1",
        recent_votes=[
            RecentVote("old", True, now - 40 * DAY),
            RecentVote("w", True, now - 10 * DAY),
            RecentVote("d", True, now - 2 * DAY),
            RecentVote("edge", True, now - DAY),
        ],
    )
    _apply(st, True, now=now)
    assert st.daily_votes == 1
    assert st.weekly_votes == 3
    assert st.monthly_votes == 4
    assert st.last_vote_at == now


def test_state_json_roundtrip(clock) -> None:
    st = UserOutcomeState(user_id="u1", username="alice")
    _apply(st, True, now=clock.now)
    st2 = UserOutcomeState.from_json(st.to_json())
    assert st2 == st


@pytest.fixture()
def voted(store, clock, make_scenario):
    s = make_scenario()
    publish_scenario(store, s, now=clock.now)
    for user, option in (("u1", "a"), ("u2", "a"), ("u3", "b")):
        submit_vote(store, s.id, option, user, user, clock=clock)
    return s


def test_fanout_updates_every_voter(store, clock, voted) -> None:
    fan = OutcomeFanout(store, clock=clock, workers=4)
    report = fan.run(voted, voted.options[0], get_all_votes(store, voted.id))

    assert sorted(o.user_id for o in report.updated) == ["u1", "u2", "u3"]
    assert report.failed == []
    by_user = {o.user_id: o for o in report.updated}
    assert by_user["u1"].was_winner
    assert by_user["u1"].impact == 2
    assert not by_user["u3"].was_winner
    assert by_user["u3"].impact == 1

    assert load_user_state(store, "u1").current_streak == 1
    assert load_user_state(store, "u3").current_streak == 0
    assert store.sorted_set_score(keys.leaderboard("total_votes"), "u2") == 1.0
    assert user_rank(store, "current_streak", "u3") == 3


def test_fanout_applies_once_per_user(store, clock, voted) -> None:
    fan = OutcomeFanout(store, clock=clock)
    votes = get_all_votes(store, voted.id)
    fan.run(voted, voted.options[0], votes)
    report = fan.run(voted, voted.options[0], votes)

    assert report.updated == []
    assert sorted(report.skipped) == ["u1", "u2", "u3"]
    assert load_user_state(store, "u1").total_votes == 1


class _BrokenUserStore(MemoryStore):
    def set(self, key, value, ttl=None):
        if key == keys.user_outcome("u2"):
            raise OSError("write failed")
        super().set(key, value, ttl)


def test_one_failing_user_does_not_stop_others(clock, make_scenario) -> None:
    store = _BrokenUserStore(clock=clock)
    s = make_scenario()
    publish_scenario(store, s, now=clock.now)
    for user in ("u1", "u2", "u3"):
        submit_vote(store, s.id, "a", user, user, clock=clock)

    report = OutcomeFanout(store, clock=clock).run(s, s.options[0], get_all_votes(store, s.id))

    assert report.failed == ["u2"]
    assert sorted(o.user_id for o in report.updated) == ["u1", "u3"]
    # 失敗したユーザーは再実行できるよう印を外す
    assert store.get(keys.outcome_applied(s.id, "u2")) is None


class _NoRankStore(MemoryStore):
    def sorted_set_rank(self, key, member):
        raise OSError("rank unavailable")


def test_rank_lookup_failure_degrades_to_none(clock, make_scenario) -> None:
    store = _NoRankStore(clock=clock)
    s = make_scenario()
    publish_scenario(store, s, now=clock.now)
    submit_vote(store, s.id, "a", "u1", "u1", clock=clock)

    report = OutcomeFanout(store, clock=clock).run(s, s.options[0], get_all_votes(store, s.id))

    assert len(report.updated) == 1
    assert report.updated[0].rank_before is None
    assert report.updated[0].rank_after is None
    assert load_user_state(store, "u1").total_votes == 1


def test_streak_resets_after_long_gap(clock) -> None:
    st = UserOutcomeState(user_id="u1")
    _apply(st, True, now=clock.now)
    _apply(st, True, now=clock.now + 2 * DAY)
    assert st.current_streak == 2

    # 前回から3日空くと、勝っても 1 からやり直し
    _apply(st, True, now=clock.now + 5 * DAY)
    assert st.current_streak == 1
    assert st.longest_streak == 2


def test_gap_of_two_days_keeps_streak(clock) -> None:
    st = UserOutcomeState(user_id="u1")
    _apply(st, True, now=clock.now)
    _apply(st, True, now=clock.now + 2 * DAY + DAY / 2)
    assert st.current_streak == 2


def test_window_records_vote_time_not_close_time(store, clock, voted) -> None:
    voted_at = clock.now
    clock.advance(3 * DAY)

    OutcomeFanout(store, clock=clock).run(voted, voted.options[0], get_all_votes(store, voted.id))

    st = load_user_state(store, "u1")
    assert st.recent_votes[-1].timestamp == voted_at
    assert st.last_vote_at == voted_at
    assert st.daily_votes == 0
    assert st.weekly_votes == 1
