"""投票結果をユーザーごとの成績に反映する（fan-out）。

締め処理のあと、そのシナリオに投票した全員について
- 勝ち側だったか（was_winner）
- 自分が選んだ選択肢の効果量（impact）
を計算し、連勝記録・平均インパクト・直近30件の投票履歴・ランキングを更新する。

ユーザーごとの更新は互いに独立で、スレッドプールで並列に流す。
1人の失敗で他を止めない（全件を試し、失敗は個別にログへ残す）。
同じ (user, scenario) には1回しか反映しない。
"""

from __future__ import annotations

import json
import logging
import math
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass, field
from typing import Callable

from crowdlore import keys
from crowdlore.rounding import round_half_up
from crowdlore.scenario import Option, Scenario
from crowdlore.store import Store
from crowdlore.votes import VoteRecord

logger = logging.getLogger(__name__)

DAY = 24 * 60 * 60
WEEK = 7 * DAY
MONTH = 30 * DAY

RECENT_WINDOW = 30
IMPACT_WEIGHT = 0.1
STREAK_GAP_DAYS = 2

LEADERBOARD_CATEGORIES = (
    "total_votes",
    "winning_percentage",
    "current_streak",
    "longest_streak",
    "average_impact",
)


@dataclass
class RecentVote:
    scenario_id: str
    was_winner: bool
    timestamp: float


@dataclass
class UserOutcomeState:
    user_id: str
    username: str = ""
    total_votes: int = 0
    winning_votes: int = 0
    current_streak: int = 0
    longest_streak: int = 0
    average_impact: float = 0.0
    recent_votes: list[RecentVote] = field(default_factory=list)
    daily_votes: int = 0
    weekly_votes: int = 0
    monthly_votes: int = 0
    last_vote_at: float | None = None

    @property
    def winning_percentage(self) -> int:
        if self.total_votes == 0:
            return 0
        return round_half_up(100 * self.winning_votes / self.total_votes)

    def to_json(self) -> str:
        return json.dumps(asdict(self), ensure_ascii=False)

    @classmethod
    def from_json(cls, raw: str) -> "UserOutcomeState":
        data = json.loads(raw)
        data["recent_votes"] = [RecentVote(**r) for r in data.get("recent_votes", []) or []]
        return cls(**data)


@dataclass
class UserOutcome:
    user_id: str
    was_winner: bool
    impact: int
    current_streak: int
    rank_before: int | None = None
    rank_after: int | None = None


@dataclass
class FanoutReport:
    updated: list[UserOutcome] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)


def apply_outcome(
    state: UserOutcomeState,
    *,
    scenario_id: str,
    was_winner: bool,
    impact: int,
    now: float,
    voted_at: float | None = None,
    window: int = RECENT_WINDOW,
    impact_weight: float = IMPACT_WEIGHT,
    streak_gap_days: int = STREAK_GAP_DAYS,
) -> UserOutcomeState:
    """1票ぶんの結果を成績に反映する（state をその場で更新して返す）。

    履歴と last_vote_at には投票した時刻（voted_at）を残し、日/週/月の件数は
    反映する時点（now）から数える。前回の投票から streak_gap_days 日より長く
    空いていたら、勝敗を数える前に連続記録を 0 に戻す。
    """
    voted_at = now if voted_at is None else voted_at

    if state.last_vote_at is not None:
        days_since = math.floor((voted_at - state.last_vote_at) / DAY)
        if days_since > streak_gap_days:
            state.current_streak = 0

    state.total_votes += 1
    if was_winner:
        state.winning_votes += 1
        state.current_streak += 1
        state.longest_streak = max(state.longest_streak, state.current_streak)
    else:
        state.current_streak = 0

    state.average_impact = state.average_impact * (1 - impact_weight) + abs(impact) * impact_weight

    state.recent_votes.append(
        RecentVote(scenario_id=scenario_id, was_winner=was_winner, timestamp=voted_at)
    )
    if len(state.recent_votes) > window:
        state.recent_votes = state.recent_votes[-window:]

    state.daily_votes = sum(1 for r in state.recent_votes if r.timestamp > now - DAY)
    state.weekly_votes = sum(1 for r in state.recent_votes if r.timestamp > now - WEEK)
    state.monthly_votes = sum(1 for r in state.recent_votes if r.timestamp > now - MONTH)
    state.last_vote_at = voted_at
    return state


def load_user_state(store: Store, user_id: str, username: str = "") -> UserOutcomeState:
    raw = store.get(keys.user_outcome(user_id))
    if raw is None:
        return UserOutcomeState(user_id=user_id, username=username)
    return UserOutcomeState.from_json(raw)


def save_user_state(store: Store, state: UserOutcomeState) -> None:
    store.set(keys.user_outcome(state.user_id), state.to_json())


def user_rank(store: Store, category: str, user_id: str) -> int | None:
    """1始まりの順位。読めなければ None（表示用の補助情報なので失敗させない）。"""
    try:
        rank = store.sorted_set_rank(keys.leaderboard(category), user_id)
    except Exception:  # noqa: BLE001
        logger.warning("rank lookup failed for %s/%s", category, user_id, exc_info=True)
        return None
    return None if rank is None else rank + 1


def update_leaderboards(store: Store, state: UserOutcomeState) -> None:
    scores = {
        "total_votes": state.total_votes,
        "winning_percentage": state.winning_percentage,
        "current_streak": state.current_streak,
        "longest_streak": state.longest_streak,
        "average_impact": round(state.average_impact, 4),
    }
    for category in LEADERBOARD_CATEGORIES:
        store.sorted_set_add(keys.leaderboard(category), state.user_id, float(scores[category]))


class OutcomeFanout:
    def __init__(
        self,
        store: Store,
        *,
        clock: Callable[[], float] = time.time,
        workers: int = 8,
        window: int = RECENT_WINDOW,
        impact_weight: float = IMPACT_WEIGHT,
        streak_gap_days: int = STREAK_GAP_DAYS,
    ) -> None:
        self.store = store
        self.clock = clock
        self.workers = max(1, workers)
        self.window = window
        self.impact_weight = impact_weight
        self.streak_gap_days = streak_gap_days

    def run(self, scenario: Scenario, winner: Option, votes: list[VoteRecord]) -> FanoutReport:
        report = FanoutReport()
        if not votes:
            return report

        impacts = {o.id: o.effects.magnitude() for o in scenario.options}
        with ThreadPoolExecutor(max_workers=self.workers) as pool:
            futures = [
                (v, pool.submit(self._update_one, scenario.id, winner.id, impacts, v)) for v in votes
            ]
            for v, fut in futures:
                try:
                    outcome = fut.result()
                except Exception:  # noqa: BLE001
                    # 1人の失敗で締め処理全体を止めない
                    logger.error(
                        "outcome update failed for user %s on %s", v.user_id, scenario.id, exc_info=True
                    )
                    report.failed.append(v.user_id)
                    continue
                if outcome is None:
                    report.skipped.append(v.user_id)
                else:
                    report.updated.append(outcome)

        logger.info(
            "fan-out %s: %d updated, %d skipped, %d failed",
            scenario.id,
            len(report.updated),
            len(report.skipped),
            len(report.failed),
        )
        return report

    def _update_one(
        self,
        scenario_id: str,
        winner_id: str,
        impacts: dict[str, int],
        vote: VoteRecord,
    ) -> UserOutcome | None:
        marker = keys.outcome_applied(scenario_id, vote.user_id)
        if not self.store.set_if_absent(marker, vote.id):
            logger.info("outcome already applied: %s on %s", vote.user_id, scenario_id)
            return None

        try:
            was_winner = vote.option_id == winner_id
            impact = impacts.get(vote.option_id, 0)
            rank_before = user_rank(self.store, "current_streak", vote.user_id)

            state = load_user_state(self.store, vote.user_id, vote.username)
            apply_outcome(
                state,
                scenario_id=scenario_id,
                was_winner=was_winner,
                impact=impact,
                now=self.clock(),
                voted_at=vote.timestamp,
                window=self.window,
                impact_weight=self.impact_weight,
                streak_gap_days=self.streak_gap_days,
            )
            save_user_state(self.store, state)
        except Exception:
            try:
                self.store.delete(marker)
            except Exception:  # noqa: BLE001
                logger.error("could not release outcome marker %s", marker, exc_info=True)
            raise

        # 成績は保存済み。ランキングは後から作り直せるので失敗しても巻き戻さない
        try:
            update_leaderboards(self.store, state)
        except Exception:  # noqa: BLE001
            logger.warning("leaderboard update failed for %s", vote.user_id, exc_info=True)

        return UserOutcome(
            user_id=vote.user_id,
            was_winner=was_winner,
            impact=impact,
            current_streak=state.current_streak,
            rank_before=rank_before,
            rank_after=user_rank(self.store, "current_streak", vote.user_id),
        )
