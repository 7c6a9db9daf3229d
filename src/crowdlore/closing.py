"""締め処理: 集計を閉じて勝者を決め、サマリを作り、ユーザー成績へ反映する。

ProcessingStatus の遷移:

    collecting → processing → completed | failed

- collecting は締めが始まる前の暗黙の状態（レコードなし）
- processing は集計を読む前に書く
- completed / failed は終了時刻を持ち、failed はエラー文も持つ

同じシナリオの締めは1回だけ反映する。completed 済みなら保存済みの結果を返し、
fan-out はやり直さない。failed の場合は原因を直したうえで再実行できる。
投票の受付可否はこの状態ではなく期限（expires_at）だけで決まる。
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import asdict, dataclass
from typing import Callable

from crowdlore import keys
from crowdlore.effects import AXES, EffectVector
from crowdlore.errors import ProcessingError
from crowdlore.outcome import OutcomeFanout
from crowdlore.publish import get_active_scenario
from crowdlore.resolve import determine_winner, generate_summary
from crowdlore.scenario import Option, validate_scenario
from crowdlore.store import Store
from crowdlore.votes import VoteTally, get_all_votes, get_tally, mark_voting_ended

logger = logging.getLogger(__name__)

STATUS_COLLECTING = "collecting"
STATUS_PROCESSING = "processing"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"

CLOSE_CLAIM_TTL = 600.0


@dataclass
class ProcessingStatus:
    scenario_id: str
    status: str  # collecting | processing | completed | failed
    start_time: float
    end_time: float | None = None
    error: str | None = None


@dataclass
class CloseResult:
    scenario_id: str
    winning_option: Option
    tally: VoteTally
    summary: str
    effects: EffectVector
    participation_rate: float
    users_updated: int = 0
    users_skipped: int = 0
    users_failed: int = 0
    replayed: bool = False

    def to_dict(self) -> dict:
        return {
            "scenario_id": self.scenario_id,
            "winning_option": self.winning_option.to_dict(),
            "tally": self.tally.to_dict(),
            "summary": self.summary,
            "effects": self.effects.as_dict(),
            "participation_rate": self.participation_rate,
            "users_updated": self.users_updated,
            "users_skipped": self.users_skipped,
            "users_failed": self.users_failed,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "CloseResult":
        return cls(
            scenario_id=str(data["scenario_id"]),
            winning_option=Option.from_dict(data["winning_option"]),
            tally=VoteTally.from_dict(data["tally"]),
            summary=str(data["summary"]),
            effects=EffectVector.from_mapping(data.get("effects")),
            participation_rate=float(data.get("participation_rate", 0.0)),
            users_updated=int(data.get("users_updated", 0)),
            users_skipped=int(data.get("users_skipped", 0)),
            users_failed=int(data.get("users_failed", 0)),
        )


def set_processing_status(store: Store, status: ProcessingStatus) -> None:
    store.set(keys.processing_status(status.scenario_id), json.dumps(asdict(status)))
    logger.info("processing status: %s -> %s", status.scenario_id, status.status)


def get_processing_status(store: Store, scenario_id: str) -> ProcessingStatus | None:
    raw = store.get(keys.processing_status(scenario_id))
    if raw is not None:
        return ProcessingStatus(**json.loads(raw))

    tally = get_tally(store, scenario_id)
    if tally is None:
        return None
    return ProcessingStatus(
        scenario_id=scenario_id, status=STATUS_COLLECTING, start_time=tally.voting_started
    )


def participation_rate(total_votes: int, eligible_users: int) -> float:
    if eligible_users <= 0:
        return 0.0
    return min(total_votes / eligible_users, 1.0)


def _load_cached_result(store: Store, scenario_id: str) -> CloseResult | None:
    raw = store.get(keys.close_result(scenario_id))
    if raw is None:
        return None
    result = CloseResult.from_dict(json.loads(raw))
    result.replayed = True
    return result


def _record_global_stats(store: Store, result: CloseResult) -> None:
    """全体統計に1回だけ加算する。再実行で二重に数えない。"""
    marker = keys.stats_recorded(result.scenario_id)
    if not store.set_if_absent(marker, "1"):
        return
    increments = {
        "scenarios_processed": 1,
        "votes_cast": result.tally.total_votes,
    }
    for axis in AXES:
        increments[f"effect:{axis}"] = result.effects.get(axis)
    try:
        store.hash_incr(keys.GLOBAL_STATS, increments)
    except Exception:
        store.delete(marker)
        raise


def close_scenario(
    store: Store,
    scenario_id: str,
    *,
    eligible_users: int = 100,
    clock: Callable[[], float] = time.time,
    fanout: OutcomeFanout | None = None,
    claim_ttl: float = CLOSE_CLAIM_TTL,
) -> CloseResult:
    """シナリオを締める。失敗時は ProcessingError（状態は failed に残る）。

    締め枠には claim_ttl の期限を付ける。途中でプロセスが落ちても、
    期限が切れれば別の呼び出しが締め直せる。
    """
    now = clock()

    cached = _load_cached_result(store, scenario_id)
    if cached is not None:
        logger.info("scenario %s already closed; returning stored result", scenario_id)
        return cached

    if not store.set_if_absent(keys.close_claim(scenario_id), str(now), ttl=claim_ttl):
        cached = _load_cached_result(store, scenario_id)
        if cached is not None:
            return cached
        raise ProcessingError(f"close of scenario {scenario_id} is already in progress")

    started = now
    try:
        set_processing_status(
            store,
            ProcessingStatus(scenario_id=scenario_id, status=STATUS_PROCESSING, start_time=started),
        )

        scenario = get_active_scenario(store)
        if scenario is None:
            raise ProcessingError("No active scenario found")
        if scenario.id != scenario_id:
            raise ProcessingError(f"Scenario mismatch: active is {scenario.id}, closing {scenario_id}")
        validate_scenario(scenario)

        tally = get_tally(store, scenario_id)
        if tally is None:
            raise ProcessingError(f"No vote data found for scenario {scenario_id}")
        mark_voting_ended(store, tally, now=clock())

        winner = determine_winner(scenario.options, tally)
        summary = generate_summary(winner, tally)

        fanout = fanout or OutcomeFanout(store, clock=clock)
        report = fanout.run(scenario, winner, get_all_votes(store, scenario_id))

        result = CloseResult(
            scenario_id=scenario_id,
            winning_option=winner,
            tally=tally,
            summary=summary,
            effects=winner.effects.copy(),
            participation_rate=participation_rate(tally.total_votes, eligible_users),
            users_updated=len(report.updated),
            users_skipped=len(report.skipped),
            users_failed=len(report.failed),
        )
        store.set(keys.close_result(scenario_id), json.dumps(result.to_dict(), ensure_ascii=False))

        try:
            _record_global_stats(store, result)
        except Exception:  # noqa: BLE001
            logger.warning("global stats update failed for %s", scenario_id, exc_info=True)

        set_processing_status(
            store,
            ProcessingStatus(
                scenario_id=scenario_id,
                status=STATUS_COMPLETED,
                start_time=started,
                end_time=clock(),
            ),
        )
    except BaseException as e:
        # Ctrl-C などで中断した場合も processing のまま残さない
        error = str(e) or type(e).__name__
        logger.error("closing scenario %s failed: %s", scenario_id, error, exc_info=True)
        try:
            set_processing_status(
                store,
                ProcessingStatus(
                    scenario_id=scenario_id,
                    status=STATUS_FAILED,
                    start_time=started,
                    end_time=clock(),
                    error=error,
                ),
            )
            # 再実行できるように結果と締め枠を外す（反映済みユーザーは fan-out 側で飛ばされる）
            store.delete(keys.close_result(scenario_id))
            store.delete(keys.close_claim(scenario_id))
        except Exception:  # noqa: BLE001
            logger.error("could not record failed status for %s", scenario_id, exc_info=True)
        if isinstance(e, ProcessingError) or not isinstance(e, Exception):
            raise
        raise ProcessingError(f"Failed to process votes: {e}") from e

    logger.info("scenario %s closed: winner=%s (%s)", scenario_id, winner.id, summary)
    return result
