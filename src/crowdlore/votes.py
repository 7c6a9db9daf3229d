"""投票の受付と集計。

- validate_vote: アクティブなシナリオ・期限・選択肢・重複を確認する
- VoteLedger: 受理した票を記録し、集計カウンタと「最後の投票」ポインタを更新する
- submit_vote: 上記をまとめた受付窓口（結果は VoteValidation で返す）

同じユーザーの同時投票は、ストアの set_if_absent で「投票枠」を取れた1件だけが通る。
集計は hash_incr で option と total を同時に加算するので、total は常に各選択肢の合計と一致する。
"""

from __future__ import annotations

import json
import logging
import time
import uuid
from dataclasses import asdict, dataclass, field
from typing import Callable

from crowdlore import keys
from crowdlore.errors import StorageError, ValidationError
from crowdlore.publish import get_active_scenario
from crowdlore.rounding import round_half_up
from crowdlore.store import Store

logger = logging.getLogger(__name__)

SOURCE_COMMENT = "reddit_comment"
SOURCE_NATIVE_VOTE = "reddit_vote"
SOURCE_WEB = "web_interface"
VOTE_SOURCES = (SOURCE_COMMENT, SOURCE_NATIVE_VOTE, SOURCE_WEB)

REASON_NO_ACTIVE = "No active scenario found"
REASON_NOT_ACTIVE = "Scenario is not currently active"
REASON_EXPIRED = "Voting period has ended"
REASON_INVALID_OPTION = "Invalid option selected"
REASON_DUPLICATE = "User has already voted on this scenario"
REASON_INVALID_SOURCE = "Invalid vote source"

TOTAL_FIELD = "total"


def option_field(option_id: str) -> str:
    return f"option:{option_id}"


@dataclass(frozen=True)
class VoteRecord:
    id: str
    scenario_id: str
    option_id: str
    user_id: str
    username: str
    timestamp: float
    source: str = SOURCE_WEB

    def to_json(self) -> str:
        return json.dumps(asdict(self), ensure_ascii=False)

    @classmethod
    def from_json(cls, raw: str) -> "VoteRecord":
        return cls(**json.loads(raw))


@dataclass(frozen=True)
class LastVotePointer:
    scenario_id: str
    option_id: str
    vote_id: str
    timestamp: float


@dataclass
class VoteTally:
    scenario_id: str
    option_votes: dict[str, int] = field(default_factory=dict)
    total_votes: int = 0
    voting_started: float = 0.0
    voting_ended: float | None = None

    @property
    def unique_voters(self) -> int:
        # 1票 = 1人なので total_votes と同じ値になる（互換のために残している派生値）
        return sum(self.option_votes.values())

    def to_dict(self) -> dict:
        return {
            "scenario_id": self.scenario_id,
            "option_votes": dict(self.option_votes),
            "total_votes": self.total_votes,
            "unique_voters": self.unique_voters,
            "voting_started": self.voting_started,
            "voting_ended": self.voting_ended,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "VoteTally":
        return cls(
            scenario_id=str(data.get("scenario_id", "")),
            option_votes={k: int(v) for k, v in (data.get("option_votes", {}) or {}).items()},
            total_votes=int(data.get("total_votes", 0)),
            voting_started=float(data.get("voting_started", 0.0)),
            voting_ended=data.get("voting_ended"),
        )


@dataclass
class VoteValidation:
    is_valid: bool
    reason: str | None = None
    vote: VoteRecord | None = None


@dataclass
class BatchResult:
    processed: int = 0
    duplicates: int = 0
    invalid: int = 0


def _read_pointer(store: Store, user_id: str) -> LastVotePointer | None:
    raw = store.get(keys.last_vote(user_id))
    if raw is None:
        return None
    try:
        return LastVotePointer(**json.loads(raw))
    except (json.JSONDecodeError, TypeError):
        logger.warning("ignoring corrupt last-vote pointer for %s", user_id)
        return None


def validate_vote(
    store: Store,
    scenario_id: str,
    option_id: str,
    user_id: str,
    *,
    now: float | None = None,
) -> VoteValidation:
    now = time.time() if now is None else now

    scenario = get_active_scenario(store)
    if scenario is None:
        return VoteValidation(is_valid=False, reason=REASON_NO_ACTIVE)
    if scenario.id != scenario_id:
        return VoteValidation(is_valid=False, reason=REASON_NOT_ACTIVE)
    if scenario.is_expired(now):
        return VoteValidation(is_valid=False, reason=REASON_EXPIRED)
    if option_id not in scenario.option_ids():
        return VoteValidation(is_valid=False, reason=REASON_INVALID_OPTION)

    pointer = _read_pointer(store, user_id)
    if pointer is not None and pointer.scenario_id == scenario_id:
        return VoteValidation(is_valid=False, reason=REASON_DUPLICATE)

    return VoteValidation(is_valid=True)


def _new_vote_id(now: float) -> str:
    return f"vote-{int(now * 1000)}-{uuid.uuid4().hex[:9]}"


class VoteLedger:
    """受理済みの票を記録する。

    書き込み順: 投票枠の確保 → 投票レコード → 集計加算 → ポインタ上書き。
    途中で失敗したら、済んだ分を逆順に取り消して StorageError を送出する。
    """

    def __init__(
        self,
        store: Store,
        *,
        clock: Callable[[], float] = time.time,
        id_factory: Callable[[float], str] = _new_vote_id,
    ) -> None:
        self.store = store
        self.clock = clock
        self.id_factory = id_factory

    def record(
        self,
        scenario_id: str,
        option_id: str,
        user_id: str,
        username: str,
        source: str = SOURCE_WEB,
    ) -> VoteRecord:
        now = self.clock()
        vote = VoteRecord(
            id=self.id_factory(now),
            scenario_id=scenario_id,
            option_id=option_id,
            user_id=user_id,
            username=username,
            timestamp=now,
            source=source,
        )

        claim_key = keys.vote_claim(scenario_id, user_id)
        if not self.store.set_if_absent(claim_key, vote.id):
            raise ValidationError(REASON_DUPLICATE)

        undo: list[Callable[[], None]] = [lambda: self.store.delete(claim_key)]
        try:
            self.store.hash_set(keys.votes(scenario_id), vote.id, vote.to_json())
            undo.append(lambda: self.store.hash_delete(keys.votes(scenario_id), vote.id))

            self.store.hash_incr(keys.tally(scenario_id), {option_field(option_id): 1, TOTAL_FIELD: 1})
            undo.append(
                lambda: self.store.hash_incr(
                    keys.tally(scenario_id), {option_field(option_id): -1, TOTAL_FIELD: -1}
                )
            )

            pointer = LastVotePointer(
                scenario_id=scenario_id, option_id=option_id, vote_id=vote.id, timestamp=now
            )
            self.store.set(keys.last_vote(user_id), json.dumps(asdict(pointer)))
        except Exception as e:
            logger.error("vote write failed for %s on %s; rolling back", user_id, scenario_id)
            for step in reversed(undo):
                try:
                    step()
                except Exception:  # noqa: BLE001
                    logger.error("rollback step failed for vote %s", vote.id, exc_info=True)
            if isinstance(e, StorageError):
                raise
            raise StorageError(f"failed to record vote {vote.id}: {e}") from e

        logger.info("vote recorded: %s %s -> %s (%s)", vote.id, username, option_id, scenario_id)
        return vote


def submit_vote(
    store: Store,
    scenario_id: str,
    option_id: str,
    user_id: str,
    username: str,
    source: str = SOURCE_WEB,
    *,
    clock: Callable[[], float] = time.time,
    ledger: VoteLedger | None = None,
) -> VoteValidation:
    """投票を検証して記録する。

    検証で弾かれた場合は is_valid=False と理由を返す（例外にしない）。
    ストアへの書き込み失敗は StorageError としてそのまま伝播する。
    """
    if source not in VOTE_SOURCES:
        return VoteValidation(is_valid=False, reason=REASON_INVALID_SOURCE)

    validation = validate_vote(store, scenario_id, option_id, user_id, now=clock())
    if not validation.is_valid:
        logger.info("vote rejected (%s): %s -> %s", validation.reason, username, option_id)
        return validation

    ledger = ledger or VoteLedger(store, clock=clock)
    try:
        vote = ledger.record(scenario_id, option_id, user_id, username, source)
    except ValidationError as e:
        logger.info("vote rejected (%s): %s -> %s", e.reason, username, option_id)
        return VoteValidation(is_valid=False, reason=e.reason)
    return VoteValidation(is_valid=True, vote=vote)


def submit_batch(
    store: Store,
    votes: list[dict],
    *,
    clock: Callable[[], float] = time.time,
) -> BatchResult:
    """コメント等からまとめて取り込む。1件の失敗で残りを止めない。"""
    result = BatchResult()
    ledger = VoteLedger(store, clock=clock)
    for v in votes:
        try:
            validation = submit_vote(
                store,
                str(v["scenario_id"]),
                str(v["option_id"]),
                str(v["user_id"]),
                str(v.get("username", v["user_id"])),
                str(v.get("source", SOURCE_COMMENT)),
                clock=clock,
                ledger=ledger,
            )
        except Exception:  # noqa: BLE001
            result.invalid += 1
            logger.error("batch vote failed: %s", v, exc_info=True)
            continue

        if validation.is_valid:
            result.processed += 1
        elif validation.reason == REASON_DUPLICATE:
            result.duplicates += 1
        else:
            result.invalid += 1

    logger.info(
        "batch done: %d processed, %d duplicates, %d invalid",
        result.processed,
        result.duplicates,
        result.invalid,
    )
    return result


def get_tally(store: Store, scenario_id: str) -> VoteTally | None:
    """集計を読む。集計メタも票も無ければ None。"""
    meta_raw = store.get(keys.tally_meta(scenario_id))
    counters = store.hash_get_all(keys.tally(scenario_id))
    if meta_raw is None and not counters:
        return None

    meta = json.loads(meta_raw) if meta_raw else {}
    option_votes = {
        f[len("option:"):]: int(v) for f, v in counters.items() if f.startswith("option:")
    }
    return VoteTally(
        scenario_id=scenario_id,
        option_votes=option_votes,
        total_votes=int(counters.get(TOTAL_FIELD, "0")),
        voting_started=float(meta.get("voting_started") or 0.0),
        voting_ended=meta.get("voting_ended"),
    )


def mark_voting_ended(store: Store, tally: VoteTally, *, now: float) -> None:
    tally.voting_ended = now
    store.set(
        keys.tally_meta(tally.scenario_id),
        json.dumps(
            {
                "scenario_id": tally.scenario_id,
                "voting_started": tally.voting_started,
                "voting_ended": now,
            }
        ),
    )


def get_all_votes(store: Store, scenario_id: str) -> list[VoteRecord]:
    votes = [VoteRecord.from_json(raw) for raw in store.hash_get_all(keys.votes(scenario_id)).values()]
    return sorted(votes, key=lambda v: (v.timestamp, v.id))


def has_user_voted(store: Store, user_id: str, scenario_id: str) -> bool:
    return store.get(keys.vote_claim(scenario_id, user_id)) is not None


def get_vote_count(store: Store, scenario_id: str) -> int:
    tally = get_tally(store, scenario_id)
    return tally.total_votes if tally else 0


def vote_breakdown(store: Store, scenario_id: str) -> dict | None:
    """選択肢ごとの票数・割合と、投票経路ごとの件数。"""
    tally = get_tally(store, scenario_id)
    if tally is None:
        return None

    sources = {s: 0 for s in VOTE_SOURCES}
    for v in get_all_votes(store, scenario_id):
        sources[v.source] = sources.get(v.source, 0) + 1

    options = [
        {
            "option_id": oid,
            "votes": n,
            "percentage": round_half_up(100 * n / tally.total_votes) if tally.total_votes else 0,
        }
        for oid, n in tally.option_votes.items()
    ]
    return {"total_votes": tally.total_votes, "options": options, "sources": sources}
