"""ストアのキー定義（一元管理）。"""

from __future__ import annotations

PREFIX = "crowdlore"

CURRENT_SCENARIO = f"{PREFIX}:current_scenario"
SCENARIO_HISTORY = f"{PREFIX}:scenario:history"
GLOBAL_STATS = f"{PREFIX}:global_stats"
WORLD_STATE = f"{PREFIX}:world:state"
WORLD_LOCK = f"{PREFIX}:world:lock"


def scenario(scenario_id: str) -> str:
    return f"{PREFIX}:scenario:{scenario_id}"


def votes(scenario_id: str) -> str:
    """投票レコードのハッシュ（field = vote id）。"""
    return f"{PREFIX}:votes:{scenario_id}"


def tally(scenario_id: str) -> str:
    """集計カウンタのハッシュ（field = option:<id> / total）。"""
    return f"{PREFIX}:tally:{scenario_id}"


def tally_meta(scenario_id: str) -> str:
    return f"{PREFIX}:tally_meta:{scenario_id}"


def vote_claim(scenario_id: str, user_id: str) -> str:
    """1人1票の枠。set_if_absent で取れた1件だけが有効。"""
    return f"{PREFIX}:vote_claim:{scenario_id}:{user_id}"


def last_vote(user_id: str) -> str:
    return f"{PREFIX}:user_votes:{user_id}"


def processing_status(scenario_id: str) -> str:
    return f"{PREFIX}:processing:{scenario_id}"


def close_claim(scenario_id: str) -> str:
    return f"{PREFIX}:close_claim:{scenario_id}"


def close_result(scenario_id: str) -> str:
    return f"{PREFIX}:result:{scenario_id}"


def user_outcome(user_id: str) -> str:
    return f"user:{user_id}:outcome"


def outcome_applied(scenario_id: str, user_id: str) -> str:
    return f"{PREFIX}:outcome_applied:{scenario_id}:{user_id}"


def leaderboard(category: str) -> str:
    return f"leaderboard:{category}:alltime"


def stats_recorded(scenario_id: str) -> str:
    """全体統計へ加算済みの印。"""
    return f"{PREFIX}:stats_recorded:{scenario_id}"
