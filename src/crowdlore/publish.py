"""シナリオの公開と参照。

公開したシナリオが「現在アクティブな1件」になる。
同時に集計メタ（投票開始時刻）を初期化する。
"""

from __future__ import annotations

import json
import logging
import time

from crowdlore import keys
from crowdlore.errors import StorageError
from crowdlore.scenario import Scenario, validate_scenario
from crowdlore.store import Store

logger = logging.getLogger(__name__)


def _decode(raw: str, what: str) -> dict:
    try:
        return json.loads(raw)
    except json.JSONDecodeError as e:
        raise StorageError(f"{what} is not valid JSON") from e


def publish_scenario(store: Store, scenario: Scenario, *, now: float | None = None) -> Scenario:
    now = time.time() if now is None else now
    validate_scenario(scenario, approved=True)

    scenario.is_active = True
    payload = json.dumps(scenario.to_dict(), ensure_ascii=False)
    store.set(keys.scenario(scenario.id), payload)
    store.set(keys.CURRENT_SCENARIO, payload)
    store.hash_set(keys.SCENARIO_HISTORY, scenario.id, str(scenario.created_at))
    store.set_if_absent(
        keys.tally_meta(scenario.id),
        json.dumps({"scenario_id": scenario.id, "voting_started": now, "voting_ended": None}),
    )
    logger.info("published scenario %s (expires_at=%s)", scenario.id, scenario.expires_at)
    return scenario


def get_active_scenario(store: Store) -> Scenario | None:
    raw = store.get(keys.CURRENT_SCENARIO)
    if raw is None:
        return None
    return Scenario.from_dict(_decode(raw, "current scenario"))


def get_scenario(store: Store, scenario_id: str) -> Scenario | None:
    raw = store.get(keys.scenario(scenario_id))
    if raw is None:
        return None
    return Scenario.from_dict(_decode(raw, f"scenario {scenario_id}"))
