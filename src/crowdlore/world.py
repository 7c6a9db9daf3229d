"""世界の状態（4軸の属性）と、勝った選択肢の効果の適用。

属性は [-10, +10] にクランプする。語り（lore）は直近50件だけ残す。
締めたシナリオの効果は applied_scenarios で1回だけ反映する。
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import asdict, dataclass, field

from crowdlore import keys
from crowdlore.effects import AXES, EffectVector
from crowdlore.errors import ProcessingError
from crowdlore.store import Store

logger = logging.getLogger(__name__)

ATTRIBUTE_MIN = -10
ATTRIBUTE_MAX = 10
LORE_LIMIT = 50


@dataclass
class WorldState:
    attributes: dict[str, int] = field(default_factory=lambda: {axis: 0 for axis in AXES})
    lore_log: list[str] = field(default_factory=list)
    last_updated: float = 0.0
    version: int = 0
    applied_scenarios: list[str] = field(default_factory=list)


def apply_effects(
    world: WorldState,
    effects: EffectVector,
    *,
    lore_entry: str | None = None,
    now: float | None = None,
) -> WorldState:
    now = time.time() if now is None else now
    attributes = dict(world.attributes)
    for axis, delta in effects.items():
        current = attributes.get(axis, 0)
        attributes[axis] = max(ATTRIBUTE_MIN, min(ATTRIBUTE_MAX, current + delta))

    lore = list(world.lore_log)
    if lore_entry:
        lore.append(lore_entry)
    return WorldState(
        attributes=attributes,
        lore_log=lore[-LORE_LIMIT:],
        last_updated=now,
        version=world.version + 1,
        applied_scenarios=list(world.applied_scenarios),
    )


def load_world(store: Store) -> WorldState:
    raw = store.get(keys.WORLD_STATE)
    if raw is None:
        return WorldState()
    return WorldState(**json.loads(raw))


def advance_world(
    store: Store,
    effects: EffectVector,
    *,
    lore_entry: str | None = None,
    now: float | None = None,
) -> WorldState:
    world = apply_effects(load_world(store), effects, lore_entry=lore_entry, now=now)
    store.set(keys.WORLD_STATE, json.dumps(asdict(world), ensure_ascii=False))
    logger.info("world advanced to v%d: %s", world.version, world.attributes)
    return world


WORLD_LOCK_TTL = 30.0


def apply_close_to_world(
    store: Store,
    scenario_id: str,
    effects: EffectVector,
    *,
    lore_entry: str | None = None,
    now: float | None = None,
    lock_ttl: float = WORLD_LOCK_TTL,
) -> tuple[WorldState, bool]:
    """締めたシナリオの効果を世界に反映する。反映済みなら何もしない。

    締めの再実行（保存済み結果の再生を含む）から何度呼ばれても1回だけ効く。
    戻り値は (世界の状態, 今回反映したか)。
    """
    if not store.set_if_absent(keys.WORLD_LOCK, scenario_id, ttl=lock_ttl):
        raise ProcessingError("world update is already in progress")
    try:
        world = load_world(store)
        if scenario_id in world.applied_scenarios:
            logger.info("world already reflects %s", scenario_id)
            return world, False

        world = apply_effects(world, effects, lore_entry=lore_entry, now=now)
        world.applied_scenarios.append(scenario_id)
        store.set(keys.WORLD_STATE, json.dumps(asdict(world), ensure_ascii=False))
        logger.info("world advanced to v%d by %s: %s", world.version, scenario_id, world.attributes)
        return world, True
    finally:
        store.delete(keys.WORLD_LOCK)
