"""Pure planning logic for full reconciliation sweeps.

Given both complete entity sets in the target schema, compute the minimal
create/update/delete set that makes the target equal to the source. No I/O
happens here; the orchestrator applies the plan.
"""

import logging
from collections.abc import Callable, Iterable
from typing import Any

from .entities import ReconcilePlan, SyncEntity

logger = logging.getLogger(__name__)

Projection = Callable[[SyncEntity], dict[str, Any]]


def index_by_id(entities: Iterable[SyncEntity]) -> dict[str, SyncEntity]:
    """Build an id-keyed map. Entities without an id are skipped and logged.

    When an id repeats, the last occurrence wins.
    """
    indexed: dict[str, SyncEntity] = {}
    for entity in entities:
        entity_id = entity.get("id")
        if not entity_id:
            logger.warning(f"Skipping entity without id: keys={sorted(entity.keys())}")
            continue
        indexed[str(entity_id)] = entity
    return indexed


def changed_fields(
    desired: SyncEntity,
    current: SyncEntity,
    projection: Projection,
) -> list[str]:
    """Names of compared fields whose values differ between two entities."""
    want = projection(desired)
    have = projection(current)
    return sorted(k for k in set(want) | set(have) if want.get(k) != have.get(k))


def plan_reconcile(
    source: Iterable[SyncEntity],
    target: Iterable[SyncEntity],
    projection: Projection,
) -> ReconcilePlan:
    """Plan a source -> target sweep.

    Args:
        source: Source entities already mapped into the target schema
        target: Entities currently in the target
        projection: Selects the compared fields of a target-schema entity

    Returns:
        ReconcilePlan with creates and updates in source order and deletes
        in target order
    """
    source_map = index_by_id(source)
    target_map = index_by_id(target)

    plan = ReconcilePlan()
    for entity_id, desired in source_map.items():
        current = target_map.get(entity_id)
        if current is None:
            plan.to_create.append(desired)
        elif changed_fields(desired, current, projection):
            plan.to_update.append(desired)

    plan.to_delete = [entity_id for entity_id in target_map if entity_id not in source_map]
    return plan


def plan_reverse(
    source: Iterable[SyncEntity],
    target: Iterable[SyncEntity],
) -> list[SyncEntity]:
    """Target entities missing from the source, for re-import.

    The source is authoritative, so the reverse direction only creates.
    """
    source_ids = set(index_by_id(source))
    return [entity for entity_id, entity in index_by_id(target).items() if entity_id not in source_ids]
