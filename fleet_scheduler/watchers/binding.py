"""
Binding watcher decisions.

A binding changes far more often than its placement needs rescheduling:
downstream controllers rewrite its status on every apply and drift probe.
Only changes that can alter a scheduling decision requeue the owner.

  created                            → ignore (the scheduler made it)
  condition type / status / reason /
  observed_generation changed        → enqueue the owner
  last_transition_time or message    → ignore
  failed / drifted / diffed lists
  differ as sets                     → enqueue the owner
  same lists in another order,
  or only timestamps moved           → ignore
  spec or metadata only              → ignore
  deletion started                   → enqueue the owner
  deleted                            → enqueue the owner

The list comparison is order-insensitive: each entry is projected to its
JSON form without observation timestamps, and the two sides are compared
as sets.
"""

from __future__ import annotations

import json
import logging
from typing import Dict, FrozenSet, Iterable, List, Optional, Tuple

from pydantic import BaseModel

from fleet_scheduler.shared.models import Binding, Condition

logger = logging.getLogger(__name__)

_FAILED_EXCLUDE = {"condition": {"last_transition_time"}}
_DRIFTED_EXCLUDE = {"observation_time", "first_drifted_observed_time"}
_DIFFED_EXCLUDE = {"observation_time", "first_diffed_observed_time"}


def on_binding_created(binding: Optional[Binding]) -> Tuple[str, bool]:
    if binding is None:
        logger.warning("binding create event carried no object")
        return "", False
    return binding.owner_key or "", False


def on_binding_updated(
    old: Optional[Binding], new: Optional[Binding],
) -> Tuple[str, bool]:
    if old is None or new is None:
        logger.warning("binding update event is missing the old or new object")
        return "", False
    owner = new.owner_key
    if owner is None:
        logger.warning("binding %s has no owner label, ignoring", new.meta.name)
        return "", False

    if new.is_deleting and not old.is_deleting:
        return owner, True
    if conditions_changed(old.status.conditions, new.status.conditions):
        logger.debug("binding %s conditions changed", new.meta.name)
        return owner, True
    if placement_lists_changed(old, new):
        logger.debug("binding %s placement details changed", new.meta.name)
        return owner, True
    return owner, False


def on_binding_deleted(binding: Optional[Binding]) -> Tuple[str, bool]:
    if binding is None:
        logger.warning("binding delete event carried no object")
        return "", False
    owner = binding.owner_key
    if owner is None:
        logger.warning("binding %s has no owner label, ignoring", binding.meta.name)
        return "", False
    return owner, True


# ── Comparison helpers ────────────────────────────────────────────────────────

def conditions_changed(old: List[Condition], new: List[Condition]) -> bool:
    """True when a condition appeared, vanished, or changed a meaningful field."""
    return _condition_view(old) != _condition_view(new)


def placement_lists_changed(old: Binding, new: Binding) -> bool:
    return (
        _projection(old.status.failed_placements, _FAILED_EXCLUDE)
        != _projection(new.status.failed_placements, _FAILED_EXCLUDE)
        or _projection(old.status.drifted_placements, _DRIFTED_EXCLUDE)
        != _projection(new.status.drifted_placements, _DRIFTED_EXCLUDE)
        or _projection(old.status.diffed_placements, _DIFFED_EXCLUDE)
        != _projection(new.status.diffed_placements, _DIFFED_EXCLUDE)
    )


def _condition_view(conditions: List[Condition]) -> Dict[str, Tuple[str, str, int]]:
    return {
        c.type: (c.status.value, c.reason, c.observed_generation)
        for c in conditions
    }


def _projection(items: Iterable[BaseModel], exclude) -> FrozenSet[str]:
    return frozenset(
        json.dumps(item.model_dump(mode="json", exclude=exclude), sort_keys=True)
        for item in items
    )
