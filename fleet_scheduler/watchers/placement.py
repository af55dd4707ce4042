"""
Placement watcher decisions.

  created                      → enqueue
  generation bumped / spec
  changed / deletion started   → enqueue
  status or metadata only      → ignore (the scheduler's own status writes
                                 land here and must not loop)
  deleted                      → enqueue
"""

from __future__ import annotations

import logging
from typing import Optional, Tuple

from fleet_scheduler.shared.models import Placement

logger = logging.getLogger(__name__)


def on_placement_created(placement: Optional[Placement]) -> Tuple[str, bool]:
    if placement is None:
        logger.warning("placement create event carried no object")
        return "", False
    return placement.key, True


def on_placement_updated(
    old: Optional[Placement], new: Optional[Placement],
) -> Tuple[str, bool]:
    if old is None or new is None:
        logger.warning("placement update event is missing the old or new object")
        return "", False
    if new.meta.generation != old.meta.generation or new.spec != old.spec:
        return new.key, True
    if new.meta.deletion_timestamp is not None and old.meta.deletion_timestamp is None:
        return new.key, True
    return new.key, False


def on_placement_deleted(placement: Optional[Placement]) -> Tuple[str, bool]:
    if placement is None:
        logger.warning("placement delete event carried no object")
        return "", False
    return placement.key, True
