"""
fleet_scheduler/control_plane/policy_validator.py
──────────────────────────────────────────────────
Policy validation: semantic checks before a scheduling cycle runs.

Admission webhooks normally reject malformed placements before they reach
the store. The scheduler does not rely on that: every cycle re-validates the
policy it is about to act on, because a bad policy that slipped through
would otherwise produce nonsense bindings.

It runs AFTER pydantic validation (schema correctness) and BEFORE the
snapshot is taken and the pipeline runs.

What it checks
───────────────
  1. PickAll:   no number_of_clusters, no cluster_names, no topology spread.
  2. PickN:     number_of_clusters is set and ≥ 0; min_clusters does not
                exceed it; no cluster_names.
  3. PickFixed: cluster_names is non-empty and has no duplicates; no
                number_of_clusters, affinity or topology spread; min_clusters
                does not exceed the number of names.
  4. Topology:  max_skew ≥ 1; each topology_key appears once.
  5. Affinity:  preferred weights within [-100, 100].

What it does NOT check
───────────────────────
  • Whether the named or matching clusters exist. That is the pipeline's job,
    and the answer changes as the fleet changes.

Error handling contract
────────────────────────
  validate_policy() raises PolicyViolationError with a human-readable reason.
  The orchestrator records it as SchedulingFailed and does not requeue the
  placement faster than the normal resync.
"""

from __future__ import annotations

from fleet_scheduler.shared.errors import PolicyViolationError
from fleet_scheduler.shared.models import PlacementPolicy, PlacementType

MAX_PREFERRED_WEIGHT: int = 100
"""Absolute bound on a preferred affinity term's weight."""


def validate_policy(policy: PlacementPolicy) -> None:
    """
    Run all policy checks.

    Raises:
        PolicyViolationError: with a descriptive reason string.
    """
    if policy.placement_type == PlacementType.PICK_ALL:
        _check_pick_all(policy)
    elif policy.placement_type == PlacementType.PICK_N:
        _check_pick_n(policy)
    else:
        _check_pick_fixed(policy)
    _check_topology(policy)
    _check_affinity_weights(policy)


# ── Individual checks ─────────────────────────────────────────────────────────

def _check_pick_all(policy: PlacementPolicy) -> None:
    if policy.number_of_clusters is not None:
        raise PolicyViolationError(
            "PickAll policy must not set number_of_clusters"
        )
    if policy.cluster_names:
        raise PolicyViolationError("PickAll policy must not set cluster_names")
    if policy.topology_spread_constraints:
        raise PolicyViolationError(
            "PickAll policy must not set topology spread constraints"
        )


def _check_pick_n(policy: PlacementPolicy) -> None:
    n = policy.number_of_clusters
    if n is None:
        raise PolicyViolationError("PickN policy requires number_of_clusters")
    if n < 0:
        raise PolicyViolationError(
            f"PickN number_of_clusters must be >= 0, got {n}"
        )
    if policy.min_clusters > n:
        raise PolicyViolationError(
            f"min_clusters {policy.min_clusters} exceeds number_of_clusters {n}"
        )
    if policy.cluster_names:
        raise PolicyViolationError("PickN policy must not set cluster_names")


def _check_pick_fixed(policy: PlacementPolicy) -> None:
    names = policy.cluster_names
    if not names:
        raise PolicyViolationError("PickFixed policy requires cluster_names")
    dupes = sorted({n for n in names if names.count(n) > 1})
    if dupes:
        raise PolicyViolationError(
            f"PickFixed cluster_names contains duplicates: {', '.join(dupes)}"
        )
    if policy.number_of_clusters is not None:
        raise PolicyViolationError(
            "PickFixed policy must not set number_of_clusters"
        )
    if policy.affinity is not None:
        raise PolicyViolationError("PickFixed policy must not set affinity")
    if policy.topology_spread_constraints:
        raise PolicyViolationError(
            "PickFixed policy must not set topology spread constraints"
        )
    if policy.min_clusters > len(names):
        raise PolicyViolationError(
            f"min_clusters {policy.min_clusters} exceeds the "
            f"{len(names)} named cluster(s)"
        )


def _check_topology(policy: PlacementPolicy) -> None:
    seen = set()
    for constraint in policy.topology_spread_constraints:
        if constraint.max_skew < 1:
            raise PolicyViolationError(
                f"topology spread on {constraint.topology_key!r}: "
                f"max_skew must be >= 1, got {constraint.max_skew}"
            )
        if constraint.topology_key in seen:
            raise PolicyViolationError(
                f"topology key {constraint.topology_key!r} is constrained twice"
            )
        seen.add(constraint.topology_key)


def _check_affinity_weights(policy: PlacementPolicy) -> None:
    # pydantic enforces the same bound on construction; model_construct() skips it.
    if policy.affinity is None:
        return
    for preferred in policy.affinity.preferred_terms:
        if abs(preferred.weight) > MAX_PREFERRED_WEIGHT:
            raise PolicyViolationError(
                f"preferred affinity weight {preferred.weight} is outside "
                f"[-{MAX_PREFERRED_WEIGHT}, {MAX_PREFERRED_WEIGHT}]"
            )
