"""
Reconciler: maps per-group watch demand onto the single shared filter.

Pure computation, no I/O. Given the current filter, a snapshot of who watches
each touched actor (read before this batch's writes) and a batch of resolved
add/remove requests, it returns the filter the provider must hold afterwards
and the relation mutations to apply.

Behavioral Contract:
- Total: never raises for well-formed inputs.
- Duplicate requests within a batch count once.
- A pair both added and removed in the same batch is treated as a removal.
- An actor leaves the filter only when no group is left watching it.
- Relation mutations are returned whether or not the filter changes.
"""

from typing import Dict, Iterable, List, Mapping, Optional, Set, Tuple

from trackmux.models.reconciler import ReconcileOutcome
from trackmux.models.tracking import ActorId, WatchRelation


class WatchSnapshot:
    """Watchers per actor, as read from the tracking store at attempt start."""

    def __init__(self, watchers: Optional[Mapping[ActorId, Iterable[str]]] = None):
        self._watchers: Dict[ActorId, Set[str]] = {
            actor: set(groups) for actor, groups in (watchers or {}).items()
        }

    def base_count(self, actor_id: ActorId) -> int:
        return len(self._watchers.get(actor_id, ()))

    def holds(self, group_id: str, actor_id: ActorId) -> bool:
        return group_id in self._watchers.get(actor_id, ())


def _dedupe(requests: Iterable[WatchRelation]) -> Dict[Tuple[str, ActorId], WatchRelation]:
    """Unique (group, actor) pairs, keeping the first request for each."""
    unique: Dict[Tuple[str, ActorId], WatchRelation] = {}
    for request in requests:
        unique.setdefault(request.key, request)
    return unique


def _outcome(
    current: Set[ActorId],
    required: Set[ActorId],
    adds: List[WatchRelation],
    removes: List[WatchRelation],
    counts: Dict[ActorId, int],
) -> ReconcileOutcome:
    return ReconcileOutcome(
        required_filter_set=required,
        changed=required != current,
        relations_to_add=adds,
        relations_to_remove=removes,
        resulting_counts=counts,
        added_to_filter=required - current,
        removed_from_filter=current - required,
    )


def reconcile(
    current_filter_set: Iterable[ActorId],
    snapshot: WatchSnapshot,
    add_requests: Iterable[WatchRelation],
    remove_requests: Iterable[WatchRelation],
) -> ReconcileOutcome:
    """Compute the required filter and relation mutations for one batch."""
    current = set(current_filter_set)

    removes = _dedupe(remove_requests)
    adds = {key: rel for key, rel in _dedupe(add_requests).items() if key not in removes}

    add_delta: Dict[ActorId, int] = {}
    for group_id, actor_id in adds:
        add_delta.setdefault(actor_id, 0)
        if not snapshot.holds(group_id, actor_id):
            add_delta[actor_id] += 1

    remove_delta: Dict[ActorId, int] = {}
    for group_id, actor_id in removes:
        remove_delta.setdefault(actor_id, 0)
        if snapshot.holds(group_id, actor_id):
            remove_delta[actor_id] += 1

    counts: Dict[ActorId, int] = {}
    for actor_id in set(add_delta) | set(remove_delta):
        counts[actor_id] = (
            snapshot.base_count(actor_id)
            + add_delta.get(actor_id, 0)
            - remove_delta.get(actor_id, 0)
        )

    released = {a for a, count in counts.items() if count <= 0}
    demanded = {a for a, count in counts.items() if count > 0}
    required = (current - released) | demanded

    return _outcome(
        current,
        required,
        list(adds.values()),
        list(removes.values()),
        counts,
    )


def reconcile_full(
    current_filter_set: Iterable[ActorId],
    watched_actors: Iterable[ActorId],
) -> ReconcileOutcome:
    """Recompute the filter from scratch: exactly the actors someone watches."""
    current = set(current_filter_set)
    required = set(watched_actors)
    return _outcome(current, required, [], [], {})


