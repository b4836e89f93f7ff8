"""Reconciler output: the next required filter and the relation mutations."""

from typing import Dict, List, Set

from pydantic import BaseModel, Field

from trackmux.models.tracking import ActorId, WatchRelation


class ReconcileOutcome(BaseModel):
    """Result of one pure reconciliation over a batch."""

    required_filter_set: Set[ActorId] = Field(default_factory=set)
    changed: bool = False
    relations_to_add: List[WatchRelation] = []
    relations_to_remove: List[WatchRelation] = []
    resulting_counts: Dict[ActorId, int] = {}
    added_to_filter: Set[ActorId] = Field(default_factory=set)
    removed_from_filter: Set[ActorId] = Field(default_factory=set)

    def removals_by_group(self) -> Dict[str, List[ActorId]]:
        """Group relation removals the way the tracking store deletes them."""
        grouped: Dict[str, List[ActorId]] = {}
        for relation in self.relations_to_remove:
            grouped.setdefault(relation.group_id, []).append(relation.actor_id)
        return grouped
