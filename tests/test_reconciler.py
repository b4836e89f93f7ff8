"""Tests for the pure reconciler."""

from trackmux.models.tracking import WatchRelation
from trackmux.reconciler.engine import WatchSnapshot, reconcile, reconcile_full


def _rel(group_id: str, actor_id: int) -> WatchRelation:
    return WatchRelation(group_id=group_id, actor_id=actor_id)


class TestReconcileScenarios:
    def test_first_watcher_adds_actor(self):
        outcome = reconcile(set(), WatchSnapshot(), [_rel("g1", 100)], [])

        assert outcome.required_filter_set == {100}
        assert outcome.changed is True
        assert outcome.resulting_counts == {100: 1}
        assert outcome.added_to_filter == {100}
        assert [r.key for r in outcome.relations_to_add] == [("g1", 100)]

    def test_remove_with_other_watcher_keeps_actor(self):
        snapshot = WatchSnapshot({100: {"g1", "g2"}})
        outcome = reconcile({100}, snapshot, [], [_rel("g1", 100)])

        assert outcome.required_filter_set == {100}
        assert outcome.changed is False
        assert outcome.resulting_counts == {100: 1}
        # The relation is still removed even though the filter is untouched
        assert [r.key for r in outcome.relations_to_remove] == [("g1", 100)]

    def test_last_watcher_removal_drops_actor(self):
        snapshot = WatchSnapshot({100: {"g2"}})
        outcome = reconcile({100}, snapshot, [], [_rel("g2", 100)])

        assert outcome.required_filter_set == set()
        assert outcome.changed is True
        assert outcome.removed_from_filter == {100}
        assert outcome.resulting_counts == {100: 0}


class TestReconcileProperties:
    def test_duplicate_adds_count_once(self):
        outcome = reconcile(
            set(), WatchSnapshot(),
            [_rel("g1", 100), _rel("g1", 100), _rel("g2", 100)],
            [],
        )
        assert outcome.resulting_counts == {100: 2}
        assert len(outcome.relations_to_add) == 2

    def test_add_of_existing_relation_is_not_counted(self):
        snapshot = WatchSnapshot({100: {"g1"}})
        outcome = reconcile({100}, snapshot, [_rel("g1", 100)], [])

        assert outcome.resulting_counts == {100: 1}
        assert outcome.changed is False

    def test_remove_of_missing_relation_is_not_counted(self):
        snapshot = WatchSnapshot({100: {"g1"}})
        outcome = reconcile({100}, snapshot, [], [_rel("g9", 100)])

        assert outcome.resulting_counts == {100: 1}
        assert outcome.required_filter_set == {100}

    def test_add_and_remove_same_pair_is_a_removal(self):
        snapshot = WatchSnapshot({100: {"g1"}})
        outcome = reconcile({100}, snapshot, [_rel("g1", 100)], [_rel("g1", 100)])

        assert outcome.relations_to_add == []
        assert [r.key for r in outcome.relations_to_remove] == [("g1", 100)]
        assert outcome.required_filter_set == set()

    def test_untouched_actors_are_kept(self):
        outcome = reconcile({1, 2, 3}, WatchSnapshot(), [_rel("g1", 4)], [])

        assert outcome.required_filter_set == {1, 2, 3, 4}
        assert outcome.removed_from_filter == set()

    def test_overlapping_add_and_remove_is_noop(self):
        # g1 stops watching 100 while g2 starts: count stays at one
        snapshot = WatchSnapshot({100: {"g1"}})
        outcome = reconcile({100}, snapshot, [_rel("g2", 100)], [_rel("g1", 100)])

        assert outcome.changed is False
        assert outcome.resulting_counts == {100: 1}
        assert len(outcome.relations_to_add) == 1
        assert len(outcome.relations_to_remove) == 1

    def test_empty_batch_is_noop(self):
        outcome = reconcile({7}, WatchSnapshot(), [], [])
        assert outcome.changed is False
        assert outcome.required_filter_set == {7}

    def test_removals_grouped_by_group(self):
        snapshot = WatchSnapshot({1: {"g1"}, 2: {"g1"}, 3: {"g2"}})
        outcome = reconcile(
            {1, 2, 3}, snapshot, [],
            [_rel("g1", 1), _rel("g1", 2), _rel("g2", 3)],
        )
        grouped = outcome.removals_by_group()
        assert sorted(grouped["g1"]) == [1, 2]
        assert grouped["g2"] == [3]


class TestReconcileFull:
    def test_repairs_stale_entries(self):
        outcome = reconcile_full({1, 2, 3}, {2, 3, 4})

        assert outcome.required_filter_set == {2, 3, 4}
        assert outcome.changed is True
        assert outcome.added_to_filter == {4}
        assert outcome.removed_from_filter == {1}
        assert outcome.relations_to_add == []
        assert outcome.relations_to_remove == []

    def test_in_sync_is_noop(self):
        outcome = reconcile_full({5, 6}, [6, 5])
        assert outcome.changed is False
