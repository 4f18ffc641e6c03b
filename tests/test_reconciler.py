"""
Unit tests for diff-based reconciliation and user-state carry-over.
"""
import logging

from podcache.cache import diff, merge
from podcache.feeds.models import Episode


def ep(episode_id: str, title: str = "Title", **kwargs) -> Episode:
    return Episode(id=episode_id, title=title, **kwargs)


def ids(items):
    return [item.id for item in items]


def test_all_new_items_are_added():
    changeset = diff([], [ep("1"), ep("2"), ep("3")])
    assert ids(changeset.added) == ["1", "2", "3"]
    assert changeset.removed == []
    assert changeset.updated == []
    assert not changeset.is_empty


def test_identical_lists_produce_empty_changeset():
    items = [ep("1"), ep("2")]
    changeset = diff(items, [ep("1"), ep("2")])
    assert changeset.is_empty


def test_added_removed_updated():
    old = [ep("1", "One"), ep("2", "Two"), ep("3", "Three")]
    new = [ep("2", "Two (remastered)"), ep("3", "Three"), ep("4", "Four")]

    changeset = diff(old, new)

    assert ids(changeset.added) == ["4"]
    assert ids(changeset.removed) == ["1"]
    assert ids(changeset.updated) == ["2"]
    assert changeset.updated[0].title == "Two (remastered)"


def test_user_fields_are_not_compared():
    old = [ep("1", played=True, playback_position=120.0, local_file_url="file:///1.mp3")]
    new = [ep("1")]
    assert diff(old, new).is_empty


def test_changeset_partitions_identities():
    old = [ep(str(i), f"old {i}") for i in range(0, 10)]
    new = [ep(str(i), f"old {i}" if i % 2 else f"new {i}") for i in range(5, 15)]

    changeset = diff(old, new)
    added, removed, updated = set(ids(changeset.added)), set(ids(changeset.removed)), set(ids(changeset.updated))

    assert not (added & removed)
    assert not (added & updated)
    assert not (removed & updated)
    unchanged = {item.id for item in new} - added - updated
    assert added | updated | unchanged == {item.id for item in new}


def test_merge_carries_user_state_over():
    """Scenario: cached item 7 played, refetched with a new title."""
    old = [ep("7", "Old title", played=True, playback_position=42.5, local_file_url="file:///7.mp3")]
    new = [ep("7", "New title")]

    merged, changeset = merge(old, new)

    assert len(merged) == 1
    assert merged[0].title == "New title"
    assert merged[0].played is True
    assert merged[0].playback_position == 42.5
    assert merged[0].local_file_url == "file:///7.mp3"
    assert ids(changeset.updated) == ["7"]
    assert changeset.added == [] and changeset.removed == []


def test_merge_follows_fetched_order_and_keeps_new_items_as_is():
    old = [ep("a", played=True), ep("b")]
    new = [ep("c"), ep("b"), ep("a")]

    merged, changeset = merge(old, new)

    assert ids(merged) == ["c", "b", "a"]
    assert merged[2].played is True
    assert merged[0].played is False
    assert ids(changeset.added) == ["c"]


def test_merge_does_not_mutate_inputs():
    old = [ep("1", "Old", played=True)]
    new = [ep("1", "New")]
    merge(old, new)
    assert new[0].played is False
    assert old[0].title == "Old"


def test_duplicate_identity_last_write_wins(caplog):
    new = [ep("1", "first"), ep("2"), ep("1", "second")]

    with caplog.at_level(logging.WARNING, logger="cache.reconciler"):
        merged, changeset = merge([], new)

    assert ids(merged) == ["1", "2"]
    assert merged[0].title == "second"
    assert ids(changeset.added) == ["1", "2"]
    assert any("Duplicate episode id" in record.message for record in caplog.records)
