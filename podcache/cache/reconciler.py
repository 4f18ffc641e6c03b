"""
Diff-based reconciliation of a show's episode list.

Episodes are keyed by id. Content fields decide whether an episode changed;
user-local fields are never compared and are carried over from the cached
episode to the fetched one, so refreshes never lose playback state.
"""
import logging
from typing import Dict, List, Sequence, Tuple

from podcache.feeds.models import Episode

from .core import Changeset

logger = logging.getLogger("cache.reconciler")


def index_by_id(items: Sequence[Episode], label: str = "fetched") -> Dict[str, Episode]:
    """
    Map episode id -> episode.

    Duplicate ids keep the position of the first occurrence and the value of
    the last one (last write wins); each duplicate is logged.
    """
    index: Dict[str, Episode] = {}
    for item in items:
        if item.id in index:
            logger.warning(f"Duplicate episode id in {label} list: {item.id!r} (last one wins)")
        index[item.id] = item
    return index


def diff(old: Sequence[Episode], new: Sequence[Episode]) -> Changeset:
    """
    Three-way diff between two episode lists.

    Returns:
        Changeset with `added` / `updated` holding episodes from `new` and
        `removed` holding episodes from `old`, each in sequence order
    """
    old_index = index_by_id(old, "cached")
    new_index = index_by_id(new, "fetched")

    added = []
    updated = []
    for item_id, item in new_index.items():
        previous = old_index.get(item_id)
        if previous is None:
            added.append(item)
        elif item.content != previous.content:
            updated.append(item)

    removed = [item for item_id, item in old_index.items() if item_id not in new_index]
    return Changeset(added=added, removed=removed, updated=updated)


def merge(old: Sequence[Episode], new: Sequence[Episode]) -> Tuple[List[Episode], Changeset]:
    """
    Build the merged episode list for a refresh.

    The result follows the fetched order; every episode also present in
    `old` takes its user-local fields from the cached copy.

    Returns:
        (merged episodes, changeset computed against the merged episodes)
    """
    old_index = index_by_id(old, "cached")
    merged = []
    for item_id, item in index_by_id(new, "fetched").items():
        previous = old_index.get(item_id)
        merged.append(item.with_user_state_from(previous) if previous else item)

    changeset = diff(list(old_index.values()), merged)
    return merged, changeset
