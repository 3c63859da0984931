"""Recovery of a consistent first-post pointer for every post of a discussion.

Flarum records the first post of a discussion on the discussion row. That
pointer can be empty, or can name a post that the export query excluded
(hidden or deleted). Without a usable first post the discussion cannot become
a Discourse topic at all, so a real post of the group is always preferred over
dropping the discussion.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import replace
from itertools import groupby

from .models import SourcePost

logger: logging.Logger = logging.getLogger(__name__)


FirstPostLookup = Callable[[int], int | None]


def reconstruct_thread(
    posts: Iterable[SourcePost],
    is_known_first_post: Callable[[int], bool] | None = None,
    migrated_first_post: FirstPostLookup | None = None,
) -> list[SourcePost]:
    """Correct the first_post_id of every post in one discussion group.

    - If migrated_first_post returns the source id of the post the
      discussion's topic was built from, every post points at it, so a
      discussion spanning pages or runs keeps a single topic.
    - A pointer to a post of the group is kept, as is a pointer to a post
      outside the group that is_known_first_post reports as a topic already.
    - Any other pointer, or a missing one, is set to the post with the
      smallest id in the group.

    Returns the posts in their original order, as new records.
    """
    group = list(posts)
    if not group:
        return []

    migrated = migrated_first_post(group[0].discussion_id) if migrated_first_post is not None else None
    post_ids = {post.id for post in group}
    fallback = min(post_ids)

    corrected: list[SourcePost] = []
    for post in group:
        declared = post.first_post_id
        if migrated is not None:
            first_post_id = migrated
        elif declared is not None and (
            declared in post_ids or (is_known_first_post is not None and is_known_first_post(declared))
        ):
            first_post_id = declared
        else:
            if declared is not None:
                logger.debug(
                    f"Discussion {post.discussion_id}: first post {declared} is not exported, "
                    f"using post {fallback} instead"
                )
            first_post_id = fallback
        corrected.append(post if first_post_id == declared else replace(post, first_post_id=first_post_id))
    return corrected


def reconstruct_page(
    posts: Iterable[SourcePost],
    is_known_first_post: Callable[[int], bool] | None = None,
    migrated_first_post: FirstPostLookup | None = None,
) -> list[SourcePost]:
    """Apply reconstruct_thread to each discussion in a page of posts.

    Discussions are reconstructed independently; the page order is preserved.
    """
    page = list(posts)
    by_discussion: dict[int, list[SourcePost]] = {
        discussion_id: list(group)
        for discussion_id, group in groupby(sorted(page, key=lambda p: p.discussion_id), key=lambda p: p.discussion_id)
    }

    corrected_by_id: dict[tuple[int, int], SourcePost] = {}
    for group in by_discussion.values():
        for post in reconstruct_thread(group, is_known_first_post, migrated_first_post):
            corrected_by_id[(post.discussion_id, post.id)] = post

    return [corrected_by_id[(post.discussion_id, post.id)] for post in page]
