"""Post-creation side effects: reply targets from in-text post mentions, and legacy permalinks."""

from __future__ import annotations

import logging
import re
from typing import TYPE_CHECKING, NamedTuple

from .exceptions import TargetCreateError
from .models import EntityKind

if TYPE_CHECKING:
    from .identity import IdentityMapper
    from .models import CreatedPost, SourcePost
    from .protocols import TargetSystem

logger: logging.Logger = logging.getLogger(__name__)

_POST_MENTION_PATTERN = re.compile(r"<POSTMENTION\s+[^>]*>", re.IGNORECASE)
_ATTRIBUTE_PATTERN = re.compile(r'(\w+)="([^"]*)"')


class PostMention(NamedTuple):
    number: int
    post_id: int | None


def find_post_mention(raw: str | None, discussion_id: int) -> PostMention | None:
    """Return the first mention of a post of the same discussion in raw.

    Mentions of posts in other discussions are ignored, as are numbers that
    are not positive. The mentioned post's source id is included when the tag
    carries one.
    """
    if not raw:
        return None
    for tag in _POST_MENTION_PATTERN.finditer(raw):
        attributes = {key.lower(): value for key, value in _ATTRIBUTE_PATTERN.findall(tag.group(0))}
        if attributes.get("discussionid") != str(discussion_id):
            continue
        number = attributes.get("number", "")
        if number.isdigit() and int(number) > 0:
            post_id = attributes.get("id", "")
            return PostMention(int(number), int(post_id) if post_id.isdigit() else None)
    return None


def topic_permalink(discussion_id: int, slug: str) -> str:
    return f"d/{discussion_id}-{slug}"


def post_permalink(discussion_id: int, slug: str, post_number: int) -> str:
    return f"{topic_permalink(discussion_id, slug)}/{post_number}"


class CrossReferenceResolver:
    """Tracks created posts by their source position and emits the cross references.

    The mentioned source post number is translated to the post number the
    target assigned. Posts created during this run are looked up directly;
    posts created by an earlier run are found through the identity mapper and
    their number is asked from the target. A mention that cannot be resolved
    is dropped.
    """

    _target: TargetSystem
    _mapper: IdentityMapper
    _post_numbers: dict[tuple[int, int], int]

    def __init__(self, target: TargetSystem, mapper: IdentityMapper) -> None:
        self._target = target
        self._mapper = mapper
        self._post_numbers = {}

    def record_created(self, post: SourcePost, created: CreatedPost) -> None:
        self._post_numbers[(post.discussion_id, post.post_number)] = created.post_number

    def reply_to_post_number(self, post: SourcePost) -> int | None:
        mention = find_post_mention(post.raw, post.discussion_id)
        if mention is None or mention.number == post.post_number or mention.post_id == post.id:
            return None
        key = (post.discussion_id, mention.number)
        resolved = self._post_numbers.get(key)
        if resolved is None and mention.post_id is not None:
            resolved = self._migrated_post_number(mention.post_id)
            if resolved is not None:
                self._post_numbers[key] = resolved
        if resolved is None:
            logger.debug(
                f"Post {post.id}: mentioned post #{mention.number} of discussion {post.discussion_id} "
                "is not migrated, dropping reply link"
            )
        return resolved

    def _migrated_post_number(self, source_post_id: int) -> int | None:
        target_post_id = self._mapper.lookup(EntityKind.POST, source_post_id)
        if target_post_id is None:
            return None
        try:
            return self._target.get_post_number(target_post_id)
        except TargetCreateError as e:
            logger.warning(f"Could not look up post {target_post_id} (source post {source_post_id}): {e}")
            return None

    def register_permalinks(self, post: SourcePost, created: CreatedPost) -> bool:
        """Point the post's legacy URL at its new location. Failures are logged, not raised."""
        if post.is_first_post:
            url = topic_permalink(post.discussion_id, post.slug)
            kwargs = {"topic_id": created.topic_id}
        else:
            url = post_permalink(post.discussion_id, post.slug, post.post_number)
            kwargs = {"post_id": created.id}
        try:
            self._target.create_permalink(url, **kwargs)
        except TargetCreateError as e:
            logger.warning(f"Could not create permalink {url} for post {post.id}: {e}")
            return False
        return True
