"""Data models for migration between the Flarum source and the Discourse target.

Source records are immutable rows as read from Flarum's MySQL tables. Target
entities are the normalized objects handed to the TargetSystem for creation.
Neither side knows about the other; the Migrator translates between them.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum


class EntityKind(StrEnum):
    """Kinds of entities tracked by the identity mapper."""

    USER = "user"
    CATEGORY = "category"
    TOPIC = "topic"  # keyed by the source id of the topic's first post
    POST = "post"
    DISCUSSION = "discussion"  # source discussion id -> target topic id
    REACTION = "reaction"


# --- Source records -----------------------------------------------------------


@dataclass(frozen=True)
class SourceUser:
    id: int
    username: str | None
    email: str | None
    nickname: str | None = None
    joined_at: datetime | None = None
    last_seen_at: datetime | None = None
    is_email_confirmed: bool = False
    suspended_until: datetime | None = None
    bio: str | None = None
    avatar_url: str | None = None


@dataclass(frozen=True)
class SourceCategory:
    """A Flarum tag. Top-level tags have no parent_id."""

    id: int
    name: str
    slug: str = ""
    position: int | None = None
    description: str | None = None
    color: str | None = None
    parent_id: int | None = None
    is_restricted: bool = False
    icon: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(frozen=True)
class SourcePost:
    """One row of the discussion/post join.

    Discussion-level attributes are repeated on every post of the discussion.
    first_post_id is the discussion's declared first post; it may be missing or
    point at a post that was not exported (hidden or deleted).
    """

    id: int
    discussion_id: int
    post_number: int
    raw: str | None
    user_id: int | None
    created_at: datetime | None
    title: str = ""
    slug: str = ""
    first_post_id: int | None = None
    category_id: int | None = None
    is_sticky: bool = False
    is_locked: bool = False
    is_private: bool = False

    @property
    def is_first_post(self) -> bool:
        return self.first_post_id == self.id


@dataclass(frozen=True)
class SourceLike:
    post_id: int
    user_id: int
    created_at: datetime | None = None


@dataclass(frozen=True)
class SourceReaction:
    """A row of post_reactions joined with its reaction type."""

    id: int
    post_id: int
    user_id: int
    identifier: str


@dataclass(frozen=True)
class SourceGroupMembership:
    user_id: int
    group_name: str


@dataclass(frozen=True)
class SourceLockedDiscussion:
    discussion_id: int
    first_post_id: int | None


# --- Target entities ----------------------------------------------------------


@dataclass
class User:
    username: str
    email: str
    name: str
    created_at: datetime | None = None
    last_seen_at: datetime | None = None
    suspended_till: datetime | None = None
    bio_raw: str | None = None
    approved: bool = False


@dataclass
class Category:
    """A Discourse category. Children carry the target id of an already-created parent."""

    name: str
    slug: str = ""
    position: int | None = None
    description: str | None = None
    color: str | None = None  # six hex digits, no '#'
    read_restricted: bool = False
    parent_category_id: int | None = None
    icon: str | None = None


@dataclass
class Topic:
    """A reconstructed discussion thread.

    A topic has no identity of its own: it comes into existence together with
    its first post, and the identity mapper records it under the source id of
    that first post. id stays None until the first post has been created.
    """

    title: str
    category_id: int | None = None
    pinned_globally: bool = False
    visible: bool = True
    closed: bool = False
    created_at: datetime | None = None
    id: int | None = None


@dataclass
class Post:
    """A post to create.

    topic_id is None for a topic's first post. post_number is the post's
    ordinal within its discussion and doubles as the reply sequence.
    """

    raw: str
    user_id: int
    post_number: int
    topic_id: int | None = None
    reply_to_post_number: int | None = None
    created_at: datetime | None = None


@dataclass(frozen=True)
class CreatedPost:
    """Identifiers the target assigned to a newly created post."""

    id: int
    topic_id: int
    post_number: int
