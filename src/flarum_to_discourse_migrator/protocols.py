"""Protocols defining the contracts for source, target and mapping stores.

The migration architecture separates concerns into four components:

1. SourceSystem: Reads Flarum rows and returns them as immutable source records
2. TargetSystem: Creates entities in Discourse and returns their new ids
3. MappingStore: Persists the source id -> target id correspondence
4. Migrator: Orchestrates the flow, reconstructs threads and transforms content

This separation allows:
- Testing the engine against in-memory fakes without MySQL or Discourse
- Keeping Flarum's query text and Discourse's API shapes at the edges
- Swapping the mapping backend (in-memory for dry runs, Discourse's own
  import_id bookkeeping for real runs)
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from pathlib import Path

    from .models import (
        Category,
        CreatedPost,
        EntityKind,
        Post,
        SourceCategory,
        SourceGroupMembership,
        SourceLike,
        SourceLockedDiscussion,
        SourcePost,
        SourceReaction,
        SourceUser,
        Topic,
        User,
    )


class SourceSystem(Protocol):
    """Protocol for reading records from the source forum.

    Large tables are exposed as count + page pairs so that the batch runner
    can stream them. Every page method must order its rows by a stable key so
    that an interrupted run resumes deterministically.

    Query failures are logged by the implementation and reported as an empty
    result (or a zero count). Only loss of connectivity is raised, as
    StoreConnectionError.
    """

    def count_users(self) -> int:
        """Return the number of users, for progress reporting."""
        ...

    def get_users(self, offset: int, limit: int) -> list[SourceUser]:
        """Return one page of users ordered by id."""
        ...

    def get_categories(self) -> list[SourceCategory]:
        """Return all categories (tags) ordered by id. Categories are few."""
        ...

    def count_posts(self) -> int:
        """Return the number of visible comment posts in visible discussions."""
        ...

    def get_posts(self, offset: int, limit: int) -> list[SourcePost]:
        """Return one page of posts ordered by creation time, then id."""
        ...

    def count_likes(self) -> int: ...

    def get_likes(self, offset: int, limit: int) -> list[SourceLike]: ...

    def count_reactions(self) -> int: ...

    def get_reactions(self, offset: int, limit: int) -> list[SourceReaction]: ...

    def get_group_memberships(self) -> list[SourceGroupMembership]: ...

    def get_locked_discussions(self) -> list[SourceLockedDiscussion]:
        """Return visible discussions that are locked, with their first post id."""
        ...


class TargetSystem(Protocol):
    """Protocol for creating entities in the target forum.

    Each create operation returns the newly assigned target id, or raises
    TargetCreateError with the reason the target gave. Connectivity loss is
    raised as StoreConnectionError.

    The Migrator calls methods in this order:
    1. create_user() / upload_avatar()
    2. create_category()
    3. ensure_user() for the guest user, then create_post() and create_permalink()
    4. create_like() and toggle_reaction(), inside a site setting override
    5. add_group_member()
    6. close_topic()
    """

    def create_user(self, user: User) -> int: ...

    def upload_avatar(self, user_id: int, path: Path) -> None:
        """Upload an image file and make it the user's custom avatar."""
        ...

    def find_username(self, username: str) -> str | None:
        """Return the canonical username for a case-insensitive match, or None."""
        ...

    def ensure_user(self, username: str, email: str, name: str) -> int:
        """Return the id of the named user, creating and activating it if needed."""
        ...

    def create_category(self, category: Category) -> int: ...

    def create_post(self, post: Post, topic: Topic | None = None) -> CreatedPost:
        """Create a post.

        With a topic, the post becomes that topic's first post and the topic
        flags (category, pinned, visible) are applied. Without one, post.topic_id
        must name an existing topic.
        """
        ...

    def get_post_number(self, post_id: int) -> int:
        """Return the number the target assigned to an existing post within its topic."""
        ...

    def create_permalink(self, url: str, *, topic_id: int | None = None, post_id: int | None = None) -> None: ...

    def create_like(self, user_id: int, post_id: int) -> bool:
        """Like a post as the given user. Returns False if the like already existed."""
        ...

    def toggle_reaction(self, user_id: int, post_id: int, reaction: str) -> None: ...

    def add_group_member(self, group_name: str, user_id: int) -> bool:
        """Add a user to a group. Returns False if the group does not exist."""
        ...

    def close_topic(self, topic_id: int) -> None: ...

    def get_site_setting(self, name: str) -> str: ...

    def set_site_setting(self, name: str, value: str) -> None: ...


class MappingStore(Protocol):
    """Persistence behind the identity mapper.

    Implementations only need to load a whole kind at once and append single
    mappings; the mapper enforces uniqueness.
    """

    def load(self, kind: EntityKind) -> dict[int, int]:
        """Return all persisted source id -> target id mappings for a kind."""
        ...

    def save(self, kind: EntityKind, source_id: int, target_id: int) -> None: ...
