"""Migration orchestrator that coordinates the Flarum source and the Discourse target.

Migration Flow
--------------
The migration runs as a fixed sequence of phases. Each phase streams its
source table through the batch runner and consults the identity mapper
before creating anything, so an interrupted run can simply be started again.

Phase 1: import_users
    - Validate username and email, create the user, then upload the avatar
      from the uploads directory if there is one

Phase 2: import_categories
    - Flarum tags become categories; parents are created before children so
      that every child can name its parent's target id

Phase 3: import_topics_and_posts
    - Ensure the guest user (author of posts whose user is not migrated)
    - Page through the discussion/post join ordered by creation time
    - Per page, reconstruct the first-post pointer of every discussion
      (a discussion migrated on an earlier page or run keeps its topic)
    - Per post: transform the body, create a topic (first post) or a reply,
      record the mapping, then point the legacy permalink at the new post

Phase 4: import_likes
Phase 5: import_reactions
    - Both run with the per-day like limit raised and restore it afterwards

Phase 6: add_users_to_groups
    - Flarum's Admin and Moderator groups map to Discourse's staff groups

Phase 7: mark_topics_closed
    - Locked discussions are closed last, so that replies to them could be
      created while they were still open

Error Handling
--------------
- Record problems: counted per phase by the batch runner, the run goes on
- Phase problems (e.g. a site setting that cannot be changed): logged and
  recorded in the stats, the next phase still runs
- Store connection loss: raised, the run stops
"""

from __future__ import annotations

import html
import logging
import re
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Final, TypeVar

from .batches import BatchResult, BatchRunner, PageFetcher, RecordHandler
from .config import DEFAULT_BATCH_SIZE, DEFAULT_GUEST_EMAIL, DEFAULT_GUEST_USERNAME
from .content import MarkupTransformer
from .cross_references import CrossReferenceResolver
from .discourse_target import site_settings_override
from .exceptions import (
    MigrationError,
    RecordValidationError,
    ReferentialIntegrityError,
    StoreConnectionError,
    TargetCreateError,
)
from .identity import reaction_key
from .models import Category, EntityKind, Post, Topic, User
from .threads import reconstruct_page

if TYPE_CHECKING:
    from pathlib import Path

    from .identity import IdentityMapper
    from .models import (
        SourceCategory,
        SourceGroupMembership,
        SourceLike,
        SourceLockedDiscussion,
        SourcePost,
        SourceReaction,
        SourceUser,
    )
    from .protocols import SourceSystem, TargetSystem

logger: logging.Logger = logging.getLogger(__name__)

T = TypeVar("T")

PHASES: Final[tuple[str, ...]] = (
    "import_users",
    "import_categories",
    "import_topics_and_posts",
    "import_likes",
    "import_reactions",
    "add_users_to_groups",
    "mark_topics_closed",
)

DEFAULT_GROUP_NAME_MAP: Final[dict[str, str]] = {"Admin": "admins", "Moderator": "moderators"}
DEFAULT_RATE_LIMIT_OVERRIDES: Final[dict[str, str]] = {"max_likes_per_day": "5000000"}

_EMAIL_PATTERN: Final[re.Pattern[str]] = re.compile(r"[^@\s]+@[^@\s]+\.[^@\s]+")


@dataclass
class MigrationStats:
    """Statistics collected during migration, one BatchResult per phase that ran."""

    phases: dict[str, BatchResult] = field(default_factory=dict)
    errors: list[str] = field(default_factory=list)

    @property
    def created(self) -> int:
        return sum(result.created for result in self.phases.values())

    @property
    def skipped(self) -> int:
        return sum(result.skipped for result in self.phases.values())

    @property
    def failed(self) -> int:
        return sum(result.failed for result in self.phases.values())


@dataclass
class MigrationResult:
    """Result of a migration run."""

    success: bool
    stats: MigrationStats


def _paged(items: Sequence[T]) -> PageFetcher[T]:
    """Page fetcher over an already loaded list."""

    def fetch(offset: int, limit: int) -> Sequence[T]:
        return items[offset : offset + limit]

    return fetch


def _parents_first(categories: Iterable[SourceCategory]) -> list[SourceCategory]:
    """Order categories so that every parent comes before its children."""
    by_id = {category.id: category for category in categories}

    def depth(category: SourceCategory) -> int:
        seen = {category.id}
        level = 0
        parent_id = category.parent_id
        while parent_id is not None and parent_id in by_id and parent_id not in seen:
            seen.add(parent_id)
            level += 1
            parent_id = by_id[parent_id].parent_id
        return level

    return sorted(by_id.values(), key=lambda c: (depth(c), c.id))


def _category_color(color: str | None) -> str | None:
    if not color:
        return None
    return color.replace("#", "")[:6] or None


class Migrator:
    """Orchestrates migration from a Flarum source to a Discourse target.

    Usage:
        source = FlarumSource(flarum_source.get_connection(settings), settings.table_prefix)
        target = DiscourseTarget.from_settings(settings)
        mapper = IdentityMapper(DiscourseMappingStore(discourse_mapping.get_connection(dsn)))
        result = Migrator(source, target, mapper).migrate()

    All cross-run state lives in the identity mapper. State kept on the
    Migrator itself (reply targets, discussion to topic ids) only covers
    posts created during this run.
    """

    _source: SourceSystem
    _target: TargetSystem
    _mapper: IdentityMapper
    _runner: BatchRunner
    _cross_references: CrossReferenceResolver
    _guest_user_id: int | None

    def __init__(
        self,
        source: SourceSystem,
        target: TargetSystem,
        mapper: IdentityMapper,
        *,
        batch_size: int = DEFAULT_BATCH_SIZE,
        uploads_dir: Path | None = None,
        guest_username: str = DEFAULT_GUEST_USERNAME,
        guest_email: str = DEFAULT_GUEST_EMAIL,
        group_name_map: dict[str, str] | None = None,
        rate_limit_overrides: dict[str, str] | None = None,
    ) -> None:
        """Initialize the migrator.

        Args:
            source: Source system to migrate from
            target: Target system to migrate to
            mapper: Identity mapper holding the mappings of earlier runs
            batch_size: Number of rows fetched per page
            uploads_dir: Directory holding Flarum's avatar files, if avatars are migrated
            guest_username: Author of posts whose user is not migrated, and of unresolved mentions
            guest_email: Email used when the guest user has to be created
            group_name_map: Flarum group name -> Discourse group name
            rate_limit_overrides: Site settings raised while likes and reactions are imported
        """
        self._source = source
        self._target = target
        self._mapper = mapper
        self._runner = BatchRunner(batch_size)
        self._uploads_dir = uploads_dir
        self._guest_username = guest_username
        self._guest_email = guest_email
        self._group_name_map = dict(DEFAULT_GROUP_NAME_MAP if group_name_map is None else group_name_map)
        self._rate_limit_overrides = dict(
            DEFAULT_RATE_LIMIT_OVERRIDES if rate_limit_overrides is None else rate_limit_overrides
        )
        self._cross_references = CrossReferenceResolver(target, mapper)
        self._guest_user_id = None

    def migrate(self, phases: Iterable[str] | None = None) -> MigrationResult:
        """Execute the migration.

        Args:
            phases: Names of the phases to run (default: all). They always run
                in their fixed order.

        Returns:
            MigrationResult with per-phase statistics

        Raises:
            ValueError: If an unknown phase is requested
            StoreConnectionError: If the source or the target becomes unreachable
        """
        selected = set(PHASES if phases is None else phases)
        unknown = selected.difference(PHASES)
        if unknown:
            msg = f"Unknown phase(s): {', '.join(sorted(unknown))}"
            raise ValueError(msg)

        steps: dict[str, Callable[[], BatchResult]] = {
            "import_users": self.import_users,
            "import_categories": self.import_categories,
            "import_topics_and_posts": self.import_topics_and_posts,
            "import_likes": self.import_likes,
            "import_reactions": self.import_reactions,
            "add_users_to_groups": self.add_users_to_groups,
            "mark_topics_closed": self.mark_topics_closed,
        }

        stats = MigrationStats()
        logger.info("Starting Flarum to Discourse migration")
        for name in PHASES:
            if name not in selected:
                continue
            print(f"\nPhase {name}")
            try:
                stats.phases[name] = steps[name]()
            except StoreConnectionError:
                logger.error(f"Lost a data store during {name}, stopping")
                raise
            except MigrationError as e:
                logger.exception(f"Phase {name} failed")
                stats.errors.append(f"{name}: {e}")

        success = not stats.errors and stats.failed == 0
        if success:
            logger.info(f"Migration completed: {stats.created} records created, {stats.skipped} skipped")
        else:
            logger.error(
                f"Migration finished with problems: {stats.failed} failed records, {len(stats.errors)} failed phases"
            )
        return MigrationResult(success=success, stats=stats)

    # --- users -----------------------------------------------------------------

    def import_users(self) -> BatchResult:
        handler = RecordHandler(
            describe=lambda u: f"user {u.id} ({u.username})",
            process=self._import_user,
            is_done=lambda u: self._mapper.is_mapped(EntityKind.USER, u.id),
        )
        return self._runner.run("users", self._source.count_users(), self._source.get_users, handler)

    def _import_user(self, source_user: SourceUser) -> bool:
        username = (source_user.username or "").strip()
        if not username:
            msg = "username is blank"
            raise RecordValidationError(msg)
        email = (source_user.email or "").strip()
        if not _EMAIL_PATTERN.fullmatch(email):
            msg = f"invalid email address {email!r}"
            raise RecordValidationError(msg)

        user = User(
            username=username,
            email=email,
            name=(source_user.nickname or "").strip() or username,
            created_at=source_user.joined_at,
            last_seen_at=source_user.last_seen_at,
            suspended_till=source_user.suspended_until,
            bio_raw=source_user.bio,
            approved=source_user.is_email_confirmed,
        )
        user_id = self._target.create_user(user)
        self._mapper.register(EntityKind.USER, source_user.id, user_id)

        if source_user.avatar_url:
            self._import_avatar(source_user, user_id)
        return True

    def _import_avatar(self, source_user: SourceUser, user_id: int) -> None:
        """Upload the user's avatar file. Failures are logged; the user is kept."""
        if self._uploads_dir is None or not source_user.avatar_url:
            return
        path = self._uploads_dir / source_user.avatar_url
        if not path.is_file():
            logger.warning(f"Avatar {path} of user {source_user.id} not found")
            return
        try:
            self._target.upload_avatar(user_id, path)
        except (TargetCreateError, OSError) as e:
            logger.warning(f"Failed to upload avatar for user {source_user.id}: {e}")

    # --- categories ------------------------------------------------------------

    def import_categories(self) -> BatchResult:
        categories = _parents_first(self._source.get_categories())
        handler = RecordHandler(
            describe=lambda c: f"category {c.id} ({c.name})",
            process=self._import_category,
            is_done=lambda c: self._mapper.is_mapped(EntityKind.CATEGORY, c.id),
        )
        return self._runner.run("categories", len(categories), _paged(categories), handler)

    def _import_category(self, source_category: SourceCategory) -> bool:
        name = (source_category.name or "").strip()
        if not name:
            msg = "category name is blank"
            raise RecordValidationError(msg)

        parent_id: int | None = None
        if source_category.parent_id is not None:
            parent_id = self._mapper.lookup(EntityKind.CATEGORY, source_category.parent_id)
            if parent_id is None:
                msg = f"parent category {source_category.parent_id} is not migrated"
                raise ReferentialIntegrityError(msg)

        category = Category(
            name=name,
            slug=source_category.slug,
            position=source_category.position,
            description=source_category.description,
            color=_category_color(source_category.color),
            read_restricted=source_category.is_restricted,
            parent_category_id=parent_id,
            icon=source_category.icon,
        )
        self._mapper.register(EntityKind.CATEGORY, source_category.id, self._target.create_category(category))
        return True

    # --- topics and posts ------------------------------------------------------

    def import_topics_and_posts(self) -> BatchResult:
        self._guest_user_id = self._target.ensure_user(self._guest_username, self._guest_email, "Guest User")
        transformer = MarkupTransformer(self._target.find_username, self._guest_username)

        def is_topic(first_post_id: int) -> bool:
            return self._mapper.is_mapped(EntityKind.TOPIC, first_post_id)

        def migrated_first_post(discussion_id: int) -> int | None:
            topic_id = self._mapper.lookup(EntityKind.DISCUSSION, discussion_id)
            return None if topic_id is None else self._mapper.reverse_lookup(EntityKind.TOPIC, topic_id)

        handler = RecordHandler(
            describe=lambda p: f"post {p.id} of discussion {p.discussion_id}",
            process=lambda p: self._import_post(p, transformer),
            is_done=lambda p: self._mapper.is_mapped(EntityKind.POST, p.id),
            prepare_page=lambda page: reconstruct_page(page, is_topic, migrated_first_post),
        )
        return self._runner.run("posts", self._source.count_posts(), self._source.get_posts, handler)

    def _import_post(self, post: SourcePost, transformer: MarkupTransformer) -> bool:
        raw = transformer.transform(post.raw)
        if not raw:
            msg = "post body is empty"
            raise RecordValidationError(msg)

        user_id = self._mapper.lookup(EntityKind.USER, post.user_id)
        if user_id is None:
            user_id = self._guest_user_id
        if user_id is None:
            msg = "guest user is not set up"
            raise MigrationError(msg)

        if post.is_first_post:
            topic = Topic(
                title=html.unescape(post.title).strip(),
                category_id=self._mapper.lookup(EntityKind.CATEGORY, post.category_id),
                pinned_globally=post.is_sticky,
                visible=not post.is_private,
                created_at=post.created_at,
            )
            if not topic.title:
                msg = f"discussion {post.discussion_id} has no title"
                raise RecordValidationError(msg)
            created = self._target.create_post(
                Post(raw=raw, user_id=user_id, post_number=post.post_number, created_at=post.created_at), topic
            )
            self._mapper.register(EntityKind.TOPIC, post.id, created.topic_id)
            self._mapper.register(EntityKind.DISCUSSION, post.discussion_id, created.topic_id)
        else:
            topic_id = self._mapper.lookup(EntityKind.TOPIC, post.first_post_id)
            if topic_id is None:
                msg = f"first post {post.first_post_id} of discussion {post.discussion_id} is not migrated"
                raise ReferentialIntegrityError(msg)
            reply = Post(
                raw=raw,
                user_id=user_id,
                post_number=post.post_number,
                topic_id=topic_id,
                reply_to_post_number=self._cross_references.reply_to_post_number(post),
                created_at=post.created_at,
            )
            created = self._target.create_post(reply)

        self._mapper.register(EntityKind.POST, post.id, created.id)
        self._cross_references.record_created(post, created)
        self._cross_references.register_permalinks(post, created)
        return True

    # --- likes and reactions ---------------------------------------------------

    def import_likes(self) -> BatchResult:
        handler = RecordHandler(
            describe=lambda like: f"like of post {like.post_id} by user {like.user_id}",
            process=self._import_like,
        )
        with site_settings_override(self._target, self._rate_limit_overrides):
            return self._runner.run("likes", self._source.count_likes(), self._source.get_likes, handler)

    def _import_like(self, like: SourceLike) -> bool:
        user_id = self._mapper.lookup(EntityKind.USER, like.user_id)
        post_id = self._mapper.lookup(EntityKind.POST, like.post_id)
        if user_id is None or post_id is None:
            logger.debug(f"Like of post {like.post_id} by user {like.user_id}: user or post not migrated")
            return False
        return self._target.create_like(user_id, post_id)

    def import_reactions(self) -> BatchResult:
        handler = RecordHandler(
            describe=lambda r: f"reaction {r.id} ({r.identifier}) on post {r.post_id}",
            process=self._import_reaction,
            is_done=lambda r: self._mapper.is_mapped(EntityKind.REACTION, r.id),
        )
        with site_settings_override(self._target, self._rate_limit_overrides):
            return self._runner.run(
                "reactions", self._source.count_reactions(), self._source.get_reactions, handler
            )

    def _import_reaction(self, reaction: SourceReaction) -> bool:
        user_id = self._mapper.lookup(EntityKind.USER, reaction.user_id)
        post_id = self._mapper.lookup(EntityKind.POST, reaction.post_id)
        if user_id is None or post_id is None:
            logger.debug(f"Reaction {reaction.id}: user or post not migrated")
            return False
        if not reaction.identifier:
            msg = "reaction has no identifier"
            raise RecordValidationError(msg)

        key = reaction_key(user_id, post_id)
        earlier = self._mapper.reverse_lookup(EntityKind.REACTION, key)
        if earlier is not None:
            # Toggling again would remove the reaction created for the earlier row
            logger.debug(f"Reaction {reaction.id}: user already reacted to this post (reaction {earlier})")
            return False
        self._target.toggle_reaction(user_id, post_id, reaction.identifier)
        self._mapper.register(EntityKind.REACTION, reaction.id, key)
        return True

    # --- groups and topic status -----------------------------------------------

    def add_users_to_groups(self) -> BatchResult:
        memberships = self._source.get_group_memberships()
        handler = RecordHandler(
            describe=lambda m: f"membership of user {m.user_id} in {m.group_name}",
            process=self._add_group_member,
        )
        return self._runner.run("group memberships", len(memberships), _paged(memberships), handler)

    def _add_group_member(self, membership: SourceGroupMembership) -> bool:
        group_name = self._group_name_map.get(membership.group_name)
        if group_name is None:
            return False
        user_id = self._mapper.lookup(EntityKind.USER, membership.user_id)
        if user_id is None:
            logger.debug(f"Group {group_name}: user {membership.user_id} not migrated")
            return False
        return self._target.add_group_member(group_name, user_id)

    def mark_topics_closed(self) -> BatchResult:
        discussions = self._source.get_locked_discussions()
        handler = RecordHandler(
            describe=lambda d: f"locked discussion {d.discussion_id}",
            process=self._close_topic,
        )
        return self._runner.run("closed topics", len(discussions), _paged(discussions), handler)

    def _close_topic(self, discussion: SourceLockedDiscussion) -> bool:
        topic_id = self._mapper.lookup(EntityKind.DISCUSSION, discussion.discussion_id)
        if topic_id is None:
            topic_id = self._mapper.lookup(EntityKind.TOPIC, discussion.first_post_id)
        if topic_id is None:
            logger.debug(f"Locked discussion {discussion.discussion_id} has no migrated topic")
            return False
        self._target.close_topic(topic_id)
        return True
