"""Read access to a Flarum MySQL database."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Final

import pymysql
import pymysql.cursors

from .exceptions import StoreConnectionError
from .models import (
    SourceCategory,
    SourceGroupMembership,
    SourceLike,
    SourceLockedDiscussion,
    SourcePost,
    SourceReaction,
    SourceUser,
)

if TYPE_CHECKING:
    from pymysql.connections import Connection

    from .config import Settings

logger: logging.Logger = logging.getLogger(__name__)

Row = dict[str, Any]

# Client errors meaning the server is gone: can't connect, gone away, lost during query
_CONNECTION_LOST_CODES: Final[frozenset[int]] = frozenset({2003, 2006, 2013, 2055})


def get_connection(settings: Settings) -> Connection:
    """Open a connection to the Flarum database."""
    try:
        return pymysql.connect(
            host=settings.flarum_host,
            port=settings.flarum_port,
            user=settings.flarum_user,
            password=settings.flarum_password or "",
            database=settings.flarum_db,
            charset="utf8mb4",
            cursorclass=pymysql.cursors.DictCursor,
            connect_timeout=10,
            read_timeout=300,
        )
    except pymysql.MySQLError as e:
        msg = f"Cannot connect to Flarum database {settings.flarum_db} on {settings.flarum_host}: {e}"
        raise StoreConnectionError(msg) from e


class FlarumSource:
    """SourceSystem reading a Flarum database through pymysql.

    Only comment posts are exported; hidden posts and posts of hidden
    discussions are left out.
    """

    _connection: Connection
    _prefix: str

    def __init__(self, connection: Connection, table_prefix: str = "") -> None:
        self._connection = connection
        self._prefix = table_prefix

    def _table(self, name: str) -> str:
        return f"{self._prefix}{name}"

    def _query(self, sql: str, params: tuple[Any, ...] | None = None) -> list[Row]:
        """Run a query. Errors are logged and produce no rows, except connection loss."""
        try:
            with self._connection.cursor() as cursor:
                cursor.execute(sql, params)
                return list(cursor.fetchall())
        except pymysql.OperationalError as e:
            if e.args and e.args[0] in _CONNECTION_LOST_CODES:
                msg = f"Lost connection to Flarum database: {e}"
                raise StoreConnectionError(msg) from e
            logger.error(f"MySQL query error: {e}")
            return []
        except pymysql.MySQLError as e:
            logger.error(f"MySQL query error: {e}")
            return []

    def _count(self, sql: str) -> int:
        rows = self._query(sql)
        return int(rows[0]["count"]) if rows else 0

    # --- users ---------------------------------------------------------------

    def count_users(self) -> int:
        return self._count(f"SELECT COUNT(*) AS count FROM {self._table('users')}")

    def get_users(self, offset: int, limit: int) -> list[SourceUser]:
        rows = self._query(
            f"""
            SELECT id, username, nickname, email, joined_at, last_seen_at,
                   is_email_confirmed, suspended_until, bio, avatar_url
            FROM {self._table('users')}
            ORDER BY id
            LIMIT %s OFFSET %s
            """,
            (limit, offset),
        )
        return [
            SourceUser(
                id=row["id"],
                username=row["username"],
                email=row["email"],
                nickname=row.get("nickname"),
                joined_at=row.get("joined_at"),
                last_seen_at=row.get("last_seen_at"),
                is_email_confirmed=bool(row.get("is_email_confirmed")),
                suspended_until=row.get("suspended_until"),
                bio=row.get("bio"),
                avatar_url=row.get("avatar_url"),
            )
            for row in rows
        ]

    # --- categories ----------------------------------------------------------

    def get_categories(self) -> list[SourceCategory]:
        rows = self._query(
            f"""
            SELECT id, name, slug, position, description, color, parent_id,
                   is_restricted, icon, created_at, updated_at
            FROM {self._table('tags')}
            ORDER BY id
            """
        )
        return [
            SourceCategory(
                id=row["id"],
                name=row["name"],
                slug=row.get("slug") or "",
                position=row.get("position"),
                description=row.get("description"),
                color=row.get("color"),
                parent_id=row.get("parent_id"),
                is_restricted=bool(row.get("is_restricted")),
                icon=row.get("icon"),
                created_at=row.get("created_at"),
                updated_at=row.get("updated_at"),
            )
            for row in rows
        ]

    # --- discussions and posts -----------------------------------------------

    _POST_FILTER: Final[str] = "p.type = 'comment' AND d.hidden_at IS NULL AND p.hidden_at IS NULL"

    def count_posts(self) -> int:
        return self._count(
            f"""
            SELECT COUNT(*) AS count
            FROM {self._table('discussions')} d
            JOIN {self._table('posts')} p ON p.discussion_id = d.id
            WHERE {self._POST_FILTER}
            """
        )

    def get_posts(self, offset: int, limit: int) -> list[SourcePost]:
        # One tag per discussion, the most specific one (child tags before top-level tags)
        rows = self._query(
            f"""
            SELECT p.id AS id
                 , d.id AS discussion_id
                 , d.title AS title
                 , d.slug AS slug
                 , d.first_post_id AS first_post_id
                 , p.user_id AS user_id
                 , p.content AS raw
                 , p.created_at AS created_at
                 , p.number AS post_number
                 , d.is_sticky AS is_sticky
                 , d.is_locked AS is_locked
                 , d.is_private AS is_private
                 , (SELECT dt.tag_id
                    FROM {self._table('discussion_tag')} dt
                    JOIN {self._table('tags')} t ON t.id = dt.tag_id
                    WHERE dt.discussion_id = d.id
                    ORDER BY t.parent_id IS NULL, dt.tag_id
                    LIMIT 1) AS category_id
            FROM {self._table('discussions')} d
            JOIN {self._table('posts')} p ON p.discussion_id = d.id
            WHERE {self._POST_FILTER}
            ORDER BY p.created_at, p.id
            LIMIT %s OFFSET %s
            """,
            (limit, offset),
        )
        return [
            SourcePost(
                id=row["id"],
                discussion_id=row["discussion_id"],
                post_number=row["post_number"],
                raw=row["raw"],
                user_id=row["user_id"],
                created_at=row["created_at"],
                title=row.get("title") or "",
                slug=row.get("slug") or "",
                first_post_id=row.get("first_post_id"),
                category_id=row.get("category_id"),
                is_sticky=bool(row.get("is_sticky")),
                is_locked=bool(row.get("is_locked")),
                is_private=bool(row.get("is_private")),
            )
            for row in rows
        ]

    def get_locked_discussions(self) -> list[SourceLockedDiscussion]:
        rows = self._query(
            f"""
            SELECT id, first_post_id
            FROM {self._table('discussions')}
            WHERE is_locked = 1 AND hidden_at IS NULL
            ORDER BY id
            """
        )
        return [SourceLockedDiscussion(discussion_id=row["id"], first_post_id=row.get("first_post_id")) for row in rows]

    # --- likes and reactions -------------------------------------------------

    def count_likes(self) -> int:
        return self._count(f"SELECT COUNT(*) AS count FROM {self._table('post_likes')}")

    def get_likes(self, offset: int, limit: int) -> list[SourceLike]:
        rows = self._query(
            f"""
            SELECT post_id, user_id, created_at
            FROM {self._table('post_likes')}
            ORDER BY post_id, user_id
            LIMIT %s OFFSET %s
            """,
            (limit, offset),
        )
        return [SourceLike(post_id=row["post_id"], user_id=row["user_id"], created_at=row.get("created_at")) for row in rows]

    def count_reactions(self) -> int:
        return self._count(f"SELECT COUNT(*) AS count FROM {self._table('post_reactions')}")

    def get_reactions(self, offset: int, limit: int) -> list[SourceReaction]:
        rows = self._query(
            f"""
            SELECT pr.id AS id, pr.post_id AS post_id, pr.user_id AS user_id, r.identifier AS identifier
            FROM {self._table('post_reactions')} pr
            JOIN {self._table('reactions')} r ON r.id = pr.reaction_id
            ORDER BY pr.id
            LIMIT %s OFFSET %s
            """,
            (limit, offset),
        )
        return [
            SourceReaction(id=row["id"], post_id=row["post_id"], user_id=row["user_id"], identifier=row["identifier"])
            for row in rows
        ]

    # --- groups --------------------------------------------------------------

    def get_group_memberships(self) -> list[SourceGroupMembership]:
        rows = self._query(
            f"""
            SELECT gu.user_id AS user_id, g.name_singular AS group_name
            FROM {self._table('group_user')} gu
            JOIN {self._table('groups')} g ON gu.group_id = g.id
            ORDER BY gu.user_id, g.id
            """
        )
        return [SourceGroupMembership(user_id=row["user_id"], group_name=row["group_name"]) for row in rows]
