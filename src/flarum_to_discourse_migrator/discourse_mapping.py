"""Identity mappings kept in Discourse's own import bookkeeping.

Discourse importers tag every imported record with an ``import_id`` custom
field. This store reads and writes those custom field tables directly, so a
re-run sees exactly what earlier runs created, without any side file.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Final, NamedTuple

import psycopg2

from .exceptions import MigrationError, StoreConnectionError
from .identity import reaction_key, split_reaction_key
from .models import EntityKind

if TYPE_CHECKING:
    from psycopg2.extensions import connection as PgConnection

logger: logging.Logger = logging.getLogger(__name__)


class _FieldTable(NamedTuple):
    table: str
    owner_column: str
    field_name: str


_TABLES: Final[dict[EntityKind, _FieldTable]] = {
    EntityKind.USER: _FieldTable("user_custom_fields", "user_id", "import_id"),
    EntityKind.CATEGORY: _FieldTable("category_custom_fields", "category_id", "import_id"),
    EntityKind.TOPIC: _FieldTable("topic_custom_fields", "topic_id", "import_id"),
    EntityKind.POST: _FieldTable("post_custom_fields", "post_id", "import_id"),
    EntityKind.DISCUSSION: _FieldTable("topic_custom_fields", "topic_id", "import_discussion_id"),
    EntityKind.REACTION: _FieldTable("user_custom_fields", "user_id", "import_reaction_id"),
}


def get_connection(dsn: str) -> PgConnection:
    """Open an autocommitting connection to the Discourse database."""
    try:
        connection = psycopg2.connect(dsn)
    except psycopg2.OperationalError as e:
        msg = f"Cannot connect to the Discourse database: {e}"
        raise StoreConnectionError(msg) from e
    connection.autocommit = True
    return connection


class DiscourseMappingStore:
    """MappingStore backed by Discourse's ``*_custom_fields`` tables.

    Topics are keyed by the source id of their first post, and also carry the
    source discussion id. Reactions have no row of their own in the API, so
    they are recorded on the reacting user with the reacted post alongside
    the source id.
    """

    _connection: PgConnection

    def __init__(self, connection: PgConnection) -> None:
        self._connection = connection

    def _execute(self, sql: str, params: tuple[object, ...]) -> list[tuple[object, ...]]:
        try:
            with self._connection.cursor() as cursor:
                cursor.execute(sql, params)
                return list(cursor.fetchall()) if cursor.description else []
        except psycopg2.OperationalError as e:
            msg = f"Lost connection to the Discourse database: {e}"
            raise StoreConnectionError(msg) from e
        except psycopg2.Error as e:
            msg = f"Import bookkeeping query failed: {e}"
            raise MigrationError(msg) from e

    def load(self, kind: EntityKind) -> dict[int, int]:
        fields = _TABLES[kind]
        rows = self._execute(
            f"SELECT {fields.owner_column}, value FROM {fields.table} WHERE name = %s",  # noqa: S608 - fixed identifiers
            (fields.field_name,),
        )
        mappings: dict[int, int] = {}
        for owner_id, value in rows:
            try:
                if kind is EntityKind.REACTION:
                    source_id, post_id = (int(part) for part in str(value).split(":", 1))
                    mappings[source_id] = reaction_key(int(str(owner_id)), post_id)
                else:
                    mappings[int(str(value))] = int(str(owner_id))
            except ValueError:
                logger.warning(f"Ignoring malformed {fields.field_name} value {value!r} in {fields.table}")
        return mappings

    def save(self, kind: EntityKind, source_id: int, target_id: int) -> None:
        fields = _TABLES[kind]
        if kind is EntityKind.REACTION:
            owner_id, post_id = split_reaction_key(target_id)
            value = f"{source_id}:{post_id}"
        else:
            owner_id, value = target_id, str(source_id)
        self._execute(
            f"INSERT INTO {fields.table} ({fields.owner_column}, name, value, created_at, updated_at) "  # noqa: S608
            "VALUES (%s, %s, %s, NOW(), NOW())",
            (owner_id, fields.field_name, value),
        )
