"""Database utilities for the NeedleDrop service."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy import MetaData, Table, event, inspect, text
from sqlalchemy.exc import DBAPIError, SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from .errors import MigrationFailure

logger = logging.getLogger(__name__)

REBUILD_SUFFIX = "__rebuild"

# Columns that arrived after the first release of the records table. Each is
# applied with a plain ADD COLUMN and is harmless to repeat.
RECORD_COLUMN_MIGRATIONS: tuple[tuple[str, str], ...] = (
    ("cover_url", "ALTER TABLE records ADD COLUMN cover_url TEXT"),
    ("added_at", "ALTER TABLE records ADD COLUMN added_at DATETIME"),
    ("genres", "ALTER TABLE records ADD COLUMN genres TEXT NOT NULL DEFAULT '[]'"),
    ("styles", "ALTER TABLE records ADD COLUMN styles TEXT NOT NULL DEFAULT '[]'"),
    ("year", "ALTER TABLE records ADD COLUMN year INTEGER"),
    ("label", "ALTER TABLE records ADD COLUMN label TEXT"),
    ("format", "ALTER TABLE records ADD COLUMN format TEXT"),
)

RECORD_COPY_COLUMNS: tuple[str, ...] = (
    "id",
    "title",
    "artist",
    "cover_url",
    "genres",
    "styles",
    "year",
    "label",
    "format",
)

# Older databases keyed releases by ``discogs_id`` before the column was
# renamed to the provider-neutral ``external_id``.
LEGACY_KEY_COLUMN = "discogs_id"


class Base(DeclarativeBase):
    """Declarative base with consistent naming conventions."""

    metadata = MetaData()


class Database:
    """Thin wrapper managing the SQLAlchemy async engine and sessions."""

    def __init__(self, database_url: str):
        self._engine: AsyncEngine = create_async_engine(database_url, future=True)
        if self._engine.dialect.name == "sqlite":
            _enable_sqlite_transactional_ddl(self._engine)
        self.session_factory: async_sessionmaker[AsyncSession] = async_sessionmaker(
            self._engine, expire_on_commit=False
        )

    @property
    def engine(self) -> AsyncEngine:
        return self._engine

    async def ensure_schema(self) -> None:
        """Create missing tables and upgrade existing ones to the current shape.

        Safe to call repeatedly. Additive column changes that fail are treated
        as already applied. A failed rebuild of the legacy ``records`` or
        ``plays`` table raises :class:`MigrationFailure`.
        """

        # Import for the side effect of registering the mapped tables.
        from . import db_models  # noqa: F401

        async with self._engine.connect() as connection:
            await connection.run_sync(self._apply_additive_migrations)
            await connection.commit()

        try:
            async with self._engine.begin() as connection:
                await connection.run_sync(self._rebuild_legacy_tables)
        except MigrationFailure:
            raise
        except SQLAlchemyError as exc:
            logger.error("Rebuilding the legacy tables failed: %s", exc)
            raise MigrationFailure(
                f"Could not migrate the legacy tables to the multi-tenant shape: {exc}"
            ) from exc

        async with self._engine.begin() as connection:
            await connection.run_sync(Base.metadata.create_all)

    @staticmethod
    def _apply_additive_migrations(sync_connection) -> None:
        """Ensure newly introduced columns are available on existing tables."""

        inspector = inspect(sync_connection)
        table_names = set(inspector.get_table_names())

        def _add_column(table: str, existing: set[str], name: str, ddl: str) -> None:
            if name in existing:
                return
            try:
                sync_connection.execute(text(ddl))
            except DBAPIError as exc:
                logger.debug("Skipping %s.%s migration: %s", table, name, exc)
                return
            existing.add(name)

        if "records" in table_names:
            record_columns = {
                column["name"] for column in inspector.get_columns("records")
            }
            for name, ddl in RECORD_COLUMN_MIGRATIONS:
                _add_column("records", record_columns, name, ddl)

        if "plays" in table_names:
            play_columns = {column["name"] for column in inspector.get_columns("plays")}
            _add_column(
                "plays",
                play_columns,
                "owner_username",
                "ALTER TABLE plays ADD COLUMN owner_username TEXT NOT NULL DEFAULT ''",
            )
            # Tables still keyed by discogs_id get the index after their rebuild.
            if {"owner_username", "item_external_id"} <= play_columns:
                try:
                    sync_connection.execute(
                        text(
                            "CREATE INDEX IF NOT EXISTS ix_plays_owner_item "
                            "ON plays (owner_username, item_external_id)"
                        )
                    )
                except DBAPIError as exc:
                    logger.debug("Skipping plays index migration: %s", exc)

    @staticmethod
    def _rebuild_legacy_tables(sync_connection) -> None:
        """Move single-tenant tables into the owner-scoped shape.

        The records unique constraint changes from the release id alone to
        ``(owner_username, external_id)``, which SQLite cannot alter in place,
        so the rows are copied into a shadow table that then replaces the
        original. Tables still keyed by ``discogs_id`` are rebuilt the same
        way with the key copied into ``external_id`` or ``item_external_id``.
        Copied records are owned by ``''`` (unclaimed).
        """

        from .db_models import Play, Record

        inspector = inspect(sync_connection)
        table_names = set(inspector.get_table_names())

        if "records" in table_names:
            columns = {column["name"] for column in inspector.get_columns("records")}
            if "owner_username" not in columns:
                if "external_id" in columns:
                    key = "external_id"
                elif LEGACY_KEY_COLUMN in columns:
                    key = LEGACY_KEY_COLUMN
                else:
                    raise MigrationFailure(
                        "Legacy records table has no external_id or discogs_id column to migrate"
                    )
                selected = {"owner_username": "''", "external_id": key}
                selected.update(
                    (name, name) for name in RECORD_COPY_COLUMNS if name in columns
                )
                selected["added_at"] = (
                    "COALESCE(added_at, CURRENT_TIMESTAMP)"
                    if "added_at" in columns
                    else "CURRENT_TIMESTAMP"
                )
                logger.info("Migrating legacy records table to per-owner uniqueness")
                migrated = _replace_with_shadow(sync_connection, Record.__table__, selected)
                logger.info("Migrated %s legacy records", migrated)

        if "plays" in table_names:
            columns = {column["name"] for column in inspector.get_columns("plays")}
            if "item_external_id" not in columns:
                if LEGACY_KEY_COLUMN not in columns:
                    raise MigrationFailure(
                        "Legacy plays table has no discogs_id column to migrate"
                    )
                selected = {
                    "owner_username": (
                        "owner_username" if "owner_username" in columns else "''"
                    ),
                    "item_external_id": LEGACY_KEY_COLUMN,
                    "played_at": (
                        "COALESCE(played_at, CURRENT_TIMESTAMP)"
                        if "played_at" in columns
                        else "CURRENT_TIMESTAMP"
                    ),
                }
                if "id" in columns:
                    selected = {"id": "id", **selected}
                logger.info("Migrating legacy plays table to item_external_id")
                migrated = _replace_with_shadow(sync_connection, Play.__table__, selected)
                logger.info("Migrated %s legacy plays", migrated)

    async def dispose(self) -> None:
        """Dispose of the underlying database engine."""

        await self._engine.dispose()

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        """Provide a transactional scope around a series of operations."""

        async with self.session_factory() as session:
            yield session


def _replace_with_shadow(sync_connection, table: Table, selected: dict[str, str]) -> int:
    """Swap ``table`` for a copy in its mapped shape filled from ``selected``.

    Keys of ``selected`` are target columns and values are SQL expressions
    over the existing table. Returns the number of rows copied.
    """

    shadow_name = f"{table.name}{REBUILD_SUFFIX}"
    shadow = table.to_metadata(MetaData(), name=shadow_name)
    shadow.drop(sync_connection, checkfirst=True)
    for index in shadow.indexes:
        sync_connection.execute(text(f"DROP INDEX IF EXISTS {index.name}"))
    shadow.create(sync_connection)

    sync_connection.execute(
        text(
            f"INSERT INTO {shadow_name} ({', '.join(selected)}) "
            f"SELECT {', '.join(selected.values())} FROM {table.name}"
        )
    )
    sync_connection.execute(text(f"DROP TABLE {table.name}"))
    sync_connection.execute(text(f"ALTER TABLE {shadow_name} RENAME TO {table.name}"))
    return sync_connection.execute(text(f"SELECT COUNT(*) FROM {table.name}")).scalar()


def _enable_sqlite_transactional_ddl(engine: AsyncEngine) -> None:
    """Let SQLAlchemy own BEGIN so schema changes roll back with the transaction."""

    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, connection_record) -> None:
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(connection) -> None:
        connection.exec_driver_sql("BEGIN")
