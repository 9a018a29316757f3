"""Merges a Discogs collection into the owner-scoped records table."""

from __future__ import annotations

import logging
from typing import Any, Iterable, Sequence

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as postgresql_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..config import Settings
from ..db_models import Record
from ..models import CatalogItem, ReleaseDetail
from ..utils import utcnow
from .discogs import DiscogsClient, OAuthToken
from .session import Identity, resolve_owner_key

logger = logging.getLogger(__name__)

# Eleven bound parameters per row keeps each statement well under SQLite's
# 32766 variable limit.
UPSERT_CHUNK_SIZE = 500

UPDATED_COLUMNS: tuple[str, ...] = (
    "title",
    "artist",
    "cover_url",
    "genres",
    "styles",
    "year",
    "label",
    "format",
)


class CatalogSyncEngine:
    """Pulls an owner's Discogs collection and upserts it in one transaction."""

    def __init__(
        self,
        settings: Settings,
        discogs: DiscogsClient,
        session_factory: async_sessionmaker[AsyncSession],
    ):
        self._settings = settings
        self._discogs = discogs
        self._session_factory = session_factory

    def owner_key(self, identity: Identity | None) -> str:
        return resolve_owner_key(identity, self._settings.discogs_user)

    async def sync(self, identity: Identity | None) -> list[CatalogItem]:
        """Fetch every collection page, merge it and return the stored catalog.

        Nothing is written unless every page was fetched successfully.
        """

        owner = self.owner_key(identity)
        releases = await self._discogs.fetch_collection(
            owner, access_token=_access_token(identity)
        )
        items = self.normalize(releases)
        await self.merge(owner, items)
        logger.info("Synced %s records for %s", len(items), owner)
        return await self.list_catalog(owner)

    @staticmethod
    def normalize(releases: Iterable[dict[str, Any]]) -> list[CatalogItem]:
        """Map raw releases to catalog items, keeping the first of any duplicate id."""

        items: list[CatalogItem] = []
        seen: set[str] = set()
        for release in releases:
            try:
                item = CatalogItem.from_discogs_release(release)
            except ValueError:
                logger.warning("Skipping Discogs release without an id")
                continue
            if item.external_id in seen:
                continue
            seen.add(item.external_id)
            items.append(item)
        return items

    async def merge(self, owner: str, items: Sequence[CatalogItem]) -> None:
        """Insert new records and refresh existing ones, preserving ``added_at``."""

        if not items:
            return
        now = utcnow()
        rows = [{**item.to_row(owner), "added_at": now} for item in items]
        async with self._session_factory() as session:
            async with session.begin():
                dialect = session.get_bind().dialect.name
                for start in range(0, len(rows), UPSERT_CHUNK_SIZE):
                    chunk = rows[start : start + UPSERT_CHUNK_SIZE]
                    await session.execute(_upsert_statement(dialect, chunk))

    async def list_catalog(self, owner: str) -> list[CatalogItem]:
        """Return the owner's stored catalog, most recently added first."""

        async with self._session_factory() as session:
            result = await session.execute(
                select(Record)
                .where(Record.owner_username == owner)
                .order_by(Record.added_at.desc(), Record.id.asc())
            )
            return [CatalogItem.model_validate(row) for row in result.scalars()]

    async def fetch_release(
        self, release_id: str, identity: Identity | None
    ) -> ReleaseDetail:
        data = await self._discogs.fetch_release(
            release_id, access_token=_access_token(identity)
        )
        return ReleaseDetail.from_discogs_release(data)


def _access_token(identity: Identity | None) -> OAuthToken | None:
    if identity is None or not (identity.access_token and identity.access_token_secret):
        return None
    return OAuthToken(key=identity.access_token, secret=identity.access_token_secret)


def _upsert_statement(dialect: str, rows: list[dict[str, Any]]):
    if dialect == "postgresql":
        statement = postgresql_insert(Record).values(rows)
    else:
        statement = sqlite_insert(Record).values(rows)
    return statement.on_conflict_do_update(
        index_elements=[Record.owner_username, Record.external_id],
        set_={name: statement.excluded[name] for name in UPDATED_COLUMNS},
    )
