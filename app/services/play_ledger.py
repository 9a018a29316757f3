"""Append-only play history with per-record aggregates."""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import delete, func, insert, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..db_models import Play
from ..errors import ValidationError
from ..models import PlayAggregate
from ..utils import coerce_count, utcnow

logger = logging.getLogger(__name__)

MAX_PLAY_COUNT = 9_999


def require_external_id(value: Any) -> str:
    """Return ``value`` as a non-empty string id or raise ``ValidationError``."""

    if isinstance(value, bool) or value is None:
        raise ValidationError("Missing external_id")
    if isinstance(value, (int, float)):
        value = str(int(value)) if float(value).is_integer() else str(value)
    if not isinstance(value, str) or not value.strip():
        raise ValidationError("Missing external_id")
    return value.strip()


class PlayLedger:
    """Records plays and reconciles counts for one owner's records."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def list_aggregates(self, owner: str) -> list[PlayAggregate]:
        async with self._session_factory() as session:
            last_played = func.max(Play.played_at)
            result = await session.execute(
                select(
                    Play.item_external_id,
                    func.count().label("play_count"),
                    last_played.label("last_played"),
                )
                .where(Play.owner_username == owner)
                .group_by(Play.item_external_id)
                .order_by(last_played.desc(), Play.item_external_id)
            )
            return [
                PlayAggregate(
                    external_id=row.item_external_id,
                    play_count=row.play_count,
                    last_played=row.last_played,
                )
                for row in result
            ]

    async def record_play(self, owner: str, external_id: Any) -> PlayAggregate:
        """Append one play stamped now and return the item's new totals."""

        item_id = require_external_id(external_id)
        async with self._session_factory() as session:
            async with session.begin():
                session.add(
                    Play(
                        owner_username=owner,
                        item_external_id=item_id,
                        played_at=utcnow(),
                    )
                )
            return await self._aggregate(session, owner, item_id)

    async def set_play_count(
        self, owner: str, external_id: Any, count: Any
    ) -> PlayAggregate:
        """Replace the item's history with exactly ``count`` plays stamped now.

        The delete and the re-insert share one transaction.
        """

        item_id = require_external_id(external_id)
        target = coerce_count(count, maximum=MAX_PLAY_COUNT)
        now = utcnow()
        async with self._session_factory() as session:
            async with session.begin():
                await session.execute(
                    delete(Play).where(
                        Play.owner_username == owner,
                        Play.item_external_id == item_id,
                    )
                )
                if target > 0:
                    await session.execute(
                        insert(Play),
                        [
                            {
                                "owner_username": owner,
                                "item_external_id": item_id,
                                "played_at": now,
                            }
                        ]
                        * target,
                    )
        logger.info("Set play count for %s/%s to %s", owner, item_id, target)
        return PlayAggregate(
            external_id=item_id,
            play_count=target,
            last_played=now if target > 0 else None,
        )

    async def _aggregate(
        self, session: AsyncSession, owner: str, item_id: str
    ) -> PlayAggregate:
        result = await session.execute(
            select(
                func.count().label("play_count"),
                func.max(Play.played_at).label("last_played"),
            ).where(
                Play.owner_username == owner,
                Play.item_external_id == item_id,
            )
        )
        row = result.one()
        return PlayAggregate(
            external_id=item_id,
            play_count=row.play_count,
            last_played=row.last_played,
        )
