"""
Status History / Timeline Recorder
==================================

Append-only log of every status transition, plus two read projections:

* ``get_timeline``          -- all entries, oldest first.
* ``get_latest_per_actor``  -- newest entry per actor role.

Ordering is ``(created_at, id)``: the auto-increment id is the store's write
order and breaks ties between entries stamped with the same instant.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Mapping, Optional, Union

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.domain.entities import StatusHistoryEntry, latest_per_actor
from src.domain.enums import ActorRole, StatusCode
from src.domain.labels import status_label
from src.infrastructure.change_feed import HISTORY_TABLE, BookingChange, ChangeFeed
from src.infrastructure.repositories import StatusHistoryRepository, to_entry

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StatusHistoryRecorder:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        feed: Optional[ChangeFeed] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._sessions = session_factory
        self._feed = feed
        self._clock = clock

    async def record(
        self,
        booking_id: str,
        actor_role: Union[ActorRole, str],
        status_code: Union[StatusCode, str],
        label: Optional[str] = None,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> StatusHistoryEntry:
        """Append one entry.  Existing entries are never touched."""
        code = getattr(status_code, "value", status_code)
        role = getattr(actor_role, "value", actor_role)
        async with self._sessions() as session, session.begin():
            row = await StatusHistoryRepository(session).append(
                booking_id=booking_id,
                actor_role=role,
                status_code=code,
                label=label or status_label(code),
                metadata=metadata or {},
                created_at=self._clock(),
            )
            entry = to_entry(row)

        logger.info("History %s: %s by %s", booking_id, code, role)
        await self._publish(entry)
        return entry

    async def get_timeline(self, booking_id: str) -> list[StatusHistoryEntry]:
        async with self._sessions() as session:
            rows = await StatusHistoryRepository(session).list_for_booking(booking_id)
        return [to_entry(row) for row in rows]

    async def get_latest_per_actor(self, booking_id: str) -> dict[str, StatusHistoryEntry]:
        return latest_per_actor(await self.get_timeline(booking_id))

    async def _publish(self, entry: StatusHistoryEntry) -> None:
        if self._feed is None:
            return
        try:
            await self._feed.publish(
                BookingChange(
                    booking_id=entry.booking_id,
                    table=HISTORY_TABLE,
                    event="INSERT",
                    record={
                        "id": entry.sequence,
                        "actor_role": entry.actor_role,
                        "status_code": entry.status_code,
                        "label": entry.label,
                        "metadata": entry.metadata,
                        "created_at": entry.created_at,
                    },
                )
            )
        except Exception:
            logger.exception("Could not publish history change for %s", entry.booking_id)
