"""CRM calendar events synced with Google Calendar.

Only the columns the sync mapping needs. Rows imported from Google are keyed
by (user_id, google_event_id) so repeated reconciliation passes update in
place. Rows created in the CRM (``source="crm"``) have no google_event_id
until the first sync pushes them to Google.
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator, Callable
from datetime import datetime

import structlog
from pydantic import BaseModel
from sqlalchemy import DateTime, String, Text, UniqueConstraint, func, select, text, update
from sqlalchemy.dialects.postgresql import UUID, insert
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import Mapped, mapped_column

from src.crm_connect.core.database import Base

logger = structlog.get_logger(__name__)

STATUS_SCHEDULED = "scheduled"
STATUS_CANCELLED = "cancelled"

SOURCE_CRM = "crm"
SOURCE_GOOGLE = "google"

# asyncpg caps a statement at 32767 bind parameters
UPSERT_CHUNK_SIZE = 500


class CalendarEventModel(Base):
    """A CRM calendar event linked to a Google Calendar event."""

    __tablename__ = "calendar_events"
    __table_args__ = (
        UniqueConstraint("user_id", "google_event_id", name="uq_calendar_events_user_google"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=text("gen_random_uuid()"),
    )
    user_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    google_event_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    location: Mapped[str | None] = mapped_column(String(500), nullable=True)
    start_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    end_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), default=STATUS_SCHEDULED, server_default=text("'scheduled'")
    )
    source: Mapped[str] = mapped_column(
        String(20), default=SOURCE_CRM, server_default=text("'crm'")
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        onupdate=func.now(),
        nullable=True,
    )


class CalendarEvent(BaseModel):
    """In-process calendar event, on either side of the sync."""

    id: uuid.UUID | None = None
    google_event_id: str | None = None
    title: str
    description: str | None = None
    location: str | None = None
    start_time: datetime
    end_time: datetime
    status: str = STATUS_SCHEDULED


def _chunks(items: list, size: int) -> list[list]:
    return [items[i : i + size] for i in range(0, len(items), size)]


def _model_to_event(model: CalendarEventModel) -> CalendarEvent:
    return CalendarEvent(
        id=model.id,
        google_event_id=model.google_event_id,
        title=model.title,
        description=model.description,
        location=model.location,
        start_time=model.start_time,
        end_time=model.end_time,
        status=model.status,
    )


class CalendarEventRepository:
    """Async persistence for synced calendar events.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(
        self,
        session_factory: Callable[..., AsyncGenerator[AsyncSession, None]],
    ) -> None:
        self._session_factory = session_factory

    async def upsert_many(self, user_id: str, events: list[CalendarEvent]) -> tuple[int, int]:
        """Insert or update Google events by google_event_id.

        A google_event_id repeated in ``events`` keeps its last occurrence.
        Rows are written in chunks and committed once.

        Returns:
            (imported, updated) counts.
        """
        by_google_id = {e.google_event_id: e for e in events if e.google_event_id}
        if not by_google_id:
            return 0, 0

        imported = updated = 0
        async for session in self._session_factory():
            for chunk in _chunks(list(by_google_id.values()), UPSERT_CHUNK_SIZE):
                google_ids = [e.google_event_id for e in chunk]
                existing = await session.execute(
                    select(CalendarEventModel.google_event_id).where(
                        CalendarEventModel.user_id == user_id,
                        CalendarEventModel.google_event_id.in_(google_ids),
                    )
                )
                known = set(existing.scalars().all())

                stmt = insert(CalendarEventModel).values(
                    [
                        {
                            "user_id": user_id,
                            "google_event_id": e.google_event_id,
                            "title": e.title,
                            "description": e.description,
                            "location": e.location,
                            "start_time": e.start_time,
                            "end_time": e.end_time,
                            "status": e.status,
                            "source": SOURCE_GOOGLE,
                        }
                        for e in chunk
                    ]
                )
                stmt = stmt.on_conflict_do_update(
                    index_elements=[CalendarEventModel.user_id, CalendarEventModel.google_event_id],
                    set_={
                        "title": stmt.excluded.title,
                        "description": stmt.excluded.description,
                        "location": stmt.excluded.location,
                        "start_time": stmt.excluded.start_time,
                        "end_time": stmt.excluded.end_time,
                        "status": stmt.excluded.status,
                        "updated_at": func.now(),
                    },
                )
                await session.execute(stmt)

                chunk_updated = sum(1 for gid in google_ids if gid in known)
                updated += chunk_updated
                imported += len(google_ids) - chunk_updated

            await session.commit()
            return imported, updated
        return 0, 0

    async def mark_cancelled(self, user_id: str, google_event_ids: list[str]) -> int:
        """Flag previously imported events as cancelled. Returns rows changed."""
        if not google_event_ids:
            return 0
        async for session in self._session_factory():
            result = await session.execute(
                update(CalendarEventModel)
                .where(
                    CalendarEventModel.user_id == user_id,
                    CalendarEventModel.google_event_id.in_(google_event_ids),
                    CalendarEventModel.status != STATUS_CANCELLED,
                )
                .values(status=STATUS_CANCELLED)
            )
            await session.commit()
            return result.rowcount
        return 0

    async def list_outbound(self, user_id: str, since: datetime) -> list[CalendarEvent]:
        """CRM-created events starting at or after ``since``, oldest first."""
        async for session in self._session_factory():
            result = await session.execute(
                select(CalendarEventModel)
                .where(
                    CalendarEventModel.user_id == user_id,
                    CalendarEventModel.source == SOURCE_CRM,
                    CalendarEventModel.start_time >= since,
                )
                .order_by(CalendarEventModel.start_time)
            )
            return [_model_to_event(row) for row in result.scalars().all()]
        return []

    async def link_google_event(self, event_id: uuid.UUID, google_event_id: str) -> None:
        """Record the Google id of a CRM event after it was created in Google."""
        async for session in self._session_factory():
            await session.execute(
                update(CalendarEventModel)
                .where(CalendarEventModel.id == event_id)
                .values(google_event_id=google_event_id)
            )
            await session.commit()
