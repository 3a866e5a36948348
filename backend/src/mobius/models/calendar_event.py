"""Calendar event models.

``calendar_events`` holds one row per attendee email; ``host_calendar_events``
binds exactly one host to one calendar event and carries the webhook status.
"""

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.ext.mutable import MutableDict
from sqlalchemy.types import JSON

from .base import Base, TimestampMixin


class CalendarEventRecord(TimestampMixin, Base):
    __tablename__ = "calendar_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    uuid = Column(String(36), nullable=False, unique=True)
    email = Column(String(255), nullable=False, unique=True)
    start_time = Column(DateTime(timezone=True), nullable=False)
    end_time = Column(DateTime(timezone=True), nullable=False)
    event = Column(MutableDict.as_mutable(JSON), nullable=False, default=dict)
    timezone = Column(String(64), nullable=True)

    def __repr__(self) -> str:
        return f"<CalendarEventRecord(id={self.id}, email='{self.email}')>"


class HostCalendarEventRecord(TimestampMixin, Base):
    __tablename__ = "host_calendar_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    host_id = Column(Integer, nullable=False, unique=True)
    calendar_event_id = Column(
        Integer,
        ForeignKey("calendar_events.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    webhook_status = Column(String(16), nullable=False, default="none")

    def __repr__(self) -> str:
        return f"<HostCalendarEventRecord(host_id={self.host_id}, calendar_event_id={self.calendar_event_id})>"
