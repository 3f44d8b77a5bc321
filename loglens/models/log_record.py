"""
Relational row layout for stored log records.
"""

from datetime import datetime

from sqlalchemy import Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from loglens.db.base import Base, JSONType, UTCDateTime, utc_now
from loglens.schemas.log_record import MAX_RECORD_ID_LENGTH


class LogRecordRow(Base):
    """One immutable log event. The id is caller- or system-assigned, not a UUID column."""

    __tablename__ = "log_records"

    id: Mapped[str] = mapped_column(String(MAX_RECORD_ID_LENGTH), primary_key=True)
    timestamp: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, index=True)
    level: Mapped[str] = mapped_column(String(8), nullable=False, index=True)
    severity: Mapped[int] = mapped_column(Integer, nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False, default="")

    source: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    host: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    application: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    environment: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    logger: Mapped[str | None] = mapped_column(String(255), nullable=True)
    thread: Mapped[str | None] = mapped_column(String(255), nullable=True)
    stack_trace: Mapped[str | None] = mapped_column(Text, nullable=True)

    record_metadata: Mapped[dict] = mapped_column("metadata", JSONType, nullable=False, default=dict)
    tags: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)

    http_method: Mapped[str | None] = mapped_column(String(16), nullable=True)
    http_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    http_status: Mapped[int | None] = mapped_column(Integer, nullable=True)
    response_time_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)

    # When the row was written, distinct from the event timestamp
    ingested_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utc_now)

    __table_args__ = (
        Index("idx_log_records_timestamp_desc", timestamp.desc()),
    )
