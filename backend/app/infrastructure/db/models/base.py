"""
Base Model for SQLModel ORM

Provides common fields and behavior for all database models.
"""

from datetime import datetime, timezone

from sqlalchemy import DateTime
from sqlmodel import Field, SQLModel


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TimestampMixin(SQLModel):
    """
    Mixin providing timestamp fields for models.

    ``updated_at`` is refreshed by SQLAlchemy on every UPDATE statement,
    including Core-level conditional updates.
    """

    created_at: datetime = Field(
        default_factory=_utcnow,
        sa_type=DateTime(timezone=True),
        nullable=False,
        description="Record creation timestamp (UTC)"
    )
    updated_at: datetime = Field(
        default_factory=_utcnow,
        sa_type=DateTime(timezone=True),
        nullable=False,
        sa_column_kwargs={"onupdate": _utcnow},
        description="Last update timestamp (UTC)"
    )
