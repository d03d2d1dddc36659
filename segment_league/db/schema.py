"""SQLAlchemy models for participants, weeks and their results.

Timestamps that take part in matching (``start_at``, ``end_at``,
``expires_at``) are stored as integer Unix seconds. Bookkeeping columns use
``DateTime`` with a server default.
"""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    pass


class Participant(Base):
    __tablename__ = "participants"

    strava_athlete_id: Mapped[int] = mapped_column(BigInteger, primary_key=True)
    name: Mapped[str] = mapped_column(String(200))
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    token: Mapped[Optional["ParticipantToken"]] = relationship(
        back_populates="participant", cascade="all, delete-orphan", uselist=False
    )


class ParticipantToken(Base):
    __tablename__ = "participant_tokens"

    strava_athlete_id: Mapped[int] = mapped_column(
        ForeignKey("participants.strava_athlete_id", ondelete="CASCADE"),
        primary_key=True,
    )
    access_token: Mapped[str] = mapped_column(Text)
    refresh_token: Mapped[str] = mapped_column(Text)
    expires_at: Mapped[int] = mapped_column(Integer)  # Unix timestamp
    scope: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, server_default=func.now(), onupdate=func.now()
    )

    participant: Mapped[Participant] = relationship(back_populates="token")


class Season(Base):
    __tablename__ = "seasons"

    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str] = mapped_column(String(200))
    start_at: Mapped[int] = mapped_column(Integer)
    end_at: Mapped[int] = mapped_column(Integer)

    weeks: Mapped[List["Week"]] = relationship(back_populates="season")


class Segment(Base):
    __tablename__ = "segments"

    strava_segment_id: Mapped[int] = mapped_column(BigInteger, primary_key=True)
    name: Mapped[str] = mapped_column(String(200))


class Week(Base):
    __tablename__ = "weeks"
    __table_args__ = (
        CheckConstraint("end_at > start_at", name="ck_weeks_window"),
        CheckConstraint("required_laps >= 1", name="ck_weeks_required_laps"),
        CheckConstraint("multiplier >= 1", name="ck_weeks_multiplier"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    season_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("seasons.id", ondelete="CASCADE"), index=True, nullable=True
    )
    week_name: Mapped[str] = mapped_column(String(200))
    strava_segment_id: Mapped[int] = mapped_column(
        ForeignKey("segments.strava_segment_id")
    )
    required_laps: Mapped[int] = mapped_column(Integer, default=1)
    start_at: Mapped[int] = mapped_column(Integer, index=True)
    end_at: Mapped[int] = mapped_column(Integer, index=True)
    multiplier: Mapped[int] = mapped_column(Integer, default=1)

    season: Mapped[Optional[Season]] = relationship(back_populates="weeks")
    segment: Mapped[Segment] = relationship()


class Activity(Base):
    """The single activity counted for one athlete in one week."""

    __tablename__ = "activities"
    __table_args__ = (
        UniqueConstraint("week_id", "strava_athlete_id", name="uq_activities_week_athlete"),
        Index("ix_activities_strava_activity", "strava_activity_id"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    week_id: Mapped[int] = mapped_column(ForeignKey("weeks.id", ondelete="CASCADE"))
    strava_athlete_id: Mapped[int] = mapped_column(
        ForeignKey("participants.strava_athlete_id", ondelete="CASCADE")
    )
    strava_activity_id: Mapped[int] = mapped_column(BigInteger)
    start_at: Mapped[int] = mapped_column(Integer)
    device_name: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    validation_status: Mapped[str] = mapped_column(String(20), default="valid")
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    efforts: Mapped[List["SegmentEffort"]] = relationship(
        back_populates="activity",
        cascade="all, delete-orphan",
        order_by="SegmentEffort.effort_index",
        passive_deletes=True,
    )
    result: Mapped[Optional["Result"]] = relationship(
        back_populates="activity",
        cascade="all, delete-orphan",
        uselist=False,
        passive_deletes=True,
    )


class SegmentEffort(Base):
    __tablename__ = "segment_efforts"

    id: Mapped[int] = mapped_column(primary_key=True)
    activity_id: Mapped[int] = mapped_column(
        ForeignKey("activities.id", ondelete="CASCADE"), index=True
    )
    strava_segment_id: Mapped[int] = mapped_column(BigInteger)
    strava_effort_id: Mapped[Optional[str]] = mapped_column(String(40), nullable=True)
    # Lap position inside the activity, 0-based.
    effort_index: Mapped[int] = mapped_column(Integer)
    elapsed_seconds: Mapped[int] = mapped_column(Integer)
    start_at: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    pr_achieved: Mapped[bool] = mapped_column(Boolean, default=False)

    activity: Mapped[Activity] = relationship(back_populates="efforts")


class Result(Base):
    __tablename__ = "results"
    __table_args__ = (
        UniqueConstraint("week_id", "strava_athlete_id", name="uq_results_week_athlete"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    week_id: Mapped[int] = mapped_column(
        ForeignKey("weeks.id", ondelete="CASCADE"), index=True
    )
    strava_athlete_id: Mapped[int] = mapped_column(
        ForeignKey("participants.strava_athlete_id", ondelete="CASCADE")
    )
    activity_id: Mapped[int] = mapped_column(
        ForeignKey("activities.id", ondelete="CASCADE"), unique=True
    )
    total_time_seconds: Mapped[int] = mapped_column(Integer)
    rank: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    base_points: Mapped[int] = mapped_column(Integer, default=0)
    participation_bonus: Mapped[int] = mapped_column(Integer, default=0)
    pr_bonus_points: Mapped[int] = mapped_column(Integer, default=0)
    multiplier: Mapped[int] = mapped_column(Integer, default=1)
    total_points: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, server_default=func.now(), onupdate=func.now()
    )

    activity: Mapped[Activity] = relationship(back_populates="result")
    participant: Mapped[Participant] = relationship()


class WebhookEventLog(Base):
    __tablename__ = "webhook_events"

    id: Mapped[int] = mapped_column(primary_key=True)
    payload: Mapped[str] = mapped_column(Text)
    processed: Mapped[bool] = mapped_column(Boolean, default=False)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())


__all__ = [
    "Base",
    "Participant",
    "ParticipantToken",
    "Season",
    "Segment",
    "Week",
    "Activity",
    "SegmentEffort",
    "Result",
    "WebhookEventLog",
]
