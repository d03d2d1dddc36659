"""In-memory value types shared by the client, matching and service layers.

Persisted rows live in :mod:`segment_league.db.schema`; these dataclasses
describe upstream payloads and the outcomes computed from them.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple


@dataclass(frozen=True)
class ActivitySummary:
    id: int
    start_time: Optional[int]
    name: Optional[str] = None


@dataclass(frozen=True)
class EffortDetail:
    segment_id: int
    elapsed_seconds: int
    effort_id: Optional[str] = None
    start_time: Optional[int] = None
    # Strava reports 1 for the athlete's fastest-ever traversal.
    pr_rank: Optional[int] = None

    @property
    def is_pr(self) -> bool:
        return self.pr_rank == 1


@dataclass(frozen=True)
class ActivityDetail:
    id: int
    start_time: Optional[int]
    efforts: Tuple[EffortDetail, ...] = ()
    name: Optional[str] = None
    device_name: Optional[str] = None


@dataclass(frozen=True)
class WeekWindow:
    """The matching-relevant slice of a Week row."""

    id: int
    strava_segment_id: int
    required_laps: int
    start_at: int
    end_at: int
    multiplier: int = 1
    name: str = ""


@dataclass(frozen=True)
class WindowSelection:
    start_index: int
    total_seconds: int
    efforts: Tuple[EffortDetail, ...]

    @property
    def lap_indices(self) -> List[int]:
        return list(range(self.start_index, self.start_index + len(self.efforts)))

    @property
    def pr_achieved(self) -> bool:
        return any(effort.is_pr for effort in self.efforts)


@dataclass(frozen=True)
class QualifyingActivity:
    activity_id: int
    start_time: int
    total_seconds: int
    efforts: Tuple[EffortDetail, ...]
    lap_indices: Tuple[int, ...]
    total_matching_efforts: int
    device_name: Optional[str] = None

    @property
    def pr_achieved(self) -> bool:
        return any(effort.is_pr for effort in self.efforts)

    def lap_summary(self) -> str:
        """Return ``"laps 2, 3 of 4"`` when only part of the activity counted."""

        if self.total_matching_efforts <= len(self.lap_indices):
            return ""
        laps = ", ".join(str(idx + 1) for idx in self.lap_indices)
        return f"laps {laps} of {self.total_matching_efforts}"


@dataclass(frozen=True)
class QualificationOutcome:
    best: Optional[QualifyingActivity] = None
    reason: Optional[str] = None

    @property
    def qualified(self) -> bool:
        return self.best is not None


@dataclass
class ScoringInput:
    athlete_id: int
    total_time_seconds: int
    pr_achieved: bool
    activity_start_at: Optional[int] = None


@dataclass
class ScoredResult:
    athlete_id: int
    rank: int
    total_time_seconds: int
    base_points: int
    participation_bonus: int
    pr_bonus_points: int
    multiplier: int
    total_points: int


@dataclass
class SeasonStanding:
    athlete_id: int
    name: str
    total_points: int
    weeks_completed: int
    rank: int = 0


@dataclass
class AthleteFetchResult:
    athlete_id: int
    athlete_name: str
    activity_found: bool
    activity_id: Optional[int] = None
    total_time: Optional[int] = None
    segment_efforts: Optional[int] = None
    laps: Optional[str] = None
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "participant_id": self.athlete_id,
            "participant_name": self.athlete_name,
            "activity_found": self.activity_found,
        }
        if self.activity_found:
            payload.update(
                activity_id=self.activity_id,
                total_time=self.total_time,
                segment_efforts=self.segment_efforts,
            )
            if self.laps:
                payload["laps"] = self.laps
        if self.reason:
            payload["reason"] = self.reason
        return payload


@dataclass
class BatchSummary:
    week_id: int
    week_name: str
    participants_processed: int
    results: List[AthleteFetchResult] = field(default_factory=list)

    @property
    def results_found(self) -> int:
        return sum(1 for r in self.results if r.activity_found)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "message": "Results fetched successfully",
            "week_id": self.week_id,
            "week_name": self.week_name,
            "participants_processed": self.participants_processed,
            "results_found": self.results_found,
            "summary": [r.to_dict() for r in self.results],
        }


@dataclass(frozen=True)
class WebhookEvent:
    object_type: str
    aspect_type: str
    object_id: int
    owner_id: int
    event_time: Optional[int] = None
    updates: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "WebhookEvent":
        """Build an event from the raw Strava webhook body.

        Raises:
            ValueError: when a required field is missing or not numeric.
        """

        try:
            object_id = int(payload["object_id"])
            owner_id = int(payload["owner_id"])
        except (KeyError, TypeError, ValueError) as exc:
            raise ValueError(f"Malformed webhook payload: {exc}") from exc
        event_time = payload.get("event_time")
        updates = payload.get("updates")
        return cls(
            object_type=str(payload.get("object_type") or ""),
            aspect_type=str(payload.get("aspect_type") or ""),
            object_id=object_id,
            owner_id=owner_id,
            event_time=int(event_time) if event_time is not None else None,
            updates=dict(updates) if isinstance(updates, dict) else {},
        )


__all__ = [
    "ActivitySummary",
    "EffortDetail",
    "ActivityDetail",
    "WeekWindow",
    "WindowSelection",
    "QualifyingActivity",
    "QualificationOutcome",
    "ScoringInput",
    "ScoredResult",
    "SeasonStanding",
    "AthleteFetchResult",
    "BatchSummary",
    "WebhookEvent",
]
