"""Read-side projections for week and season leaderboards."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List

from sqlalchemy import select
from sqlalchemy.orm import selectinload, sessionmaker

from ..db.database import session_scope
from ..db.schema import Activity, Participant, Result, Week
from ..errors import WeekNotFoundError
from ..utils import format_time, unix_to_iso
from .standings_service import StandingsService


@dataclass
class WeekLeaderboard:
    week: Dict[str, Any]
    entries: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"week": self.week, "entries": self.entries}


def _week_projection(week: Week) -> Dict[str, Any]:
    return {
        "id": week.id,
        "week_name": week.week_name,
        "season_id": week.season_id,
        "strava_segment_id": week.strava_segment_id,
        "required_laps": week.required_laps,
        "start_at": unix_to_iso(week.start_at),
        "end_at": unix_to_iso(week.end_at),
        "multiplier": week.multiplier,
    }


class LeaderboardService:
    def __init__(
        self,
        session_factory: sessionmaker,
        standings: StandingsService | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._standings = standings or StandingsService()

    def week_leaderboard(self, week_id: int) -> WeekLeaderboard:
        with session_scope(self._session_factory) as session:
            week = session.get(Week, week_id)
            if week is None:
                raise WeekNotFoundError(f"Week {week_id} not found")
            rows = session.execute(
                select(Result, Participant.name)
                .join(Participant, Participant.strava_athlete_id == Result.strava_athlete_id)
                .where(Result.week_id == week_id)
                .options(selectinload(Result.activity).selectinload(Activity.efforts))
                .order_by(Result.rank, Result.total_time_seconds, Result.strava_athlete_id)
            ).all()
            entries = []
            for result, name in rows:
                activity = result.activity
                entries.append(
                    {
                        "rank": result.rank,
                        "participant_id": result.strava_athlete_id,
                        "name": name,
                        "total_time_seconds": result.total_time_seconds,
                        "total_time": format_time(result.total_time_seconds),
                        "base_points": result.base_points,
                        "participation_bonus": result.participation_bonus,
                        "pr_bonus_points": result.pr_bonus_points,
                        "multiplier": result.multiplier,
                        "total_points": result.total_points,
                        "activity_id": activity.strava_activity_id,
                        "device_name": activity.device_name,
                        "efforts": [
                            {
                                "effort_index": effort.effort_index,
                                "elapsed_seconds": effort.elapsed_seconds,
                                "pr_achieved": effort.pr_achieved,
                            }
                            for effort in activity.efforts
                        ],
                    }
                )
            return WeekLeaderboard(week=_week_projection(week), entries=entries)

    def season_leaderboard(self, season_id: int) -> Dict[str, Any]:
        with session_scope(self._session_factory) as session:
            standings = self._standings.season_standings(session, season_id)
        return {
            "season_id": season_id,
            "standings": [
                {
                    "rank": s.rank,
                    "participant_id": s.athlete_id,
                    "name": s.name,
                    "total_points": s.total_points,
                    "weeks_completed": s.weeks_completed,
                }
                for s in standings
            ],
        }


__all__ = ["LeaderboardService", "WeekLeaderboard"]
