"""Season standings summed from persisted week scores."""

from __future__ import annotations

import logging
from typing import List

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from ..db.schema import Participant, Result, Season, Week
from ..errors import SeasonNotFoundError
from ..models import SeasonStanding


class StandingsService:
    def __init__(self) -> None:
        self._log = logging.getLogger(self.__class__.__name__)

    def season_standings(self, session: Session, season_id: int) -> List[SeasonStanding]:
        """Return standings for ``season_id`` ordered by points, then weeks completed.

        Only athletes with at least one result appear. Points are read as
        stored, so this reflects the most recent week recomputes.
        """

        if session.get(Season, season_id) is None:
            raise SeasonNotFoundError(f"Season {season_id} not found")

        rows = session.execute(
            select(
                Result.strava_athlete_id,
                Participant.name,
                func.coalesce(func.sum(Result.total_points), 0),
                func.count(Result.id),
            )
            .join(Week, Week.id == Result.week_id)
            .join(Participant, Participant.strava_athlete_id == Result.strava_athlete_id)
            .where(Week.season_id == season_id)
            .group_by(Result.strava_athlete_id, Participant.name)
        ).all()

        standings = [
            SeasonStanding(
                athlete_id=int(athlete_id),
                name=name,
                total_points=int(points),
                weeks_completed=int(weeks),
            )
            for athlete_id, name, points, weeks in rows
        ]
        standings.sort(key=lambda s: (-s.total_points, -s.weeks_completed, s.athlete_id))
        for rank, standing in enumerate(standings, start=1):
            standing.rank = rank
        self._log.debug("Season %s standings: %s athletes", season_id, len(standings))
        return standings


__all__ = ["StandingsService"]
