"""Flask application exposing the league over HTTP."""

from __future__ import annotations

import json
import logging
import secrets
import threading
import urllib.parse
from dataclasses import dataclass
from typing import Any, Dict, Iterator, Optional

from cachetools import TTLCache
from flask import Flask, Response, abort, jsonify, redirect, request
from flask.typing import ResponseReturnValue
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from .auth import TokenError, exchange_authorization_code
from .config import (
    CLIENT_ID,
    DATABASE_URL,
    OAUTH_REDIRECT_URI,
    OAUTH_SCOPE,
    OAUTH_STATE_TTL_SECONDS,
    STRAVA_AUTHORIZE_URL,
    WEBHOOK_VERIFY_TOKEN,
)
from .db import ResultStore, create_engine_for, init_db, make_session_factory
from .errors import SeasonNotFoundError, WeekNotFoundError
from .services import (
    ActivityQualifier,
    BatchFetchService,
    LeaderboardService,
    ScoringService,
    WebhookEventQueue,
    WebhookProcessor,
)
from .strava_client import StravaClient
from .tokens import TokenProvider

LOGGER = logging.getLogger(__name__)

SSE_HEADERS = {"Cache-Control": "no-cache", "X-Accel-Buffering": "no"}


@dataclass
class LeagueServices:
    session_factory: sessionmaker
    tokens: TokenProvider
    batch: BatchFetchService
    leaderboard: LeaderboardService
    webhooks: WebhookEventQueue


def build_services(
    database_url: str | None = None,
    *,
    client: Optional[StravaClient] = None,
    tokens: Optional[TokenProvider] = None,
) -> LeagueServices:
    """Wire the default engine, Strava client and services together."""

    engine = create_engine_for(database_url or DATABASE_URL)
    init_db(engine)
    session_factory = make_session_factory(engine)
    client = client or StravaClient()
    tokens = tokens or TokenProvider(session_factory)
    store = ResultStore(session_factory)
    scoring = ScoringService(session_factory)

    def qualifier_factory() -> ActivityQualifier:
        return ActivityQualifier(client)

    processor = WebhookProcessor(store, tokens, qualifier_factory, scoring)
    return LeagueServices(
        session_factory=session_factory,
        tokens=tokens,
        batch=BatchFetchService(store, tokens, qualifier_factory, scoring),
        leaderboard=LeaderboardService(session_factory),
        webhooks=WebhookEventQueue(processor, session_factory),
    )


def format_sse(event: Dict[str, Any]) -> str:
    kind = event.get("kind", "message")
    return f"event: {kind}\ndata: {json.dumps(event)}\n\n"


def create_app(services: LeagueServices | None = None) -> Flask:
    app = Flask(__name__)
    app.config.setdefault("WEBHOOK_VERIFY_TOKEN", WEBHOOK_VERIFY_TOKEN)
    league = services or build_services()
    app.extensions["segment_league"] = league

    oauth_states: TTLCache[str, bool] = TTLCache(
        maxsize=1024, ttl=OAUTH_STATE_TTL_SECONDS
    )
    oauth_lock = threading.Lock()

    @app.post("/admin/weeks/<int:week_id>/fetch-results")
    def fetch_results(week_id: int) -> ResponseReturnValue:
        LOGGER.info("Batch fetch requested week=%s", week_id)

        def event_stream() -> Iterator[str]:
            for event in league.batch.stream_week_results(week_id):
                yield format_sse(event)

        return Response(event_stream(), mimetype="text/event-stream", headers=SSE_HEADERS)

    @app.get("/webhooks/strava")
    def webhook_validation() -> ResponseReturnValue:
        mode = request.args.get("hub.mode")
        token = request.args.get("hub.verify_token")
        challenge = request.args.get("hub.challenge")
        if mode != "subscribe":
            abort(400, description="Invalid hub.mode")
        expected = app.config.get("WEBHOOK_VERIFY_TOKEN")
        if not expected or token != expected:
            LOGGER.warning("Webhook validation with wrong verify token")
            abort(403, description="Verification token mismatch")
        LOGGER.info("Webhook subscription validated")
        return jsonify({"hub.challenge": challenge})

    @app.post("/webhooks/strava")
    def webhook_event() -> ResponseReturnValue:
        payload = request.get_json(silent=True)
        if not isinstance(payload, dict):
            LOGGER.warning("Webhook body is not a JSON object; ignoring")
            return jsonify({"received": True}), 200
        try:
            league.webhooks.submit(payload)
        except SQLAlchemyError:
            # Acknowledged regardless.
            LOGGER.exception("Failed to record webhook event")
        return jsonify({"received": True}), 200

    @app.get("/weeks/<int:week_id>/leaderboard")
    def week_leaderboard(week_id: int) -> ResponseReturnValue:
        try:
            board = league.leaderboard.week_leaderboard(week_id)
        except WeekNotFoundError as exc:
            return jsonify({"error": str(exc)}), 404
        return jsonify(board.to_dict())

    @app.get("/seasons/<int:season_id>/leaderboard")
    def season_leaderboard(season_id: int) -> ResponseReturnValue:
        try:
            board = league.leaderboard.season_leaderboard(season_id)
        except SeasonNotFoundError as exc:
            return jsonify({"error": str(exc)}), 404
        return jsonify(board)

    @app.get("/auth/strava")
    def oauth_start() -> ResponseReturnValue:
        state = secrets.token_urlsafe(16)
        with oauth_lock:
            oauth_states[state] = True
        params = {
            "client_id": CLIENT_ID,
            "response_type": "code",
            "redirect_uri": OAUTH_REDIRECT_URI,
            "scope": OAUTH_SCOPE,
            "approval_prompt": "force",
            "state": state,
        }
        return redirect(STRAVA_AUTHORIZE_URL + "?" + urllib.parse.urlencode(params))

    @app.get("/auth/strava/callback")
    def oauth_callback() -> ResponseReturnValue:
        state = request.args.get("state")
        with oauth_lock:
            known = bool(state) and oauth_states.pop(state, None) is not None
        if not known:
            LOGGER.error("Invalid OAuth state received; possible CSRF. Aborting.")
            abort(400, description="Invalid state")
        if request.args.get("error"):
            abort(400, description="Authorisation denied")
        code = request.args.get("code")
        if not code:
            abort(400, description="Missing code")
        try:
            athlete = exchange_authorization_code(code, scope=request.args.get("scope"))
        except TokenError as exc:
            LOGGER.error("OAuth code exchange failed: %s", exc)
            return jsonify({"error": "Token exchange failed"}), 502
        league.tokens.store_grant(athlete)
        return jsonify(
            {
                "connected": True,
                "participant_id": athlete.athlete_id,
                "name": athlete.athlete_name,
            }
        )

    return app


__all__ = ["LeagueServices", "build_services", "create_app", "format_sse"]
