"""Persistence layer: SQLAlchemy models, engine helpers and the result store."""

from .database import (  # noqa: F401
    create_engine_for,
    init_db,
    make_session_factory,
    session_scope,
)
from .repository import ResultStore  # noqa: F401
