"""FastAPI dependencies.

The settings, session factory and pipeline engine are created once by the
app lifespan and stored on ``app.state``; these helpers hand them to route
handlers. Request sessions use ``shipline.db.get_session``, so a handler
that raises rolls its changes back.
"""

from __future__ import annotations

from collections.abc import Generator
from typing import Any

from fastapi import Depends, Request
from sqlalchemy.orm import Session, sessionmaker

from shipline.config import Settings
from shipline.db import get_session
from shipline.runs.engine import PipelineEngine


def _state(request: Request, name: str) -> Any:
    return getattr(request.app.state, name)


def get_session_factory(request: Request) -> sessionmaker[Session]:
    return _state(request, "session_factory")  # type: ignore[no-any-return]


def get_pipeline_engine(request: Request) -> PipelineEngine:
    """Get the running pipeline engine."""
    return _state(request, "pipeline_engine")  # type: ignore[no-any-return]


def get_app_settings(request: Request) -> Settings:
    """Get the settings the app was started with."""
    return _state(request, "settings")  # type: ignore[no-any-return]


def get_db(
    session_factory: sessionmaker[Session] = Depends(get_session_factory),
) -> Generator[Session, None, None]:
    """Provide a database session scoped to one request."""
    with get_session(session_factory) as session:
        yield session
