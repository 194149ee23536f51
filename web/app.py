"""FastAPI application factory and main app.

This module creates the FastAPI application with all routers and
dependency injection configured. Routes are thin proxies to the run
service and the pipeline engine.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from shipline import __version__
from shipline.config import Settings, get_settings
from shipline.db import create_all_tables, get_engine, get_session_factory
from shipline.pipeline.io import load_pipeline
from shipline.pipeline.schema import PipelineDefinition
from shipline.runs.engine import PipelineEngine, StageCollaborators
from web.routers import config, health, runs


def create_app(
    settings: Settings | None = None,
    definition: PipelineDefinition | None = None,
    collaborators: StageCollaborators | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        settings: Settings override; loaded from the environment if None.
        definition: Pipeline definition; loaded from the configured
            pipeline file at startup if None.
        collaborators: Stage collaborator override for the engine.

    Returns:
        Configured FastAPI application.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        """Create tables and start the pipeline engine.

        Runs left unfinished by a previous process are failed first. Queued
        runs are drained before shutdown completes.
        """
        effective = settings or get_settings()
        engine = get_engine(effective.db_url)
        create_all_tables(engine)
        app.state.settings = effective
        app.state.session_factory = get_session_factory(engine)
        app.state.pipeline_engine = PipelineEngine(
            definition or load_pipeline(effective.pipeline_file),
            app.state.session_factory,
            settings=effective,
            collaborators=collaborators,
        )
        app.state.pipeline_engine.recover_interrupted()
        try:
            yield
        finally:
            app.state.pipeline_engine.shutdown()
            engine.dispose()

    application = FastAPI(
        title="Shipline API",
        description="HTTP API for triggering, inspecting and cancelling "
        "pipeline runs",
        version=__version__,
        lifespan=lifespan,
    )

    # Include routers
    application.include_router(health.router, tags=["health"])
    application.include_router(config.router, prefix="/config", tags=["config"])
    application.include_router(runs.router, prefix="/runs", tags=["runs"])

    return application


# Create the default application instance
app = create_app()
