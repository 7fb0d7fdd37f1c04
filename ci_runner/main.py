from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, RedirectResponse

from ci_runner.errors import RunNotFoundError
from ci_runner.routes import api
from ci_runner.routes import artifacts as artifact_routes
from ci_runner.services.run_queue import RunQueue
from ci_runner.services.runner import TestRunService
from ci_runner.services.storage import RunRepository, build_repository

LOGGER = logging.getLogger("ci_runner.main")


async def run_not_found_handler(request: Request, exc: RunNotFoundError) -> JSONResponse:
    return JSONResponse(status_code=404, content={"detail": str(exc)})


async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
    return JSONResponse(status_code=400, content={"detail": str(exc)})


def create_app(
    repository: Optional[RunRepository] = None,
    *,
    start_worker: bool = True,
    base_dir: Optional[Path] = None,
) -> FastAPI:
    """Build the application; the run queue and its worker live on ``app.state``."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        repo = repository or build_repository()
        service = TestRunService(repo, base_dir=base_dir)
        run_queue = RunQueue(repo, service)
        app.state.repository = repo
        app.state.archiver = service.archiver
        app.state.run_queue = run_queue
        if start_worker:
            run_queue.start()
            LOGGER.info("Queue worker started (archive root %s)", service.archiver.root)
        try:
            yield
        finally:
            run_queue.stop()

    app = FastAPI(title="CI Test Runner", lifespan=lifespan)
    app.add_exception_handler(RunNotFoundError, run_not_found_handler)
    app.add_exception_handler(ValueError, value_error_handler)
    app.include_router(api.router)
    app.include_router(artifact_routes.router)

    @app.get("/")
    async def root() -> RedirectResponse:
        """Send visitors to the queue state, the closest thing to a front page."""
        return RedirectResponse(url="/api/queue", status_code=303)

    return app


app = create_app()
