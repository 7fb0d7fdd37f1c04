from __future__ import annotations

from fastapi import Depends, Request

from ci_runner.services.artifacts import ArtifactArchiver
from ci_runner.services.run_queue import RunQueue
from ci_runner.services.storage import RunRepository


def get_repository(request: Request) -> RunRepository:
    return request.app.state.repository


def get_run_queue(request: Request) -> RunQueue:
    return request.app.state.run_queue


def get_archiver(request: Request) -> ArtifactArchiver:
    return request.app.state.archiver


RepositoryDep = Depends(get_repository)
RunQueueDep = Depends(get_run_queue)
ArchiverDep = Depends(get_archiver)
