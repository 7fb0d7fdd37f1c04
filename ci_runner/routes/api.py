from __future__ import annotations

from typing import Dict, List, Optional

from fastapi import APIRouter, HTTPException

from ci_runner.dependencies import ArchiverDep, RepositoryDep, RunQueueDep
from ci_runner.schemas import (
    QueueState,
    RunnerConfig,
    RunnerConfigUpdate,
    StatusResponse,
    TestRun,
    TestRunCreate,
    TestRunCreated,
    TestRunStatus,
)
from ci_runner.services.artifacts import ArtifactArchiver
from ci_runner.services.run_queue import RunQueue
from ci_runner.services.status import aggregate_status, directory_status
from ci_runner.services.storage import RunRepository

router = APIRouter(prefix="/api", tags=["api"])


# Runs ----------------------------------------------------------------------------
@router.post("/runs", response_model=TestRunCreated, status_code=201)
async def create_run(payload: TestRunCreate, run_queue: RunQueue = RunQueueDep) -> Dict[str, int]:
    run_id = run_queue.create(
        payload.working_directory,
        payload.test_assembly,
        payload.test_framework,
        payload.suffix,
    )
    return {"id": run_id}


@router.get("/runs", response_model=List[TestRun])
async def list_runs(
    working_directory: Optional[str] = None,
    repo: RunRepository = RepositoryDep,
) -> List[TestRun]:
    return repo.list_runs(working_directory=working_directory)


@router.get("/runs/{run_id}", response_model=TestRun)
async def get_run(run_id: int, repo: RunRepository = RepositoryDep) -> TestRun:
    record = repo.get_run(run_id)
    if not record:
        raise HTTPException(status_code=404, detail="Run not found")
    return record


@router.delete("/runs/{run_id}", status_code=204)
async def delete_run(
    run_id: int,
    repo: RunRepository = RepositoryDep,
    archiver: ArtifactArchiver = ArchiverDep,
) -> None:
    record = repo.get_run(run_id)
    if not record:
        return
    if record["status"] == TestRunStatus.running.value:
        raise HTTPException(status_code=409, detail="Running test runs cannot be deleted.")
    repo.delete_run(run_id)
    archiver.purge_run(record["working_directory"], run_id)


# Status --------------------------------------------------------------------------
@router.get("/status", response_model=StatusResponse)
async def get_status(
    working_directory: Optional[str] = None,
    repo: RunRepository = RepositoryDep,
) -> Dict[str, object]:
    return directory_status(repo, working_directory)


@router.get("/status/aggregate", response_model=StatusResponse)
async def get_aggregate_status(
    directories: Optional[str] = None,
    repo: RunRepository = RepositoryDep,
) -> Dict[str, object]:
    return aggregate_status(repo, directories)


# Queue ---------------------------------------------------------------------------
@router.get("/queue", response_model=QueueState)
async def get_queue(run_queue: RunQueue = RunQueueDep) -> Dict[str, object]:
    return run_queue.snapshot()


@router.post("/queue/pause", response_model=QueueState)
async def pause_queue(run_queue: RunQueue = RunQueueDep) -> Dict[str, object]:
    run_queue.paused = True
    return run_queue.snapshot()


@router.post("/queue/resume", response_model=QueueState)
async def resume_queue(run_queue: RunQueue = RunQueueDep) -> Dict[str, object]:
    run_queue.paused = False
    return run_queue.snapshot()


# Config --------------------------------------------------------------------------
@router.get("/config", response_model=RunnerConfig)
async def get_config(repo: RunRepository = RepositoryDep) -> RunnerConfig:
    return repo.get_config()


@router.patch("/config", response_model=RunnerConfig)
async def update_config(
    payload: RunnerConfigUpdate,
    repo: RunRepository = RepositoryDep,
    run_queue: RunQueue = RunQueueDep,
) -> RunnerConfig:
    config = repo.update_config(payload.model_dump(mode="json", exclude_unset=True))
    run_queue.update_poll_interval(config["poll_interval_seconds"])
    return config
