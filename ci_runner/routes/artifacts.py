from __future__ import annotations

from fastapi import APIRouter, HTTPException
from fastapi.responses import FileResponse

from ci_runner.dependencies import ArchiverDep
from ci_runner.services.artifacts import ArtifactArchiver

router = APIRouter(tags=["artifacts"])


@router.get("/artifacts/{artifact_path:path}")
async def read_artifact(artifact_path: str, archiver: ArtifactArchiver = ArchiverDep) -> FileResponse:
    root = archiver.root.resolve()
    target = (root / artifact_path).resolve()

    if target != root and root not in target.parents:
        raise HTTPException(status_code=404, detail="Artifact not found")
    if not target.is_file():
        raise HTTPException(status_code=404, detail="Artifact not found")

    return FileResponse(path=target)
