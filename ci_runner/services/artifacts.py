from __future__ import annotations

import logging
import shutil
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from PIL import Image

from ci_runner.constants import IMAGE_GLOB
from ci_runner.errors import ArtifactCopyError, ResultsNotFoundError
from ci_runner.schemas import ArtifactKind

LOGGER = logging.getLogger("ci_runner.artifacts")


def _relative_parts(working_directory: str) -> List[str]:
    parts = []
    for part in working_directory.replace("\\", "/").split("/"):
        if part in ("", ".", ".."):
            continue
        parts.append(part.rstrip(":") if part.endswith(":") else part)
    return [part for part in parts if part]


class ArtifactArchiver:
    """Copy result documents and comparison images into per-run archive folders.

    Layout is ``<root>/<working directory>/<run id>/``. With ``delete_source``
    the files are moved instead of copied.
    """

    def __init__(
        self,
        root: Optional[Path] = None,
        base_url: str = "/artifacts",
        *,
        delete_source: bool = False,
    ) -> None:
        resolved_root = root or Path.cwd() / "artifacts"
        self._root = Path(resolved_root).resolve()
        self._base_url = base_url.rstrip("/")
        self._delete_source = delete_source
        self._root.mkdir(parents=True, exist_ok=True)

    @property
    def root(self) -> Path:
        return self._root

    @property
    def delete_source(self) -> bool:
        return self._delete_source

    def configure(self, *, root: Optional[Path] = None, delete_source: Optional[bool] = None) -> None:
        if root is not None:
            self._root = Path(root).resolve()
            self._root.mkdir(parents=True, exist_ok=True)
        if delete_source is not None:
            self._delete_source = bool(delete_source)

    def run_dir(self, working_directory: str, run_id: int) -> Path:
        return self._root.joinpath(*_relative_parts(working_directory), str(run_id))

    def relative(self, path: Path) -> str:
        return path.resolve().relative_to(self._root).as_posix()

    def url(self, path: Path) -> str:
        return f"{self._base_url}/{self.relative(path)}"

    def _transfer(self, source: Path, destination: Path) -> None:
        if self._delete_source:
            shutil.move(str(source), str(destination))
        else:
            shutil.copy2(source, destination)

    def _image_size(self, path: Path) -> Tuple[Optional[int], Optional[int]]:
        try:
            with Image.open(path) as img:
                return img.width, img.height
        except OSError as exc:
            LOGGER.warning("Archived image %s is not readable: %s", path, exc)
            return None, None

    def _artifact(self, path: Path, kind: ArtifactKind, content_type: str) -> Dict[str, object]:
        artifact: Dict[str, object] = {
            "kind": kind.value,
            "path": self.relative(path),
            "url": self.url(path),
            "content_type": content_type,
            "size_bytes": path.stat().st_size,
        }
        if kind == ArtifactKind.image:
            artifact["width"], artifact["height"] = self._image_size(path)
        return artifact

    def archive(
        self,
        working_directory: str,
        run_id: int,
        result_file: Path,
        images_dir: Optional[Path],
    ) -> List[Dict[str, object]]:
        """Store the result file and every PNG from ``images_dir`` for one run.

        A missing image directory archives no images; a missing result file is an
        error.
        """
        if not result_file.is_file():
            raise ResultsNotFoundError(f"Result file not found: {result_file}")

        destination_dir = self.run_dir(working_directory, run_id)
        artifacts: List[Dict[str, object]] = []
        try:
            destination_dir.mkdir(parents=True, exist_ok=True)
            result_copy = destination_dir / result_file.name
            self._transfer(result_file, result_copy)
            artifacts.append(self._artifact(result_copy, ArtifactKind.result, "application/xml"))

            images = sorted(images_dir.glob(IMAGE_GLOB)) if images_dir and images_dir.is_dir() else []
            for image in images:
                if not image.is_file():
                    continue
                image_copy = destination_dir / image.name
                self._transfer(image, image_copy)
                artifacts.append(self._artifact(image_copy, ArtifactKind.image, "image/png"))
        except OSError as exc:
            raise ArtifactCopyError(f"Unable to store test artifacts in {destination_dir}: {exc}") from exc

        LOGGER.info(
            "Archived %s artifact(s) for run #%s into %s",
            len(artifacts),
            run_id,
            destination_dir,
        )
        return artifacts

    def purge_run(self, working_directory: str, run_id: int) -> None:
        """Remove all artifacts associated with a run."""
        target = self.run_dir(working_directory, run_id)
        if target.exists():
            shutil.rmtree(target, ignore_errors=True)
