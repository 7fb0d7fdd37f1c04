from __future__ import annotations

import logging
import os
import subprocess
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Union

from ci_runner.errors import ProcessSpawnError

LOGGER = logging.getLogger("ci_runner.executor")


@dataclass
class ProcessResult:
    command: List[str]
    exit_code: int
    cwd: Path


@contextmanager
def working_directory(path: Union[str, Path]) -> Iterator[Path]:
    """Temporarily switch the process working directory (restores on exit)."""
    previous = os.getcwd()
    os.chdir(path)
    try:
        yield Path(path)
    finally:
        os.chdir(previous)


def execution_directory(test_root: Union[str, Path], working_dir: str) -> Path:
    normalized = working_dir.replace("\\", "/").replace("/", os.sep)
    return Path(test_root) / normalized


class ProcessExecutor:
    """Run one test-host process to completion.

    No timeout is applied: a host that never exits blocks the caller, and with
    it the run queue.

    On POSIX a negative priority needs CAP_SYS_NICE or root. Without it the
    host keeps the default niceness and a warning is logged.
    """

    def __init__(
        self,
        *,
        priority: int = -5,
        popen: Callable[..., Any] = subprocess.Popen,
    ) -> None:
        self._priority = priority
        self._popen = popen

    @property
    def priority(self) -> int:
        return self._priority

    def update_priority(self, priority: int) -> None:
        self._priority = int(priority)

    def _spawn_options(self) -> Dict[str, Any]:
        if os.name == "nt":
            return {"creationflags": getattr(subprocess, "HIGH_PRIORITY_CLASS", 0)}
        return {}

    def _raise_priority(self, proc: Any) -> None:
        if os.name == "nt" or not hasattr(os, "setpriority"):
            return
        try:
            os.setpriority(os.PRIO_PROCESS, proc.pid, self._priority)
        except OSError as exc:
            LOGGER.warning("Could not set priority %s on pid %s: %s", self._priority, proc.pid, exc)

    def run(self, command: List[str], cwd: Path) -> ProcessResult:
        LOGGER.info("Spawning test host in %s: %s", cwd, " ".join(command))
        try:
            with working_directory(cwd):
                proc = self._popen(command, cwd=str(cwd), **self._spawn_options())
                self._raise_priority(proc)
                exit_code = proc.wait()
        except OSError as exc:
            raise ProcessSpawnError(f"Unable to spawn unit test process: {exc}") from exc
        LOGGER.info("Test host exited with code %s", exit_code)
        return ProcessResult(command=list(command), exit_code=int(exit_code), cwd=cwd)


def resolve_under(base: Path, value: Optional[Union[str, Path]]) -> Path:
    path = Path(value or ".").expanduser()
    if not path.is_absolute():
        path = base / path
    return path
