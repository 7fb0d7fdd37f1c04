from __future__ import annotations

from typing import Dict, Iterable, Optional

from ci_runner.schemas import StatusColor, TestRunStatus, split_list
from ci_runner.services.storage import RunRepository

_COLORS = {
    TestRunStatus.succeeded: StatusColor.green,
    TestRunStatus.pending: StatusColor.yellow,
    TestRunStatus.running: StatusColor.yellow,
    TestRunStatus.failed: StatusColor.red,
}


def status_color(status: Optional[TestRunStatus]) -> StatusColor:
    if status is None:
        return StatusColor.white
    return _COLORS.get(TestRunStatus(status), StatusColor.white)


def status_payload(status: Optional[TestRunStatus]) -> Dict[str, object]:
    color = status_color(status)
    return {"status": status, "color": color, "hex": color.hex}


def _clean(directories: Optional[Iterable[str]]) -> list:
    if directories is None:
        return []
    if isinstance(directories, str):
        directories = split_list(directories)
    return [directory.strip() for directory in directories if directory and directory.strip()]


def directory_status(repo: RunRepository, working_directory: Optional[str]) -> Dict[str, object]:
    """Latest status of one working directory as a color token."""
    if not working_directory or not working_directory.strip():
        return status_payload(None)
    return status_payload(repo.most_recent_status(working_directory.strip()))


def aggregate_status(repo: RunRepository, directories: Optional[Iterable[str]]) -> Dict[str, object]:
    """Fold the latest status of several directories into one color token.

    Without any directory the token is white with no status, unlike the
    registry fold, which reports ``failed`` for an empty set.
    """
    wanted = _clean(directories)
    if not wanted:
        return status_payload(None)
    return status_payload(repo.most_recent_status_across(wanted))
