from __future__ import annotations

from enum import Enum
from typing import Any, List, Optional

from pydantic import BaseModel, Field, field_validator


def split_list(value: Any) -> List[str]:
    """Split a ``;``-joined value into its parts.

    ``None`` and the empty string both split to ``[""]``; a list is passed
    through with each item stringified.
    """
    if value is None:
        return [""]
    if isinstance(value, (list, tuple)):
        return [str(item) for item in value] or [""]
    return str(value).split(";")


class TestRunStatus(str, Enum):
    __test__ = False

    pending = "pending"
    running = "running"
    succeeded = "succeeded"
    failed = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (TestRunStatus.succeeded, TestRunStatus.failed)


class TestFramework(str, Enum):
    __test__ = False

    legacy = "legacy"
    nunit3 = "nunit3"
    nunit3core = "nunit3core"

    @classmethod
    def parse(cls, value: Optional[str]) -> Optional["TestFramework"]:
        if value is None or isinstance(value, cls):
            return value
        token = str(value).strip().lower()
        if not token:
            return None
        if token == "mstest":
            return cls.legacy
        try:
            return cls(token)
        except ValueError as exc:
            raise ValueError(f"Unknown test framework '{value}'") from exc


class StatusColor(str, Enum):
    green = "green"
    yellow = "yellow"
    red = "red"
    white = "white"

    @property
    def hex(self) -> str:
        return {
            StatusColor.green: "#00ff00",
            StatusColor.yellow: "#ffff00",
            StatusColor.red: "#ff0000",
            StatusColor.white: "#ffffff",
        }[self]


class ArtifactKind(str, Enum):
    result = "result"
    image = "image"


class ArtifactInfo(BaseModel):
    kind: ArtifactKind
    path: str
    url: Optional[str] = None
    content_type: Optional[str] = None
    size_bytes: Optional[int] = None
    width: Optional[int] = None
    height: Optional[int] = None


class TestRunCreate(BaseModel):
    __test__ = False

    working_directory: str = Field(..., min_length=1)
    test_assembly: List[str]
    test_framework: Optional[TestFramework] = None
    suffix: List[str] = Field(default_factory=lambda: [""])

    @field_validator("test_assembly", "suffix", mode="before")
    @classmethod
    def split_joined(cls, value: Any) -> List[str]:
        return split_list(value)

    @field_validator("test_framework", mode="before")
    @classmethod
    def parse_framework(cls, value: Any) -> Optional[TestFramework]:
        if isinstance(value, TestFramework):
            return value
        return TestFramework.parse(value)


class TestRunCreated(BaseModel):
    __test__ = False

    id: int


class TestRun(BaseModel):
    __test__ = False

    id: int
    status: TestRunStatus
    working_directory: str
    test_assembly: List[str]
    test_framework: Optional[TestFramework] = None
    suffix: List[str] = Field(default_factory=lambda: [""])
    message: Optional[str] = None
    artifacts: List[ArtifactInfo] = Field(default_factory=list)
    created_at: str
    updated_at: str
    started_at: Optional[str] = None
    completed_at: Optional[str] = None

    model_config = {"from_attributes": True}


class StatusResponse(BaseModel):
    status: Optional[TestRunStatus] = None
    color: StatusColor
    hex: str


class QueueState(BaseModel):
    length: int
    paused: bool
    running: bool
    active_run_id: Optional[int] = None


class RunnerConfig(BaseModel):
    test_root_directory: str
    test_output_directory: str
    archive_root: str
    test_host_executable: str
    test_host_args: str
    netcore_host_executable: str
    netcore_host_args: str
    test_result_file: str
    netcore_test_result_file: str
    test_name_rewrite_rule: Optional[str] = None
    default_test_framework: TestFramework
    delete_source_artifacts: bool = False
    poll_interval_seconds: float
    process_priority: int


class RunnerConfigUpdate(BaseModel):
    test_root_directory: Optional[str] = None
    test_output_directory: Optional[str] = None
    archive_root: Optional[str] = None
    test_host_executable: Optional[str] = None
    test_host_args: Optional[str] = None
    netcore_host_executable: Optional[str] = None
    netcore_host_args: Optional[str] = None
    test_result_file: Optional[str] = None
    netcore_test_result_file: Optional[str] = None
    test_name_rewrite_rule: Optional[str] = None
    default_test_framework: Optional[TestFramework] = None
    delete_source_artifacts: Optional[bool] = None
    poll_interval_seconds: Optional[float] = Field(default=None, gt=0)
    process_priority: Optional[int] = Field(default=None, ge=-20, le=19)
