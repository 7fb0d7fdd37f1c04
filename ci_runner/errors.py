from __future__ import annotations


class RunNotFoundError(LookupError):
    def __init__(self, run_id: int) -> None:
        super().__init__(f"Test run #{run_id} does not exist")
        self.run_id = run_id


class TestRunError(Exception):
    """Base class for failures that end a test run with ``failed``."""

    __test__ = False

    reason = "test_run_failed"


class RunValidationError(TestRunError):
    reason = "validation"


class ProcessSpawnError(TestRunError):
    reason = "process_spawn"


class InfrastructureExitCodeError(TestRunError):
    reason = "infrastructure_exit_code"

    def __init__(self, exit_code: int, assembly: str) -> None:
        super().__init__(f"Test host exited with code {exit_code} while running {assembly}")
        self.exit_code = exit_code
        self.assembly = assembly


class ResultsNotFoundError(TestRunError):
    reason = "results_not_found"


class ResultParseError(TestRunError):
    reason = "result_parse"


class ArtifactCopyError(TestRunError):
    reason = "artifact_copy"


class UnsupportedOperationError(TestRunError):
    reason = "unsupported_operation"


class TemplateError(TestRunError):
    reason = "invalid_template"
