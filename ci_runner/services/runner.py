from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from ci_runner.errors import InfrastructureExitCodeError, RunValidationError, TestRunError
from ci_runner.schemas import TestFramework, TestRunStatus
from ci_runner.services.adapters import get_adapter
from ci_runner.services.artifacts import ArtifactArchiver
from ci_runner.services.executor import ProcessExecutor, execution_directory, resolve_under
from ci_runner.services.storage import RunRepository

LOGGER = logging.getLogger("ci_runner.runner")


class TestRunService:
    """Execute a single test run: spawn, check, locate, rewrite, parse, archive."""

    __test__ = False

    def __init__(
        self,
        repo: RunRepository,
        archiver: Optional[ArtifactArchiver] = None,
        executor: Optional[ProcessExecutor] = None,
        *,
        base_dir: Optional[Path] = None,
    ) -> None:
        self._repo = repo
        self._base_dir = (base_dir or Path.cwd()).resolve()
        config = repo.get_config()
        self._archiver = archiver or ArtifactArchiver(
            resolve_under(self._base_dir, config["archive_root"]),
            delete_source=config["delete_source_artifacts"],
        )
        self._executor = executor or ProcessExecutor(priority=config["process_priority"])

    @property
    def archiver(self) -> ArtifactArchiver:
        return self._archiver

    @property
    def executor(self) -> ProcessExecutor:
        return self._executor

    def resolve_framework(self, run: Dict[str, Any], config: Dict[str, Any]) -> TestFramework:
        try:
            framework = TestFramework.parse(run.get("test_framework"))
            if framework is None:
                framework = TestFramework.parse(config["default_test_framework"])
        except ValueError as exc:
            raise RunValidationError(str(exc)) from exc
        if framework is None:
            raise RunValidationError("No test framework requested and no default configured.")
        return framework

    def execute(self, run: Dict[str, Any]) -> Tuple[TestRunStatus, Optional[str]]:
        """Run every assembly of ``run`` and return its terminal status and message."""
        try:
            return self._execute(run)
        except TestRunError as exc:
            LOGGER.error("Test run #%s failed (%s): %s", run["id"], exc.reason, exc)
            return TestRunStatus.failed, str(exc)

    def _execute(self, run: Dict[str, Any]) -> Tuple[TestRunStatus, Optional[str]]:
        run_id = run["id"]
        assemblies = list(run.get("test_assembly") or [""])
        suffixes = list(run.get("suffix") or [""])
        if len(assemblies) != len(suffixes):
            raise RunValidationError(
                f"Assembly/suffix mismatch: {len(assemblies)} assemblies but {len(suffixes)} suffixes."
            )

        config = self._repo.get_config()
        framework = self.resolve_framework(run, config)
        adapter = get_adapter(framework)
        self._archiver.configure(
            root=resolve_under(self._base_dir, config["archive_root"]),
            delete_source=config["delete_source_artifacts"],
        )
        self._executor.update_priority(config["process_priority"])

        test_root = resolve_under(self._base_dir, config["test_root_directory"])
        cwd = execution_directory(test_root, run["working_directory"])
        results_root = cwd / str(config["test_output_directory"])
        rewrite_rule = config.get("test_name_rewrite_rule")

        for assembly, suffix in zip(assemblies, suffixes):
            command = adapter.build_command(config, assembly, suffix)
            result = self._executor.run(command, cwd)
            if not adapter.accepts_exit_code(result.exit_code):
                raise InfrastructureExitCodeError(result.exit_code, assembly)

            location = adapter.locate_results(results_root, config, suffix)
            if rewrite_rule:
                adapter.rewrite_names(location.result_file, rewrite_rule)
            outcome = adapter.parse_outcome(location.result_file)

            artifacts = self._archiver.archive(
                run["working_directory"],
                run_id,
                location.result_file,
                location.images_dir,
            )
            self._repo.add_artifacts(run_id, artifacts)

            if outcome != TestRunStatus.succeeded:
                LOGGER.info("Test run #%s reported failing tests in %s", run_id, assembly)
                return TestRunStatus.failed, f"Failing tests reported by {assembly}."

        return TestRunStatus.succeeded, None
