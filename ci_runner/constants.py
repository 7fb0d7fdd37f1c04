from __future__ import annotations

import os

DEFAULT_DB_PATH = os.getenv("CI_RUNNER_DB_PATH", "ci-runner.db.json")

DEFAULT_CONFIG = {
    "test_root_directory": os.getenv("CI_RUNNER_TEST_ROOT", "."),
    "test_output_directory": "TestResults",
    "archive_root": os.getenv("CI_RUNNER_ARCHIVE_ROOT", "artifacts"),
    "test_host_executable": "nunit3-console",
    "test_host_args": "{0} --work=TestResults",
    "netcore_host_executable": "dotnet",
    "netcore_host_args": "{0} --results-directory TestResults --logger nunit;LogFileName=TestResult{1}.xml",
    "test_result_file": "TestResult.xml",
    "netcore_test_result_file": "TestResult{0}.xml",
    "test_name_rewrite_rule": None,
    "default_test_framework": "nunit3",
    "delete_source_artifacts": False,
    "poll_interval_seconds": 0.1,
    "process_priority": -5,
}

LEGACY_RESULT_EXTENSION = ".trx"
LEGACY_IMAGES_SUBDIR = "Out"
IMAGE_GLOB = "*.png"
