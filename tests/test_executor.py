from __future__ import annotations

import os
import sys
from pathlib import Path

import pytest

from ci_runner.errors import ProcessSpawnError
from ci_runner.services.executor import ProcessExecutor, execution_directory, resolve_under, working_directory


@pytest.mark.unit
def test_run_reports_exit_code_and_restores_cwd(tmp_path: Path) -> None:
    before = os.getcwd()
    executor = ProcessExecutor(priority=0)

    result = executor.run(
        [sys.executable, "-c", "import pathlib, sys; pathlib.Path('seen.txt').write_text('x'); sys.exit(3)"],
        tmp_path,
    )

    assert result.exit_code == 3
    assert result.cwd == tmp_path
    assert (tmp_path / "seen.txt").exists()
    assert os.getcwd() == before


@pytest.mark.unit
def test_missing_executable_raises_spawn_error(tmp_path: Path) -> None:
    before = os.getcwd()
    executor = ProcessExecutor()

    with pytest.raises(ProcessSpawnError):
        executor.run([str(tmp_path / "does-not-exist")], tmp_path)
    assert os.getcwd() == before


@pytest.mark.unit
def test_missing_directory_raises_spawn_error(tmp_path: Path) -> None:
    with pytest.raises(ProcessSpawnError):
        ProcessExecutor().run([sys.executable, "-c", "pass"], tmp_path / "missing")


@pytest.mark.unit
def test_priority_failure_is_not_fatal(tmp_path: Path) -> None:
    # raising priority usually needs privileges; the run must still complete
    result = ProcessExecutor(priority=-20).run([sys.executable, "-c", "pass"], tmp_path)
    assert result.exit_code == 0


@pytest.mark.unit
def test_injected_popen_receives_command(tmp_path: Path) -> None:
    calls = []

    class _Proc:
        pid = 2**31 - 1

        def wait(self) -> int:
            return 0

    def _popen(command, **kwargs):
        calls.append((command, kwargs["cwd"], Path.cwd()))
        return _Proc()

    executor = ProcessExecutor(priority=0, popen=_popen)
    executor.update_priority(5)
    executor.run(["host", "A.dll"], tmp_path)

    assert executor.priority == 5
    assert calls == [(["host", "A.dll"], str(tmp_path), tmp_path.resolve())]


@pytest.mark.unit
def test_working_directory_restores_after_error(tmp_path: Path) -> None:
    before = os.getcwd()
    with pytest.raises(RuntimeError):
        with working_directory(tmp_path):
            assert Path.cwd() == tmp_path.resolve()
            raise RuntimeError("boom")
    assert os.getcwd() == before


@pytest.mark.unit
def test_execution_directory_normalizes_separators(tmp_path: Path) -> None:
    assert execution_directory(tmp_path, "agents\\build-7") == tmp_path / "agents" / "build-7"
    assert resolve_under(tmp_path, "relative") == tmp_path / "relative"
    assert resolve_under(tmp_path, str(tmp_path / "abs")) == tmp_path / "abs"


@pytest.mark.unit
@pytest.mark.skipif(not hasattr(os, "setpriority") or os.name == "nt", reason="POSIX niceness only")
def test_denied_priority_is_logged_as_warning(tmp_path: Path, monkeypatch, caplog) -> None:
    class _Proc:
        pid = 4242

        def wait(self) -> int:
            return 3

    def _denied(which, who, value):
        raise PermissionError(1, "Operation not permitted")

    monkeypatch.setattr(os, "setpriority", _denied)
    executor = ProcessExecutor(priority=-5, popen=lambda command, **kwargs: _Proc())

    with caplog.at_level("WARNING", logger="ci_runner.executor"):
        result = executor.run(["host", "A.dll"], tmp_path)

    assert result.exit_code == 3
    warnings = [record for record in caplog.records if record.levelname == "WARNING"]
    assert len(warnings) == 1
    assert "Could not set priority -5 on pid 4242" in warnings[0].getMessage()
