from __future__ import annotations

import os
import stat
import sys
import time
from pathlib import Path
from typing import Callable, Dict

import pytest

from ci_runner.services.adapters import machine_name, sanitize_machine_name
from ci_runner.services.storage import LocalJsonStorage, RunRepository

LEGACY_FOLDER = "tester_{machine} 2026-10-19 10_00_00"

# Stand-in for nunit3-console / dotnet test. Behaviour is picked by the assembly
# name prefix: pass*, fail*, crash* (exit 7), noresults* (exit 0, writes nothing),
# hang* (waits for release.flag in its cwd).
FAKE_HOST = r'''
import sys
import time
from pathlib import Path

from PIL import Image

args = sys.argv[1:]
if args and args[0] == "test":
    args = args[1:]
assembly = args[0]
suffix = args[1] if len(args) > 1 else ""
options = {args[i]: args[i + 1] for i in range(len(args) - 1) if args[i].startswith("--")}
cwd = Path.cwd()

with open(cwd.parent / "invocations.log", "a", encoding="utf-8") as log:
    log.write(f"{cwd.name}:{assembly}:{suffix}\n")

if assembly.startswith("hang"):
    deadline = time.time() + 60
    while not (cwd / "release.flag").exists() and time.time() < deadline:
        time.sleep(0.05)
if assembly.startswith("crash"):
    sys.exit(7)
if assembly.startswith("noresults"):
    sys.exit(0)

failed = assembly.startswith("fail")
out = cwd / "TestResults"
out.mkdir(exist_ok=True)

if "--legacy" in options:
    folder = out / options["--legacy"]
    images = folder / "Out"
    images.mkdir(parents=True, exist_ok=True)
    outcome = "Failed" if failed else "Passed"
    folder.with_name(folder.name + ".trx").write_text(
        '<?xml version="1.0" encoding="utf-8"?>'
        '<TestRun xmlns="http://microsoft.com/schemas/VisualStudio/TeamTest/2010">'
        "<Results>"
        f'<UnitTestResult testName="{assembly}.Check" outcome="{outcome}"/>'
        "</Results></TestRun>",
        encoding="utf-8",
    )
else:
    images = out / options.get("--images", "images")
    images.mkdir(parents=True, exist_ok=True)
    outcome = "Failed" if failed else "Passed"
    (out / f"TestResult{suffix}.xml").write_text(
        '<?xml version="1.0" encoding="utf-8"?>'
        '<test-run><test-suite type="Assembly">'
        f'<test-case name="{assembly}.Check" result="{outcome}"/>'
        f'<test-case name="{assembly}.Other" result="Passed"/>'
        "</test-suite></test-run>",
        encoding="utf-8",
    )

Image.new("RGB", (4, 3), (255, 0, 0)).save(images / f"{assembly}.png")
sys.exit(1 if failed else 0)
'''


@pytest.fixture
def repo(tmp_path: Path) -> RunRepository:
    return RunRepository(LocalJsonStorage(tmp_path / "db.json"))


def write_fake_host(directory: Path) -> Dict[str, str]:
    """Write the fake host and a ``dotnet``-style wrapper; return their paths."""
    script = directory / "fake_host.py"
    script.write_text(FAKE_HOST, encoding="utf-8")
    wrapper = directory / "fake_dotnet"
    wrapper.write_text(f'#!/bin/sh\nexec "{sys.executable}" "{script}" "$@"\n', encoding="utf-8")
    wrapper.chmod(wrapper.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return {"script": str(script), "wrapper": str(wrapper)}


@pytest.fixture
def host_config(tmp_path: Path) -> Dict[str, object]:
    """Runner configuration that points every framework at the fake host."""
    paths = write_fake_host(tmp_path)
    agents = tmp_path / "agents"
    agents.mkdir()
    images = sanitize_machine_name()
    return {
        "test_root_directory": str(agents),
        "archive_root": str(tmp_path / "archive"),
        "test_host_executable": sys.executable,
        "test_host_args": f'"{paths["script"]}" {{0}} {{1}} --images "{images}"',
        "netcore_host_executable": paths["wrapper"],
        "netcore_host_args": f'{{0}} {{1}} --images "{images}"',
        "poll_interval_seconds": 0.02,
    }


@pytest.fixture
def legacy_config(host_config: Dict[str, object]) -> Dict[str, object]:
    """Console host writing MSTest-style per-machine result folders."""
    config = dict(host_config)
    legacy = LEGACY_FOLDER.format(machine=machine_name().upper())
    config["test_host_args"] = f'{config["test_host_args"]} --legacy "{legacy}"'
    config["default_test_framework"] = "legacy"
    return config


def make_agent_dir(config: Dict[str, object], name: str) -> Path:
    path = Path(str(config["test_root_directory"])) / name
    path.mkdir(parents=True, exist_ok=True)
    return path


def invocations(config: Dict[str, object]) -> list:
    log = Path(str(config["test_root_directory"])) / "invocations.log"
    if not log.exists():
        return []
    return log.read_text(encoding="utf-8").splitlines()


def wait_for(predicate: Callable[[], bool], timeout: float = 20.0, interval: float = 0.02) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


posix_only = pytest.mark.skipif(os.name == "nt", reason="fake host wrapper is a POSIX shell script")
