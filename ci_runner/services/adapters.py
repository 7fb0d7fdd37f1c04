from __future__ import annotations

import logging
import os
import platform
import shlex
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional

from ci_runner.constants import LEGACY_IMAGES_SUBDIR, LEGACY_RESULT_EXTENSION
from ci_runner.errors import ResultParseError, ResultsNotFoundError, TemplateError, UnsupportedOperationError
from ci_runner.schemas import TestFramework, TestRunStatus

LOGGER = logging.getLogger("ci_runner.adapters")

FAILED_OUTCOME = "Failed"

if os.name == "nt":
    INVALID_PATH_CHARS = frozenset('<>:"/\\|?*') | frozenset(chr(code) for code in range(32))
else:
    INVALID_PATH_CHARS = frozenset("/\0")


@dataclass(frozen=True)
class ResultLocation:
    result_file: Path
    images_dir: Path


@dataclass(frozen=True)
class FrameworkAdapter:
    """Strategy table for one test framework.

    ``build_command(config, assembly, suffix)`` returns the argv for the test host,
    ``accepts_exit_code(code)`` tells a completed run apart from an infrastructure
    failure, ``locate_results(results_root, config, suffix)`` finds the result file
    and image directory, ``parse_outcome(path)`` returns the verdict, and
    ``rewrite_names(path, rule)`` rewrites test-case names in place.
    """

    framework: TestFramework
    build_command: Callable[[Dict[str, Any], str, str], List[str]]
    accepts_exit_code: Callable[[int], bool]
    locate_results: Callable[[Path, Dict[str, Any], str], ResultLocation]
    parse_outcome: Callable[[Path], TestRunStatus]
    rewrite_names: Callable[[Path, str], int]


def machine_name() -> str:
    return platform.node().split(".")[0] or "localhost"


def sanitize_machine_name(name: Optional[str] = None, invalid: Optional[frozenset] = None) -> str:
    """Replace every path-invalid character with ``_``; the length never changes."""
    invalid_chars = INVALID_PATH_CHARS if invalid is None else invalid
    value = machine_name() if name is None else name
    return "".join("_" if char in invalid_chars else char for char in value)


# -- Commands --------------------------------------------------------------------------
def _fill(template: str, setting: str, *values: str) -> str:
    try:
        return template.format(*values)
    except (IndexError, KeyError, AttributeError, ValueError) as exc:
        raise TemplateError(f"Invalid {setting} template '{template}': {exc}") from exc


def _expand_args(template: str, assembly: str, suffix: str) -> List[str]:
    tokens = shlex.split(template or "", posix=os.name != "nt")
    return [_fill(token, "argument", assembly, suffix) for token in tokens]


def build_console_command(config: Dict[str, Any], assembly: str, suffix: str) -> List[str]:
    return [str(config["test_host_executable"])] + _expand_args(str(config["test_host_args"]), assembly, suffix)


def build_netcore_command(config: Dict[str, Any], assembly: str, suffix: str) -> List[str]:
    return [str(config["netcore_host_executable"]), "test"] + _expand_args(
        str(config["netcore_host_args"]), assembly, suffix
    )


def accepts_zero_or_one(exit_code: int) -> bool:
    # 1 means some tests failed; the run itself completed.
    return exit_code in (0, 1)


def accepts_non_negative(exit_code: int) -> bool:
    return exit_code >= 0


# -- Result location ---------------------------------------------------------------------
def _creation_time(path: Path) -> float:
    stat = path.stat()
    return getattr(stat, "st_birthtime", stat.st_ctime)


def locate_legacy_results(
    results_root: Path,
    config: Dict[str, Any],
    suffix: str = "",
    *,
    machine: Optional[str] = None,
    created: Callable[[Path], float] = _creation_time,
) -> ResultLocation:
    """Pick the newest run folder produced on this machine.

    Folders are named ``<user>_<MACHINE> <timestamp>``. Two runs on one machine
    writing into the same root race on this choice; the queue only ever runs one
    at a time.
    """
    if not results_root.is_dir():
        raise ResultsNotFoundError(f"Results directory not found: {results_root}")
    marker = f"_{(machine or machine_name()).upper()} "
    newest: Optional[Path] = None
    newest_time = 0.0
    for candidate in sorted(results_root.iterdir(), key=lambda item: item.name):
        if not candidate.is_dir() or marker not in candidate.name:
            continue
        timestamp = created(candidate)
        if newest is None or timestamp > newest_time:
            newest, newest_time = candidate, timestamp
    if newest is None:
        raise ResultsNotFoundError(f"No test results for this machine under {results_root}")
    result_file = newest.with_suffix(LEGACY_RESULT_EXTENSION)
    if not result_file.is_file():
        raise ResultsNotFoundError(f"Result file not found: {result_file}")
    return ResultLocation(result_file=result_file, images_dir=newest / LEGACY_IMAGES_SUBDIR)


def _nunit_location(results_root: Path, filename: str) -> ResultLocation:
    if not results_root.is_dir():
        raise ResultsNotFoundError(f"Results directory not found: {results_root}")
    result_file = results_root / filename
    if not result_file.is_file():
        raise ResultsNotFoundError(f"Result file not found: {result_file}")
    return ResultLocation(result_file=result_file, images_dir=results_root / sanitize_machine_name())


def locate_nunit3_results(results_root: Path, config: Dict[str, Any], suffix: str = "") -> ResultLocation:
    return _nunit_location(results_root, str(config["test_result_file"]))


def locate_nunit3core_results(results_root: Path, config: Dict[str, Any], suffix: str = "") -> ResultLocation:
    return _nunit_location(results_root, _fill(str(config["netcore_test_result_file"]), "result file", suffix))


# -- Parsing -----------------------------------------------------------------------------
def _local_name(tag: Any) -> str:
    if not isinstance(tag, str):
        return ""
    return tag.rsplit("}", 1)[-1]


def _iter_elements(root: ET.Element, local_name: str) -> Iterator[ET.Element]:
    for element in root.iter():
        if _local_name(element.tag) == local_name:
            yield element


def load_document(path: Path) -> ET.ElementTree:
    try:
        for _event, (prefix, uri) in ET.iterparse(str(path), events=("start-ns",)):
            try:
                ET.register_namespace(prefix, uri)
            except ValueError:
                # ns0, ns1... are reserved for generated prefixes
                continue
        return ET.parse(str(path))
    except FileNotFoundError as exc:
        raise ResultsNotFoundError(f"Result file not found: {path}") from exc
    except ET.ParseError as exc:
        raise ResultParseError(f"Unable to parse result file {path}: {exc}") from exc


def _outcome(path: Path, element_name: str, attribute: str) -> TestRunStatus:
    root = load_document(path).getroot()
    for element in _iter_elements(root, element_name):
        if element.get(attribute) == FAILED_OUTCOME:
            return TestRunStatus.failed
    return TestRunStatus.succeeded


def parse_trx_outcome(path: Path) -> TestRunStatus:
    return _outcome(path, "UnitTestResult", "outcome")


def parse_nunit_outcome(path: Path) -> TestRunStatus:
    return _outcome(path, "test-case", "result")


# -- Name rewriting ------------------------------------------------------------------------
def rewrite_nunit_names(path: Path, rule: str) -> int:
    tree = load_document(path)
    count = 0
    for element in _iter_elements(tree.getroot(), "test-case"):
        element.set("name", _fill(rule, "test name rewrite", element.get("name", "")))
        count += 1
    tree.write(str(path), encoding="utf-8", xml_declaration=True)
    LOGGER.debug("Rewrote %s test names in %s", count, path)
    return count


def rewrite_unsupported(path: Path, rule: str) -> int:
    raise UnsupportedOperationError("Test name rewriting is not supported for legacy result files.")


ADAPTERS: Dict[TestFramework, FrameworkAdapter] = {
    TestFramework.legacy: FrameworkAdapter(
        framework=TestFramework.legacy,
        build_command=build_console_command,
        accepts_exit_code=accepts_zero_or_one,
        locate_results=locate_legacy_results,
        parse_outcome=parse_trx_outcome,
        rewrite_names=rewrite_unsupported,
    ),
    TestFramework.nunit3: FrameworkAdapter(
        framework=TestFramework.nunit3,
        build_command=build_console_command,
        accepts_exit_code=accepts_non_negative,
        locate_results=locate_nunit3_results,
        parse_outcome=parse_nunit_outcome,
        rewrite_names=rewrite_nunit_names,
    ),
    TestFramework.nunit3core: FrameworkAdapter(
        framework=TestFramework.nunit3core,
        build_command=build_netcore_command,
        accepts_exit_code=accepts_zero_or_one,
        locate_results=locate_nunit3core_results,
        parse_outcome=parse_nunit_outcome,
        rewrite_names=rewrite_nunit_names,
    ),
}


def get_adapter(framework: TestFramework) -> FrameworkAdapter:
    return ADAPTERS[TestFramework(framework)]
