"""Shared fixtures for the matrixci test suite."""
import shlex
import sys

import pytest

from matrixci.context import ExecutionContext
from matrixci.platforms import host_os_family
from matrixci.ui.console import Console, set_console


def py(code: str) -> str:
    """Shell command running `code` with the interpreter running the tests."""
    return f"{shlex.quote(sys.executable)} -c {shlex.quote(code)}"


posix_only = pytest.mark.skipif(sys.platform == "win32", reason="POSIX shell semantics")


@pytest.fixture(autouse=True)
def quiet_console():
    console = Console(quiet=True)
    set_console(console)
    yield console
    set_console(Console())


@pytest.fixture
def context(tmp_path):
    """Execution context for a job on this host, working in tmp_path."""
    return ExecutionContext(job_id="job", os_family=host_os_family(), workdir=tmp_path)
