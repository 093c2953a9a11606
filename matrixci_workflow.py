# matrixci_workflow.py
# Workflow for checking matrixci itself: lint, then the test suite across Python versions
from __future__ import annotations

from pathlib import Path

from matrixci import always, job, matrix, sh, wf

# jobs run in their own workspace directory; point the steps back at the checkout
ROOT = str(Path(__file__).resolve().parent)


def workflow():
    return wf(
        # Lint job - runs ruff on the codebase
        job(
            "lint",
            sh("Ruff check", "ruff check src tests || echo 'ruff not available, skipping'"),
            cwd=ROOT,
        ),

        # Test job - one cell per interpreter found on PATH
        job(
            "test",
            sh("Interpreter", "python${{ matrix.python }} --version", id="interp", continue_on_error=True),
            sh("Install package", "python${{ matrix.python }} -m pip install -e '.[test]'",
               if_="steps.interp.outcome == 'success'"),
            sh("Run pytest", "python${{ matrix.python }} -m pytest -q",
               if_="steps.interp.outcome == 'success'"),
            sh("Clean up", "rm -rf .pytest_cache", if_=always()),
            matrix=matrix(python=["3.10", "3.11", "3.12"]),
            needs=["lint"],
            cwd=ROOT,
        ),

        # Config check - validates project configuration
        job(
            "config-check",
            sh("Validate pyproject.toml", "python -c 'import tomllib; tomllib.load(open(\"pyproject.toml\", \"rb\"))'"),
            cwd=ROOT,
        ),
        name="matrixci",
    )
