"""Tests for reading workflow declarations (YAML and Python)."""
import textwrap
from pathlib import Path

import pytest

from matrixci.conditions import MalformedNode
from matrixci.errors import WorkflowLoadError
from matrixci.loader import load_workflow, parse_triggers, parse_workflow
from matrixci.matrix import expand_job
from matrixci.model import OSFamily, Trigger

SAMPLES = Path(__file__).resolve().parent.parent / "samples"


def _write(tmp_path, name, body):
    path = tmp_path / name
    path.write_text(textwrap.dedent(body))
    return path


class TestRustSample:
    """The four-platform Rust workflow shipped under samples/."""

    @pytest.fixture
    def workflow(self):
        return load_workflow(SAMPLES / "rust.yml")

    def test_structure(self, workflow):
        assert workflow.name == "Rust"
        (job,) = workflow.jobs
        assert job.name == "test"
        assert job.runs_on == "${{ matrix.os }}"
        assert [s.name for s in job.steps] == [
            "Checkout code",
            "Install Linux dependencies",
            "Install Rust toolchain",
            "Run tests",
        ]

    def test_steps(self, workflow):
        checkout, deps, toolchain, tests = workflow.jobs[0].steps
        assert checkout.uses == "actions/checkout@v3"
        assert deps.run.startswith("sudo apt-get update\n")
        assert deps.guard is not None
        assert toolchain.inputs == {"toolchain": "stable", "override": True}
        assert tests.run == "cargo test"

    def test_triggers(self, workflow):
        assert workflow.triggers == [
            Trigger("push", branches=("main",)),
            Trigger("pull_request", branches=("main",)),
        ]
        assert workflow.is_triggered_by("push", "main")
        assert not workflow.is_triggered_by("push", "feature/x")
        assert not workflow.is_triggered_by("release", "main")
        assert workflow.is_triggered_by(None)

    def test_expands_to_four_jobs(self, workflow):
        jobs = expand_job(workflow.jobs[0])
        assert [(j.id, j.os_family) for j in jobs] == [
            ("test (ubuntu-latest)", OSFamily.LINUX),
            ("test (macos-latest)", OSFamily.MACOS),
            ("test (windows-2019)", OSFamily.WINDOWS),
            ("test (windows-2022)", OSFamily.WINDOWS),
        ]


class TestYaml:
    def test_full_job(self, tmp_path):
        path = _write(
            tmp_path,
            "ci.yml",
            """
            name: CI
            env:
              RUST_BACKTRACE: 1
            jobs:
              build:
                runs-on: ubuntu-latest
                timeout-minutes: 10
                steps:
                  - run: make
                    id: make
                    working-directory: src
                    timeout-minutes: 2
                    continue-on-error: true
                    env:
                      DEBUG: true
              deploy:
                needs: build
                if: github_ok == true
                steps:
                  - uses: local/deploy
            """,
        )
        wf = load_workflow(path)

        build, deploy = wf.jobs
        assert wf.env == {"RUST_BACKTRACE": "1"}
        assert build.timeout == 600
        step = build.steps[0]
        assert step.name == "Run make"
        assert step.key == "make"
        assert step.cwd == "src"
        assert step.timeout == 120
        assert step.continue_on_error
        assert step.env == {"DEBUG": "true"}
        assert deploy.needs == ["build"]
        assert deploy.runs_on == "local"
        assert isinstance(deploy.guard, MalformedNode)
        assert deploy.steps[0].name == "Run local/deploy"

    def test_job_continue_on_error(self, tmp_path):
        path = _write(
            tmp_path,
            "ci.yml",
            """
            jobs:
              nightly:
                continue-on-error: true
                steps:
                  - run: cargo +nightly test
              stable:
                steps:
                  - run: cargo test
            """,
        )
        nightly, stable = load_workflow(path).jobs
        assert nightly.continue_on_error
        assert not stable.continue_on_error

    @pytest.mark.parametrize("where", ["job", "step"])
    def test_non_positive_timeout_is_rejected(self, tmp_path, where):
        if where == "job":
            body = "jobs:\n  a:\n    timeout-minutes: 0\n    steps:\n      - run: x\n"
        else:
            body = "jobs:\n  a:\n    steps:\n      - run: x\n        timeout-minutes: -1\n"
        path = _write(tmp_path, "ci.yml", body)
        with pytest.raises(WorkflowLoadError, match="timeout-minutes"):
            load_workflow(path)

    def test_name_defaults_to_file_stem(self, tmp_path):
        path = _write(tmp_path, "lint.yaml", "jobs:\n  a:\n    steps:\n      - run: 'true'\n")
        assert load_workflow(path).name == "lint"

    def test_requires_os(self, tmp_path):
        path = _write(
            tmp_path,
            "ci.yml",
            """
            jobs:
              a:
                steps:
                  - run: signtool
                    requires-os: [windows]
            """,
        )
        assert load_workflow(path).jobs[0].steps[0].requires_os == frozenset({OSFamily.WINDOWS})

    @pytest.mark.parametrize(
        "body,match",
        [
            ("jobs: {}\n", "jobs"),
            ("jobs:\n  a:\n    steps: []\n", "steps"),
            ("jobs:\n  a:\n    steps:\n      - name: x\n", "exactly one"),
            ("jobs:\n  a:\n    steps:\n      - run: x\n        uses: y\n", "exactly one"),
            ("- just\n- a list\n", "mapping"),
        ],
    )
    def test_invalid_documents(self, tmp_path, body, match):
        path = _write(tmp_path, "bad.yml", body)
        with pytest.raises(WorkflowLoadError) as exc:
            load_workflow(path)
        assert match in str(exc.value)

    def test_invalid_yaml(self, tmp_path):
        path = _write(tmp_path, "bad.yml", "jobs: [unclosed\n")
        with pytest.raises(WorkflowLoadError, match="invalid YAML"):
            load_workflow(path)

    def test_unknown_os_family(self, tmp_path):
        path = _write(tmp_path, "bad.yml", "jobs:\n  a:\n    steps:\n      - run: x\n        requires-os: [beos]\n")
        with pytest.raises(WorkflowLoadError, match="beos"):
            load_workflow(path)

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_workflow(tmp_path / "nope.yml")

    def test_unsupported_suffix(self, tmp_path):
        path = _write(tmp_path, "ci.toml", "")
        with pytest.raises(WorkflowLoadError, match="ci.toml"):
            load_workflow(path)

    def test_on_key_read_as_boolean(self):
        wf = parse_workflow({True: "push", "jobs": {"a": {"steps": [{"run": "x"}]}}})
        assert wf.triggers == [Trigger("push")]


class TestTriggers:
    def test_forms(self):
        assert parse_triggers(None) == []
        assert parse_triggers("push") == [Trigger("push")]
        assert parse_triggers(["push", "pull_request"]) == [Trigger("push"), Trigger("pull_request")]
        assert parse_triggers({"push": None, "pull_request": {"branches-ignore": ["wip/*"]}}) == [
            Trigger("push"),
            Trigger("pull_request", branches_ignore=("wip/*",)),
        ]

    def test_branch_globs(self):
        trigger = Trigger("push", branches=("main", "release/*"), branches_ignore=("release/old-*",))
        assert trigger.matches("push", "release/1.2")
        assert not trigger.matches("push", "release/old-1")
        assert not trigger.matches("push", "dev")
        assert not trigger.matches("pull_request", "main")

    def test_bad_trigger(self):
        with pytest.raises(WorkflowLoadError):
            parse_triggers({"push": "main"})


class TestPythonWorkflows:
    def test_workflow_function(self, tmp_path):
        path = _write(
            tmp_path,
            "ci_workflow.py",
            """
            from matrixci import job, matrix, sh, wf

            def workflow():
                return wf(
                    job("test", sh("t", "pytest"), matrix=matrix(python=["3.11", "3.12"])),
                    name="py",
                )
            """,
        )
        wf = load_workflow(path)
        assert wf.name == "py"
        assert wf.source == str(path.resolve())
        assert wf.jobs[0].matrix.axes == {"python": ["3.11", "3.12"]}

    def test_jobs_list(self, tmp_path):
        path = _write(
            tmp_path,
            "jobs_workflow.py",
            """
            from matrixci import job, sh

            JOBS = [job("a", sh("s", "true")), job("b", sh("s", "true"), needs=["a"])]
            """,
        )
        wf = load_workflow(path)
        assert wf.name == "jobs_workflow"
        assert [j.name for j in wf.jobs] == ["a", "b"]

    def test_nothing_defined(self, tmp_path):
        path = _write(tmp_path, "empty_workflow.py", "X = 1\n")
        with pytest.raises(WorkflowLoadError, match="must return/define"):
            load_workflow(path)
