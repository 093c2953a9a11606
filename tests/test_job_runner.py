"""Tests for JobRunner: step ordering, guards and the failure policy."""
import threading

import pytest

from conftest import py
from matrixci.conditions import always, cancelled, compile_declared, compile_guard, failure
from matrixci.context import CancelToken
from matrixci.executor import ActionRegistry, StepExecutor
from matrixci.job_runner import JobRunner, job_slug
from matrixci.model import JobConfig, OSFamily, Outcome, Reason, StepSpec


def _sh(name, code, **kwargs):
    return StepSpec(name=name, run=py(code), **kwargs)


def _job(*steps, family=OSFamily.LINUX, matrix=None, **kwargs):
    matrix = matrix or {}
    return JobConfig(
        id=kwargs.pop("id", "test"),
        job_name="test",
        matrix=matrix,
        axis_values=tuple(matrix.items()),
        platform={"Linux": "ubuntu-latest", "macOS": "macos-latest", "Windows": "windows-2022"}[family.value],
        os_family=family,
        steps=tuple(steps),
        **kwargs,
    )


@pytest.fixture
def runner(tmp_path):
    executor = StepExecutor(ActionRegistry().stub("actions/checkout", "actions-rs/toolchain"))
    return JobRunner(executor, workspace=tmp_path / "work", step_timeout=30)


def _outcomes(result):
    return [(s.outcome, s.reason) for s in result.steps]


class TestPlatformGuard:
    """The Linux-only dependency step from a four-platform matrix."""

    STEPS = (
        StepSpec(name="Checkout code", uses="actions/checkout@v3"),
        _sh("Install Linux dependencies", "print('apt-get')", guard=compile_guard("runner.os == 'Linux'")),
        StepSpec(name="Install Rust toolchain", uses="actions-rs/toolchain@v1", inputs={"toolchain": "stable"}),
        _sh("Run tests", "print('cargo test')"),
    )

    def test_linux_runs_every_step(self, runner):
        result = runner.run(_job(*self.STEPS, family=OSFamily.LINUX))

        assert result.status == Outcome.SUCCEEDED
        assert [s.outcome for s in result.steps] == [Outcome.SUCCEEDED] * 4

    @pytest.mark.parametrize("family", [OSFamily.MACOS, OSFamily.WINDOWS])
    def test_other_platforms_skip_the_guarded_step(self, runner, family):
        result = runner.run(_job(*self.STEPS, family=family))

        assert result.status == Outcome.SUCCEEDED
        assert _outcomes(result) == [
            (Outcome.SUCCEEDED, None),
            (Outcome.SKIPPED, Reason.CONDITION_FALSE),
            (Outcome.SUCCEEDED, None),
            (Outcome.SUCCEEDED, None),
        ]


class TestFailurePolicy:
    def test_failure_skips_the_rest(self, runner):
        result = runner.run(
            _job(
                _sh("ok", "pass"),
                _sh("boom", "import sys; sys.exit(1)"),
                _sh("after", "pass"),
            )
        )

        assert result.status == Outcome.FAILED
        assert result.reason == Reason.NON_ZERO_EXIT
        assert _outcomes(result) == [
            (Outcome.SUCCEEDED, None),
            (Outcome.FAILED, Reason.NON_ZERO_EXIT),
            (Outcome.SKIPPED, Reason.PREVIOUS_FAILURE),
        ]
        assert "boom" in result.message

    def test_continue_on_error(self, runner):
        result = runner.run(
            _job(
                _sh("flaky", "import sys; sys.exit(1)", continue_on_error=True),
                _sh("after", "pass"),
            )
        )

        assert result.status == Outcome.SUCCEEDED
        assert _outcomes(result) == [(Outcome.FAILED, Reason.NON_ZERO_EXIT), (Outcome.SUCCEEDED, None)]

    def test_failure_and_always_steps_still_run(self, runner):
        result = runner.run(
            _job(
                _sh("boom", "import sys; sys.exit(1)"),
                _sh("report", "print('report')", guard=failure()),
                _sh("cleanup", "print('cleanup')", guard=always()),
                _sh("deploy", "pass"),
            )
        )

        assert result.status == Outcome.FAILED
        assert _outcomes(result) == [
            (Outcome.FAILED, Reason.NON_ZERO_EXIT),
            (Outcome.SUCCEEDED, None),
            (Outcome.SUCCEEDED, None),
            (Outcome.SKIPPED, Reason.PREVIOUS_FAILURE),
        ]

    def test_failure_step_is_skipped_when_nothing_failed(self, runner):
        result = runner.run(_job(_sh("ok", "pass"), _sh("report", "pass", guard=failure())))

        assert result.status == Outcome.SUCCEEDED
        assert result.steps[1].reason == Reason.CONDITION_FALSE

    def test_step_outcome_guard(self, runner):
        result = runner.run(
            _job(
                _sh("detect", "import sys; sys.exit(1)", id="detect", continue_on_error=True),
                _sh("fallback", "pass", guard=compile_guard("steps.detect.outcome == 'failure'")),
                _sh("primary", "pass", guard=compile_guard("steps.detect.outcome == 'success'")),
            )
        )

        assert result.status == Outcome.SUCCEEDED
        assert [s.outcome for s in result.steps] == [Outcome.FAILED, Outcome.SUCCEEDED, Outcome.SKIPPED]

    def test_missing_capability(self, runner):
        result = runner.run(
            _job(_sh("signtool", "pass", requires_os=frozenset({OSFamily.WINDOWS})), family=OSFamily.LINUX)
        )

        assert result.status == Outcome.SUCCEEDED
        assert _outcomes(result) == [(Outcome.SKIPPED, Reason.MISSING_CAPABILITY)]

    def test_step_budget(self, runner):
        result = runner.run(_job(_sh("slow", "import time; time.sleep(30)", timeout=0.5), _sh("after", "pass")))

        assert result.status == Outcome.FAILED
        assert result.reason == Reason.TIMEOUT
        assert _outcomes(result)[1] == (Outcome.SKIPPED, Reason.PREVIOUS_FAILURE)

    def test_job_budget(self, runner):
        result = runner.run(_job(_sh("slow", "import time; time.sleep(30)"), timeout=0.5))

        assert result.status == Outcome.FAILED
        assert result.reason == Reason.TIMEOUT

    def test_zero_step_timeout_is_not_the_default(self, runner):
        result = runner.run(_job(_sh("instant", "pass", timeout=0)))

        assert result.status == Outcome.FAILED
        assert _outcomes(result) == [(Outcome.FAILED, Reason.TIMEOUT)]

    def test_zero_job_timeout_is_not_the_default(self, runner):
        result = runner.run(_job(_sh("instant", "pass"), timeout=0))

        assert result.status == Outcome.FAILED
        assert result.reason == Reason.TIMEOUT
        assert result.steps[0].message == "job time budget exhausted"


class TestInvalidConditions:
    def test_unknown_step_reference_fails_the_job(self, runner):
        result = runner.run(
            _job(
                _sh("guarded", "pass", guard=compile_guard("steps.nope.outcome == 'success'")),
                _sh("after", "pass"),
            )
        )

        assert result.status == Outcome.FAILED
        assert result.reason == Reason.INVALID_CONDITION
        assert _outcomes(result) == [
            (Outcome.FAILED, Reason.INVALID_CONDITION),
            (Outcome.SKIPPED, Reason.PREVIOUS_FAILURE),
        ]

    def test_malformed_job_guard(self, runner):
        result = runner.run(_job(_sh("never", "pass"), guard=compile_declared("runner.os ==")))

        assert result.status == Outcome.FAILED
        assert result.reason == Reason.INVALID_CONDITION
        assert all(s.outcome == Outcome.SKIPPED for s in result.steps)


class TestJobLevel:
    def test_false_job_guard_skips_the_job(self, runner):
        result = runner.run(_job(_sh("s", "pass"), family=OSFamily.WINDOWS, guard=compile_guard("runner.os == 'Linux'")))

        assert result.status == Outcome.SKIPPED
        assert result.reason == Reason.CONDITION_FALSE
        assert _outcomes(result) == [(Outcome.SKIPPED, Reason.CONDITION_FALSE)]

    def test_cancelled_before_start(self, tmp_path):
        cancel = CancelToken()
        cancel.cancel()
        runner = JobRunner(StepExecutor(), workspace=tmp_path, cancel=cancel)

        result = runner.run(_job(_sh("s", "pass")))
        assert result.status == Outcome.SKIPPED
        assert result.reason == Reason.CANCELLED

    def test_standard_and_rendered_env(self, runner):
        job = _job(
            _sh("env", "import os; print(os.environ['RUNNER_OS'], os.environ['CI'], os.environ['TARGET'], os.environ['MATRIXCI_JOB'])"),
            family=OSFamily.MACOS,
            matrix={"target": "aarch64"},
            env={"TARGET": "${{ matrix.target }}-apple-darwin"},
            id="test (aarch64)",
        )
        result = runner.run(job)

        assert result.status == Outcome.SUCCEEDED
        assert result.steps[0].output.strip() == "macOS true aarch64-apple-darwin test (aarch64)"

    def test_run_is_rendered(self, runner):
        job = _job(StepSpec(name="echo ${{ matrix.v }}", run=py("print('${{ matrix.v }}')")), matrix={"v": "42"})
        result = runner.run(job)

        assert result.steps[0].name == "echo 42"
        assert result.steps[0].output.strip() == "42"

    def test_each_job_gets_its_own_workdir(self, runner, tmp_path):
        code = "import os; print(os.getcwd())"
        a = runner.run(_job(_sh("pwd", code), id="test (a)"))
        b = runner.run(_job(_sh("pwd", code), id="test (b)"))

        assert a.steps[0].output != b.steps[0].output
        assert job_slug("test (a)") != job_slug("test (b)")
        assert (tmp_path / "work" / job_slug("test (a)")).is_dir()


class TestAfterCancellation:
    def test_cancelled_and_always_steps_still_run(self, tmp_path):
        cancel = CancelToken()
        runner = JobRunner(StepExecutor(), workspace=tmp_path, cancel=cancel, step_timeout=30)
        timer = threading.Timer(0.5, cancel.cancel)
        timer.start()
        try:
            result = runner.run(
                _job(
                    _sh("long", "import time; time.sleep(30)"),
                    _sh("on-cancel", "print('cancelled')", guard=cancelled()),
                    _sh("cleanup", "print('cleanup')", guard=always()),
                    _sh("report", "pass", guard=failure()),
                    _sh("deploy", "pass"),
                )
            )
        finally:
            timer.cancel()

        assert result.status == Outcome.FAILED
        assert result.reason == Reason.CANCELLED
        assert _outcomes(result) == [
            (Outcome.FAILED, Reason.CANCELLED),
            (Outcome.SUCCEEDED, None),
            (Outcome.SUCCEEDED, None),
            (Outcome.SKIPPED, Reason.CANCELLED),
            (Outcome.SKIPPED, Reason.CANCELLED),
        ]
        assert result.steps[1].output.strip() == "cancelled"

    def test_job_guarded_by_always_starts_after_cancellation(self, tmp_path):
        cancel = CancelToken()
        cancel.cancel()
        runner = JobRunner(StepExecutor(), workspace=tmp_path, cancel=cancel, step_timeout=30)

        result = runner.run(_job(_sh("build", "pass"), _sh("notify", "pass", guard=always()), guard=always()))

        assert result.status == Outcome.FAILED
        assert result.reason == Reason.CANCELLED
        assert _outcomes(result) == [(Outcome.SKIPPED, Reason.CANCELLED), (Outcome.SUCCEEDED, None)]

    def test_false_status_guard_after_cancellation(self, tmp_path):
        cancel = CancelToken()
        cancel.cancel()
        runner = JobRunner(StepExecutor(), workspace=tmp_path, cancel=cancel)

        result = runner.run(_job(_sh("s", "pass"), guard=failure()))
        assert result.status == Outcome.SKIPPED
        assert result.reason == Reason.CANCELLED
