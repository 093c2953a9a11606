# executor.py
from __future__ import annotations

import os
import subprocess
import tempfile
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Deque, Dict, IO, Mapping, Optional, Union

from .config import DEFAULT_OUTPUT_LIMIT
from .context import ExecutionContext, terminate
from .model import OSFamily, Outcome, Reason, StepResult, StepSpec


DEFAULT_POLL_INTERVAL = 0.05
TERMINATE_GRACE = 5.0
ENV_FILE_VAR = "MATRIXCI_ENV"

# Exit codes a POSIX shell uses when it could not launch the command at all.
SHELL_LAUNCH_CODES = {
    126: "permission denied or not executable",
    127: "command not found",
}


# ----------------------------------------------------------------------
# Reusable actions
# ----------------------------------------------------------------------

@dataclass(frozen=True)
class ActionCall:
    """What an action handler receives: declared name, `with:` inputs, env."""
    uses: str
    inputs: Dict[str, str]
    env: Dict[str, str]
    workdir: Path
    os_family: OSFamily


@dataclass(frozen=True)
class ActionOutcome:
    exit_code: int
    output: str = ""


ActionHandler = Callable[[ActionCall], Union[ActionOutcome, int]]


def _noop_action(call: ActionCall) -> ActionOutcome:
    return ActionOutcome(exit_code=0, output=f"{call.uses}: stubbed (no-op)\n")


class ActionRegistry:
    """
    Maps `uses:` references to handlers.

    A handler is either a Python callable taking an ActionCall, or a shell
    command template run through the normal process boundary with the
    action inputs exported as INPUT_<NAME> variables.

    Lookup tries the exact reference first (`actions/checkout@v3`), then
    the reference without its version (`actions/checkout`).
    """

    def __init__(self) -> None:
        self._handlers: Dict[str, Union[ActionHandler, str]] = {}

    @staticmethod
    def normalize(uses: str) -> str:
        return uses.strip().lower()

    @staticmethod
    def unversioned(uses: str) -> str:
        return uses.split("@", 1)[0].strip().lower()

    def register(self, name: str, handler: ActionHandler) -> "ActionRegistry":
        self._handlers[self.normalize(name)] = handler
        return self

    def register_command(self, name: str, command: str) -> "ActionRegistry":
        self._handlers[self.normalize(name)] = command
        return self

    def stub(self, *names: str) -> "ActionRegistry":
        """Register no-op handlers that always succeed."""
        for name in names:
            self.register(name, _noop_action)
        return self

    def lookup(self, uses: str) -> Optional[Union[ActionHandler, str]]:
        handler = self._handlers.get(self.normalize(uses))
        if handler is None:
            handler = self._handlers.get(self.unversioned(uses))
        return handler

    @classmethod
    def from_commands(cls, commands: Mapping[str, str]) -> "ActionRegistry":
        registry = cls()
        for name, command in commands.items():
            registry.register_command(name, command)
        return registry


def input_env(inputs: Mapping[str, object]) -> Dict[str, str]:
    """`with:` parameters -> INPUT_<NAME> environment variables."""
    env = {}
    for k, v in inputs.items():
        name = "INPUT_" + str(k).upper().replace(" ", "_").replace("-", "_")
        if isinstance(v, bool):
            env[name] = "true" if v else "false"
        else:
            env[name] = "" if v is None else str(v)
    return env


# ----------------------------------------------------------------------
# Output capture
# ----------------------------------------------------------------------

class OutputBuffer:
    """Keeps the last `limit` characters of a stream."""

    def __init__(self, limit: int = DEFAULT_OUTPUT_LIMIT):
        self.limit = limit
        self._chunks: Deque[str] = deque()
        self._size = 0
        self.truncated = False

    def write(self, text: str) -> None:
        if not text:
            return
        self._chunks.append(text)
        self._size += len(text)
        while self._size > self.limit and self._chunks:
            overflow = self._size - self.limit
            head = self._chunks[0]
            if len(head) <= overflow:
                self._chunks.popleft()
                self._size -= len(head)
            else:
                self._chunks[0] = head[overflow:]
                self._size -= overflow
            self.truncated = True

    def drain(self, stream: IO[str]) -> None:
        for line in stream:
            self.write(line)
        stream.close()

    def text(self) -> str:
        body = "".join(self._chunks)
        if self.truncated:
            return "[... output truncated ...]\n" + body
        return body


# ----------------------------------------------------------------------
# Step executor
# ----------------------------------------------------------------------

@dataclass
class _Run:
    reason: Optional[Reason] = None
    exit_code: Optional[int] = None
    output: str = ""
    message: Optional[str] = None
    env_updates: Dict[str, str] = field(default_factory=dict)


class StepExecutor:
    """
    Runs one step inside one job's environment and reports a StepResult.

    Ordinary failure (non-zero exit, timeout, launch error, cancellation)
    is reported in the result; nothing is raised for it.
    """

    def __init__(
        self,
        actions: Optional[ActionRegistry] = None,
        *,
        output_limit: int = DEFAULT_OUTPUT_LIMIT,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
    ):
        self.actions = actions or ActionRegistry()
        self.output_limit = output_limit
        self.poll_interval = poll_interval

    def run(self, step: StepSpec, context: ExecutionContext, timeout: float) -> StepResult:
        start = time.monotonic()
        if step.uses is not None:
            run = self._run_action(step, context, timeout)
        else:
            run = self._run_command(step, context, step.run or "", {}, timeout)

        duration = time.monotonic() - start
        if run.reason is None and duration > timeout:
            # finished, but only after its budget ran out
            run.reason = Reason.TIMEOUT
            run.message = f"timed out after {timeout:.1f}s"

        context.env.update(run.env_updates)
        outcome = Outcome.SUCCEEDED if run.reason is None else Outcome.FAILED
        return StepResult(
            name=step.name,
            key=step.key,
            outcome=outcome,
            reason=run.reason,
            exit_code=run.exit_code,
            output=run.output,
            duration=duration,
            message=run.message,
        )

    # ---- environment ----

    def _environment(self, step: StepSpec, context: ExecutionContext, extra: Mapping[str, str]) -> Dict[str, str]:
        # workflow < job (already merged into context.env) < step
        env = os.environ.copy()
        env.update(context.env)
        env.update({k: str(v) for k, v in step.env.items()})
        env.update(extra)
        return env

    @staticmethod
    def _read_env_file(path: Path) -> Dict[str, str]:
        updates: Dict[str, str] = {}
        if not path.exists():
            return updates
        for line in path.read_text(errors="replace").splitlines():
            line = line.strip()
            if not line or line.startswith("#") or "=" not in line:
                continue
            k, v = line.split("=", 1)
            updates[k.strip()] = v
        path.unlink()
        return updates

    # ---- shell commands ----

    def _run_command(
        self,
        step: StepSpec,
        context: ExecutionContext,
        command: str,
        extra_env: Mapping[str, str],
        timeout: float,
    ) -> _Run:
        base = context.workdir or Path.cwd()
        cwd = (base / (step.cwd or ".")).resolve()
        if not cwd.is_dir():
            return _Run(reason=Reason.LAUNCH_ERROR, message=f"working directory not found: {cwd}")

        try:
            fd, env_file = tempfile.mkstemp(prefix=".matrixci-env-", dir=str(base if base.is_dir() else cwd))
        except OSError as e:
            return _Run(reason=Reason.LAUNCH_ERROR, message=f"cannot create env file: {e}")
        os.close(fd)
        env_path = Path(env_file)
        env = self._environment(step, context, {**extra_env, ENV_FILE_VAR: str(env_path)})

        script = command
        if os.name == "posix" and "\n" in command.strip():
            script = "set -e\n" + command

        try:
            proc = subprocess.Popen(
                script,
                shell=True,
                cwd=str(cwd),
                env=env,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                errors="replace",
                start_new_session=(os.name == "posix"),
            )
        except OSError as e:
            env_path.unlink(missing_ok=True)
            return _Run(reason=Reason.LAUNCH_ERROR, message=f"{type(e).__name__}: {e}")

        buffer = OutputBuffer(self.output_limit)
        reader = threading.Thread(target=buffer.drain, args=(proc.stdout,), daemon=True)
        reader.start()

        result = _Run()
        deadline = time.monotonic() + timeout
        context.cancel.register(proc)
        try:
            while True:
                try:
                    proc.wait(timeout=self.poll_interval)
                    break
                except subprocess.TimeoutExpired:
                    pass
                if context.cancel.is_set:
                    terminate(proc)
                    try:
                        proc.wait(timeout=TERMINATE_GRACE)
                    except subprocess.TimeoutExpired:
                        terminate(proc, force=True)
                        proc.wait()
                    result.reason = Reason.CANCELLED
                    result.message = "cancelled"
                    break
                if time.monotonic() >= deadline:
                    terminate(proc, force=True)
                    proc.wait()
                    result.reason = Reason.TIMEOUT
                    result.message = f"timed out after {timeout:.1f}s"
                    break
        finally:
            context.cancel.unregister(proc)

        reader.join(timeout=1.0)
        result.exit_code = proc.returncode
        result.output = buffer.text()
        result.env_updates = self._read_env_file(env_path)

        if result.reason is None and proc.returncode != 0:
            if context.cancel.is_set:
                # CancelToken.cancel() signalled the process before the loop saw the flag
                result.reason = Reason.CANCELLED
                result.message = "cancelled"
            elif os.name == "posix" and proc.returncode in SHELL_LAUNCH_CODES:
                result.reason = Reason.LAUNCH_ERROR
                result.message = SHELL_LAUNCH_CODES[proc.returncode]
            else:
                result.reason = Reason.NON_ZERO_EXIT
                result.message = f"exit code {proc.returncode}"
        return result

    # ---- reusable actions ----

    def _run_action(self, step: StepSpec, context: ExecutionContext, timeout: float) -> _Run:
        uses = step.uses or ""
        handler = self.actions.lookup(uses)
        if handler is None:
            return _Run(reason=Reason.LAUNCH_ERROR, message=f"no handler registered for action {uses!r}")

        inputs = input_env(step.inputs)
        if isinstance(handler, str):
            return self._run_command(step, context, handler, inputs, timeout)

        call = ActionCall(
            uses=uses,
            inputs={k: str(v) for k, v in step.inputs.items()},
            env=self._environment(step, context, inputs),
            workdir=context.workdir or Path.cwd(),
            os_family=context.os_family,
        )
        box: Dict[str, object] = {}

        def _target() -> None:
            try:
                box["outcome"] = handler(call)
            except Exception as e:  # reported as a launch failure of this step
                box["error"] = e

        worker = threading.Thread(target=_target, daemon=True, name=f"action:{uses}")
        worker.start()
        deadline = time.monotonic() + timeout
        while worker.is_alive():
            worker.join(self.poll_interval)
            if not worker.is_alive():
                break
            if context.cancel.is_set:
                return _Run(reason=Reason.CANCELLED, message="cancelled")
            if time.monotonic() >= deadline:
                return _Run(reason=Reason.TIMEOUT, message=f"timed out after {timeout:.1f}s")

        if "error" in box:
            e = box["error"]
            return _Run(reason=Reason.LAUNCH_ERROR, message=f"{type(e).__name__}: {e}")

        outcome = box["outcome"]
        if isinstance(outcome, int) and not isinstance(outcome, bool):
            outcome = ActionOutcome(exit_code=outcome)
        if not isinstance(outcome, ActionOutcome):
            return _Run(
                reason=Reason.LAUNCH_ERROR,
                message=f"action {uses!r} returned {type(outcome).__name__}, expected int or ActionOutcome",
            )
        buffer = OutputBuffer(self.output_limit)
        buffer.write(outcome.output)
        run = _Run(exit_code=outcome.exit_code, output=buffer.text())
        if outcome.exit_code != 0:
            run.reason = Reason.NON_ZERO_EXIT
            run.message = f"exit code {outcome.exit_code}"
        return run
