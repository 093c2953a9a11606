# config.py
"""
Runner configuration.

Loaded from an optional `matrixci.yaml`, then overridden by MATRIXCI_*
environment variables; the CLI applies its own flags last.

    slots: 4
    step_timeout: 600          # seconds
    job_margin: 30             # seconds added to a job's step-timeout budget
    output_limit: 65536        # characters of step output kept (tail)
    workspace: .matrixci/work
    fail_fast: false
    host_only: false
    actions:
      actions/checkout: "git status --short"
      actions-rs/toolchain: "rustup default ${INPUT_TOOLCHAIN}"
"""
from __future__ import annotations

import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

from .errors import ConfigError


DEFAULT_CONFIG_FILE = "matrixci.yaml"
DEFAULT_STEP_TIMEOUT = 360 * 60.0
DEFAULT_JOB_MARGIN = 30.0
DEFAULT_OUTPUT_LIMIT = 64 * 1024
DEFAULT_WORKSPACE = ".matrixci/work"
ENV_PREFIX = "MATRIXCI_"


def _default_slots() -> int:
    c = os.cpu_count() or 2
    return max(1, c - 1)


@dataclass
class RunnerConfig:
    slots: int = field(default_factory=_default_slots)
    step_timeout: float = DEFAULT_STEP_TIMEOUT
    job_margin: float = DEFAULT_JOB_MARGIN
    output_limit: int = DEFAULT_OUTPUT_LIMIT
    workspace: Path = Path(DEFAULT_WORKSPACE)
    fail_fast: bool = False
    host_only: bool = False
    actions: Dict[str, str] = field(default_factory=dict)

    def validate(self) -> "RunnerConfig":
        if self.slots < 1:
            raise ConfigError(f"slots must be >= 1, got {self.slots}")
        if self.step_timeout <= 0:
            raise ConfigError(f"step_timeout must be > 0, got {self.step_timeout}")
        if self.job_margin < 0:
            raise ConfigError(f"job_margin must be >= 0, got {self.job_margin}")
        if self.output_limit < 1:
            raise ConfigError(f"output_limit must be >= 1, got {self.output_limit}")
        return self

    def replace(self, **overrides: Any) -> "RunnerConfig":
        """Copy with the given fields replaced; None values are ignored."""
        data = {f.name: getattr(self, f.name) for f in fields(self)}
        for k, v in overrides.items():
            if v is not None:
                data[k] = v
        data["workspace"] = Path(data["workspace"])
        return RunnerConfig(**data).validate()


_BOOL_TRUE = {"1", "true", "yes", "on"}
_BOOL_FALSE = {"0", "false", "no", "off"}


def _coerce(name: str, raw: Any) -> Any:
    kinds = {
        "slots": int,
        "step_timeout": float,
        "job_margin": float,
        "output_limit": int,
        "workspace": Path,
    }
    try:
        if name in ("fail_fast", "host_only"):
            if isinstance(raw, bool):
                return raw
            text = str(raw).strip().lower()
            if text in _BOOL_TRUE:
                return True
            if text in _BOOL_FALSE:
                return False
            raise ValueError(raw)
        if name == "actions":
            if not isinstance(raw, dict):
                raise ValueError(raw)
            return {str(k): str(v) for k, v in raw.items()}
        return kinds[name](raw)
    except (TypeError, ValueError):
        raise ConfigError(f"invalid value for {name}: {raw!r}")


def load_config(
    path: Optional[str | Path] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> RunnerConfig:
    """
    Load runner configuration.

    Args:
        path: YAML file. If None, `matrixci.yaml` in the current directory
              is used when present.
        environ: Environment to read MATRIXCI_* overrides from
                 (defaults to os.environ).

    Raises:
        ConfigError: unreadable file, unknown key, or invalid value.
    """
    environ = os.environ if environ is None else environ
    known = {f.name for f in fields(RunnerConfig)}
    values: Dict[str, Any] = {}

    cfg_path = Path(path) if path is not None else Path(DEFAULT_CONFIG_FILE)
    if path is not None and not cfg_path.exists():
        raise ConfigError(f"config file not found: {cfg_path}")
    if cfg_path.exists():
        try:
            data = yaml.safe_load(cfg_path.read_text()) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"invalid YAML in {cfg_path}", details={"error": e})
        if not isinstance(data, dict):
            raise ConfigError(f"{cfg_path} must contain a mapping")
        for k, v in data.items():
            if k not in known:
                raise ConfigError(f"unknown config key {k!r} in {cfg_path}")
            values[k] = _coerce(k, v)

    for name in known - {"actions"}:
        raw = environ.get(ENV_PREFIX + name.upper())
        if raw is not None and raw != "":
            values[name] = _coerce(name, raw)

    return RunnerConfig(**values).validate()
