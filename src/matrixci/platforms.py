# platforms.py
from __future__ import annotations

import platform
import re
from typing import Iterable, Optional, Sequence, Union

from .model import OSFamily


# Hosted-runner style labels -> OS family. Matched against the lowercased label.
PLATFORM_PATTERNS = [
    (re.compile(r"^(ubuntu|linux|debian|fedora|centos|rhel|alpine|arch)([-_.].*)?$"), OSFamily.LINUX),
    (re.compile(r"^(macos|osx|darwin)([-_.].*)?$"), OSFamily.MACOS),
    (re.compile(r"^(windows([-_.].*)?|win([-_.]?\d.*)?)$"), OSFamily.WINDOWS),
]

HOST_LABELS = {"local", "self-hosted", "host"}


def host_os_family() -> OSFamily:
    """OS family of the machine this process runs on."""
    system = platform.system()
    if system == "Darwin":
        return OSFamily.MACOS
    if system == "Windows":
        return OSFamily.WINDOWS
    return OSFamily.LINUX


def _classify_label(label: str) -> Optional[OSFamily]:
    lowered = label.strip().lower()
    for pattern, family in PLATFORM_PATTERNS:
        if pattern.match(lowered):
            return family
    return None


def classify_platform(labels: Union[str, Sequence[str]]) -> OSFamily:
    """
    Map a platform identifier (or a list of runner labels) to its OS family.

    Several identifiers map to one family ("ubuntu-22.04", "ubuntu-latest",
    "debian-12" are all Linux). Host labels ("local", "self-hosted") resolve
    to the family of the current machine, unless another label in the list
    names a family explicitly.

    Raises:
        ValueError: if no label can be classified.
    """
    items: Iterable[str] = [labels] if isinstance(labels, str) else list(labels)
    host = False
    for label in items:
        family = _classify_label(str(label))
        if family is not None:
            return family
        if str(label).strip().lower() in HOST_LABELS:
            host = True
    if host:
        return host_os_family()
    raise ValueError(f"Cannot classify platform {labels!r} as Linux, macOS or Windows")


def platform_label(labels: Union[str, Sequence[str]]) -> str:
    """Display form of runs-on (lists are joined with commas)."""
    if isinstance(labels, str):
        return labels
    return ",".join(str(x) for x in labels)
