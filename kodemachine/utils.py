"""Utility functions for kodemachine."""

from __future__ import annotations

import os
import random
import shutil
import subprocess
import sys
from pathlib import Path
from typing import List, Optional

from kodemachine.constants import _LOG_VERBOSE, LABEL_ALPHABET, RANDOM_LABEL_LENGTH, TRUTHY
from kodemachine.exceptions import ManagerError


def log(level: str, message: str) -> None:
    """Lightweight structured logging compatible with existing colour expectation."""
    if level == "DEBUG" and not _LOG_VERBOSE:
        return
    colours = {
        "INFO": "\033[0;34m",
        "WARN": "\033[1;33m",
        "ERROR": "\033[0;31m",
        "SUCCESS": "\033[0;32m",
        "DEBUG": "\033[0;90m",
    }
    colour = colours.get(level, "")
    reset = "\033[0m" if colour else ""
    print(f"{colour}[{level}]{reset} {message}", flush=True)


def get_env(name: str, default: Optional[str] = None) -> Optional[str]:
    return os.environ.get(name, default)


def coerce_bool(value: object) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    return str(value).strip().lower() in TRUTHY


def parse_positive_int(name: str, raw: object) -> int:
    if isinstance(raw, bool):
        raise ManagerError(f"{name} must be an integer (got '{raw}')")
    try:
        value = int(str(raw).strip())
    except ValueError:
        raise ManagerError(f"{name} must be an integer (got '{raw}')")
    if value < 1:
        raise ManagerError(f"{name} must be >= 1 (got {value})")
    return value


def parse_interval(name: str, raw: object) -> float:
    try:
        value = float(str(raw).strip())
    except ValueError:
        raise ManagerError(f"{name} must be a number of seconds (got '{raw}')")
    if value < 0:
        raise ManagerError(f"{name} must be >= 0 (got {value})")
    return value


def ensure_directory(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)


def random_label() -> str:
    """Short lowercase label for instances started without one."""
    return "".join(random.choice(LABEL_ALPHABET) for _ in range(RANDOM_LABEL_LENGTH))


def resolve_binary(candidate: str, fallback: Optional[Path] = None) -> Optional[str]:
    """Return an executable path for *candidate*, checking PATH and then *fallback*."""
    found = shutil.which(candidate)
    if found:
        return found
    if fallback is not None and fallback.exists() and os.access(fallback, os.X_OK):
        return str(fallback)
    return None


def has_controlling_tty() -> bool:
    """Return True if both stdin and stdout are attached to a TTY."""
    for stream in (sys.stdin, sys.stdout):
        try:
            if not stream.isatty():
                return False
        except (AttributeError, ValueError):
            return False
    return True


def run(cmd: List[str], check: bool = True, **kwargs) -> subprocess.CompletedProcess:
    """Run command with logging."""
    log("DEBUG", f"Running: {' '.join(cmd)}")
    result = subprocess.run(cmd, check=check, text=True, **kwargs)
    return result
