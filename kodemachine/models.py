"""Data models for kodemachine."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import List, NamedTuple, Optional

from kodemachine.constants import BUNDLE_SUFFIX


class VmStatus(str, Enum):
    STOPPED = "stopped"
    STARTED = "started"
    PAUSED = "paused"
    SUSPENDED = "suspended"
    UNKNOWN = "unknown"


class ListEntry(NamedTuple):
    uuid: str
    status: VmStatus
    name: str


@dataclass(frozen=True)
class Settings:
    """Process-wide configuration, loaded once and never mutated."""

    base_image: str
    ssh_user: str
    prefix: str
    headless: bool
    store: Path
    utmctl: str
    shared_disk: Optional[Path] = None
    shared_disk_link: str = "shared-disk.qcow2"
    start_attempts: int = 5
    resume_attempts: int = 2
    poll_interval: float = 1.0
    ip_attempts: int = 30
    ip_interval: float = 2.0
    settle_delay: float = 2.0
    lock: bool = True

    def bundle_path(self, name: str) -> Path:
        return self.store / f"{name}{BUNDLE_SUFFIX}"

    @property
    def golden_bundle(self) -> Path:
        return self.bundle_path(self.base_image)


@dataclass
class VmInstance:
    name: str
    uuid: Optional[str] = None
    mac_address: Optional[str] = None
    display_enabled: bool = False
    has_shared_disk: bool = False
    status: VmStatus = VmStatus.UNKNOWN
    ip_address: Optional[str] = None
    warnings: List[str] = field(default_factory=list)


@dataclass
class Grant:
    """Outcome of arbitrating a request against the current fleet."""

    gui: bool
    attach_disk: bool
    warnings: List[str] = field(default_factory=list)
