"""Shared test fixtures: a scripted utmctl double and on-disk bundle factories."""

from __future__ import annotations

import plistlib
from dataclasses import replace
from pathlib import Path
from typing import Dict, List, Optional

import pytest

from kodemachine.constants import BUNDLE_SUFFIX
from kodemachine.models import ListEntry, Settings, VmStatus
from kodemachine.orchestrator import Orchestrator


class FakeControl:
    """In-memory stand-in for UtmControl.

    ``entries`` is what ``utmctl list`` reports. ``script`` queues answers for
    ``status``; the last queued answer repeats once the queue runs down.
    """

    def __init__(self) -> None:
        self.entries: Dict[str, VmStatus] = {}
        self.scripts: Dict[str, List[VmStatus]] = {}
        self.ips: Dict[str, List[Optional[str]]] = {}
        self.calls: List[tuple] = []
        self.register_lists = True
        self.delete_removes = True

    def add(self, name: str, status: VmStatus = VmStatus.STOPPED) -> None:
        self.entries[name] = status

    def script(self, name: str, *statuses: VmStatus) -> None:
        self.scripts[name] = list(statuses)

    def count(self, operation: str) -> int:
        return sum(1 for call in self.calls if call[0] == operation)

    def available(self) -> bool:
        return True

    def status(self, name: str) -> VmStatus:
        self.calls.append(("status", name))
        queue = self.scripts.get(name)
        if queue:
            status = queue.pop(0) if len(queue) > 1 else queue[0]
            if name in self.entries:
                self.entries[name] = status
            return status
        return self.entries.get(name, VmStatus.UNKNOWN)

    def ip_address(self, name: str) -> Optional[str]:
        self.calls.append(("ip-address", name))
        queue = self.ips.get(name)
        if not queue:
            return None
        return queue.pop(0) if len(queue) > 1 else queue[0]

    def list(self) -> List[ListEntry]:
        return [
            ListEntry(uuid=f"UUID-{index}", status=status, name=name)
            for index, (name, status) in enumerate(self.entries.items())
        ]

    def exists(self, name: str) -> bool:
        self.calls.append(("exists", name))
        return name in self.entries

    def start(self, name: str, display_hidden: bool = True) -> bool:
        self.calls.append(("start", name, display_hidden))
        return True

    def stop(self, name: str) -> bool:
        self.calls.append(("stop", name))
        return True

    def suspend(self, name: str) -> bool:
        self.calls.append(("suspend", name))
        return True

    def delete(self, name: str) -> bool:
        self.calls.append(("delete", name))
        if self.delete_removes:
            self.entries.pop(name, None)
        return True

    def exec_remote(self, name: str, command) -> str:
        self.calls.append(("exec", name, list(command)))
        return ""

    def attach(self, name: str) -> int:
        self.calls.append(("attach", name))
        return 0

    def register(self, bundle: Path) -> bool:
        self.calls.append(("register", bundle))
        if self.register_lists:
            self.entries.setdefault(bundle.name[: -len(BUNDLE_SUFFIX)], VmStatus.STOPPED)
        return True


def golden_document(name: str = "golden", display: bool = True, adapters: int = 1) -> dict:
    return {
        "Backend": "QEMU",
        "ConfigurationVersion": 4,
        "Information": {
            "Name": name,
            "UUID": "6E1D4C1A-0000-4000-8000-000000000001",
            "IconCustom": False,
        },
        "System": {"Architecture": "aarch64", "CPUCount": 4, "MemorySize": 8192},
        "Network": [
            {"Mode": "Shared", "Hardware": "virtio-net-pci", "MacAddress": f"AA:BB:CC:DD:EE:{index:02X}"}
            for index in range(adapters)
        ],
        "Drive": [
            {
                "Identifier": "6E1D4C1A-0000-4000-8000-0000000000AA",
                "ImageName": "root.qcow2",
                "ImageType": "Disk",
                "Interface": "VirtIO",
                "ReadOnly": False,
            }
        ],
        "Display": [{"Hardware": "virtio-gpu-gl-pci", "DynamicResolution": True}] if display else [],
    }


def write_bundle(
    store: Path,
    name: str,
    display: bool = True,
    adapters: int = 1,
    fmt: plistlib.PlistFormat = plistlib.FMT_XML,
    document: Optional[dict] = None,
) -> Path:
    bundle = store / f"{name}{BUNDLE_SUFFIX}"
    data_dir = bundle / "Data"
    data_dir.mkdir(parents=True, exist_ok=True)
    (data_dir / "root.qcow2").write_bytes(b"QFI\xfb" + b"\x00" * 60)
    if document is None:
        document = golden_document(name, display=display, adapters=adapters)
    (bundle / "config.plist").write_bytes(plistlib.dumps(document, fmt=fmt))
    return bundle


def read_bundle(store: Path, name: str) -> dict:
    return plistlib.loads((store / f"{name}{BUNDLE_SUFFIX}" / "config.plist").read_bytes())


@pytest.fixture
def make_bundle():
    return write_bundle


@pytest.fixture
def read_document():
    return read_bundle


@pytest.fixture
def store(tmp_path) -> Path:
    path = tmp_path / "Documents"
    path.mkdir()
    return path


@pytest.fixture
def settings(store) -> Settings:
    """Settings pointing at a temporary image store with every delay at zero."""
    return Settings(
        base_image="golden",
        ssh_user="kodeman",
        prefix="km-",
        headless=True,
        store=store,
        utmctl="utmctl",
        poll_interval=0.0,
        ip_interval=0.0,
        settle_delay=0.0,
        lock=False,
    )


@pytest.fixture
def shared_disk(store) -> Path:
    disk = store / "shared.qcow2"
    disk.write_bytes(b"QFI\xfb")
    return disk


@pytest.fixture
def disk_settings(settings, shared_disk) -> Settings:
    return replace(settings, shared_disk=shared_disk)


@pytest.fixture
def control() -> FakeControl:
    return FakeControl()


@pytest.fixture
def golden(store) -> Path:
    return write_bundle(store, "golden")


@pytest.fixture
def sleeps() -> List[float]:
    return []


@pytest.fixture
def orchestrator(settings, control, sleeps, tmp_path) -> Orchestrator:
    return Orchestrator(settings, control, sleep=sleeps.append, lock_path=tmp_path / "fleet.lock")


@pytest.fixture
def clean_env(monkeypatch):
    """Clear every environment variable the config loader reads."""
    for key in (
        "KODEMACHINE_CONFIG",
        "KODEMACHINE_BASE_IMAGE",
        "KODEMACHINE_SSH_USER",
        "KODEMACHINE_PREFIX",
        "KODEMACHINE_HEADLESS",
        "KODEMACHINE_SHARED_DISK",
        "KODEMACHINE_STORE",
        "KODEMACHINE_UTMCTL",
    ):
        monkeypatch.delenv(key, raising=False)
