"""Golden image duplication for kodemachine."""

from __future__ import annotations

import shutil
import subprocess
import sys
import time
from pathlib import Path
from typing import Callable, List

from kodemachine.arbitration import disk_link_path
from kodemachine.control import ControlSurface
from kodemachine.document import (
    attach_disk as attach_disk_entry,
    has_active_display,
    identity,
    load_document,
    regenerate_mac,
    reidentify,
    save_document,
    strip_display,
)
from kodemachine.exceptions import CloneError, GoldenImageMissingError, ManagerError
from kodemachine.models import Settings, VmInstance, VmStatus
from kodemachine.utils import ensure_directory, log, run


def copy_command(source: Path, destination: Path) -> List[str]:
    """cp invocation that shares blocks with the source where the filesystem allows it."""
    if sys.platform == "darwin":
        return ["cp", "-c", "-R", str(source), str(destination)]
    return ["cp", "-a", "--reflink=auto", str(source), str(destination)]


def copy_bundle(source: Path, destination: Path) -> None:
    try:
        run(copy_command(source, destination), capture_output=True)
        return
    except (subprocess.CalledProcessError, FileNotFoundError) as exc:
        log("DEBUG", f"Copy-on-write copy unavailable ({exc}); falling back to a full copy")
    if destination.exists():
        shutil.rmtree(destination)
    shutil.copytree(source, destination, symlinks=True)


class CloneEngine:
    def __init__(
        self,
        settings: Settings,
        control: ControlSurface,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.settings = settings
        self.control = control
        self.sleep = sleep

    def staging_path(self, new_name: str) -> Path:
        return self.settings.store / f".{new_name}.utm.partial"

    def clone(self, golden_name: str, new_name: str, headless: bool, attach_disk: bool) -> VmInstance:
        source = self.settings.bundle_path(golden_name)
        if not source.is_dir():
            raise GoldenImageMissingError(
                f"Golden image '{golden_name}' not found at {source}. Build it first or fix base_image."
            )
        destination = self.settings.bundle_path(new_name)
        if destination.exists():
            raise CloneError(f"{destination} already exists; delete it before cloning {new_name}")

        staging = self.staging_path(new_name)
        if staging.exists():
            log("WARN", f"Removing leftover partial clone {staging}")
            shutil.rmtree(staging)

        log("INFO", f"Cloning {golden_name} -> {new_name}...")
        instance = VmInstance(name=new_name, status=VmStatus.STOPPED)
        try:
            copy_bundle(source, staging)
            self._reidentify(staging, instance, headless, attach_disk)
            staging.rename(destination)
        except ManagerError:
            shutil.rmtree(staging, ignore_errors=True)
            raise
        except (OSError, subprocess.SubprocessError) as exc:
            shutil.rmtree(staging, ignore_errors=True)
            raise CloneError(f"Cloning {golden_name} -> {new_name} failed: {exc}") from exc

        if not self.control.register(destination):
            log("WARN", f"UTM did not acknowledge {destination}; will verify through the VM list")
        self.sleep(self.settings.settle_delay)
        log("SUCCESS", f"Cloned {new_name} (mac {instance.mac_address})")
        return instance

    def _reidentify(self, bundle: Path, instance: VmInstance, headless: bool, attach_disk: bool) -> None:
        document = load_document(bundle)
        data = reidentify(document.data, instance.name)
        data, instance.mac_address = regenerate_mac(data)
        _, instance.uuid = identity(data)

        if headless:
            data = strip_display(data)

        if attach_disk and self.settings.shared_disk is not None:
            shared = self.settings.shared_disk
            if not shared.exists():
                warning = f"Shared disk {shared} not found; cloning without it"
                log("WARN", warning)
                instance.warnings.append(warning)
            else:
                link = disk_link_path(self.settings, bundle)
                ensure_directory(link.parent)
                if link.is_symlink() or link.exists():
                    link.unlink()
                link.symlink_to(shared.resolve())
                data = attach_disk_entry(data, self.settings.shared_disk_link)
                instance.has_shared_disk = True

        instance.display_enabled = has_active_display(data)
        document.data = data
        save_document(bundle, document)
