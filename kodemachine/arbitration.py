"""Shared-resource arbitration across the clone fleet.

Nothing is cached: every check re-lists the hypervisor and re-reads the
bundles of started instances, so the answer reflects the state right before
the caller acts on it.
"""

from __future__ import annotations

from pathlib import Path
from typing import List, Optional

from kodemachine.constants import DATA_DIR_NAME
from kodemachine.control import ControlSurface
from kodemachine.document import has_active_display, load_document
from kodemachine.exceptions import (
    DisplayInUseError,
    DocumentError,
    SharedDiskConflictError,
)
from kodemachine.models import Grant, ListEntry, Settings, VmStatus
from kodemachine.utils import log


def disk_link_path(settings: Settings, bundle: Path) -> Path:
    return bundle / DATA_DIR_NAME / settings.shared_disk_link


def bundle_has_disk_link(settings: Settings, bundle: Path) -> bool:
    link = disk_link_path(settings, bundle)
    return link.is_symlink() or link.exists()


class ResourcePolicy:
    def __init__(self, settings: Settings, control: ControlSurface) -> None:
        self.settings = settings
        self.control = control

    def fleet(self) -> List[ListEntry]:
        return [entry for entry in self.control.list() if entry.name.startswith(self.settings.prefix)]

    def _started(self, exclude: Optional[str]) -> List[ListEntry]:
        return [e for e in self.fleet() if e.status == VmStatus.STARTED and e.name != exclude]

    def display_holder(self, exclude: Optional[str] = None) -> Optional[str]:
        for entry in self._started(exclude):
            bundle = self.settings.bundle_path(entry.name)
            try:
                document = load_document(bundle)
            except DocumentError as exc:
                log("DEBUG", f"Skipping {entry.name} in display scan: {exc}")
                continue
            if has_active_display(document.data):
                return entry.name
        return None

    def disk_holder(self, exclude: Optional[str] = None) -> Optional[str]:
        for entry in self._started(exclude):
            if bundle_has_disk_link(self.settings, self.settings.bundle_path(entry.name)):
                return entry.name
        return None

    def display_in_use(self, exclude: Optional[str] = None) -> bool:
        return self.display_holder(exclude) is not None

    def shared_disk_in_use(self, exclude: Optional[str] = None) -> bool:
        return self.disk_holder(exclude) is not None

    def shared_disk_available(self) -> bool:
        disk = self.settings.shared_disk
        return disk is not None and disk.exists()

    def arbitrate(self, name: str, gui: bool, attach_disk: bool, existing: bool = False) -> Grant:
        """Decide what a request for *name* may hold.

        A display conflict vetoes the request. For an *existing* instance the
        display check also runs when its document carries a display, whether
        or not *gui* was requested. A shared-disk
        conflict only downgrades the request, unless *existing* says the
        instance was already cloned with the disk linked, in which case it
        cannot be downgraded any more.
        """
        grant = Grant(gui=gui, attach_disk=attach_disk)
        bundle = self.settings.bundle_path(name)

        # An existing instance holds what its own document configures.
        owns_display = False
        if existing:
            try:
                owns_display = has_active_display(load_document(bundle).data)
            except DocumentError as exc:
                log("DEBUG", f"Could not read {name} document: {exc}")
            if gui and not owns_display:
                grant.gui = False
                grant.warnings.append(f"{name} was cloned headless; it has no display to show")

        if grant.gui or owns_display:
            holder = self.display_holder(exclude=name)
            if holder is not None:
                raise DisplayInUseError(
                    f"{holder} is already running with a display. Stop it first: kodemachine stop "
                    f"{holder[len(self.settings.prefix):]}"
                )

        if existing:
            grant.attach_disk = False
            linked = bundle_has_disk_link(self.settings, bundle)
            if attach_disk and not linked:
                grant.warnings.append(f"{name} already exists; the shared disk is only attached when cloning")
            if linked:
                holder = self.disk_holder(exclude=name)
                if holder is not None:
                    raise SharedDiskConflictError(
                        f"{name} has the shared disk linked but {holder} is running with it attached"
                    )
        elif grant.attach_disk:
            if self.settings.shared_disk is None:
                grant.attach_disk = False
                grant.warnings.append("No shared disk configured; continuing without it")
            elif not self.shared_disk_available():
                grant.attach_disk = False
                grant.warnings.append(f"Shared disk {self.settings.shared_disk} not found; continuing without it")
            else:
                holder = self.disk_holder(exclude=name)
                if holder is not None:
                    grant.attach_disk = False
                    grant.warnings.append(f"Shared disk is attached to {holder}; continuing without it")

        for warning in grant.warnings:
            log("WARN", warning)
        return grant
