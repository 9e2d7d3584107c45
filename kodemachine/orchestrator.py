"""Lifecycle orchestration for ephemeral clones.

Each decision re-queries utmctl; a command's own exit status is never taken
as proof that the VM changed state. The typical path is::

    ABSENT --clone--> STOPPED --start--> STARTED --suspend--> PAUSED
                                            ^                    |
                                            +-------start--------+
"""

from __future__ import annotations

import re
import time
from pathlib import Path
from typing import Callable, List, Optional, Tuple

from kodemachine.arbitration import ResourcePolicy, bundle_has_disk_link
from kodemachine.clone import CloneEngine
from kodemachine.constants import LOCK_FILE, RESERVED_LABELS
from kodemachine.control import ControlSurface
from kodemachine.document import has_active_display, identity, load_document, mac_address
from kodemachine.exceptions import DocumentError, ManagerError, MissingLabelError, ReservedLabelError
from kodemachine.lock import fleet_lock
from kodemachine.models import ListEntry, Settings, VmInstance, VmStatus
from kodemachine.utils import log, random_label

LABEL_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")

_RESUMABLE = (VmStatus.PAUSED, VmStatus.SUSPENDED)


class Orchestrator:
    def __init__(
        self,
        settings: Settings,
        control: ControlSurface,
        policy: Optional[ResourcePolicy] = None,
        engine: Optional[CloneEngine] = None,
        sleep: Callable[[float], None] = time.sleep,
        lock_path: Path = LOCK_FILE,
    ) -> None:
        self.settings = settings
        self.control = control
        self.sleep = sleep
        self.policy = policy or ResourcePolicy(settings, control)
        self.engine = engine or CloneEngine(settings, control, sleep=sleep)
        self.lock_path = lock_path

    def validate_label(self, label: Optional[str]) -> str:
        if label is None or not label.strip():
            raise MissingLabelError("Provide a label")
        label = label.strip()
        if label in RESERVED_LABELS:
            raise ReservedLabelError(f"'{label}' is a reserved command and cannot be used as a label")
        if not LABEL_RE.match(label):
            raise ManagerError(f"Invalid label '{label}': use letters, digits, '.', '_' or '-'")
        return label

    def instance_name(self, label: str) -> str:
        return f"{self.settings.prefix}{label}"

    def ensure_running(self, label: Optional[str], gui: bool = False, attach_disk: bool = False) -> VmInstance:
        if label is None:
            label = random_label()
        name = self.instance_name(self.validate_label(label))
        want_display = gui or not self.settings.headless

        with fleet_lock(self.lock_path, enabled=self.settings.lock):
            existing = self.control.exists(name)
            grant = self.policy.arbitrate(name, want_display, attach_disk, existing=existing)

            if existing:
                instance = self.inspect(name)
            else:
                instance = self.engine.clone(
                    self.settings.base_image,
                    name,
                    headless=not grant.gui,
                    attach_disk=grant.attach_disk,
                )
                self._verify_registered(instance.name)
            instance.warnings = grant.warnings + instance.warnings

            status = self._current_status(name)
            if status == VmStatus.UNKNOWN:
                log("DEBUG", f"{name} status unknown; treating it as stopped")
                status = VmStatus.STOPPED

            if status == VmStatus.STOPPED:
                log("INFO", f"Starting {name}...")
                self.control.start(name, display_hidden=not grant.gui)
                status = self._converge(name, (VmStatus.STARTED,), self.settings.start_attempts)
            elif status in _RESUMABLE:
                log("INFO", f"Resuming {name}...")
                self.control.start(name, display_hidden=not grant.gui)
                status = self._converge(name, (VmStatus.STARTED,), self.settings.resume_attempts)
            else:
                log("DEBUG", f"{name} already running")

        instance.status = status
        if status != VmStatus.STARTED:
            warning = f"{name} has not reported 'started' yet (last seen: {status.value})"
            log("WARN", warning)
            instance.warnings.append(warning)
        return instance

    def _current_status(self, name: str) -> VmStatus:
        """Status with one re-query when the first answer is garbled."""
        status = self.control.status(name)
        if status == VmStatus.UNKNOWN:
            self.sleep(self.settings.poll_interval)
            status = self.control.status(name)
        return status

    def _converge(self, name: str, targets: Tuple[VmStatus, ...], attempts: int) -> VmStatus:
        status = VmStatus.UNKNOWN
        for attempt in range(attempts):
            status = self.control.status(name)
            if status in targets:
                return status
            if attempt < attempts - 1:
                self.sleep(self.settings.poll_interval)
        return status

    def _verify_registered(self, name: str) -> None:
        if self.control.exists(name):
            return
        log("DEBUG", f"{name} not listed yet; registering again")
        self.sleep(self.settings.settle_delay)
        if self.control.exists(name):
            return
        self.control.register(self.settings.bundle_path(name))
        self.sleep(self.settings.settle_delay)
        if not self.control.exists(name):
            log("WARN", f"UTM does not list {name} yet; continuing with the status check")

    def inspect(self, name: str) -> VmInstance:
        """Describe an instance from its bundle; missing or unreadable bundles leave fields unset."""
        instance = VmInstance(name=name)
        bundle = self.settings.bundle_path(name)
        try:
            data = load_document(bundle).data
        except DocumentError as exc:
            log("DEBUG", f"Cannot inspect {name}: {exc}")
            return instance
        try:
            _, instance.uuid = identity(data)
            instance.mac_address = mac_address(data)
        except DocumentError as exc:
            log("DEBUG", f"Incomplete document for {name}: {exc}")
        instance.display_enabled = has_active_display(data)
        instance.has_shared_disk = bundle_has_disk_link(self.settings, bundle)
        return instance

    def wait_for_ip(self, instance: VmInstance, on_wait: Optional[Callable[[], None]] = None) -> Optional[str]:
        for attempt in range(self.settings.ip_attempts):
            address = self.control.ip_address(instance.name)
            if address:
                instance.ip_address = address
                return address
            if on_wait is not None:
                on_wait()
            if attempt < self.settings.ip_attempts - 1:
                self.sleep(self.settings.ip_interval)
        return None

    def _require(self, label: Optional[str]) -> str:
        name = self.instance_name(self.validate_label(label))
        if not self.control.exists(name):
            raise ManagerError(f"No instance named {name}")
        return name

    def describe(self, label: Optional[str]) -> VmInstance:
        name = self.instance_name(self.validate_label(label))
        instance = self.inspect(name)
        instance.status = self.control.status(name)
        instance.ip_address = self.control.ip_address(name)
        return instance

    def stop(self, label: Optional[str]) -> VmStatus:
        name = self._require(label)
        log("INFO", f"Stopping {name}...")
        self.control.stop(name)
        return self._converge(name, (VmStatus.STOPPED,), self.settings.start_attempts)

    def suspend(self, label: Optional[str]) -> VmStatus:
        name = self._require(label)
        log("INFO", f"Suspending {name}...")
        self.control.suspend(name)
        return self._converge(name, _RESUMABLE, self.settings.start_attempts)

    def delete(self, label: Optional[str]) -> bool:
        name = self._require(label)
        with fleet_lock(self.lock_path, enabled=self.settings.lock):
            if self.control.status(name) in (VmStatus.STARTED,) + _RESUMABLE:
                log("INFO", f"Stopping {name} before deleting it...")
                self.control.stop(name)
                self._converge(name, (VmStatus.STOPPED,), self.settings.start_attempts)
            log("INFO", f"Deleting {name}...")
            self.control.delete(name)
            self.sleep(self.settings.settle_delay)
            if self.control.exists(name):
                log("WARN", f"UTM still lists {name}; check it in the UTM window")
                return False
        log("SUCCESS", f"Deleted {name}")
        return True

    def fleet(self) -> List[ListEntry]:
        return self.policy.fleet()
