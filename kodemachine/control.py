"""Thin client for the UTM control interface (utmctl).

Every query converts raw text into a typed result through one of the
``parse_*`` functions below; decision logic never looks at utmctl output
directly. utmctl is known to emit spurious Apple Event timeouts (-1712) and
permission interrupts (-10004) under heavy disk I/O, so nothing here raises on
a non-zero exit or an empty reply. Retrying is the orchestrator's job.
"""

from __future__ import annotations

import ipaddress
import subprocess
from pathlib import Path
from typing import List, Optional, Protocol, Sequence, Union

from kodemachine.constants import IPV4_RE, UTM_APP, UTMCTL_FALLBACK, UTMCTL_TIMEOUT
from kodemachine.exceptions import ManagerError
from kodemachine.models import ListEntry, VmStatus
from kodemachine.utils import log, resolve_binary

# Checked in order; "started" must win over "start" fragments in transitional states.
_STATUS_TOKENS = (
    ("started", VmStatus.STARTED),
    ("stopped", VmStatus.STOPPED),
    ("paused", VmStatus.PAUSED),
    ("suspended", VmStatus.SUSPENDED),
)


def parse_status(text: Optional[str]) -> VmStatus:
    """Map ``utmctl status`` output to a status; anything unrecognised is UNKNOWN."""
    if not text:
        return VmStatus.UNKNOWN
    lowered = text.strip().lower()
    for token, status in _STATUS_TOKENS:
        if token in lowered:
            return status
    return VmStatus.UNKNOWN


def parse_ip(text: Optional[str]) -> Optional[str]:
    """Return the first usable IPv4 address in ``utmctl ip-address`` output."""
    if not text:
        return None
    for match in IPV4_RE.finditer(text):
        if any(int(octet) > 255 for octet in match.groups()):
            continue
        address = ipaddress.IPv4Address(match.group(0))
        if address.is_loopback or address.is_link_local or address.is_unspecified:
            continue
        return str(address)
    return None


def parse_list(text: Optional[str]) -> List[ListEntry]:
    """Parse ``utmctl list`` rows of the form ``UUID  Status  Name``.

    The header row and rows that do not split into three columns are skipped.
    Names may contain spaces.
    """
    entries: List[ListEntry] = []
    if not text:
        return entries
    for line in text.splitlines():
        stripped = line.strip()
        if not stripped:
            continue
        parts = stripped.split(None, 2)
        if len(parts) != 3:
            continue
        uuid, status_raw, name = parts
        if uuid.upper() == "UUID" and status_raw.lower() == "status":
            continue
        entries.append(ListEntry(uuid=uuid, status=parse_status(status_raw), name=name.strip()))
    return entries


class ControlSurface(Protocol):
    """What the fleet logic needs from the hypervisor control interface."""

    def status(self, name: str) -> VmStatus: ...

    def ip_address(self, name: str) -> Optional[str]: ...

    def list(self) -> List[ListEntry]: ...

    def exists(self, name: str) -> bool: ...

    def start(self, name: str, display_hidden: bool = True) -> bool: ...

    def stop(self, name: str) -> bool: ...

    def suspend(self, name: str) -> bool: ...

    def delete(self, name: str) -> bool: ...

    def exec_remote(self, name: str, command: Union[str, Sequence[str]]) -> Optional[str]: ...

    def attach(self, name: str) -> int: ...

    def register(self, bundle: Path) -> bool: ...

    def available(self) -> bool: ...


class UtmControl:
    """Blocking wrapper around the utmctl binary."""

    def __init__(self, binary: str = "utmctl", timeout: float = UTMCTL_TIMEOUT) -> None:
        self.binary = binary
        self.timeout = timeout
        self._resolved: Optional[str] = None

    def available(self) -> bool:
        return resolve_binary(self.binary, UTMCTL_FALLBACK) is not None

    def _executable(self) -> str:
        if self._resolved is None:
            resolved = resolve_binary(self.binary, UTMCTL_FALLBACK)
            if resolved is None:
                raise ManagerError(f"utmctl not found ('{self.binary}'). Is UTM installed?")
            self._resolved = resolved
        return self._resolved

    def _invoke(self, args: Sequence[str]) -> Optional[subprocess.CompletedProcess]:
        cmd = [self._executable(), *args]
        log("DEBUG", f"Running: {' '.join(cmd)}")
        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=self.timeout,
                check=False,
            )
        except subprocess.TimeoutExpired:
            log("DEBUG", f"utmctl timed out after {self.timeout}s: {' '.join(args)}")
            return None
        except FileNotFoundError as exc:
            raise ManagerError(f"utmctl not found ('{self.binary}'). Is UTM installed?") from exc
        if result.returncode != 0:
            detail = (result.stderr or result.stdout or "").strip() or "no output"
            log("DEBUG", f"utmctl {args[0]} exited {result.returncode}: {detail}")
        return result

    def _capture(self, *args: str) -> str:
        """Return stdout of a query, or an empty string when there is nothing usable."""
        result = self._invoke(args)
        if result is None:
            return ""
        return result.stdout or ""

    def _fire(self, *args: str) -> bool:
        """Issue a state-changing command; the return value is advisory only."""
        result = self._invoke(args)
        return result is not None and result.returncode == 0

    def status(self, name: str) -> VmStatus:
        return parse_status(self._capture("status", name))

    def ip_address(self, name: str) -> Optional[str]:
        return parse_ip(self._capture("ip-address", name))

    def list(self) -> List[ListEntry]:
        return parse_list(self._capture("list"))

    def exists(self, name: str) -> bool:
        return any(entry.name == name for entry in self.list())

    def start(self, name: str, display_hidden: bool = True) -> bool:
        args = ["start", name]
        if display_hidden:
            args.append("--hide")
        return self._fire(*args)

    def stop(self, name: str) -> bool:
        return self._fire("stop", name)

    def suspend(self, name: str) -> bool:
        return self._fire("suspend", name)

    def delete(self, name: str) -> bool:
        return self._fire("delete", name)

    def exec_remote(self, name: str, command: Union[str, Sequence[str]]) -> Optional[str]:
        """Run *command* inside the guest; None when utmctl reports a failure."""
        argv = command.split() if isinstance(command, str) else list(command)
        result = self._invoke(["exec", name, "--cmd", *argv])
        if result is None or result.returncode != 0:
            return None
        return (result.stdout or "").strip()

    def attach(self, name: str) -> int:
        """Attach the terminal to the guest's serial console."""
        cmd = [self._executable(), "attach", name]
        log("INFO", "Attaching to serial console (Ctrl+C to exit)")
        try:
            return subprocess.call(cmd)
        except KeyboardInterrupt:
            return 130

    def register(self, bundle: Path) -> bool:
        """Hand a bundle to the UTM app so it shows up in the VM list."""
        cmd = ["open", "-a", UTM_APP, str(bundle)]
        log("DEBUG", f"Running: {' '.join(cmd)}")
        try:
            result = subprocess.run(cmd, capture_output=True, text=True, timeout=self.timeout, check=False)
        except (subprocess.TimeoutExpired, FileNotFoundError) as exc:
            log("DEBUG", f"Registering {bundle} failed: {exc}")
            return False
        return result.returncode == 0
