"""CLI entry points for kodemachine."""

from __future__ import annotations

import argparse
import os
from typing import List, Optional

from kodemachine.config import load_settings
from kodemachine.constants import SSH_OPTIONS, VERSION
from kodemachine.control import UtmControl
from kodemachine.document import load_document
from kodemachine.exceptions import DocumentError, ManagerError, MissingLabelError
from kodemachine.models import Settings, VmInstance
from kodemachine.orchestrator import Orchestrator
from kodemachine.utils import has_controlling_tty, log

COMMANDS = ("list", "status", "delete", "stop", "suspend", "attach", "doctor", "start")


def build_orchestrator(settings: Settings) -> Orchestrator:
    return Orchestrator(settings, UtmControl(settings.utmctl))


def _label_of(orchestrator: Orchestrator, instance: VmInstance) -> str:
    prefix = orchestrator.settings.prefix
    return instance.name[len(prefix):] if instance.name.startswith(prefix) else instance.name


def spawn(orchestrator: Orchestrator, label: Optional[str], gui: bool, disk: bool, ssh: bool = True) -> int:
    """Make sure the instance runs, find its address and hand the terminal to ssh."""
    instance = orchestrator.ensure_running(label, gui=gui, attach_disk=disk)

    log("INFO", "Negotiating IP (this can take 20-40s)...")

    def _tick() -> None:
        print(".", end="", flush=True)

    ip = orchestrator.wait_for_ip(instance, on_wait=_tick)
    print(flush=True)

    if not ip:
        log(
            "ERROR",
            f"IP timeout. Check the VM state in UTM or try: kodemachine attach {_label_of(orchestrator, instance)}",
        )
        return 1

    log("SUCCESS", f"Ready: {ip}")
    if orchestrator.control.exec_remote(instance.name, ["hostnamectl", "set-hostname", instance.name]) is None:
        log("WARN", f"Could not set the hostname of {instance.name}; continuing")

    if not ssh or not has_controlling_tty():
        print(ip, flush=True)
        return 0

    target = f"{orchestrator.settings.ssh_user}@{ip}"
    os.execvp("ssh", ["ssh", *SSH_OPTIONS, target])
    return 0  # pragma: no cover - execvp does not return


def display_list(orchestrator: Orchestrator) -> None:
    print("Ephemeral Instances:")
    for entry in orchestrator.fleet():
        print(f"  {entry.name}  {entry.status.value}")


def display_status(orchestrator: Orchestrator, label: Optional[str]) -> None:
    instance = orchestrator.describe(label)
    print(f"Name:    {instance.name}")
    print(f"Status:  {instance.status.value}")
    print(f"IP:      {instance.ip_address or 'Unknown'}")
    if instance.mac_address:
        print(f"MAC:     {instance.mac_address}")
    print(f"Display: {'yes' if instance.display_enabled else 'no'}")
    print(f"Disk:    {'shared' if instance.has_shared_disk else 'none'}")


def run_doctor(orchestrator: Orchestrator) -> int:
    settings = orchestrator.settings
    failures = 0

    if orchestrator.control.available():
        log("SUCCESS", f"utmctl:       {settings.utmctl}")
    else:
        log("ERROR", f"utmctl:       '{settings.utmctl}' not found (install UTM)")
        failures += 1

    if settings.store.is_dir():
        log("SUCCESS", f"Image store:  {settings.store}")
    else:
        log("ERROR", f"Image store:  {settings.store} (missing)")
        failures += 1

    golden = settings.golden_bundle
    try:
        load_document(golden)
        log("SUCCESS", f"Golden image: {settings.base_image}")
    except DocumentError as exc:
        log("ERROR", f"Golden image: {settings.base_image} ({exc})")
        failures += 1

    if settings.shared_disk is None:
        log("INFO", "Shared disk:  not configured")
    elif settings.shared_disk.exists():
        log("SUCCESS", f"Shared disk:  {settings.shared_disk}")
    else:
        log("WARN", f"Shared disk:  {settings.shared_disk} (missing; clones will start without it)")

    log("INFO", f"Prefix: {settings.prefix} | SSH user: {settings.ssh_user} | Headless: {settings.headless}")
    return 1 if failures else 0


def _parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="kodemachine",
        description="Ephemeral UTM clones of a golden image",
        usage="kodemachine [command|label] [label] [options]",
    )
    parser.add_argument("command", nargs="?", help=f"one of {', '.join(COMMANDS)}, or a label to start")
    parser.add_argument("label", nargs="?", help="instance label")
    parser.add_argument("--gui", action="store_true", help="Run with the display window visible")
    parser.add_argument("--disk", action="store_true", help="Attach the shared persistent disk to a new clone")
    parser.add_argument("--no-ssh", action="store_true", help="Print the IP instead of opening ssh")
    parser.add_argument("--version", action="version", version=f"kodemachine {VERSION}")
    return parser


def dispatch(orchestrator: Orchestrator, args: argparse.Namespace) -> int:
    command = args.command
    if command == "list":
        display_list(orchestrator)
        return 0
    if command == "doctor":
        return run_doctor(orchestrator)
    if command == "status":
        display_status(orchestrator, args.label)
        return 0
    if command == "stop":
        status = orchestrator.stop(args.label)
        log("INFO", f"Status: {status.value}")
        return 0
    if command == "suspend":
        status = orchestrator.suspend(args.label)
        log("INFO", f"Status: {status.value}")
        return 0
    if command == "delete":
        return 0 if orchestrator.delete(args.label) else 1
    if command == "attach":
        if not args.label:
            raise MissingLabelError("Provide a label")
        return orchestrator.control.attach(orchestrator.instance_name(orchestrator.validate_label(args.label)))
    if command == "start":
        return spawn(orchestrator, args.label, args.gui, args.disk, ssh=not args.no_ssh)
    if args.label:
        raise ManagerError(f"Unknown command '{command}'")
    return spawn(orchestrator, command, args.gui, args.disk, ssh=not args.no_ssh)


def main(argv: Optional[List[str]] = None) -> int:
    args = _parser().parse_args(argv)
    try:
        settings = load_settings()
        orchestrator = build_orchestrator(settings)
        return dispatch(orchestrator, args)
    except ManagerError as exc:
        log("ERROR", str(exc))
        return 1
    except KeyboardInterrupt:
        log("WARN", "Interrupted; a clone in progress may need `kodemachine delete`")
        return 130
    except Exception as exc:
        log("ERROR", f"Unexpected error: {exc}")
        import traceback

        traceback.print_exc()
        return 1
