"""Global constants and path configuration for kodemachine."""

from __future__ import annotations

import os
import re
from pathlib import Path

VERSION = "1.8.0"

CONFIG_DIR = Path(os.environ.get("KODEMACHINE_CONFIG_DIR", "~/.config/kodemachine")).expanduser()
CONFIG_FILE = CONFIG_DIR / "config.json"
LOCK_FILE = CONFIG_DIR / "fleet.lock"

# UTM keeps every registered VM as a <name>.utm bundle in its sandboxed Documents folder.
DEFAULT_STORE = Path.home() / "Library" / "Containers" / "com.utmapp.UTM" / "Data" / "Documents"
DEFAULT_UTMCTL = "utmctl"
UTMCTL_FALLBACK = Path("/Applications/UTM.app/Contents/MacOS/utmctl")
UTM_APP = "UTM"

BUNDLE_SUFFIX = ".utm"
DOCUMENT_NAME = "config.plist"
DATA_DIR_NAME = "Data"

DEFAULT_CONFIG = {
    "base_image": "kodeimage-v0.1.0",
    "ssh_user": "kodeman",
    "prefix": "km-",
    "headless": True,
    "shared_disk": None,
    "shared_disk_link": "shared-disk.qcow2",
    "start_attempts": 5,
    "resume_attempts": 2,
    "poll_interval": 1.0,
    "ip_attempts": 30,
    "ip_interval": 2.0,
    "settle_delay": 2.0,
    "utmctl": DEFAULT_UTMCTL,
    "store": str(DEFAULT_STORE),
    "lock": True,
}

RESERVED_LABELS = frozenset(
    {"list", "doctor", "delete", "attach", "status", "start", "stop", "suspend", "ip", "help"}
)

TRUTHY = {"1", "true", "yes", "on"}

_LOG_VERBOSE = (os.environ.get("KODEMACHINE_VERBOSE") or os.environ.get("LOG_VERBOSE", "")).lower() in TRUTHY

IPV4_RE = re.compile(r"(?<![\d.])(\d{1,3})\.(\d{1,3})\.(\d{1,3})\.(\d{1,3})(?![\d.])")

# Default timeout for a single utmctl call; anything longer is treated as no answer.
UTMCTL_TIMEOUT = 30

LABEL_ALPHABET = "abcdefghijklmnopqrstuvwxyz0123456789"
RANDOM_LABEL_LENGTH = 5

# Drive entry appended for the shared disk. VirtIO is the paravirtual bus UTM exposes for QEMU guests.
SHARED_DRIVE_INTERFACE = "VirtIO"
SHARED_DRIVE_IMAGE_TYPE = "Disk"

SSH_OPTIONS = ["-o", "StrictHostKeyChecking=no", "-o", "UserKnownHostsFile=/dev/null"]
