"""Configuration document (config.plist) handling for cloned bundles.

The mutators are pure: each takes a parsed document mapping and returns a new
mapping, leaving the input untouched. Keys the mutators do not know about are
carried over as-is, so writing a mutated document back preserves everything
else UTM stored in it.
"""

from __future__ import annotations

import copy
import plistlib
import random
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Tuple
from xml.parsers.expat import ExpatError

from kodemachine.constants import (
    DOCUMENT_NAME,
    SHARED_DRIVE_IMAGE_TYPE,
    SHARED_DRIVE_INTERFACE,
)
from kodemachine.exceptions import DocumentError

Document = Dict[str, Any]

# First octet of every generated address: locally administered, unicast.
LOCAL_UNICAST_OCTET = 0x02


@dataclass
class ConfigDocument:
    data: Document
    fmt: plistlib.PlistFormat = plistlib.FMT_XML


def document_path(bundle: Path) -> Path:
    return bundle / DOCUMENT_NAME


def load_document(bundle: Path) -> ConfigDocument:
    path = document_path(bundle)
    try:
        raw = path.read_bytes()
    except OSError as exc:
        raise DocumentError(f"Cannot read configuration document {path}: {exc}") from exc
    fmt = plistlib.FMT_BINARY if raw.startswith(b"bplist") else plistlib.FMT_XML
    try:
        data = plistlib.loads(raw)
    except (plistlib.InvalidFileException, ValueError, ExpatError) as exc:
        raise DocumentError(f"Configuration document {path} is not a valid property list: {exc}") from exc
    if not isinstance(data, dict):
        raise DocumentError(f"Configuration document {path} must be a dictionary at the top level")
    return ConfigDocument(data=data, fmt=fmt)


def save_document(bundle: Path, document: ConfigDocument) -> None:
    path = document_path(bundle)
    tmp = path.with_name(path.name + ".tmp")
    try:
        with open(tmp, "wb") as handle:
            plistlib.dump(document.data, handle, fmt=document.fmt, sort_keys=False)
        tmp.replace(path)
    except (OSError, TypeError) as exc:
        tmp.unlink(missing_ok=True)
        raise DocumentError(f"Cannot write configuration document {path}: {exc}") from exc


def _information(doc: Document) -> Dict[str, Any]:
    info = doc.get("Information")
    if not isinstance(info, dict):
        raise DocumentError("Configuration document has no Information section")
    return info


def _adapters(doc: Document) -> List[Dict[str, Any]]:
    adapters = doc.get("Network")
    if not isinstance(adapters, list) or not adapters or not all(isinstance(a, dict) for a in adapters):
        raise DocumentError("Configuration document has no network adapter to re-address")
    return adapters


def identity(doc: Document) -> Tuple[str, str]:
    """Return (name, uuid) of a document."""
    info = _information(doc)
    return str(info.get("Name", "")), str(info.get("UUID", ""))


def mac_address(doc: Document) -> str:
    return str(_adapters(doc)[0].get("MacAddress", "")).lower()


def new_identifier() -> str:
    return str(uuid.uuid4()).upper()


def random_mac() -> str:
    """Locally administered unicast address: 02 followed by five random octets."""
    octets = [LOCAL_UNICAST_OCTET] + [random.randint(0x00, 0xFF) for _ in range(5)]
    return ":".join(f"{octet:02x}" for octet in octets)


def reidentify(doc: Document, new_name: str) -> Document:
    result = copy.deepcopy(doc)
    info = _information(result)
    info["Name"] = new_name
    info["UUID"] = new_identifier()
    return result


def regenerate_mac(doc: Document) -> Tuple[Document, str]:
    """Give every network adapter a fresh address; returns the first adapter's."""
    result = copy.deepcopy(doc)
    addresses = []
    for adapter in _adapters(result):
        adapter["MacAddress"] = random_mac()
        addresses.append(adapter["MacAddress"])
    return result, addresses[0]


def strip_display(doc: Document) -> Document:
    result = copy.deepcopy(doc)
    result["Display"] = []
    return result


def has_active_display(doc: Document) -> bool:
    displays = doc.get("Display")
    return isinstance(displays, list) and len(displays) > 0


def has_drive(doc: Document, image_name: str) -> bool:
    drives = doc.get("Drive")
    if not isinstance(drives, list):
        return False
    return any(isinstance(d, dict) and d.get("ImageName") == image_name for d in drives)


def attach_disk(doc: Document, disk_link_name: str) -> Document:
    """Append a writable VirtIO drive that points at *disk_link_name* inside the bundle."""
    result = copy.deepcopy(doc)
    drives = result.get("Drive")
    if drives is None:
        drives = []
        result["Drive"] = drives
    elif not isinstance(drives, list):
        raise DocumentError("Configuration document has a malformed Drive section")
    if has_drive(result, disk_link_name):
        return result
    drives.append(
        {
            "Identifier": new_identifier(),
            "ImageName": disk_link_name,
            "ImageType": SHARED_DRIVE_IMAGE_TYPE,
            "Interface": SHARED_DRIVE_INTERFACE,
            "ReadOnly": False,
        }
    )
    return result
