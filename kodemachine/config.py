"""Configuration loading and environment variable parsing for kodemachine."""

from __future__ import annotations

from pathlib import Path
from typing import Dict, Optional

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from kodemachine.constants import CONFIG_FILE, DEFAULT_CONFIG
from kodemachine.exceptions import ManagerError
from kodemachine.models import Settings
from kodemachine.utils import (
    coerce_bool,
    get_env,
    log,
    parse_interval,
    parse_positive_int,
)

# Environment variable -> config key. Environment wins over the config file.
ENV_OVERRIDES = {
    "KODEMACHINE_BASE_IMAGE": "base_image",
    "KODEMACHINE_SSH_USER": "ssh_user",
    "KODEMACHINE_PREFIX": "prefix",
    "KODEMACHINE_HEADLESS": "headless",
    "KODEMACHINE_SHARED_DISK": "shared_disk",
    "KODEMACHINE_STORE": "store",
    "KODEMACHINE_UTMCTL": "utmctl",
}


def default_config_path() -> Path:
    override = get_env("KODEMACHINE_CONFIG")
    if override:
        return Path(override).expanduser()
    return CONFIG_FILE


def read_config_file(config_path: Path) -> Dict[str, object]:
    """Return the raw mapping stored in *config_path*.

    The file is JSON by convention; it is read with the YAML loader so hand-written
    YAML works too. A missing or unreadable file yields an empty mapping.
    """
    if not config_path.exists():
        log("DEBUG", f"No config file at {config_path}; using defaults")
        return {}
    try:
        data = yaml.safe_load(config_path.read_text())
    except (OSError, yaml.YAMLError) as exc:
        log("WARN", f"Could not read {config_path} ({exc}); using defaults")
        return {}
    if data is None:
        return {}
    if not isinstance(data, dict):
        log("WARN", f"{config_path} must contain a mapping, got {type(data).__name__}; using defaults")
        return {}
    unknown = sorted(set(data) - set(DEFAULT_CONFIG))
    if unknown:
        log("WARN", f"Ignoring unknown config keys in {config_path}: {', '.join(unknown)}")
    return {key: value for key, value in data.items() if key in DEFAULT_CONFIG}


def load_settings(config_path: Optional[Path] = None) -> Settings:
    if config_path is None:
        config_path = default_config_path()

    raw: Dict[str, object] = dict(DEFAULT_CONFIG)
    raw.update(read_config_file(config_path))
    for env_name, key in ENV_OVERRIDES.items():
        value = get_env(env_name)
        if value is not None:
            raw[key] = value

    prefix = str(raw["prefix"] or "").strip()
    if not prefix:
        raise ManagerError("prefix must not be empty; every clone is found by its name prefix")

    base_image = str(raw["base_image"] or "").strip()
    if not base_image:
        raise ManagerError("base_image must name the golden image to clone")

    store = Path(str(raw["store"])).expanduser()

    shared_disk: Optional[Path] = None
    shared_raw = raw.get("shared_disk")
    if shared_raw is not None and str(shared_raw).strip():
        candidate = Path(str(shared_raw).strip()).expanduser()
        shared_disk = candidate if candidate.is_absolute() else store / candidate

    shared_disk_link = str(raw["shared_disk_link"] or "").strip()
    if not shared_disk_link or "/" in shared_disk_link:
        raise ManagerError(f"shared_disk_link must be a plain file name (got '{raw['shared_disk_link']}')")

    return Settings(
        base_image=base_image,
        ssh_user=str(raw["ssh_user"]).strip(),
        prefix=prefix,
        headless=coerce_bool(raw["headless"]),
        store=store,
        utmctl=str(raw["utmctl"]).strip(),
        shared_disk=shared_disk,
        shared_disk_link=shared_disk_link,
        start_attempts=parse_positive_int("start_attempts", raw["start_attempts"]),
        resume_attempts=parse_positive_int("resume_attempts", raw["resume_attempts"]),
        poll_interval=parse_interval("poll_interval", raw["poll_interval"]),
        ip_attempts=parse_positive_int("ip_attempts", raw["ip_attempts"]),
        ip_interval=parse_interval("ip_interval", raw["ip_interval"]),
        settle_delay=parse_interval("settle_delay", raw["settle_delay"]),
        lock=coerce_bool(raw["lock"]),
    )
