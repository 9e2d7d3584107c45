"""Tests for kodemachine.config module."""

from __future__ import annotations

import json
from pathlib import Path
from unittest.mock import patch

import pytest

from kodemachine.config import default_config_path, load_settings, read_config_file
from kodemachine.constants import CONFIG_FILE, DEFAULT_STORE
from kodemachine.exceptions import ManagerError


class TestDefaultConfigPath:
    def test_default(self, clean_env):
        assert default_config_path() == CONFIG_FILE

    def test_env_override(self, clean_env, monkeypatch, tmp_path):
        monkeypatch.setenv("KODEMACHINE_CONFIG", str(tmp_path / "alt.json"))
        assert default_config_path() == tmp_path / "alt.json"


class TestReadConfigFile:
    def test_missing_file_is_empty(self, tmp_path):
        assert read_config_file(tmp_path / "missing.json") == {}

    def test_reads_json(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"base_image": "kodeimage-v0.2.0", "headless": False}))
        assert read_config_file(path) == {"base_image": "kodeimage-v0.2.0", "headless": False}

    def test_reads_yaml(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text("ssh_user: dev\nprefix: box-\n")
        assert read_config_file(path) == {"ssh_user": "dev", "prefix": "box-"}

    def test_unknown_keys_warned_and_dropped(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"ssh_user": "dev", "memory": 4096}))
        with patch("kodemachine.config.log") as mock_log:
            assert read_config_file(path) == {"ssh_user": "dev"}
        mock_log.assert_called_once()
        level, message = mock_log.call_args[0]
        assert level == "WARN"
        assert "memory" in message

    def test_non_mapping_falls_back(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text("[1, 2, 3]\n")
        with patch("kodemachine.config.log") as mock_log:
            assert read_config_file(path) == {}
        assert mock_log.call_args[0][0] == "WARN"

    def test_unparsable_falls_back(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text('{"ssh_user": "dev"')
        with patch("kodemachine.config.log") as mock_log:
            assert read_config_file(path) == {}
        assert mock_log.call_args[0][0] == "WARN"


class TestLoadSettings:
    def test_defaults(self, clean_env, tmp_path):
        settings = load_settings(tmp_path / "missing.json")
        assert settings.base_image == "kodeimage-v0.1.0"
        assert settings.ssh_user == "kodeman"
        assert settings.prefix == "km-"
        assert settings.headless is True
        assert settings.shared_disk is None
        assert settings.store == DEFAULT_STORE
        assert settings.start_attempts == 5
        assert settings.resume_attempts == 2
        assert settings.lock is True

    def test_file_values(self, clean_env, tmp_path):
        path = tmp_path / "config.json"
        path.write_text(
            json.dumps(
                {
                    "base_image": "kodeimage-v0.2.0",
                    "headless": "false",
                    "store": str(tmp_path / "store"),
                    "start_attempts": "8",
                    "poll_interval": 0.25,
                }
            )
        )
        settings = load_settings(path)
        assert settings.base_image == "kodeimage-v0.2.0"
        assert settings.headless is False
        assert settings.store == tmp_path / "store"
        assert settings.start_attempts == 8
        assert settings.poll_interval == 0.25
        assert settings.golden_bundle == tmp_path / "store" / "kodeimage-v0.2.0.utm"

    def test_environment_wins_over_file(self, clean_env, monkeypatch, tmp_path):
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"ssh_user": "fromfile", "prefix": "file-"}))
        monkeypatch.setenv("KODEMACHINE_SSH_USER", "fromenv")
        monkeypatch.setenv("KODEMACHINE_HEADLESS", "0")
        settings = load_settings(path)
        assert settings.ssh_user == "fromenv"
        assert settings.prefix == "file-"
        assert settings.headless is False

    def test_relative_shared_disk_resolves_against_store(self, clean_env, tmp_path):
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"store": str(tmp_path), "shared_disk": "persist.qcow2"}))
        assert load_settings(path).shared_disk == tmp_path / "persist.qcow2"

    def test_absolute_shared_disk_kept(self, clean_env, tmp_path):
        path = tmp_path / "config.json"
        disk = tmp_path / "elsewhere" / "persist.qcow2"
        path.write_text(json.dumps({"shared_disk": str(disk)}))
        assert load_settings(path).shared_disk == disk

    def test_empty_prefix_rejected(self, clean_env, tmp_path):
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"prefix": ""}))
        with pytest.raises(ManagerError, match="prefix"):
            load_settings(path)

    def test_empty_base_image_rejected(self, clean_env, monkeypatch, tmp_path):
        monkeypatch.setenv("KODEMACHINE_BASE_IMAGE", "  ")
        with pytest.raises(ManagerError, match="base_image"):
            load_settings(tmp_path / "missing.json")

    def test_link_name_must_be_plain(self, clean_env, tmp_path):
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"shared_disk_link": "../escape.qcow2"}))
        with pytest.raises(ManagerError, match="shared_disk_link"):
            load_settings(path)

    def test_bad_attempts_rejected(self, clean_env, tmp_path):
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"ip_attempts": 0}))
        with pytest.raises(ManagerError, match="ip_attempts"):
            load_settings(path)

    def test_uses_default_path_when_none(self, clean_env, monkeypatch, tmp_path):
        path = tmp_path / "env.json"
        path.write_text(json.dumps({"ssh_user": "viaenv"}))
        monkeypatch.setenv("KODEMACHINE_CONFIG", str(path))
        assert load_settings().ssh_user == "viaenv"

    def test_settings_are_frozen(self, clean_env, tmp_path):
        settings = load_settings(tmp_path / "missing.json")
        with pytest.raises(Exception):
            settings.prefix = "other-"  # type: ignore[misc]
        assert isinstance(settings.store, Path)
