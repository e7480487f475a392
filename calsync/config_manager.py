from __future__ import annotations

import copy
import errno
import logging
import os
import threading
from pathlib import Path
from typing import Any, Mapping

import yaml

from calsync.models import AppConfig, Provider, default_app_config


logger = logging.getLogger(__name__)

SECRET_FIELDS = (
    ("google", "client_secret"),
    ("microsoft", "client_secret"),
    ("vault", "encryption_key"),
)

# Deployment environment wins over the YAML file for OAuth client settings.
ENV_OVERRIDES = {
    "GOOGLE_CLIENT_ID": ("google", "client_id"),
    "GOOGLE_CLIENT_SECRET": ("google", "client_secret"),
    "GOOGLE_REDIRECT_URI": ("google", "redirect_uri"),
    "MICROSOFT_CLIENT_ID": ("microsoft", "client_id"),
    "MICROSOFT_CLIENT_SECRET": ("microsoft", "client_secret"),
    "MICROSOFT_TENANT_ID": ("microsoft", "tenant_id"),
    "MICROSOFT_REDIRECT_URI": ("microsoft", "redirect_uri"),
}


def _deep_merge(base: dict[str, Any], updates: dict[str, Any]) -> dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in updates.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def apply_env_overrides(data: dict[str, Any], environ: Mapping[str, str]) -> dict[str, Any]:
    merged = copy.deepcopy(data)
    for env_name, (section, key) in ENV_OVERRIDES.items():
        value = environ.get(env_name)
        if value:
            merged.setdefault(section, {})[key] = value
    return merged


def provider_readiness(config: AppConfig) -> dict[str, bool]:
    """Which providers can be connected with the current settings."""
    google_ready = bool(config.google.client_id and config.google.client_secret and config.google.redirect_uri)
    microsoft_ready = bool(
        config.microsoft.client_id and config.microsoft.client_secret and config.microsoft.redirect_uri
    )
    return {
        Provider.GOOGLE.value: google_ready,
        Provider.OUTLOOK.value: microsoft_ready,
        Provider.CALDAV.value: True,
        Provider.APPLE.value: True,
        Provider.EXCHANGE_EWS.value: True,
    }


class ConfigManager:
    """YAML-backed settings with environment overrides for OAuth clients.

    ``load`` applies the overrides; ``save`` and ``update`` only ever write what
    was in the file, so environment secrets never end up on disk.
    """

    def __init__(self, config_path: str | os.PathLike[str], environ: Mapping[str, str] | None = None) -> None:
        self.config_path = Path(config_path)
        self.environ = os.environ if environ is None else environ
        self._lock = threading.RLock()
        self._ensure_exists()

    def _ensure_exists(self) -> None:
        if self.config_path.exists():
            return
        self.config_path.parent.mkdir(parents=True, exist_ok=True)
        self.save(default_app_config())
        logger.info("Wrote default configuration to %s", self.config_path)

    def _read_file(self) -> dict[str, Any]:
        with self.config_path.open("r", encoding="utf-8") as handle:
            return yaml.safe_load(handle) or {}

    def load(self) -> AppConfig:
        with self._lock:
            return AppConfig.from_dict(apply_env_overrides(self._read_file(), self.environ))

    def _write(self, config_dict: dict[str, Any]) -> None:
        with self.config_path.open("w", encoding="utf-8") as handle:
            yaml.safe_dump(config_dict, handle, sort_keys=False, allow_unicode=True, default_flow_style=False)

    def save(self, config: AppConfig) -> None:
        with self._lock:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
            config_dict = config.to_dict()
            tmp_path = self.config_path.with_suffix(self.config_path.suffix + ".tmp")
            with tmp_path.open("w", encoding="utf-8") as handle:
                yaml.safe_dump(config_dict, handle, sort_keys=False, allow_unicode=True, default_flow_style=False)
            try:
                tmp_path.replace(self.config_path)
            except OSError as exc:
                # Bind-mounted config files cannot be replaced atomically; write in place.
                if exc.errno != errno.EBUSY:
                    raise
                logger.warning("Config file %s is busy, writing in place", self.config_path)
                self._write(config_dict)
                if tmp_path.exists():
                    tmp_path.unlink()

    def update(self, payload: dict[str, Any]) -> AppConfig:
        with self._lock:
            stored = AppConfig.from_dict(self._read_file()).to_dict()
            self.save(AppConfig.from_dict(_deep_merge(stored, payload)))
            return self.load()

    def masked(self) -> dict[str, Any]:
        config = self.load().to_dict()
        for section, key in SECRET_FIELDS:
            if config.get(section, {}).get(key):
                config[section][key] = "***"
        return config
