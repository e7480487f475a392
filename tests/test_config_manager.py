import errno
import tempfile
import unittest
from pathlib import Path
from unittest import mock

import yaml

from calsync.config_manager import ConfigManager, provider_readiness
from calsync.models import AppConfig


class ConfigManagerTests(unittest.TestCase):
    def test_creates_default_file(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            config_path = Path(temp_dir) / "nested" / "config.yaml"
            manager = ConfigManager(config_path, environ={})

            self.assertTrue(config_path.exists())
            config = manager.load()
            self.assertEqual(config.sync.periodic_interval_seconds, 300)
            self.assertEqual(config.sync.worker_concurrency, 3)
            self.assertEqual(config.microsoft.tenant_id, "common")

    def test_save_fallback_when_replace_ebusy(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            config_path = Path(temp_dir) / "config.yaml"
            manager = ConfigManager(str(config_path), environ={})
            config = AppConfig.from_dict(
                {
                    "google": {"client_id": "gid", "client_secret": "gsecret"},
                    "sync": {"periodic_interval_seconds": 600},
                }
            )

            original_replace = Path.replace

            def replace_side_effect(self: Path, target: Path) -> Path:
                if str(self).endswith(".tmp"):
                    raise OSError(errno.EBUSY, "Device or resource busy")
                return original_replace(self, target)

            with mock.patch("pathlib.Path.replace", new=replace_side_effect):
                manager.save(config)

            data = yaml.safe_load(config_path.read_text(encoding="utf-8"))
            self.assertEqual(data["google"]["client_secret"], "gsecret")
            self.assertEqual(data["sync"]["periodic_interval_seconds"], 600)
            self.assertFalse(Path(str(config_path) + ".tmp").exists())

    def test_update_deep_merges_sections(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            manager = ConfigManager(Path(temp_dir) / "config.yaml", environ={})
            manager.update({"google": {"client_id": "gid", "client_secret": "gsecret"}})
            config = manager.update({"google": {"redirect_uri": "https://app.example.com/cb"}})

            self.assertEqual(config.google.client_id, "gid")
            self.assertEqual(config.google.client_secret, "gsecret")
            self.assertEqual(manager.load().google.redirect_uri, "https://app.example.com/cb")

    def test_masked_hides_secrets_only_when_set(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            manager = ConfigManager(Path(temp_dir) / "config.yaml", environ={})
            manager.update({"microsoft": {"client_id": "mid", "client_secret": "msecret"}})
            masked = manager.masked()

            self.assertEqual(masked["microsoft"]["client_secret"], "***")
            self.assertEqual(masked["microsoft"]["client_id"], "mid")
            self.assertEqual(masked["google"]["client_secret"], "")
            self.assertEqual(masked["vault"]["encryption_key"], "")

    def test_environment_overrides_are_applied_but_never_written(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            config_path = Path(temp_dir) / "config.yaml"
            environ = {"GOOGLE_CLIENT_SECRET": "env-secret", "MICROSOFT_TENANT_ID": "contoso"}
            manager = ConfigManager(config_path, environ=environ)
            manager.update({"google": {"client_id": "gid"}})

            config = manager.load()
            self.assertEqual(config.google.client_secret, "env-secret")
            self.assertEqual(config.microsoft.authority, "https://login.microsoftonline.com/contoso")

            data = yaml.safe_load(config_path.read_text(encoding="utf-8"))
            self.assertEqual(data["google"]["client_id"], "gid")
            self.assertEqual(data["google"]["client_secret"], "")

    def test_provider_readiness_requires_complete_oauth_settings(self) -> None:
        config = AppConfig.from_dict(
            {
                "google": {"client_id": "gid", "client_secret": "gsecret", "redirect_uri": "https://app/cb"},
                "microsoft": {"client_id": "mid"},
            }
        )
        readiness = provider_readiness(config)
        self.assertTrue(readiness["GOOGLE"])
        self.assertFalse(readiness["OUTLOOK"])
        self.assertTrue(readiness["EXCHANGE_EWS"])


if __name__ == "__main__":
    unittest.main()
