"""
Broker Console - Settings Store
=================================
Single source of truth for operator-tunable runtime settings, mirrored
1:1 to data/settings.json.

    {
        "mdns": {"enabled": false, "name": "Mochi MQTT", "port": 1883},
        "tls":  {"enabled": false, "port": ":8883", "cert": "", "key": ""}
    }

Every update replaces a whole sub-config and rewrites the whole file.
There is no field-level patch: callers read, modify and write back, and two
concurrent writers of the same sub-config are last-write-wins.

Locking:
    One reader/writer lock guards the configuration. Updates hold the writer
    lock across both the in-memory change and the disk write, so readers
    never see a value that is not (or is not about to be) on disk.
"""

import json
import logging
import os
import tempfile

from pydantic import BaseModel, Field
from pydantic import ValidationError as ModelValidationError

from console.locks import ReadWriteLock


logger = logging.getLogger(__name__)

SETTINGS_FILE = "settings.json"
DEFAULT_SERVICE_NAME = "Mochi MQTT"
DEFAULT_SERVICE_PORT = 1883


class SettingsError(Exception):
    """The settings file exists but could not be decoded."""


class DiscoveryConfig(BaseModel):
    """mDNS advertisement settings."""
    enabled: bool = False
    name: str = DEFAULT_SERVICE_NAME
    port: int = Field(default=DEFAULT_SERVICE_PORT, ge=0, le=65535)


class TLSConfig(BaseModel):
    """TLS listener settings. cert and key hold PEM text."""
    enabled: bool = False
    port: str = ":8883"
    cert: str = ""
    key: str = ""


class AppSettings(BaseModel):
    discovery: DiscoveryConfig = Field(default_factory=DiscoveryConfig, alias="mdns")
    tls: TLSConfig = Field(default_factory=TLSConfig)

    model_config = {"populate_by_name": True}


class SettingsStore:
    """
    Durable, lock-protected holder of AppSettings.

    Attributes:
        path: Full path of the backing JSON file.
    """

    def __init__(self, data_dir: str, filename: str = SETTINGS_FILE):
        self.path = os.path.join(data_dir, filename)
        self._lock = ReadWriteLock()
        self._settings = AppSettings()

    def load(self) -> None:
        """
        Replace the in-memory settings with the file contents.

        Raises:
            FileNotFoundError: No settings file yet; defaults are kept.
            SettingsError:     The file could not be decoded.
        """
        with self._lock.write_locked():
            with open(self.path, "r", encoding="utf-8") as f:
                raw = f.read()
            try:
                self._settings = AppSettings.model_validate(json.loads(raw))
            except (json.JSONDecodeError, ModelValidationError) as e:
                raise SettingsError(f"cannot decode {self.path}: {e}") from e
        logger.info("settings loaded from %s", self.path)

    def save(self) -> None:
        """
        Write the complete configuration to disk atomically.

        Raises:
            OSError: If the file could not be written.
        """
        with self._lock.write_locked():
            self._persist()

    def snapshot(self) -> AppSettings:
        """Independent copy of the whole configuration."""
        with self._lock.read_locked():
            return self._settings.model_copy(deep=True)

    def get_discovery(self) -> DiscoveryConfig:
        with self._lock.read_locked():
            return self._settings.discovery.model_copy(deep=True)

    def get_tls(self) -> TLSConfig:
        with self._lock.read_locked():
            return self._settings.tls.model_copy(deep=True)

    def update_discovery(self, cfg: DiscoveryConfig) -> None:
        """Replace the discovery settings and persist them."""
        self._update("discovery", cfg)

    def update_tls(self, cfg: TLSConfig) -> None:
        """Replace the TLS settings and persist them."""
        self._update("tls", cfg)

    # -- Internal helpers ------------------------------------------------------

    def _update(self, section: str, cfg: BaseModel) -> None:
        with self._lock.write_locked():
            previous = getattr(self._settings, section)
            setattr(self._settings, section, cfg.model_copy(deep=True))
            try:
                self._persist()
            except OSError:
                setattr(self._settings, section, previous)
                logger.error("failed to persist %s settings to %s", section, self.path)
                raise
        logger.info("%s settings updated", section)

    def _persist(self) -> None:
        """Write-new-then-replace. Caller must hold the writer lock."""
        directory = os.path.dirname(self.path) or "."
        os.makedirs(directory, exist_ok=True)
        data = self._settings.model_dump(by_alias=True)
        fd, tmp_path = tempfile.mkstemp(prefix=".settings-", dir=directory)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2, ensure_ascii=False)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.path)
        except OSError:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise
