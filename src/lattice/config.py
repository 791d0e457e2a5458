"""Persistent ltc configuration.

Loads and saves ``~/.lattice/config.json``: the orchestrator target, its
basic credentials, the blob store target and the per-call timeout. Keys this
module does not recognize are carried through a load/save round trip.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping
from urllib.parse import quote

from lattice.errors import ConfigMalformedError, ConfigMissingError, UsageError

logger = logging.getLogger(__name__)

CONFIG_DIR_NAME = ".lattice"
CONFIG_FILE_NAME = "config.json"
CONFIG_PATH_ENV = "LATTICE_CONFIG"
TIMEOUT_ENV = "LATTICE_CLI_TIMEOUT"

BLOB_BACKEND_S3 = "s3"
BLOB_BACKEND_DAV = "dav"

_RECOGNIZED_KEYS = (
    "target",
    "username",
    "password",
    "blob_target",
    "timeout_seconds",
    "log_target",
)
_BLOB_TARGET_KEYS = ("host", "port", "access_key", "secret_key", "bucket_name", "kind")


@dataclass
class BlobTarget:
    """Object store endpoint and credentials.

    For the DAV backend the access and secret keys are the basic-auth
    username and password.
    """

    host: str = ""
    port: int = 0
    access_key: str = ""
    secret_key: str = ""
    bucket_name: str = ""
    kind: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def backend(self) -> str:
        """Backend selector: explicit ``kind`` or inferred from the bucket."""
        if self.kind:
            return self.kind
        return BLOB_BACKEND_S3 if self.bucket_name else BLOB_BACKEND_DAV

    @property
    def is_set(self) -> bool:
        return bool(self.host)

    def endpoint(self) -> str:
        return f"{self.host}:{self.port}" if self.port else self.host

    def to_dict(self) -> dict[str, Any]:
        data = dict(self.extra)
        data.update(
            {
                "host": self.host,
                "port": self.port,
                "access_key": self.access_key,
                "secret_key": self.secret_key,
                "bucket_name": self.bucket_name,
            }
        )
        if self.kind:
            data["kind"] = self.kind
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> BlobTarget:
        port = data.get("port", 0)
        if isinstance(port, bool) or not isinstance(port, int):
            raise ValueError(f"blob_target.port must be an integer, got {port!r}")
        kind = data.get("kind")
        if kind not in (None, BLOB_BACKEND_S3, BLOB_BACKEND_DAV):
            raise ValueError(f"blob_target.kind must be 's3' or 'dav', got {kind!r}")
        return cls(
            host=_string(data, "host"),
            port=port,
            access_key=_string(data, "access_key"),
            secret_key=_string(data, "secret_key"),
            bucket_name=_string(data, "bucket_name"),
            kind=kind,
            extra={k: v for k, v in data.items() if k not in _BLOB_TARGET_KEYS},
        )


@dataclass
class Config:
    """In-memory view of the config file. Changes persist only via save."""

    target: str = ""
    username: str = ""
    password: str = ""
    blob_target: BlobTarget = field(default_factory=BlobTarget)
    timeout_seconds: int = 0
    log_target: str = ""
    extra: dict[str, Any] = field(default_factory=dict)

    def set_target(self, target: str) -> None:
        self.target = target

    def set_login(self, username: str, password: str) -> None:
        self.username = username
        self.password = password

    @property
    def target_host(self) -> str:
        """Target without its port."""
        return self.target.rsplit(":", 1)[0] if ":" in self.target else self.target

    @property
    def receptor_url(self) -> str:
        """Base URL of the orchestrator API, credentials embedded."""
        if self.username:
            userinfo = f"{quote(self.username, safe='')}:{quote(self.password, safe='')}@"
            return f"http://{userinfo}{self.target}"
        return f"http://{self.target}"

    @property
    def log_url(self) -> str:
        """WebSocket base URL of the log bus."""
        host = self.log_target or f"doppler.{self.target_host}"
        return f"ws://{host}"

    def timeout(self, environ: Mapping[str, str] | None = None) -> float | None:
        """Per-call orchestrator deadline in seconds, None meaning no deadline.

        ``LATTICE_CLI_TIMEOUT`` overrides the configured value.

        Raises:
            UsageError: If the environment override is not a number.
        """
        env = os.environ if environ is None else environ
        raw = env.get(TIMEOUT_ENV)
        if raw:
            try:
                seconds = float(raw)
            except ValueError:
                raise UsageError(f"{TIMEOUT_ENV} must be a number of seconds, got {raw!r}")
        else:
            seconds = float(self.timeout_seconds)
        return seconds if seconds > 0 else None

    def to_dict(self) -> dict[str, Any]:
        data = dict(self.extra)
        data.update(
            {
                "target": self.target,
                "username": self.username,
                "password": self.password,
                "blob_target": self.blob_target.to_dict(),
                "timeout_seconds": self.timeout_seconds,
            }
        )
        if self.log_target:
            data["log_target"] = self.log_target
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Config:
        timeout_seconds = data.get("timeout_seconds", 0)
        if isinstance(timeout_seconds, bool) or not isinstance(timeout_seconds, int):
            raise ValueError(f"timeout_seconds must be an integer, got {timeout_seconds!r}")
        blob_data = data.get("blob_target") or {}
        if not isinstance(blob_data, dict):
            raise ValueError("blob_target must be an object")
        return cls(
            target=_string(data, "target"),
            username=_string(data, "username"),
            password=_string(data, "password"),
            blob_target=BlobTarget.from_dict(blob_data),
            timeout_seconds=timeout_seconds,
            log_target=_string(data, "log_target"),
            extra={k: v for k, v in data.items() if k not in _RECOGNIZED_KEYS},
        )


def _string(data: Mapping[str, Any], key: str) -> str:
    value = data.get(key, "")
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ValueError(f"{key} must be a string, got {value!r}")
    return value


def default_config_path() -> Path:
    """Config file location, honoring ``LATTICE_CONFIG``."""
    override = os.environ.get(CONFIG_PATH_ENV)
    if override:
        return Path(override)
    return Path.home() / CONFIG_DIR_NAME / CONFIG_FILE_NAME


class ConfigStore:
    """Reads and writes one config file.

    Concurrent writers are not coordinated; the last save wins.
    """

    def __init__(self, path: Path | str | None = None):
        self.path = Path(path) if path is not None else default_config_path()

    def read(self) -> Config:
        """Read the config file.

        Raises:
            ConfigMissingError: If the file does not exist.
            ConfigMalformedError: If it cannot be read or parsed.
        """
        try:
            raw = self.path.read_text()
        except FileNotFoundError:
            raise ConfigMissingError(f"Config file not found: {self.path}")
        except OSError as e:
            raise ConfigMalformedError(f"Could not read {self.path}: {e}")

        try:
            data = json.loads(raw)
            if not isinstance(data, dict):
                raise ValueError("top-level value must be an object")
            return Config.from_dict(data)
        except ValueError as e:
            raise ConfigMalformedError(f"Config file {self.path} is malformed: {e}")

    def load(self) -> Config:
        """Read the config file, falling back to defaults when it is absent.

        Raises:
            ConfigMalformedError: If the file exists but cannot be used.
        """
        try:
            return self.read()
        except ConfigMissingError:
            logger.debug(f"No config at {self.path}, using defaults")
            return Config()

    def save(self, config: Config) -> Path:
        """Write config atomically with owner-only permissions.

        Returns:
            Path to the saved file.
        """
        self.path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)

        temp_path = self.path.with_suffix(f".tmp.{os.getpid()}")
        fd = os.open(temp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w") as f:
            json.dump(config.to_dict(), f, indent=2, sort_keys=True)
            f.write("\n")
        os.chmod(temp_path, 0o600)
        temp_path.replace(self.path)

        logger.debug(f"Saved config to {self.path}")
        return self.path


def load_config(path: Path | str | None = None) -> Config:
    """Load config from ``path`` or the default location."""
    return ConfigStore(path).load()
