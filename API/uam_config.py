"""
Local configuration for the Unity Asset Manager CLI.

Non-secret settings live in a small YAML file under the user's configuration
directory. The service-account secret never touches that file: it is kept in
the operating system's credential vault through `keyring`.

Environment variables (optionally loaded from a `.env` file) override whatever
is stored on disk, which keeps CI usage possible without a writable vault.
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO, Mapping

import keyring
import keyring.errors
import platformdirs
import yaml
from dotenv import find_dotenv, load_dotenv

from uam import ConfigurationError, KeyringAccessError

DEFAULT_APPLICATION_ID = "uamcli"
DEFAULT_CONFIGURATION_FILE_NAME = "config.yml"
DEFAULT_CLIENT_SECRET_KEY = "client_secret"

# Setting name -> environment variable.
ENV_OVERRIDES = {
    "organization_id": "UAM_ORGANIZATION_ID",
    "project_id": "UAM_PROJECT_ID",
    "environment_id": "UAM_ENVIRONMENT_ID",
    "client_id": "UAM_CLIENT_ID",
    "client_secret": "UAM_CLIENT_SECRET",
}

logger = logging.getLogger("uam")


class Keyring:
    """Thin wrapper over the OS vault, namespaced by application and project."""

    def __init__(self, application: str, project: str):
        self.application = application
        self.project = project

    def compose_key(self, key: str) -> str:
        return f"{self.application}:{self.project}:{key}"

    def get(self, key: str) -> str | None:
        try:
            return keyring.get_password(self.application, self.compose_key(key))
        except keyring.errors.KeyringError as e:
            raise KeyringAccessError(f"keyring error: {e}") from e

    def put(self, key: str, value: str) -> None:
        try:
            keyring.set_password(self.application, self.compose_key(key), value)
        except keyring.errors.KeyringError as e:
            raise KeyringAccessError(f"keyring error: {e}") from e

    def delete(self, key: str) -> None:
        try:
            keyring.delete_password(self.application, self.compose_key(key))
        except keyring.errors.PasswordDeleteError:
            # Nothing stored for this project.
            logger.debug("no keyring entry for %s", self.compose_key(key))
        except keyring.errors.KeyringError as e:
            raise KeyringAccessError(f"keyring error: {e}") from e


def get_default_configuration_file_path() -> Path:
    config_dir = platformdirs.user_config_path(DEFAULT_APPLICATION_ID, appauthor=False)
    if not str(config_dir):
        raise ConfigurationError("failed to resolve the configuration directory")
    return config_dir / DEFAULT_CONFIGURATION_FILE_NAME


def find_dotenv_path() -> str:
    return find_dotenv(usecwd=True) or ""


@dataclass
class Configuration:
    organization_id: str = ""
    project_id: str = ""
    environment_id: str = ""
    client_id: str | None = None
    client_secret: str | None = field(default=None, repr=False)

    @classmethod
    def from_dict(cls, data: Mapping | None) -> "Configuration":
        data = data or {}
        if not isinstance(data, Mapping):
            raise ConfigurationError("configuration file must contain a mapping")
        return cls(
            organization_id=str(data.get("organization_id") or ""),
            project_id=str(data.get("project_id") or ""),
            environment_id=str(data.get("environment_id") or ""),
            client_id=(str(data["client_id"]) if data.get("client_id") else None),
        )

    def to_dict(self) -> dict:
        # The secret is deliberately absent: it belongs in the vault only.
        return {
            "organization_id": self.organization_id,
            "project_id": self.project_id,
            "environment_id": self.environment_id,
            "client_id": self.client_id,
        }

    def keyring(self) -> Keyring:
        return Keyring(DEFAULT_APPLICATION_ID, self.project_id)

    def apply_environment(self, environ: Mapping[str, str] | None = None) -> list[str]:
        """
        Override settings from `UAM_*` environment variables.

        When `environ` is not given, a `.env` file (searched upwards from the
        working directory) is loaded first without clobbering variables that are
        already set. Returns the names of the settings that were overridden.
        """
        if environ is None:
            load_dotenv(find_dotenv(usecwd=True), override=False)
            environ = os.environ

        applied: list[str] = []
        for name, var in ENV_OVERRIDES.items():
            value = (environ.get(var) or "").strip()
            if value:
                setattr(self, name, value)
                applied.append(name)
        if applied:
            logger.debug("configuration overridden from environment: %s", ", ".join(applied))
        return applied

    @classmethod
    def load_from_file(
        cls,
        path: Path,
        *,
        environ: Mapping[str, str] | None = None,
        require_secret: bool = True,
    ) -> "Configuration":
        logger.debug("loading configuration from %s", path)
        try:
            with open(path, encoding="utf-8") as fh:
                data = yaml.safe_load(fh)
        except (OSError, yaml.YAMLError) as e:
            raise ConfigurationError(f"failed to load configuration data: {e}") from e

        configuration = cls.from_dict(data)
        configuration.apply_environment(environ)

        if not configuration.client_secret:
            configuration.client_secret = configuration.keyring().get(DEFAULT_CLIENT_SECRET_KEY)
        if require_secret and not configuration.client_secret:
            raise ConfigurationError("credentials not provided")
        return configuration

    @classmethod
    def load_default(
        cls, *, environ: Mapping[str, str] | None = None, require_secret: bool = True
    ) -> "Configuration":
        return cls.load_from_file(
            get_default_configuration_file_path(),
            environ=environ,
            require_secret=require_secret,
        )

    @classmethod
    def load_default_or_empty(cls, *, environ: Mapping[str, str] | None = None) -> "Configuration":
        """Load the saved configuration, falling back to an empty one (plus env overrides)."""
        try:
            return cls.load_default(environ=environ, require_secret=False)
        except ConfigurationError as e:
            logger.debug("using empty configuration: %s", e)
        configuration = cls()
        configuration.apply_environment(environ)
        return configuration

    def write(self, writer: IO[str]) -> None:
        try:
            yaml.safe_dump(self.to_dict(), writer, default_flow_style=False, sort_keys=False)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"failed to write configuration data: {e}") from e

    def save(self, path: Path) -> None:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise ConfigurationError(f"failed to create configuration directory: {e}") from e
        try:
            with open(path, "w", encoding="utf-8") as fh:
                self.write(fh)
        except OSError as e:
            raise ConfigurationError(f"failed to write configuration data: {e}") from e

        if self.client_secret:
            self.keyring().put(DEFAULT_CLIENT_SECRET_KEY, self.client_secret)
        logger.info("configuration saved to %s", path)

    def save_to_default(self) -> Path:
        path = get_default_configuration_file_path()
        self.save(path)
        return path

    def delete(self) -> None:
        path = get_default_configuration_file_path()
        try:
            path.unlink()
        except FileNotFoundError:
            logger.debug("no configuration file at %s", path)
        except OSError as e:
            raise ConfigurationError(f"failed to delete configuration file: {e}") from e
        self.keyring().delete(DEFAULT_CLIENT_SECRET_KEY)
