"""Configuration and credentials for Quantum Snap.

Settings come from three layers, highest first:

1. ``QSNAP_*`` environment variables (nested sections use ``__``,
   e.g. ``QSNAP_AI__MAX_REFERENCE_IMAGES=2``)
2. A YAML file (``./qsnap.yaml`` or ``~/.qsnap/config.yaml``)
3. The defaults below

The Gemini API key is kept apart from the settings. ``APIKeyManager`` looks
for it in the environment, the system keyring and a machine-bound encrypted
file, in that order.

Example:
    >>> cfg = get_config()
    >>> cfg.ai.image_model
    'gemini-2.5-flash-image'

YAML layout:
    ```yaml
    ai:
      analysis_model: gemini-2.5-flash
      image_model: gemini-2.5-flash-image
      analysis_temperature: 0.1
      timeout_seconds: 120
      max_reference_images: 3
      max_context_originals: 0
      default_image_count: 3

    album:
      max_assets: 5
      export_delay_seconds: 0.5
      export_prefix: quantum_snap

    paths:
      config_dir: ~/.qsnap
      export_dir: ./album

    debug: false
    verbose: false
    ```
"""

from __future__ import annotations

import base64
import functools
import logging
import os
import platform
import stat
from enum import Enum
from pathlib import Path
from typing import Any

import keyring
import keyring.errors
import yaml
from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from pydantic import (
    BaseModel,
    Field,
    SecretStr,
    ValidationError,
    field_validator,
    model_validator,
)
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict

# Never pass a key value to this logger
logger = logging.getLogger(__name__)


# =============================================================================
# Exceptions
# =============================================================================


class ConfigError(Exception):
    """Settings or credentials could not be read or written."""


class APIKeyError(ConfigError):
    """Something is wrong with the Gemini API key."""


class APIKeyNotFoundError(APIKeyError):
    """No source produced a usable key."""


class APIKeyInvalidError(APIKeyError):
    """A key failed the offline format check.

    Passing the check says nothing about whether Gemini will accept the key.
    """


# =============================================================================
# Enums
# =============================================================================


class KeySource(str, Enum):
    """Where the active API key came from (or should go).

    Attributes:
        ENVIRONMENT: ``GEMINI_API_KEY``, or the older ``API_KEY``.
        KEYRING: The operating system keyring.
        ENCRYPTED_FILE: A Fernet-encrypted file under the config directory.
        NONE: No key anywhere.
    """

    ENVIRONMENT = "environment"
    KEYRING = "keyring"
    ENCRYPTED_FILE = "encrypted_file"
    NONE = "none"


# =============================================================================
# Configuration Models
# =============================================================================


class AIConfig(BaseModel):
    """Configuration for the Gemini integration.

    Attributes:
        analysis_model: Model used for identity analysis (text + JSON output).
        image_model: Model used for image synthesis.
        analysis_temperature: Sampling temperature for analysis. Low keeps profiles stable.
        timeout_seconds: Per-call timeout.
        max_reference_images: How many reference photos go with each generation call.
        max_context_originals: Full originals sent alongside crops during analysis.
        default_image_count: Album size when the user does not choose one.
    """

    analysis_model: str = Field(
        default="gemini-2.5-flash", description="Model used for identity analysis."
    )
    image_model: str = Field(
        default="gemini-2.5-flash-image", description="Model used for image synthesis."
    )
    analysis_temperature: float = Field(
        default=0.1, ge=0.0, le=2.0, description="Sampling temperature for analysis."
    )
    timeout_seconds: int = Field(
        default=120, ge=10, le=600, description="Request timeout in seconds."
    )
    max_reference_images: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Reference photos attached to each generation call (primary first).",
    )
    max_context_originals: int = Field(
        default=0,
        ge=0,
        le=5,
        description="Full original photos sent for context alongside the crops during analysis.",
    )
    default_image_count: int = Field(
        default=3, ge=1, le=10, description="Album size when none is requested."
    )


class AlbumConfig(BaseModel):
    """Limits and export behaviour for albums.

    Attributes:
        max_assets: Soft cap on reference photos in one session.
        export_delay_seconds: Pause between files during batch export.
        export_prefix: File name prefix for exported images.
    """

    max_assets: int = Field(default=5, ge=1, le=20, description="Soft cap on reference photos.")
    export_delay_seconds: float = Field(
        default=0.5, ge=0.0, le=10.0, description="Pause between files during batch export."
    )
    export_prefix: str = Field(default="quantum_snap", description="Exported file name prefix.")


class PathsConfig(BaseModel):
    """Configuration for application file system paths.

    Attributes:
        config_dir: Base directory for configuration files. Default ~/.qsnap
        state_dir: Directory for persisted session state. Default: config_dir/state
        export_dir: Directory for exported images. Default: ./album
        log_dir: Directory for log files. Default: config_dir/logs
        encrypted_key_file: Path to encrypted API key file. Default: config_dir/.api_key.enc
    """

    config_dir: Path = Field(
        default_factory=lambda: Path.home() / ".qsnap", description="Base configuration directory."
    )
    state_dir: Path | None = Field(
        default=None, description="Session state directory. Defaults to config_dir/state."
    )
    export_dir: Path = Field(
        default_factory=lambda: Path.cwd() / "album", description="Export directory."
    )
    log_dir: Path | None = Field(
        default=None, description="Log directory. Defaults to config_dir/logs."
    )
    encrypted_key_file: Path | None = Field(
        default=None, description="Path to encrypted API key file."
    )

    @field_validator("config_dir", "export_dir", mode="before")
    @classmethod
    def expand_path(cls, v: Any) -> Path:
        """Expand ~ and resolve path."""
        if isinstance(v, (str, Path)):
            return Path(v).expanduser().resolve()
        return v

    @model_validator(mode="after")
    def resolve_defaults(self) -> "PathsConfig":
        """Resolve None defaults relative to config_dir."""
        defaults = {
            "state_dir": self.config_dir / "state",
            "log_dir": self.config_dir / "logs",
            "encrypted_key_file": self.config_dir / ".api_key.enc",
        }
        for name, default in defaults.items():
            current = getattr(self, name)
            resolved = default if current is None else Path(current).expanduser().resolve()
            object.__setattr__(self, name, resolved)
        return self

    def ensure_dirs_exist(self) -> None:
        """Create all configured directories if they don't exist."""
        for directory in [self.config_dir, self.state_dir, self.log_dir]:
            if directory is not None:
                directory.mkdir(parents=True, exist_ok=True)


class AppConfig(BaseSettings):
    """Top-level application configuration.

    Keyword arguments (what ``load_config`` reads from YAML) sit below the
    environment, so ``QSNAP_*`` variables always win over the file.

    Example:
        >>> AppConfig().album.max_assets
        5
    """

    model_config = SettingsConfigDict(
        env_prefix="QSNAP_",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    ai: AIConfig = Field(default_factory=AIConfig)
    album: AlbumConfig = Field(default_factory=AlbumConfig)
    paths: PathsConfig = Field(default_factory=PathsConfig)
    debug: bool = Field(default=False, description="Enable debug mode.")
    verbose: bool = Field(default=False, description="Enable verbose output.")

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        return env_settings, init_settings, file_secret_settings

    def has_credentials(self) -> bool:
        """Whether any source holds a plausible key. Nothing is cached on the config."""
        return APIKeyManager(paths_config=self.paths).get_key() is not None


# =============================================================================
# API Key Storage
# =============================================================================


def sanitize_key(raw: str) -> str:
    """Trim whitespace and stray quotes pasted along with a key."""
    return raw.strip().replace('"', "").replace("'", "")


def is_plausible_key(key: str | None) -> bool:
    """Offline format check: 20 to 100 characters, no whitespace.

    Example:
        >>> is_plausible_key("  key with spaces  ")
        False
    """
    key = (key or "").strip()
    return 20 <= len(key) <= 100 and not any(c.isspace() for c in key)


class _EnvironmentBackend:
    """Read-only. ``GEMINI_API_KEY`` first, then ``API_KEY``."""

    source = KeySource.ENVIRONMENT
    names = ("GEMINI_API_KEY", "API_KEY")

    def read(self) -> str | None:
        for name in self.names:
            value = os.environ.get(name)
            if value:
                return sanitize_key(value)
        return None

    def write(self, key: str) -> None:
        raise ConfigError("qsnap cannot set environment variables. Export GEMINI_API_KEY in your shell.")

    def delete(self) -> None:
        raise ConfigError("qsnap cannot unset environment variables. Unset GEMINI_API_KEY in your shell.")


class _KeyringBackend:
    source = KeySource.KEYRING

    def __init__(self, service: str, username: str) -> None:
        self.service = service
        self.username = username

    def read(self) -> str | None:
        try:
            return keyring.get_password(self.service, self.username)
        except Exception as e:
            # Headless machines often have no keyring backend at all
            logger.debug(f"Keyring unavailable: {type(e).__name__}")
            return None

    def write(self, key: str) -> None:
        keyring.set_password(self.service, self.username, key)

    def delete(self) -> None:
        try:
            keyring.delete_password(self.service, self.username)
        except keyring.errors.PasswordDeleteError:
            logger.debug("No keyring entry to delete")


class _EncryptedFileBackend:
    """Fernet-encrypted key file. Only the machine that wrote it can read it."""

    source = KeySource.ENCRYPTED_FILE
    SALT = b"quantum-snap-salt-v1"
    ITERATIONS = 100_000

    def __init__(self, path: Path) -> None:
        self.path = path

    def read(self) -> str | None:
        if not self.path.exists():
            return None
        try:
            return self._fernet().decrypt(self.path.read_bytes()).decode("utf-8")
        except InvalidToken:
            logger.warning("Key file was encrypted on another machine; ignoring it")
        except OSError as e:
            logger.warning(f"Key file unreadable: {type(e).__name__}")
        return None

    def write(self, key: str) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_bytes(self._fernet().encrypt(key.encode("utf-8")))
        if platform.system() != "Windows":
            try:
                self.path.chmod(stat.S_IRUSR | stat.S_IWUSR)
            except OSError as e:
                logger.warning(f"Could not restrict key file permissions: {type(e).__name__}")

    def delete(self) -> None:
        self.path.unlink(missing_ok=True)

    def _fernet(self) -> Fernet:
        fingerprint = [platform.node(), platform.machine(), platform.system()]
        machine_id = Path("/etc/machine-id")
        if machine_id.is_file():
            try:
                fingerprint.append(machine_id.read_text().strip())
            except OSError:
                pass
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(), length=32, salt=self.SALT, iterations=self.ITERATIONS
        )
        secret = kdf.derive("|".join(fingerprint).encode("utf-8"))
        return Fernet(base64.urlsafe_b64encode(secret))


class APIKeyManager:
    """Finds, stores and removes the Gemini API key.

    Sources are tried in ``KeySource`` order: environment, keyring, encrypted
    file. The first plausible key wins and is cached for the lifetime of the
    manager. Key values never reach a log line or an exception message.

    Example:
        >>> manager = APIKeyManager()
        >>> if manager.get_key():
        ...     print(manager.get_key_source().value)
    """

    KEYRING_SERVICE = "quantum-snap"
    KEYRING_USERNAME = "gemini"
    ENV_VAR_NAMES = _EnvironmentBackend.names

    def __init__(self, paths_config: PathsConfig | None = None) -> None:
        paths = paths_config or PathsConfig()
        key_file = paths.encrypted_key_file or paths.config_dir / ".api_key.enc"
        self._backends = {
            KeySource.ENVIRONMENT: _EnvironmentBackend(),
            KeySource.KEYRING: _KeyringBackend(self.KEYRING_SERVICE, self.KEYRING_USERNAME),
            KeySource.ENCRYPTED_FILE: _EncryptedFileBackend(key_file),
        }
        self._found: tuple[SecretStr, KeySource] | None = None

    def get_key(self) -> SecretStr | None:
        if self._found is None:
            for source, backend in self._backends.items():
                value = backend.read()
                if is_plausible_key(value):
                    self._found = (SecretStr(value), source)
                    logger.debug(f"API key loaded from {source.value}")
                    break
            else:
                logger.debug("No API key in any source")
                return None
        return self._found[0]

    def get_key_source(self) -> KeySource:
        return self._found[1] if self._found else KeySource.NONE

    def store_key(self, key: str, destination: KeySource) -> bool:
        """Save a key to the keyring or the encrypted file.

        Raises:
            APIKeyInvalidError: If the key fails the format check.
            ConfigError: If the destination is read-only or the write fails.
        """
        key = sanitize_key(key)
        if not is_plausible_key(key):
            raise APIKeyInvalidError(
                "That does not look like an API key (20-100 characters, no whitespace)."
            )
        self._apply(destination, lambda backend: backend.write(key), "store key in")
        logger.info(f"API key stored in {destination.value}")
        return True

    def delete_key(self, source: KeySource) -> bool:
        """Remove the key from one source. Removing a key that is not there succeeds.

        Raises:
            ConfigError: If the source is read-only or the removal fails.
        """
        self._apply(source, lambda backend: backend.delete(), "remove key from")
        logger.info(f"API key removed from {source.value}")
        return True

    def validate_key_format(self, key: str) -> bool:
        return is_plausible_key(key)

    def _apply(self, source: KeySource, action: Any, verb: str) -> None:
        backend = self._backends.get(source)
        if backend is None:
            raise ConfigError(f"Cannot {verb} '{source.value}'")
        try:
            action(backend)
        except ConfigError:
            raise
        except Exception as e:
            raise ConfigError(f"Could not {verb} {source.value}: {type(e).__name__}") from e
        self._found = None


# =============================================================================
# Loading
# =============================================================================


CONFIG_SEARCH_PATHS = (
    Path("qsnap.yaml"),
    Path("qsnap.yml"),
    Path.home() / ".qsnap" / "config.yaml",
    Path.home() / ".qsnap" / "config.yml",
)


def _read_yaml(path: Path) -> dict[str, Any]:
    try:
        loaded = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        logger.warning(f"Ignoring {path}: not valid YAML ({e})")
        return {}
    except OSError as e:
        logger.warning(f"Ignoring {path}: {type(e).__name__}")
        return {}
    if loaded is None:
        return {}
    if not isinstance(loaded, dict):
        logger.warning(f"Ignoring {path}: expected a mapping at the top level")
        return {}
    return loaded


def load_config(path: Path | None = None) -> AppConfig:
    """Build the configuration from a YAML file, the environment and defaults.

    An explicit ``path`` is tried before the search locations. A missing file
    is fine. An unreadable file, or one with invalid values, is logged and the
    defaults are used instead.
    """
    candidates = ([path] if path is not None else []) + list(CONFIG_SEARCH_PATHS)
    found = next((p for p in candidates if p.exists()), None)
    data: dict[str, Any] = {}
    if found is not None:
        logger.debug(f"Reading config from {found}")
        data = _read_yaml(found)

    try:
        return AppConfig(**data)
    except ValidationError as e:
        logger.warning(f"Invalid config values ({e.error_count()} error(s)); using defaults")
        return AppConfig()


@functools.lru_cache(maxsize=1)
def get_config() -> AppConfig:
    """The process-wide configuration, loaded once."""
    return load_config()


def get_api_key(config: AppConfig | None = None) -> SecretStr:
    """Resolve the Gemini API key or fail with instructions.

    Raises:
        APIKeyNotFoundError: If no source holds a usable key.
    """
    config = config or get_config()
    key = APIKeyManager(paths_config=config.paths).get_key()
    if key is None:
        raise APIKeyNotFoundError(
            "No API key found. Set GEMINI_API_KEY or run 'qsnap config set-key'."
        )
    return key


def reset_config() -> None:
    get_config.cache_clear()
