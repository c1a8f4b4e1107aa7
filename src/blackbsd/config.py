"""Build configuration with pydantic-settings.

Settings come from a YAML file (``blackbsd.yml`` by default) with environment
overrides: ``HCLOUD_TOKEN`` for the API token, ``BLACKBSD_<FIELD>`` for
everything else. Environment values win over the file.

Usage:
    from blackbsd.config import load_settings

    settings = load_settings("blackbsd.yml")
"""

import os
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import (
    AliasChoices,
    BaseModel,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict

from .customize import DEFAULT_SECURITY_TOOLS
from .errors import ConfigurationError, InvalidPathError
from .shell import validate_path

DEFAULT_CONFIG_FILE = "blackbsd.yml"

VALID_LOCATIONS = ("fsn1", "nbg1", "hel1", "ash", "hil", "sin")


class Branding(BaseModel):
    """Customization applied to the built image."""

    hostname: str = Field(default="blackbsd", min_length=1)
    motd: str = Field(default="Welcome to BlackBSD")
    default_user: str = Field(default="security", min_length=1)


class Settings(BaseSettings):
    """Root configuration for a build."""

    model_config = SettingsConfigDict(
        env_prefix="BLACKBSD_",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
        validate_default=True,
    )

    # === Required ===

    hcloud_token: str = Field(
        default="",
        validation_alias=AliasChoices("HCLOUD_TOKEN", "hcloud_token"),
        description="Hetzner Cloud API token (set in config or HCLOUD_TOKEN env)",
    )
    ssh_key_path: str = Field(
        default="",
        description="Private key used for provider registration and root login",
    )

    # === Server ===

    server_type: str = Field(default="cpx31", description="Hetzner server type")
    location: str = Field(default="fsn1", description="Hetzner datacenter")
    image: str = Field(default="ubuntu-24.04", description="Base image booted before rescue")

    # === Outputs ===

    output_iso: bool = Field(default=True, description="Produce a bootable ISO")
    output_raw: bool = Field(default=False, description="Produce a compressed raw disk image")

    # === Image contents ===

    branding: Branding = Field(default_factory=Branding)
    packages: list[str] = Field(default_factory=lambda: list(DEFAULT_SECURITY_TOOLS))
    netbsd_version: str = Field(default="10.1")
    netbsd_arch: str = Field(default="amd64")

    # === Remote layout ===

    target_device: str = Field(default="/dev/sda", description="Block device NetBSD installs to")
    work_dir: str = Field(default="/tmp", description="Remote scratch directory")
    mount_point: str = Field(default="/mnt", description="Remote mount point for ISO extraction")

    # === Local ===

    download_dir: str | None = Field(
        default=None, description="Download artifacts here before the server is destroyed"
    )

    # === Logging ===

    log_level: str = Field(default="INFO", description="Log level (DEBUG, INFO, WARNING, ERROR)")
    log_format: Literal["json", "console"] = Field(default="console")

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        # Environment overrides values read from the YAML file.
        return env_settings, init_settings, dotenv_settings, file_secret_settings

    @field_validator("hcloud_token")
    @classmethod
    def validate_token(cls, v: str) -> str:
        if not v:
            raise ValueError("required (set in config or HCLOUD_TOKEN env)")
        return v

    @field_validator("ssh_key_path")
    @classmethod
    def validate_ssh_key_path(cls, v: str) -> str:
        if not v:
            raise ValueError("required")
        expanded = os.path.expanduser(v)
        if not Path(expanded).is_file():
            raise ValueError(f"file does not exist: {v}")
        return expanded

    @field_validator("location")
    @classmethod
    def validate_location(cls, v: str) -> str:
        if v not in VALID_LOCATIONS:
            raise ValueError(
                "must be a valid Hetzner datacenter: " + ", ".join(VALID_LOCATIONS)
            )
        return v

    @field_validator("target_device", "work_dir", "mount_point")
    @classmethod
    def validate_remote_path(cls, v: str) -> str:
        try:
            validate_path(v)
        except InvalidPathError as e:
            raise ValueError(e.message) from e
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        upper_v = v.upper()
        if upper_v not in valid_levels:
            raise ValueError(f"Invalid log level: {v}. Must be one of {valid_levels}")
        return upper_v

    @model_validator(mode="after")
    def validate_outputs(self) -> "Settings":
        if not self.output_iso and not self.output_raw:
            raise ValueError("output_iso/output_raw: at least one output format must be enabled")
        return self


def _first_error(exc: ValidationError) -> ConfigurationError:
    error = exc.errors()[0]
    field = ".".join(str(part) for part in error["loc"]).lower() or "config"
    message = error["msg"].removeprefix("Value error, ")
    if field == "config" and ": " in message:
        field, message = message.split(": ", 1)
    return ConfigurationError(field, message)


def load_settings(path: str = DEFAULT_CONFIG_FILE) -> Settings:
    """Read ``path``, apply environment overrides and validate.

    Raises:
        ConfigurationError: unreadable or malformed file, or invalid values.
    """
    try:
        raw = Path(path).read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigurationError("config", f"failed to read config {path}: {e}") from e

    try:
        data: Any = yaml.safe_load(raw) or {}
    except yaml.YAMLError as e:
        raise ConfigurationError("config", f"failed to parse config {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigurationError("config", f"failed to parse config {path}: expected a mapping")

    try:
        return Settings(**data)
    except ValidationError as e:
        raise _first_error(e) from e
