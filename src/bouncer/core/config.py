"""Configuration management using Pydantic.

Provides:
- Typed configuration models with validation
- YAML file loading with defaults
- Environment variable overrides
- Configuration initialization and display
"""

import os
import re
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings

from bouncer.core.exceptions import ConfigurationError


# Default configuration paths
DEFAULT_CONFIG_PATH = Path("/etc/bouncer/config.yaml")
DEFAULT_AUDIT_LOG_PATH = Path("/var/log/bouncer/audit.log")

DEFAULT_IPV4_SET_NAME = "crowdsec-blacklists"
DEFAULT_IPV6_SET_NAME = "crowdsec6-blacklists"

# ipset(8) limits set names to 31 characters
MAX_SET_NAME_LENGTH = 31
# xtables chain names are at most 28 characters
CHAIN_NAME_PATTERN = re.compile(r"^[A-Za-z0-9_.\-]{1,28}$")
VALID_SET_TYPES = frozenset({"hash:ip", "hash:net", "iphash", "nethash"})


class FirewallConfig(BaseModel):
    """Deny-set and chain configuration."""

    iptables_chains: list[str] = Field(default_factory=lambda: ["INPUT"])
    disable_ipv6: bool = False
    ipv4_set_name: str = DEFAULT_IPV4_SET_NAME
    ipv6_set_name: str = DEFAULT_IPV6_SET_NAME
    set_type: str = "hash:net"
    command_timeout: Optional[int] = 30

    @field_validator("iptables_chains")
    @classmethod
    def validate_chains(cls, v: list[str]) -> list[str]:
        if not v:
            raise ValueError("iptables_chains must list at least one chain")
        for chain in v:
            if not CHAIN_NAME_PATTERN.match(chain):
                raise ValueError(f"Invalid chain name: {chain!r}")
        if len(set(v)) != len(v):
            raise ValueError("iptables_chains must not contain duplicates")
        return v

    @field_validator("ipv4_set_name", "ipv6_set_name")
    @classmethod
    def validate_set_name(cls, v: str) -> str:
        if not v or len(v) > MAX_SET_NAME_LENGTH or any(c.isspace() for c in v):
            raise ValueError(
                f"Set name must be 1-{MAX_SET_NAME_LENGTH} characters without whitespace"
            )
        return v

    @field_validator("set_type")
    @classmethod
    def validate_set_type(cls, v: str) -> str:
        if v not in VALID_SET_TYPES:
            raise ValueError(f"set_type must be one of: {sorted(VALID_SET_TYPES)}")
        return v

    @field_validator("command_timeout")
    @classmethod
    def validate_timeout(cls, v: Optional[int]) -> Optional[int]:
        if v is not None and v <= 0:
            raise ValueError("command_timeout must be positive")
        return v

    @model_validator(mode="after")
    def validate_distinct_sets(self) -> "FirewallConfig":
        if self.ipv4_set_name == self.ipv6_set_name:
            raise ValueError("ipv4_set_name and ipv6_set_name must differ")
        return self


class AuditConfig(BaseModel):
    """Audit log configuration."""

    enabled: bool = True
    log_path: Path = DEFAULT_AUDIT_LOG_PATH


class BouncerConfig(BaseModel):
    """Root configuration model.

    This is the main configuration loaded from /etc/bouncer/config.yaml.
    """

    firewall: FirewallConfig = Field(default_factory=FirewallConfig)
    audit: AuditConfig = Field(default_factory=AuditConfig)

    @classmethod
    def load(cls, path: Path) -> "BouncerConfig":
        """Load configuration from YAML file.

        Args:
            path: Path to configuration file

        Returns:
            Loaded configuration

        Raises:
            ConfigurationError: If file not found or invalid
        """
        if not path.exists():
            raise ConfigurationError(
                f"Configuration file not found: {path}",
                hint="Create it with: bouncer config init",
            )

        try:
            with open(path) as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(
                f"Invalid YAML in configuration file: {path}",
                details=[str(e)],
            ) from e
        except PermissionError:
            raise ConfigurationError(
                f"Cannot read configuration file: {path}",
                hint="Check file permissions or run with sudo",
            )

        if not isinstance(data, dict):
            raise ConfigurationError(
                f"Configuration file must contain a mapping: {path}",
            )

        try:
            return cls(**data)
        except Exception as e:
            raise ConfigurationError(
                f"Invalid configuration: {e}",
                details=[str(e)],
            ) from e

    @classmethod
    def load_or_default(cls, path: Optional[Path] = None) -> "BouncerConfig":
        """Load configuration, falling back to defaults if file doesn't exist."""
        if path is None:
            path = DEFAULT_CONFIG_PATH

        if path.exists():
            return cls.load(path)
        return cls()

    def to_yaml(self) -> str:
        """Convert configuration to YAML string."""
        data = self.model_dump(mode="json", exclude_none=True)
        return yaml.dump(data, default_flow_style=False, sort_keys=False)


class EnvOverrides(BaseSettings):
    """Settings overridable from environment variables.

    These take precedence over the config file.
    """

    config_path: Optional[Path] = Field(None, alias="BOUNCER_CONFIG")
    disable_ipv6: Optional[bool] = Field(None, alias="BOUNCER_DISABLE_IPV6")
    command_timeout: Optional[int] = Field(None, alias="BOUNCER_COMMAND_TIMEOUT")

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"


class AppConfig:
    """Application configuration combining config file and environment.

    This is the main interface for accessing configuration throughout the app.
    """

    def __init__(
        self,
        config_path: Optional[Path] = None,
        config: Optional[BouncerConfig] = None,
    ) -> None:
        """Initialize application configuration.

        Args:
            config_path: Path to config file (uses BOUNCER_CONFIG or default if None)
            config: Pre-loaded config (skips file loading if provided)
        """
        self._overrides = EnvOverrides()
        self.config_path = config_path or self._overrides.config_path or DEFAULT_CONFIG_PATH
        self._config = config or BouncerConfig.load_or_default(self.config_path)
        self._apply_overrides()

    def _apply_overrides(self) -> None:
        updates = {}
        if self._overrides.disable_ipv6 is not None:
            updates["disable_ipv6"] = self._overrides.disable_ipv6
        if self._overrides.command_timeout is not None:
            updates["command_timeout"] = self._overrides.command_timeout
        if not updates:
            return

        try:
            firewall = FirewallConfig(**{**self._config.firewall.model_dump(), **updates})
        except ValueError as e:
            raise ConfigurationError(
                f"Invalid environment override: {e}",
                details=[str(e)],
            ) from e
        self._config = self._config.model_copy(update={"firewall": firewall})

    @property
    def config(self) -> BouncerConfig:
        """Get the bouncer configuration."""
        return self._config

    @property
    def firewall(self) -> FirewallConfig:
        """Shortcut to firewall config."""
        return self._config.firewall

    @property
    def audit(self) -> AuditConfig:
        """Shortcut to audit config."""
        return self._config.audit


def get_example_config() -> str:
    """Generate example configuration file content."""
    return """# Firewall bouncer configuration

firewall:
  # Chains that get a DROP rule matching the deny set
  iptables_chains:
    - INPUT
  #  - FORWARD
  #  - DOCKER-USER

  # Skip ip6tables entirely (also settable with BOUNCER_DISABLE_IPV6=true)
  disable_ipv6: false

  ipv4_set_name: crowdsec-blacklists
  ipv6_set_name: crowdsec6-blacklists
  set_type: hash:net  # hash:ip, hash:net

  # Seconds before an ipset/iptables call is abandoned
  command_timeout: 30

audit:
  enabled: true
  log_path: /var/log/bouncer/audit.log
"""


def init_config(path: Path, force: bool = False) -> None:
    """Initialize a new configuration file.

    Args:
        path: Path to create config file
        force: Overwrite if exists

    Raises:
        ConfigurationError: If file exists and force is False
    """
    if path.exists() and not force:
        raise ConfigurationError(
            f"Configuration file already exists: {path}",
            hint="Use --force to overwrite",
        )

    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(get_example_config())
    os.chmod(path, 0o600)
