"""Configuration management using Pydantic.

Provides:
- Typed settings models with validation
- YAML loading for settings, inventory and policy files (JSON accepted)
- Environment variable overrides for SSH credentials
- Project initialization (config/, logs/, backups/, reports/)
"""

import os
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError as PydanticValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from fwa.core.exceptions import ConfigurationError, ValidationError
from fwa.core.validation import MAX_PORT, MIN_PORT, validate_host_name
from fwa.services import policy as policy_model
from fwa.services.policy import Host, PolicySet, ValidationReport


# Default configuration paths (relative to the working directory)
DEFAULT_CONFIG_PATH = Path("config/fwa.yaml")
DEFAULT_INVENTORY_PATH = Path("config/servers.yaml")
DEFAULT_POLICY_PATH = Path("config/policy.yaml")
DEFAULT_BACKUP_DIR = Path("backups")
DEFAULT_LOG_PATH = Path("logs/fwa.log")
DEFAULT_REPORT_DIR = Path("reports")


class DeploySettings(BaseModel):
    """How deployments are run."""

    max_concurrency: int = 5
    connect_timeout: int = 10
    command_timeout: int = 60
    run_timeout: Optional[int] = None
    keep_ssh_port: int = 22
    firewalld_zone: str = "public"
    use_sudo: bool = True

    @field_validator("max_concurrency")
    @classmethod
    def validate_concurrency(cls, v: int) -> int:
        if not 1 <= v <= 256:
            raise ValueError("max_concurrency must be between 1 and 256")
        return v

    @field_validator("connect_timeout", "command_timeout", "run_timeout")
    @classmethod
    def validate_timeout(cls, v: Optional[int]) -> Optional[int]:
        if v is not None and v <= 0:
            raise ValueError("timeouts must be positive")
        return v

    @field_validator("keep_ssh_port")
    @classmethod
    def validate_port(cls, v: int) -> int:
        if not MIN_PORT <= v <= MAX_PORT:
            raise ValueError(f"Port must be between {MIN_PORT} and {MAX_PORT}")
        return v


class PathsConfig(BaseModel):
    """Where inputs and run artefacts live."""

    inventory: Path = DEFAULT_INVENTORY_PATH
    policy: Path = DEFAULT_POLICY_PATH
    backup_dir: Path = DEFAULT_BACKUP_DIR
    log_path: Path = DEFAULT_LOG_PATH
    report_dir: Path = DEFAULT_REPORT_DIR


class FwaConfig(BaseModel):
    """Root settings model loaded from config/fwa.yaml."""

    paths: PathsConfig = Field(default_factory=PathsConfig)
    deploy: DeploySettings = Field(default_factory=DeploySettings)

    @classmethod
    def load(cls, path: Path) -> "FwaConfig":
        """Load settings from a YAML file.

        Raises:
            ConfigurationError: If file not found or invalid
        """
        data = read_document(path, what="Configuration file")
        try:
            return cls(**(data or {}))
        except PydanticValidationError as e:
            raise ConfigurationError(
                f"Invalid configuration in {path}",
                details=[str(err["msg"]) + f" ({'.'.join(map(str, err['loc']))})" for err in e.errors()],
            ) from e

    @classmethod
    def load_or_default(cls, path: Optional[Path] = None) -> "FwaConfig":
        """Load settings, falling back to defaults if the file doesn't exist."""
        path = path or DEFAULT_CONFIG_PATH
        if path.exists():
            return cls.load(path)
        return cls()

    def to_yaml(self) -> str:
        """Convert settings to YAML string."""
        data = self.model_dump(mode="json", exclude_none=True)
        return yaml.dump(data, default_flow_style=False, sort_keys=False)


class SecretsConfig(BaseSettings):
    """SSH credential locations loaded from environment variables.

    These are never stored in config files.
    """

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    fwa_ssh_key_dir: Optional[Path] = Field(None, alias="FWA_SSH_KEY_DIR")
    fwa_ssh_known_hosts: Optional[Path] = Field(None, alias="FWA_SSH_KNOWN_HOSTS")


class ServerEntry(BaseModel):
    """One inventory entry."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    name: str
    address: str = Field(validation_alias=AliasChoices("address", "ip"))
    user: str
    role: str
    credential_ref: str = ""
    port: int = 22

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        try:
            return validate_host_name(v)
        except ValidationError as e:
            raise ValueError(e.message) from e

    @field_validator("port")
    @classmethod
    def validate_port(cls, v: int) -> int:
        if not MIN_PORT <= v <= MAX_PORT:
            raise ValueError(f"Port must be between {MIN_PORT} and {MAX_PORT}")
        return v

    def to_host(self) -> Host:
        return Host(
            name=self.name,
            address=self.address,
            user=self.user,
            role=self.role,
            credential_ref=self.credential_ref,
            port=self.port,
        )


class InventoryFile(BaseModel):
    """Inventory document: ``{"servers": [...]}``."""

    servers: list[ServerEntry] = Field(default_factory=list)


def read_document(path: Path, *, what: str = "File") -> Any:
    """Read a YAML (or JSON) document.

    Raises:
        ConfigurationError: If the file is missing, unreadable or invalid
    """
    if not path.exists():
        raise ConfigurationError(
            f"{what} not found: {path}",
            hint="Create a project with: fwa init",
        )

    try:
        with open(path) as f:
            return yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigurationError(
            f"Invalid YAML/JSON in {path}",
            details=[str(e)],
        ) from e
    except PermissionError:
        raise ConfigurationError(
            f"Cannot read {path}",
            hint="Check file permissions",
        )


def load_inventory(path: Path) -> list[Host]:
    """Load the host inventory.

    Raises:
        ConfigurationError: If the file is missing or fails schema checks
    """
    data = read_document(path, what="Inventory file")
    try:
        inventory = InventoryFile(**(data or {}))
    except (PydanticValidationError, TypeError) as e:
        raise ConfigurationError(
            f"Invalid inventory in {path}",
            details=[str(e)],
        ) from e
    return [entry.to_host() for entry in inventory.servers]


def load_policy_file(path: Path) -> PolicySet:
    """Load and validate the policy file.

    Raises:
        ConfigurationError: If the file is missing or unreadable
        ValidationError: If the policy is malformed or conflicting
    """
    data = read_document(path, what="Policy file")
    return policy_model.load(data or {})


def load_deployment(config: FwaConfig) -> tuple[PolicySet, list[Host], ValidationReport]:
    """Load policy and inventory and cross-check them.

    Returns:
        (policy, hosts, validation report with non-fatal warnings)
    """
    policy = load_policy_file(config.paths.policy)
    hosts = load_inventory(config.paths.inventory)
    report = policy_model.validate(policy)
    policy_model.validate_hosts(policy, hosts)
    return policy, hosts, report


def get_example_config() -> str:
    """Generate example settings file content."""
    return """# Firewall Automation settings
# SSH key locations come from the environment (FWA_SSH_KEY_DIR,
# FWA_SSH_KNOWN_HOSTS), NOT from this file.

paths:
  inventory: config/servers.yaml
  policy: config/policy.yaml
  backup_dir: backups
  log_path: logs/fwa.log
  report_dir: reports

deploy:
  max_concurrency: 5     # hosts deployed in parallel
  connect_timeout: 10    # seconds
  command_timeout: 60    # seconds per remote command
  # run_timeout: 900     # abort the whole run after this many seconds
  keep_ssh_port: 22      # kept open whenever a host is reset
  firewalld_zone: public
  use_sudo: true         # prefix privileged commands with sudo -n
"""


def get_example_inventory() -> str:
    """Generate example inventory content."""
    return """servers:
  - name: web-server-1
    ip: 192.168.1.100
    user: admin
    role: web
    # credential_ref: id_ed25519   # file in FWA_SSH_KEY_DIR, or an absolute path
"""


def get_example_policy() -> str:
    """Generate example policy content."""
    return """roles:
  web:
    allow:
      - {port: "22", protocol: tcp, source: any, comment: SSH}
      - {port: "80", protocol: tcp, source: any, comment: HTTP}
      - {port: "443", protocol: tcp, source: any, comment: HTTPS}
    deny:
      - {port: "3306", protocol: tcp, source: any, comment: MySQL}
  database:
    allow:
      - {port: "22", protocol: tcp, source: any, comment: SSH}
      - {port: "5432", protocol: tcp, source: 10.0.0.0/8, comment: PostgreSQL from internal}
"""


def init_config(base_dir: Path, force: bool = False) -> list[Path]:
    """Create the project layout with example files.

    Args:
        base_dir: Project directory
        force: Overwrite existing example files

    Returns:
        Files written

    Raises:
        ConfigurationError: If a file exists and force is False
    """
    files = {
        base_dir / DEFAULT_CONFIG_PATH: get_example_config(),
        base_dir / DEFAULT_INVENTORY_PATH: get_example_inventory(),
        base_dir / DEFAULT_POLICY_PATH: get_example_policy(),
    }

    existing = [p for p in files if p.exists()]
    if existing and not force:
        raise ConfigurationError(
            f"Configuration already exists: {existing[0]}",
            hint="Use --force to overwrite",
        )

    for directory in (DEFAULT_BACKUP_DIR, DEFAULT_LOG_PATH.parent, DEFAULT_REPORT_DIR):
        (base_dir / directory).mkdir(parents=True, exist_ok=True)

    for path, content in files.items():
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)
        os.chmod(path, 0o640)

    return list(files)
