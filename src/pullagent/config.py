"""Configuration management for pullagent."""

from functools import lru_cache
from pathlib import Path
from typing import Annotated

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from pullagent.constants import (
    CONVERGENCE_INTERVAL_SECONDS,
    DISK_CHECK_INTERVAL_SECONDS,
    LOCK_STALE_SECONDS,
)


class Settings(BaseSettings):
    """Agent settings loaded from ``PULLAGENT_*`` environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="PULLAGENT_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Desired-state source
    repo_url: str = Field(
        default="git@github.com:daisychainapp/mac-buildkite-machine.git",
        description="Git URL of the desired-state repository",
    )
    repo_branch: str = Field(default="main", description="Branch or commit to converge to")
    checkout_dir: Path = Field(default=Path("/opt/mac-build"), description="Local checkout")
    document_file: str = Field(default="site.yml", description="Document path in the checkout")

    # Credentials
    deploy_key: SecretStr | None = Field(default=None, description="Inline deploy key")
    deploy_key_file: Path | None = Field(default=None, description="Deploy key source file")
    deploy_key_path: Path = Field(
        default=Path.home() / ".ssh" / "mac-build-deploy",
        description="Where the deploy key is stored",
    )
    ssh_config_path: Path = Field(default=Path.home() / ".ssh" / "config")
    vault_password: SecretStr | None = Field(default=None, description="Inline vault password")
    vault_password_file: Path | None = Field(
        default=None, description="Vault password source file"
    )
    vault_password_path: Path = Field(
        default=Path("/etc/pullagent/.vault-pass"),
        description="Where the vault password is stored",
    )

    # Auto-login
    auto_login_password: SecretStr | None = Field(default=None)
    kcpassword_path: Path = Field(default=Path("/etc/kcpassword"))

    # Bootstrap
    allow_root: bool = Field(default=False, description="Permit bootstrap as root")
    required_tools: Annotated[
        list[str],
        Field(default_factory=lambda: ["git", "ssh"], description="Tools that must be on PATH"),
    ]

    # Persisted layout
    state_dir: Path = Field(default=Path("/var/lib/pullagent"))
    log_dir: Path = Field(default=Path("/var/log/pullagent"))
    launchd_dir: Path = Field(default=Path.home() / "Library" / "LaunchAgents")
    launchd_label_prefix: str = Field(default="com.pullagent")

    # Scheduling
    convergence_interval_seconds: int = Field(default=CONVERGENCE_INTERVAL_SECONDS, gt=0)
    disk_check_interval_seconds: int = Field(default=DISK_CHECK_INTERVAL_SECONDS, gt=0)
    maintenance_hour: int = Field(default=3, ge=0, le=23)
    lock_stale_seconds: int = Field(default=LOCK_STALE_SECONDS, gt=0)

    # Maintenance
    cleanup_paths: Annotated[list[Path], Field(default_factory=list)]
    cleanup_max_age_days: int = Field(default=7, ge=0)
    deep_clean_paths: Annotated[list[Path], Field(default_factory=list)]
    deep_clean_commands: Annotated[list[list[str]], Field(default_factory=list)]
    reboot_command: Annotated[
        list[str], Field(default_factory=lambda: ["sudo", "shutdown", "-r", "now"])
    ]

    # Disk monitor
    disk_path: Path = Field(default=Path("/"))
    disk_threshold_percent: float = Field(default=90.0, gt=0, le=100)

    # Application
    environment: str = Field(default="production", description="Environment name")
    log_level: str = Field(default="INFO", description="Logging level")
    log_to_file: bool = Field(default=True, description="Write per-job log files")

    @field_validator("repo_branch")
    @classmethod
    def _branch_not_empty(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("repo_branch must not be empty")
        return value.strip()

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.environment.lower() == "development"

    @property
    def uses_ssh(self) -> bool:
        """Whether the repository is reached over SSH with the deploy key."""
        return self.repo_url.startswith("ssh://") or self.repo_host is not None

    @property
    def repo_host(self) -> str | None:
        """Host part of an scp-style git URL (``git@host:path``), if any."""
        if "@" not in self.repo_url or "://" in self.repo_url:
            return None
        return self.repo_url.split("@", 1)[1].split(":", 1)[0]

    def job_log_path(self, job: str) -> Path:
        return self.log_dir / f"{job}.log"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
